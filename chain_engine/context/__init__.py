"""Per-run chain state and its registry."""

from chain_engine.context.chain import ChainContext
from chain_engine.context.registry import ChainRegistry

__all__ = ["ChainContext", "ChainRegistry"]
