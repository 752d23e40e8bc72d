"""
Registry of live chain contexts, keyed by id.

Owned by whoever creates it (normally one per Executor).
"""

import logging
from typing import Optional

from chain_engine.context.chain import ChainContext
from chain_engine.core.exceptions import ConfigurationError
from chain_engine.query.evaluator import PathExtractor

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Creates, tracks and cancels ChainContext instances."""

    def __init__(self, extractor: Optional[PathExtractor] = None):
        self._contexts: dict[str, ChainContext] = {}
        self._active_id: Optional[str] = None
        self._extractor = extractor or PathExtractor()

    def create_context(self, context_id: str) -> ChainContext:
        if context_id in self._contexts:
            raise ConfigurationError(
                f"Chain context '{context_id}' already exists",
                context_id=context_id,
            )

        context = ChainContext(context_id, extractor=self._extractor)
        self._contexts[context_id] = context
        self._active_id = context_id

        logger.debug(f"Chain context created: {context_id}")
        return context

    def get_context(self, context_id: str) -> Optional[ChainContext]:
        return self._contexts.get(context_id)

    def remove_context(self, context_id: str) -> bool:
        context = self._contexts.pop(context_id, None)
        if context is None:
            return False
        if self._active_id == context_id:
            self._active_id = None
        return True

    def list_contexts(self) -> list[str]:
        return list(self._contexts)

    def clear_all(self) -> None:
        """Cancel and forget every context."""
        self.cancel_all()
        self._contexts.clear()
        self._active_id = None

    @property
    def active_context(self) -> Optional[ChainContext]:
        if self._active_id is None:
            return None
        return self._contexts.get(self._active_id)

    def set_active_context(self, context_id: str) -> None:
        if context_id not in self._contexts:
            raise ConfigurationError(
                f"Chain context '{context_id}' not found",
                context_id=context_id,
            )
        self._active_id = context_id

    def get_running_contexts(self) -> list[ChainContext]:
        return [c for c in self._contexts.values() if c.is_running()]

    def cancel_all(self, reason: Optional[str] = None) -> int:
        """Cancel every non-terminal context. Returns how many were cancelled."""
        cancelled = 0
        for context in self._contexts.values():
            if context.cancel(reason):
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} chain context(s)")
        return cancelled

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._contexts
