"""Configuration management."""

from chain_engine.config.settings import (
    Environment,
    Settings,
    configure_logging,
    get_settings,
)

__all__ = ["Environment", "Settings", "configure_logging", "get_settings"]
