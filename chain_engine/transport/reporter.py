"""
Reporter adapters and fire-and-forget event dispatch.
"""

import asyncio
import inspect
import logging
from typing import Any, Optional

from chain_engine.transport.base import Reporter

logger = logging.getLogger(__name__)


class NullReporter:
    """Discards every event."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        return None


class LoggingReporter:
    """Writes lifecycle events to the standard logger."""

    def __init__(self, level: int = logging.INFO, error_level: int = logging.WARNING):
        self.level = level
        self.error_level = error_level

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        level = self.error_level if event.endswith((":error", ":abort")) else self.level
        details = ", ".join(f"{k}={v}" for k, v in payload.items())
        logger.log(level, f"{event}: {details}")


class EventEmitter:
    """
    Forwards events to a Reporter without blocking the caller.

    Reporter failures are logged and otherwise ignored.
    """

    def __init__(self, reporter: Optional[Reporter] = None):
        self.reporter = reporter or NullReporter()
        self._pending: set[asyncio.Future] = set()

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        try:
            outcome = self.reporter.notify(event, payload)
        except Exception as e:
            logger.warning(f"Reporter failed on {event}: {e}")
            return

        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            self._pending.add(future)
            future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Reporter notification failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for scheduled notifications. Used by tests and shutdown paths."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
