"""
Cooperative cancellation.

A token is checked before each new dispatch. Tripping it never interrupts
work that has already started.
"""

import asyncio
from typing import Optional

from chain_engine.core.exceptions import CancellationError


class CancellationToken:
    """Signal shared between a caller and the loops of one run."""

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Trip the token. Returns False if it was already tripped."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            label = f"Execution {self.execution_id}" if self.execution_id else "Execution"
            raise CancellationError(
                f"{label} was cancelled",
                execution_id=self.execution_id,
                reason=self.reason,
            )

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep unless cancelled first.

        Returns True if the full delay elapsed, False if the token tripped.
        """
        if seconds <= 0:
            return not self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False
