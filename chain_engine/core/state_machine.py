"""
Status lifecycle for chain executions.

Implements explicit status transitions with guards and validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

from chain_engine.core.exceptions import InvalidStateTransitionError


class ChainStatus(str, Enum):
    """
    Possible statuses of a chain context.

    Status transitions:
    - pending -> running -> completed
    - pending -> running -> failed
    - pending | running -> cancelled
    """

    PENDING = "pending"      # Initialized, not started
    RUNNING = "running"      # Steps are being dispatched
    COMPLETED = "completed"  # Finished with at least one success or no errors
    FAILED = "failed"        # Finished with errors and no successful step
    CANCELLED = "cancelled"  # Cancelled by the caller


class ExecutionStatus(str, Enum):
    """Overall outcome of one execute()/execute_workflow() call."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class StateTransition(BaseModel):
    """Represents a status transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


# Type alias for transition guards
TransitionGuard = Callable[[], bool]


class ChainStateMachine:
    """
    State machine for chain context statuses.

    Defines valid transitions and provides transition guards.
    """

    # Valid status transitions: from_state -> [valid_to_states]
    VALID_TRANSITIONS: dict[ChainStatus, set[ChainStatus]] = {
        ChainStatus.PENDING: {ChainStatus.RUNNING, ChainStatus.CANCELLED},
        ChainStatus.RUNNING: {
            ChainStatus.COMPLETED,
            ChainStatus.FAILED,
            ChainStatus.CANCELLED,
        },
        ChainStatus.COMPLETED: set(),  # Terminal state
        ChainStatus.FAILED: set(),     # Terminal state
        ChainStatus.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES: set[ChainStatus] = {
        ChainStatus.COMPLETED,
        ChainStatus.FAILED,
        ChainStatus.CANCELLED,
    }

    def __init__(self, initial_state: ChainStatus = ChainStatus.PENDING):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> ChainStatus:
        """Get current status."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get status transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        return self._state in self.TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self._state == ChainStatus.RUNNING

    def can_transition_to(self, to_state: ChainStatus) -> bool:
        """Check if transition to given status is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set[ChainStatus]:
        """Get all valid transitions from current status."""
        return self.VALID_TRANSITIONS.get(self._state, set()).copy()

    def transition(
        self,
        to_state: ChainStatus,
        reason: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition to a new status.

        Args:
            to_state: Target status
            reason: Reason for transition
            guard: Optional guard function that must return True
            metadata: Additional metadata for the transition

        Returns:
            StateTransition record

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}",
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                "Guard condition failed",
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
            metadata=metadata or {},
        )

        self._history.append(transition)
        self._state = to_state

        return transition

    def reset(self) -> None:
        """Return to pending and forget the history."""
        self._state = ChainStatus.PENDING
        self._history.clear()


def compute_execution_status(successful: int, failed: int) -> ExecutionStatus:
    """
    Compute the overall outcome from success and failure counters.

    No failures is a success, failures alongside successes is partial,
    and failures only is a failure.
    """
    if failed == 0:
        return ExecutionStatus.SUCCESS
    if successful > 0:
        return ExecutionStatus.PARTIAL
    return ExecutionStatus.FAILED


def compute_final_chain_status(error_count: int, successful_steps: int) -> ChainStatus:
    """Final chain status: failed only if errors accumulated and nothing succeeded."""
    if error_count > 0 and successful_steps == 0:
        return ChainStatus.FAILED
    return ChainStatus.COMPLETED
