"""
Exception hierarchy for the chain engine.

Only configuration errors are raised out of the executor. Item, dependency
and hook failures are recorded on the result or chain state instead.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    CONFIGURATION = "CONFIGURATION"
    DEPENDENCY = "DEPENDENCY"
    ITEM_FAILED = "ITEM_FAILED"
    ITEM_TIMEOUT = "ITEM_TIMEOUT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CANCELLED = "CANCELLED"
    HOOK_FAILED = "HOOK_FAILED"
    NOT_FOUND = "NOT_FOUND"
    PATH_SYNTAX = "PATH_SYNTAX"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class ChainEngineError(Exception):
    """Base exception for all chain engine errors."""

    code: ErrorCode = ErrorCode.ITEM_FAILED

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(ChainEngineError):
    """Unknown mode, invalid options or a malformed workflow."""

    code = ErrorCode.CONFIGURATION


class DependencyError(ChainEngineError):
    """A step could not be placed in any dependency level."""

    code = ErrorCode.DEPENDENCY

    def __init__(self, step_id: str, missing: Optional[list[str]] = None, **context: Any):
        self.step_id = step_id
        self.missing = missing or []
        message = f"Step '{step_id}' could not be scheduled"
        if self.missing:
            message += f" (unresolved dependencies: {', '.join(self.missing)})"
        super().__init__(message, step_id=step_id, missing=self.missing, **context)


class ItemError(ChainEngineError):
    """A request, validation or step failed."""

    code = ErrorCode.ITEM_FAILED


class ItemTimeoutError(ItemError):
    """An item exceeded its timeout."""

    code = ErrorCode.ITEM_TIMEOUT


class ValidationFailedError(ItemError):
    """The validator rejected a response."""

    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, errors: Optional[list[str]] = None, **context: Any):
        self.errors = errors or []
        super().__init__(message, errors=self.errors, **context)


class CancellationError(ChainEngineError):
    """Raised by cancellation-aware code when its token has been tripped."""

    code = ErrorCode.CANCELLED


class HookError(ChainEngineError):
    """A workflow setup or teardown hook failed."""

    code = ErrorCode.HOOK_FAILED


class ResponseNotFoundError(ChainEngineError, KeyError):
    """A response key is not present in the chain context."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, response_key: str):
        self.response_key = response_key
        super().__init__(f"Response '{response_key}' not found", response_key=response_key)

    def __str__(self) -> str:
        return self.message


class PathSyntaxError(ChainEngineError):
    """A path-query expression could not be tokenized or parsed."""

    code = ErrorCode.PATH_SYNTAX

    def __init__(self, message: str, path: str, position: Optional[int] = None):
        self.path = path
        self.position = position
        super().__init__(message, path=path, position=position)


class InvalidStateTransitionError(ChainEngineError):
    """Raised when an invalid status transition is attempted."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else ""),
            from_state=from_state,
            to_state=to_state,
        )
