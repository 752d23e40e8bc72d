"""
Collaborator interfaces used by the executor.

The executor only depends on these shapes; concrete adapters live in
sibling modules or in the caller's code.
"""

import inspect
from typing import Any, Awaitable, Protocol, Sequence, Union, runtime_checkable

from chain_engine.core.models import RequestDescriptor, Response, ValidationResult


@runtime_checkable
class Transport(Protocol):
    """Performs one remote request."""

    async def send(self, request: RequestDescriptor) -> Response:
        ...


@runtime_checkable
class Validator(Protocol):
    """Checks a response against opaque validation configs. May be sync or async."""

    def validate(
        self,
        response: Response,
        configs: Sequence[Any],
    ) -> Union[ValidationResult, Awaitable[ValidationResult]]:
        ...


@runtime_checkable
class Reporter(Protocol):
    """Receives lifecycle events. A returned awaitable is scheduled, never awaited."""

    def notify(self, event: str, payload: dict[str, Any]) -> Any:
        ...


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value
