"""
Pytest fixtures and configuration for tests.
"""

import asyncio
import time
from typing import Any, Callable, Optional, Union

import pytest

from chain_engine.config import Environment, Settings
from chain_engine.config.settings import RetrySettings
from chain_engine.core.models import RequestDescriptor, Response, ValidationResult
from chain_engine.orchestrator import Executor


RouteBody = Union[Any, Response, Callable[[RequestDescriptor], Any]]


class FakeTransport:
    """
    In-memory Transport.

    Answers from a route table keyed by URL and records the start and end
    time of every call so tests can check ordering and concurrency.
    """

    def __init__(
        self,
        routes: Optional[dict[str, RouteBody]] = None,
        delay: float = 0.0,
        delays: Optional[dict[str, float]] = None,
        fail_urls: tuple[str, ...] = (),
        flaky: Optional[dict[str, int]] = None,
    ):
        self.routes = routes or {}
        self.delay = delay
        self.delays = delays or {}
        self.fail_urls = set(fail_urls)
        self.flaky = dict(flaky or {})

        self.calls: list[RequestDescriptor] = []
        self.timeline: dict[str, tuple[float, float]] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, request: RequestDescriptor) -> Response:
        self.calls.append(request)
        started = time.perf_counter()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

        try:
            delay = self.delays.get(request.url, self.delay)
            if delay:
                await asyncio.sleep(delay)

            if request.url in self.fail_urls:
                raise ConnectionError(f"connection refused: {request.url}")

            if self.flaky.get(request.url, 0) > 0:
                self.flaky[request.url] -= 1
                raise ConnectionError(f"connection reset: {request.url}")

            body = self.routes.get(request.url, {"url": request.url})
            if callable(body):
                body = body(request)
            if isinstance(body, Response):
                return body

            return Response(
                status=200,
                headers={"content-type": "application/json"},
                body=body,
                duration=(time.perf_counter() - started) * 1000,
                url=request.url,
            )
        finally:
            self.in_flight -= 1
            self.timeline[request.url] = (started, time.perf_counter())

    @property
    def urls(self) -> list[str]:
        return [call.url for call in self.calls]


class StatusValidator:
    """Checks ``{"status": <code>}`` configs against the response status."""

    def __init__(self):
        self.calls = 0

    def validate(self, response: Response, configs: list[Any]) -> ValidationResult:
        self.calls += 1
        errors = [
            f"expected status {config['status']}, got {response.status}"
            for config in configs
            if "status" in config and response.status != config["status"]
        ]
        return ValidationResult(valid=not errors, errors=errors)


class AsyncStatusValidator(StatusValidator):
    async def validate(self, response: Response, configs: list[Any]) -> ValidationResult:
        await asyncio.sleep(0)
        return super().validate(response, configs)


class RecordingReporter:
    """Collects (event, payload) pairs."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with instant retries."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        retry=RetrySettings(initial_delay=0.0, max_delay=0.0, jitter=False),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def validator() -> StatusValidator:
    return StatusValidator()


@pytest.fixture
def executor(transport, reporter, validator, test_settings) -> Executor:
    return Executor(
        transport,
        validator=validator,
        reporter=reporter,
        settings=test_settings,
    )


@pytest.fixture
def sample_requests() -> list[dict]:
    """Five independent GET requests."""
    return [{"method": "GET", "url": f"https://api.test/items/{i}"} for i in range(5)]


@pytest.fixture
def sample_linear_workflow() -> dict:
    """Login, then fetch the profile with the extracted token."""
    return {
        "name": "Linear Login Workflow",
        "steps": [
            {
                "id": "login",
                "type": "request",
                "config": {"method": "POST", "url": "https://api.test/login", "body": {"user": "ada"}},
            },
            {
                "id": "token",
                "type": "extraction",
                "dependencies": ["login"],
                "config": {"response_id": "login", "path": "$.data.token", "variable": "token"},
            },
            {
                "id": "profile",
                "type": "request",
                "dependencies": ["token"],
                "config": {
                    "url": "https://api.test/profile",
                    "headers": {"Authorization": "Bearer {{ token }}"},
                },
            },
        ],
    }


@pytest.fixture
def sample_diamond_workflow() -> dict:
    """Diamond workflow: A -> (B, C) -> D."""
    return {
        "name": "Diamond Workflow",
        "steps": [
            {"id": "a", "type": "request", "config": {"url": "https://api.test/a"}},
            {"id": "b", "type": "request", "dependencies": ["a"], "config": {"url": "https://api.test/b"}},
            {"id": "c", "type": "request", "dependencies": ["a"], "config": {"url": "https://api.test/c"}},
            {"id": "d", "type": "request", "dependencies": ["b", "c"], "config": {"url": "https://api.test/d"}},
        ],
    }


@pytest.fixture
def sample_cyclic_workflow() -> dict:
    """A and B depend on each other; C is independent."""
    return {
        "name": "Cyclic Workflow",
        "steps": [
            {"id": "a", "type": "request", "dependencies": ["b"], "config": {"url": "https://api.test/a"}},
            {"id": "b", "type": "request", "dependencies": ["a"], "config": {"url": "https://api.test/b"}},
            {"id": "c", "type": "request", "config": {"url": "https://api.test/c"}},
        ],
    }


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Factory for transports with custom routes, delays or failures."""
    return FakeTransport


@pytest.fixture
def make_executor(reporter, validator, test_settings) -> Callable[..., Executor]:
    """Factory binding the shared reporter, validator and settings to a transport."""

    def factory(transport: FakeTransport, **kwargs: Any) -> Executor:
        kwargs.setdefault("validator", validator)
        kwargs.setdefault("reporter", reporter)
        kwargs.setdefault("settings", test_settings)
        return Executor(transport, **kwargs)

    return factory


@pytest.fixture
def async_validator() -> AsyncStatusValidator:
    return AsyncStatusValidator()
