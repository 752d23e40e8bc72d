"""Transport, validator and reporter interfaces plus default adapters."""

from chain_engine.transport.base import Reporter, Transport, Validator, maybe_await
from chain_engine.transport.http import HttpxTransport
from chain_engine.transport.reporter import EventEmitter, LoggingReporter, NullReporter

__all__ = [
    "Reporter",
    "Transport",
    "Validator",
    "maybe_await",
    "HttpxTransport",
    "EventEmitter",
    "LoggingReporter",
    "NullReporter",
]
