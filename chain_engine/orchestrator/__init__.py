"""Executor for request lists and workflows."""

from chain_engine.orchestrator.executor import Executor
from chain_engine.orchestrator.handlers import StepHandlerRegistry, StepRuntime
from chain_engine.orchestrator.metrics import ResultAggregator

__all__ = ["Executor", "StepHandlerRegistry", "StepRuntime", "ResultAggregator"]
