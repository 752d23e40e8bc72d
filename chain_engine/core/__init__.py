"""Core domain models and business logic."""

from chain_engine.core.cancellation import CancellationToken
from chain_engine.core.dag import DependencyLeveler, LevelingResult, level_steps
from chain_engine.core.models import (
    ExecutionMode,
    ExecutionOptions,
    ExecutionResult,
    RequestDescriptor,
    Response,
    Step,
    StepResult,
    StepType,
    ValidationResult,
    Workflow,
)
from chain_engine.core.state_machine import (
    ChainStateMachine,
    ChainStatus,
    ExecutionStatus,
)

__all__ = [
    "CancellationToken",
    "DependencyLeveler",
    "LevelingResult",
    "level_steps",
    "ExecutionMode",
    "ExecutionOptions",
    "ExecutionResult",
    "RequestDescriptor",
    "Response",
    "Step",
    "StepResult",
    "StepType",
    "ValidationResult",
    "Workflow",
    "ChainStateMachine",
    "ChainStatus",
    "ExecutionStatus",
]
