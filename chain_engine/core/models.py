"""
Domain models for the chain engine.

All models use Pydantic for validation and serialization with full Python 3.11+ type hints.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chain_engine.core.state_machine import ChainStatus, ExecutionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepType(str, Enum):
    """Supported workflow step types."""

    REQUEST = "request"
    VALIDATION = "validation"
    EXTRACTION = "extraction"
    TRANSFORMATION = "transformation"
    CONDITION = "condition"
    LOOP = "loop"
    DELAY = "delay"
    PARALLEL = "parallel"
    SCRIPT = "script"


class ExecutionMode(str, Enum):
    """Scheduling strategies."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    BATCH = "batch"
    WORKFLOW = "workflow"


# ==================== Transport Payloads ====================


class RequestDescriptor(BaseModel):
    """A single remote request handed to the Transport."""

    method: str = Field(default="GET", description="HTTP method")
    url: str = Field(..., min_length=1, description="Absolute URL or path relative to the transport base URL")
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict, description="Query parameters")
    body: Any = Field(default=None, description="JSON-serializable body, str or bytes")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-request timeout in seconds")
    validations: list[Any] = Field(default_factory=list, description="Opaque configs for the Validator")
    name: Optional[str] = Field(default=None, description="Human readable label")

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def stringify_headers(cls, v: Any) -> Any:
        # Resolved templates may yield numbers
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if val is not None}
        return v


class Response(BaseModel):
    """Response produced by the Transport. Opaque beyond these fields."""

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    duration: float = Field(default=0.0, ge=0, description="Round trip time in milliseconds")
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


class ValidationResult(BaseModel):
    """Outcome of a Validator call."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ==================== Step Configs ====================
# One variant per step type, discriminated on ``type``.


class _StepConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RequestStepConfig(_StepConfigBase):
    """Send one request; the response is stored under the step id."""

    type: Literal["request"] = "request"
    request: RequestDescriptor
    save_as: Optional[str] = Field(default=None, description="Additional response key")

    @model_validator(mode="before")
    @classmethod
    def wrap_flat_request(cls, data: Any) -> Any:
        """Accept request fields at the top level of the config."""
        if isinstance(data, dict) and "request" not in data:
            own = {k: data[k] for k in ("type", "save_as") if k in data}
            request = {k: v for k, v in data.items() if k not in own}
            return {**own, "request": request}
        return data


class ValidationStepConfig(_StepConfigBase):
    """Validate a previously stored response."""

    type: Literal["validation"] = "validation"
    response_id: str
    validations: list[Any] = Field(default_factory=list)


class ExtractionStepConfig(_StepConfigBase):
    """Pull a value out of a stored response body into a variable."""

    type: Literal["extraction"] = "extraction"
    response_id: str
    path: str
    variable: str


class TransformationStepConfig(_StepConfigBase):
    """Derive a variable from another variable or from a template."""

    type: Literal["transformation"] = "transformation"
    target: str
    source: Optional[str] = None
    template: Any = None
    func: Optional[Callable[[Any], Any]] = None

    @model_validator(mode="after")
    def require_input(self) -> "TransformationStepConfig":
        if self.source is None and self.template is None:
            raise ValueError("transformation needs a 'source' variable or a 'template'")
        return self


class ConditionStepConfig(_StepConfigBase):
    """Evaluate a predicate and store it as a conditional flag."""

    type: Literal["condition"] = "condition"
    flag: str
    predicate: Optional[Callable[[Any], bool]] = None
    variable: Optional[str] = None
    equals: Any = None

    @model_validator(mode="after")
    def require_predicate(self) -> "ConditionStepConfig":
        if self.predicate is None and self.variable is None:
            raise ValueError("condition needs a 'predicate' or a 'variable'")
        return self


class LoopStepConfig(_StepConfigBase):
    """Run a nested step up to ``count`` times."""

    type: Literal["loop"] = "loop"
    counter: str
    count: int = Field(..., ge=0, le=10_000)
    step: "Step"
    until: Optional[Callable[[Any], bool]] = None


class DelayStepConfig(_StepConfigBase):
    """Sleep for a fixed time."""

    type: Literal["delay"] = "delay"
    seconds: float = Field(..., ge=0)


class ParallelStepConfig(_StepConfigBase):
    """Run nested steps concurrently."""

    type: Literal["parallel"] = "parallel"
    steps: list["Step"] = Field(..., min_length=1)


class ScriptStepConfig(_StepConfigBase):
    """Call a function with the chain context. May be sync or async."""

    type: Literal["script"] = "script"
    func: Callable[..., Any]


StepConfig = Annotated[
    Union[
        RequestStepConfig,
        ValidationStepConfig,
        ExtractionStepConfig,
        TransformationStepConfig,
        ConditionStepConfig,
        LoopStepConfig,
        DelayStepConfig,
        ParallelStepConfig,
        ScriptStepConfig,
    ],
    Field(discriminator="type"),
]


# ==================== Workflow Definition ====================


class Step(BaseModel):
    """Definition of a single step in a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=255, description="Unique step identifier")
    name: Optional[str] = Field(default=None)
    type: StepType = Field(..., description="Step type, selects the handler")
    config: StepConfig
    dependencies: list[str] = Field(default_factory=list, description="Step ids that must have a result first")
    condition: Optional[Callable[[Any], bool]] = Field(
        default=None, description="Called with the chain context; falsy skips the step"
    )
    retries: int = Field(default=0, ge=0, le=100, description="Extra attempts after the first failure")
    timeout: Optional[float] = Field(default=None, gt=0, description="Timeout in seconds")
    continue_on_error: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def inject_config_type(cls, data: Any) -> Any:
        """Let callers omit ``type`` inside the config."""
        if not isinstance(data, dict):
            return data
        step_type = data.get("type")
        config = data.get("config")
        if isinstance(step_type, StepType):
            step_type = step_type.value
        if step_type is None and isinstance(config, BaseModel):
            return {**data, "type": getattr(config, "type", None)}
        if isinstance(config, dict) and "type" not in config and step_type is not None:
            return {**data, "config": {**config, "type": step_type}}
        return data

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate step ID format."""
        if not v.replace("_", "").replace("-", "").replace(".", "").isalnum():
            raise ValueError("Step ID must be alphanumeric with underscores, hyphens or dots")
        return v

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: list[str]) -> list[str]:
        if len(v) != len(set(v)):
            raise ValueError("Duplicate dependencies not allowed")
        return v

    @model_validator(mode="after")
    def validate_config_matches_type(self) -> "Step":
        if self.config.type != self.type.value:
            raise ValueError(
                f"Step '{self.id}' has type '{self.type.value}' but a '{self.config.type}' config"
            )
        return self

    @property
    def label(self) -> str:
        return self.name or self.id


LoopStepConfig.model_rebuild()
ParallelStepConfig.model_rebuild()
Step.model_rebuild()


class Workflow(BaseModel):
    """Ordered set of steps with dependency edges and lifecycle hooks."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex, description="Workflow identifier")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None)
    steps: list[Step] = Field(..., min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict, description="Initial variable seed")

    setup: Optional[Callable[[], Any]] = None
    teardown: Optional[Callable[[], Any]] = None
    on_step_complete: Optional[Callable[[Step, Any], Any]] = None
    on_error: Optional[Callable[[BaseException, Optional[Step]], Any]] = None

    @field_validator("steps")
    @classmethod
    def validate_unique_step_ids(cls, v: list[Step]) -> list[Step]:
        """Ensure all step IDs are unique."""
        ids = [step.id for step in v]
        if len(ids) != len(set(ids)):
            duplicates = [x for x in ids if ids.count(x) > 1]
            raise ValueError(f"Duplicate step IDs found: {set(duplicates)}")
        return v

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_root_steps(self) -> list[Step]:
        """Steps with no dependencies (entry points)."""
        return [step for step in self.steps if not step.dependencies]


# ==================== Runtime State ====================


class ChainState(BaseModel):
    """Mutable record-keeping state of one workflow execution."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    current_step: int = 0
    total_steps: int = 0
    status: ChainStatus = ChainStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(default=None, description="Milliseconds")

    variables: dict[str, Any] = Field(default_factory=dict)
    responses: dict[str, Response] = Field(default_factory=dict)
    validations: dict[str, ValidationResult] = Field(default_factory=dict)
    errors: list[BaseException] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    """Outcome of running one step."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    step_id: str
    success: bool = True
    skipped: bool = False
    response: Optional[Response] = None
    validation: Optional[ValidationResult] = None
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0


# ==================== Execution ====================


class ExecutionOptions(BaseModel):
    """Options for one execute()/execute_workflow() call. Delays and timeouts are in seconds."""

    model_config = ConfigDict(extra="forbid")

    mode: ExecutionMode = Field(default=ExecutionMode.SEQUENTIAL)
    max_concurrency: Optional[int] = Field(default=None, ge=1, description="Parallel chunk size; default all")
    batch_size: Optional[int] = Field(default=None, ge=1, description="Batch size; default from settings")
    delay_between_requests: float = Field(default=0.0, ge=0)
    delay_between_batches: float = Field(default=0.0, ge=0)
    stop_on_error: bool = Field(default=False)
    timeout: Optional[float] = Field(default=None, gt=0)
    validate_responses: bool = Field(default=False)
    collect_metrics: bool = Field(default=False)


class ExecutionMetrics(BaseModel):
    """Post-run performance summary. Times are milliseconds, rates are percentages."""

    avg_response_time: float = 0.0
    min_response_time: float = 0.0
    max_response_time: float = 0.0
    total_data_transferred: int = 0
    requests_per_second: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    status_code_distribution: dict[int, int] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Aggregated outcome of one execute()/execute_workflow() call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    mode: ExecutionMode
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    skipped_requests: int = 0

    responses: dict[str, Response] = Field(default_factory=dict)
    validations: dict[str, ValidationResult] = Field(default_factory=dict)
    errors: dict[str, BaseException] = Field(default_factory=dict)
    unscheduled: list[str] = Field(default_factory=list, description="Workflow steps no level could hold")

    metrics: Optional[ExecutionMetrics] = None
    duration: float = Field(default=0.0, description="Milliseconds")
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    cancelled: bool = False

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
