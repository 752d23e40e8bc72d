"""
Per-run chain context.

Holds the mutable state of one workflow execution: variables, stored
responses and validations, step results, flags, loop counters and the
status lifecycle. Stores are last-write-wins maps with no history.
"""

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Iterable, Optional

from chain_engine.core.cancellation import CancellationToken
from chain_engine.core.exceptions import (
    ConfigurationError,
    HookError,
    InvalidStateTransitionError,
    ResponseNotFoundError,
)
from chain_engine.core.models import (
    ChainState,
    Response,
    Step,
    StepResult,
    ValidationResult,
    Workflow,
    utcnow,
)
from chain_engine.core.state_machine import (
    ChainStateMachine,
    ChainStatus,
    compute_final_chain_status,
)
from chain_engine.query.evaluator import MISSING, PathExtractor
from chain_engine.template.resolver import TemplateResolver
from chain_engine.transport.base import maybe_await

logger = logging.getLogger(__name__)


class ChainContext:
    """
    Mutable state for one workflow execution.

    Lifecycle: initialize() once, start(), then complete() or cancel().
    Setup and teardown failures are accumulated into the error list and
    never raised out of start()/complete().
    """

    def __init__(self, context_id: str, extractor: Optional[PathExtractor] = None):
        self._state = ChainState(id=context_id)
        self._machine = ChainStateMachine()
        self._workflow: Optional[Workflow] = None
        self._extractor = extractor or PathExtractor()

        self._step_results: dict[str, Any] = {}
        self._extracted_values: dict[str, Any] = {}
        self._conditional_flags: dict[str, bool] = {}
        self._loop_counters: dict[str, int] = {}
        self._parallel_tasks: dict[str, asyncio.Future] = {}

        self._cancellation_token = CancellationToken(context_id)
        self._start_clock: Optional[float] = None

    # ==================== Lifecycle ====================

    @property
    def id(self) -> str:
        return self._state.id

    @property
    def workflow(self) -> Optional[Workflow]:
        return self._workflow

    @property
    def cancellation_token(self) -> CancellationToken:
        return self._cancellation_token

    def initialize(self, workflow: Workflow) -> None:
        """Bind a workflow and seed variables. May be called once."""
        if self._workflow is not None:
            raise ConfigurationError(
                f"Chain context '{self.id}' is already initialized",
                context_id=self.id,
            )

        self._workflow = workflow
        self._state.total_steps = len(workflow.steps)
        self._state.status = self._machine.state

        for key, value in workflow.variables.items():
            self._state.variables[key] = copy.deepcopy(value)

        logger.info(f"Chain context initialized: {workflow.name}")

    async def start(self) -> None:
        """Transition pending -> running and run the setup hook."""
        workflow = self._require_workflow()
        self._transition(ChainStatus.RUNNING, reason="start")

        self._state.start_time = utcnow()
        self._start_clock = time.perf_counter()

        if workflow.setup is not None:
            try:
                await maybe_await(workflow.setup())
            except Exception as e:
                logger.error(f"Setup failed: {e}")
                self._state.errors.append(self._hook_error("setup", e))

        logger.info(f"Chain started: {workflow.name}")

    async def complete(self) -> None:
        """
        Wait for outstanding parallel work, run teardown and settle the status.

        The chain fails only if errors accumulated and no step succeeded.
        """
        workflow = self._require_workflow()

        if self._machine.is_terminal:
            logger.debug(f"Chain {self.id} already {self.status.value}; complete() ignored")
            return
        if not self._machine.is_active:
            raise InvalidStateTransitionError(
                self.status.value, ChainStatus.COMPLETED.value, "chain was never started"
            )

        await self.wait_for_parallel_operations()

        if workflow.teardown is not None:
            try:
                await maybe_await(workflow.teardown())
            except Exception as e:
                logger.error(f"Teardown failed: {e}")
                self._state.errors.append(self._hook_error("teardown", e))

        # cancel() may have run while awaiting
        if self._machine.is_terminal:
            return

        final = compute_final_chain_status(len(self._state.errors), self.successful_steps)
        self._transition(final, reason="complete")
        self._finish_timing()

        logger.info(f"Chain completed: {workflow.name} ({self._state.duration:.0f}ms)")

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Force the cancelled status and drop outstanding parallel work.

        In-flight operations are not interrupted; they are only forgotten.
        Returns False if the chain had already reached a terminal status.
        """
        if self._machine.is_terminal:
            return False

        self._transition(ChainStatus.CANCELLED, reason=reason or "cancel")
        self._cancellation_token.cancel(reason)
        self._parallel_tasks.clear()
        if self._state.start_time is not None:
            self._finish_timing()

        logger.info(f"Chain cancelled: {self.id}")
        return True

    def reset(self) -> None:
        """Return to pending, keeping the workflow, variables and responses."""
        self._machine.reset()
        self._state.status = self._machine.state
        self._state.current_step = 0
        self._state.start_time = None
        self._state.end_time = None
        self._state.duration = None
        self._state.errors = []
        self._start_clock = None

        self._step_results.clear()
        self._extracted_values.clear()
        self._conditional_flags.clear()
        self._loop_counters.clear()
        self._parallel_tasks.clear()
        self._cancellation_token = CancellationToken(self.id)

    def _require_workflow(self) -> Workflow:
        if self._workflow is None:
            raise ConfigurationError("Workflow not initialized", context_id=self.id)
        return self._workflow

    def _transition(self, to_state: ChainStatus, reason: Optional[str] = None) -> None:
        self._machine.transition(to_state, reason=reason)
        self._state.status = self._machine.state

    def _finish_timing(self) -> None:
        self._state.end_time = utcnow()
        # Computed once, only after both timestamps exist
        if self._state.duration is None and self._start_clock is not None:
            self._state.duration = (time.perf_counter() - self._start_clock) * 1000

    def _hook_error(self, hook: str, error: Exception) -> HookError:
        hook_error = HookError(f"{hook.capitalize()} failed: {error}", hook=hook, context_id=self.id)
        hook_error.__cause__ = error
        return hook_error

    # ==================== Progress ====================

    def set_current_step(self, step_index: int) -> None:
        self._state.current_step = step_index

    def increment_step(self) -> None:
        self._state.current_step += 1

    @property
    def progress(self) -> float:
        """Percentage of steps processed."""
        if self._state.total_steps == 0:
            return 0.0
        return (self._state.current_step / self._state.total_steps) * 100

    # ==================== Readiness ====================

    def is_step_ready(self, step: Step) -> bool:
        """True iff every dependency has a recorded result, successful or not."""
        return all(dep in self._step_results for dep in step.dependencies)

    def should_skip_step(self, step: Step) -> bool:
        """Evaluate the step condition. A condition that raises means skip."""
        if step.condition is None:
            return False
        try:
            return not step.condition(self)
        except Exception as e:
            logger.warning(f"Step condition evaluation failed for '{step.id}': {e}")
            return True

    # ==================== Stores ====================

    def save_step_result(self, step_id: str, result: Any) -> None:
        self._step_results[step_id] = result
        logger.debug(f"Step result saved: {step_id}")

    def get_step_result(self, step_id: str) -> Any:
        return self._step_results.get(step_id)

    def has_step_result(self, step_id: str) -> bool:
        return step_id in self._step_results

    @property
    def successful_steps(self) -> int:
        """Recorded results that are neither failures nor skips."""
        count = 0
        for result in self._step_results.values():
            if isinstance(result, StepResult):
                if result.success and not result.skipped:
                    count += 1
            else:
                count += 1
        return count

    def save_response(self, key: str, response: Response) -> None:
        self._state.responses[key] = response

    def get_response(self, key: str) -> Optional[Response]:
        return self._state.responses.get(key)

    def save_validation(self, key: str, validation: ValidationResult) -> None:
        self._state.validations[key] = validation

    def get_validation(self, key: str) -> Optional[ValidationResult]:
        return self._state.validations.get(key)

    def set_variable(self, key: str, value: Any) -> None:
        self._state.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self._state.variables.get(key, default)

    def has_variable(self, key: str) -> bool:
        return key in self._state.variables

    @property
    def variables(self) -> dict[str, Any]:
        return dict(self._state.variables)

    def resolve(self, template: Any, strict: bool = False) -> Any:
        """Resolve {{ variable.path }} templates against the current variables."""
        return TemplateResolver(
            variables=self._state.variables,
            strict=strict,
            extractor=self._extractor,
        ).resolve(template)

    def extract_value(self, response_key: str, path: str, variable_name: str) -> Any:
        """
        Pull a value out of a stored response body into a variable.

        A path that matches nothing stores and returns None.

        Raises:
            ResponseNotFoundError: If no response is stored under ``response_key``
        """
        response = self._state.responses.get(response_key)
        if response is None:
            raise ResponseNotFoundError(response_key)

        value = self._extractor.extract(response.body, path)
        if value is MISSING:
            value = None

        self._extracted_values[variable_name] = value
        self.set_variable(variable_name, value)

        logger.debug(f"Extracted {variable_name} from {response_key} at {path}")
        return value

    def get_extracted_value(self, variable_name: str) -> Any:
        return self._extracted_values.get(variable_name)

    def set_conditional_flag(self, name: str, value: bool) -> None:
        self._conditional_flags[name] = value

    def get_conditional_flag(self, name: str) -> Optional[bool]:
        return self._conditional_flags.get(name)

    def initialize_loop(self, name: str, count: int = 0) -> None:
        self._loop_counters[name] = count

    def increment_loop(self, name: str) -> int:
        value = self._loop_counters.get(name, 0) + 1
        self._loop_counters[name] = value
        return value

    def get_loop_counter(self, name: str) -> int:
        return self._loop_counters.get(name, 0)

    def set_metadata(self, key: str, value: Any) -> None:
        self._state.metadata[key] = value

    def get_metadata(self, key: Optional[str] = None) -> Any:
        if key is not None:
            return self._state.metadata.get(key)
        return dict(self._state.metadata)

    # ==================== Errors ====================

    def add_error(self, error: BaseException, step_id: Optional[str] = None) -> None:
        self._state.errors.append(error)
        if step_id:
            logger.error(f"Error in step '{step_id}': {error}")

    def get_errors(self) -> list[BaseException]:
        return list(self._state.errors)

    def has_errors(self) -> bool:
        return bool(self._state.errors)

    # ==================== Parallel Operations ====================

    def register_parallel_operation(self, op_id: str, awaitable: Awaitable[Any]) -> asyncio.Future:
        """Track concurrent work so complete() can wait for it."""
        future = asyncio.ensure_future(awaitable)
        self._parallel_tasks[op_id] = future

        def _forget(done: asyncio.Future) -> None:
            if self._parallel_tasks.get(op_id) is done:
                del self._parallel_tasks[op_id]

        future.add_done_callback(_forget)
        return future

    async def wait_for_parallel_operations(self, ids: Optional[Iterable[str]] = None) -> None:
        """Wait for registered operations to settle. Failures are not raised."""
        if ids is None:
            pending = list(self._parallel_tasks.values())
        else:
            pending = [self._parallel_tasks[i] for i in ids if i in self._parallel_tasks]

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def pending_operations(self) -> list[str]:
        return list(self._parallel_tasks)

    # ==================== Status ====================

    @property
    def status(self) -> ChainStatus:
        return self._machine.state

    def is_running(self) -> bool:
        return self.status == ChainStatus.RUNNING

    def is_completed(self) -> bool:
        return self.status == ChainStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status == ChainStatus.FAILED

    def is_cancelled(self) -> bool:
        return self.status == ChainStatus.CANCELLED

    @property
    def duration(self) -> Optional[float]:
        """Milliseconds; live while running."""
        if self._state.duration is not None:
            return self._state.duration
        if self._start_clock is not None:
            return (time.perf_counter() - self._start_clock) * 1000
        return None

    @property
    def history(self):
        return self._machine.history

    def get_state(self) -> ChainState:
        """Snapshot of the state; mutating it does not affect the context."""
        return self._state.model_copy(update={
            "variables": dict(self._state.variables),
            "responses": dict(self._state.responses),
            "validations": dict(self._state.validations),
            "metadata": dict(self._state.metadata),
            "errors": list(self._state.errors),
        })

    # ==================== Snapshots ====================

    def clone(self) -> "ChainContext":
        """Copy stores into a new context. Pending operations and the workflow are not copied."""
        cloned = ChainContext(f"{self.id}_clone", extractor=self._extractor)
        cloned._state = self.get_state()
        cloned._state.id = f"{self.id}_clone"
        cloned._machine = ChainStateMachine(self.status)
        cloned._start_clock = self._start_clock

        cloned._step_results = dict(self._step_results)
        cloned._extracted_values = dict(self._extracted_values)
        cloned._conditional_flags = dict(self._conditional_flags)
        cloned._loop_counters = dict(self._loop_counters)
        return cloned

    def export(self) -> dict[str, Any]:
        """Plain nested snapshot for caller-controlled serialization."""
        state = self._state
        return {
            "state": {
                "id": state.id,
                "current_step": state.current_step,
                "total_steps": state.total_steps,
                "status": state.status.value,
                "start_time": state.start_time.isoformat() if state.start_time else None,
                "end_time": state.end_time.isoformat() if state.end_time else None,
                "duration": state.duration,
                "variables": copy.deepcopy(state.variables),
                "response_count": len(state.responses),
                "validation_count": len(state.validations),
                "error_count": len(state.errors),
                "metadata": copy.deepcopy(state.metadata),
            },
            "step_results": list(self._step_results),
            "extracted_values": copy.deepcopy(self._extracted_values),
            "conditional_flags": dict(self._conditional_flags),
            "loop_counters": dict(self._loop_counters),
        }

    def import_state(self, data: dict[str, Any]) -> None:
        """Restore variables, metadata, extracted values, flags and loop counters from export()."""
        state = data.get("state") or {}

        if "variables" in state:
            self._state.variables = copy.deepcopy(state["variables"])
        if "metadata" in state:
            self._state.metadata = copy.deepcopy(state["metadata"])
        if "current_step" in state:
            self._state.current_step = state["current_step"]
        if "total_steps" in state:
            self._state.total_steps = state["total_steps"]

        if "extracted_values" in data:
            self._extracted_values = copy.deepcopy(data["extracted_values"])
        if "conditional_flags" in data:
            self._conditional_flags = dict(data["conditional_flags"])
        if "loop_counters" in data:
            self._loop_counters = dict(data["loop_counters"])
