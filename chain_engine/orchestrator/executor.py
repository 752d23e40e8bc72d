"""
Chain executor.

Manages one execution run from start to result, including:
- Option validation and strategy selection
- Sequential, bounded-parallel and batched request dispatch
- Dependency-leveled workflow execution over a ChainContext
- Per-item timeouts, step retries and validation
- Cooperative cancellation and the finished-result registry
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union
from uuid import uuid4

from pydantic import ValidationError

from chain_engine.config.settings import Settings, get_settings
from chain_engine.context.chain import ChainContext
from chain_engine.context.registry import ChainRegistry
from chain_engine.core.cancellation import CancellationToken
from chain_engine.core.dag import LevelingResult, level_steps
from chain_engine.core.exceptions import (
    CancellationError,
    ChainEngineError,
    ConfigurationError,
    DependencyError,
    HookError,
    ItemError,
    ItemTimeoutError,
    ValidationFailedError,
)
from chain_engine.core.models import (
    ExecutionMode,
    ExecutionOptions,
    ExecutionResult,
    RequestDescriptor,
    Step,
    StepResult,
    Workflow,
    utcnow,
)
from chain_engine.core.state_machine import ExecutionStatus, compute_execution_status
from chain_engine.orchestrator.handlers import StepHandlerRegistry, StepRuntime
from chain_engine.orchestrator.metrics import ResultAggregator
from chain_engine.transport.base import Reporter, Transport, Validator, maybe_await
from chain_engine.transport.reporter import EventEmitter

logger = logging.getLogger(__name__)


OptionsInput = Union[ExecutionOptions, Mapping[str, Any], None]
ItemRunner = Callable[
    [list[RequestDescriptor], ExecutionOptions, ExecutionResult, CancellationToken],
    Awaitable[None],
]


class Executor:
    """
    Executes request lists and workflows.

    Responsibilities:
    - Validate options before anything is dispatched
    - Dispatch items and record responses, validations and errors per key
    - Run workflow levels in order and the steps of a level concurrently
    - Emit lifecycle events to the reporter without waiting on it
    - Keep results until the caller removes them
    """

    def __init__(
        self,
        transport: Transport,
        validator: Optional[Validator] = None,
        reporter: Optional[Reporter] = None,
        registry: Optional[ChainRegistry] = None,
        settings: Optional[Settings] = None,
        handlers: Optional[StepHandlerRegistry] = None,
    ):
        self.transport = transport
        self.validator = validator
        self.settings = settings or get_settings()
        self.registry = registry or ChainRegistry()
        self.handlers = handlers or StepHandlerRegistry()
        self.events = EventEmitter(reporter)
        self.aggregator = ResultAggregator()

        self._tokens: dict[str, CancellationToken] = {}
        self._results: dict[str, ExecutionResult] = {}

    # ==================== Request Lists ====================

    async def execute(
        self,
        items: Sequence[Union[RequestDescriptor, Mapping[str, Any]]],
        options: OptionsInput = None,
    ) -> ExecutionResult:
        """
        Execute a list of requests under the sequential, parallel or batch strategy.

        Raises:
            ConfigurationError: If the mode is unsupported or the options or
                items are invalid. Nothing has been dispatched at that point.
        """
        opts = self._resolve_options(options)

        runners: dict[ExecutionMode, ItemRunner] = {
            ExecutionMode.SEQUENTIAL: self._run_sequential,
            ExecutionMode.PARALLEL: self._run_parallel,
            ExecutionMode.BATCH: self._run_batch,
        }
        runner = runners.get(opts.mode)
        if runner is None:
            raise ConfigurationError(
                f"Unsupported execution mode '{opts.mode.value}' for execute(); "
                "use execute_workflow() for workflows",
                mode=opts.mode.value,
            )

        requests = self._resolve_items(items)

        execution_id = uuid4().hex
        token = CancellationToken(execution_id)
        result = ExecutionResult(id=execution_id, mode=opts.mode, total_requests=len(requests))
        self._begin(result, token)

        started = time.perf_counter()
        try:
            await runner(requests, opts, result, token)
        finally:
            self._tokens.pop(execution_id, None)

        self._finish(result, opts, token, started)
        return result

    async def _run_sequential(
        self,
        requests: list[RequestDescriptor],
        options: ExecutionOptions,
        result: ExecutionResult,
        token: CancellationToken,
    ) -> None:
        for index, request in enumerate(requests):
            if token.cancelled:
                logger.info(f"Execution {result.id} cancelled before item {index}")
                break

            succeeded = await self._execute_item(request, index, options, result)
            if not succeeded and options.stop_on_error:
                logger.info(f"Execution {result.id} stopped after failed item {index}")
                break

            is_last = index == len(requests) - 1
            if options.delay_between_requests > 0 and not is_last:
                if not await token.sleep(options.delay_between_requests):
                    break

    async def _run_parallel(
        self,
        requests: list[RequestDescriptor],
        options: ExecutionOptions,
        result: ExecutionResult,
        token: CancellationToken,
    ) -> None:
        chunk_size = options.max_concurrency or len(requests) or 1
        if self.settings.executor.max_concurrency is not None:
            chunk_size = min(chunk_size, self.settings.executor.max_concurrency)

        await self._run_chunked(
            requests,
            options,
            result,
            token,
            chunk_size=chunk_size,
            delay=options.delay_between_requests,
        )

    async def _run_batch(
        self,
        requests: list[RequestDescriptor],
        options: ExecutionOptions,
        result: ExecutionResult,
        token: CancellationToken,
    ) -> None:
        await self._run_chunked(
            requests,
            options,
            result,
            token,
            chunk_size=options.batch_size or self.settings.executor.default_batch_size,
            delay=options.delay_between_batches,
            announce=True,
        )

    async def _run_chunked(
        self,
        requests: list[RequestDescriptor],
        options: ExecutionOptions,
        result: ExecutionResult,
        token: CancellationToken,
        chunk_size: int,
        delay: float,
        announce: bool = False,
    ) -> None:
        """Dispatch each chunk concurrently and await it fully before the next."""
        starts = list(range(0, len(requests), chunk_size))

        for chunk_index, start in enumerate(starts):
            if token.cancelled:
                logger.info(f"Execution {result.id} cancelled before chunk {chunk_index}")
                break

            chunk = requests[start:start + chunk_size]
            if announce:
                self.events.emit("batch:start", {
                    "execution_id": result.id,
                    "batch": chunk_index,
                    "size": len(chunk),
                })

            outcomes = await asyncio.gather(*(
                self._execute_item(request, start + offset, options, result)
                for offset, request in enumerate(chunk)
            ))

            if announce:
                self.events.emit("batch:complete", {
                    "execution_id": result.id,
                    "batch": chunk_index,
                    "successful": sum(1 for ok in outcomes if ok),
                    "failed": sum(1 for ok in outcomes if not ok),
                })

            if options.stop_on_error and not all(outcomes):
                logger.info(f"Execution {result.id} stopped after failed chunk {chunk_index}")
                break

            is_last = chunk_index == len(starts) - 1
            if delay > 0 and not is_last:
                if not await token.sleep(delay):
                    break

    async def _execute_item(
        self,
        request: RequestDescriptor,
        index: int,
        options: ExecutionOptions,
        result: ExecutionResult,
    ) -> bool:
        """Send one request, validate it and record the outcome. Never raises."""
        key = f"{result.id}_{index}"
        timeout = request.timeout or options.timeout or self.settings.executor.default_timeout

        self.events.emit("request:start", {
            "execution_id": result.id,
            "key": key,
            "method": request.method,
            "url": request.url,
        })

        error: Optional[ItemError] = None
        try:
            async with asyncio.timeout(timeout):
                response = await self.transport.send(request)
                validation = None
                if options.validate_responses and request.validations and self.validator is not None:
                    validation = await maybe_await(self.validator.validate(response, request.validations))
        except asyncio.TimeoutError:
            error = ItemTimeoutError(f"Request {key} timed out after {timeout}s", key=key, timeout=timeout)
        except Exception as e:
            error = ItemError(f"Request {key} failed: {e}", key=key, url=request.url)
            error.__cause__ = e
        else:
            result.responses[key] = response
            if validation is not None:
                result.validations[key] = validation
                if not validation.valid:
                    error = ValidationFailedError(
                        f"Validation failed for {key}: {'; '.join(validation.errors)}",
                        errors=validation.errors,
                        key=key,
                    )

        if error is None:
            result.successful_requests += 1
            self.events.emit("request:success", {
                "execution_id": result.id,
                "key": key,
                "status": response.status,
                "duration": response.duration,
            })
            return True

        result.failed_requests += 1
        result.errors[key] = error
        logger.warning(f"Request {key} failed: {error}")
        self.events.emit("request:error", {
            "execution_id": result.id,
            "key": key,
            "error": str(error),
        })
        return False

    # ==================== Workflows ====================

    async def execute_workflow(
        self,
        workflow: Union[Workflow, Mapping[str, Any]],
        options: OptionsInput = None,
    ) -> ExecutionResult:
        """
        Execute a workflow level by level.

        Steps within a level run concurrently; levels run in order. Steps that
        cannot be leveled are recorded as DependencyError failures.

        Raises:
            ConfigurationError: If the workflow or options are invalid
        """
        opts = self._resolve_options(options)
        workflow = self._resolve_workflow(workflow)

        execution_id = uuid4().hex
        context = self.registry.create_context(execution_id)
        context.initialize(workflow)
        token = context.cancellation_token

        result = ExecutionResult(
            id=execution_id,
            mode=ExecutionMode.WORKFLOW,
            total_requests=len(workflow.steps),
        )
        self._begin(result, token, workflow=workflow.name)

        started = time.perf_counter()
        try:
            await context.start()

            leveling = level_steps(workflow.steps)
            await self._record_unscheduled(leveling, context, result)

            for level_index, level in enumerate(leveling.levels):
                if token.cancelled:
                    logger.info(f"Workflow {workflow.name} cancelled before level {level_index}")
                    break

                outcomes = await asyncio.gather(*(
                    self._execute_step(step, context, opts, token, result) for step in level
                ))

                if opts.stop_on_error and self._level_halts(level, outcomes):
                    logger.warning(f"Workflow {workflow.name} stopped after level {level_index}")
                    break

            await context.complete()
        finally:
            self._tokens.pop(execution_id, None)

        hook_errors = [error for error in context.get_errors() if isinstance(error, HookError)]
        for error in hook_errors:
            result.errors[f"{execution_id}:{error.context.get('hook', 'hook')}"] = error

        self._finish(result, opts, token, started, hook_failed=bool(hook_errors))
        return result

    async def _record_unscheduled(
        self,
        leveling: LevelingResult,
        context: ChainContext,
        result: ExecutionResult,
    ) -> None:
        known = {step.id for step in context.workflow.steps}
        result.unscheduled = [step.id for step in leveling.unscheduled]
        for step in leveling.unscheduled:
            error = DependencyError(step.id, missing=[d for d in step.dependencies if d not in known])
            result.failed_requests += 1
            result.errors[step.id] = error
            context.add_error(error, step_id=step.id)
            await self._call_hook(context.workflow.on_error, error, step)

    @staticmethod
    def _level_halts(level: list[Step], outcomes: Sequence[StepResult]) -> bool:
        return any(
            not outcome.success and not step.continue_on_error
            for step, outcome in zip(level, outcomes)
        )

    async def _execute_step(
        self,
        step: Step,
        context: ChainContext,
        options: ExecutionOptions,
        token: CancellationToken,
        result: ExecutionResult,
    ) -> StepResult:
        """Run one top-level step and record its outcome on the context and result."""
        workflow = context.workflow
        base_payload = {"execution_id": result.id, "step_id": step.id, "type": step.type.value}

        if context.should_skip_step(step):
            step_result = StepResult(step_id=step.id, skipped=True)
            context.save_step_result(step.id, step_result)
            context.increment_step()
            result.skipped_requests += 1
            logger.info(f"Step {step.id} skipped")
            self.events.emit("step:skip", base_payload)
            return step_result

        self.events.emit("step:start", base_payload)
        step_result = await self._run_step(step, context, options, token)

        context.save_step_result(step.id, step_result)
        context.increment_step()

        response = context.get_response(step.id)
        if response is not None:
            result.responses[step.id] = response
        validation = context.get_validation(step.id)
        if validation is not None:
            result.validations[step.id] = validation

        if step_result.success:
            result.successful_requests += 1
            self.events.emit("step:complete", {
                **base_payload,
                "attempts": step_result.attempts,
                "duration": step_result.duration_ms,
            })
            await self._call_hook(workflow.on_step_complete, step, step_result)
        else:
            result.failed_requests += 1
            result.errors[step.id] = step_result.error
            context.add_error(step_result.error, step_id=step.id)
            self.events.emit("step:error", {**base_payload, "error": str(step_result.error)})
            await self._call_hook(workflow.on_error, step_result.error, step)

        return step_result

    async def _run_step(
        self,
        step: Step,
        context: ChainContext,
        options: ExecutionOptions,
        token: CancellationToken,
    ) -> StepResult:
        """
        Run a step's handler with timeout and retries. Never raises.

        Timeout precedence: step, then options, then settings.
        """
        handler = self.handlers.get(step.type)
        runtime = StepRuntime(
            transport=self.transport,
            options=options,
            token=token,
            run_step=functools.partial(self._run_step, options=options, token=token),
            validator=self.validator,
        )
        timeout = step.timeout or options.timeout or self.settings.executor.default_timeout
        max_attempts = step.retries + 1

        started_at = utcnow()
        clock = time.perf_counter()
        error: Optional[BaseException] = None
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            try:
                async with asyncio.timeout(timeout):
                    outcome = await handler(step, context, runtime)
            except asyncio.TimeoutError:
                error = ItemTimeoutError(
                    f"Step '{step.id}' timed out after {timeout}s",
                    step_id=step.id,
                    timeout=timeout,
                )
            except CancellationError as e:
                error = e
                break
            except ChainEngineError as e:
                error = e
            except Exception as e:
                error = ItemError(f"Step '{step.id}' failed: {e}", step_id=step.id)
                error.__cause__ = e
            else:
                return outcome.model_copy(update={
                    "attempts": attempt,
                    "started_at": started_at,
                    "finished_at": utcnow(),
                    "duration_ms": (time.perf_counter() - clock) * 1000,
                })

            if attempt < max_attempts:
                delay = self._retry_delay(attempt)
                logger.info(f"Retrying step {step.id}, attempt {attempt + 1}/{max_attempts} in {delay:.2f}s")
                if not await token.sleep(delay):
                    break

        logger.error(f"Step {step.id} failed after {attempt} attempt(s): {error}")
        return StepResult(
            step_id=step.id,
            success=False,
            error=error,
            attempts=attempt,
            started_at=started_at,
            finished_at=utcnow(),
            duration_ms=(time.perf_counter() - clock) * 1000,
        )

    def _retry_delay(self, attempt: int) -> float:
        """Exponential backoff for the given failed attempt (1-based)."""
        retry = self.settings.retry
        delay = min(retry.initial_delay * retry.exponential_base ** (attempt - 1), retry.max_delay)
        if retry.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    async def _call_hook(self, hook: Optional[Callable[..., Any]], *args: Any) -> None:
        if hook is None:
            return
        try:
            await maybe_await(hook(*args))
        except Exception as e:
            logger.warning(f"Workflow hook {getattr(hook, '__name__', hook)!r} failed: {e}")

    # ==================== Cancellation ====================

    def abort(self, execution_id: str) -> bool:
        """
        Stop dispatching further work for a run.

        Already dispatched operations finish on their own. Returns False if
        the run is unknown, finished or already aborted.
        """
        token = self._tokens.get(execution_id)
        if token is None:
            return False

        tripped = token.cancel("aborted")
        context = self.registry.get_context(execution_id)
        if context is not None:
            context.cancel("aborted")

        if tripped:
            logger.info(f"Execution {execution_id} aborted")
            self.events.emit("execution:abort", {"execution_id": execution_id})
        return tripped

    def abort_all(self) -> int:
        return sum(1 for execution_id in list(self._tokens) if self.abort(execution_id))

    def get_active_executions(self) -> list[str]:
        return list(self._tokens)

    # ==================== Results ====================

    def get_execution_result(self, execution_id: str) -> Optional[ExecutionResult]:
        return self._results.get(execution_id)

    def remove_execution_result(self, execution_id: str) -> bool:
        return self._results.pop(execution_id, None) is not None

    def clear_results(self) -> None:
        self._results.clear()

    # ==================== Helpers ====================

    def _resolve_options(self, options: OptionsInput) -> ExecutionOptions:
        if options is None:
            return ExecutionOptions()
        if isinstance(options, ExecutionOptions):
            return options
        try:
            return ExecutionOptions.model_validate(dict(options))
        except (ValidationError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid execution options: {e}") from e

    def _resolve_items(
        self,
        items: Sequence[Union[RequestDescriptor, Mapping[str, Any]]],
    ) -> list[RequestDescriptor]:
        try:
            return [
                item if isinstance(item, RequestDescriptor) else RequestDescriptor.model_validate(item)
                for item in items
            ]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid request item: {e}") from e

    def _resolve_workflow(self, workflow: Union[Workflow, Mapping[str, Any]]) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        try:
            return Workflow.model_validate(workflow)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid workflow: {e}") from e

    def _begin(self, result: ExecutionResult, token: CancellationToken, **payload: Any) -> None:
        self._tokens[result.id] = token
        self._results[result.id] = result

        logger.info(f"Execution {result.id} started: mode={result.mode.value}, items={result.total_requests}")
        self.events.emit("execution:start", {
            "execution_id": result.id,
            "mode": result.mode.value,
            "total": result.total_requests,
            **payload,
        })

    def _finish(
        self,
        result: ExecutionResult,
        options: ExecutionOptions,
        token: CancellationToken,
        started: float,
        hook_failed: bool = False,
    ) -> None:
        result.duration = (time.perf_counter() - started) * 1000
        result.completed_at = utcnow()
        result.cancelled = token.cancelled
        result.status = compute_execution_status(result.successful_requests, result.failed_requests)
        # A failed setup or teardown hook never leaves the run at success
        if hook_failed:
            result.status = ExecutionStatus.PARTIAL if result.successful_requests else ExecutionStatus.FAILED

        if options.collect_metrics:
            result.metrics = self.aggregator.calculate(result)

        logger.info(
            f"Execution {result.id} finished: {result.status.value} "
            f"({result.successful_requests} ok, {result.failed_requests} failed, "
            f"{result.skipped_requests} skipped) in {result.duration:.0f}ms"
        )
        self.events.emit("execution:complete", {
            "execution_id": result.id,
            "status": result.status.value,
            "successful": result.successful_requests,
            "failed": result.failed_requests,
            "duration": result.duration,
            "cancelled": result.cancelled,
        })
