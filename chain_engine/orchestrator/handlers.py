"""
Step handlers for the different workflow step types.

A handler receives the step, the chain context and a StepRuntime, and
returns a StepResult. Raising marks the attempt as failed; retries,
timeouts and bookkeeping are the executor's job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from chain_engine.context.chain import ChainContext
from chain_engine.core.cancellation import CancellationToken
from chain_engine.core.exceptions import (
    ConfigurationError,
    ItemError,
    ResponseNotFoundError,
    ValidationFailedError,
)
from chain_engine.core.models import (
    ExecutionOptions,
    RequestDescriptor,
    Response,
    Step,
    StepResult,
    StepType,
    ValidationResult,
)
from chain_engine.transport.base import Transport, Validator, maybe_await

logger = logging.getLogger(__name__)


@dataclass
class StepRuntime:
    """Collaborators a handler may use."""

    transport: Transport
    options: ExecutionOptions
    token: CancellationToken
    run_step: Callable[[Step, ChainContext], Awaitable[StepResult]]
    validator: Optional[Validator] = None


StepHandler = Callable[[Step, ChainContext, StepRuntime], Awaitable[StepResult]]


async def _run_validator(
    runtime: StepRuntime,
    response: Response,
    configs: list[Any],
    step: Step,
) -> ValidationResult:
    if runtime.validator is None:
        raise ConfigurationError(f"Step '{step.id}' needs a validator but none is configured", step_id=step.id)
    return await maybe_await(runtime.validator.validate(response, configs))


def _raise_if_invalid(validation: ValidationResult, step: Step) -> None:
    if not validation.valid:
        raise ValidationFailedError(
            f"Validation failed for step '{step.id}': {'; '.join(validation.errors)}",
            errors=validation.errors,
            step_id=step.id,
        )


async def handle_request(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    """Resolve templates in the request, send it and store the response."""
    config = step.config
    # Validation configs are opaque and reach the validator untouched
    resolved = context.resolve(config.request.model_dump(exclude={"validations"}))
    descriptor = RequestDescriptor.model_validate({**resolved, "validations": config.request.validations})

    logger.info(f"Processing request step: {step.id} {descriptor.method} {descriptor.url}")

    response = await runtime.transport.send(descriptor)
    context.save_response(step.id, response)
    if config.save_as:
        context.save_response(config.save_as, response)

    validation = None
    if runtime.options.validate_responses and descriptor.validations and runtime.validator:
        validation = await _run_validator(runtime, response, descriptor.validations, step)
        context.save_validation(step.id, validation)
        _raise_if_invalid(validation, step)

    return StepResult(step_id=step.id, response=response, validation=validation)


async def handle_validation(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    config = step.config
    response = context.get_response(config.response_id)
    if response is None:
        raise ResponseNotFoundError(config.response_id)

    validation = await _run_validator(runtime, response, config.validations, step)
    context.save_validation(step.id, validation)
    _raise_if_invalid(validation, step)
    return StepResult(step_id=step.id, validation=validation, value=validation.valid)


async def handle_extraction(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    config = step.config
    value = context.extract_value(config.response_id, config.path, config.variable)
    return StepResult(step_id=step.id, value=value)


async def handle_transformation(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    config = step.config
    if config.template is not None:
        value = context.resolve(config.template)
    else:
        value = context.get_variable(config.source)

    if config.func is not None:
        value = await maybe_await(config.func(value))

    context.set_variable(config.target, value)
    return StepResult(step_id=step.id, value=value)


async def handle_condition(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    """Store a predicate outcome as a conditional flag."""
    config = step.config
    if config.predicate is not None:
        outcome = bool(await maybe_await(config.predicate(context)))
    elif "equals" in config.model_fields_set:
        outcome = context.get_variable(config.variable) == config.equals
    else:
        outcome = bool(context.get_variable(config.variable))

    context.set_conditional_flag(config.flag, outcome)
    return StepResult(step_id=step.id, value=outcome)


async def handle_loop(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    """
    Run the nested step up to ``count`` times.

    Stops early when ``until`` returns true or the run is cancelled. A
    failed iteration fails the loop.
    """
    config = step.config
    context.initialize_loop(config.counter, 0)

    for iteration in range(config.count):
        runtime.token.raise_if_cancelled()
        if config.until is not None and await maybe_await(config.until(context)):
            break

        nested = await runtime.run_step(config.step, context)
        if not nested.success:
            error = ItemError(
                f"Loop '{step.id}' failed at iteration {iteration}: {nested.error}",
                step_id=step.id,
                iteration=iteration,
            )
            error.__cause__ = nested.error
            raise error

        context.increment_loop(config.counter)

    return StepResult(step_id=step.id, value=context.get_loop_counter(config.counter))


async def handle_delay(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    completed = await runtime.token.sleep(step.config.seconds)
    if not completed:
        runtime.token.raise_if_cancelled()
    return StepResult(step_id=step.id, value=step.config.seconds)


async def handle_parallel(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    """Run nested steps concurrently and wait for all of them."""
    futures = [
        context.register_parallel_operation(f"{step.id}:{nested.id}", runtime.run_step(nested, context))
        for nested in step.config.steps
    ]
    results: list[StepResult] = await asyncio.gather(*futures)

    failed = [r.step_id for r in results if not r.success]
    if failed:
        raise ItemError(
            f"{len(failed)} of {len(results)} parallel steps failed in '{step.id}'",
            step_id=step.id,
            failed=failed,
        )
    return StepResult(step_id=step.id, value={r.step_id: r.value for r in results})


async def handle_script(step: Step, context: ChainContext, runtime: StepRuntime) -> StepResult:
    value = await maybe_await(step.config.func(context))
    return StepResult(step_id=step.id, value=value)


DEFAULT_HANDLERS: dict[StepType, StepHandler] = {
    StepType.REQUEST: handle_request,
    StepType.VALIDATION: handle_validation,
    StepType.EXTRACTION: handle_extraction,
    StepType.TRANSFORMATION: handle_transformation,
    StepType.CONDITION: handle_condition,
    StepType.LOOP: handle_loop,
    StepType.DELAY: handle_delay,
    StepType.PARALLEL: handle_parallel,
    StepType.SCRIPT: handle_script,
}


class StepHandlerRegistry:
    """Maps step types to handlers. Defaults cover every StepType."""

    def __init__(self, overrides: Optional[dict[StepType, StepHandler]] = None):
        self._handlers: dict[StepType, StepHandler] = dict(DEFAULT_HANDLERS)
        if overrides:
            self._handlers.update(overrides)

    def register(self, step_type: StepType, handler: StepHandler) -> None:
        self._handlers[StepType(step_type)] = handler

    def get(self, step_type: StepType) -> StepHandler:
        handler = self._handlers.get(step_type)
        if handler is None:
            raise ConfigurationError(f"No handler registered for step type '{step_type}'")
        return handler

    def __contains__(self, step_type: StepType) -> bool:
        return step_type in self._handlers
