"""
Unit tests for the chain context and its registry.
"""

import asyncio

import pytest

from chain_engine.context import ChainContext, ChainRegistry
from chain_engine.core.exceptions import (
    ConfigurationError,
    HookError,
    InvalidStateTransitionError,
    ItemError,
    ResponseNotFoundError,
)
from chain_engine.core.models import Response, Step, StepResult, ValidationResult, Workflow
from chain_engine.core.state_machine import ChainStatus


@pytest.fixture
def workflow() -> Workflow:
    return Workflow(
        name="Context Workflow",
        variables={"base": "https://api.test", "nested": {"ids": [1, 2]}},
        steps=[
            Step(id="a", type="delay", config={"seconds": 0}),
            Step(id="b", type="delay", config={"seconds": 0}, dependencies=["a"]),
        ],
    )


@pytest.fixture
def context(workflow) -> ChainContext:
    ctx = ChainContext("ctx-1")
    ctx.initialize(workflow)
    return ctx


class TestLifecycle:
    """Tests for initialize/start/complete/cancel."""

    def test_initialize_seeds_state(self, context, workflow):
        """Test initialization copies variables and counts steps."""
        state = context.get_state()

        assert state.total_steps == 2
        assert state.status == ChainStatus.PENDING
        assert context.get_variable("base") == "https://api.test"

        context.get_variable("nested")["ids"].append(3)
        assert workflow.variables["nested"]["ids"] == [1, 2]

    def test_initialize_twice_rejected(self, context, workflow):
        with pytest.raises(ConfigurationError):
            context.initialize(workflow)

    @pytest.mark.asyncio
    async def test_start_requires_workflow(self):
        with pytest.raises(ConfigurationError):
            await ChainContext("bare").start()

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, context):
        await context.start()

        with pytest.raises(InvalidStateTransitionError):
            await context.start()

    @pytest.mark.asyncio
    async def test_complete_without_errors(self, context):
        """Test a clean run completes with timing recorded."""
        await context.start()
        assert context.is_running()
        assert context.duration is not None

        await context.complete()

        state = context.get_state()
        assert context.is_completed()
        assert state.end_time is not None
        assert state.duration is not None and state.duration >= 0

    @pytest.mark.asyncio
    async def test_complete_before_start_rejected(self, context):
        with pytest.raises(InvalidStateTransitionError):
            await context.complete()

    @pytest.mark.asyncio
    async def test_errors_without_successes_fail(self, context):
        """Test the chain fails when errors exist and nothing succeeded."""
        await context.start()
        context.save_step_result("a", StepResult(step_id="a", success=False))
        context.add_error(ItemError("boom"), step_id="a")

        await context.complete()

        assert context.is_failed()

    @pytest.mark.asyncio
    async def test_errors_with_a_success_complete(self, context):
        """Test any successful step keeps the chain completed."""
        await context.start()
        context.save_step_result("a", StepResult(step_id="a"))
        context.save_step_result("b", StepResult(step_id="b", success=False))
        context.add_error(ItemError("boom"))

        await context.complete()

        assert context.is_completed()
        assert context.successful_steps == 1

    @pytest.mark.asyncio
    async def test_skipped_steps_are_not_successes(self, context):
        context.save_step_result("a", StepResult(step_id="a", skipped=True))
        assert context.successful_steps == 0

    @pytest.mark.asyncio
    async def test_setup_and_teardown_failures_are_accumulated(self):
        """Test hook failures are recorded, never raised."""

        async def broken():
            raise RuntimeError("hook down")

        workflow = Workflow(
            name="Hooks",
            steps=[Step(id="a", type="delay", config={"seconds": 0})],
            setup=broken,
            teardown=broken,
        )
        context = ChainContext("hooks")
        context.initialize(workflow)

        await context.start()
        await context.complete()

        errors = context.get_errors()
        assert [e.context["hook"] for e in errors] == ["setup", "teardown"]
        assert all(isinstance(e, HookError) for e in errors)
        assert isinstance(errors[0].__cause__, RuntimeError)
        assert context.is_failed()

    @pytest.mark.asyncio
    async def test_sync_setup_and_teardown(self):
        """Test plain functions work as setup and teardown hooks."""
        calls = []

        workflow = Workflow(
            name="Sync Hooks",
            steps=[Step(id="a", type="delay", config={"seconds": 0})],
            setup=lambda: calls.append("setup"),
            teardown=lambda: calls.append("teardown"),
        )
        context = ChainContext("sync-hooks")
        context.initialize(workflow)

        await context.start()
        context.save_step_result("a", StepResult(step_id="a"))
        await context.complete()

        assert calls == ["setup", "teardown"]
        assert not context.has_errors()
        assert context.is_completed()

    @pytest.mark.asyncio
    async def test_cancel(self, context):
        """Test cancel trips the token and is a no-op afterwards."""
        await context.start()

        assert context.cancel("user request")
        assert context.is_cancelled()
        assert context.cancellation_token.cancelled
        assert not context.cancel()

        # complete() leaves a cancelled chain alone
        await context.complete()
        assert context.is_cancelled()

    def test_cancel_from_pending(self, context):
        assert context.cancel()
        assert context.status == ChainStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_reset(self, context):
        await context.start()
        context.set_conditional_flag("f", True)
        context.save_step_result("a", StepResult(step_id="a"))
        context.cancel()

        context.reset()

        assert context.status == ChainStatus.PENDING
        assert not context.cancellation_token.cancelled
        assert context.get_conditional_flag("f") is None
        assert not context.has_step_result("a")
        assert context.get_variable("base") == "https://api.test"


class TestReadiness:
    """Tests for dependency readiness and conditions."""

    def test_is_step_ready(self, context, workflow):
        step_b = workflow.get_step("b")

        assert not context.is_step_ready(step_b)
        context.save_step_result("a", StepResult(step_id="a", success=False))
        assert context.is_step_ready(step_b)

    def test_should_skip_step(self, context):
        run = Step(id="r", type="delay", config={"seconds": 0}, condition=lambda ctx: True)
        skip = Step(id="s", type="delay", config={"seconds": 0}, condition=lambda ctx: False)
        plain = Step(id="p", type="delay", config={"seconds": 0})

        assert not context.should_skip_step(run)
        assert context.should_skip_step(skip)
        assert not context.should_skip_step(plain)

    def test_throwing_condition_skips(self, context, caplog):
        def explode(ctx):
            raise ValueError("bad condition")

        step = Step(id="x", type="delay", config={"seconds": 0}, condition=explode)

        assert context.should_skip_step(step)
        assert "bad condition" in caplog.text

    def test_condition_sees_context(self, context):
        context.set_variable("enabled", True)
        step = Step(
            id="x",
            type="delay",
            config={"seconds": 0},
            condition=lambda ctx: ctx.get_variable("enabled"),
        )

        assert not context.should_skip_step(step)


class TestStores:
    """Tests for variables, responses, flags and counters."""

    def test_extract_value(self, context):
        context.save_response("login", Response(status=200, body={"data": {"token": "t-1"}}))

        value = context.extract_value("login", "$.data.token", "token")

        assert value == "t-1"
        assert context.get_variable("token") == "t-1"
        assert context.get_extracted_value("token") == "t-1"

    def test_extract_value_no_match_stores_none(self, context):
        context.save_response("r", Response(status=200, body={}))

        assert context.extract_value("r", "$.nope", "v") is None
        assert context.has_variable("v")

    def test_extract_value_missing_response(self, context):
        with pytest.raises(ResponseNotFoundError) as exc_info:
            context.extract_value("ghost", "$.a", "a")

        assert isinstance(exc_info.value, KeyError)
        assert str(exc_info.value) == "Response 'ghost' not found"

    def test_resolve(self, context):
        context.set_variable("id", 9)

        assert context.resolve("{{ base }}/users/{{ id }}") == "https://api.test/users/9"
        assert context.resolve({"ids": "{{ nested.ids }}"}) == {"ids": [1, 2]}

    def test_validations(self, context):
        context.save_validation("r", ValidationResult(valid=True))
        assert context.get_validation("r").valid
        assert context.get_validation("other") is None

    def test_loop_counters(self, context):
        context.initialize_loop("poll")
        assert context.increment_loop("poll") == 1
        assert context.increment_loop("poll") == 2
        assert context.get_loop_counter("poll") == 2
        assert context.get_loop_counter("other") == 0

    def test_progress(self, context):
        assert context.progress == 0
        context.increment_step()
        assert context.progress == 50
        context.set_current_step(2)
        assert context.progress == 100

    def test_metadata(self, context):
        context.set_metadata("owner", "qa")
        assert context.get_metadata("owner") == "qa"
        assert context.get_metadata() == {"owner": "qa"}

    def test_get_state_is_a_copy(self, context):
        state = context.get_state()
        state.variables["base"] = "changed"

        assert context.get_variable("base") == "https://api.test"


class TestParallelOperations:
    """Tests for registered concurrent work."""

    @pytest.mark.asyncio
    async def test_wait_for_parallel_operations(self, context):
        done = []

        async def work(name, delay):
            await asyncio.sleep(delay)
            done.append(name)

        context.register_parallel_operation("slow", work("slow", 0.02))
        context.register_parallel_operation("fast", work("fast", 0))

        await context.wait_for_parallel_operations()

        assert sorted(done) == ["fast", "slow"]
        assert context.pending_operations == []

    @pytest.mark.asyncio
    async def test_failures_do_not_raise(self, context):
        async def fail():
            raise RuntimeError("nope")

        future = context.register_parallel_operation("f", fail())

        await context.wait_for_parallel_operations(["f"])

        assert isinstance(future.exception(), RuntimeError)

    @pytest.mark.asyncio
    async def test_complete_waits_for_operations(self, context):
        finished = asyncio.Event()

        async def work():
            await asyncio.sleep(0.01)
            finished.set()

        await context.start()
        context.register_parallel_operation("w", work())
        await context.complete()

        assert finished.is_set()


class TestSnapshots:
    """Tests for clone/export/import."""

    def test_export_import_round_trip(self, context):
        """Test variables, flags, counters and metadata survive a round trip by value."""
        context.set_variable("user", {"id": 1, "roles": ["admin"]})
        context.set_conditional_flag("is_admin", True)
        context.initialize_loop("retries", 2)
        context.set_metadata("suite", "smoke")
        context.save_response("r", Response(status=200, body={"v": 5}))
        context.extract_value("r", "$.v", "v")

        exported = context.export()
        exported["state"]["variables"]["user"]["roles"].append("mutated")

        fresh = ChainContext("ctx-2")
        fresh.import_state(context.export())

        assert fresh.variables == context.variables
        assert fresh.get_conditional_flag("is_admin") is True
        assert fresh.get_loop_counter("retries") == 2
        assert fresh.get_metadata("suite") == "smoke"
        assert fresh.get_extracted_value("v") == 5
        assert context.get_variable("user")["roles"] == ["admin"]

    def test_export_shape(self, context):
        exported = context.export()

        assert exported["state"]["id"] == "ctx-1"
        assert exported["state"]["status"] == "pending"
        assert exported["state"]["total_steps"] == 2
        assert exported["step_results"] == []

    def test_clone(self, context):
        context.set_variable("x", 1)
        context.save_step_result("a", StepResult(step_id="a"))

        cloned = context.clone()
        cloned.set_variable("x", 2)

        assert cloned.id == "ctx-1_clone"
        assert cloned.workflow is None
        assert cloned.has_step_result("a")
        assert context.get_variable("x") == 1


class TestChainRegistry:
    """Tests for the context registry."""

    def test_create_and_get(self):
        registry = ChainRegistry()

        context = registry.create_context("run-1")

        assert registry.get_context("run-1") is context
        assert registry.active_context is context
        assert "run-1" in registry
        assert registry.list_contexts() == ["run-1"]

    def test_duplicate_id_rejected(self):
        registry = ChainRegistry()
        registry.create_context("run-1")

        with pytest.raises(ConfigurationError):
            registry.create_context("run-1")

    def test_remove(self):
        registry = ChainRegistry()
        registry.create_context("run-1")

        assert registry.remove_context("run-1")
        assert not registry.remove_context("run-1")
        assert registry.active_context is None

    def test_set_active_context(self):
        registry = ChainRegistry()
        first = registry.create_context("one")
        registry.create_context("two")

        registry.set_active_context("one")

        assert registry.active_context is first
        with pytest.raises(ConfigurationError):
            registry.set_active_context("three")

    @pytest.mark.asyncio
    async def test_running_contexts_and_cancel_all(self, workflow):
        registry = ChainRegistry()
        running = registry.create_context("running")
        running.initialize(workflow)
        await running.start()
        registry.create_context("idle")

        assert registry.get_running_contexts() == [running]
        assert registry.cancel_all() == 2
        assert running.is_cancelled()

        registry.clear_all()
        assert len(registry) == 0
