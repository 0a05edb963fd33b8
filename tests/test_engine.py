# tests/test_engine.py
"""Tests for the plan execution engine."""

import asyncio

import pytest

from chainopt.cache import ResultCache
from chainopt.config import OptimizerConfig
from chainopt.engine import ExecutionEngine, StepProgress, classify_failure
from chainopt.errors import PermanentExecutionError, TransientExecutionError
from chainopt.executor import Executor
from chainopt.planning import PlanConstraints, PlanOptimizer, PlanStep, RetryPolicy
from chainopt.registry import ItemDefinition, ItemRegistry
from chainopt.tracker import PerformanceTracker


class ScriptedExecutor(Executor):
    """
    Executor whose behaviour is scripted per item.

    ``failures[item]`` is raised on every call (or the first ``fail_times``
    calls); everything else returns ``{"item": name}``.
    """

    def __init__(self, failures=None, fail_times=None, delay=0.0):
        self.failures = failures or {}
        self.fail_times = fail_times or {}
        self.delay = delay
        self.calls = []
        self.running = 0
        self.max_running = 0

    async def invoke(self, item_name, payload):
        self.calls.append(item_name)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            error = self.failures.get(item_name)
            if error is not None:
                limit = self.fail_times.get(item_name)
                if limit is None or self.calls.count(item_name) <= limit:
                    raise error
            return {"item": item_name, "payload": payload}
        finally:
            self.running -= 1


@pytest.fixture
def config():
    return OptimizerConfig(backoff_ms=0)


@pytest.fixture
def registry():
    registry = ItemRegistry()
    registry.register(ItemDefinition(name="a", estimated_cost=0.1))
    registry.register(ItemDefinition(name="b", estimated_cost=0.2))
    registry.register(ItemDefinition(name="c", dependencies=("a", "b"), estimated_cost=0.3))
    registry.register(ItemDefinition(name="cached", cacheable=True, estimated_cost=0.5))
    registry.register(ItemDefinition(name="flaky", reliability=0.5))
    return registry


@pytest.fixture
def tracker():
    return PerformanceTracker()


@pytest.fixture
def planner(registry, tracker, config):
    return PlanOptimizer(registry, tracker, config)


def make_engine(registry, tracker, config, executor):
    return ExecutionEngine(registry, executor, ResultCache(), tracker, config)


class TestExecutePlan:
    """Test ExecutionEngine.execute_plan."""

    @pytest.mark.asyncio
    async def test_parallel_grouping(self, registry, tracker, config, planner):
        """A and B run together; C waits for both."""
        executor = ScriptedExecutor(delay=0.01)
        engine = make_engine(registry, tracker, config, executor)

        result = await engine.execute_plan(planner.create_plan("p", ["c"]))

        assert result.success
        assert result.optimization.parallel_steps >= 2
        assert executor.max_running == 2
        assert executor.calls[-1] == "c"
        assert [r.item_name for r in result.step_results] == ["a", "b", "c"]
        assert result.total_cost == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_chain_order(self, registry, tracker, config, planner):
        """Results follow the chain order."""
        for name, dep in (("s1", None), ("s2", "s1"), ("s3", "s2"), ("s4", "s3")):
            registry.register(ItemDefinition(name=name, dependencies=(dep,) if dep else ()))
        engine = make_engine(registry, tracker, config, ScriptedExecutor())

        plan = planner.create_plan("chain", ["s4"])
        result = await engine.execute_plan(plan)

        assert [r.item_name for r in result.step_results] == ["s1", "s2", "s3", "s4"]
        groups = [plan.get_step(r.step_id).parallel_group for r in result.step_results]
        assert groups == [0, 1, 2, 3]
        assert result.optimization.parallel_steps == 0

    @pytest.mark.asyncio
    async def test_results_in_submission_order(self, registry, tracker, config):
        """Slow first step still comes first in the results."""

        class SlowFirst(ScriptedExecutor):
            async def invoke(self, item_name, payload):
                if item_name == "a":
                    await asyncio.sleep(0.05)
                return await super().invoke(item_name, payload)

        planner = PlanOptimizer(registry, tracker, config)
        engine = make_engine(registry, tracker, config, SlowFirst())
        result = await engine.execute_plan(planner.create_plan("p", ["a", "b"]))
        assert [r.item_name for r in result.step_results] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sibling_failure_isolated(self, registry, tracker, config, planner):
        executor = ScriptedExecutor(failures={"a": PermanentExecutionError("boom")})
        engine = make_engine(registry, tracker, config, executor)

        result = await engine.execute_plan(planner.create_plan("p", ["a", "b"]))

        assert not result.success
        assert result.get_step_result("b").success
        assert result.get_step_result("a").error == "boom"

    @pytest.mark.asyncio
    async def test_dependent_of_failed_step_skipped(self, registry, tracker, config, planner):
        executor = ScriptedExecutor(failures={"a": PermanentExecutionError("boom")})
        engine = make_engine(registry, tracker, config, executor)

        result = await engine.execute_plan(planner.create_plan("p", ["c"]))

        c = result.get_step_result("c")
        assert not c.success
        assert c.skipped
        assert "c" not in executor.calls
        assert result.optimization.blocked_steps == 1

    @pytest.mark.asyncio
    async def test_cascade_disabled_runs_dependents(self, registry, tracker, planner):
        config = OptimizerConfig(backoff_ms=0, cascade_on_failure=False)
        executor = ScriptedExecutor(failures={"a": PermanentExecutionError("boom")})
        engine = make_engine(registry, tracker, config, executor)

        result = await engine.execute_plan(planner.create_plan("p", ["c"]))
        assert result.get_step_result("c").success
        assert "c" in executor.calls

    @pytest.mark.asyncio
    async def test_parallelism_disabled(self, registry, tracker):
        config = OptimizerConfig(backoff_ms=0, max_concurrent_steps=1)
        planner = PlanOptimizer(registry, tracker, config)
        executor = ScriptedExecutor(delay=0.01)
        engine = make_engine(registry, tracker, config, executor)

        await engine.execute_plan(planner.create_plan("p", ["a", "b"]))
        assert executor.max_running == 1

    @pytest.mark.asyncio
    async def test_history_recorded(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        plan = planner.create_plan("p", ["a"])
        await engine.execute_plan(plan)
        assert tracker.get_history()[-1].plan_id == plan.plan_id


class TestCaching:
    """Test cache behaviour during execution."""

    @pytest.mark.asyncio
    async def test_second_run_hits_cache(self, registry, tracker, config, planner):
        executor = ScriptedExecutor()
        engine = make_engine(registry, tracker, config, executor)
        plan = planner.create_plan("p", [{"name": "cached", "input": {"q": 1}}])

        first = await engine.execute_plan(plan)
        second = await engine.execute_plan(plan)

        assert not first.step_results[0].cache_hit
        assert second.step_results[0].cache_hit
        assert second.step_results[0].cost == 0
        assert second.step_results[0].duration_ms == config.cache_hit_duration_ms
        assert second.step_results[0].output == first.step_results[0].output
        assert executor.calls == ["cached"]
        assert second.optimization.cache_hits == 1

    @pytest.mark.asyncio
    async def test_hit_count_increments(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        plan = planner.create_plan("p", ["cached"])
        for _ in range(3):
            await engine.execute_plan(plan)
        entry = engine.cache.list_entries()[0]
        assert entry.hit_count == 2

    @pytest.mark.asyncio
    async def test_non_cacheable_item_not_cached(self, registry, tracker, config, planner):
        executor = ScriptedExecutor()
        engine = make_engine(registry, tracker, config, executor)
        plan = planner.create_plan("p", ["a"])
        await engine.execute_plan(plan)
        await engine.execute_plan(plan)
        assert executor.calls == ["a", "a"]
        assert len(engine.cache) == 0

    @pytest.mark.asyncio
    async def test_caching_disabled(self, registry, tracker):
        config = OptimizerConfig(backoff_ms=0, cache_enabled=False)
        planner = PlanOptimizer(registry, tracker, config)
        executor = ScriptedExecutor()
        engine = make_engine(registry, tracker, config, executor)
        plan = planner.create_plan("p", ["cached"])
        await engine.execute_plan(plan)
        await engine.execute_plan(plan)
        assert executor.calls == ["cached", "cached"]

    @pytest.mark.asyncio
    async def test_failures_not_cached(self, registry, tracker, config, planner):
        executor = ScriptedExecutor(failures={"cached": PermanentExecutionError("no")})
        engine = make_engine(registry, tracker, config, executor)
        await engine.execute_plan(planner.create_plan("p", ["cached"]))
        assert len(engine.cache) == 0


class TestRetries:
    """Test retry and failure classification."""

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, registry, tracker, config):
        """max_retries=2 means three attempts."""
        executor = ScriptedExecutor(failures={"a": TransientExecutionError("down")})
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=2, backoff_ms=0))

        result = await engine.execute_step(step)

        assert executor.calls == ["a", "a", "a"]
        assert len(executor.calls) == step.retry_policy.max_attempts
        assert not result.success
        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_recovers_after_retry(self, registry, tracker, config):
        executor = ScriptedExecutor(
            failures={"a": TransientExecutionError("blip", kind="timeout")},
            fail_times={"a": 1},
        )
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=3, backoff_ms=0))

        result = await engine.execute_step(step)
        assert result.success
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_permanent_never_retried(self, registry, tracker, config):
        executor = ScriptedExecutor(failures={"a": PermanentExecutionError("bad input")})
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=5, backoff_ms=0))

        result = await engine.execute_step(step)
        assert executor.calls == ["a"]
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_kind_outside_policy_not_retried(self, registry, tracker, config):
        executor = ScriptedExecutor(failures={"a": TransientExecutionError("x", kind="rate_limited")})
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=2, backoff_ms=0))

        await engine.execute_step(step)
        assert executor.calls == ["a"]

    @pytest.mark.asyncio
    async def test_unclassified_error_not_retried(self, registry, tracker, config):
        executor = ScriptedExecutor(failures={"a": ValueError("bug")})
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=2, backoff_ms=0))

        result = await engine.execute_step(step)
        assert executor.calls == ["a"]
        assert result.error == "bug"

    @pytest.mark.asyncio
    async def test_linear_backoff(self, registry, tracker, config, monkeypatch):
        """The n-th retry waits backoff_ms * n."""
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("chainopt.engine.asyncio.sleep", fake_sleep)
        executor = ScriptedExecutor(failures={"a": TransientExecutionError("down")})
        engine = make_engine(registry, tracker, config, executor)
        step = PlanStep(step_id="s0", item_name="a", retry_policy=RetryPolicy(max_retries=3, backoff_ms=100))

        await engine.execute_step(step)
        assert sleeps == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_retry_bottleneck_and_recommendation(self, registry, tracker, config, planner):
        executor = ScriptedExecutor(
            failures={"flaky": TransientExecutionError("blip")},
            fail_times={"flaky": 2},
        )
        engine = make_engine(registry, tracker, config, executor)
        result = await engine.execute_plan(planner.create_plan("p", ["flaky"]))

        assert result.success
        assert any(b.reason == "retries" and b.retry_count == 2 for b in result.optimization.bottlenecks)
        assert any(r.type == "reliability" and r.priority == "high" for r in result.recommendations)

    def test_classify_failure(self):
        assert classify_failure(TransientExecutionError("x")) == "unavailable"
        assert classify_failure(asyncio.TimeoutError()) == "timeout"
        assert classify_failure(ConnectionResetError()) == "network_error"
        assert classify_failure(RuntimeError()) == "error"


class TestProfiles:
    """Test performance profile updates."""

    @pytest.mark.asyncio
    async def test_profile_updated_once_per_step(self, registry, tracker, config, planner):
        tracker.initialize_profile("a", 1000, 0.1, 0.95)
        executor = ScriptedExecutor(failures={"a": TransientExecutionError("x")})
        engine = make_engine(registry, tracker, config, executor)

        await engine.execute_plan(planner.create_plan("p", ["a"], constraints=PlanConstraints(max_retries=2)))

        profile = tracker.get_profile("a")
        assert profile.sample_count == 1
        assert profile.success_rate == 0.0
        assert len(executor.calls) == 3

    @pytest.mark.asyncio
    async def test_cache_hits_do_not_update_profile(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        plan = planner.create_plan("p", ["cached"])
        await engine.execute_plan(plan)
        await engine.execute_plan(plan)
        assert tracker.get_profile("cached").sample_count == 1


class TestRecommendations:
    """Test recommendations and internal faults."""

    @pytest.mark.asyncio
    async def test_cost_recommendation(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        plan = planner.create_plan("p", ["c"], constraints=PlanConstraints(max_total_cost=0.1))
        result = await engine.execute_plan(plan)
        assert any(r.type == "cost" for r in result.recommendations)

    @pytest.mark.asyncio
    async def test_internal_fault_becomes_failed_result(self, registry, tracker, config, planner):
        """A broken cache read does not escape execute_plan."""
        engine = make_engine(registry, tracker, config, ScriptedExecutor())

        def broken_get(key):
            raise RuntimeError("corrupted cache")

        engine.cache.get = broken_get
        plan = planner.create_plan("p", ["a", "cached"])
        result = await engine.execute_plan(plan)

        assert not result.success
        assert result.total_cost == 0
        assert result.error == "corrupted cache"
        assert len(result.recommendations) == 1
        assert result.recommendations[0].priority == "high"
        assert tracker.get_history()[-1].result is result

    @pytest.mark.asyncio
    async def test_internal_fault_keeps_sibling_results(self, registry, tracker, config, planner):
        """Steps that finished alongside the faulting one stay in the result."""
        engine = make_engine(registry, tracker, config, ScriptedExecutor())

        def broken_get(key):
            raise RuntimeError("corrupted cache")

        engine.cache.get = broken_get
        result = await engine.execute_plan(planner.create_plan("p", ["a", "cached"]))

        assert result.error == "corrupted cache"
        assert [r.item_name for r in result.step_results] == ["a"]
        assert result.get_step_result("a").success
        assert result.optimization.parallel_steps == 2

    @pytest.mark.asyncio
    async def test_unregistered_item_fails_step(self, registry, tracker, config, planner):
        """An item removed after planning fails alone; its siblings still run."""
        registry.register(ItemDefinition(name="gone"))
        executor = ScriptedExecutor()
        engine = make_engine(registry, tracker, config, executor)
        plan = planner.create_plan("p", ["a", "b", "gone"])
        registry.remove("gone")

        result = await engine.execute_plan(plan)

        assert result.error is None
        assert not result.success
        assert len(result.step_results) == 3
        assert result.get_step_result("a").success
        assert result.get_step_result("b").success
        gone = result.get_step_result("gone")
        assert not gone.success
        assert "no longer registered" in gone.error
        assert gone.retry_count == 0
        assert "gone" not in executor.calls
        assert tracker.get_profile("gone") is None

    @pytest.mark.asyncio
    async def test_unregistered_dependency_blocks_dependents(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        plan = planner.create_plan("p", ["c"])
        registry.remove("a")

        result = await engine.execute_plan(plan)

        assert result.get_step_result("b").success
        assert not result.get_step_result("a").success
        assert result.get_step_result("c").skipped
        assert result.optimization.blocked_steps == 1

    @pytest.mark.asyncio
    async def test_progress_callback(self, registry, tracker, config, planner):
        updates = []
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        engine.set_progress_callback(updates.append)

        await engine.execute_plan(planner.create_plan("p", ["a"]))
        assert [u.status for u in updates] == ["pending", "running", "completed"]
        assert all(isinstance(u, StepProgress) for u in updates)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_ignored(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())

        def bad_callback(progress):
            raise RuntimeError("ui gone")

        engine.set_progress_callback(bad_callback)
        result = await engine.execute_plan(planner.create_plan("p", ["a"]))
        assert result.success

    @pytest.mark.asyncio
    async def test_to_json(self, registry, tracker, config, planner):
        engine = make_engine(registry, tracker, config, ScriptedExecutor())
        result = await engine.execute_plan(planner.create_plan("p", ["a"]))
        assert '"plan_id"' in result.to_json()
