# tests/test_coordinator.py
"""Tests for the coordinator facade."""

import pytest

from chainopt import (
    CircularDependencyError,
    Coordinator,
    DuplicateNameError,
    ItemDefinition,
    ItemNotFoundError,
    OptimizerConfig,
    SimulatedExecutor,
)
from chainopt.registry import ItemRegistry


@pytest.fixture
def coordinator():
    """Coordinator with a fast, deterministic simulated executor."""
    config = OptimizerConfig(backoff_ms=0)
    registry = ItemRegistry()
    executor = SimulatedExecutor(registry, seed=7, time_scale=0, jitter_ms=0)
    coordinator = Coordinator(config=config, executor=executor, registry=registry)
    coordinator.register_item(ItemDefinition(name="a", reliability=1.0, estimated_duration_ms=100))
    coordinator.register_item(ItemDefinition(name="b", reliability=1.0, estimated_duration_ms=200))
    coordinator.register_item(ItemDefinition(name="c", dependencies=("a", "b"), reliability=1.0, cacheable=True))
    return coordinator


class TestCoordinator:
    """Test Coordinator operations end to end."""

    def test_register_seeds_profile(self, coordinator):
        profile = coordinator.tracker.get_profile("a")
        assert profile.avg_duration_ms == 100
        assert profile.success_rate == 1.0
        assert profile.sample_count == 0

    def test_strict_registration(self):
        coordinator = Coordinator(config=OptimizerConfig(strict_registration=True))
        coordinator.register_item(ItemDefinition(name="a"))
        with pytest.raises(DuplicateNameError):
            coordinator.register_item(ItemDefinition(name="a"))

    def test_create_and_run(self, coordinator):
        plan = coordinator.create_plan("report", ["c"], description="fan-in")
        result = coordinator.run_plan(plan)

        assert result.success
        assert result.plan_id == plan.plan_id
        assert result.optimization.parallel_steps >= 2
        assert [r.item_name for r in result.step_results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_execute_plan_async(self, coordinator):
        plan = coordinator.create_plan("report", ["a"])
        result = await coordinator.execute_plan(plan)
        assert result.success

    def test_create_plan_errors(self, coordinator):
        with pytest.raises(ItemNotFoundError):
            coordinator.create_plan("p", ["ghost"])

        coordinator.register_item(ItemDefinition(name="x", dependencies=("y",)))
        coordinator.register_item(ItemDefinition(name="y", dependencies=("x",)))
        with pytest.raises(CircularDependencyError):
            coordinator.create_plan("p", ["x", "y"])

    def test_cache_stats_and_clear(self, coordinator):
        plan = coordinator.create_plan("p", ["c"])
        coordinator.run_plan(plan)
        second = coordinator.run_plan(plan)

        assert second.get_step_result("c").cache_hit
        stats = coordinator.get_cache_stats()
        assert stats.size == 1
        assert stats.hit_rate == pytest.approx(0.5)

        coordinator.clear_cache()
        stats = coordinator.get_cache_stats()
        assert stats.total_entries == 0
        assert stats.hits == 0

    def test_metrics(self, coordinator):
        plan = coordinator.create_plan("p", ["c"])
        coordinator.run_plan(plan)
        coordinator.run_plan(plan)

        metrics = coordinator.get_performance_metrics()
        assert metrics.total_executions == 2
        assert metrics.error_rate == 0.0
        assert 0.0 < metrics.cache_hit_rate < 1.0

    def test_clear_performance_data(self, coordinator):
        coordinator.run_plan(coordinator.create_plan("p", ["a"]))
        assert coordinator.tracker.get_profile("a").sample_count == 1

        coordinator.clear_performance_data()

        assert coordinator.get_performance_metrics().total_executions == 0
        profile = coordinator.tracker.get_profile("a")
        assert profile.sample_count == 0
        assert profile.avg_duration_ms == 100

    def test_learning_feeds_planning(self, coordinator):
        """Observed failures earn an item the enhanced retry policy."""
        for success in (True, False, False, False):
            coordinator.tracker.update_profile("a", 100, 0.01, success)
        plan = coordinator.create_plan("p", ["a"])
        assert plan.steps[0].retry_policy.max_retries == 3

    def test_suggestions(self, coordinator):
        plan = coordinator.create_plan("p", ["c"])
        suggestions = coordinator.suggest_optimizations(plan)
        assert suggestions[0].type == "parallelism"

    def test_apply_intelligent_optimizations(self, coordinator):
        plan = coordinator.create_plan("p", ["c"])
        steps = coordinator.apply_intelligent_optimizations(plan.steps)
        assert [s.retry_policy for s in steps] == [s.retry_policy for s in plan.steps]

    def test_load_catalog(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("items:\n  - name: fetch\n    estimated_duration_ms: 250\n")
        coordinator = Coordinator()
        coordinator.load_catalog(path)
        assert "fetch" in coordinator.registry
        assert coordinator.tracker.get_profile("fetch").avg_duration_ms == 250

    def test_catalog_profiles_only_through_coordinator(self, tmp_path):
        """The registry loader stores definitions; the coordinator also seeds profiles."""
        path = tmp_path / "catalog.yaml"
        path.write_text("items:\n  - name: fetch\n  - name: parse\n    dependencies: [fetch]\n    reliability: 0.7\n")

        raw = Coordinator()
        raw.registry.load_file(path)
        assert "parse" in raw.registry
        assert raw.tracker.get_profile("parse") is None

        coordinator = Coordinator()
        loaded = coordinator.load_catalog(path)
        assert [d.name for d in loaded] == ["fetch", "parse"]
        profile = coordinator.tracker.get_profile("parse")
        assert profile.success_rate == 0.7
        assert profile.sample_count == 0

    def test_independent_instances(self):
        """Coordinators never share state implicitly."""
        first = Coordinator()
        second = Coordinator()
        first.register_item(ItemDefinition(name="a"))
        assert "a" not in second.registry
        assert second.tracker.get_profile("a") is None

    def test_export(self, coordinator):
        coordinator.run_plan(coordinator.create_plan("p", ["a"]))
        data = coordinator.export_performance_data()
        assert set(data["profiles"]) == {"a", "b", "c"}
        assert len(data["history"]) == 1
