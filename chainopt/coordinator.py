# chainopt/coordinator.py
"""
Coordinator - the facade over registry, planner, engine and tracker.

Every stateful collaborator is an explicit instance. Pass your own to
share them between coordinators, or let the coordinator build fresh
ones from its config:

    coordinator = Coordinator()
    coordinator.register_item(ItemDefinition(name="fetch"))
    coordinator.register_item(ItemDefinition(name="parse", dependencies=("fetch",)))

    plan = coordinator.create_plan("ingest", ["parse"])
    result = coordinator.run_plan(plan)
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .cache import CacheStats, ResultCache
from .config import OptimizerConfig
from .engine import ExecutionEngine, ExecutionResult, ProgressCallback
from .executor import Executor, SimulatedExecutor
from .planning import (
    ExecutionPlan,
    ItemRequest,
    OptimizationSuggestion,
    PlanConstraints,
    PlanOptimizer,
    PlanStep,
)
from .registry import ItemDefinition, ItemRegistry, parse_catalog
from .tracker import PerformanceMetrics, PerformanceTracker

logger = logging.getLogger(__name__)


class Coordinator:
    """
    Registers items, builds plans, executes them and reports metrics.

    Args:
        config: Tunables (defaults when omitted)
        executor: Performs item work; defaults to a SimulatedExecutor
        registry: Item definitions
        tracker: Performance profiles and history
        cache: Result cache
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        executor: Optional[Executor] = None,
        registry: Optional[ItemRegistry] = None,
        tracker: Optional[PerformanceTracker] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.config = config or OptimizerConfig()
        self.registry = registry if registry is not None else ItemRegistry(strict=self.config.strict_registration)
        self.tracker = tracker if tracker is not None else PerformanceTracker(
            history_limit=self.config.history_limit,
            learning_enabled=self.config.learning_enabled,
        )
        self.cache = cache if cache is not None else ResultCache(
            max_entries=self.config.cache_max_entries,
            ttl_seconds=self.config.cache_ttl_seconds,
        )
        self.executor = executor if executor is not None else SimulatedExecutor(self.registry)

        self.planner = PlanOptimizer(self.registry, self.tracker, self.config)
        self.engine = ExecutionEngine(self.registry, self.executor, self.cache, self.tracker, self.config)

    # Items

    def register_item(self, definition: ItemDefinition, strict: Optional[bool] = None) -> ItemDefinition:
        """
        Register an item and seed its performance profile.

        Raises:
            DuplicateNameError: the name exists and strict mode is on
        """
        self.registry.register(definition, strict=strict)
        self.tracker.initialize_profile(
            definition.name,
            definition.estimated_duration_ms,
            definition.estimated_cost,
            definition.reliability,
        )
        return definition

    def load_catalog(self, path: Path | str) -> List[ItemDefinition]:
        """Register every item in a YAML catalog file."""
        with open(path, "r") as f:
            definitions = parse_catalog(f.read())
        logger.info(f"Loaded {len(definitions)} items from {path}")
        return [self.register_item(d) for d in definitions]

    # Plans

    def create_plan(
        self,
        name: str,
        items: Iterable[Union[ItemRequest, str, Dict[str, Any]]],
        description: str = "",
        constraints: Optional[PlanConstraints] = None,
    ) -> ExecutionPlan:
        """
        Build an execution plan for the requested items.

        Raises:
            ItemNotFoundError: an item or dependency is not registered
            CircularDependencyError: the dependencies form a cycle
        """
        return self.planner.create_plan(name, items, description=description, constraints=constraints)

    def apply_intelligent_optimizations(
        self,
        steps: Iterable[PlanStep],
        constraints: Optional[PlanConstraints] = None,
    ) -> List[PlanStep]:
        return self.planner.apply_intelligent_optimizations(list(steps), constraints)

    async def execute_plan(self, plan: ExecutionPlan) -> ExecutionResult:
        """Execute a plan; step failures are reported in the result."""
        return await self.engine.execute_plan(plan)

    def run_plan(self, plan: ExecutionPlan) -> ExecutionResult:
        """Blocking wrapper around execute_plan for callers without a loop."""
        return asyncio.run(self.execute_plan(plan))

    def set_progress_callback(self, callback: Optional[ProgressCallback]):
        self.engine.set_progress_callback(callback)

    def suggest_optimizations(self, plan: ExecutionPlan) -> List[OptimizationSuggestion]:
        return self.planner.suggest_optimizations(plan)

    # Metrics and maintenance

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.tracker.get_performance_metrics()

    def export_performance_data(self) -> Dict[str, Any]:
        return self.tracker.export_performance_data()

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def clear_cache(self):
        """Drop every cached result and reset cache statistics."""
        self.cache.clear()
        logger.info("Cache cleared")

    def clear_performance_data(self):
        """
        Drop history and learned statistics.

        Registered items keep a profile seeded from their declared
        estimates.
        """
        self.tracker.clear()
        for definition in self.registry.list():
            self.tracker.initialize_profile(
                definition.name,
                definition.estimated_duration_ms,
                definition.estimated_cost,
                definition.reliability,
            )
        logger.info("Performance data cleared")
