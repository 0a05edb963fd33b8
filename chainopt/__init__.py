# chainopt - Dependency-aware scheduling and execution of work items
#
# Schedules named, interdependent work items as an optimized plan:
# dependencies are resolved into parallel groups, repeatable results are
# cached, transient failures are retried with backoff, and per-item
# performance is learned over time to guide future planning.
#
# Core concepts:
# - Item: A registered unit of work with dependencies and estimates
# - Plan: Steps ordered into parallel groups, each with a retry policy
# - Executor: Performs the actual work for an item
# - Engine: Executes plans group by group with caching and retries
# - Tracker: Running per-item profiles and execution history

from .errors import (
    ChainOptError,
    CircularDependencyError,
    DuplicateNameError,
    ExecutionError,
    ItemNotFoundError,
    PermanentExecutionError,
    TransientExecutionError,
)
from .config import OptimizerConfig
from .registry import ItemCategory, ItemDefinition, ItemRegistry
from .dag import DependencyGraph, build_dependency_graph
from .planning import (
    ExecutionPlan,
    ItemRequest,
    OptimizationSettings,
    OptimizationSuggestion,
    PlanConstraints,
    PlanOptimizer,
    PlanStep,
    RetryPolicy,
)
from .cache import CacheEntry, CacheStats, ResultCache, cache_key
from .executor import Executor, HandlerExecutor, SimulatedExecutor
from .tracker import PerformanceMetrics, PerformanceProfile, PerformanceTracker
from .engine import (
    ExecutionEngine,
    ExecutionResult,
    OptimizationSummary,
    Recommendation,
    StepProgress,
    StepResult,
)
from .coordinator import Coordinator

__all__ = [
    # Errors
    "ChainOptError",
    "CircularDependencyError",
    "DuplicateNameError",
    "ExecutionError",
    "ItemNotFoundError",
    "PermanentExecutionError",
    "TransientExecutionError",
    # Core
    "OptimizerConfig",
    "ItemCategory",
    "ItemDefinition",
    "ItemRegistry",
    "DependencyGraph",
    "build_dependency_graph",
    "CacheEntry",
    "CacheStats",
    "ResultCache",
    "cache_key",
    "Executor",
    "HandlerExecutor",
    "SimulatedExecutor",
    "PerformanceMetrics",
    "PerformanceProfile",
    "PerformanceTracker",
    "ExecutionEngine",
    "ExecutionResult",
    "OptimizationSummary",
    "Recommendation",
    "StepProgress",
    "StepResult",
    "Coordinator",
    # Planning
    "ExecutionPlan",
    "ItemRequest",
    "OptimizationSettings",
    "OptimizationSuggestion",
    "PlanConstraints",
    "PlanOptimizer",
    "PlanStep",
    "RetryPolicy",
]

__version__ = "0.1.0"
