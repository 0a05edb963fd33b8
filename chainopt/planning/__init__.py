# chainopt/planning - Execution plan generation
#
# Turns a set of requested items into a plan:
# 1. GRAPH - Resolve dependencies from the registry
# 2. ORDER - Topological order with parallel groups
# 3. OPTIMIZE - Adaptive retry policies and estimates

from .schema import (
    ExecutionPlan,
    OptimizationSettings,
    PlanConstraints,
    PlanStep,
    RetryPolicy,
)
from .planner import ItemRequest, OptimizationSuggestion, PlanOptimizer

__all__ = [
    "ExecutionPlan",
    "OptimizationSettings",
    "PlanConstraints",
    "PlanStep",
    "RetryPolicy",
    "ItemRequest",
    "OptimizationSuggestion",
    "PlanOptimizer",
]
