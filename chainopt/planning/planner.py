# chainopt/planning/planner.py
"""
Plan optimizer - converts item requests into execution plans.

The optimizer:
1. Builds the dependency graph from the registry
2. Orders items topologically and assigns parallel groups
3. Attaches adaptive retry policies to unreliable items
4. Estimates duration, cost, reliability and an advisory timeout
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ..config import OptimizerConfig
from ..dag import build_dependency_graph
from ..errors import ItemNotFoundError
from ..registry import ItemDefinition, ItemRegistry
from ..tracker import PerformanceTracker
from .schema import (
    ExecutionPlan,
    OptimizationSettings,
    PlanConstraints,
    PlanStep,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


@dataclass
class ItemRequest:
    """An item requested for a plan, with its input payload."""
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Union["ItemRequest", str, Dict[str, Any]]) -> "ItemRequest":
        """Accept a request, a bare item name, or a {name, input} mapping."""
        if isinstance(value, ItemRequest):
            return value
        if isinstance(value, str):
            return cls(name=value)
        return cls(name=value["name"], input=dict(value.get("input") or {}))


@dataclass
class OptimizationSuggestion:
    """
    A suggested change to a plan.

    Attributes:
        type: performance, cost, reliability or parallelism
        message: Human-readable suggestion
        estimated_impact: Keys among time_reduction (%), cost_reduction
            (currency) and reliability_improvement (fraction)
        difficulty: low or medium
    """
    type: str
    message: str
    estimated_impact: Dict[str, float] = field(default_factory=dict)
    difficulty: str = "low"

    @property
    def impact_score(self) -> float:
        impact = self.estimated_impact
        return (
            impact.get("time_reduction", 0.0) * 10
            + impact.get("cost_reduction", 0.0) * 100
            + impact.get("reliability_improvement", 0.0) * 50
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "estimated_impact": self.estimated_impact,
            "difficulty": self.difficulty,
        }


class PlanOptimizer:
    """
    Generates execution plans from item requests.

    Reads item definitions from the registry and observed success rates
    from the tracker; never modifies either.
    """

    def __init__(
        self,
        registry: ItemRegistry,
        tracker: PerformanceTracker,
        config: Optional[OptimizerConfig] = None,
    ):
        self.registry = registry
        self.tracker = tracker
        self.config = config or OptimizerConfig()

    def create_plan(
        self,
        name: str,
        items: Iterable[Union[ItemRequest, str, Dict[str, Any]]],
        description: str = "",
        constraints: Optional[PlanConstraints] = None,
    ) -> ExecutionPlan:
        """
        Generate an execution plan.

        Args:
            name: Plan name
            items: Requested items; dependencies are added automatically
            description: Free-text description
            constraints: Caller limits (defaults apply when omitted)

        Returns:
            ExecutionPlan with steps ordered by parallel group

        Raises:
            ItemNotFoundError: an item or dependency is not registered
            CircularDependencyError: the dependencies form a cycle
        """
        logger.info(f"Planning: {name}")
        constraints = constraints or PlanConstraints()

        requests: Dict[str, ItemRequest] = {}
        for value in items:
            request = ItemRequest.coerce(value)
            # First request for an item wins
            requests.setdefault(request.name, request)

        graph = build_dependency_graph(requests.keys(), self.registry)
        order, groups = graph.order_with_groups()

        position = {item: index for index, item in enumerate(order)}
        ordered = sorted(order, key=lambda item: (groups[item], position[item]))

        steps = []
        for index, item_name in enumerate(ordered):
            definition = self._definition(item_name)
            request = requests.get(item_name)
            steps.append(PlanStep(
                step_id=f"step_{index}_{item_name}",
                item_name=item_name,
                input=dict(request.input) if request else {},
                dependencies=definition.dependencies,
                parallel_group=groups[item_name],
            ))

        steps = self.apply_intelligent_optimizations(steps, constraints)

        metadata = self._plan_metadata(steps, graph.to_dict())
        violations = self.check_constraints(constraints, metadata)
        if violations:
            metadata["constraint_violations"] = violations

        plan = ExecutionPlan(
            plan_id=f"plan_{uuid.uuid4().hex[:12]}",
            name=name,
            description=description,
            steps=tuple(steps),
            optimization=OptimizationSettings(
                parallelism_enabled=self.config.parallelism_enabled,
                caching_enabled=self.config.cache_enabled,
                target_duration_ms=(
                    constraints.max_total_duration_ms
                    if constraints.max_total_duration_ms is not None
                    else self.config.target_duration_ms
                ),
                max_concurrent_steps=self.config.max_concurrent_steps,
            ),
            constraints=constraints,
            metadata=metadata,
        )
        for violation in violations:
            logger.warning(f"Plan {plan.plan_id}: {violation}")

        logger.info(
            f"Created plan {plan.plan_id} with {len(steps)} steps, "
            f"{plan.metadata['parallel_groups']} parallel groups"
        )
        return plan

    def apply_intelligent_optimizations(
        self,
        steps: Sequence[PlanStep],
        constraints: Optional[PlanConstraints] = None,
    ) -> List[PlanStep]:
        """
        Attach retry policies based on each item's reliability.

        Items whose effective reliability is under the threshold get the
        enhanced policy; the rest get the default policy, which retries
        only when the constraints ask for it. Depends only on the
        registry and tracker state, so repeated calls agree.
        """
        constraints = constraints or PlanConstraints()
        requested = constraints.max_retries or 0

        default_policy = RetryPolicy(
            max_retries=requested,
            backoff_ms=self.config.backoff_ms,
            retry_on=self.config.retry_on,
        )
        enhanced_policy = RetryPolicy(
            max_retries=max(self.config.enhanced_max_retries, requested),
            backoff_ms=self.config.backoff_ms,
            retry_on=self.config.retry_on,
        )

        optimized = []
        for step in steps:
            if self.effective_reliability(step.item_name) < self.config.reliability_threshold:
                logger.debug(f"Enhanced retry policy for unreliable item {step.item_name}")
                optimized.append(step.with_retry_policy(enhanced_policy))
            else:
                optimized.append(step.with_retry_policy(default_policy))
        return optimized

    def effective_reliability(self, item_name: str) -> float:
        """Observed success rate, or the declared reliability before any samples."""
        observed = self.tracker.observed_success_rate(item_name)
        if observed is not None:
            return observed
        return self._definition(item_name).reliability

    # Estimates

    def estimate_duration(self, steps: Sequence[PlanStep]) -> float:
        """Sum over groups of the slowest item's estimate."""
        slowest: Dict[int, float] = {}
        for step in steps:
            duration = self._definition(step.item_name).estimated_duration_ms
            slowest[step.parallel_group] = max(slowest.get(step.parallel_group, 0.0), duration)
        return sum(slowest.values())

    def estimate_cost(self, steps: Sequence[PlanStep]) -> float:
        return sum(self._definition(s.item_name).estimated_cost for s in steps)

    def estimate_reliability(self, steps: Sequence[PlanStep]) -> float:
        """Probability that every step succeeds on its first attempt."""
        return math.prod(self.effective_reliability(s.item_name) for s in steps)

    def optimal_timeout(self, steps: Sequence[PlanStep]) -> float:
        """Advisory plan timeout: serial estimate with headroom, never under the floor."""
        serial = sum(self._definition(s.item_name).estimated_duration_ms for s in steps)
        return max(serial * self.config.timeout_multiplier, self.config.timeout_floor_ms)

    def check_constraints(self, constraints: PlanConstraints, metadata: Dict[str, Any]) -> List[str]:
        """Describe every constraint that the estimates in plan metadata violate."""
        violations = []
        duration = metadata.get("estimated_duration_ms", 0.0)
        cost = metadata.get("estimated_cost", 0.0)
        reliability = metadata.get("estimated_reliability", 1.0)

        if constraints.max_total_duration_ms is not None and duration > constraints.max_total_duration_ms:
            violations.append(
                f"estimated duration {duration:.0f}ms exceeds limit {constraints.max_total_duration_ms:.0f}ms"
            )
        if constraints.max_total_cost is not None and cost > constraints.max_total_cost:
            violations.append(f"estimated cost ${cost:.4f} exceeds limit ${constraints.max_total_cost:.4f}")
        if reliability < constraints.required_reliability:
            violations.append(
                f"estimated reliability {reliability:.3f} is below required {constraints.required_reliability:.3f}"
            )
        return violations

    def _plan_metadata(self, steps: Sequence[PlanStep], dependencies: Dict[str, List[str]]) -> Dict[str, Any]:
        return {
            "parallel_groups": len({s.parallel_group for s in steps}),
            "estimated_duration_ms": self.estimate_duration(steps),
            "estimated_cost": self.estimate_cost(steps),
            "estimated_reliability": self.estimate_reliability(steps),
            "optimal_timeout_ms": self.optimal_timeout(steps),
            "dependencies": dependencies,
        }

    # Suggestions

    def suggest_optimizations(self, plan: ExecutionPlan) -> List[OptimizationSuggestion]:
        """
        Suggest ways to make a plan faster, cheaper or more reliable.

        Returns:
            Suggestions sorted by estimated impact, highest first
        """
        suggestions = []
        steps = list(plan.steps)
        if not steps:
            return suggestions

        parallel = self._parallel_candidates(plan)
        if len(parallel) > 1:
            suggestions.append(OptimizationSuggestion(
                type="parallelism",
                message=f"{len(parallel)} steps can run in parallel to reduce execution time",
                estimated_impact={"time_reduction": self._parallel_savings(parallel)},
            ))

        cacheable = [s for s in steps if self._definition(s.item_name).cacheable]
        if cacheable and not plan.optimization.caching_enabled:
            suggestions.append(OptimizationSuggestion(
                type="performance",
                message=f"Enable caching for {len(cacheable)} cache-eligible steps to improve performance",
                estimated_impact={
                    "time_reduction": len(cacheable) * 0.3,
                    "cost_reduction": len(cacheable) * 0.5,
                },
            ))

        expensive = self._expensive_steps(steps)
        if expensive:
            suggestions.append(OptimizationSuggestion(
                type="cost",
                message=f"Optimize {len(expensive)} high-cost steps through alternative approaches",
                estimated_impact={
                    "cost_reduction": sum(self._definition(s.item_name).estimated_cost for s in expensive) * 0.3,
                },
                difficulty="medium",
            ))

        unreliable = [
            s for s in steps
            if self.effective_reliability(s.item_name) < self.config.reliability_threshold
        ]
        if unreliable:
            suggestions.append(OptimizationSuggestion(
                type="reliability",
                message=f"Add fallback strategies for {len(unreliable)} potentially unreliable steps",
                estimated_impact={"reliability_improvement": 0.15},
                difficulty="medium",
            ))

        suggestions.sort(key=lambda s: s.impact_score, reverse=True)
        return suggestions

    def _parallel_candidates(self, plan: ExecutionPlan) -> List[PlanStep]:
        """Parallelizable steps that share their group with another such step."""
        candidates = []
        for group_steps in plan.get_steps_by_group().values():
            eligible = [s for s in group_steps if self._definition(s.item_name).parallelizable]
            if len(eligible) > 1:
                candidates.extend(eligible)
        return candidates

    def _parallel_savings(self, steps: Sequence[PlanStep]) -> float:
        """Percent of serial time saved by running each group's steps together."""
        serial = sum(self._definition(s.item_name).estimated_duration_ms for s in steps)
        if serial == 0:
            return 0.0
        return (serial - self.estimate_duration(steps)) / serial * 100

    def _expensive_steps(self, steps: Sequence[PlanStep]) -> List[PlanStep]:
        costs = {s.step_id: self._definition(s.item_name).estimated_cost for s in steps}
        mean_cost = sum(costs.values()) / len(steps)
        threshold = mean_cost * self.config.expensive_step_factor
        expensive = [s for s in steps if costs[s.step_id] > threshold]
        expensive.sort(key=lambda s: costs[s.step_id], reverse=True)
        return expensive

    def _definition(self, item_name: str) -> ItemDefinition:
        definition = self.registry.get(item_name)
        if definition is None:
            raise ItemNotFoundError(item_name)
        return definition
