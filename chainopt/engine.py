# chainopt/engine.py
"""
Plan execution engine.

Executes plans by:
1. Walking parallel groups in ascending order (a group is a barrier)
2. Running the steps of a group concurrently, bounded by a semaphore
3. Checking the cache for each cache-eligible step
4. Invoking the executor for misses, retrying transient failures
5. Feeding outcomes to the performance tracker
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .cache import ResultCache, cache_key
from .config import OptimizerConfig
from .errors import ExecutionError, PermanentExecutionError
from .executor import Executor
from .planning.schema import ExecutionPlan, PlanStep
from .registry import ItemRegistry
from .tracker import PerformanceTracker

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Outcome of one step in one plan run."""
    step_id: str
    item_name: str
    success: bool
    duration_ms: float = 0.0
    cost: float = 0.0
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    cache_hit: bool = False
    skipped: bool = False  # not run because a dependency failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "item_name": self.item_name,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "cost": self.cost,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "cache_hit": self.cache_hit,
            "skipped": self.skipped,
        }


@dataclass
class Bottleneck:
    """A step that was slow or needed retries."""
    item_name: str
    reason: str  # "slow" or "retries"
    duration_ms: float = 0.0
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_name": self.item_name,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
        }


@dataclass
class OptimizationSummary:
    """
    What the optimizations did during a run.

    Attributes:
        parallel_steps: Steps that ran in a group of more than one step
        cache_hits: Steps answered from the cache
        skipped_steps: Steps that succeeded without producing output
        blocked_steps: Steps not run because a dependency failed
        bottlenecks: Slow or retried steps
    """
    parallel_steps: int = 0
    cache_hits: int = 0
    skipped_steps: int = 0
    blocked_steps: int = 0
    bottlenecks: List[Bottleneck] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parallel_steps": self.parallel_steps,
            "cache_hits": self.cache_hits,
            "skipped_steps": self.skipped_steps,
            "blocked_steps": self.blocked_steps,
            "bottlenecks": [b.to_dict() for b in self.bottlenecks],
        }


@dataclass
class Recommendation:
    """Advice derived from comparing a run against plan targets."""
    type: str  # "performance", "cost" or "reliability"
    message: str
    priority: str = "medium"  # "low", "medium" or "high"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message, "priority": self.priority}


@dataclass
class ExecutionResult:
    """Result of executing a plan."""
    plan_id: str
    success: bool
    duration_ms: float = 0.0
    total_cost: float = 0.0
    step_results: List[StepResult] = field(default_factory=list)
    optimization: OptimizationSummary = field(default_factory=OptimizationSummary)
    recommendations: List[Recommendation] = field(default_factory=list)
    error: Optional[str] = None

    def get_step_result(self, item_name: str) -> Optional[StepResult]:
        for result in self.step_results:
            if result.item_name == item_name:
                return result
        return None

    @property
    def failed_steps(self) -> List[StepResult]:
        return [r for r in self.step_results if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "total_cost": self.total_cost,
            "step_results": [r.to_dict() for r in self.step_results],
            "optimization": self.optimization.to_dict(),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "error": self.error,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


@dataclass
class StepProgress:
    """Progress update for a step."""
    step_id: str
    item_name: str
    status: str  # "pending", "running", "cached", "retrying", "completed", "failed", "skipped"
    attempt: int = 0
    message: str = ""


# Progress callback type
ProgressCallback = Callable[[StepProgress], None]


def classify_failure(error: BaseException) -> str:
    """Failure kind used to match a retry policy."""
    if isinstance(error, ExecutionError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(error, ConnectionError):
        return "network_error"
    return "error"


class ExecutionEngine:
    """
    Plan execution engine.

    Owns nothing but the progress callback; cache, tracker, registry
    and executor are shared instances handed in by the coordinator.
    """

    def __init__(
        self,
        registry: ItemRegistry,
        executor: Executor,
        cache: ResultCache,
        tracker: PerformanceTracker,
        config: Optional[OptimizerConfig] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.cache = cache
        self.tracker = tracker
        self.config = config or OptimizerConfig()
        self._progress_callback: Optional[ProgressCallback] = None

    def set_progress_callback(self, callback: Optional[ProgressCallback]):
        """Set callback for progress updates."""
        self._progress_callback = callback

    def _report_progress(self, progress: StepProgress):
        """Report progress to callback if set."""
        if self._progress_callback:
            try:
                self._progress_callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")

    async def execute_plan(self, plan: ExecutionPlan) -> ExecutionResult:
        """
        Execute a plan and return the result.

        Step failures never raise; they show up as failed StepResults.
        An internal fault ends the run with a failed result holding the
        steps collected so far.

        Args:
            plan: The plan to execute

        Returns:
            ExecutionResult with per-step outcomes in plan order
        """
        start_time = time.monotonic()
        step_results: List[StepResult] = []
        summary = OptimizationSummary()
        logger.info(f"Executing plan {plan.plan_id} ({len(plan.steps)} steps)")

        try:
            failed_items: Set[str] = set()
            semaphore = asyncio.Semaphore(self._concurrency_limit(plan))

            for group, steps in plan.get_steps_by_group().items():
                logger.debug(f"Plan {plan.plan_id}: group {group} with {len(steps)} steps")
                if len(steps) > 1:
                    summary.parallel_steps += len(steps)

                # gather keeps submission order; exceptions stay in their slot
                outcomes = await asyncio.gather(
                    *(self._run_step(plan, step, failed_items, semaphore) for step in steps),
                    return_exceptions=True,
                )
                fault = None
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        fault = fault or outcome
                        continue
                    step_results.append(outcome)
                    if not outcome.success:
                        failed_items.add(outcome.item_name)
                if fault is not None:
                    raise fault

            self._summarise(summary, step_results)
            result = ExecutionResult(
                plan_id=plan.plan_id,
                success=all(r.success for r in step_results),
                duration_ms=(time.monotonic() - start_time) * 1000,
                total_cost=sum(r.cost for r in step_results),
                step_results=step_results,
                optimization=summary,
            )
            result.recommendations = self._recommendations(plan, result)

        except Exception as e:
            logger.exception(f"Plan {plan.plan_id} aborted by internal fault: {e}")
            self._summarise(summary, step_results)
            result = ExecutionResult(
                plan_id=plan.plan_id,
                success=False,
                duration_ms=(time.monotonic() - start_time) * 1000,
                total_cost=0.0,
                step_results=list(step_results),
                optimization=summary,
                recommendations=[Recommendation(
                    type="reliability",
                    message=f"Execution aborted by internal error: {e}",
                    priority="high",
                )],
                error=str(e),
            )

        self.tracker.record_execution(result)
        logger.info(
            f"Plan {plan.plan_id} {'succeeded' if result.success else 'failed'} "
            f"in {result.duration_ms:.0f}ms, cost ${result.total_cost:.4f}"
        )
        return result

    def _concurrency_limit(self, plan: ExecutionPlan) -> int:
        if not (plan.optimization.parallelism_enabled and self.config.parallelism_enabled):
            return 1
        return max(1, min(plan.optimization.max_concurrent_steps, self.config.max_concurrent_steps))

    def _summarise(self, summary: OptimizationSummary, step_results: List[StepResult]):
        summary.cache_hits = sum(1 for r in step_results if r.cache_hit)
        summary.skipped_steps = sum(1 for r in step_results if r.success and r.output is None)
        summary.blocked_steps = sum(1 for r in step_results if r.skipped)
        summary.bottlenecks = self._find_bottlenecks(step_results)

    async def _run_step(
        self,
        plan: ExecutionPlan,
        step: PlanStep,
        failed_items: Set[str],
        semaphore: asyncio.Semaphore,
    ) -> StepResult:
        self._report_progress(StepProgress(step.step_id, step.item_name, "pending"))

        blocked_by = [d for d in step.dependencies if d in failed_items]
        if blocked_by and self.config.cascade_on_failure:
            message = f"Skipped: dependency {', '.join(sorted(blocked_by))} failed"
            logger.warning(f"Step {step.step_id}: {message}")
            self._report_progress(StepProgress(step.step_id, step.item_name, "skipped", message=message))
            return StepResult(
                step_id=step.step_id,
                item_name=step.item_name,
                success=False,
                error=message,
                skipped=True,
            )

        async with semaphore:
            return await self.execute_step(step, caching_enabled=plan.optimization.caching_enabled)

    async def execute_step(self, step: PlanStep, caching_enabled: bool = True) -> StepResult:
        """
        Run one step: cache lookup, then executor calls with retries.

        Args:
            step: The step to run
            caching_enabled: The plan-level caching switch

        Returns:
            StepResult for the step
        """
        definition = self.registry.get(step.item_name)
        if definition is None:
            # Removed after planning: fail the step without retries or profile updates
            message = f"Item {step.item_name} is no longer registered"
            logger.error(f"Step {step.step_id}: {message}")
            self._report_progress(StepProgress(step.step_id, step.item_name, "failed", message=message))
            return StepResult(
                step_id=step.step_id,
                item_name=step.item_name,
                success=False,
                error=message,
            )

        use_cache = caching_enabled and self.config.cache_enabled and definition.cacheable
        key = cache_key(step.item_name, step.input) if use_cache else None

        if key is not None:
            entry = self.cache.get(key)
            if entry is not None:
                self._report_progress(StepProgress(
                    step.step_id, step.item_name, "cached", message="Using cached result",
                ))
                return StepResult(
                    step_id=step.step_id,
                    item_name=step.item_name,
                    success=True,
                    duration_ms=self.config.cache_hit_duration_ms,
                    cost=0.0,
                    output=entry.output,
                    cache_hit=True,
                )

        policy = step.retry_policy
        step_start = time.monotonic()
        attempt = 0

        while True:
            self._report_progress(StepProgress(step.step_id, step.item_name, "running", attempt=attempt))
            try:
                output = await self.executor.invoke(step.item_name, dict(step.input))
            except Exception as e:
                kind = classify_failure(e)
                retryable = not isinstance(e, PermanentExecutionError) and policy.is_retryable(kind)

                if retryable and attempt + 1 < policy.max_attempts:
                    attempt += 1
                    backoff_ms = policy.backoff_for(attempt)
                    logger.warning(
                        f"Step {step.step_id} failed ({kind}): {e}; "
                        f"retry {attempt}/{policy.max_retries} in {backoff_ms:.0f}ms"
                    )
                    self._report_progress(StepProgress(
                        step.step_id, step.item_name, "retrying", attempt=attempt, message=str(e),
                    ))
                    if backoff_ms > 0:
                        await asyncio.sleep(backoff_ms / 1000)
                    continue

                duration_ms = (time.monotonic() - step_start) * 1000
                logger.error(f"Step {step.step_id} failed after {attempt + 1} attempts: {e}")
                self.tracker.update_profile(step.item_name, duration_ms, definition.estimated_cost, False)
                self._report_progress(StepProgress(
                    step.step_id, step.item_name, "failed", attempt=attempt, message=str(e),
                ))
                return StepResult(
                    step_id=step.step_id,
                    item_name=step.item_name,
                    success=False,
                    duration_ms=duration_ms,
                    cost=definition.estimated_cost,
                    error=str(e),
                    retry_count=attempt,
                )

            duration_ms = (time.monotonic() - step_start) * 1000
            if key is not None:
                self.cache.put(key, step.item_name, output, duration_ms)
            self.tracker.update_profile(step.item_name, duration_ms, definition.estimated_cost, True)
            self._report_progress(StepProgress(
                step.step_id, step.item_name, "completed", attempt=attempt,
                message=f"Completed in {duration_ms:.0f}ms",
            ))
            return StepResult(
                step_id=step.step_id,
                item_name=step.item_name,
                success=True,
                duration_ms=duration_ms,
                cost=definition.estimated_cost,
                output=output,
                retry_count=attempt,
            )

    def _find_bottlenecks(self, step_results: List[StepResult]) -> List[Bottleneck]:
        """Steps slower than twice the run's mean, and steps that retried."""
        if not step_results:
            return []
        mean_duration = sum(r.duration_ms for r in step_results) / len(step_results)

        bottlenecks = []
        for result in step_results:
            if mean_duration > 0 and result.duration_ms > 2 * mean_duration:
                bottlenecks.append(Bottleneck(result.item_name, "slow", duration_ms=result.duration_ms))
            if result.retry_count > 0:
                bottlenecks.append(Bottleneck(
                    result.item_name, "retries",
                    duration_ms=result.duration_ms, retry_count=result.retry_count,
                ))
        return bottlenecks

    def _recommendations(self, plan: ExecutionPlan, result: ExecutionResult) -> List[Recommendation]:
        recommendations = []
        steps = result.step_results

        target = plan.optimization.target_duration_ms
        if result.duration_ms > target:
            recommendations.append(Recommendation(
                type="performance",
                message=(
                    f"Execution took {result.duration_ms:.0f}ms, over the {target:.0f}ms target; "
                    "consider enabling caching or splitting slow items"
                ),
                priority="medium",
            ))

        cost_limit = plan.constraints.max_total_cost
        if cost_limit is None:
            cost_limit = self.config.cost_threshold
        if result.total_cost > cost_limit:
            recommendations.append(Recommendation(
                type="cost",
                message=f"Total cost ${result.total_cost:.4f} exceeds ${cost_limit:.4f}; consider cheaper alternatives",
                priority="low",
            ))

        failed = result.failed_steps
        if failed:
            recommendations.append(Recommendation(
                type="reliability",
                message=f"{len(failed)} steps failed: {', '.join(r.item_name for r in failed)}",
                priority="high",
            ))

        if steps:
            retry_rate = sum(r.retry_count for r in steps) / len(steps)
            if retry_rate > self.config.retry_rate_threshold:
                recommendations.append(Recommendation(
                    type="reliability",
                    message=f"High retry rate ({retry_rate:.0%}); review unreliable items",
                    priority="high",
                ))

            success_rate = sum(1 for r in steps if r.success) / len(steps)
            if success_rate < plan.constraints.required_reliability:
                recommendations.append(Recommendation(
                    type="reliability",
                    message=(
                        f"Step success rate {success_rate:.0%} is below the required "
                        f"{plan.constraints.required_reliability:.0%}"
                    ),
                    priority="medium",
                ))

        return recommendations
