# chainopt/tracker.py
"""
Per-item performance profiles and execution history.

Profiles keep a cumulative running average of duration, cost and
success rate for each item:

    n = sample_count + 1
    avg = avg * (1 - 1/n) + sample * (1/n)

Early samples never stop counting, unlike a fixed-decay moving
average. History is a bounded log of the most recent plan results
used for aggregate metrics and trend analysis.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from .engine import ExecutionResult

logger = logging.getLogger(__name__)

TOP_BOTTLENECK_ITEMS = 5


@dataclass(frozen=True)
class PerformanceProfile:
    """
    Running statistics for one item.

    A profile with ``sample_count == 0`` holds the item's declared
    estimates; the first observation replaces them.
    """
    item_name: str
    avg_duration_ms: float
    avg_cost: float
    success_rate: float
    sample_count: int = 0

    def observe(self, duration_ms: float, cost: float, success: bool) -> "PerformanceProfile":
        """Return the profile updated with one observation."""
        n = self.sample_count + 1
        weight = 1 / n
        return replace(
            self,
            avg_duration_ms=self.avg_duration_ms * (1 - weight) + duration_ms * weight,
            avg_cost=self.avg_cost * (1 - weight) + cost * weight,
            success_rate=self.success_rate * (1 - weight) + (1.0 if success else 0.0) * weight,
            sample_count=n,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_name": self.item_name,
            "avg_duration_ms": self.avg_duration_ms,
            "avg_cost": self.avg_cost,
            "success_rate": self.success_rate,
            "sample_count": self.sample_count,
        }


@dataclass
class HistoryEntry:
    """One recorded plan execution."""
    plan_id: str
    timestamp: float
    result: "ExecutionResult"


@dataclass
class BottleneckItem:
    """An item ranked by total time spent across history."""
    item_name: str
    avg_duration_ms: float
    frequency: int

    @property
    def impact_ms(self) -> float:
        return self.avg_duration_ms * self.frequency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_name": self.item_name,
            "avg_duration_ms": self.avg_duration_ms,
            "frequency": self.frequency,
            "impact_ms": self.impact_ms,
        }


@dataclass
class TrendAnalysis:
    """
    Percentage change from the older half of history to the newer half.

    Positive values are improvements: shorter duration, lower cost,
    higher success rate.
    """
    performance_improvement: float = 0.0
    cost_reduction: float = 0.0
    reliability_improvement: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "performance_improvement": self.performance_improvement,
            "cost_reduction": self.cost_reduction,
            "reliability_improvement": self.reliability_improvement,
        }


@dataclass
class PerformanceMetrics:
    """Aggregate report over the retained execution history."""
    total_executions: int = 0
    average_duration_ms: float = 0.0
    parallelism_rate: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    cost_efficiency: float = 0.0
    bottleneck_items: List[BottleneckItem] = field(default_factory=list)
    trend: TrendAnalysis = field(default_factory=TrendAnalysis)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "average_duration_ms": self.average_duration_ms,
            "parallelism_rate": self.parallelism_rate,
            "cache_hit_rate": self.cache_hit_rate,
            "error_rate": self.error_rate,
            "cost_efficiency": self.cost_efficiency,
            "bottleneck_items": [b.to_dict() for b in self.bottleneck_items],
            "trend": self.trend.to_dict(),
        }


class PerformanceTracker:
    """
    Owns performance profiles and execution history.

    Profile updates are atomic per item; concurrent steps of one group
    can report at the same time without losing samples.
    """

    def __init__(self, history_limit: int = 100, learning_enabled: bool = True):
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self.history_limit = history_limit
        self.learning_enabled = learning_enabled
        self._profiles: Dict[str, PerformanceProfile] = {}
        self._history: Deque[HistoryEntry] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    # Profiles

    def initialize_profile(
        self,
        item_name: str,
        duration_ms: float,
        cost: float,
        success_rate: float,
    ) -> PerformanceProfile:
        """Seed a profile with declared estimates (no samples yet)."""
        profile = PerformanceProfile(
            item_name=item_name,
            avg_duration_ms=duration_ms,
            avg_cost=cost,
            success_rate=success_rate,
            sample_count=0,
        )
        with self._lock:
            self._profiles[item_name] = profile
        return profile

    def update_profile(
        self,
        item_name: str,
        duration_ms: float,
        cost: float,
        success: bool,
    ) -> Optional[PerformanceProfile]:
        """
        Record one observation for an item.

        Unknown items get a profile seeded from the observation itself.
        Returns None when learning is disabled.
        """
        if not self.learning_enabled:
            return None
        with self._lock:
            profile = self._profiles.get(item_name)
            if profile is None:
                profile = PerformanceProfile(item_name, duration_ms, cost, 1.0 if success else 0.0)
            profile = profile.observe(duration_ms, cost, success)
            self._profiles[item_name] = profile
        return profile

    def get_profile(self, item_name: str) -> Optional[PerformanceProfile]:
        return self._profiles.get(item_name)

    def get_profiles(self) -> Dict[str, PerformanceProfile]:
        with self._lock:
            return dict(self._profiles)

    def observed_success_rate(self, item_name: str) -> Optional[float]:
        """Success rate from real samples, or None if there are none yet."""
        profile = self._profiles.get(item_name)
        if profile is None or profile.sample_count == 0:
            return None
        return profile.success_rate

    # History

    def record_execution(self, result: "ExecutionResult") -> HistoryEntry:
        """Append a plan result to the bounded history."""
        entry = HistoryEntry(plan_id=result.plan_id, timestamp=time.time(), result=result)
        with self._lock:
            self._history.append(entry)
        return entry

    def get_history(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._history)

    def clear(self):
        """Clear profiles and history."""
        with self._lock:
            self._profiles.clear()
            self._history.clear()

    # Metrics

    def get_performance_metrics(self) -> PerformanceMetrics:
        """
        Compute aggregate metrics over the retained history.

        Rates are fractions in [0, 1]; cost efficiency is successful
        executions per unit of cost.
        """
        executions = self.get_history()
        if not executions:
            return PerformanceMetrics()

        total = len(executions)
        results = [e.result for e in executions]

        total_steps = sum(len(r.step_results) for r in results)
        parallel_steps = sum(r.optimization.parallel_steps for r in results)
        cache_hits = sum(r.optimization.cache_hits for r in results)
        failed = sum(1 for r in results if not r.success)
        successful = total - failed
        total_cost = sum(r.total_cost for r in results)

        return PerformanceMetrics(
            total_executions=total,
            average_duration_ms=sum(r.duration_ms for r in results) / total,
            parallelism_rate=parallel_steps / total_steps if total_steps else 0.0,
            cache_hit_rate=cache_hits / total_steps if total_steps else 0.0,
            error_rate=failed / total,
            cost_efficiency=successful / total_cost if total_cost > 0 else 0.0,
            bottleneck_items=self._bottleneck_items(results),
            trend=self._trend(results),
        )

    def _bottleneck_items(self, results: List["ExecutionResult"]) -> List[BottleneckItem]:
        totals: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        for result in results:
            for step in result.step_results:
                totals[step.item_name] = totals.get(step.item_name, 0.0) + step.duration_ms
                counts[step.item_name] = counts.get(step.item_name, 0) + 1

        items = [
            BottleneckItem(item_name=name, avg_duration_ms=totals[name] / counts[name], frequency=counts[name])
            for name in totals
        ]
        items.sort(key=lambda b: b.impact_ms, reverse=True)
        return items[:TOP_BOTTLENECK_ITEMS]

    def _trend(self, results: List["ExecutionResult"]) -> TrendAnalysis:
        half = len(results) // 2
        older, newer = results[:half], results[half:]
        if not older or not newer:
            return TrendAnalysis()

        def mean(values: List[float]) -> float:
            return sum(values) / len(values)

        def reduction(old: float, new: float) -> float:
            return (old - new) / old * 100 if old else 0.0

        old_success = mean([1.0 if r.success else 0.0 for r in older])
        new_success = mean([1.0 if r.success else 0.0 for r in newer])

        return TrendAnalysis(
            performance_improvement=reduction(
                mean([r.duration_ms for r in older]), mean([r.duration_ms for r in newer])
            ),
            cost_reduction=reduction(
                mean([r.total_cost for r in older]), mean([r.total_cost for r in newer])
            ),
            reliability_improvement=(new_success - old_success) / old_success * 100 if old_success else 0.0,
        )

    def export_performance_data(self) -> Dict[str, Any]:
        """Profiles, history summaries and metrics as plain data."""
        return {
            "profiles": {name: p.to_dict() for name, p in self.get_profiles().items()},
            "history": [
                {
                    "plan_id": e.plan_id,
                    "timestamp": e.timestamp,
                    "success": e.result.success,
                    "duration_ms": e.result.duration_ms,
                    "total_cost": e.result.total_cost,
                }
                for e in self.get_history()
            ],
            "metrics": self.get_performance_metrics().to_dict(),
        }
