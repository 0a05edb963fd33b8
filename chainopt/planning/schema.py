# chainopt/planning/schema.py
"""
Data structures for execution plans.

An ExecutionPlan contains every step needed to run a requested item
set, in dependency order, with each step assigned a parallel group and
a retry policy. Plans are immutable once created.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_RETRY_ON: Tuple[str, ...] = ("timeout", "network_error", "unavailable")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for one step.

    Backoff is linear: the n-th retry waits ``backoff_ms * n``.

    Attributes:
        max_retries: Retries allowed after the first attempt
        backoff_ms: Base delay between attempts
        retry_on: Failure kinds that may be retried
    """
    max_retries: int = 0
    backoff_ms: float = 1000
    retry_on: Tuple[str, ...] = DEFAULT_RETRY_ON

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_ms < 0:
            raise ValueError("backoff_ms must be >= 0")
        object.__setattr__(self, "retry_on", tuple(self.retry_on))

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_for(self, attempt: int) -> float:
        """Delay in milliseconds before retry number ``attempt`` (1-based)."""
        return self.backoff_ms * attempt

    def is_retryable(self, kind: str) -> bool:
        return kind in self.retry_on

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff_ms": self.backoff_ms,
            "retry_on": list(self.retry_on),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=data.get("max_retries", 0),
            backoff_ms=data.get("backoff_ms", 1000),
            retry_on=tuple(data.get("retry_on", DEFAULT_RETRY_ON)),
        )


@dataclass(frozen=True)
class PlanStep:
    """
    A single step in the execution plan.

    Attributes:
        step_id: Unique identifier within the plan
        item_name: The registered item this step runs
        input: Input payload passed to the executor
        dependencies: Declared dependency item names
        parallel_group: Group number; every dependency has a lower one
        retry_policy: How failures of this step are retried
    """
    step_id: str
    item_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    dependencies: Tuple[str, ...] = ()
    parallel_group: int = 0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if self.parallel_group < 0:
            raise ValueError("parallel_group must be >= 0")
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    def with_retry_policy(self, policy: RetryPolicy) -> "PlanStep":
        return replace(self, retry_policy=policy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "item_name": self.item_name,
            "input": self.input,
            "dependencies": list(self.dependencies),
            "parallel_group": self.parallel_group,
            "retry_policy": self.retry_policy.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanStep":
        return cls(
            step_id=data["step_id"],
            item_name=data["item_name"],
            input=data.get("input", {}),
            dependencies=tuple(data.get("dependencies", ())),
            parallel_group=data.get("parallel_group", 0),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy", {})),
        )


@dataclass(frozen=True)
class OptimizationSettings:
    """Plan-level execution switches."""
    parallelism_enabled: bool = True
    caching_enabled: bool = True
    target_duration_ms: float = 30000
    max_concurrent_steps: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parallelism_enabled": self.parallelism_enabled,
            "caching_enabled": self.caching_enabled,
            "target_duration_ms": self.target_duration_ms,
            "max_concurrent_steps": self.max_concurrent_steps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizationSettings":
        return cls(
            parallelism_enabled=data.get("parallelism_enabled", True),
            caching_enabled=data.get("caching_enabled", True),
            target_duration_ms=data.get("target_duration_ms", 30000),
            max_concurrent_steps=data.get("max_concurrent_steps", 5),
        )


@dataclass(frozen=True)
class PlanConstraints:
    """
    Caller-supplied limits.

    Attributes:
        max_total_duration_ms: Upper bound on total run time
        max_total_cost: Upper bound on total cost
        required_reliability: Minimum acceptable success probability
        max_retries: Retries requested for steps that would otherwise get none
    """
    max_total_duration_ms: Optional[float] = None
    max_total_cost: Optional[float] = None
    required_reliability: float = 0.9
    max_retries: Optional[int] = None

    def __post_init__(self):
        if not 0.0 <= self.required_reliability <= 1.0:
            raise ValueError("required_reliability must be within [0, 1]")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_total_duration_ms": self.max_total_duration_ms,
            "max_total_cost": self.max_total_cost,
            "required_reliability": self.required_reliability,
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlanConstraints":
        data = data or {}
        return cls(
            max_total_duration_ms=data.get("max_total_duration_ms"),
            max_total_cost=data.get("max_total_cost"),
            required_reliability=data.get("required_reliability", 0.9),
            max_retries=data.get("max_retries"),
        )


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Complete execution plan for a requested item set.

    Steps are stored in execution order: ascending parallel group, then
    topological order within a group.

    Attributes:
        plan_id: Unique plan identifier
        name: Plan name given by the caller
        description: Free-text description
        steps: Steps in execution order
        optimization: Execution switches
        constraints: Caller limits
        metadata: Estimates and planning notes
    """
    plan_id: str
    name: str
    steps: Tuple[PlanStep, ...]
    description: str = ""
    optimization: OptimizationSettings = field(default_factory=OptimizationSettings)
    constraints: PlanConstraints = field(default_factory=PlanConstraints)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if "created_at" not in self.metadata:
            self.metadata["created_at"] = datetime.now(timezone.utc).isoformat()

    @property
    def created_at(self) -> str:
        return self.metadata["created_at"]

    def get_steps_by_group(self) -> Dict[int, List[PlanStep]]:
        """
        Group steps by parallel group.

        Steps in the same group can execute in parallel.

        Returns:
            Dict mapping group number -> list of steps, keys ascending
        """
        by_group: Dict[int, List[PlanStep]] = {}
        for step in sorted(self.steps, key=lambda s: s.parallel_group):
            by_group.setdefault(step.parallel_group, []).append(step)
        return by_group

    def get_step(self, step_id: str) -> Optional[PlanStep]:
        """Get step by ID."""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def get_step_for_item(self, item_name: str) -> Optional[PlanStep]:
        for step in self.steps:
            if step.item_name == item_name:
                return step
        return None

    @property
    def item_names(self) -> List[str]:
        return [s.item_name for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "optimization": self.optimization.to_dict(),
            "constraints": self.constraints.to_dict(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionPlan":
        return cls(
            plan_id=data["plan_id"],
            name=data["name"],
            description=data.get("description", ""),
            steps=tuple(PlanStep.from_dict(s) for s in data.get("steps", [])),
            optimization=OptimizationSettings.from_dict(data.get("optimization", {})),
            constraints=PlanConstraints.from_dict(data.get("constraints")),
            metadata=dict(data.get("metadata", {})),
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> "ExecutionPlan":
        return cls.from_dict(json.loads(json_str))

    def summary(self) -> str:
        """Get a human-readable summary of the plan."""
        by_group = self.get_steps_by_group()

        lines = [
            f"Execution Plan: {self.plan_id}",
            f"Name: {self.name}",
            f"Steps: {len(self.steps)}",
            f"Groups: {len(by_group)}",
        ]
        if "estimated_duration_ms" in self.metadata:
            lines.append(f"Estimated duration: {self.metadata['estimated_duration_ms']:.0f}ms")
        if "estimated_cost" in self.metadata:
            lines.append(f"Estimated cost: ${self.metadata['estimated_cost']:.4f}")
        lines.append("")

        for group in sorted(by_group.keys()):
            steps = by_group[group]
            lines.append(f"Group {group}: ({len(steps)} steps, can run in parallel)")
            for step in steps:
                retries = step.retry_policy.max_retries
                retry_note = f" [retries={retries}]" if retries else ""
                lines.append(f"  - {step.step_id}: {step.item_name}{retry_note}")

        return "\n".join(lines)
