#!/usr/bin/env python3
"""
chainopt CLI

Command-line interface for planning and running item catalogs:
  chainopt plan - Generate an execution plan
  chainopt run - Plan and execute with the simulated executor
  chainopt execute - Execute a saved plan

Usage:
  chainopt plan <catalog> -t <item>[=<json>] [-o plan.json]
  chainopt run <catalog> -t <item>[=<json>] [--seed N] [--time-scale F] [--repeat N]
  chainopt execute <catalog> <plan.json> [--seed N] [--time-scale F]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import OptimizerConfig
from .coordinator import Coordinator
from .engine import ExecutionResult
from .errors import ChainOptError
from .executor import SimulatedExecutor
from .planning import ExecutionPlan, ItemRequest, PlanConstraints
from .registry import ItemRegistry


def parse_target(target_str: str) -> ItemRequest:
    """
    Parse target specification: item[=json]

    The JSON part must be an object and becomes the step input.
    """
    if "=" not in target_str:
        return ItemRequest(name=target_str)

    name, payload = target_str.split("=", 1)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid input for {name}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Input for {name} must be a JSON object")
    return ItemRequest(name=name, input=data)


def build_coordinator(args) -> Coordinator:
    """Create a coordinator with the catalog loaded and a seeded executor."""
    config = OptimizerConfig.from_file(args.config) if args.config else OptimizerConfig()
    registry = ItemRegistry(strict=config.strict_registration)
    executor = SimulatedExecutor(
        registry,
        seed=getattr(args, "seed", None),
        time_scale=getattr(args, "time_scale", 1.0),
    )
    coordinator = Coordinator(config=config, executor=executor, registry=registry)
    coordinator.load_catalog(args.catalog)
    return coordinator


def build_constraints(args) -> PlanConstraints:
    return PlanConstraints(
        max_total_duration_ms=args.max_duration,
        max_total_cost=args.max_cost,
        required_reliability=args.reliability,
        max_retries=args.max_retries,
    )


def print_plan(plan: ExecutionPlan):
    print(f"Plan ID: {plan.plan_id}")
    print(f"Steps: {len(plan.steps)}")
    for group, steps in plan.get_steps_by_group().items():
        print(f"  Group {group}: {len(steps)} steps")
        for step in steps:
            retries = step.retry_policy.max_retries
            note = f" (retries: {retries})" if retries else ""
            print(f"    - {step.item_name}{note}")
    print(f"Estimated duration: {plan.metadata['estimated_duration_ms']:.0f}ms")
    print(f"Estimated cost: ${plan.metadata['estimated_cost']:.4f}")
    print(f"Advisory timeout: {plan.metadata['optimal_timeout_ms']:.0f}ms")
    for violation in plan.metadata.get("constraint_violations", []):
        print(f"  WARNING: {violation}")


def print_result(result: ExecutionResult):
    for step in result.step_results:
        if step.cache_hit:
            status = "CACHED"
        elif step.skipped:
            status = "SKIPPED"
        elif step.success:
            status = "DONE"
        else:
            status = "FAILED"
        retries = f", {step.retry_count} retries" if step.retry_count else ""
        print(f"  [{status}] {step.item_name} ({step.duration_ms:.0f}ms{retries})")
        if step.error:
            print(f"    {step.error}")

    print(f"\nSuccess: {result.success}")
    print(f"Duration: {result.duration_ms:.0f}ms")
    print(f"Cost: ${result.total_cost:.4f}")
    print(f"Parallel steps: {result.optimization.parallel_steps}")
    print(f"Cache hits: {result.optimization.cache_hits}")
    for bottleneck in result.optimization.bottlenecks:
        print(f"  Bottleneck: {bottleneck.item_name} ({bottleneck.reason})")
    for rec in result.recommendations:
        print(f"  [{rec.priority.upper()}] {rec.type}: {rec.message}")


def cmd_plan(args):
    """Generate a plan and save it as JSON."""
    coordinator = build_coordinator(args)
    targets = [parse_target(t) for t in args.target]

    plan = coordinator.create_plan(args.name, targets, constraints=build_constraints(args))
    print_plan(plan)

    suggestions = coordinator.suggest_optimizations(plan)
    if suggestions:
        print("\nSuggestions:")
        for suggestion in suggestions:
            print(f"  [{suggestion.type}] {suggestion.message}")

    output_path = Path(args.output) if args.output else Path("plan.json")
    with open(output_path, "w") as f:
        f.write(plan.to_json())
    print(f"\nPlan saved to: {output_path}")


def run_and_report(coordinator: Coordinator, plan: ExecutionPlan, repeat: int):
    for run in range(1, repeat + 1):
        print(f"\n=== Run {run}/{repeat} ===")
        result = asyncio.run(coordinator.execute_plan(plan))
        print_result(result)

    stats = coordinator.get_cache_stats()
    print("\n=== Cache ===")
    print(f"Entries: {stats.total_entries}")
    print(f"Hit rate: {stats.hit_rate:.1%}")

    metrics = coordinator.get_performance_metrics()
    print("\n=== Metrics ===")
    print(f"Executions: {metrics.total_executions}")
    print(f"Average duration: {metrics.average_duration_ms:.0f}ms")
    print(f"Error rate: {metrics.error_rate:.1%}")
    print(f"Cache hit rate: {metrics.cache_hit_rate:.1%}")


def cmd_run(args):
    """Plan and execute with the simulated executor."""
    coordinator = build_coordinator(args)
    targets = [parse_target(t) for t in args.target]

    plan = coordinator.create_plan(args.name, targets, constraints=build_constraints(args))
    print_plan(plan)
    run_and_report(coordinator, plan, args.repeat)


def cmd_execute(args):
    """Execute a saved plan."""
    coordinator = build_coordinator(args)
    with open(args.plan) as f:
        plan = ExecutionPlan.from_json(f.read())

    print(f"Executing plan: {plan.plan_id}")
    run_and_report(coordinator, plan, args.repeat)


def add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("catalog", help="Item catalog YAML file")
    parser.add_argument("--config", help="Optimizer config YAML file")


def add_plan_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("-t", "--target", action="append", required=True,
                        help="Requested item: name[=json input]")
    parser.add_argument("--name", default="cli-plan", help="Plan name")
    parser.add_argument("--max-duration", type=float, help="Max total duration (ms)")
    parser.add_argument("--max-cost", type=float, help="Max total cost")
    parser.add_argument("--reliability", type=float, default=0.9, help="Required reliability")
    parser.add_argument("--max-retries", type=int, help="Retries for reliable items")


def add_run_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("--seed", type=int, help="Random seed for the simulated executor")
    parser.add_argument("--time-scale", type=float, default=1.0,
                        help="Multiplier on simulated durations (0 = no delay)")
    parser.add_argument("--repeat", type=int, default=1, help="Number of runs")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="chainopt",
        description="chainopt - Dependency-aware work item scheduling",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # plan command
    plan_parser = subparsers.add_parser("plan", help="Generate execution plan")
    add_common_arguments(plan_parser)
    add_plan_arguments(plan_parser)
    plan_parser.add_argument("-o", "--output", help="Output file (default: plan.json)")

    # run command
    run_parser = subparsers.add_parser("run", help="Plan and execute with simulated items")
    add_common_arguments(run_parser)
    add_plan_arguments(run_parser)
    add_run_arguments(run_parser)

    # execute command
    execute_parser = subparsers.add_parser("execute", help="Execute a saved plan")
    add_common_arguments(execute_parser)
    execute_parser.add_argument("plan", help="Plan JSON file")
    add_run_arguments(execute_parser)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "plan":
            cmd_plan(args)
        elif args.command == "run":
            cmd_run(args)
        elif args.command == "execute":
            cmd_execute(args)
        else:
            parser.print_help()
            sys.exit(1)
    except (ChainOptError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
