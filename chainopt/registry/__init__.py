# chainopt/registry/__init__.py
"""
Item registry.

The registry holds the declared work items a plan can be built from:
name, category, dependencies and cost/time/reliability estimates.

Example:
    registry = ItemRegistry()
    registry.register(ItemDefinition(name="fetch", estimated_duration_ms=200))
    registry.register(ItemDefinition(name="parse", dependencies=("fetch",)))
"""

from .registry import ItemCategory, ItemDefinition, ItemRegistry, parse_catalog

__all__ = ["ItemCategory", "ItemDefinition", "ItemRegistry", "parse_catalog"]
