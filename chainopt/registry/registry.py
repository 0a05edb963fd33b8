# chainopt/registry/registry.py
"""
Item registry for chainopt.

The registry stores named item definitions, enabling:
- Dependency lookup when building plans
- Cost/time/reliability estimates for planning
- Categorisation and discovery
- Loading item catalogs from YAML
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from ..errors import DuplicateNameError

logger = logging.getLogger(__name__)


class ItemCategory(Enum):
    """Kinds of work an item performs."""
    PLANNING = "planning"
    GENERATION = "generation"
    ANALYSIS = "analysis"
    TRANSFORMATION = "transformation"
    VALIDATION = "validation"
    ORCHESTRATION = "orchestration"


@dataclass(frozen=True)
class ItemDefinition:
    """
    A registered work item.

    Attributes:
        name: Unique key for the item
        category: What kind of work the item does
        dependencies: Names of items that must complete first
        estimated_duration_ms: Expected execution time
        estimated_cost: Expected monetary cost per execution
        reliability: Probability of success, within [0, 1]
        parallelizable: Whether the item may run alongside siblings
        cacheable: Whether results may be reused for identical input
        description: Optional human-readable description
    """
    name: str
    category: ItemCategory = ItemCategory.ORCHESTRATION
    dependencies: Tuple[str, ...] = ()
    estimated_duration_ms: float = 1000
    estimated_cost: float = 0.01
    reliability: float = 0.95
    parallelizable: bool = True
    cacheable: bool = False
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("Item name must not be empty")
        if not 0.0 <= self.reliability <= 1.0:
            raise ValueError(f"Item '{self.name}': reliability must be within [0, 1]")
        if self.estimated_duration_ms < 0:
            raise ValueError(f"Item '{self.name}': estimated_duration_ms must be >= 0")
        if self.estimated_cost < 0:
            raise ValueError(f"Item '{self.name}': estimated_cost must be >= 0")
        # Normalise list dependencies and string categories
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if isinstance(self.category, str):
            object.__setattr__(self, "category", ItemCategory(self.category))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "dependencies": list(self.dependencies),
            "estimated_duration_ms": self.estimated_duration_ms,
            "estimated_cost": self.estimated_cost,
            "reliability": self.reliability,
            "parallelizable": self.parallelizable,
            "cacheable": self.cacheable,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemDefinition":
        return cls(
            name=data["name"],
            category=ItemCategory(data.get("category", "orchestration")),
            dependencies=tuple(data.get("dependencies", ())),
            estimated_duration_ms=data.get("estimated_duration_ms", 1000),
            estimated_cost=data.get("estimated_cost", 0.01),
            reliability=data.get("reliability", 0.95),
            parallelizable=data.get("parallelizable", True),
            cacheable=data.get("cacheable", False),
            description=data.get("description", ""),
        )


def parse_catalog(yaml_content: str) -> List[ItemDefinition]:
    """Parse item definitions from a YAML catalog with an ``items`` list."""
    data = yaml.safe_load(yaml_content) or {}
    if not isinstance(data, dict):
        raise ValueError("Item catalog must be a mapping with an 'items' list")
    return [ItemDefinition.from_dict(item_data) for item_data in data.get("items", [])]


class ItemRegistry:
    """
    In-memory store of item definitions.

    Re-registering a name overwrites the previous definition unless the
    registry is strict, in which case DuplicateNameError is raised.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self._items: Dict[str, ItemDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: ItemDefinition, strict: Optional[bool] = None) -> ItemDefinition:
        """
        Register an item definition.

        Args:
            definition: The item to register
            strict: Override the registry's strict mode for this call

        Returns:
            The registered definition
        """
        strict = self.strict if strict is None else strict
        with self._lock:
            if definition.name in self._items:
                if strict:
                    raise DuplicateNameError(definition.name)
                logger.warning(f"Overwriting item definition: {definition.name}")
            self._items[definition.name] = definition
        logger.debug(f"Registered item: {definition.name} ({definition.category.value})")
        return definition

    def get(self, name: str) -> Optional[ItemDefinition]:
        """Get an item by name."""
        return self._items.get(name)

    def remove(self, name: str) -> bool:
        """Remove an item from the registry."""
        with self._lock:
            if name not in self._items:
                return False
            del self._items[name]
            return True

    def clear(self):
        """Remove every item."""
        with self._lock:
            self._items.clear()

    def list(self) -> List[ItemDefinition]:
        """List all items."""
        return list(self._items.values())

    def find_by_category(self, category: ItemCategory | str) -> List[ItemDefinition]:
        """Find items of a specific category."""
        category = ItemCategory(category) if isinstance(category, str) else category
        return [i for i in self._items.values() if i.category == category]

    def load_yaml(self, yaml_content: str) -> List[ItemDefinition]:
        """
        Register every item in a YAML catalog.

        Only definitions are stored; no performance profiles are seeded.
        Use Coordinator.load_catalog to register items and seed profiles.

        Expected structure:
            items:
              - name: fetch
                category: analysis
                estimated_duration_ms: 200
              - name: parse
                dependencies: [fetch]
                cacheable: true

        Returns:
            The registered definitions, in document order
        """
        registered = [self.register(definition) for definition in parse_catalog(yaml_content)]
        logger.info(f"Loaded {len(registered)} items from catalog")
        return registered

    def load_file(self, path: Path | str) -> List[ItemDefinition]:
        """Register every item in a YAML catalog file, definitions only."""
        with open(path, "r") as f:
            return self.load_yaml(f.read())

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [item.to_dict() for item in self._items.values()]}

    def __contains__(self, name: str) -> bool:
        return name in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ItemDefinition]:
        return iter(list(self._items.values()))
