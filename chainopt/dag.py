# chainopt/dag.py
"""
Dependency graph structures.

A DependencyGraph maps each item name to the set of item names it
depends on. Graphs are built fresh for every plan request from the
item registry; transitive dependencies are pulled in automatically.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from .errors import CircularDependencyError, ItemNotFoundError
from .registry import ItemRegistry

logger = logging.getLogger(__name__)

# Three-color marking for the depth-first sort
_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


@dataclass
class DependencyGraph:
    """
    Adjacency mapping from item name to its dependency names.

    Insertion order of ``edges`` is the order items were requested
    (dependencies pulled in transitively come right after the item that
    needed them), which keeps the topological order deterministic.
    """
    edges: Dict[str, Set[str]] = field(default_factory=dict)

    def add_item(self, name: str, dependencies: Iterable[str] = ()) -> None:
        """Add an item with its dependency names."""
        self.edges.setdefault(name, set()).update(dependencies)

    def dependencies_of(self, name: str) -> Set[str]:
        if name not in self.edges:
            raise KeyError(f"Item {name} not in graph")
        return self.edges[name]

    def dependents_of(self, name: str) -> Set[str]:
        """Items that directly depend on ``name``."""
        return {item for item, deps in self.edges.items() if name in deps}

    def topological_order(self) -> List[str]:
        """
        Return items in dependency order (dependencies first).

        Depth-first with three-color marking. Reaching an item that is
        still in progress means a cycle.

        Raises:
            CircularDependencyError: naming the item that closes the cycle
        """
        return self.order_with_groups()[0]

    def compute_groups(self) -> Dict[str, int]:
        """
        Assign each item a parallel group.

        group = 0 with no dependencies, else 1 + max(group of deps), so
        every dependency sits in a strictly lower group.
        """
        return self.order_with_groups()[1]

    def order_with_groups(self) -> Tuple[List[str], Dict[str, int]]:
        """
        Topological order and group numbers, computed in one pass.

        The depth-first walk keeps an explicit stack of
        (item, iterator over its sorted dependencies), so chain length
        is not limited by the interpreter's recursion depth.
        """
        state: Dict[str, int] = {}
        groups: Dict[str, int] = {}
        order: List[str] = []

        for root in self.edges:
            if state.get(root, _UNVISITED) != _UNVISITED:
                continue

            state[root] = _IN_PROGRESS
            # Sorted for a stable order between sibling dependencies
            stack: List[Tuple[str, Iterator[str]]] = [(root, iter(sorted(self.edges.get(root, ()))))]
            path: List[str] = [root]

            while stack:
                name, pending = stack[-1]
                dep = next(pending, None)

                if dep is None:
                    stack.pop()
                    path.pop()
                    state[name] = _DONE
                    deps = self.edges.get(name, ())
                    groups[name] = 1 + max(groups[d] for d in deps) if deps else 0
                    order.append(name)
                    continue

                current = state.get(dep, _UNVISITED)
                if current == _DONE:
                    continue
                if current == _IN_PROGRESS:
                    cycle = path[path.index(dep):] + [dep]
                    raise CircularDependencyError(dep, cycle)

                state[dep] = _IN_PROGRESS
                stack.append((dep, iter(sorted(self.edges.get(dep, ())))))
                path.append(dep)

        return order, groups

    def validate(self) -> List[str]:
        """Validate graph structure. Returns list of errors (empty if valid)."""
        errors = []
        for name, deps in self.edges.items():
            for dep in deps:
                if dep not in self.edges:
                    errors.append(f"Item {name} references missing dependency {dep}")
        if not errors:
            try:
                self.topological_order()
            except CircularDependencyError as e:
                errors.append(str(e))
        return errors

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: sorted(deps) for name, deps in self.edges.items()}

    def __contains__(self, name: str) -> bool:
        return name in self.edges

    def __len__(self) -> int:
        return len(self.edges)


def build_dependency_graph(names: Iterable[str], registry: ItemRegistry) -> DependencyGraph:
    """
    Build the dependency graph for the requested item names.

    Dependencies are looked up in the registry, not in the request:
    a dependency must be registered but need not be requested.

    Raises:
        ItemNotFoundError: a requested item or any transitive dependency
            is not registered
    """
    graph = DependencyGraph()
    pending: List[Tuple[str, str | None]] = [(name, None) for name in reversed(list(names))]

    while pending:
        name, required_by = pending.pop()
        if name in graph:
            continue
        definition = registry.get(name)
        if definition is None:
            raise ItemNotFoundError(name, required_by)
        graph.add_item(name, definition.dependencies)
        for dep in reversed(definition.dependencies):
            if dep not in graph:
                pending.append((dep, name))

    logger.debug(f"Built dependency graph with {len(graph)} items")
    return graph
