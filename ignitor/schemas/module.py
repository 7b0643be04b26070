"""
ModuleGraph schema - a validated, immutable graph of actions.

Produced by the ModuleGraphBuilder and consumed read-only by the
reconciliation engine and the executor.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .action import Action
from .future import FutureRef


@dataclass(frozen=True, eq=False)
class ModuleGraph:
    """
    A module's actions with explicit dependency edges.

    Attributes:
        name: Module name
        actions: Declared name -> Action, in declaration order
        order: A topological order of declared names (stable w.r.t. declaration)
        results: Exported name -> FutureRef
    """
    name: str
    actions: Mapping[str, Action]
    order: tuple[str, ...]
    results: Mapping[str, FutureRef] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "actions", MappingProxyType(dict(self.actions)))
        object.__setattr__(self, "results", MappingProxyType(dict(self.results)))
        dependents: dict[str, list[str]] = {n: [] for n in self.actions}
        for action in self.actions.values():
            for dep in action.dependencies:
                dependents[dep].append(action.name)
        object.__setattr__(
            self, "_dependents",
            MappingProxyType({k: tuple(v) for k, v in dependents.items()}),
        )

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return (self.actions[n] for n in self.order)

    def get(self, name: str) -> Action:
        return self.actions[name]

    def dependents(self, name: str) -> tuple[str, ...]:
        """Declared names of actions that directly consume `name`."""
        return self._dependents[name]

    def descendants(self, names: Iterable[str]) -> set[str]:
        """All actions transitively depending on any of `names` (exclusive)."""
        seen: set[str] = set()
        stack = list(names)
        while stack:
            for child in self._dependents[stack.pop()]:
                if child not in seen:
                    seen.add(child)
                    stack.append(child)
        return seen

    def by_identity(self) -> dict[str, Action]:
        return {a.identity: a for a in self.actions.values()}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "module": self.name,
            "actions": [self.actions[n].to_dict() for n in self.order],
            "results": {k: f"@{v.future_id}" for k, v in self.results.items()},
        }
