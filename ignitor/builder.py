"""
Builder - Transform declarative action descriptions into a ModuleGraph.

Two entry points share one validator:

- ModuleBuilder: the chained declarative API. `contract()` and `call()` each
  return a Future handle that can be passed into later actions' arguments.
- ModuleGraphBuilder: validates an ordered list of ActionDescriptions
  (from ModuleBuilder or from YAML/JSON definitions) and produces the graph.

Validation is eager and happens before any network interaction:
- DuplicateIdentityError: two actions share a declared name / identity
- UnknownReferenceError: a reference names no action in this module
- CycleError: dependency edges form a cycle

Usage:
    from ignitor.builder import build_module

    def define(m):
        nft = m.contract("ETHLockerNFT")
        locker = m.contract("ETHLocker", [PYTH, nft, AAVE_POOL])
        m.call(nft, "setMinter", [locker])
        return {"ethLocker": locker, "nft": nft}

    graph, registry = build_module("ETHLockerModule", define)
"""

import heapq
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from ignitor.errors import (
    CycleError,
    DuplicateIdentityError,
    GraphError,
    UnknownReferenceError,
)
from ignitor.identity import action_identity, default_call_name, default_deploy_name
from ignitor.registry import ModuleRegistry
from ignitor.schemas import (
    Action,
    ActionDescription,
    ActionKind,
    Future,
    FutureKind,
    FutureRef,
    ModuleGraph,
    normalize_args,
)

logger = logging.getLogger(__name__)


class ModuleGraphBuilder:
    """
    Validates action descriptions and builds an immutable ModuleGraph.

    The builder holds no state between calls; one instance can build any
    number of modules.
    """

    def build(
        self,
        module: str,
        descriptions: Sequence[ActionDescription],
        results: Optional[Mapping[str, FutureRef]] = None,
    ) -> ModuleGraph:
        """
        Build and validate a module graph.

        Args:
            module: Module name
            descriptions: Declared actions, in declaration order
            results: Exported name -> FutureRef mapping

        Returns:
            The validated ModuleGraph

        Raises:
            DuplicateIdentityError: If two actions share a name or identity
            UnknownReferenceError: If a reference names an undeclared future
            CycleError: If the dependency edges form a cycle
            GraphError: If a call targets something that is not a contract, or an
                        argument is not JSON-serializable
        """
        if not module:
            raise ValueError("Module name is required")
        results = dict(results or {})

        by_name = self._index(module, descriptions)
        dependencies = {
            name: self._dependencies(module, desc, by_name)
            for name, desc in by_name.items()
        }
        order = self._topological_order(module, list(by_name), dependencies)

        for export, ref in results.items():
            if ref.module != module or ref.name not in by_name:
                raise UnknownReferenceError(module, f"results.{export}", ref.future_id)

        actions: dict[str, Action] = {}
        identities: set[str] = set()
        for name, desc in by_name.items():
            try:
                identity = action_identity(module, desc)
            except ValueError as e:
                raise GraphError(module, str(e)) from e
            if identity in identities:
                raise DuplicateIdentityError(module, name)
            identities.add(identity)
            actions[name] = Action(
                module=module,
                name=name,
                identity=identity,
                description=desc,
                dependencies=tuple(sorted(dependencies[name])),
            )

        logger.debug(f"Built module {module}: {len(actions)} actions, order={list(order)}")
        return ModuleGraph(name=module, actions=actions, order=tuple(order), results=results)

    def _index(
        self, module: str, descriptions: Sequence[ActionDescription]
    ) -> dict[str, ActionDescription]:
        by_name: dict[str, ActionDescription] = {}
        for desc in descriptions:
            if desc.name in by_name:
                raise DuplicateIdentityError(module, desc.name)
            by_name[desc.name] = desc
        return by_name

    def _dependencies(
        self,
        module: str,
        desc: ActionDescription,
        by_name: Mapping[str, ActionDescription],
    ) -> set[str]:
        deps: set[str] = set()
        for ref in desc.references():
            if ref.module != module or ref.name not in by_name:
                raise UnknownReferenceError(module, desc.name, ref.future_id)
            deps.add(ref.name)
        if desc.kind == ActionKind.CALL:
            producer = by_name[desc.target.name]
            if producer.kind != ActionKind.DEPLOY:
                raise GraphError(
                    module,
                    f"call '{desc.name}' targets '{desc.target.name}', which is not a contract",
                )
        if desc.name in deps:
            raise CycleError(module, [desc.name, desc.name])
        return deps

    def _topological_order(
        self,
        module: str,
        names: list[str],
        dependencies: Mapping[str, set[str]],
    ) -> list[str]:
        """Kahn's algorithm, breaking ties by declaration order."""
        position = {name: i for i, name in enumerate(names)}
        in_degree = {name: len(dependencies[name]) for name in names}
        dependents: dict[str, list[str]] = {name: [] for name in names}
        for name in names:
            for dep in dependencies[name]:
                dependents[dep].append(name)

        ready = [(position[n], n) for n in names if in_degree[n] == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for child in dependents[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        if len(order) != len(names):
            remaining = [n for n in names if in_degree[n] > 0]
            raise CycleError(module, self._find_cycle(remaining, dependencies))
        return order

    def _find_cycle(self, remaining: list[str], dependencies: Mapping[str, set[str]]) -> list[str]:
        """Walk dependency edges among unsorted nodes until a node repeats."""
        remaining_set = set(remaining)
        path: list[str] = []
        seen: dict[str, int] = {}
        node = remaining[0]
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = sorted(d for d in dependencies[node] if d in remaining_set)[0]
        cycle = path[seen[node]:] + [node]
        # Report producer -> consumer
        return list(reversed(cycle))


class ModuleBuilder:
    """
    Chained declarative API for describing a module.

    Each primitive records an ActionDescription and returns a Future handle.
    The builder only accumulates descriptions; validation happens in
    `build()` via ModuleGraphBuilder.
    """

    def __init__(self, name: str, default_sender: Optional[str] = None):
        self.name = name
        self.default_sender = default_sender
        self._descriptions: list[ActionDescription] = []

    def contract(
        self,
        contract: str,
        args: Iterable[Any] = (),
        *,
        id: Optional[str] = None,
        sender: Optional[str] = None,
        value: int = 0,
        after: Iterable[Future] = (),
    ) -> Future:
        """Declare a contract deployment; returns a CONTRACT future."""
        name = id or default_deploy_name(contract)
        self._descriptions.append(ActionDescription(
            name=name,
            kind=ActionKind.DEPLOY,
            contract=contract,
            args=tuple(normalize_args(a) for a in args),
            sender=sender or self.default_sender,
            value=value,
            after=self._after(after),
        ))
        return Future(module=self.name, name=name, kind=FutureKind.CONTRACT)

    def call(
        self,
        target: Future,
        method: str,
        args: Iterable[Any] = (),
        *,
        id: Optional[str] = None,
        sender: Optional[str] = None,
        value: int = 0,
        after: Iterable[Future] = (),
    ) -> Future:
        """Declare a method call on a deployed contract; returns a VALUE future."""
        if not isinstance(target, Future):
            raise TypeError(f"call target must be a Future, got {type(target).__name__}")
        if target.kind != FutureKind.CONTRACT:
            raise TypeError(f"call target '{target}' is not a contract future")
        name = id or default_call_name(target.name, method)
        self._descriptions.append(ActionDescription(
            name=name,
            kind=ActionKind.CALL,
            target=target.ref(),
            method=method,
            args=tuple(normalize_args(a) for a in args),
            sender=sender or self.default_sender,
            value=value,
            after=self._after(after),
        ))
        return Future(module=self.name, name=name, kind=FutureKind.VALUE)

    @staticmethod
    def _after(after: Iterable[Future]) -> tuple[FutureRef, ...]:
        refs = []
        for f in after:
            if not isinstance(f, Future):
                raise TypeError(f"after entries must be Futures, got {type(f).__name__}")
            refs.append(f.ref())
        return tuple(refs)

    @property
    def descriptions(self) -> tuple[ActionDescription, ...]:
        return tuple(self._descriptions)

    def build(self, results: Optional[Mapping[str, Future]] = None) -> ModuleGraph:
        """Validate the accumulated descriptions into a ModuleGraph."""
        refs = {}
        for export, future in (results or {}).items():
            if not isinstance(future, Future):
                raise TypeError(f"result '{export}' must be a Future")
            refs[export] = future.ref()
        return ModuleGraphBuilder().build(self.name, self._descriptions, refs)


def build_module(
    name: str,
    define: Callable[[ModuleBuilder], Optional[Mapping[str, Future]]],
    registry: Optional[ModuleRegistry] = None,
    default_sender: Optional[str] = None,
) -> tuple[ModuleGraph, ModuleRegistry]:
    """
    Describe and build a module.

    Args:
        name: Module name
        define: Function receiving a ModuleBuilder and returning the
                exported {name: Future} mapping
        registry: Registry to add the module to (a new empty one if None)
        default_sender: Sender for actions that don't name one

    Returns:
        Tuple of (graph, registry including the graph)
    """
    builder = ModuleBuilder(name, default_sender=default_sender)
    results = define(builder)
    graph = builder.build(results)
    registry = (registry or ModuleRegistry()).register(graph)
    return graph, registry
