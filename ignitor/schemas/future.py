"""
Future schemas - placeholders for values produced by other actions.

A Future is the handle returned by the declarative API. Inside an action's
argument tree every leaf is normalized into one of two tagged variants:

- Literal: a concrete JSON-compatible value known at build time
- FutureRef: a reference to the output of another action in the same module

Containers (lists, tuples, dicts) are kept as tuples and dicts of nodes, so the
argument tree can be walked explicitly by the identity hasher and the resolver.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class FutureKind(str, Enum):
    """What a future resolves to."""
    CONTRACT = "contract"  # deployed address
    VALUE = "value"        # call return value


@dataclass(frozen=True)
class Future:
    """
    Handle for the output of a declared action.

    Attributes:
        module: Name of the module that declared the producing action
        name: Declared name of the producing action within the module
        kind: CONTRACT for deploys, VALUE for calls
    """
    module: str
    name: str
    kind: FutureKind = FutureKind.CONTRACT

    @property
    def future_id(self) -> str:
        return f"{self.module}#{self.name}"

    def ref(self) -> "FutureRef":
        return FutureRef(module=self.module, name=self.name)

    def __str__(self) -> str:
        return self.future_id


@dataclass(frozen=True)
class Literal:
    """A concrete argument value."""
    value: Any


@dataclass(frozen=True)
class FutureRef:
    """A reference to the result of the action named `name` in `module`."""
    module: str
    name: str

    @property
    def future_id(self) -> str:
        return f"{self.module}#{self.name}"


ArgNode = Union[Literal, FutureRef, tuple, dict]


def normalize_args(value: Any) -> ArgNode:
    """
    Normalize a user-supplied argument into an argument tree.

    Futures become FutureRefs, containers are walked recursively and
    everything else becomes a Literal.

    Args:
        value: Raw argument value (may embed Futures at any depth)

    Returns:
        The normalized ArgNode
    """
    if isinstance(value, Future):
        return value.ref()
    if isinstance(value, (Literal, FutureRef)):
        return value
    if isinstance(value, dict):
        return {str(k): normalize_args(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return tuple(normalize_args(v) for v in value)
    return Literal(value)


def iter_refs(node: ArgNode):
    """Yield every FutureRef inside an argument tree, depth first."""
    if isinstance(node, FutureRef):
        yield node
    elif isinstance(node, dict):
        for v in node.values():
            yield from iter_refs(v)
    elif isinstance(node, tuple):
        for v in node:
            yield from iter_refs(v)


def arg_shape(node: ArgNode) -> Any:
    """
    Structural shape of an argument tree, for identity hashing.

    Literal values are kept; futures are replaced by their declared name,
    never by what they resolve to.
    """
    if isinstance(node, Literal):
        return ["lit", node.value]
    if isinstance(node, FutureRef):
        return ["ref", node.future_id]
    if isinstance(node, dict):
        return {"map": {k: arg_shape(v) for k, v in node.items()}}
    if isinstance(node, tuple):
        return {"seq": [arg_shape(v) for v in node]}
    raise TypeError(f"Not an argument node: {node!r}")


def arg_to_dict(node: ArgNode) -> Any:
    """Render an argument tree as plain JSON data (futures as '@Module#Name')."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, FutureRef):
        return f"@{node.future_id}"
    if isinstance(node, dict):
        return {k: arg_to_dict(v) for k, v in node.items()}
    if isinstance(node, tuple):
        return [arg_to_dict(v) for v in node]
    raise TypeError(f"Not an argument node: {node!r}")
