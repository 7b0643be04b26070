"""
Action schemas - one deployment step of a module.

An Action is either a contract deployment or a method call on a previously
deployed contract. Actions are built by the ModuleGraphBuilder and are
immutable; their identity is computed once from the module name, the declared
name and the structural shape of the arguments.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .future import ArgNode, FutureRef, arg_to_dict, iter_refs


class ActionKind(str, Enum):
    """Kinds of on-chain actions."""
    DEPLOY = "deploy"
    CALL = "call"


@dataclass(frozen=True)
class ActionDescription:
    """
    A declared, not yet validated action.

    This is the builder's input: the chained API and the YAML loader both
    produce ActionDescriptions. References are checked only when the module
    graph is built.

    Attributes:
        name: Declared name, unique within the module
        kind: deploy or call
        contract: Contract artifact name (deploy only)
        target: Contract future the call is sent to (call only)
        method: Method name (call only)
        args: Normalized argument tree (tuple of ArgNodes)
        sender: Sending account; None means the run's default sender
        value: Native value attached to the transaction
        after: Extra dependencies that are not passed as arguments
    """
    name: str
    kind: ActionKind
    contract: Optional[str] = None
    target: Optional[FutureRef] = None
    method: Optional[str] = None
    args: tuple = ()
    sender: Optional[str] = None
    value: int = 0
    after: tuple[FutureRef, ...] = ()

    def __post_init__(self):
        if self.kind == ActionKind.DEPLOY:
            if not self.contract:
                raise ValueError(f"Deploy '{self.name}' needs a contract name")
            if self.target is not None or self.method is not None:
                raise ValueError(f"Deploy '{self.name}' cannot have a target or method")
        else:
            if self.target is None or not self.method:
                raise ValueError(f"Call '{self.name}' needs a target and a method")
        if self.value < 0:
            raise ValueError(f"Action '{self.name}': value must be >= 0")

    def references(self) -> list[FutureRef]:
        """Every future this description depends on, in declaration order."""
        refs: list[FutureRef] = []
        if self.target is not None:
            refs.append(self.target)
        for node in self.args:
            refs.extend(iter_refs(node))
        refs.extend(self.after)
        return refs


@dataclass(frozen=True, eq=False)
class Action:
    """
    A validated action inside a ModuleGraph.

    Attributes:
        module: Owning module name
        name: Declared name within the module
        identity: Deterministic identity ("Module#Name:<shape hash>")
        description: The ActionDescription this action was built from
        dependencies: Declared names of producing actions, sorted
    """
    module: str
    name: str
    identity: str
    description: ActionDescription
    dependencies: tuple[str, ...] = field(default_factory=tuple)

    @property
    def kind(self) -> ActionKind:
        return self.description.kind

    @property
    def future_id(self) -> str:
        return f"{self.module}#{self.name}"

    @property
    def args(self) -> tuple:
        return self.description.args

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        d = self.description
        result: dict[str, Any] = {
            "name": self.name,
            "identity": self.identity,
            "kind": d.kind.value,
            "args": [arg_to_dict(a) for a in d.args],
            "dependencies": list(self.dependencies),
        }
        if d.kind == ActionKind.DEPLOY:
            result["contract"] = d.contract
        else:
            result["target"] = f"@{d.target.future_id}"
            result["method"] = d.method
        if d.sender:
            result["from"] = d.sender
        if d.value:
            result["value"] = d.value
        return result
