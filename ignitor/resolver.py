"""
FutureResolver - Replace future references with confirmed results.

An action's argument tree holds Literal and FutureRef leaves. Once every
producing action is CONFIRMED, the resolver walks the tree and substitutes
each FutureRef with its producer's recorded result:

    (FutureRef(M, "Token"), Literal(5)) -> ["0xabc...", 5]

Resolving an action with an unconfirmed producer raises
UnresolvedFutureError. The scheduler only dispatches ready actions, so this
indicates a scheduling bug.
"""

from typing import Any, Mapping

from ignitor.errors import UnresolvedFutureError
from ignitor.schemas import (
    Action,
    ActionStatus,
    ArgNode,
    ExecutionRecord,
    FutureRef,
    Literal,
)


def placeholder_for(ref: FutureRef) -> str:
    """Deterministic stand-in value for an unconfirmed future (simulation only)."""
    return f"<future:{ref.future_id}>"


class FutureResolver:
    """
    Resolves an action's arguments against the producers' execution records.

    Args:
        records: Declared name -> live ExecutionRecord for the module
        simulate: If True, unconfirmed producers resolve to placeholders
                  instead of raising (validation-only runs)
    """

    def __init__(self, records: Mapping[str, ExecutionRecord], simulate: bool = False):
        self._records = records
        self._simulate = simulate

    def value_of(self, action: Action, ref: FutureRef) -> Any:
        record = self._records.get(ref.name)
        if record is None or record.status != ActionStatus.CONFIRMED:
            if self._simulate:
                return placeholder_for(ref)
            raise UnresolvedFutureError(action.future_id, ref.future_id)
        return record.result

    def resolve_node(self, action: Action, node: ArgNode) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, FutureRef):
            return self.value_of(action, node)
        if isinstance(node, dict):
            return {k: self.resolve_node(action, v) for k, v in node.items()}
        if isinstance(node, tuple):
            return [self.resolve_node(action, v) for v in node]
        raise TypeError(f"Action '{action.future_id}': not an argument node: {node!r}")

    def resolve_args(self, action: Action) -> list[Any]:
        """
        Resolve every argument of `action`.

        Dependencies that are not passed as arguments (call target, `after`)
        are checked too, so an action is never resolved ahead of them.

        Returns:
            The concrete argument list

        Raises:
            UnresolvedFutureError: If any dependency is not CONFIRMED
        """
        for dep in action.dependencies:
            self.value_of(action, FutureRef(module=action.module, name=dep))
        return [self.resolve_node(action, node) for node in action.args]

    def resolve_target(self, action: Action) -> Any:
        """Address of a call's target contract."""
        return self.value_of(action, action.description.target)
