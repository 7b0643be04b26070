"""
Action identity computation.

This module centralizes how action identities are derived so that the
builder, the journal and drift detection agree on identity semantics.

Identity Pattern:
    {module}#{declared_name}:{shape_hash}

Examples:
    - ETHLockerModule#ETHLockerNFT:5f0c1e9a2b7d4c33
    - ETHLockerModule#ETHLockerNFT.setMinter:a91d07be44c2e810

The shape hash covers the action kind, the contract or target and method,
literal argument values, the declared names of referenced futures, the
sender, the attached value and explicit `after` dependencies. It never covers
resolved values (deployed addresses), so identities are stable across runs of
an unmodified description and change whenever the description changes.

Rule: identities are opaque - never parsed. Use `name_of` only for display.
"""

import hashlib
import json
from typing import Any

from ignitor.schemas.action import ActionDescription, ActionKind
from ignitor.schemas.future import arg_shape

HASH_LENGTH = 16


def action_shape(description: ActionDescription) -> dict[str, Any]:
    """
    Structural shape of an action description.

    Example:
        >>> action_shape(ActionDescription(name="Token", kind=ActionKind.DEPLOY,
        ...                                contract="Token", args=(Literal(1),)))
        {'kind': 'deploy', 'contract': 'Token', 'args': [['lit', 1]], 'from': None, 'value': 0, 'after': []}
    """
    shape: dict[str, Any] = {"kind": description.kind.value}
    if description.kind == ActionKind.DEPLOY:
        shape["contract"] = description.contract
    else:
        shape["target"] = description.target.future_id
        shape["method"] = description.method
    shape["args"] = [arg_shape(a) for a in description.args]
    shape["from"] = description.sender
    shape["value"] = description.value
    shape["after"] = sorted(ref.future_id for ref in description.after)
    return shape


def shape_hash(description: ActionDescription) -> str:
    """Short SHA256 of the canonical JSON encoding of the action shape."""
    try:
        canonical = json.dumps(
            action_shape(description), sort_keys=True, separators=(",", ":")
        )
    except TypeError as e:
        raise ValueError(
            f"Action '{description.name}' has a non JSON-serializable argument: {e}"
        ) from e
    return hashlib.sha256(canonical.encode()).hexdigest()[:HASH_LENGTH]


def action_identity(module: str, description: ActionDescription) -> str:
    """
    Compute the deterministic identity of an action.

    Args:
        module: Module name
        description: The declared action

    Returns:
        Identity string "{module}#{name}:{shape_hash}"
    """
    return f"{module}#{description.name}:{shape_hash(description)}"


def default_deploy_name(contract: str) -> str:
    """Default declared name of a deployment: the contract name."""
    return contract


def default_call_name(target_name: str, method: str) -> str:
    """Default declared name of a call: '{target}.{method}'."""
    return f"{target_name}.{method}"


def name_of(identity: str) -> str:
    """Human-readable 'Module#Name' part of an identity (display only)."""
    return identity.rsplit(":", 1)[0]
