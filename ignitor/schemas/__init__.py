"""
ignitor.schemas - Data structures for the deployment engine.

ActionDescription -> Action -> ModuleGraph -> ExecutionRecord

Lifecycle:
1. ActionDescription: Declared step with Literal / FutureRef argument trees
2. Action: Validated step with a deterministic identity and dependency edges
3. ModuleGraph: Immutable, acyclic set of Actions plus exported results
4. ExecutionRecord: Journaled outcome of one Action on one network
"""

from .future import (
    Future,
    FutureKind,
    FutureRef,
    Literal,
    ArgNode,
    normalize_args,
    iter_refs,
    arg_shape,
    arg_to_dict,
)
from .action import (
    Action,
    ActionDescription,
    ActionKind,
)
from .module import ModuleGraph
from .record import (
    ActionStatus,
    ExecutionRecord,
)

__all__ = [
    # Futures
    "Future",
    "FutureKind",
    "FutureRef",
    "Literal",
    "ArgNode",
    "normalize_args",
    "iter_refs",
    "arg_shape",
    "arg_to_dict",
    # Actions
    "Action",
    "ActionDescription",
    "ActionKind",
    # Module
    "ModuleGraph",
    # Records
    "ActionStatus",
    "ExecutionRecord",
]
