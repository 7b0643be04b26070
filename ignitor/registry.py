"""
ModuleRegistry - explicit registry of built modules, and definition loading.

There is no process-wide registry: a ModuleRegistry is a value that is passed
to and returned from the builder. `register()` returns a new registry.

ModuleDefinitions loads module descriptions from YAML or JSON files in a
definitions directory tree:

    definitions/
        ETHLockerModule.yaml
        tokens/
            TokenModule.json

Definition format:
    module: ETHLockerModule
    actions:
      - contract: ETHLockerNFT
      - contract: ETHLocker
        args: ["0xDd24...", "@ETHLockerNFT", "0x6Ae4..."]
      - call: "@ETHLockerNFT"
        method: setMinter
        args: ["@ETHLocker"]
    results:
      nft: "@ETHLockerNFT"

Strings starting with "@" reference the action with that declared name;
"@@" escapes a literal leading "@".
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

import yaml

from ignitor.errors import GraphError, IgnitorError
from ignitor.identity import default_call_name, default_deploy_name
from ignitor.schemas import (
    ActionDescription,
    ActionKind,
    FutureRef,
    Literal,
    ModuleGraph,
)

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


class DefinitionNotFoundError(IgnitorError):
    """Raised when a module definition is not found."""

    exit_code = 1


class DefinitionValidationError(GraphError):
    """Raised when a module definition file is malformed."""
    pass


class ModuleRegistry:
    """
    Immutable mapping of module name -> ModuleGraph.

    Example:
        registry = ModuleRegistry()
        graph, registry = build_module("Tokens", define, registry)
        registry.get("Tokens") is graph
    """

    def __init__(self, modules: Optional[Mapping[str, ModuleGraph]] = None):
        self._modules = MappingProxyType(dict(modules or {}))

    def register(self, graph: ModuleGraph) -> "ModuleRegistry":
        """Return a new registry including `graph`."""
        existing = self._modules.get(graph.name)
        if existing is not None and existing is not graph:
            raise GraphError(graph.name, "a different module with this name is already registered")
        return ModuleRegistry({**self._modules, graph.name: graph})

    def get(self, name: str) -> ModuleGraph:
        try:
            return self._modules[name]
        except KeyError:
            raise DefinitionNotFoundError(f"Module not registered: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._modules)

    def __contains__(self, name: str) -> bool:
        return name in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self) -> Iterator[ModuleGraph]:
        return (self._modules[n] for n in self.names())


class ModuleDefinitions:
    """
    Loader for module definition files.

    Loaded definitions are built with ModuleGraphBuilder, so every loaded
    module is fully validated.
    """

    def __init__(self, definitions_dir: Path | str, default_sender: Optional[str] = None):
        """
        Initialize the loader.

        Args:
            definitions_dir: Directory containing definition files
            default_sender: Sender for actions without a `from` key
        """
        self._definitions_dir = Path(definitions_dir)
        self._default_sender = default_sender

    @property
    def definitions_dir(self) -> Path:
        return self._definitions_dir

    def available(self) -> list[str]:
        """Names of all definitions found in the directory tree."""
        if not self._definitions_dir.exists():
            return []
        return sorted({
            p.stem for p in self._definitions_dir.glob("**/*")
            if p.suffix in DEFINITION_SUFFIXES and "_deprecated" not in p.parts
        })

    def find(self, name: str) -> Optional[Path]:
        """Locate a definition file; YAML is preferred over JSON."""
        for suffix in DEFINITION_SUFFIXES:
            matches = sorted(self._definitions_dir.glob(f"**/{name}{suffix}"))
            if matches:
                return matches[0]
        return None

    def load_raw(self, name: str) -> dict[str, Any]:
        path = self.find(name)
        if path is None:
            raise DefinitionNotFoundError(f"Module definition not found: {name}")
        try:
            with open(path) as f:
                data = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise DefinitionValidationError(name, f"failed to load {path}: {e}") from e
        if not isinstance(data, dict):
            raise DefinitionValidationError(name, f"{path} must contain a mapping")
        declared = data.get("module", name)
        if declared != name:
            raise DefinitionValidationError(
                name, f"module name mismatch: file is '{name}' but module is '{declared}'"
            )
        return data

    def load(self, name: str, registry: Optional[ModuleRegistry] = None) -> tuple[ModuleGraph, ModuleRegistry]:
        """
        Load, build and register a module.

        Returns:
            Tuple of (graph, registry including the graph)
        """
        from ignitor.builder import ModuleGraphBuilder

        data = self.load_raw(name)
        descriptions, results = parse_definition(name, data, self._default_sender)
        graph = ModuleGraphBuilder().build(name, descriptions, results)
        logger.info(f"Loaded module {name} ({len(graph)} actions)")
        return graph, (registry or ModuleRegistry()).register(graph)


# =============================================================================
# DEFINITION PARSING
# =============================================================================


def _parse_ref(module: str, text: str) -> FutureRef:
    target = text[1:]
    if "#" in target:
        ref_module, _, ref_name = target.partition("#")
        return FutureRef(module=ref_module, name=ref_name)
    return FutureRef(module=module, name=target)


def _parse_value(module: str, value: Any) -> Any:
    """Turn '@Name' strings into FutureRefs, recursively."""
    if isinstance(value, str):
        if value.startswith("@@"):
            return Literal(value[1:])
        if value.startswith("@") and len(value) > 1:
            return _parse_ref(module, value)
        return Literal(value)
    if isinstance(value, dict):
        return {str(k): _parse_value(module, v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return tuple(_parse_value(module, v) for v in value)
    if value is not None and not isinstance(value, (bool, int, float)):
        # YAML dates and timestamps: identities are hashed over JSON
        raise ValueError(
            f"unsupported literal {value!r} ({type(value).__name__}); quote it as a string"
        )
    return Literal(value)


def _require_ref(module: str, action: str, field: str, value: Any) -> FutureRef:
    if not isinstance(value, str) or not value.startswith("@") or value.startswith("@@"):
        raise DefinitionValidationError(
            module, f"action '{action}': '{field}' must be a future reference like '@Name'"
        )
    return _parse_ref(module, value)


def parse_definition(
    module: str,
    data: Mapping[str, Any],
    default_sender: Optional[str] = None,
) -> tuple[list[ActionDescription], dict[str, FutureRef]]:
    """
    Parse a definition mapping into action descriptions and exported results.

    Args:
        module: Module name
        data: Parsed YAML/JSON document
        default_sender: Sender for actions without a `from` key

    Returns:
        Tuple of (descriptions in declaration order, results)

    Raises:
        DefinitionValidationError: If the structure is malformed
    """
    raw_actions = data.get("actions", [])
    if not isinstance(raw_actions, list):
        raise DefinitionValidationError(module, "'actions' must be a list")

    descriptions: list[ActionDescription] = []
    for i, raw in enumerate(raw_actions):
        if not isinstance(raw, dict):
            raise DefinitionValidationError(module, f"action #{i} must be a mapping")
        args = raw.get("args", [])
        if not isinstance(args, list):
            raise DefinitionValidationError(module, f"action #{i}: 'args' must be a list")
        after_raw = raw.get("after", [])
        label = raw.get("id") or raw.get("contract") or raw.get("method") or f"#{i}"
        after = tuple(_require_ref(module, label, "after", a) for a in after_raw)
        try:
            common = dict(
                args=tuple(_parse_value(module, a) for a in args),
                sender=raw.get("from") or default_sender,
                value=int(raw.get("value", 0)),
                after=after,
            )
            if "contract" in raw and "call" in raw:
                raise ValueError("an action is either 'contract' or 'call', not both")
            if "contract" in raw:
                descriptions.append(ActionDescription(
                    name=raw.get("id") or default_deploy_name(raw["contract"]),
                    kind=ActionKind.DEPLOY,
                    contract=raw["contract"],
                    **common,
                ))
            elif "call" in raw:
                target = _require_ref(module, label, "call", raw["call"])
                method = raw.get("method")
                if not method:
                    raise ValueError("a call needs a 'method'")
                descriptions.append(ActionDescription(
                    name=raw.get("id") or default_call_name(target.name, method),
                    kind=ActionKind.CALL,
                    target=target,
                    method=method,
                    **common,
                ))
            else:
                raise ValueError("expected a 'contract' or 'call' key")
        except (TypeError, ValueError) as e:
            raise DefinitionValidationError(module, f"action '{label}': {e}") from e

    results_raw = data.get("results", {}) or {}
    if not isinstance(results_raw, dict):
        raise DefinitionValidationError(module, "'results' must be a mapping")
    results = {
        export: _require_ref(module, f"results.{export}", "result", ref)
        for export, ref in results_raw.items()
    }
    return descriptions, results
