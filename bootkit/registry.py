"""
ManifestRegistry - load, validate and query the operation manifest.

The manifest is a YAML (preferred) or JSON document:

    phases:
      1: {name: Foundation}
    scripts:
      git:
        phase: 1
        category: core
        priority: 10
        creates: [.gitignore]
        requires: [git]
        command: "sh scripts/git.sh"
    profiles:
      standard:
        description: Minimal project
        scripts: [git, packages]

Loading validates the whole document up front:
- schema: required fields, field types, unknown fields
- references: depends/conflicts/profile entries must name known operations
- dependency relation must be acyclic (CycleError)
- an operation may not depend on an operation in a later phase
- with a HandlerRegistry, every operation must bind to a handler

Once loaded the registry is immutable; every query is pure.
"""

import hashlib
import heapq
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

import yaml

from bootkit.cache import MtimeCache
from bootkit.errors import (
    ConflictError,
    CycleError,
    ManifestParseError,
    MissingHandlerError,
    OperationNotFoundError,
    ProfileNotFoundError,
)
from bootkit.handlers import HandlerRegistry, OperationHandler
from bootkit.schemas import Operation, Profile
from bootkit.utils import atomic_write

logger = logging.getLogger(__name__)

DEFAULT_PHASE_NAMES = {
    1: "Foundation",
    2: "Development Environment",
    3: "Infrastructure & Databases",
    4: "Services & Deployment",
    5: "Advanced Services",
}

TOP_LEVEL_KEYS = frozenset({"version", "phases", "scripts", "profiles"})

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def load_manifest_file(path: Path) -> dict[str, Any]:
    """
    Read and parse a manifest file (YAML or JSON by extension).

    Raises:
        ManifestParseError: If the file is missing, has an unsupported
                            extension or is not valid YAML/JSON
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in MANIFEST_SUFFIXES:
        raise ManifestParseError(f"Unsupported manifest format '{suffix}' ({path})")
    if not path.is_file():
        raise ManifestParseError(f"Manifest not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            if suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestParseError(f"Invalid manifest syntax in {path}: {e}")

    if data is None:
        raise ManifestParseError(f"Manifest is empty: {path}")
    return data


def _parse_phase_names(raw: Any) -> dict[int, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ManifestParseError("'phases' must be a mapping of phase number to name")

    names = {}
    for key, value in raw.items():
        try:
            phase = int(key)
        except (TypeError, ValueError):
            raise ManifestParseError(f"phase key must be an integer, got {key!r}")
        if isinstance(value, dict):
            value = value.get("name")
        if not isinstance(value, str) or not value:
            raise ManifestParseError(f"phase {phase} must have a name")
        names[phase] = value
    return names


def _find_cycle(operations: Mapping[str, Operation]) -> Optional[list[str]]:
    """Return one dependency cycle as a path (first id repeated at the end), or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    stack: list[str] = []

    def visit(op_id: str) -> Optional[list[str]]:
        visiting.add(op_id)
        stack.append(op_id)
        for dep in operations[op_id].depends:
            if dep in visiting:
                return stack[stack.index(dep):] + [dep]
            if dep not in done:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        visiting.discard(op_id)
        done.add(op_id)
        return None

    for op_id in sorted(operations):
        if op_id not in done:
            found = visit(op_id)
            if found:
                return found
    return None


def _order_phase(ops: list[Operation]) -> list[Operation]:
    """
    Topologically sort one phase's operations.

    Only edges inside the phase constrain the order (earlier phases always run
    first). Among ready operations, lower (priority, id) goes first.
    """
    by_id = {op.id: op for op in ops}
    indegree = {op.id: 0 for op in ops}
    dependents: dict[str, list[str]] = {op.id: [] for op in ops}
    for op in ops:
        for dep in op.depends:
            if dep in by_id:
                indegree[op.id] += 1
                dependents[dep].append(op.id)

    ready = [op.sort_key for op in ops if indegree[op.id] == 0]
    heapq.heapify(ready)
    ordered = []
    while ready:
        _, op_id = heapq.heappop(ready)
        ordered.append(by_id[op_id])
        for child in dependents[op_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, by_id[child].sort_key)
    return ordered


class ManifestRegistry:
    """
    Validated, immutable view of a manifest.

    Build with ManifestRegistry.load() (file or dict) rather than the
    constructor.
    """

    def __init__(
        self,
        operations: Mapping[str, Operation],
        profiles: Mapping[str, Profile],
        phase_names: Optional[Mapping[int, str]] = None,
        handlers: Optional[Mapping[str, OperationHandler]] = None,
        source: Optional[Path] = None,
    ):
        self._operations = dict(operations)
        self._profiles = dict(profiles)
        self._phase_names = dict(phase_names or {})
        self._handlers = dict(handlers) if handlers is not None else None
        self._source = source

        self._by_phase: dict[int, list[Operation]] = {}
        for phase in sorted({op.phase for op in self._operations.values()}):
            members = [op for op in self._operations.values() if op.phase == phase]
            self._by_phase[phase] = _order_phase(members)

        # Global execution position: phase ascending, then in-phase order
        self._position: dict[str, int] = {}
        for phase in sorted(self._by_phase):
            for op in self._by_phase[phase]:
                self._position[op.id] = len(self._position)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        source: Union[str, Path, Mapping[str, Any]],
        handlers: Optional[HandlerRegistry] = None,
    ) -> "ManifestRegistry":
        """
        Load and validate a manifest.

        Args:
            source: Manifest file path, or an already-parsed mapping
            handlers: If given, bind every operation to a handler now

        Returns:
            ManifestRegistry

        Raises:
            ManifestParseError: If the manifest is malformed or references unknown ids
            CycleError: If the dependency relation has a cycle
            MissingHandlerError: If handlers is given and an operation has none
        """
        if isinstance(source, Mapping):
            return cls.from_dict(source, handlers=handlers)

        path = Path(source)
        return cls.from_dict(load_manifest_file(path), handlers=handlers, source=path)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        handlers: Optional[HandlerRegistry] = None,
        source: Optional[Path] = None,
    ) -> "ManifestRegistry":
        """Validate a parsed manifest document and build the registry."""
        if not isinstance(data, Mapping):
            raise ManifestParseError("Manifest must be a mapping")

        unknown = set(data) - TOP_LEVEL_KEYS
        if unknown:
            raise ManifestParseError(f"Unknown top-level key(s): {', '.join(sorted(map(str, unknown)))}")

        scripts = data.get("scripts")
        if not isinstance(scripts, Mapping):
            raise ManifestParseError("Manifest must have a 'scripts' mapping")

        operations: dict[str, Operation] = {}
        for op_id, body in scripts.items():
            if not isinstance(op_id, str) or not op_id:
                raise ManifestParseError(f"Operation ids must be non-empty strings, got {op_id!r}")
            operations[op_id] = Operation.from_dict(op_id, body)

        raw_profiles = data.get("profiles") or {}
        if not isinstance(raw_profiles, Mapping):
            raise ManifestParseError("'profiles' must be a mapping")
        profiles = {str(name): Profile.from_dict(str(name), body) for name, body in raw_profiles.items()}

        _validate_references(operations, profiles)

        cycle = _find_cycle(operations)
        if cycle:
            raise CycleError(cycle)

        for op in operations.values():
            for dep in op.depends:
                if operations[dep].phase > op.phase:
                    raise ManifestParseError(
                        f"depends on '{dep}' which runs in later phase {operations[dep].phase}",
                        operation_id=op.id,
                    )

        bound = handlers.bind(operations.values()) if handlers is not None else None

        registry = cls(
            operations=operations,
            profiles=profiles,
            phase_names=_parse_phase_names(data.get("phases")),
            handlers=bound,
            source=source,
        )
        logger.debug(f"Loaded manifest with {len(operations)} operation(s) and {len(profiles)} profile(s)")
        return registry

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def source(self) -> Optional[Path]:
        return self._source

    @property
    def has_handlers(self) -> bool:
        return self._handlers is not None

    def operation(self, op_id: str) -> Operation:
        """
        Get an operation by id.

        Raises:
            OperationNotFoundError: If the id is unknown
        """
        try:
            return self._operations[op_id]
        except KeyError:
            raise OperationNotFoundError(f"Unknown operation: {op_id}")

    def operations_by_phase(self, phase: int, include_hidden: bool = False) -> list[Operation]:
        """Operations of one phase in execution order (dependencies first)."""
        ops = self._by_phase.get(phase, [])
        return [op for op in ops if include_hidden or not op.hidden]

    def resolve_all(self, include_hidden: bool = False) -> list[Operation]:
        """Every operation in execution order, phases ascending."""
        result = []
        for phase in self.phases():
            result.extend(self.operations_by_phase(phase, include_hidden=include_hidden))
        return result

    def phases(self) -> list[int]:
        return sorted(self._by_phase)

    def phase_name(self, phase: int) -> str:
        if phase in self._phase_names:
            return self._phase_names[phase]
        return DEFAULT_PHASE_NAMES.get(phase, f"Phase {phase}")

    def dependencies_of(self, op_id: str) -> frozenset[str]:
        """Direct dependencies."""
        return frozenset(self.operation(op_id).depends)

    def transitive_dependencies_of(self, op_id: str) -> frozenset[str]:
        """Transitive closure of dependencies (excluding op_id itself)."""
        seen: set[str] = set()
        pending = list(self.operation(op_id).depends)
        while pending:
            dep = pending.pop()
            if dep in seen:
                continue
            seen.add(dep)
            pending.extend(self._operations[dep].depends)
        return frozenset(seen)

    def profiles(self) -> list[Profile]:
        return list(self._profiles.values())

    def profile(self, name: str) -> Profile:
        try:
            return self._profiles[name]
        except KeyError:
            raise ProfileNotFoundError(f"Unknown profile: {name}")

    def resolve_profile(self, name: str) -> list[str]:
        """
        Expand a profile into operation ids.

        Preserves declaration order; duplicates keep their first position.

        Raises:
            ProfileNotFoundError: If the profile is unknown
        """
        return list(dict.fromkeys(self.profile(name).operations))

    def categories(self) -> list[str]:
        return sorted({op.category for op in self._operations.values()})

    def operations_by_category(self, category: str, include_hidden: bool = False) -> list[Operation]:
        return [
            op for op in self.resolve_all(include_hidden=include_hidden)
            if op.category == category
        ]

    def ordered(self, op_ids: Iterable[str]) -> list[Operation]:
        """
        Sort arbitrary ids into execution order, deduplicated.

        Raises:
            OperationNotFoundError: If an id is unknown
        """
        unique = {op_id: self.operation(op_id) for op_id in op_ids}
        return sorted(unique.values(), key=lambda op: self._position[op.id])

    def handler(self, op_id: str) -> OperationHandler:
        """
        Get the handler bound at load time.

        Raises:
            OperationNotFoundError: If the id is unknown
            MissingHandlerError: If the registry was loaded without handlers
        """
        self.operation(op_id)
        if self._handlers is None:
            raise MissingHandlerError([op_id])
        return self._handlers[op_id]

    def check_conflicts(self, op_ids: Iterable[str]) -> None:
        """
        Fail if any two of the requested operations conflict.

        A conflict declared on either side counts.

        Raises:
            OperationNotFoundError: If an id is unknown
            ConflictError: Listing every conflicting pair
        """
        requested = list(dict.fromkeys(op_ids))
        requested_set = set(requested)
        pairs = set()
        for op_id in requested:
            for other in self.operation(op_id).conflicts:
                if other in requested_set:
                    pairs.add(tuple(sorted((op_id, other))))
        if pairs:
            raise ConflictError(sorted(pairs))

    def to_dict(self) -> dict[str, Any]:
        """Canonical manifest document."""
        return {
            "phases": {str(p): {"name": n} for p, n in sorted(self._phase_names.items())},
            "scripts": {op_id: self._operations[op_id].to_dict() for op_id in sorted(self._operations)},
            "profiles": {name: self._profiles[name].to_dict() for name in sorted(self._profiles)},
        }

    def content_hash(self) -> str:
        """SHA256 of the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __contains__(self, op_id: object) -> bool:
        return op_id in self._operations

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.resolve_all(include_hidden=True))

    def __len__(self) -> int:
        return len(self._operations)

    def __repr__(self) -> str:
        return f"ManifestRegistry(operations={len(self._operations)}, profiles={len(self._profiles)})"


def _validate_references(operations: Mapping[str, Operation], profiles: Mapping[str, Profile]) -> None:
    for op in operations.values():
        for dep in op.depends:
            if dep not in operations:
                raise ManifestParseError(f"depends on unknown operation '{dep}'", operation_id=op.id)
        for other in op.conflicts:
            if other not in operations:
                raise ManifestParseError(f"conflicts with unknown operation '{other}'", operation_id=op.id)
            if other == op.id:
                raise ManifestParseError("operation conflicts with itself", operation_id=op.id)
    for profile in profiles.values():
        for op_id in profile.operations:
            if op_id not in operations:
                raise ManifestParseError(
                    f"profile '{profile.name}' references unknown operation '{op_id}'",
                    operation_id=op_id,
                )


class ManifestSource:
    """
    A manifest file read through the Cache Layer.

    registry() re-parses the file only when its mtime changed; write()
    replaces the file atomically and drops the cached parse.
    """

    def __init__(self, path: Union[str, Path], cache: Optional[MtimeCache] = None):
        self.path = Path(path)
        self.cache = cache or MtimeCache()

    @property
    def cache_key(self) -> str:
        return f"manifest:{self.path}"

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> dict[str, Any]:
        """Parsed manifest document (cached)."""
        return self.cache.cached(self.cache_key, self.path, lambda: load_manifest_file(self.path))

    def registry(self, handlers: Optional[HandlerRegistry] = None) -> ManifestRegistry:
        return ManifestRegistry.from_dict(self.read(), handlers=handlers, source=self.path)

    def write(self, data: Mapping[str, Any]) -> None:
        """
        Validate and atomically write a manifest document.

        Raises:
            ManifestParseError: If data is not a valid manifest (nothing is written)
        """
        ManifestRegistry.from_dict(data)
        if self.path.suffix.lower() == ".json":
            content = json.dumps(data, indent=2) + "\n"
        else:
            content = yaml.safe_dump(dict(data), sort_keys=False, default_flow_style=False)
        atomic_write(self.path, content)
        self.cache.invalidate(self.cache_key)
        logger.info(f"Wrote manifest {self.path}")
