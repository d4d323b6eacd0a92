"""
Operation and Profile schemas - the declarative manifest entries.

An Operation is one unit of idempotent setup work declared in the manifest.
It is parsed once per process from the manifest source and never mutated;
editing the manifest requires a reload.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from bootkit.errors import ManifestParseError


DEFAULT_PRIORITY = 100
DEFAULT_CATEGORY = "general"

# Manifest fields accepted on a script entry
KNOWN_FIELDS = frozenset({
    "name", "phase", "category", "priority", "creates", "depends", "requires",
    "optional", "conflicts", "idempotent", "safe", "description", "hidden",
    "command", "file",
})


def _str_tuple(op_id: str, data: dict[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if isinstance(value, str):
        # "depends: git" is a common shorthand for a one-item list
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ManifestParseError(f"'{key}' must be a list of strings", operation_id=op_id)
    for item in value:
        if not isinstance(item, str) or not item:
            raise ManifestParseError(
                f"'{key}' must contain non-empty strings, got {item!r}",
                operation_id=op_id,
            )
    return tuple(value)


def _bool(op_id: str, data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ManifestParseError(f"'{key}' must be true or false", operation_id=op_id)
    return value


def _int(op_id: str, data: dict[str, Any], key: str, default: Optional[int]) -> int:
    value = data.get(key, default)
    if value is None:
        raise ManifestParseError(f"missing required field '{key}'", operation_id=op_id)
    # bool is an int subclass; "phase: true" is a typo, not phase 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestParseError(f"'{key}' must be an integer, got {value!r}", operation_id=op_id)
    return value


@dataclass(frozen=True)
class Operation:
    """
    A single manifest operation.

    Attributes:
        id: Unique identifier (the key under `scripts`)
        name: Display name
        phase: Ordering bucket, phases run in ascending order
        category: Free-form tag used for grouping
        priority: Lower runs first within a phase (after dependency order)
        creates: Output paths relative to the project root
        depends: Operation ids that must succeed earlier in the same session
        requires: External tools that must be resolvable as executables
        optional: Tools that only produce a warning when missing
        conflicts: Operation ids that may not be requested together with this one
        idempotent: Safe to re-run; skipped when already satisfied
        safe: Purely additive (never overwrites existing content)
        description: Human description
        hidden: Excluded from phase listings unless explicitly requested
        command: Shell command implementing the operation body
        file: Script path implementing the operation body
    """
    id: str
    phase: int
    name: str = ""
    category: str = DEFAULT_CATEGORY
    priority: int = DEFAULT_PRIORITY
    creates: tuple[str, ...] = ()
    depends: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    idempotent: bool = True
    safe: bool = True
    description: str = ""
    hidden: bool = False
    command: Optional[str] = None
    file: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)
        if self.phase < 1:
            raise ManifestParseError("'phase' must be >= 1", operation_id=self.id)

    @property
    def sort_key(self) -> tuple[int, str]:
        """Tie-break order within a phase: priority, then id."""
        return (self.priority, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the manifest dictionary shape (without the id key)."""
        result: dict[str, Any] = {
            "name": self.name,
            "phase": self.phase,
            "category": self.category,
            "priority": self.priority,
            "creates": list(self.creates),
            "depends": list(self.depends),
            "requires": list(self.requires),
            "optional": list(self.optional),
            "conflicts": list(self.conflicts),
            "idempotent": self.idempotent,
            "safe": self.safe,
        }
        if self.description:
            result["description"] = self.description
        if self.hidden:
            result["hidden"] = True
        if self.command is not None:
            result["command"] = self.command
        if self.file is not None:
            result["file"] = self.file
        return result

    @classmethod
    def from_dict(cls, op_id: str, data: dict[str, Any]) -> "Operation":
        """
        Parse a manifest entry.

        Args:
            op_id: The operation id (key of the entry)
            data: The entry body

        Returns:
            The parsed Operation

        Raises:
            ManifestParseError: On any schema violation, naming op_id
        """
        if not isinstance(data, dict):
            raise ManifestParseError("entry must be a mapping", operation_id=op_id)

        unknown = set(data) - KNOWN_FIELDS
        if unknown:
            raise ManifestParseError(
                f"unknown field(s): {', '.join(sorted(unknown))}", operation_id=op_id
            )

        for key in ("name", "category", "description", "command", "file"):
            if key in data and data[key] is not None and not isinstance(data[key], str):
                raise ManifestParseError(f"'{key}' must be a string", operation_id=op_id)

        return cls(
            id=op_id,
            name=data.get("name") or op_id,
            phase=_int(op_id, data, "phase", None),
            category=data.get("category") or DEFAULT_CATEGORY,
            priority=_int(op_id, data, "priority", DEFAULT_PRIORITY),
            creates=_str_tuple(op_id, data, "creates"),
            depends=_str_tuple(op_id, data, "depends"),
            requires=_str_tuple(op_id, data, "requires"),
            optional=_str_tuple(op_id, data, "optional"),
            conflicts=_str_tuple(op_id, data, "conflicts"),
            idempotent=_bool(op_id, data, "idempotent", True),
            safe=_bool(op_id, data, "safe", True),
            description=data.get("description") or "",
            hidden=_bool(op_id, data, "hidden", False),
            command=data.get("command"),
            file=data.get("file"),
        )


@dataclass(frozen=True)
class Profile:
    """A named bundle of operation ids, in declaration order."""
    name: str
    operations: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"scripts": list(self.operations)}
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "Profile":
        """Parse a profile entry; a bare list is accepted as the script list."""
        if isinstance(data, list):
            data = {"scripts": data}
        if not isinstance(data, dict):
            raise ManifestParseError(f"profile '{name}' must be a mapping or list")
        scripts = data.get("scripts", [])
        if not isinstance(scripts, list) or not all(isinstance(s, str) for s in scripts):
            raise ManifestParseError(f"profile '{name}': 'scripts' must be a list of ids")
        description = data.get("description") or ""
        if not isinstance(description, str):
            raise ManifestParseError(f"profile '{name}': 'description' must be a string")
        return cls(name=name, operations=tuple(scripts), description=description)
