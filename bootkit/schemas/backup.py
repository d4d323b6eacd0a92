"""
Backup schemas - metadata for a snapshot set.

A Backup is stored as backups/<id>/backup.json next to a blobs/ directory
holding the snapshotted file contents. The metadata is self-describing so
list/restore work without the manifest.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class BackupStatus(str, Enum):
    """Lifecycle of a backup set."""
    ACTIVE = "active"
    RESTORED = "restored"
    PRUNED = "pruned"


class EntryKind(str, Enum):
    """What a path was when it was snapshotted."""
    FILE = "file"
    DIR = "dir"
    ABSENT = "absent"


@dataclass(frozen=True)
class BackupEntry:
    """
    One protected path.

    Attributes:
        path: Path relative to the project root
        kind: file, dir, or absent (the path did not exist before the batch)
        blob: Name of the blob under blobs/ holding the content (None for absent)
        operation_id: Operation whose gate added this path
    """
    path: str
    kind: EntryKind
    blob: Optional[str] = None
    operation_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == EntryKind.ABSENT and self.blob is not None:
            raise ValueError(f"absent entry {self.path} cannot carry a blob")
        if self.kind != EntryKind.ABSENT and self.blob is None:
            raise ValueError(f"{self.kind.value} entry {self.path} requires a blob")

    @property
    def existed(self) -> bool:
        return self.kind != EntryKind.ABSENT

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path, "kind": self.kind.value}
        if self.blob is not None:
            result["blob"] = self.blob
        if self.operation_id is not None:
            result["operation_id"] = self.operation_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupEntry":
        return cls(
            path=data["path"],
            kind=EntryKind(data["kind"]),
            blob=data.get("blob"),
            operation_id=data.get("operation_id"),
        )


@dataclass(frozen=True)
class Backup:
    """
    A backup set.

    Attributes:
        backup_id: Timestamp based id (YYYYMMDD-HHMMSS-ffffff)
        created_at: When the set was created
        status: active, restored or pruned
        entries: Snapshots in insertion order. A path shared by several
                 operations has one entry per operation; the first is the
                 pre-batch state.
        session_id: Session that created the set, if any
    """
    backup_id: str
    created_at: datetime = field(default_factory=_utcnow)
    status: BackupStatus = BackupStatus.ACTIVE
    entries: tuple[BackupEntry, ...] = ()
    session_id: Optional[str] = None

    @property
    def paths(self) -> tuple[str, ...]:
        """Protected paths, each once, in first-snapshot order."""
        return tuple(dict.fromkeys(e.path for e in self.entries))

    def entry(self, path: str) -> Optional[BackupEntry]:
        """The pre-batch snapshot of path."""
        for e in self.entries:
            if e.path == path:
                return e
        return None

    def entries_for(self, operation_id: Optional[str]) -> tuple[BackupEntry, ...]:
        """Snapshots taken just before operation_id ran."""
        return tuple(e for e in self.entries if e.operation_id == operation_id)

    def with_entries(self, entries: tuple[BackupEntry, ...]) -> "Backup":
        return replace(self, entries=self.entries + tuple(entries))

    def with_status(self, status: BackupStatus) -> "Backup":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "backup_id": self.backup_id,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "entries": [e.to_dict() for e in self.entries],
        }
        if self.session_id is not None:
            result["session_id"] = self.session_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Backup":
        """Deserialize from dictionary."""
        return cls(
            backup_id=data["backup_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            status=BackupStatus(data.get("status", "active")),
            entries=tuple(BackupEntry.from_dict(e) for e in data.get("entries", [])),
            session_id=data.get("session_id"),
        )
