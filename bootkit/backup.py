"""
BackupManager - snapshot paths before a batch mutates them, restore on demand.

Store layout (self-describing, readable without the manifest):

    backups/
        20250101-120000-000001/
            backup.json     # Backup metadata, written atomically
            blobs/
                0           # copy of the first protected file or directory
                1
                ...

Lifecycle: NoBackup -> BackupActive -> {Restored, Pruned}

A backup set is append-only while its batch runs: extend() snapshots the paths
an operation is about to touch, so each path keeps its pre-batch snapshot and
every later operation that shares it gets its own pre-operation snapshot. Only
prune() deletes backup data, and nothing calls it automatically.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from bootkit.errors import BackupError, BackupNotFoundError, RollbackFailedError
from bootkit.schemas import Backup, BackupEntry, BackupStatus, EntryKind, RollbackOutcome
from bootkit.utils import atomic_write

logger = logging.getLogger(__name__)

METADATA_FILE = "backup.json"
BLOBS_DIR = "blobs"


def _new_backup_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")


class BackupManager:
    """Create, restore, list, verify and prune backup sets."""

    def __init__(self, backups_dir: Path, project_root: Path):
        """
        Initialize the manager.

        Args:
            backups_dir: Directory holding backup sets
            project_root: Root that protected paths are relative to
        """
        self.backups_dir = Path(backups_dir)
        self.project_root = Path(project_root).resolve()

    # -------------------------------------------------------------------------
    # Paths and metadata
    # -------------------------------------------------------------------------

    def _dir(self, backup_id: str) -> Path:
        return self.backups_dir / backup_id

    def _normalize(self, path: str) -> str:
        """Return path relative to the project root, refusing anything outside it."""
        candidate = Path(path)
        absolute = candidate if candidate.is_absolute() else self.project_root / candidate
        # Resolve the parent only, so a symlinked leaf is protected as a link
        resolved = absolute.parent.resolve() / absolute.name
        try:
            relative = resolved.relative_to(self.project_root)
        except ValueError:
            raise BackupError(f"Refusing to protect path outside the project: {path}")
        if not relative.parts:
            raise BackupError("Refusing to protect the project root itself")
        return relative.as_posix()

    def _write_metadata(self, backup: Backup) -> None:
        content = json.dumps(backup.to_dict(), indent=2) + "\n"
        atomic_write(self._dir(backup.backup_id) / METADATA_FILE, content)

    def get(self, backup_id: str) -> Backup:
        """
        Load a backup's metadata.

        Raises:
            BackupNotFoundError: If no such backup exists
            BackupError: If the metadata is unreadable
        """
        meta = self._dir(backup_id) / METADATA_FILE
        if not meta.is_file():
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        try:
            return Backup.from_dict(json.loads(meta.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise BackupError(f"Corrupt backup metadata {meta}: {e}")

    # -------------------------------------------------------------------------
    # Create / extend
    # -------------------------------------------------------------------------

    def _snapshot(self, backup_id: str, path: str, index: int, operation_id: Optional[str]) -> BackupEntry:
        source = self.project_root / path
        blob_name = str(index)
        blob = self._dir(backup_id) / BLOBS_DIR / blob_name

        if source.is_symlink() or source.is_file():
            blob.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, blob, follow_symlinks=False)
            return BackupEntry(path=path, kind=EntryKind.FILE, blob=blob_name, operation_id=operation_id)
        if source.is_dir():
            blob.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, blob, symlinks=True)
            return BackupEntry(path=path, kind=EntryKind.DIR, blob=blob_name, operation_id=operation_id)
        return BackupEntry(path=path, kind=EntryKind.ABSENT, operation_id=operation_id)

    def create(
        self,
        paths: Iterable[str],
        operation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Snapshot paths into a new backup set.

        Args:
            paths: Paths relative to the project root (absent paths are recorded as absent)
            operation_id: Operation the paths belong to
            session_id: Session creating the set

        Returns:
            The new backup id
        """
        backup_id = _new_backup_id()
        while self._dir(backup_id).exists():
            backup_id = _new_backup_id()
        self._dir(backup_id).mkdir(parents=True)

        backup = Backup(backup_id=backup_id, session_id=session_id)
        backup = self._append(backup, paths, operation_id)
        logger.info(
            f"Created backup {backup_id} ({len(backup.entries)} path(s))",
            extra={"operation_id": operation_id, "event": "backup_created"},
        )
        return backup_id

    def extend(self, backup_id: str, paths: Iterable[str], operation_id: Optional[str] = None) -> Backup:
        """
        Add paths to an active backup set.

        A path already in the set keeps its first (pre-batch) snapshot. When
        a different operation extends it again, the current content is
        snapshotted too, so restore(operation_id=...) can undo just that
        operation.

        Raises:
            BackupNotFoundError: If the backup does not exist
            BackupError: If the backup is no longer active
        """
        backup = self.get(backup_id)
        if backup.status != BackupStatus.ACTIVE:
            raise BackupError(f"Backup {backup_id} is {backup.status.value}, not active")
        return self._append(backup, paths, operation_id)

    def _append(self, backup: Backup, paths: Iterable[str], operation_id: Optional[str]) -> Backup:
        known = {e.path for e in backup.entries_for(operation_id)}
        new_entries = []
        for raw in paths:
            path = self._normalize(raw)
            if path in known:
                continue
            known.add(path)
            index = len(backup.entries) + len(new_entries)
            new_entries.append(self._snapshot(backup.backup_id, path, index, operation_id))
        backup = backup.with_entries(tuple(new_entries))
        self._write_metadata(backup)
        return backup

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def _restore_entry(self, backup_id: str, entry: BackupEntry) -> None:
        target = self.project_root / entry.path
        blob = None
        if entry.kind != EntryKind.ABSENT:
            blob = self._dir(backup_id) / BLOBS_DIR / entry.blob
            if not blob.exists() and not blob.is_symlink():
                raise FileNotFoundError(f"missing blob {blob}")

        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            shutil.rmtree(target)

        if blob is None:
            return

        target.parent.mkdir(parents=True, exist_ok=True)
        if entry.kind == EntryKind.DIR:
            shutil.copytree(blob, target, symlinks=True)
        else:
            shutil.copy2(blob, target, follow_symlinks=False)

    def restore(
        self,
        backup_id: str,
        paths: Optional[Iterable[str]] = None,
        operation_id: Optional[str] = None,
    ) -> RollbackOutcome:
        """
        Put protected paths back to their snapshot state.

        Entries are restored in reverse insertion order, so a path shared by
        several operations ends at its pre-batch snapshot. The first failure
        aborts the remaining restores.

        Args:
            backup_id: Backup to restore
            paths: Restore only these paths (default: the whole set). Paths
                   not in the set are ignored.
            operation_id: Restore only the snapshots taken just before this
                          operation ran, leaving earlier operations' output alone

        Returns:
            RollbackOutcome listing the restored paths

        Raises:
            BackupNotFoundError: If the backup does not exist
            BackupError: If the backup was pruned
            RollbackFailedError: If a path could not be restored
        """
        backup = self.get(backup_id)
        if backup.status == BackupStatus.PRUNED:
            raise BackupError(f"Backup {backup_id} was pruned and cannot be restored")

        entries = list(reversed(backup.entries))
        if paths is not None:
            wanted = {self._normalize(p) for p in paths}
            entries = [e for e in entries if e.path in wanted]
        if operation_id is not None:
            entries = [e for e in entries if e.operation_id == operation_id]

        restored: list[str] = []
        for index, entry in enumerate(entries):
            try:
                self._restore_entry(backup_id, entry)
            except OSError as e:
                not_restored = [
                    path for path in dict.fromkeys(later.path for later in entries[index + 1:])
                    if path != entry.path and path not in restored
                ]
                logger.error(
                    f"Restore of {backup_id} failed at {entry.path}: {e}",
                    extra={"event": "rollback_failed"},
                )
                raise RollbackFailedError(backup_id, restored, entry.path, not_restored, cause=e) from e
            if entry.path not in restored:
                restored.append(entry.path)

        if paths is None and operation_id is None:
            self._write_metadata(backup.with_status(BackupStatus.RESTORED))

        logger.info(
            f"Restored {len(restored)} path(s) from backup {backup_id}",
            extra={"event": "rollback"},
        )
        return RollbackOutcome(backup_id=backup_id, restored=tuple(restored))

    # -------------------------------------------------------------------------
    # Inspection and maintenance
    # -------------------------------------------------------------------------

    def latest(self) -> Optional[Backup]:
        """Newest backup that has not been pruned."""
        for backup in self.list():
            if backup.status != BackupStatus.PRUNED:
                return backup
        return None

    def verify(self, backup_id: str) -> list[str]:
        """
        Check that a backup can be restored.

        Returns:
            Human-readable problems (empty when the backup is intact)

        Raises:
            BackupNotFoundError: If the backup does not exist
        """
        backup = self.get(backup_id)
        if backup.status == BackupStatus.PRUNED:
            return [f"backup {backup_id} was pruned"]

        problems = []
        blobs = self._dir(backup_id) / BLOBS_DIR
        for entry in backup.entries:
            if entry.kind == EntryKind.ABSENT:
                continue
            blob = blobs / entry.blob
            if entry.kind == EntryKind.DIR and not blob.is_dir():
                problems.append(f"{entry.path}: missing directory blob {entry.blob}")
            elif entry.kind == EntryKind.FILE and not (blob.is_file() or blob.is_symlink()):
                problems.append(f"{entry.path}: missing file blob {entry.blob}")
        return problems

    def prune(
        self,
        older_than: Optional[datetime] = None,
        keep_last: Optional[int] = None,
    ) -> list[str]:
        """
        Delete backup data.

        The newest keep_last sets are always kept; of the rest, those created
        before older_than (or all of them if older_than is None) are pruned.
        Pruned sets keep their metadata, marked pruned, so they stay listable.

        Returns:
            Ids of the pruned backups

        Raises:
            ValueError: If neither criterion is given
        """
        if older_than is None and keep_last is None:
            raise ValueError("prune needs older_than, keep_last, or both")
        if keep_last is not None and keep_last < 0:
            raise ValueError("keep_last must be >= 0")

        live = [b for b in self.list() if b.status != BackupStatus.PRUNED]
        candidates = live[keep_last:] if keep_last is not None else live

        pruned = []
        for backup in candidates:
            if older_than is not None and backup.created_at >= older_than:
                continue
            blobs = self._dir(backup.backup_id) / BLOBS_DIR
            if blobs.exists():
                shutil.rmtree(blobs)
            self._write_metadata(backup.with_status(BackupStatus.PRUNED))
            pruned.append(backup.backup_id)
            logger.info(f"Pruned backup {backup.backup_id}", extra={"event": "backup_pruned"})
        return pruned

    def list(self) -> list[Backup]:
        """Every backup set, newest first. Unreadable sets are skipped with a warning."""
        if not self.backups_dir.is_dir():
            return []
        backups = []
        for child in sorted(self.backups_dir.iterdir(), reverse=True):
            if not (child / METADATA_FILE).is_file():
                continue
            try:
                backups.append(self.get(child.name))
            except BackupError as e:
                logger.warning(str(e))
        return backups

