"""
bootkit.schemas - Data structures for the orchestration core.

Manifest -> Operation/Profile -> ExecutionSession -> OperationOutcome/ErrorRecord

Lifecycle:
1. Operation / Profile: parsed once from the manifest, immutable thereafter
2. ConfigEntry: a resolved config value tagged with its provenance layer
3. CacheEntry: a memoized parse keyed by source mtime
4. Backup / BackupEntry: snapshot set protecting a batch's output paths
5. ErrorRecord: one classified failure, never mutated after creation
6. ExecutionSession: the frozen record of one run, built by SessionBuilder
"""

from .operation import (
    Operation,
    Profile,
    DEFAULT_PRIORITY,
    DEFAULT_CATEGORY,
)
from .config_entry import (
    ConfigEntry,
    ConfigLayer,
    WRITABLE_LAYERS,
)
from .cache_entry import CacheEntry
from .error_record import ErrorRecord
from .backup import (
    Backup,
    BackupEntry,
    BackupStatus,
    EntryKind,
)
from .session import (
    ExecutionSession,
    OperationOutcome,
    OperationStatus,
    RollbackOutcome,
    SessionBuilder,
)

__all__ = [
    # Manifest
    "Operation",
    "Profile",
    "DEFAULT_PRIORITY",
    "DEFAULT_CATEGORY",
    # Config
    "ConfigEntry",
    "ConfigLayer",
    "WRITABLE_LAYERS",
    # Cache
    "CacheEntry",
    # Errors
    "ErrorRecord",
    # Backups
    "Backup",
    "BackupEntry",
    "BackupStatus",
    "EntryKind",
    # Sessions
    "ExecutionSession",
    "OperationOutcome",
    "OperationStatus",
    "RollbackOutcome",
    "SessionBuilder",
]
