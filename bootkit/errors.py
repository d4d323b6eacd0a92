"""
Error taxonomy for bootkit.

Every failure the engine reasons about maps to a fixed numeric ErrorCode.
The codes are append-only: new codes go at the end, existing numbers never
change, because operation scripts signal failures through their exit status.

Exception classes carry the ErrorCode they classify as, so the Error Handler
can turn any raised BootkitError into an ErrorRecord without a lookup table:
- Load-time errors (ManifestParseError, CycleError, ConflictError) abort a
  run before anything executes.
- Per-operation errors (DependencyError, OperationValidationError,
  RollbackRequested) are routed through the Error Handler.
- RollbackFailedError is the one class that always surfaces to the operator.
"""

from enum import IntEnum
from typing import Any, Optional, Sequence


class ErrorCode(IntEnum):
    """Fixed error codes. Append only."""
    SUCCESS = 0
    GENERAL = 1
    VALIDATION_FAILED = 2
    DEPENDENCY_MISSING = 3
    FILE_NOT_FOUND = 4
    PERMISSION_DENIED = 5
    CONFLICT = 6
    ROLLBACK_NEEDED = 7
    ROLLBACK_FAILED = 8


_CODE_MESSAGES = {
    ErrorCode.SUCCESS: "Operation completed successfully",
    ErrorCode.GENERAL: "General error",
    ErrorCode.VALIDATION_FAILED: "Validation failed",
    ErrorCode.DEPENDENCY_MISSING: "Required dependency is missing",
    ErrorCode.FILE_NOT_FOUND: "Required file not found",
    ErrorCode.PERMISSION_DENIED: "Permission denied",
    ErrorCode.CONFLICT: "Conflicting operations requested",
    ErrorCode.ROLLBACK_NEEDED: "Rollback requested",
    ErrorCode.ROLLBACK_FAILED: "Rollback failed, project state may be inconsistent",
}


def code_name(code: int) -> str:
    """Return the symbolic name for a numeric code, or UNKNOWN_ERROR(<n>)."""
    try:
        return ErrorCode(code).name
    except ValueError:
        return f"UNKNOWN_ERROR({code})"


def code_message(code: int) -> str:
    """Return the human description for a numeric code."""
    try:
        return _CODE_MESSAGES[ErrorCode(code)]
    except ValueError:
        return f"Unknown error code {code}"


class BootkitError(Exception):
    """Base exception for bootkit."""
    code = ErrorCode.GENERAL


# =============================================================================
# Load-time errors
# =============================================================================


class ManifestParseError(BootkitError):
    """
    Manifest is malformed or violates the schema.

    Raised at load time, before anything executes. When the problem belongs
    to a single operation, operation_id names it.
    """
    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, operation_id: Optional[str] = None):
        self.operation_id = operation_id
        if operation_id:
            message = f"{operation_id}: {message}"
        super().__init__(message)


class CycleError(ManifestParseError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(
            f"dependency cycle detected: {' -> '.join(self.cycle)}",
            operation_id=self.cycle[0] if self.cycle else None,
        )


class MissingHandlerError(ManifestParseError):
    """One or more manifest operations have no registered handler."""

    def __init__(self, operation_ids: Sequence[str]):
        self.operation_ids = tuple(operation_ids)
        super().__init__(
            f"no handler registered for: {', '.join(self.operation_ids)}",
            operation_id=self.operation_ids[0] if self.operation_ids else None,
        )


class NotFoundError(BootkitError, KeyError):
    """Requested manifest entry does not exist."""
    code = ErrorCode.GENERAL

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class OperationNotFoundError(NotFoundError):
    """Unknown operation id."""


class ProfileNotFoundError(NotFoundError):
    """Unknown profile name."""


class ConflictError(BootkitError):
    """Two operations requested together declare a conflict."""
    code = ErrorCode.CONFLICT

    def __init__(self, pairs: Sequence[tuple[str, str]]):
        self.pairs = tuple(pairs)
        rendered = ", ".join(f"{a} <-> {b}" for a, b in self.pairs)
        super().__init__(f"conflicting operations requested together: {rendered}")


class PlanError(BootkitError):
    """A run request could not be resolved into an execution plan."""


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigError(BootkitError):
    """Configuration is invalid or a write targeted a read-only layer."""
    code = ErrorCode.VALIDATION_FAILED


class ConfigParseError(ConfigError):
    """A line of the persisted config file could not be parsed."""

    def __init__(self, path: Any, line_no: int, line: str, reason: str):
        self.path = path
        self.line_no = line_no
        self.line = line
        super().__init__(f"{path}:{line_no}: {reason}: {line!r}")


class TypeCoercionError(ConfigError, ValueError):
    """A config value cannot be coerced to the requested or declared type."""

    def __init__(self, key: str, value: Any, expected: str):
        self.key = key
        self.value = value
        self.expected = expected
        super().__init__(f"{key}: cannot interpret {value!r} as {expected}")


# =============================================================================
# Per-operation errors
# =============================================================================


class DependencyError(BootkitError):
    """
    An operation's prerequisites are not satisfied.

    missing_tools: required executables not found on PATH
    missing_operations: dependencies that have not succeeded in this session
    """
    code = ErrorCode.DEPENDENCY_MISSING

    def __init__(
        self,
        operation_id: str,
        missing_tools: Sequence[str] = (),
        missing_operations: Sequence[str] = (),
    ):
        self.operation_id = operation_id
        self.missing_tools = tuple(missing_tools)
        self.missing_operations = tuple(missing_operations)
        parts = []
        if self.missing_tools:
            parts.append(f"missing tools: {', '.join(self.missing_tools)}")
        if self.missing_operations:
            parts.append(f"dependencies not run: {', '.join(self.missing_operations)}")
        super().__init__(f"{operation_id}: " + "; ".join(parts))


class OperationValidationError(BootkitError):
    """Raised by an operation body when its result fails validation."""
    code = ErrorCode.VALIDATION_FAILED


class RollbackRequested(BootkitError):
    """Raised by an operation body to explicitly request a rollback."""
    code = ErrorCode.ROLLBACK_NEEDED


# =============================================================================
# Backup errors
# =============================================================================


class BackupError(BootkitError):
    """Backup store could not be read or written."""


class BackupNotFoundError(BackupError, KeyError):
    """Unknown backup id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class RollbackFailedError(BackupError):
    """
    A restore stopped part-way through.

    The remaining restores were aborted. restored lists the paths already put
    back, failed_path is the one that broke, not_restored lists the rest.
    """
    code = ErrorCode.ROLLBACK_FAILED

    def __init__(
        self,
        backup_id: str,
        restored: Sequence[str],
        failed_path: str,
        not_restored: Sequence[str],
        cause: Optional[BaseException] = None,
    ):
        self.backup_id = backup_id
        self.restored = tuple(restored)
        self.failed_path = failed_path
        self.not_restored = tuple(not_restored)
        self.cause = cause
        super().__init__(
            f"restore of backup {backup_id} failed at {failed_path}: {cause}; "
            f"restored {len(self.restored)}, not restored {len(self.not_restored)}"
        )
