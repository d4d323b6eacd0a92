"""
Session schemas - the record of one orchestrator run.

ExecutionSession is the immutable summary of a run: an ordered log of
attempted operations (succeeded / skipped / failed), the errors handled
along the way and the outcome of any rollback.

SessionBuilder is the mutable accumulator the orchestrator threads through a
single run. It is never shared between runs and never read from ambient
scope; `finalize()` freezes it into an ExecutionSession.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .error_record import ErrorRecord


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class OperationStatus(str, Enum):
    """Outcome of an attempted operation."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationOutcome:
    """
    The outcome of a single operation within a session.

    Attributes:
        operation_id: Identifier of the operation
        status: succeeded, skipped (already satisfied) or failed
        message: Short human message
        code: ErrorCode value (0 unless failed)
        started_at: When the attempt started
        completed_at: When the attempt finished
    """
    operation_id: str
    status: OperationStatus
    message: str = ""
    code: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.status == OperationStatus.FAILED and self.code == 0:
            raise ValueError("failed outcomes must carry a non-zero code")
        if self.status != OperationStatus.FAILED and self.code != 0:
            raise ValueError(f"{self.status.value} outcomes must have code 0")

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "operation_id": self.operation_id,
            "status": self.status.value,
        }
        if self.message:
            result["message"] = self.message
        if self.code:
            result["code"] = self.code
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationOutcome":
        """Deserialize from dictionary."""
        return cls(
            operation_id=data["operation_id"],
            status=OperationStatus(data["status"]),
            message=data.get("message", ""),
            code=data.get("code", 0),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


@dataclass(frozen=True)
class RollbackOutcome:
    """
    Result of restoring a backup set.

    Attributes:
        backup_id: The backup that was restored
        restored: Paths put back to their snapshot state
        failed_path: Path whose restore failed (None on success)
        not_restored: Paths never attempted because the restore aborted
        error: Failure message when the restore did not complete
    """
    backup_id: str
    restored: tuple[str, ...] = ()
    failed_path: Optional[str] = None
    not_restored: tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failed_path is None and self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "backup_id": self.backup_id,
            "success": self.success,
            "restored": list(self.restored),
        }
        if self.failed_path is not None:
            result["failed_path"] = self.failed_path
        if self.not_restored:
            result["not_restored"] = list(self.not_restored)
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackOutcome":
        return cls(
            backup_id=data["backup_id"],
            restored=tuple(data.get("restored", [])),
            failed_path=data.get("failed_path"),
            not_restored=tuple(data.get("not_restored", [])),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class ExecutionSession:
    """
    Immutable record of one orchestrator run.

    Attributes:
        session_id: Unique id of the run
        request: Human description of what was requested
        planned: Operation ids in the resolved plan, in order
        outcomes: Ordered outcomes of attempted operations
        errors: Every ErrorRecord handled during the run
        error_count: Aggregate error counter
        rollback: Outcome of the rollback, if one was performed
        interrupted: The run was cancelled by an interrupt
        cancelled: The plan was rejected at confirmation
        started_at: When the run started
        completed_at: When the run was finalized
    """
    session_id: str
    request: str
    planned: tuple[str, ...] = ()
    outcomes: tuple[OperationOutcome, ...] = ()
    errors: tuple[ErrorRecord, ...] = ()
    error_count: int = 0
    rollback: Optional[RollbackOutcome] = None
    interrupted: bool = False
    cancelled: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def _with_status(self, status: OperationStatus) -> tuple[OperationOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status == status)

    @property
    def succeeded(self) -> tuple[OperationOutcome, ...]:
        return self._with_status(OperationStatus.SUCCEEDED)

    @property
    def skipped(self) -> tuple[OperationOutcome, ...]:
        return self._with_status(OperationStatus.SKIPPED)

    @property
    def failed(self) -> tuple[OperationOutcome, ...]:
        return self._with_status(OperationStatus.FAILED)

    @property
    def not_run(self) -> tuple[str, ...]:
        """Planned operations that were never attempted."""
        attempted = {o.operation_id for o in self.outcomes}
        return tuple(op_id for op_id in self.planned if op_id not in attempted)

    @property
    def rollback_failed(self) -> bool:
        return self.rollback is not None and not self.rollback.success

    @property
    def success(self) -> bool:
        return not self.failed and not self.interrupted and not self.rollback_failed

    def get_outcome(self, operation_id: str) -> Optional[OperationOutcome]:
        """Get the outcome for a specific operation."""
        for outcome in self.outcomes:
            if outcome.operation_id == operation_id:
                return outcome
        return None

    def is_satisfied(self, operation_id: str) -> bool:
        """True if the operation succeeded or was skipped as already satisfied."""
        outcome = self.get_outcome(operation_id)
        return outcome is not None and outcome.status != OperationStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "session_id": self.session_id,
            "request": self.request,
            "planned": list(self.planned),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "errors": [e.to_dict() for e in self.errors],
            "error_count": self.error_count,
            "counts": {
                "succeeded": len(self.succeeded),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
            },
            "started_at": self.started_at.isoformat(),
        }
        if self.rollback is not None:
            result["rollback"] = self.rollback.to_dict()
        if self.interrupted:
            result["interrupted"] = True
        if self.cancelled:
            result["cancelled"] = True
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionSession":
        """Deserialize from dictionary."""
        return cls(
            session_id=data["session_id"],
            request=data["request"],
            planned=tuple(data.get("planned", [])),
            outcomes=tuple(OperationOutcome.from_dict(o) for o in data.get("outcomes", [])),
            errors=tuple(ErrorRecord.from_dict(e) for e in data.get("errors", [])),
            error_count=data.get("error_count", 0),
            rollback=RollbackOutcome.from_dict(data["rollback"]) if data.get("rollback") else None,
            interrupted=data.get("interrupted", False),
            cancelled=data.get("cancelled", False),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


class SessionBuilder:
    """Mutable accumulator for a single run, frozen by finalize()."""

    def __init__(self, session_id: str, request: str, planned: tuple[str, ...] = ()):
        self.session_id = session_id
        self.request = request
        self.planned = planned
        self.outcomes: list[OperationOutcome] = []
        self.errors: list[ErrorRecord] = []
        self.rollback: Optional[RollbackOutcome] = None
        self.interrupted = False
        self.cancelled = False
        self.started_at = _utcnow()
        self._finalized: Optional[ExecutionSession] = None

    def record(self, outcome: OperationOutcome) -> None:
        if self._finalized is not None:
            raise RuntimeError("session already finalized")
        self.outcomes.append(outcome)

    def add_error(self, record: ErrorRecord) -> None:
        if self._finalized is not None:
            raise RuntimeError("session already finalized")
        self.errors.append(record)

    def is_satisfied(self, operation_id: str) -> bool:
        """True if the operation succeeded or was skipped as already satisfied."""
        return any(
            o.operation_id == operation_id
            and o.status in (OperationStatus.SUCCEEDED, OperationStatus.SKIPPED)
            for o in self.outcomes
        )

    def finalize(self) -> ExecutionSession:
        """Freeze the accumulated state. Idempotent."""
        if self._finalized is None:
            self._finalized = ExecutionSession(
                session_id=self.session_id,
                request=self.request,
                planned=tuple(self.planned),
                outcomes=tuple(self.outcomes),
                errors=tuple(self.errors),
                error_count=len(self.errors),
                rollback=self.rollback,
                interrupted=self.interrupted,
                cancelled=self.cancelled,
                started_at=self.started_at,
                completed_at=_utcnow(),
            )
        return self._finalized
