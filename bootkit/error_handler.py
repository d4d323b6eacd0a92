"""
ErrorHandler - classify failures, record them, decide on rollback.

Every failure during a run goes through handle(), which:
1. builds an immutable ErrorRecord
2. appends it to the session-scoped record list (error_count grows)
3. appends one line to the durable error log

Writing the durable log can never fail a run: an OSError there is logged as
a warning and otherwise ignored.

Rollback policy is a pure function of the code. VALIDATION_FAILED and
ROLLBACK_NEEDED always trigger a rollback; callers may add more codes.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from bootkit.errors import BootkitError, ErrorCode, code_message, code_name
from bootkit.schemas import ErrorRecord
from bootkit.utils import append_line

logger = logging.getLogger(__name__)

ROLLBACK_CODES = frozenset({ErrorCode.VALIDATION_FAILED, ErrorCode.ROLLBACK_NEEDED})


def should_rollback(code: int, extra_codes: Iterable[int] = ()) -> bool:
    """True if code triggers a rollback."""
    return int(code) in ROLLBACK_CODES or int(code) in set(extra_codes)


def classify(exc: BaseException) -> int:
    """
    Map an exception to an ErrorCode.

    BootkitError subclasses carry their own code; common OS errors map to
    FILE_NOT_FOUND / PERMISSION_DENIED; anything else is GENERAL.
    """
    if isinstance(exc, BootkitError):
        return exc.code
    if isinstance(exc, FileNotFoundError):
        return ErrorCode.FILE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorCode.PERMISSION_DENIED
    return ErrorCode.GENERAL


class ErrorHandler:
    """
    Session-scoped error recorder.

    Records accumulate for the whole run so the summary is complete; reset()
    is only called between independent runs.
    """

    def __init__(self, error_log: Optional[Path] = None, rollback_codes: Iterable[int] = ()):
        """
        Initialize the handler.

        Args:
            error_log: Durable error log file (None disables it)
            rollback_codes: Extra codes that force a rollback
        """
        self.error_log = Path(error_log) if error_log is not None else None
        self.extra_rollback_codes = frozenset(int(c) for c in rollback_codes)
        self._records: list[ErrorRecord] = []

    @property
    def records(self) -> tuple[ErrorRecord, ...]:
        return tuple(self._records)

    @property
    def error_count(self) -> int:
        return len(self._records)

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self._records[-1] if self._records else None

    def should_rollback(self, code: int) -> bool:
        return should_rollback(code, self.extra_rollback_codes)

    def classify(self, exc: BaseException) -> int:
        return classify(exc)

    def code_name(self, code: int) -> str:
        return code_name(code)

    def code_message(self, code: int) -> str:
        return code_message(code)

    def handle(
        self,
        code: int,
        message: str,
        operation_id: Optional[str] = None,
        context: str = "",
    ) -> ErrorRecord:
        """
        Record a failure.

        Args:
            code: ErrorCode value (must not be SUCCESS)
            message: Human message
            operation_id: Failing operation (None for engine-level errors)
            context: Free-form context

        Returns:
            The new ErrorRecord
        """
        if int(code) == ErrorCode.SUCCESS:
            raise ValueError("SUCCESS is not an error")

        record = ErrorRecord(
            code=int(code),
            message=message or code_message(code),
            operation_id=operation_id,
            context=context,
            requires_rollback=self.should_rollback(code),
        )
        self._records.append(record)

        logger.error(
            f"[{record.code_name}] {record.message}",
            extra={"operation_id": operation_id, "event": "error", "metadata": {"code": record.code}},
        )
        self._write_log(record)
        return record

    def handle_exception(
        self,
        exc: BaseException,
        operation_id: Optional[str] = None,
        context: str = "",
    ) -> ErrorRecord:
        """Classify an exception and record it."""
        message = str(exc) or type(exc).__name__
        return self.handle(self.classify(exc), message, operation_id=operation_id, context=context)

    def reset(self) -> None:
        """Clear session-scoped state. Only between independent runs."""
        self._records.clear()

    def _write_log(self, record: ErrorRecord) -> None:
        if self.error_log is None:
            return
        try:
            append_line(self.error_log, record.to_log_line())
        except OSError as e:
            logger.warning(f"Could not write error log {self.error_log}: {e}")
