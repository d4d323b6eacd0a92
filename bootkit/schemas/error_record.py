"""
ErrorRecord schema - one classified failure.

Created by the Error Handler when an operation (or the engine itself) fails,
appended to the session log and never mutated afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from bootkit.errors import code_name


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ErrorRecord:
    """
    A classified error.

    Attributes:
        code: Numeric ErrorCode value
        message: Human message
        operation_id: Operation that raised it (None for engine-level errors)
        context: Free-form context string
        requires_rollback: Derived from the handler's rollback policy
        timestamp: When the error was handled
    """
    code: int
    message: str
    operation_id: Optional[str] = None
    context: str = ""
    requires_rollback: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def code_name(self) -> str:
        return code_name(self.code)

    def to_log_line(self) -> str:
        """Render as a single human-readable log line."""
        parts = [
            self.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            f"[{self.code_name}]",
            f"op={self.operation_id or '-'}",
            self.message.replace("\n", " "),
        ]
        if self.context:
            parts.append(f"({self.context.replace(chr(10), ' ')})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "code": self.code,
            "code_name": self.code_name,
            "message": self.message,
            "requires_rollback": self.requires_rollback,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.operation_id is not None:
            result["operation_id"] = self.operation_id
        if self.context:
            result["context"] = self.context
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorRecord":
        """Deserialize from dictionary."""
        return cls(
            code=data["code"],
            message=data["message"],
            operation_id=data.get("operation_id"),
            context=data.get("context", ""),
            requires_rollback=data.get("requires_rollback", False),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )
