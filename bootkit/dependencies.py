"""
DependencyChecker - gate an operation on its prerequisites.

Two kinds of prerequisite are checked:
- tools: every name in `requires` must resolve to an executable on PATH
- operations: every id in `depends` must have succeeded (or been skipped as
  already satisfied) earlier in the current session

Being present in the manifest is not enough for an operation dependency: a
dependency is about execution order within the session.

The checker only reports. Tool lookups are memoized per checker; the
environment probe can pre-warm the memo.
"""

import shutil
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Protocol

from bootkit.errors import DependencyError
from bootkit.schemas import Operation


class SessionView(Protocol):
    """Anything that can answer whether an operation is satisfied in this session."""

    def is_satisfied(self, operation_id: str) -> bool:
        ...


@dataclass(frozen=True)
class Satisfied:
    """
    A passed gate.

    Attributes:
        operation_id: The gated operation
        warnings: Missing optional tools
    """
    operation_id: str
    warnings: tuple[str, ...] = ()


class DependencyChecker:
    """Resolve tool and session-dependency prerequisites."""

    def __init__(self, which: Optional[Callable[[str], Optional[str]]] = None):
        """
        Initialize the checker.

        Args:
            which: Executable lookup (defaults to shutil.which)
        """
        self._which = which or shutil.which
        self._tools: dict[str, Optional[str]] = {}

    def tool_path(self, name: str) -> Optional[str]:
        """Resolved path of an executable, or None (memoized)."""
        if name not in self._tools:
            self._tools[name] = self._which(name)
        return self._tools[name]

    def has_tool(self, name: str) -> bool:
        return self.tool_path(name) is not None

    def prime(self, tools: Mapping[str, Optional[str]]) -> None:
        """Pre-warm the memo with already resolved lookups."""
        for name, path in tools.items():
            self._tools.setdefault(name, path)

    def clear_cache(self) -> None:
        self._tools.clear()

    def missing_tools(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if not self.has_tool(name)]

    def check(self, operation: Operation, session: SessionView) -> Satisfied:
        """
        Gate an operation.

        Args:
            operation: Operation about to run
            session: Current session (what has succeeded so far)

        Returns:
            Satisfied, with warnings for missing optional tools

        Raises:
            DependencyError: Listing missing tools and unsatisfied dependencies
        """
        missing_tools = self.missing_tools(operation.requires)
        missing_ops = [dep for dep in operation.depends if not session.is_satisfied(dep)]

        if missing_tools or missing_ops:
            raise DependencyError(
                operation.id,
                missing_tools=missing_tools,
                missing_operations=missing_ops,
            )

        warnings = tuple(
            f"optional tool not found: {name}" for name in self.missing_tools(operation.optional)
        )
        return Satisfied(operation_id=operation.id, warnings=warnings)
