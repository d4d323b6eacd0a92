"""
Base handler protocol and common implementations.

Handlers implement the body of a manifest operation. The orchestrator calls
them one at a time through a common interface:
- CommandHandler: shell command or script file declared in the manifest
- CallableHandler: Python function registered programmatically

A handler reports failure either by returning an OperationResult with a
non-zero code or by raising; raised exceptions are classified by the
Error Handler.
"""

import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from dotenv import dotenv_values

from bootkit.config import ConfigStore, env_var_name
from bootkit.errors import ErrorCode
from bootkit.schemas import Operation

logger = logging.getLogger(__name__)

# Shell conventions for "found but not executable" and "not found"
_SHELL_EXIT_CODES = {
    126: ErrorCode.PERMISSION_DENIED,
    127: ErrorCode.FILE_NOT_FOUND,
}

_TAXONOMY_CODES = frozenset(int(c) for c in ErrorCode if c != ErrorCode.SUCCESS)


@dataclass(frozen=True)
class OperationContext:
    """
    Everything a handler may read while executing.

    Attributes:
        operation: The operation being executed
        project_root: Target project directory
        config: Config store (read it; derived values go in the result)
        session_id: Id of the running session
        manifest_dir: Directory of the manifest (base for relative script files)
    """
    operation: Operation
    project_root: Path
    config: ConfigStore
    session_id: str = ""
    manifest_dir: Optional[Path] = None

    def path(self, relative: str) -> Path:
        """Resolve a path relative to the project root."""
        return self.project_root / relative


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome reported by a handler.

    Attributes:
        code: ErrorCode value (0 = success)
        message: Short human message
        config: Derived config values (dotted key -> value) to persist
    """
    code: int = 0
    message: str = ""
    config: Mapping[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.code == ErrorCode.SUCCESS

    @classmethod
    def ok(cls, message: str = "", config: Optional[Mapping[str, str]] = None) -> "OperationResult":
        return cls(code=ErrorCode.SUCCESS, message=message, config=dict(config or {}))

    @classmethod
    def failed(cls, code: int, message: str = "") -> "OperationResult":
        if code == ErrorCode.SUCCESS:
            raise ValueError("failed() requires a non-zero code")
        return cls(code=int(code), message=message)


class OperationHandler(ABC):
    """
    Abstract base class for operation bodies.

    Subclasses implement execute(); is_satisfied() may be overridden when the
    default "every declared output exists" check is not meaningful.
    """

    @abstractmethod
    def execute(self, context: OperationContext) -> OperationResult:
        """
        Run the operation body.

        Args:
            context: Execution context

        Returns:
            OperationResult (code 0 on success)

        Raises:
            Exception: Any failure; classified by the Error Handler
        """
        pass

    def is_satisfied(self, context: OperationContext) -> bool:
        """
        Report whether the operation's effect is already in place.

        Only consulted for idempotent operations. The default is true when the
        operation declares outputs and all of them exist.
        """
        creates = context.operation.creates
        return bool(creates) and all(context.path(p).exists() for p in creates)


class CallableHandler(OperationHandler):
    """
    Handler wrapping a Python function.

    The function receives the OperationContext and may return None (success),
    a dict of derived config values (success), or an OperationResult.
    """

    def __init__(
        self,
        func: Callable[[OperationContext], Any],
        satisfied: Optional[Callable[[OperationContext], bool]] = None,
    ):
        self.func = func
        self._satisfied = satisfied

    def execute(self, context: OperationContext) -> OperationResult:
        result = self.func(context)
        if result is None:
            return OperationResult.ok()
        if isinstance(result, OperationResult):
            return result
        if isinstance(result, Mapping):
            return OperationResult.ok(config={str(k): str(v) for k, v in result.items()})
        raise TypeError(
            f"Handler for {context.operation.id} returned {type(result).__name__}; "
            "expected None, a dict or an OperationResult"
        )

    def is_satisfied(self, context: OperationContext) -> bool:
        if self._satisfied is not None:
            return bool(self._satisfied(context))
        return super().is_satisfied(context)

    def __repr__(self) -> str:
        return f"CallableHandler({getattr(self.func, '__name__', self.func)!r})"


class CommandHandler(OperationHandler):
    """
    Handler running a shell command or script file.

    The process runs in the project root with the resolved config exported as
    BOOTKIT_<SECTION>_<FIELD> variables plus:
    - BOOTKIT_PROJECT_ROOT, BOOTKIT_OPERATION_ID, BOOTKIT_SESSION_ID
    - BOOTKIT_OUTPUT_FILE: a file the script may append `section.field=value`
      lines to; they are returned as derived config values

    Exit status maps onto ErrorCode: values inside the taxonomy keep their
    meaning, 126/127 map to PERMISSION_DENIED/FILE_NOT_FOUND, everything else
    is GENERAL.
    """

    def __init__(
        self,
        command: Optional[str] = None,
        file: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ):
        if not command and not file:
            raise ValueError("CommandHandler needs a command or a file")
        self.command = command
        self.file = file
        self.timeout = timeout

    @classmethod
    def for_operation(cls, operation: Operation) -> Optional["CommandHandler"]:
        """Build a handler from the manifest's command/file fields, if any."""
        if operation.command or operation.file:
            return cls(command=operation.command, file=operation.file)
        return None

    def _argv(self, context: OperationContext) -> Union[str, list[str]]:
        if self.command:
            return self.command
        script = Path(self.file)
        if not script.is_absolute():
            script = (context.manifest_dir or context.project_root) / script
        if os.access(script, os.X_OK):
            return [str(script)]
        return ["sh", str(script)]

    def _environment(self, context: OperationContext, output_file: Path) -> dict[str, str]:
        env = dict(os.environ)
        for key, value in context.config.as_dict().items():
            env[env_var_name(key)] = value
        env["BOOTKIT_PROJECT_ROOT"] = str(context.project_root)
        env["BOOTKIT_OPERATION_ID"] = context.operation.id
        env["BOOTKIT_SESSION_ID"] = context.session_id
        env["BOOTKIT_OUTPUT_FILE"] = str(output_file)
        return env

    def execute(self, context: OperationContext) -> OperationResult:
        op_id = context.operation.id
        fd, name = tempfile.mkstemp(prefix=f"bootkit-{op_id}-", suffix=".env")
        os.close(fd)
        output_file = Path(name)

        argv = self._argv(context)
        logger.debug(f"Running {op_id}: {argv}", extra={"operation_id": op_id})

        try:
            proc = subprocess.run(
                argv,
                shell=isinstance(argv, str),
                cwd=context.project_root,
                env=self._environment(context, output_file),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            derived = self._read_output(output_file)
        finally:
            if output_file.exists():
                output_file.unlink()

        if proc.stdout:
            logger.debug(proc.stdout.rstrip(), extra={"operation_id": op_id})

        if proc.returncode == 0:
            return OperationResult.ok(message=_last_line(proc.stdout), config=derived)

        code = _map_exit_code(proc.returncode)
        message = _last_line(proc.stderr) or _last_line(proc.stdout) or f"exited with status {proc.returncode}"
        return OperationResult.failed(code, message)

    @staticmethod
    def _read_output(path: Path) -> dict[str, str]:
        if not path.exists():
            return {}
        derived = {}
        for key, value in dotenv_values(path).items():
            if value is None or "." not in key:
                logger.warning(f"Ignoring derived config line '{key}'")
                continue
            derived[key] = value
        return derived

    def __repr__(self) -> str:
        return f"CommandHandler(command={self.command!r}, file={self.file!r})"


def _map_exit_code(returncode: int) -> int:
    if returncode in _SHELL_EXIT_CODES:
        return _SHELL_EXIT_CODES[returncode]
    if returncode in _TAXONOMY_CODES:
        return ErrorCode(returncode)
    return ErrorCode.GENERAL


def _last_line(text: Optional[str], max_length: int = 300) -> str:
    if not text:
        return ""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    line = lines[-1]
    return line if len(line) <= max_length else line[:max_length] + "..."
