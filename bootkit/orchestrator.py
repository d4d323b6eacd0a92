"""
Orchestrator - the top-level run state machine.

States:

    IDLE -> RESOLVING -> (CONFIRMING) -> RUNNING -> SUMMARIZING -> IDLE

Execution flow for run():
1. RESOLVING: expand the request via the ManifestRegistry and check
   conflicts eagerly. A failure returns straight to IDLE and nothing runs.
2. CONFIRMING (interactive only): show the plan, ask the confirm callback.
   Rejection returns a cancelled, empty session.
3. RUNNING, for each operation in plan order:
   a. idempotent and already satisfied -> recorded skipped
   b. DependencyChecker gate; failure -> DEPENDENCY_MISSING, recorded failed
   c. protect the operation's `creates` paths in the batch backup set
   d. run the bound handler; a non-success result goes to the ErrorHandler
   e. rollback-triggering error -> restore the batch backup set and halt;
      any other error -> record and continue
4. SUMMARIZING: persist derived config, finalize the ExecutionSession.

An interrupt while an operation is running restores only the snapshots taken
just before that operation, records ROLLBACK_NEEDED for it and jumps to
SUMMARIZING. An interrupt at the confirmation prompt returns an interrupted,
empty session.

The orchestrator holds no per-run state between runs: everything a run
accumulates lives in its SessionBuilder.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from bootkit.backup import BackupManager
from bootkit.cache import MtimeCache
from bootkit.config import BootkitPaths, ConfigStore, load_config, validate_key
from bootkit.dependencies import DependencyChecker, Satisfied
from bootkit.error_handler import ErrorHandler
from bootkit.errors import (
    BackupError,
    BootkitError,
    ConfigError,
    DependencyError,
    ErrorCode,
    NotFoundError,
    PlanError,
    RollbackFailedError,
    code_name,
)
from bootkit.handlers import HandlerRegistry, OperationContext
from bootkit.registry import ManifestRegistry, ManifestSource
from bootkit.schemas import (
    ConfigLayer,
    ExecutionSession,
    Operation,
    OperationOutcome,
    OperationStatus,
    RollbackOutcome,
    SessionBuilder,
)
from bootkit.utils import append_line, format_duration, timestamp

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _new_session_id() -> str:
    return f"{_utcnow():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    CONFIRMING = "confirming"
    RUNNING = "running"
    SUMMARIZING = "summarizing"


# =============================================================================
# Requests and plans
# =============================================================================


@dataclass(frozen=True)
class RunRequest:
    """
    What to run: one operation, one phase, one profile, or everything.

    Build with the for_* constructors.
    """
    kind: str
    value: Optional[Union[str, int]] = None

    KINDS = ("operation", "phase", "profile", "all")

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise ValueError(f"Unknown request kind: {self.kind}")
        if self.kind == "all" and self.value is not None:
            raise ValueError("'all' requests take no value")
        if self.kind == "phase" and (isinstance(self.value, bool) or not isinstance(self.value, int)):
            raise ValueError("phase requests need an integer phase")
        if self.kind in ("operation", "profile") and not (isinstance(self.value, str) and self.value):
            raise ValueError(f"{self.kind} requests need a name")

    @classmethod
    def for_operation(cls, op_id: str) -> "RunRequest":
        return cls("operation", op_id)

    @classmethod
    def for_phase(cls, phase: int) -> "RunRequest":
        return cls("phase", phase)

    @classmethod
    def for_profile(cls, name: str) -> "RunRequest":
        return cls("profile", name)

    @classmethod
    def for_all(cls) -> "RunRequest":
        return cls("all")

    def describe(self) -> str:
        if self.kind == "all":
            return "all operations"
        return f"{self.kind} {self.value}"


@dataclass(frozen=True)
class PlannedOperation:
    """Dry-run gate result for one operation."""
    operation: Operation
    gate: Optional[Satisfied] = None
    error: Optional[DependencyError] = None

    @property
    def would_run(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"operation_id": self.operation.id, "would_run": self.would_run}
        if self.gate is not None and self.gate.warnings:
            result["warnings"] = list(self.gate.warnings)
        if self.error is not None:
            result["missing_tools"] = list(self.error.missing_tools)
            result["missing_operations"] = list(self.error.missing_operations)
        return result


@dataclass(frozen=True)
class ExecutionPlan:
    """
    A resolved request.

    Attributes:
        request: The request it was resolved from
        operations: Operations in execution order
        gates: Per-operation gate results (dry runs only)
    """
    request: RunRequest
    operations: tuple[Operation, ...]
    gates: tuple[PlannedOperation, ...] = field(default_factory=tuple)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(op.id for op in self.operations)

    @property
    def dry_run(self) -> bool:
        return bool(self.gates)

    @property
    def blocked(self) -> tuple[PlannedOperation, ...]:
        return tuple(g for g in self.gates if not g.would_run)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "request": self.request.describe(),
            "operations": list(self.ids),
        }
        if self.gates:
            result["gates"] = [g.to_dict() for g in self.gates]
        return result


class _AssumedSession:
    """Session view for dry runs: earlier gate-passing operations count as succeeded."""

    def __init__(self) -> None:
        self.passed: set[str] = set()

    def is_satisfied(self, operation_id: str) -> bool:
        return operation_id in self.passed


# =============================================================================
# Orchestrator
# =============================================================================


class Orchestrator:
    """
    Runs resolved plans against a project.

    Usage:
        orchestrator = Orchestrator.from_paths(resolve_paths("."))
        session = orchestrator.run(RunRequest.for_phase(1))
        print(format_summary(session))
    """

    def __init__(
        self,
        registry: ManifestRegistry,
        config: ConfigStore,
        project_root: Path,
        backups: BackupManager,
        checker: Optional[DependencyChecker] = None,
        error_handler: Optional[ErrorHandler] = None,
        session_log: Optional[Path] = None,
        confirm: Optional[Callable[[ExecutionPlan], bool]] = None,
        on_outcome: Optional[Callable[[OperationOutcome], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Loaded manifest (with handlers bound, for run())
            config: Config store; derived values land in its FILE layer
            project_root: Target project directory
            backups: Backup manager for the project
            checker: Dependency checker (a fresh one by default)
            error_handler: Error handler (one without a durable log by default)
            session_log: Append-only session event log
            confirm: Called with the plan in interactive mode; default accepts
            on_outcome: Called after each operation outcome is recorded
        """
        self.registry = registry
        self.config = config
        self.project_root = Path(project_root)
        self.backups = backups
        self.checker = checker or DependencyChecker()
        self.error_handler = error_handler or ErrorHandler()
        self.session_log = Path(session_log) if session_log is not None else None
        self.confirm = confirm or (lambda plan: True)
        self.on_outcome = on_outcome
        self._state = OrchestratorState.IDLE

    @classmethod
    def from_paths(
        cls,
        paths: BootkitPaths,
        handlers: Optional[HandlerRegistry] = None,
        cache: Optional[MtimeCache] = None,
        **kwargs: Any,
    ) -> "Orchestrator":
        """
        Wire up every collaborator for a project.

        Raises:
            ManifestParseError: If the manifest is invalid or an operation has no handler
            ConfigParseError: If the persisted config is malformed
        """
        cache = cache or MtimeCache()
        registry = ManifestSource(paths.manifest_path, cache).registry(
            handlers if handlers is not None else HandlerRegistry.create_default()
        )
        return cls(
            registry=registry,
            config=load_config(paths, cache=cache),
            project_root=paths.project_root,
            backups=BackupManager(paths.backups_dir, paths.project_root),
            error_handler=ErrorHandler(paths.error_log),
            session_log=paths.session_log,
            **kwargs,
        )

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def manifest_dir(self) -> Path:
        source = self.registry.source
        return source.parent if source is not None else self.project_root

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(self, request: RunRequest) -> ExecutionPlan:
        """
        Expand a request into an ordered plan and check conflicts.

        Raises:
            PlanError: Unknown operation/profile, or an empty phase
            ConflictError: If two planned operations conflict
        """
        try:
            if request.kind == "operation":
                operations = [self.registry.operation(request.value)]
            elif request.kind == "phase":
                operations = self.registry.operations_by_phase(request.value)
                if not operations:
                    raise PlanError(f"No operations in phase {request.value}")
            elif request.kind == "profile":
                operations = self.registry.ordered(self.registry.resolve_profile(request.value))
            else:
                operations = self.registry.resolve_all()
        except NotFoundError as e:
            raise PlanError(str(e)) from e

        if not operations:
            raise PlanError(f"Nothing to run for {request.describe()}")

        self.registry.check_conflicts(op.id for op in operations)
        return ExecutionPlan(request=request, operations=tuple(operations))

    def dry_run(self, request: RunRequest) -> ExecutionPlan:
        """
        Resolve a request and gate every operation without running anything.

        Only the registry and the dependency checker are consulted. An
        operation whose gate passes counts as succeeded for the ones after it.
        """
        self._state = OrchestratorState.RESOLVING
        try:
            plan = self.resolve(request)
        finally:
            self._state = OrchestratorState.IDLE

        assumed = _AssumedSession()
        gates = []
        for op in plan.operations:
            try:
                gate = self.checker.check(op, assumed)
            except DependencyError as e:
                gates.append(PlannedOperation(operation=op, error=e))
            else:
                assumed.passed.add(op.id)
                gates.append(PlannedOperation(operation=op, gate=gate))
        return ExecutionPlan(request=request, operations=plan.operations, gates=tuple(gates))

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    def _event(self, session_id: str, message: str) -> None:
        logger.debug(message, extra={"session_id": session_id})
        if self.session_log is None:
            return
        try:
            append_line(self.session_log, f"{timestamp()} [{session_id}] {message}")
        except OSError as e:
            logger.warning(f"Could not write session log {self.session_log}: {e}")

    def _record(self, builder: SessionBuilder, outcome: OperationOutcome) -> None:
        builder.record(outcome)
        detail = f" [{code_name(outcome.code)}]" if outcome.code else ""
        message = f": {outcome.message}" if outcome.message else ""
        self._event(builder.session_id, f"{outcome.status.value} {outcome.operation_id}{detail}{message}")
        if self.on_outcome is not None:
            self.on_outcome(outcome)

    def _fail(
        self,
        builder: SessionBuilder,
        op: Operation,
        code: int,
        message: str,
        started_at: datetime,
        context: str = "",
    ) -> bool:
        """Record a failed operation. Returns True if it requires a rollback."""
        record = self.error_handler.handle(code, message, operation_id=op.id, context=context)
        builder.add_error(record)
        self._record(builder, OperationOutcome(
            operation_id=op.id,
            status=OperationStatus.FAILED,
            message=record.message,
            code=record.code,
            started_at=started_at,
            completed_at=_utcnow(),
        ))
        return record.requires_rollback

    def _rollback(
        self,
        builder: SessionBuilder,
        backup_id: Optional[str],
        operation_id: str,
        only_operation: bool = False,
    ) -> None:
        """Restore the batch backup set (or only operation_id's snapshots) and record the outcome."""
        if backup_id is None:
            self._event(builder.session_id, f"rollback for {operation_id}: nothing was backed up")
            return

        scope = f"{operation_id} paths" if only_operation else "batch"
        self._event(builder.session_id, f"rollback of {scope} from backup {backup_id}")
        try:
            outcome = self.backups.restore(backup_id, operation_id=operation_id if only_operation else None)
        except RollbackFailedError as e:
            outcome = RollbackOutcome(
                backup_id=backup_id,
                restored=e.restored,
                failed_path=e.failed_path,
                not_restored=e.not_restored,
                error=str(e.cause),
            )
            builder.add_error(self.error_handler.handle(
                ErrorCode.ROLLBACK_FAILED, str(e), operation_id=operation_id, context="restore",
            ))
        except BackupError as e:
            outcome = RollbackOutcome(backup_id=backup_id, error=str(e))
            builder.add_error(self.error_handler.handle(
                ErrorCode.ROLLBACK_FAILED, str(e), operation_id=operation_id, context="restore",
            ))
        builder.rollback = outcome
        state = "succeeded" if outcome.success else "FAILED"
        self._event(builder.session_id, f"rollback {state}: restored {len(outcome.restored)} path(s)")

    def _apply_derived_config(self, op: Operation, values: dict[str, str]) -> None:
        for key, value in values.items():
            try:
                validate_key(key)
            except ConfigError as e:
                logger.warning(f"{op.id}: ignoring derived config: {e}", extra={"operation_id": op.id})
                continue
            self.config.set(key, value, ConfigLayer.FILE)

    def _execute(self, plan: ExecutionPlan, builder: SessionBuilder) -> bool:
        """
        Run the plan. Returns True if the batch backup set was rolled back.
        """
        backup_id: Optional[str] = None
        in_flight: Optional[Operation] = None
        started_at = _utcnow()

        try:
            for op in plan.operations:
                started_at = _utcnow()
                handler = self.registry.handler(op.id)
                context = OperationContext(
                    operation=op,
                    project_root=self.project_root,
                    config=self.config,
                    session_id=builder.session_id,
                    manifest_dir=self.manifest_dir,
                )

                if op.idempotent and handler.is_satisfied(context):
                    self._record(builder, OperationOutcome(
                        operation_id=op.id,
                        status=OperationStatus.SKIPPED,
                        message="already satisfied",
                        started_at=started_at,
                        completed_at=_utcnow(),
                    ))
                    continue

                try:
                    gate = self.checker.check(op, builder)
                except DependencyError as e:
                    if self._fail(builder, op, e.code, str(e), started_at, context="dependency gate"):
                        self._rollback(builder, backup_id, op.id)
                        return True
                    continue
                for warning in gate.warnings:
                    logger.warning(f"{op.id}: {warning}", extra={"operation_id": op.id})

                if op.creates:
                    try:
                        if backup_id is None:
                            backup_id = self.backups.create(op.creates, op.id, session_id=builder.session_id)
                        else:
                            self.backups.extend(backup_id, op.creates, op.id)
                    except (BackupError, OSError) as e:
                        # Never mutate paths that could not be protected
                        self._fail(builder, op, ErrorCode.GENERAL, f"backup failed: {e}", started_at, context="backup")
                        continue

                self._event(builder.session_id, f"start {op.id}")
                in_flight = op
                try:
                    result = handler.execute(context)
                except Exception as e:
                    in_flight = None
                    record_code = self.error_handler.classify(e)
                    message = str(e) or type(e).__name__
                    if self._fail(builder, op, record_code, message, started_at, context=type(e).__name__):
                        self._rollback(builder, backup_id, op.id)
                        return True
                    continue
                in_flight = None

                if result.success:
                    self._apply_derived_config(op, dict(result.config))
                    self._record(builder, OperationOutcome(
                        operation_id=op.id,
                        status=OperationStatus.SUCCEEDED,
                        message=result.message,
                        started_at=started_at,
                        completed_at=_utcnow(),
                    ))
                    continue

                if self._fail(builder, op, result.code, result.message, started_at, context="handler result"):
                    self._rollback(builder, backup_id, op.id)
                    return True

        except KeyboardInterrupt:
            builder.interrupted = True
            self._event(builder.session_id, "interrupted")
            if in_flight is not None:
                self._fail(
                    builder, in_flight, ErrorCode.ROLLBACK_NEEDED,
                    "interrupted while running", started_at, context="KeyboardInterrupt",
                )
                if in_flight.creates:
                    self._rollback(builder, backup_id, in_flight.id, only_operation=True)
        return False

    def run(
        self,
        request: RunRequest,
        interactive: bool = False,
        auto_confirm: bool = False,
    ) -> ExecutionSession:
        """
        Resolve and execute a request.

        Args:
            request: What to run
            interactive: Confirm the plan before running
            auto_confirm: Skip the confirmation even in interactive mode

        Returns:
            The finalized ExecutionSession

        Raises:
            PlanError: If the request cannot be resolved (nothing runs)
            ConflictError: If the plan contains conflicting operations (nothing runs)
        """
        if self._state != OrchestratorState.IDLE:
            raise PlanError(f"Orchestrator is busy ({self._state.value})")

        session_id = _new_session_id()
        self.error_handler.reset()
        self._state = OrchestratorState.RESOLVING
        self._event(session_id, f"session start: {request.describe()}")

        try:
            plan = self.resolve(request)
        except BootkitError as e:
            self._event(session_id, f"resolution failed: {e}")
            self._state = OrchestratorState.IDLE
            raise

        builder = SessionBuilder(session_id, request.describe(), planned=plan.ids)
        self._event(session_id, f"plan: {', '.join(plan.ids)}")

        try:
            if interactive and not auto_confirm:
                self._state = OrchestratorState.CONFIRMING
                try:
                    confirmed = self.confirm(plan)
                except KeyboardInterrupt:
                    builder.interrupted = True
                    self._state = OrchestratorState.SUMMARIZING
                    self._event(session_id, "interrupted while confirming")
                    return builder.finalize()
                if not confirmed:
                    builder.cancelled = True
                    self._event(session_id, "plan rejected")
                    return builder.finalize()

            self._state = OrchestratorState.RUNNING
            batch_rolled_back = self._execute(plan, builder)

            self._state = OrchestratorState.SUMMARIZING
            if not batch_rolled_back and builder.rollback is None:
                self._persist_config(builder)

            session = builder.finalize()
            self._event(
                session_id,
                f"session end: {len(session.succeeded)} succeeded, {len(session.skipped)} skipped, "
                f"{len(session.failed)} failed, {len(session.not_run)} not run",
            )
            return session
        finally:
            self._state = OrchestratorState.IDLE

    def _persist_config(self, builder: SessionBuilder) -> None:
        if self.config.config_file is None:
            return
        if not self.config.config_file.exists() and not self.config.layer(ConfigLayer.FILE):
            return
        try:
            self.config.persist()
        except (ConfigError, OSError) as e:
            builder.add_error(self.error_handler.handle_exception(e, operation_id=None, context="config persist"))


# =============================================================================
# Summary
# =============================================================================


_STATUS_MARKS = {
    OperationStatus.SUCCEEDED: "✓",
    OperationStatus.SKIPPED: "-",
    OperationStatus.FAILED: "✗",
}


def format_summary(session: ExecutionSession) -> str:
    """
    Render the end-of-run summary.

    A failed rollback is always the last line.
    """
    lines = [f"Session {session.session_id}: {session.request}"]

    if session.cancelled:
        lines.append("Cancelled: plan was not confirmed, nothing ran.")
        return "\n".join(lines)

    for outcome in session.outcomes:
        mark = _STATUS_MARKS[outcome.status]
        text = f"  {mark} {outcome.operation_id}"
        if outcome.status == OperationStatus.FAILED:
            text += f" [{code_name(outcome.code)}]"
        if outcome.message:
            text += f" {outcome.message}"
        lines.append(text)
    for op_id in session.not_run:
        lines.append(f"  · {op_id} (not run)")

    lines.append(
        f"Succeeded: {len(session.succeeded)}  Skipped: {len(session.skipped)}  "
        f"Failed: {len(session.failed)}  Not run: {len(session.not_run)}"
    )
    if session.completed_at is not None:
        elapsed = (session.completed_at - session.started_at).total_seconds()
        lines.append(f"Duration: {format_duration(elapsed)}")

    engine_errors = [e for e in session.errors if e.operation_id is None]
    for record in engine_errors:
        lines.append(f"Error [{record.code_name}]: {record.message}")

    if session.interrupted:
        lines.append("Interrupted.")

    rollback = session.rollback
    if rollback is not None:
        if rollback.success:
            lines.append(f"Rollback: restored {len(rollback.restored)} path(s) from backup {rollback.backup_id}")
        else:
            failed_at = f" at {rollback.failed_path}" if rollback.failed_path else ""
            remaining = ", ".join(rollback.not_restored) or "none"
            lines.append(
                f"ROLLBACK_FAILED: backup {rollback.backup_id} failed{failed_at}"
                f" ({rollback.error}); restored {len(rollback.restored)} path(s); "
                f"not restored: {remaining}. Project state may be inconsistent."
            )
    return "\n".join(lines)
