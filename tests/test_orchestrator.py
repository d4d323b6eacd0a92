"""
Tests for bootkit.orchestrator.

Operation bodies are CallableHandlers writing into a tmp project, so every
run here is real: files are created, backed up and restored on disk.
"""

import pytest

from bootkit.backup import BackupManager
from bootkit.config import ConfigStore
from bootkit.dependencies import DependencyChecker
from bootkit.error_handler import ErrorHandler
from bootkit.errors import (
    ConflictError,
    CycleError,
    ErrorCode,
    OperationValidationError,
    PlanError,
    RollbackFailedError,
)
from bootkit.handlers import CallableHandler, HandlerRegistry, OperationResult
from bootkit.orchestrator import Orchestrator, OrchestratorState, RunRequest, format_summary
from bootkit.registry import ManifestRegistry
from bootkit.schemas import OperationStatus


def _writer(relative, content="generated"):
    def body(ctx):
        ctx.path(relative).write_text(content)
    return body


def _handlers(bodies):
    registry = HandlerRegistry()
    for op_id, body in bodies.items():
        registry.register(op_id, CallableHandler(body))
    return registry


def _default_bodies():
    return {
        "git": _writer(".gitignore", "node_modules\n"),
        "packages": _writer("package.json", "{}"),
        "linting": _writer(".eslintrc.json", "{}"),
        "docker-postgres": _writer("docker-compose.yml", "postgres"),
        "docker-mysql": _writer("docker-compose.yml", "mysql"),
    }


# Three operations in one phase, run a -> b -> c
THREE_STEPS = {
    "scripts": {
        "a": {"phase": 1, "priority": 1, "creates": ["settings.json", "a.txt"]},
        "b": {"phase": 1, "priority": 2, "creates": ["b.txt"]},
        "c": {"phase": 1, "priority": 3, "creates": ["c.txt"]},
    }
}


@pytest.fixture
def build(paths, fake_which):
    """Build an Orchestrator over a manifest dict and operation bodies."""
    def _build(data, bodies, tools=("eslint",), **kwargs):
        registry = ManifestRegistry.load(data, handlers=_handlers(bodies))
        return Orchestrator(
            registry=registry,
            config=ConfigStore(config_file=paths.config_file, environ={}),
            project_root=paths.project_root,
            backups=BackupManager(paths.backups_dir, paths.project_root),
            checker=DependencyChecker(which=fake_which(*tools)),
            error_handler=ErrorHandler(paths.error_log),
            session_log=paths.session_log,
            **kwargs,
        )
    return _build


@pytest.fixture
def without_docker(manifest_data):
    for op_id in ("docker-postgres", "docker-mysql"):
        del manifest_data["scripts"][op_id]
    del manifest_data["profiles"]["databases"]
    return manifest_data


def _three_step_bodies(b_body=None):
    def a(ctx):
        ctx.path("settings.json").write_text("changed")
        ctx.path("a.txt").write_text("a")

    return {"a": a, "b": b_body or _writer("b.txt"), "c": _writer("c.txt")}


class TestRunRequest:
    @pytest.mark.parametrize("kind, value", [
        ("all", "x"),
        ("phase", "1"),
        ("phase", True),
        ("operation", ""),
        ("profile", None),
        ("nonsense", None),
    ])
    def test_invalid(self, kind, value):
        with pytest.raises(ValueError):
            RunRequest(kind, value)

    def test_describe(self):
        assert RunRequest.for_all().describe() == "all operations"
        assert RunRequest.for_phase(2).describe() == "phase 2"
        assert RunRequest.for_profile("standard").describe() == "profile standard"
        assert RunRequest.for_operation("git").describe() == "operation git"


class TestResolve:
    """Resolution never executes anything."""

    def test_phase_in_order(self, build, manifest_data):
        plan = build(manifest_data, _default_bodies()).resolve(RunRequest.for_phase(1))
        assert plan.ids == ("git", "packages")
        assert not plan.dry_run

    def test_profile_sorted_into_execution_order(self, build, manifest_data):
        plan = build(manifest_data, _default_bodies()).resolve(RunRequest.for_profile("standard"))
        assert plan.ids == ("git", "packages")

    def test_unknown_operation(self, build, manifest_data):
        with pytest.raises(PlanError, match="nope"):
            build(manifest_data, _default_bodies()).resolve(RunRequest.for_operation("nope"))

    def test_unknown_profile(self, build, manifest_data):
        with pytest.raises(PlanError):
            build(manifest_data, _default_bodies()).resolve(RunRequest.for_profile("nope"))

    def test_empty_phase(self, build, manifest_data):
        with pytest.raises(PlanError, match="phase 9"):
            build(manifest_data, _default_bodies()).resolve(RunRequest.for_phase(9))

    def test_conflicting_profile(self, build, manifest_data):
        with pytest.raises(ConflictError) as exc_info:
            build(manifest_data, _default_bodies()).resolve(RunRequest.for_profile("databases"))
        assert exc_info.value.pairs == (("docker-mysql", "docker-postgres"),)


class TestRun:
    """End-to-end runs against a tmp project."""

    def test_phase_run_creates_outputs(self, build, manifest_data, project_root):
        session = build(manifest_data, _default_bodies()).run(RunRequest.for_phase(1))

        assert session.success
        assert [o.operation_id for o in session.succeeded] == ["git", "packages"]
        assert (project_root / ".gitignore").read_text() == "node_modules\n"
        assert (project_root / "package.json").exists()

    def test_second_run_is_skipped(self, build, manifest_data):
        orchestrator = build(manifest_data, _default_bodies())
        orchestrator.run(RunRequest.for_phase(1))
        session = orchestrator.run(RunRequest.for_phase(1))

        assert [o.status for o in session.outcomes] == [OperationStatus.SKIPPED, OperationStatus.SKIPPED]
        assert session.outcomes[0].message == "already satisfied"
        assert session.success

    def test_non_idempotent_runs_again(self, build, manifest_data, project_root):
        manifest_data["scripts"]["git"]["idempotent"] = False
        calls = []

        def git(ctx):
            calls.append(ctx.session_id)
            ctx.path(".gitignore").write_text("")

        bodies = _default_bodies()
        bodies["git"] = git
        orchestrator = build(manifest_data, bodies)
        orchestrator.run(RunRequest.for_operation("git"))
        orchestrator.run(RunRequest.for_operation("git"))

        assert len(calls) == 2
        assert calls[0] != calls[1]

    def test_skipped_dependency_counts(self, build, manifest_data, project_root):
        (project_root / ".gitignore").write_text("")
        session = build(manifest_data, _default_bodies()).run(RunRequest.for_phase(1))
        assert session.get_outcome("git").status == OperationStatus.SKIPPED
        assert session.get_outcome("packages").status == OperationStatus.SUCCEEDED

    def test_state_returns_to_idle(self, build, manifest_data):
        seen = []
        orchestrator = build(manifest_data, _default_bodies())
        orchestrator.confirm = lambda plan: seen.append(orchestrator.state) or True

        orchestrator.run(RunRequest.for_phase(1), interactive=True)

        assert seen == [OrchestratorState.CONFIRMING]
        assert orchestrator.state == OrchestratorState.IDLE


class TestDependencyGate:
    def test_missing_tool_fails_operation(self, build, without_docker, project_root):
        session = build(without_docker, _default_bodies(), tools=()).run(RunRequest.for_all())

        linting = session.get_outcome("linting")
        assert linting.status == OperationStatus.FAILED
        assert linting.code == ErrorCode.DEPENDENCY_MISSING
        assert "eslint" in linting.message
        assert not (project_root / ".eslintrc.json").exists()
        assert session.rollback is None
        assert [o.operation_id for o in session.succeeded] == ["git", "packages"]

    def test_phase_request_without_dependencies(self, build, without_docker):
        session = build(without_docker, _default_bodies(), tools=()).run(RunRequest.for_phase(2))

        assert len(session.succeeded) == 0
        assert len(session.failed) == 1
        assert session.failed[0].code == ErrorCode.DEPENDENCY_MISSING
        assert session.rollback is None

    def test_dependency_must_run_in_session(self, build, manifest_data, project_root):
        (project_root / "package.json").write_text("{}")
        session = build(manifest_data, _default_bodies()).run(RunRequest.for_operation("linting"))

        outcome = session.get_outcome("linting")
        assert outcome.code == ErrorCode.DEPENDENCY_MISSING
        assert "dependencies not run: packages" in outcome.message

    def test_optional_tool_only_warns(self, build, manifest_data, caplog):
        manifest_data["scripts"]["git"]["optional"] = ["gh"]
        session = build(manifest_data, _default_bodies()).run(RunRequest.for_operation("git"))

        assert session.success
        assert "optional tool not found: gh" in caplog.text

    def test_failed_gate_takes_no_backup(self, build, manifest_data, paths):
        build(manifest_data, _default_bodies()).run(RunRequest.for_operation("linting"))
        assert BackupManager(paths.backups_dir, paths.project_root).list() == []


class TestConflictsAndCycles:
    """Load-time and plan-time errors stop the run before anything executes."""

    def test_conflict_runs_nothing(self, build, manifest_data, paths):
        orchestrator = build(manifest_data, _default_bodies())
        with pytest.raises(ConflictError):
            orchestrator.run(RunRequest.for_profile("databases"))

        assert not (paths.project_root / "docker-compose.yml").exists()
        assert not paths.backups_dir.exists()
        assert orchestrator.state == OrchestratorState.IDLE
        assert "resolution failed" in paths.session_log.read_text()

    def test_cycle_is_rejected_at_load(self, paths, write_manifest):
        write_manifest({
            "scripts": {
                "a": {"phase": 1, "depends": ["b"], "command": "touch a"},
                "b": {"phase": 1, "depends": ["a"], "command": "touch b"},
            }
        })
        with pytest.raises(CycleError):
            Orchestrator.from_paths(paths)
        assert not (paths.project_root / "a").exists()
        assert not paths.backups_dir.exists()


class TestRollback:
    """A rollback-triggering failure restores the whole batch and halts."""

    def test_validation_failure_restores_batch(self, build, project_root):
        (project_root / "settings.json").write_text("original")

        def b(ctx):
            ctx.path("b.txt").write_text("partial")
            return OperationResult.failed(ErrorCode.VALIDATION_FAILED, "b.txt is invalid")

        session = build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))

        assert (project_root / "settings.json").read_text() == "original"
        assert not (project_root / "a.txt").exists()
        assert not (project_root / "b.txt").exists()
        assert not (project_root / "c.txt").exists()

        assert session.get_outcome("a").status == OperationStatus.SUCCEEDED
        assert session.get_outcome("b").code == ErrorCode.VALIDATION_FAILED
        assert session.not_run == ("c",)
        assert session.rollback.success
        assert set(session.rollback.restored) == {"settings.json", "a.txt", "b.txt"}

    def test_raised_validation_error(self, build, project_root):
        def b(ctx):
            raise OperationValidationError("checksum mismatch")

        session = build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))

        assert session.get_outcome("b").message == "checksum mismatch"
        assert session.rollback is not None
        assert session.not_run == ("c",)

    def test_general_failure_continues(self, build, project_root):
        def b(ctx):
            raise RuntimeError("flaky")

        session = build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))

        assert session.get_outcome("b").code == ErrorCode.GENERAL
        assert session.get_outcome("c").status == OperationStatus.SUCCEEDED
        assert session.rollback is None
        assert (project_root / "a.txt").exists()

    def test_failed_rollback_is_reported(self, build, project_root, monkeypatch):
        def b(ctx):
            return OperationResult.failed(ErrorCode.ROLLBACK_NEEDED, "undo")

        orchestrator = build(THREE_STEPS, _three_step_bodies(b))

        def broken_restore(backup_id, paths=None, operation_id=None):
            raise RollbackFailedError(backup_id, ["b.txt"], "a.txt", ["settings.json"], cause=OSError("disk full"))

        monkeypatch.setattr(orchestrator.backups, "restore", broken_restore)
        session = orchestrator.run(RunRequest.for_phase(1))

        assert session.rollback_failed
        assert session.rollback.failed_path == "a.txt"
        assert session.rollback.not_restored == ("settings.json",)
        assert any(e.code == ErrorCode.ROLLBACK_FAILED for e in session.errors)
        assert format_summary(session).splitlines()[-1].startswith("ROLLBACK_FAILED")

    def test_unprotectable_path_is_not_run(self, build):
        calls = []
        data = {"scripts": {"escape": {"phase": 1, "creates": ["../outside.txt"]}}}
        session = build(data, {"escape": lambda ctx: calls.append(1)}).run(RunRequest.for_all())

        assert calls == []
        assert session.get_outcome("escape").code == ErrorCode.GENERAL
        assert "backup failed" in session.get_outcome("escape").message

    def test_errors_reach_durable_log(self, build, project_root, paths):
        def b(ctx):
            return OperationResult.failed(ErrorCode.VALIDATION_FAILED, "bad")

        build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))
        assert "[VALIDATION_FAILED] op=b bad" in paths.error_log.read_text()


class TestInterrupt:
    def test_restores_only_in_flight_paths(self, build, project_root):
        def b(ctx):
            ctx.path("b.txt").write_text("partial")
            raise KeyboardInterrupt

        session = build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))

        assert session.interrupted
        assert (project_root / "a.txt").exists()
        assert not (project_root / "b.txt").exists()
        assert session.get_outcome("b").code == ErrorCode.ROLLBACK_NEEDED
        assert session.not_run == ("c",)
        assert session.rollback.restored == ("b.txt",)
        assert "Interrupted." in format_summary(session)

    def test_keeps_completed_output_on_shared_path(self, build, project_root):
        (project_root / "package.json").write_text("original")
        data = {"scripts": {
            "packages": {"phase": 1, "priority": 1, "idempotent": False, "creates": ["package.json"]},
            "linting": {"phase": 1, "priority": 2, "idempotent": False, "creates": ["package.json", ".eslintrc"]},
        }}

        def linting(ctx):
            ctx.path("package.json").write_text("linting-partial")
            ctx.path(".eslintrc").write_text("{}")
            raise KeyboardInterrupt

        session = build(data, {
            "packages": _writer("package.json", "packages-done"),
            "linting": linting,
        }).run(RunRequest.for_phase(1))

        assert session.interrupted
        assert session.get_outcome("packages").status == OperationStatus.SUCCEEDED
        assert (project_root / "package.json").read_text() == "packages-done"
        assert not (project_root / ".eslintrc").exists()
        assert set(session.rollback.restored) == {"package.json", ".eslintrc"}

    def test_batch_rollback_restores_pre_batch_state_of_shared_path(self, build, project_root):
        (project_root / "package.json").write_text("original")
        data = {"scripts": {
            "packages": {"phase": 1, "priority": 1, "idempotent": False, "creates": ["package.json"]},
            "linting": {"phase": 1, "priority": 2, "idempotent": False, "creates": ["package.json"]},
        }}

        def linting(ctx):
            ctx.path("package.json").write_text("linting-partial")
            return OperationResult.failed(ErrorCode.ROLLBACK_NEEDED, "undo")

        session = build(data, {
            "packages": _writer("package.json", "packages-done"),
            "linting": linting,
        }).run(RunRequest.for_phase(1))

        assert session.rollback.success
        assert session.rollback.restored == ("package.json",)
        assert (project_root / "package.json").read_text() == "original"

    def test_interrupt_while_confirming(self, build, manifest_data, project_root):
        def confirm(plan):
            raise KeyboardInterrupt

        orchestrator = build(manifest_data, _default_bodies(), confirm=confirm)
        session = orchestrator.run(RunRequest.for_phase(1), interactive=True)

        assert session.interrupted
        assert session.outcomes == ()
        assert session.not_run == session.planned
        assert not (project_root / ".gitignore").exists()
        assert orchestrator.state == OrchestratorState.IDLE
        assert "Interrupted." in format_summary(session)


class TestDryRun:
    """Dry runs consult only the registry and the dependency checker."""

    def test_gates_without_executing(self, build, without_docker, project_root, paths):
        plan = build(without_docker, _default_bodies(), tools=()).dry_run(RunRequest.for_all())

        assert plan.dry_run
        assert plan.ids == ("git", "packages", "linting")
        assert [g.would_run for g in plan.gates] == [True, True, False]
        assert plan.blocked[0].error.missing_tools == ("eslint",)
        assert list(project_root.iterdir()) == []

    def test_earlier_operations_count_as_satisfied(self, build, without_docker):
        plan = build(without_docker, _default_bodies()).dry_run(RunRequest.for_all())
        assert plan.blocked == ()
        assert plan.to_dict()["gates"][2] == {"operation_id": "linting", "would_run": True}


class TestConfirmation:
    def test_rejected_plan_runs_nothing(self, build, manifest_data, project_root):
        session = build(manifest_data, _default_bodies(), confirm=lambda plan: False).run(
            RunRequest.for_phase(1), interactive=True
        )
        assert session.cancelled
        assert session.outcomes == ()
        assert not (project_root / ".gitignore").exists()
        assert "Cancelled" in format_summary(session)

    def test_auto_confirm_skips_prompt(self, build, manifest_data):
        def confirm(plan):
            raise AssertionError("prompted")

        session = build(manifest_data, _default_bodies(), confirm=confirm).run(
            RunRequest.for_phase(1), interactive=True, auto_confirm=True
        )
        assert session.success

    def test_non_interactive_never_prompts(self, build, manifest_data):
        def confirm(plan):
            raise AssertionError("prompted")

        assert build(manifest_data, _default_bodies(), confirm=confirm).run(RunRequest.for_phase(1)).success


class TestDerivedConfig:
    def test_persisted_after_run(self, build, manifest_data, paths):
        bodies = _default_bodies()
        bodies["git"] = lambda ctx: {"docker.app_port": 4100, "not a key": "x"}

        build(manifest_data, bodies).run(RunRequest.for_operation("git"))

        assert ConfigStore(config_file=paths.config_file, environ={}).get("docker.app_port") == "4100"

    def test_visible_to_later_operations(self, build, manifest_data):
        seen = []
        bodies = _default_bodies()
        bodies["git"] = lambda ctx: (ctx.path(".gitignore").write_text(""), {"project.name": "derived"})[1]
        bodies["packages"] = lambda ctx: seen.append(ctx.config.get("project.name"))

        build(manifest_data, bodies).run(RunRequest.for_phase(1))
        assert seen == ["derived"]

    def test_not_persisted_after_rollback(self, build, project_root, paths):
        bodies = _three_step_bodies(lambda ctx: OperationResult.failed(ErrorCode.VALIDATION_FAILED))
        bodies["a"] = lambda ctx: {"project.name": "derived"}

        build(THREE_STEPS, bodies).run(RunRequest.for_phase(1))
        assert not paths.config_file.exists()

    def test_invalid_value_recorded_as_engine_error(self, build, manifest_data, paths):
        bodies = _default_bodies()
        bodies["git"] = lambda ctx: {"docker.app_port": "80"}

        session = build(manifest_data, bodies).run(RunRequest.for_operation("git"))

        assert not paths.config_file.exists()
        assert session.errors[-1].operation_id is None
        assert "Error [VALIDATION_FAILED]" in format_summary(session)


class TestSessionLog:
    def test_events_are_appended(self, build, manifest_data, paths):
        orchestrator = build(manifest_data, _default_bodies())
        session = orchestrator.run(RunRequest.for_phase(1))
        orchestrator.run(RunRequest.for_phase(1))

        text = paths.session_log.read_text()
        assert f"[{session.session_id}] session start: phase 1" in text
        assert "succeeded git" in text
        assert "skipped git: already satisfied" in text
        assert text.count("session end") == 2


class TestFormatSummary:
    def test_lines(self, build, project_root):
        def b(ctx):
            return OperationResult.failed(ErrorCode.VALIDATION_FAILED, "bad output")

        session = build(THREE_STEPS, _three_step_bodies(b)).run(RunRequest.for_phase(1))
        lines = format_summary(session).splitlines()

        assert lines[0] == f"Session {session.session_id}: phase 1"
        assert "  ✓ a" in lines
        assert "  ✗ b [VALIDATION_FAILED] bad output" in lines
        assert "  · c (not run)" in lines
        assert "Succeeded: 1  Skipped: 0  Failed: 1  Not run: 1" in lines
        assert any(line.startswith("Duration: ") for line in lines)
        assert lines[-1].startswith("Rollback: restored 3 path(s)")
