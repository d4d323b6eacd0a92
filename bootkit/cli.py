"""
CLI interface for bootkit.

Provides commands to inspect the manifest, run operations, manage the layered
config and work with backups.

Exit codes:
    0   success
    1   operation failures, load errors, bad input
    2   a rollback failed (project state may be inconsistent)
    130 interrupted
"""

import concurrent.futures
import json
import logging
from typing import Optional

import click
from rich.table import Table

from bootkit import __version__
from bootkit.backup import BackupManager
from bootkit.cache import MtimeCache
from bootkit.config import (
    BootkitPaths,
    ConfigStore,
    init_config,
    load_config,
    resolve_paths,
)
from bootkit.error_handler import ErrorHandler
from bootkit.errors import (
    BackupError,
    BackupNotFoundError,
    BootkitError,
    ConfigError,
    RollbackFailedError,
)
from bootkit.handlers import HandlerRegistry
from bootkit.orchestrator import ExecutionPlan, Orchestrator, RunRequest, format_summary
from bootkit.probe import EnvironmentProbe
from bootkit.registry import ManifestRegistry, ManifestSource
from bootkit.schemas import ConfigLayer, ExecutionSession, OperationOutcome, OperationStatus
from bootkit.utils import (
    console,
    parse_relative_date,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_FAILED = 2
EXIT_INTERRUPTED = 130

# Seconds to wait for the environment probe before gating without it
PROBE_TIMEOUT = 10.0


def session_exit_code(session: ExecutionSession) -> int:
    """Map a finished session to the process exit code."""
    if session.rollback_failed:
        return EXIT_ROLLBACK_FAILED
    if session.interrupted:
        return EXIT_INTERRUPTED
    if session.failed or session.errors:
        return EXIT_FAILED
    return EXIT_OK


# =============================================================================
# Context helpers
# =============================================================================


def _paths(ctx) -> BootkitPaths:
    return ctx.obj["paths"]


def _cache(ctx) -> MtimeCache:
    return ctx.obj.setdefault("cache", MtimeCache())


def _handlers(ctx) -> HandlerRegistry:
    # Tests and embedding code may pass a prepared registry via obj
    handlers = ctx.obj.get("handlers")
    if handlers is None:
        handlers = HandlerRegistry.create_default()
        ctx.obj["handlers"] = handlers
    return handlers


def _fail(message: str, code: int = EXIT_FAILED) -> None:
    print_error(message)
    raise SystemExit(code)


def _load_registry(ctx, bind: bool = False) -> ManifestRegistry:
    """Load the manifest, exiting with 1 on any load error."""
    paths = _paths(ctx)
    source = ManifestSource(paths.manifest_path, _cache(ctx))
    if not source.exists():
        _fail(f"Manifest not found: {paths.manifest_path}")
    try:
        return source.registry(_handlers(ctx) if bind else None)
    except BootkitError as e:
        _fail(str(e))


def _load_store(ctx) -> ConfigStore:
    try:
        return load_config(_paths(ctx), cache=_cache(ctx))
    except ConfigError as e:
        _fail(str(e))


def _backups(ctx) -> BackupManager:
    paths = _paths(ctx)
    return BackupManager(paths.backups_dir, paths.project_root)


# =============================================================================
# Root group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="bootkit")
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=str),
    default=None,
    help="Target project directory (default: current directory)",
)
@click.option(
    "--manifest",
    type=click.Path(dir_okay=False, path_type=str),
    default=None,
    envvar="BOOTKIT_MANIFEST",
    help="Manifest file (default: <project-root>/bootkit-manifest.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Level for logs/bootkit.log",
)
@click.option("-v", "--verbose", is_flag=True, help="Also log to the console")
@click.pass_context
def main(ctx, project_root: Optional[str], manifest: Optional[str], log_level: str, verbose: bool):
    """
    bootkit - Manifest-driven project bootstrapper.

    Runs declared setup operations in phase and dependency order, with
    backups and rollback.
    """
    ctx.ensure_object(dict)
    paths = resolve_paths(project_root, manifest)
    ctx.obj["paths"] = paths
    try:
        setup_logging(
            paths.app_log,
            log_level=log_level,
            log_format="pretty" if verbose else "structured",
            console_output=verbose,
        )
    except OSError as e:
        # An unwritable state dir must not block read-only commands
        setup_logging(None, log_level=log_level, log_format="pretty", console_output=verbose)
        logger.warning(f"File logging disabled: {e}")


# =============================================================================
# Run
# =============================================================================


def _plan_table(registry: ManifestRegistry, plan: ExecutionPlan) -> Table:
    table = Table(title=f"Plan: {plan.request.describe()}")
    table.add_column("#", justify="right")
    table.add_column("Operation")
    table.add_column("Phase")
    table.add_column("Creates")
    gates = {g.operation.id: g for g in plan.gates}
    if gates:
        table.add_column("Gate")
    for index, op in enumerate(plan.operations, start=1):
        row = [
            str(index),
            op.id,
            f"{op.phase} {registry.phase_name(op.phase)}",
            ", ".join(op.creates) or "-",
        ]
        if gates:
            gate = gates[op.id]
            if gate.would_run:
                warnings = gate.gate.warnings if gate.gate is not None else ()
                row.append("ok" + (f" ({'; '.join(warnings)})" if warnings else ""))
            else:
                row.append(str(gate.error))
        table.add_row(*row)
    return table


def _request_from_args(operation, phase, profile, run_all) -> RunRequest:
    chosen = [x for x in (operation, phase, profile) if x is not None] + ([True] if run_all else [])
    if len(chosen) != 1:
        raise click.UsageError("Give exactly one of OPERATION, --phase, --profile or --all")
    if operation is not None:
        return RunRequest.for_operation(operation)
    if phase is not None:
        return RunRequest.for_phase(phase)
    if profile is not None:
        return RunRequest.for_profile(profile)
    return RunRequest.for_all()


def _print_outcome(outcome: OperationOutcome) -> None:
    text = outcome.operation_id + (f": {outcome.message}" if outcome.message else "")
    if outcome.status == OperationStatus.SUCCEEDED:
        print_success(text)
    elif outcome.status == OperationStatus.SKIPPED:
        print_info(f"{text} (skipped)")
    else:
        print_error(text)


def _apply_probe(probe: EnvironmentProbe, orchestrator: Orchestrator) -> None:
    try:
        probe.apply_to(orchestrator.config, orchestrator.checker, timeout=PROBE_TIMEOUT)
    except concurrent.futures.TimeoutError:
        logger.warning(f"Environment probe did not finish within {PROBE_TIMEOUT}s, gating without it")
    except (OSError, ConfigError) as e:
        logger.warning(f"Environment probe failed: {e}")


@main.command("run")
@click.argument("operation", required=False)
@click.option("--phase", type=int, default=None, help="Run every operation of one phase")
@click.option("--profile", default=None, help="Run the operations of a profile")
@click.option("--all", "run_all", is_flag=True, help="Run every operation")
@click.option("-i", "--interactive", is_flag=True, help="Confirm the plan before running")
@click.option("-y", "--yes", "auto_confirm", is_flag=True, help="Answer yes to the confirmation")
@click.option("--dry-run", is_flag=True, help="Resolve and gate the plan without running anything")
@click.option(
    "--answers",
    type=click.Path(exists=True, dir_okay=False, path_type=str),
    default=None,
    help="Answers file overlaid on the session config and saved on success",
)
@click.pass_context
def run(ctx, operation, phase, profile, run_all, interactive, auto_confirm, dry_run, answers):
    """
    Run operations.

    Examples:

        bootkit run git

        bootkit run --phase 1

        bootkit run --profile standard -i

        bootkit run --all --dry-run
    """
    request = _request_from_args(operation, phase, profile, run_all)
    paths = _paths(ctx)

    # Detection overlaps with manifest loading and resolution
    probe = EnvironmentProbe(paths.project_root).start()

    registry = _load_registry(ctx, bind=True)
    store = _load_store(ctx)

    def confirm(plan: ExecutionPlan) -> bool:
        console.print(_plan_table(registry, plan))
        return click.confirm("Proceed?", default=True)

    orchestrator = Orchestrator(
        registry=registry,
        config=store,
        project_root=paths.project_root,
        backups=BackupManager(paths.backups_dir, paths.project_root),
        error_handler=ErrorHandler(paths.error_log),
        session_log=paths.session_log,
        confirm=confirm,
        on_outcome=_print_outcome,
    )
    _apply_probe(probe, orchestrator)

    if answers:
        try:
            store.load_answers(answers)
        except ConfigError as e:
            _fail(str(e))

    if dry_run:
        try:
            plan = orchestrator.dry_run(request)
        except BootkitError as e:
            _fail(str(e))
        print_banner("DRY RUN (nothing is executed)")
        console.print(_plan_table(registry, plan))
        if plan.blocked:
            print_warning(f"{len(plan.blocked)} operation(s) would fail their dependency gate")
            raise SystemExit(EXIT_FAILED)
        print_success(f"{len(plan.operations)} operation(s) would run")
        return

    if answers:
        store.commit_answers()

    try:
        session = orchestrator.run(request, interactive=interactive, auto_confirm=auto_confirm)
    except BootkitError as e:
        _fail(str(e))

    click.echo()
    click.echo(format_summary(session))
    if session.cancelled:
        return
    code = session_exit_code(session)
    if code != EXIT_OK:
        raise SystemExit(code)


# =============================================================================
# Manifest inspection
# =============================================================================


@main.command("list")
@click.option("--phase", type=int, default=None, help="Only this phase")
@click.option("--category", default=None, help="Only this category")
@click.option("--all", "show_all", is_flag=True, help="Include hidden operations")
@click.pass_context
def list_operations(ctx, phase: Optional[int], category: Optional[str], show_all: bool):
    """List operations grouped by phase."""
    registry = _load_registry(ctx)

    if category is not None and category not in registry.categories():
        _fail(f"No operations in category '{category}'. Available: {', '.join(registry.categories())}")

    phases = [phase] if phase is not None else registry.phases()
    shown = 0
    for number in phases:
        ops = registry.operations_by_phase(number, include_hidden=show_all)
        if category is not None:
            ops = [op for op in ops if op.category == category]
        if not ops:
            continue
        click.echo(f"Phase {number}: {registry.phase_name(number)}")
        for op in ops:
            suffix = " (hidden)" if op.hidden else ""
            description = f" - {op.description}" if op.description else ""
            click.echo(f"  {op.id} [{op.category}]{description}{suffix}")
            shown += 1

    if not shown:
        click.echo("No operations found.")


@main.command("show")
@click.argument("operation")
@click.pass_context
def show_operation(ctx, operation: str):
    """Show one operation's manifest entry."""
    registry = _load_registry(ctx)
    try:
        op = registry.operation(operation)
    except BootkitError as e:
        _fail(str(e))

    click.echo(f"Operation: {op.id}")
    if op.name:
        click.echo(f"Name: {op.name}")
    click.echo(f"Phase: {op.phase} ({registry.phase_name(op.phase)})")
    click.echo(f"Category: {op.category}")
    click.echo(f"Priority: {op.priority}")
    transitive = sorted(registry.transitive_dependencies_of(op.id))
    if transitive:
        click.echo(f"Runs after: {', '.join(transitive)}")
    click.echo()
    click.echo(json.dumps(op.to_dict(), indent=2))


@main.command("profiles")
@click.pass_context
def list_profiles(ctx):
    """List profiles."""
    registry = _load_registry(ctx)
    profiles = registry.profiles()
    if not profiles:
        click.echo("No profiles defined.")
        return
    for profile in profiles:
        description = f" - {profile.description}" if profile.description else ""
        click.echo(f"{profile.name}{description}")
        click.echo(f"  {', '.join(registry.resolve_profile(profile.name))}")


@main.command("validate")
@click.pass_context
def validate(ctx):
    """Validate the manifest and bind every operation to a handler."""
    registry = _load_registry(ctx, bind=True)
    print_success(
        f"{_paths(ctx).manifest_path.name}: {len(registry)} operation(s), "
        f"{len(registry.profiles())} profile(s), {len(registry.phases())} phase(s)"
    )
    click.echo(f"sha256 {registry.content_hash()}")


# =============================================================================
# Config
# =============================================================================


@main.group("config")
def config_group():
    """Inspect and edit the layered configuration."""
    pass


@config_group.command("show")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def config_show(ctx, as_json: bool):
    """Show every resolved key and the layer it came from."""
    store = _load_store(ctx)
    entries = store.describe()
    if as_json:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        click.echo("No configuration values.")
        return

    table = Table(title=str(store.config_file))
    table.add_column("Key")
    table.add_column("Value")
    table.add_column("Source")
    for entry in entries:
        table.add_row(entry.key, entry.value, entry.layer.label)
    console.print(table)


@config_group.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key: str):
    """Print one resolved value."""
    store = _load_store(ctx)
    try:
        entry = store.get_entry(key)
    except ConfigError as e:
        _fail(str(e))
    if entry is None:
        _fail(f"Config key not set: {key}")
    click.echo(entry.value)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key: str, value: str):
    """Set a value in the persisted config file."""
    store = _load_store(ctx)
    try:
        store.set(key, value, ConfigLayer.FILE)
        store.persist()
    except ConfigError as e:
        _fail(str(e))
    print_success(f"{key}={value}")
    if store.has(key, ConfigLayer.ENVIRONMENT):
        print_warning(f"{key} is overridden by the environment")


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def config_init(ctx, force: bool):
    """Write a starter config from defaults and detected project values."""
    paths = _paths(ctx)
    detected = EnvironmentProbe(paths.project_root).result(timeout=PROBE_TIMEOUT).detected
    try:
        path = init_config(paths, detected=detected, force=force)
    except ConfigError as e:
        _fail(str(e))
    print_success(f"Initialized bootkit config at {path}")


# =============================================================================
# Backups
# =============================================================================


@main.group("backup")
def backup_group():
    """List, restore, verify and prune backups."""
    pass


@backup_group.command("list")
@click.pass_context
def backup_list(ctx):
    """List backup sets, newest first."""
    backups = _backups(ctx).list()
    if not backups:
        click.echo("No backups found.")
        return
    for backup in backups:
        click.echo(
            f"{backup.backup_id}  {backup.status.value:<8}  {len(backup.paths)} path(s)"
            + (f"  session {backup.session_id}" if backup.session_id else "")
        )


@backup_group.command("latest")
@click.pass_context
def backup_latest(ctx):
    """Show the newest restorable backup."""
    backup = _backups(ctx).latest()
    if backup is None:
        _fail("No restorable backups.")
    click.echo(backup.backup_id)
    for path in backup.paths:
        click.echo(f"  {path} ({backup.entry(path).kind.value})")


@backup_group.command("restore")
@click.argument("backup_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def backup_restore(ctx, backup_id: str, yes: bool):
    """Restore every path of a backup set."""
    manager = _backups(ctx)
    try:
        backup = manager.get(backup_id)
    except BackupError as e:
        _fail(str(e))
    if not yes:
        click.confirm(f"Restore {len(backup.paths)} path(s) from {backup_id}?", abort=True)
    try:
        outcome = manager.restore(backup_id)
    except RollbackFailedError as e:
        _fail(str(e), EXIT_ROLLBACK_FAILED)
    except BackupError as e:
        _fail(str(e))
    print_success(f"Restored {len(outcome.restored)} path(s) from {backup_id}")


@backup_group.command("verify")
@click.argument("backup_id")
@click.pass_context
def backup_verify(ctx, backup_id: str):
    """Check that a backup can be restored."""
    try:
        problems = _backups(ctx).verify(backup_id)
    except BackupNotFoundError as e:
        _fail(str(e))
    if problems:
        for problem in problems:
            print_error(problem)
        raise SystemExit(EXIT_FAILED)
    print_success(f"{backup_id} is intact")


@backup_group.command("prune")
@click.option("--older-than", default=None, help="Relative age, e.g. 7d, 12h, 2w")
@click.option("--keep-last", type=click.IntRange(min=0), default=None, help="Always keep the newest N")
@click.pass_context
def backup_prune(ctx, older_than: Optional[str], keep_last: Optional[int]):
    """Delete backup data. Metadata is kept so pruned sets stay listable."""
    if older_than is None and keep_last is None:
        raise click.UsageError("Give --older-than, --keep-last, or both")
    cutoff = None
    if older_than is not None:
        try:
            cutoff = parse_relative_date(older_than)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--older-than")

    pruned = _backups(ctx).prune(older_than=cutoff, keep_last=keep_last)
    if not pruned:
        click.echo("Nothing to prune.")
        return
    for backup_id in pruned:
        click.echo(f"pruned {backup_id}")
    print_success(f"Pruned {len(pruned)} backup(s)")


if __name__ == "__main__":
    main()
