"""Typer-powered command line for ``bedrockctl``.

``bedrockctl run`` performs one update run across every registered server.
The remaining commands inspect the same components without changing server
files: version checks, panel status, snapshots and notification delivery.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import ConfigError, ControlPlaneError, ReleaseLookupError, SnapshotError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import OutcomeKind, RunOptions, RunOutcome
from .notifications import Notifier, build_notifier, send_test
from .orchestrator import ControlPlane, Locator, Orchestrator, OrchestratorSettings
from .projector import FileProjector
from .providers import (
    ArtifactFetcher,
    ControlPlaneClient,
    OfflineControlPlane,
    OfflineReleaseLocator,
    ReleaseLocator,
)
from .snapshots import SnapshotStore
from .state.registry import InstanceRegistry, load_registry

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to bedrockctl's YAML config file.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Show debug logging on the console.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Update orchestrator for Minecraft Bedrock servers managed by Crafty Controller.

        `bedrockctl run` checks for a new release, stops every registered server,
        snapshots it, applies the allow-listed release files, restarts and verifies
        the servers, and rolls back from the snapshots when anything fails.
        """
    ).strip(),
)

instances_app = typer.Typer(help="Inspect registered servers.")
snapshots_app = typer.Typer(help="List, verify, restore and prune snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")
notify_app = typer.Typer(help="Exercise notification delivery.")

app.add_typer(instances_app, name="instances")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(config_app, name="config")
app.add_typer(notify_app, name="notify")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands.

    Providers are built on first use so commands that never talk to the panel
    or the network never construct an HTTP client.
    """

    config: AppConfig
    logger: StructuredLogger
    _registry: InstanceRegistry | None = None
    _control_plane: ControlPlane | None = None
    _locator: Locator | None = None
    _closers: list[Callable[[], None]] = field(default_factory=list)

    def registry(self) -> InstanceRegistry:
        """Return the parsed instance registry (loaded once)."""
        if self._registry is None:
            self._registry = load_registry(self.config.registry_file)
        return self._registry

    def snapshots(self) -> SnapshotStore:
        """Return a snapshot store rooted at the configured backup directory."""
        return SnapshotStore(self.config.backups.root, executable=self.config.server.executable)

    def control_plane(self) -> ControlPlane:
        """Return the panel client, or the offline stand-in."""
        if self._control_plane is None:
            if self.config.offline:
                self._control_plane = OfflineControlPlane()
            else:
                client = ControlPlaneClient(self.config.control_plane)
                self._closers.append(client.close)
                self._control_plane = client
        return self._control_plane

    def locator(self) -> Locator:
        """Return the release locator for the configured mode."""
        if self._locator is None:
            locator = ReleaseLocator(self.config.upstream, self.config.server)
            self._closers.append(locator.close)
            self._locator = OfflineReleaseLocator(locator) if self.config.offline else locator
        return self._locator

    def fetcher(self) -> ArtifactFetcher:
        """Return an artifact fetcher honouring the configured size threshold."""
        fetcher = ArtifactFetcher(
            min_bytes=self.config.upstream.min_artifact_bytes,
            executable=self.config.server.executable,
        )
        self._closers.append(fetcher.close)
        return fetcher

    def notifier(self) -> Notifier:
        """Return the configured notifier."""
        return build_notifier(self.config.email)

    def close(self) -> None:
        """Release HTTP clients created during the command."""
        while self._closers:
            self._closers.pop()()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.CONFIG)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    ctx.call_on_close(runtime.close)
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the bedrockctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"bedrockctl {__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    _configure_logging(verbose)
    _ensure_runtime(ctx, config_file)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.CONFIG),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _require_registry(runtime: RuntimeContext, op: OperationScope) -> InstanceRegistry:
    try:
        return runtime.registry()
    except ConfigError as exc:
        _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.CONFIG))


def _build_orchestrator(runtime: RuntimeContext, registry: InstanceRegistry) -> Orchestrator:
    """Wire an :class:`Orchestrator` from the runtime's providers."""
    config = runtime.config
    return Orchestrator(
        registry.instances,
        registry.policy,
        control_plane=runtime.control_plane(),
        locator=runtime.locator(),
        fetcher=runtime.fetcher(),
        snapshots=runtime.snapshots(),
        projector=FileProjector(executable=config.server.executable),
        notifier=runtime.notifier(),
        settings=OrchestratorSettings.from_config(config),
        logger=runtime.logger,
    )


_OUTCOME_STYLE = {
    OutcomeKind.SUCCESS: "green",
    OutcomeKind.NO_UPDATE_NEEDED: "green",
    OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE: "yellow",
    OutcomeKind.ROLLED_BACK: "yellow",
    OutcomeKind.FAILED: "red",
}


def _render_outcome(outcome: RunOutcome) -> None:
    style = _OUTCOME_STYLE[outcome.kind]
    old = outcome.old_version or "unknown"
    new = outcome.new_version or "unknown"
    if outcome.kind is OutcomeKind.SUCCESS:
        console.print(f"[{style}]Updated {len(outcome.instances)} server(s) from {old} to {new}.[/{style}]")
    elif outcome.kind is OutcomeKind.NO_UPDATE_NEEDED:
        console.print(f"[{style}]No update needed; servers run {old}.[/{style}]")
    elif outcome.kind is OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE:
        console.print(f"[{style}]Dry run[/{style}]: would update from {old} to {new}.")
    elif outcome.kind is OutcomeKind.ROLLED_BACK:
        console.print(f"[{style}]Rolled back after failure in {outcome.phase.value}:[/{style}] {outcome.reason}")
    else:
        console.print(f"[{style}]Failed in {outcome.phase.value}:[/{style}] {outcome.reason}")
    if outcome.is_severe:
        console.print(
            "[bold red]Rollback did not complete "
            f"({outcome.rollback.value}). Manual intervention is required.[/bold red]"
        )
    for warning in outcome.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command()
def run(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Check for an update and stop before changing anything.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Update even when the installed version is current.",
    ),
    skip_backup: bool = typer.Option(
        False,
        "--skip-backup",
        help="Do not snapshot servers first. Rollback becomes unavailable.",
    ),
    verbose: bool = VERBOSE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Update every registered server to the latest release."""
    if verbose:
        _configure_logging(True)
    runtime = _get_runtime(ctx)
    options = RunOptions(dry_run=dry_run, force=force, skip_backup=skip_backup)

    with runtime.logger.operation(
        "run",
        args={"dry_run": dry_run, "force": force, "skip_backup": skip_backup},
        target={"kind": "fleet"},
    ) as op:
        registry = _require_registry(runtime, op)
        if skip_backup:
            console.print(
                "[bold yellow]Backups are skipped. A failed update cannot be rolled back.[/bold yellow]"
            )
        orchestrator = _build_orchestrator(runtime, registry)
        outcome = orchestrator.run(options, scope=op)

        if json_output:
            console.print_json(data=outcome.to_dict())
        else:
            _render_outcome(outcome)

        rc = int(outcome.exit_code)
        context = outcome.to_dict()
        if rc == ExitCode.OK:
            if outcome.warnings:
                op.warning(f"Run finished: {outcome.kind.value}.", warnings=list(outcome.warnings), context=context)
            else:
                op.success(f"Run finished: {outcome.kind.value}.", changed=len(outcome.instances), context=context)
            return
        op.error(outcome.reason or outcome.kind.value, rc=rc, context=context)
        raise typer.Exit(code=rc)


@app.command()
def check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether a newer release is available without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("check", args={"json": json_output}, target={"kind": "release"}) as op:
        registry = _require_registry(runtime, op)
        orchestrator = _build_orchestrator(runtime, registry)
        try:
            result = orchestrator.check_version()
        except ReleaseLookupError as exc:
            _command_error(op, f"Could not check for updates: {exc}", rc=int(ExitCode.DOWNLOAD))

        payload = {
            "current": str(result.current) if result.current_known else None,
            "latest": str(result.release.version),
            "url": result.release.url,
            "update_available": result.update_available,
        }
        if json_output:
            console.print_json(data=payload)
        elif result.update_available:
            current = result.current if result.current_known else "unknown"
            console.print(f"[yellow]Update available:[/yellow] {current} -> {result.release.version}")
        else:
            console.print(f"[green]Up to date[/green] ({result.current}).")
        op.success("Version check complete.", changed=0, context=payload)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show panel state and installed version for every registered server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("status", args={"json": json_output}, target={"kind": "fleet"}) as op:
        registry = _require_registry(runtime, op)
        control_plane = runtime.control_plane()
        locator = runtime.locator()
        rows: list[dict[str, object]] = []
        for instance in registry.instances:
            running = control_plane.is_running(instance)
            reported = control_plane.reported_version(instance)
            installed = locator.current_version(instance, reported)
            rows.append(
                {
                    "name": instance.name,
                    "id": instance.remote_id,
                    "running": running,
                    "version": str(installed) if installed else None,
                    "path": str(instance.directory),
                }
            )

        if json_output:
            console.print_json(data={"servers": rows})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("ID")
            table.add_column("State")
            table.add_column("Version")
            for row in rows:
                state = {True: "[green]running[/green]", False: "stopped"}.get(row["running"], "[yellow]unknown[/yellow]")
                table.add_row(str(row["name"]), str(row["id"]), state, str(row["version"] or "unknown"))
            console.print(table)
        op.success("Reported server status.", changed=0, context={"servers": rows})


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges (secrets redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation("config show", args={"json": json_output}, target={"kind": "config"}) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@instances_app.command("list")
def instances_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered servers with their latest snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        registry = _require_registry(runtime, op)
        store = runtime.snapshots()
        entries: list[dict[str, object]] = []
        for instance in registry.instances:
            entry = instance.to_dict()
            latest = store.latest(instance.name)
            entry["last_snapshot"] = latest.archive_path.name if latest else None
            entries.append(entry)

        if json_output:
            console.print_json(data={"instances": entries, **registry.policy.to_dict()})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("ID")
        table.add_column("Path")
        table.add_column("Last snapshot")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["id"]),
                str(entry["path"]),
                str(entry["last_snapshot"] or ""),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@snapshots_app.command("list")
def snapshots_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(None, "--instance", help="Only list snapshots for this server."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots in the backup directory, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots list",
        args={"instance": instance, "json": json_output},
        target={"kind": "snapshot"},
    ) as op:
        snapshots = runtime.snapshots().list(instance)
        if json_output:
            console.print_json(data={"snapshots": [item.to_dict() for item in snapshots]})
            op.success("Reported snapshots as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Server")
        table.add_column("Created")
        table.add_column("Size")
        if not snapshots:
            table.add_row("(none)", "", "", "")
        for item in snapshots:
            size = item.archive_path.stat().st_size if item.archive_path.exists() else 0
            table.add_row(
                item.archive_path.name,
                item.instance_name,
                item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                _human_size(size),
            )
        console.print(table)
        op.success("Reported snapshots.", changed=0)


@snapshots_app.command("verify")
def snapshots_verify(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Archive filename, or a server name to verify its latest snapshot."),
) -> None:
    """Check a snapshot's checksum and archive structure without extracting it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("snapshots verify", args={"name": name}, target={"kind": "snapshot"}) as op:
        store = runtime.snapshots()
        snapshot = store.find(name) or store.latest(name)
        if snapshot is None:
            _command_error(op, f"No snapshot found for '{name}'.", rc=int(ExitCode.BACKUP))
        if not store.verify(snapshot):
            _command_error(op, f"Snapshot {snapshot.archive_path.name} failed verification.", rc=int(ExitCode.BACKUP))
        console.print(f"[green]Snapshot {snapshot.archive_path.name} is intact.[/green]")
        op.success("Snapshot verified.", changed=0, context=snapshot.to_dict())


@snapshots_app.command("restore")
def snapshots_restore(
    ctx: typer.Context,
    instance_name: str = typer.Argument(..., help="Server to restore."),
    snapshot_name: str | None = typer.Option(
        None,
        "--snapshot",
        help="Archive filename to restore (defaults to the latest for the server).",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Stop a server, restore it from a snapshot and start it again."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots restore",
        args={"instance": instance_name, "snapshot": snapshot_name},
        target={"kind": "instance", "name": instance_name},
    ) as op:
        registry = _require_registry(runtime, op)
        instance = registry.get(instance_name)
        if instance is None:
            _command_error(op, f"Unknown server '{instance_name}'.", rc=int(ExitCode.CONFIG))

        store = runtime.snapshots()
        snapshot = store.find(snapshot_name) if snapshot_name else store.latest(instance_name)
        if snapshot is None or snapshot.instance_name != instance_name:
            _command_error(op, f"No matching snapshot for '{instance_name}'.", rc=int(ExitCode.BACKUP))
        if not store.verify(snapshot):
            _command_error(op, f"Snapshot {snapshot.archive_path.name} failed verification.", rc=int(ExitCode.BACKUP))
        if not yes and not typer.confirm(
            f"Replace {instance.directory} with {snapshot.archive_path.name}?", default=False
        ):
            console.print("Restore cancelled.")
            op.warning("Restore cancelled by operator.", warnings=["cancelled"])
            raise typer.Exit(code=0)

        control_plane = runtime.control_plane()
        timeout = runtime.config.control_plane.server_timeout
        try:
            control_plane.stop(instance, timeout)
            op.add_step("control_plane.stop", status="success", detail=instance.name)
            store.restore(snapshot, instance.directory)
            op.add_step("snapshot.restore", status="success", detail=snapshot.archive_path.name)
            control_plane.start(instance, timeout)
            op.add_step("control_plane.start", status="success", detail=instance.name)
        except ControlPlaneError as exc:
            _command_error(op, f"Control plane error: {exc}", rc=int(ExitCode.START))
        except SnapshotError as exc:
            _command_error(op, f"Restore failed: {exc}", rc=int(ExitCode.BACKUP))

        console.print(f"[green]Restored {instance.name} from {snapshot.archive_path.name}.[/green]")
        op.success("Snapshot restored.", changed=1, backups=[str(snapshot.archive_path)])


@snapshots_app.command("prune")
def snapshots_prune(
    ctx: typer.Context,
    days: int | None = typer.Option(
        None,
        "--days",
        min=1,
        help="Retention window in days (defaults to backups.retention_days).",
    ),
) -> None:
    """Delete snapshots older than the retention window."""
    runtime = _get_runtime(ctx)
    retention = days or runtime.config.backups.retention_days
    with runtime.logger.operation("snapshots prune", args={"days": retention}, target={"kind": "snapshot"}) as op:
        removed = runtime.snapshots().prune_older_than(retention)
        console.print(f"Removed {removed} snapshot(s) older than {retention} day(s).")
        op.success("Pruned snapshots.", changed=removed)


@notify_app.command("test")
def notify_test(ctx: typer.Context) -> None:
    """Send a test notification through the configured channel."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("notify test", target={"kind": "notification"}) as op:
        if not send_test(runtime.notifier()):
            _command_error(op, "Test notification could not be delivered.", rc=int(ExitCode.CONFIG))
        channel = "email" if runtime.config.email.enabled else "log"
        console.print(f"[green]Test notification sent via {channel}.[/green]")
        op.success("Test notification sent.", changed=0, context={"channel": channel})


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def main() -> None:
    """Console script entry point."""
    app()
