"""Typer-powered operator CLI for ``multipb``."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from . import __version__
from .api import create_app
from .backups import (
    BackupError,
    BackupNotFoundError,
    InvalidBackupNameError,
    RestoreError,
    RestorePendingError,
)
from .config import ConfigError, load_config
from .exit_codes import ExitCode
from .instances import ImportArchiveError, InstanceOperationError
from .locking import LockTimeoutError
from .logging import OperationScope
from .ports import PortAllocationError
from .releases import InvalidVersionError, ReleaseError, ReleaseInUseError
from .runtime import Runtime, build_runtime
from .state.manifest import (
    InstanceExistsError,
    InstanceNameError,
    InstanceNotFoundError,
    ManifestError,
)

T = TypeVar("T")

console = Console()

app = typer.Typer(help="Supervise multiple backend-service instances.")
instances_app = typer.Typer(help="Inspect registered instances.")
ports_app = typer.Typer(help="Inspect port allocations.")
backups_app = typer.Typer(help="Create, list, delete, and restore instance backups.")
monitor_app = typer.Typer(help="Run health checks on demand.")
versions_app = typer.Typer(help="Inspect, download, and delete backend releases.")

app.add_typer(instances_app, name="instances")
app.add_typer(ports_app, name="ports")
app.add_typer(backups_app, name="backup")
app.add_typer(monitor_app, name="monitor")
app.add_typer(versions_app, name="versions")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to multipb's YAML config file.",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit machine readable JSON.")

# Error classes mapped to CLI exit codes; the first isinstance match wins.
EXIT_CODES: tuple[tuple[type[BaseException], ExitCode], ...] = (
    (InstanceNameError, ExitCode.VALIDATION),
    (InstanceNotFoundError, ExitCode.VALIDATION),
    (PortAllocationError, ExitCode.VALIDATION),
    (InvalidBackupNameError, ExitCode.VALIDATION),
    (BackupNotFoundError, ExitCode.VALIDATION),
    (InstanceExistsError, ExitCode.VALIDATION),
    (InvalidVersionError, ExitCode.VALIDATION),
    (ImportArchiveError, ExitCode.VALIDATION),
    (ReleaseInUseError, ExitCode.VALIDATION),
    (LockTimeoutError, ExitCode.ENVIRONMENT),
    (RestorePendingError, ExitCode.ENVIRONMENT),
    (RestoreError, ExitCode.PROVIDER),
    (BackupError, ExitCode.PROVIDER),
    (InstanceOperationError, ExitCode.PROVIDER),
    (ReleaseError, ExitCode.PROVIDER),
    (ManifestError, ExitCode.ENVIRONMENT),
)
HANDLED_ERRORS = tuple(error_type for error_type, _code in EXIT_CODES)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> Runtime:
    runtime = ctx.obj
    if isinstance(runtime, Runtime):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> Runtime:
    runtime = ctx.obj
    if isinstance(runtime, Runtime):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _run(runtime: Runtime, factory: Callable[[], Awaitable[T]]) -> T:
    """Run one coroutine on a fresh event loop, then release runtime clients."""

    async def _main() -> T:
        try:
            return await factory()
        finally:
            await runtime.aclose()

    return asyncio.run(_main())


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> int:
    for error_type, code in EXIT_CODES:
        if isinstance(exc, error_type):
            return int(code)
    return int(ExitCode.PROVIDER)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the multipb version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"multipb {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Bind address (default from config)."),
    port: int | None = typer.Option(None, "--port", help="Bind port (default from config)."),
    no_monitor: bool = typer.Option(
        False,
        "--no-monitor",
        help="Serve the API without starting the periodic health monitor.",
    ),
    log_level: str = typer.Option("info", "--log-level", help="uvicorn log level."),
) -> None:
    """Run the control API server."""
    runtime = _get_runtime(ctx)
    bind_host = host or runtime.config.api.host
    bind_port = port or runtime.config.api.port
    console.print(f"multipb API listening on http://{bind_host}:{bind_port}")
    uvicorn.run(
        create_app(runtime, start_monitor=not no_monitor),
        host=bind_host,
        port=bind_port,
        log_level=log_level,
    )


# Instances -------------------------------------------------------------
@instances_app.command("list")
def instances_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances recorded in the manifest."""
    runtime = _get_runtime(ctx)
    manifest = _run(runtime, runtime.manifest.load)
    records = [record.to_api() for record in manifest.values()]

    with runtime.logger.operation(
        "instances list",
        args={"json": json_output},
        target={"kind": "instances"},
    ) as op:
        if json_output:
            console.print_json(data={"instances": records})
            op.success("Reported instances as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Port")
        table.add_column("Status")
        table.add_column("Version")
        table.add_column("Created")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                str(record["name"]),
                str(record["port"]),
                str(record["status"]),
                str(record["version"] or ""),
                str(record["created"] or ""),
            )
        console.print(table)
        op.success("Reported instances.", changed=0)


@instances_app.command("import")
def instances_import(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name for the imported instance."),
    archive: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Export archive produced by another installation.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create instance NAME from ARCHIVE on a newly allocated port."""
    runtime = _get_runtime(ctx)
    try:
        result = _run(runtime, lambda: runtime.instances.import_archive(name, archive))
    except HANDLED_ERRORS as exc:
        console.print(f"[red]Import failed: {exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc
    if json_output:
        console.print_json(data=result)
        return
    console.print(f"[green]Imported instance {result['name']} on port {result['port']}.[/green]")


# Ports -----------------------------------------------------------------
@ports_app.command("list")
def ports_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List allocated instance ports."""
    runtime = _get_runtime(ctx)
    entries = _run(runtime, runtime.manifest.used_ports)
    allocator = runtime.allocator

    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        if json_output:
            console.print_json(
                data={
                    "ports": entries,
                    "range": {"min": allocator.minimum, "max": allocator.maximum},
                }
            )
            op.success("Reported port allocations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("Port")
        if not entries:
            table.add_row("(none)", "")
        for entry in entries:
            table.add_row(str(entry["instance"]), str(entry["port"]))
        console.print(table)
        console.print(f"Reserved range: {allocator.minimum}-{allocator.maximum}")
        op.success("Reported port allocations.", changed=0)


@ports_app.command("check")
def ports_check(
    ctx: typer.Context,
    port: int = typer.Argument(..., help="Port number to check."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether PORT could be assigned to a new instance."""
    runtime = _get_runtime(ctx)
    manifest = _run(runtime, runtime.manifest.load)
    report = runtime.allocator.describe(port, (record.port for record in manifest.values()))

    with runtime.logger.operation(
        "ports check",
        args={"port": port, "json": json_output},
        target={"kind": "ports"},
    ) as op:
        if json_output:
            console.print_json(data=report)
        elif report["available"]:
            console.print(f"[green]Port {port} is available.[/green]")
        elif not report["inRange"]:
            console.print(
                f"[yellow]Port {port} is outside the reserved range "
                f"{runtime.allocator.minimum}-{runtime.allocator.maximum}.[/yellow]"
            )
        else:
            console.print(f"[yellow]Port {port} is already in use.[/yellow]")
        op.success("Reported port availability.", changed=0, context=report)


# Backups ---------------------------------------------------------------
@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance whose backups to list."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List backups for INSTANCE, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"instance": instance},
    ) as op:
        try:
            artifacts = _run(runtime, lambda: runtime.backups.list(instance))
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        payload = [artifact.to_dict() for artifact in artifacts]
        if json_output:
            console.print_json(data={"backups": payload})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Size")
        table.add_column("Created")
        if not payload:
            table.add_row("(none)", "", "")
        for entry in payload:
            table.add_row(str(entry["name"]), str(entry["size"]), str(entry["created"]))
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance to back up."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive the data directory of INSTANCE."""
    runtime = _get_runtime(ctx)
    try:
        artifact = _run(runtime, lambda: runtime.backups.create(instance))
    except HANDLED_ERRORS as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc
    if json_output:
        console.print_json(data={"backup": artifact.to_dict()})
        return
    console.print(f"[green]Created backup {artifact.name} ({artifact.size}).[/green]")


@backups_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance owning the backup."),
    artifact: str = typer.Argument(..., help="Backup file name."),
) -> None:
    """Delete ARTIFACT from the backups of INSTANCE."""
    runtime = _get_runtime(ctx)
    try:
        _run(runtime, lambda: runtime.backups.delete(instance, artifact))
    except HANDLED_ERRORS as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc
    console.print(f"[green]Deleted backup {artifact}.[/green]")


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance to restore."),
    artifact: str = typer.Argument(..., help="Backup file name."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Restore without asking for confirmation.",
    ),
) -> None:
    """Replace the data of INSTANCE with the contents of ARTIFACT."""
    runtime = _get_runtime(ctx)
    if not yes:
        typer.confirm(
            f"Restore {artifact} over the live data of '{instance}'?",
            abort=True,
        )
    try:
        _run(runtime, lambda: runtime.backups.restore(instance, artifact))
    except HANDLED_ERRORS as exc:
        console.print(f"[red]Restore failed: {exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc
    console.print(f"[green]Restored backup '{artifact}' to instance {instance}.[/green]")


@backups_app.command("recover")
def backup_recover(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance with an unfinished restore."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Recover without asking for confirmation.",
    ),
) -> None:
    """Put the data held by an unfinished restore of INSTANCE back in place."""
    runtime = _get_runtime(ctx)
    if not yes:
        typer.confirm(
            f"Move the data held by the last restore of '{instance}' back in place?",
            abort=True,
        )
    try:
        live = _run(runtime, lambda: runtime.backups.recover(instance))
    except HANDLED_ERRORS as exc:
        console.print(f"[red]Recovery failed: {exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc
    console.print(f"[green]Recovered data for {instance} in {live}.[/green]")


@backups_app.command("pending")
def backup_pending(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List restores that were interrupted or could not roll back."""
    runtime = _get_runtime(ctx)
    markers = _run(runtime, runtime.backups.interrupted_restores)
    payload = [marker.to_dict() for marker in markers]
    if json_output:
        console.print_json(data={"pending": payload})
        return
    if not payload:
        console.print("No interrupted restores.")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Artifact")
    table.add_column("Holding directory")
    table.add_column("Started")
    for entry in payload:
        table.add_row(
            str(entry["instance"]),
            str(entry["artifact"]),
            str(entry["holding_dir"]),
            str(entry["started_at"]),
        )
    console.print(table)


# Monitor ---------------------------------------------------------------
@monitor_app.command("tick")
def monitor_tick(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Probe every instance once, record history, and send notifications."""
    runtime = _get_runtime(ctx)
    report = _run(runtime, runtime.monitor.tick)
    if json_output:
        console.print_json(data=report.to_dict())
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Health")
    if not report.healthy and not report.errors:
        table.add_row("(none)", "")
    for name, healthy in report.healthy.items():
        table.add_row(name, "[green]healthy[/green]" if healthy else "[red]unhealthy[/red]")
    for name, message in report.errors.items():
        table.add_row(name, f"[yellow]error: {message}[/yellow]")
    console.print(table)
    for event in report.events:
        console.print(f"{event.severity}: {event.message}")


# Releases --------------------------------------------------------------
def _release_call(runtime: Runtime, factory: Callable[[], Awaitable[T]]) -> T:
    try:
        return _run(runtime, factory)
    except HANDLED_ERRORS as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_exit_code_for(exc)) from exc


def _print_versions(versions: list[str], json_output: bool, empty: str) -> None:
    if json_output:
        console.print_json(data={"versions": versions})
        return
    if not versions:
        console.print(empty)
        return
    for version in versions:
        console.print(version)


@versions_app.command("latest")
def versions_latest(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the newest published release."""
    runtime = _get_runtime(ctx)
    version = _release_call(runtime, runtime.releases.latest)
    if json_output:
        console.print_json(data={"version": version})
        return
    console.print(version)


@versions_app.command("available")
def versions_available(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List releases that can be downloaded."""
    runtime = _get_runtime(ctx)
    versions = _release_call(runtime, runtime.releases.available)
    _print_versions(versions, json_output, "No releases available.")


@versions_app.command("installed")
def versions_installed(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List releases installed on this host."""
    runtime = _get_runtime(ctx)
    versions = _release_call(runtime, runtime.releases.installed)
    _print_versions(versions, json_output, "No releases installed.")


@versions_app.command("download")
def versions_download(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Release tag to download."),
) -> None:
    """Download VERSION so instances can run it."""
    runtime = _get_runtime(ctx)
    release = _release_call(runtime, lambda: runtime.releases.download(version))
    console.print(f"[green]Downloaded release {release}.[/green]")


@versions_app.command("delete")
def versions_delete(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Release tag to delete."),
) -> None:
    """Delete VERSION unless an instance still uses it."""
    runtime = _get_runtime(ctx)
    _release_call(runtime, lambda: runtime.releases.delete(version))
    console.print(f"[green]Deleted release {version}.[/green]")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
