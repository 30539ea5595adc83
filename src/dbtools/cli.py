#!/usr/bin/env python3
"""Command Line Interface for dbtools"""

import signal
import sys
from pathlib import Path
from typing import Any, cast

import click
from rich.console import Console
from rich.table import Table

from .core.backup_engine import BackupEngine
from .core.config_manager import ConfigManager
from .core.exceptions import DBToolsError
from .core.pitr import parse_stop_position, parse_stop_time
from .core.restore_engine import RestoreEngine
from .utils.health import ERROR, OK, WARNING, HealthChecker
from .utils.lock import InstanceLock
from .utils.logging_config import setup_logging
from .utils.maintenance import MAINTENANCE_MODES, Maintenance, generate_key, write_sample_config
from .utils.notifications import NotificationManager
from .utils.retention_manager import RetentionManager

console = Console()

_STATUS_ICONS = {OK: "[green]✓[/green]", WARNING: "[yellow]⚠[/yellow]", ERROR: "[red]✗[/red]"}

# Lazy-initialized components (created on first access to avoid startup cost)
_components: dict[str, Any] = {}


def _get_config() -> ConfigManager:
    if "config" not in _components:
        options = _components.get("options", {})
        overrides = {"retention": {"dry_run": True}} if options.get("dry_run") else None
        config = ConfigManager(options.get("config_path"), overrides=overrides)
        level = "DEBUG" if options.get("verbose") else config.get_setting("logging.level", "INFO")
        setup_logging(config.backup_dir / "logs", level, bool(config.get_setting("logging.use_syslog", False)))
        _components["config"] = config
    return cast("ConfigManager", _components["config"])


def _get_lock() -> InstanceLock:
    if "lock" not in _components:
        config = _get_config()
        _components["lock"] = InstanceLock(
            config.lock_path,
            use_flock=bool(config.get_setting("lock.use_flock", True)),
            poll_interval=float(config.get_setting("lock.poll_interval", 5)),
        )
    return cast("InstanceLock", _components["lock"])


def _get_notifier() -> NotificationManager:
    if "notifier" not in _components:
        _components["notifier"] = NotificationManager.from_config(_get_config())
    return cast("NotificationManager", _components["notifier"])


def _get_backup_engine() -> BackupEngine:
    if "backup_engine" not in _components:
        _components["backup_engine"] = BackupEngine(_get_config(), notifier=_get_notifier(), lock=_get_lock())
    return cast("BackupEngine", _components["backup_engine"])


def _get_restore_engine() -> RestoreEngine:
    if "restore_engine" not in _components:
        _components["restore_engine"] = RestoreEngine(_get_config(), notifier=_get_notifier(), lock=_get_lock())
    return cast("RestoreEngine", _components["restore_engine"])


def _get_maintenance() -> Maintenance:
    if "maintenance" not in _components:
        _components["maintenance"] = Maintenance(_get_config())
    return cast("Maintenance", _components["maintenance"])


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), envvar="DBTOOLS_CONFIG", help="Settings file")
@click.option("--dry-run", is_flag=True, help="Report what cleanup would delete without deleting")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(config_path, dry_run, verbose):
    """dbtools - MySQL/MariaDB backup, restore and maintenance"""
    _components.clear()
    _components["options"] = {"config_path": config_path, "dry_run": dry_run, "verbose": verbose}


@cli.command()
def init():
    """Check tooling and login, create the backup directory"""
    warnings = _get_maintenance().initialize()
    for warning in warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    console.print("[bold green]✓ Initialization complete[/bold green]")


@cli.command()
@click.argument("backup_type", type=click.Choice(["full", "incremental", "logical"]), default="full")
@click.option("--strict", is_flag=True, help="Exit non-zero when any database failed to back up")
def backup(backup_type, strict):
    """Take a full, incremental or logical-only backup"""
    console.print(f"[bold cyan]Starting {backup_type} backup...[/bold cyan]")
    report = _get_backup_engine().run(backup_type)

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    for result in report.results:
        if result.ok:
            console.print(f"[green]✓[/green] {result.name}: {result.message}")
        else:
            console.print(f"[red]✗[/red] {result.name}: {result.message}")

    console.print()
    console.print(
        f"[bold]{report.kind_label}[/bold]: {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.checksums} checksum(s) in {report.duration:.0f}s"
    )
    if report.cleanup is not None and report.cleanup.count:
        verb = "would be removed" if report.cleanup.dry_run else "removed"
        console.print(f"[dim]Retention: {report.cleanup.count} file(s) {verb}[/dim]")

    if report.failed and (strict or _get_config().get_setting("backup.fail_on_partial", False)):
        sys.exit(1)


@cli.command()
def verify():
    """Verify checksums and decode every backup"""
    report = _get_restore_engine().verify()

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    if report.bad:
        table = Table(title="Bad backups", show_header=True, header_style="bold magenta")
        table.add_column("File", style="cyan")
        table.add_column("Problem", style="red")
        for name, reason in report.bad:
            table.add_row(name, reason)
        console.print(table)

    console.print(f"[bold]Verified {report.checked} file(s): {len(report.ok)} ok, {len(report.bad)} bad[/bold]")
    if not report.passed:
        sys.exit(1)


@cli.command()
@click.argument("target")
@click.argument("new_name", required=False)
@click.option("--until-time", envvar="UNTIL_TIME", help="Replay binlogs until 'YYYY-MM-DD HH:MM:SS'")
@click.option("--end-pos", envvar="END_POS", help="Stop binlog replay at this position")
@click.option("--drop-first", is_flag=True, default=None, help="Drop the target database before restoring")
def restore(target, new_name, until_time, end_pos, drop_first):
    """Restore a database, ALL databases, or a backup file [into NEW_NAME]"""
    stop_time = parse_stop_time(until_time)
    stop_offset = parse_stop_position(end_pos)

    report = _get_restore_engine().restore(
        target, new_name=new_name, stop_time=stop_time, stop_offset=stop_offset, drop_first=drop_first or None
    )

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    if report.moved_datadir is not None:
        console.print(f"[dim]Previous datadir kept at {report.moved_datadir}[/dim]")
    if report.pitr is not None:
        console.print(
            f"PITR: {len(report.pitr.applied)} binlog(s) applied, {len(report.pitr.skipped)} skipped "
            f"({report.pitr.stop_reason})"
        )
    console.print(f"[bold green]✓ Restored ({report.method}): {', '.join(report.restored)}[/bold green]")


@cli.command("list")
def list_backups():
    """List available backups"""
    rows = _get_maintenance().list_artifacts()
    if not rows:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title=f"Backups in {_get_config().backup_dir}", show_header=True, header_style="bold magenta")
    table.add_column("File", style="cyan")
    table.add_column("Date", style="green")
    table.add_column("Size", justify="right")
    for row in rows:
        table.add_row(row["name"], row["date"], _format_size(row["size"]))
    console.print(table)


@cli.command()
def health():
    """Check connection, storage, backup age and tooling"""
    report = HealthChecker(_get_config()).run()

    table = Table(title="DB Tools Health Check", show_header=True, header_style="bold magenta")
    table.add_column("", width=2)
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    for check in report.checks:
        table.add_row(_STATUS_ICONS.get(check.status, "[blue]ℹ[/blue]"), check.name, check.detail)
    console.print(table)

    if report.healthy:
        console.print("[bold green]✓ All health checks passed[/bold green]")
    else:
        console.print(f"[yellow]{report.issues} issue(s) detected[/yellow]")
        sys.exit(1)


@cli.command()
@click.option("--top", "top_n", type=int, help="Number of largest tables to show")
def sizes(top_n):
    """Show database and table sizes"""
    databases, tables = _get_maintenance().sizes(top_n)

    db_table = Table(title="Databases", show_header=True, header_style="bold magenta")
    db_table.add_column("Database", style="cyan")
    db_table.add_column("Size (MB)", justify="right")
    db_table.add_column("Tables", justify="right")
    for row in databases:
        db_table.add_row(row["database"], f"{row['size_mb']:.2f}", str(row["tables"]))
    console.print(db_table)

    top_table = Table(title="Largest tables", show_header=True, header_style="bold magenta")
    top_table.add_column("Table", style="cyan")
    top_table.add_column("Size (MB)", justify="right")
    top_table.add_column("Rows", justify="right")
    for row in tables:
        top_table.add_row(row["table"], f"{row['size_mb']:.2f}", str(row["rows"]))
    console.print(top_table)


@cli.command()
def tune():
    """Run mysqltuner and pt-variable-advisor"""
    report = _get_maintenance().tune()
    for tool, output in report.outputs.items():
        console.print(f"[bold cyan]{tool}[/bold cyan]")
        console.print(output)
    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")


@cli.command()
@click.argument("mode", type=click.Choice(MAINTENANCE_MODES), default="quick")
def maintain(mode):
    """ANALYZE (quick) or ANALYZE + OPTIMIZE (full) every table"""
    report = _get_maintenance().maintain(mode, lock=_get_lock())
    for failure in report.failed:
        console.print(f"[red]✗[/red] {failure}")
    console.print(f"[bold]Maintenance ({mode}): {report.tables} table(s), {len(report.failed)} failure(s)[/bold]")


@cli.command()
@click.argument("days", type=int, required=False)
def cleanup(days):
    """Delete backups older than DAYS (keeps the newest per database)"""
    config = _get_config()
    dry_run = config.dry_run
    lock = _get_lock()
    lock.acquire(timeout=float(config.get_setting("lock.timeout", 300)))
    try:
        report = RetentionManager.from_config(config, days).cleanup(dry_run=dry_run)
    finally:
        lock.release()

    for name in report.planned if dry_run else report.deleted:
        console.print(f"[dim]{'Would delete' if dry_run else 'Deleted'}: {name}[/dim]")
    for error in report.errors:
        console.print(f"[red]✗[/red] {error}")
    space_mb = report.plan.space_to_recover / (1024 * 1024)
    verb = "would be removed" if dry_run else "removed"
    console.print(f"[bold]Cleanup: {report.count} file(s) {verb} ({space_mb:.1f} MB)[/bold]")


@cli.command("config")
@click.argument("path", type=click.Path(dir_okay=False), required=False)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def generate_config(path, force):
    """Write a sample settings file"""
    options = _components.get("options", {})
    target = Path(path or options.get("config_path") or "settings.yaml")
    write_sample_config(target, overwrite=force)
    console.print(f"[green]✓[/green] Config file created: {target}")


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False), required=False)
@click.option("--force", is_flag=True, help="Overwrite an existing key")
def genkey(path, force):
    """Generate an encryption key file (mode 0600)"""
    key_file = Path(path) if path else _get_config().key_file
    if key_file is None:
        raise click.UsageError("No key file given and encryption.key_file is not set")
    generate_key(key_file, overwrite=force)
    console.print(f"[green]✓[/green] Encryption key created: {key_file}")
    console.print("[yellow]⚠ Back up this key file securely; encrypted backups cannot be restored without it.[/yellow]")


def _exit_on_signal(signum, frame):
    raise SystemExit(128 + signum)


def main():
    # Turn termination signals into SystemExit so locks and temp files are released
    signal.signal(signal.SIGTERM, _exit_on_signal)
    signal.signal(signal.SIGHUP, _exit_on_signal)
    try:
        cli()
    except DBToolsError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
