"""CLI entry point for stencil."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich import print as rprint
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from stencil import __version__
from stencil.config import StencilConfig, load_config
from stencil.config.loader import CONFIG_FILENAME, DEFAULT_CONFIG_TEMPLATE
from stencil.errors import StencilError, exit_code_for_exception
from stencil.upgrade import UpgradeOrchestrator, UpgradeReport, project_lock

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="stencil",
    help="Keep template-derived project files up to date without losing local edits.",
)

upgrade_app = typer.Typer(help="Check for, apply and undo template upgrades.")
app.add_typer(upgrade_app, name="upgrade")

backup_app = typer.Typer(help="Manage upgrade backups.")
app.add_typer(backup_app, name="backup")

cache_app = typer.Typer(help="Inspect or clear fetched template trees.")
app.add_typer(cache_app, name="cache")

config_app = typer.Typer(help="Manage stencil configuration.")
app.add_typer(config_app, name="config")

# Global state
_config: StencilConfig | None = None
_root: Path = Path(".")
_verbose: bool = False

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
JSON_LOG_FORMAT = (
    '{"time": "%(asctime)s", "level": "%(levelname)s", '
    '"logger": "%(name)s", "message": "%(message)s"}'
)
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _get_config() -> StencilConfig:
    if _config is None:
        return load_config(root=_root)
    return _config


def _orchestrator() -> UpgradeOrchestrator:
    return UpgradeOrchestrator.from_config(_root, _get_config())


def _configure_logging(cfg: StencilConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else _LEVELS[cfg.log_level]
    fmt = JSON_LOG_FORMAT if cfg.log_format == "json" else TEXT_LOG_FORMAT
    logging.basicConfig(level=level, format=fmt, force=True)


def _set_verbose(verbose: bool) -> None:
    global _verbose
    if verbose:
        _verbose = True
        logging.getLogger().setLevel(logging.DEBUG)


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Print stencil and input errors in red and exit with their code."""
    try:
        yield
    except (StencilError, ValueError) as e:
        if _verbose:
            logger.exception("command failed")
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(exit_code_for_exception(e)) from e


def _version_callback(value: bool) -> None:
    if value:
        rprint(f"stencil {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Annotated[
        str | None, typer.Option("--config", "-c", help="Path to stencil.yaml")
    ] = None,
    root: Annotated[
        Path, typer.Option("--root", "-r", help="Project root directory")
    ] = Path("."),
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Debug logging and tracebacks")
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version"),
    ] = None,
) -> None:
    """Global options."""
    global _config, _root, _verbose
    try:
        _config = load_config(config, root)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _root = root
    _verbose = verbose
    _configure_logging(_config, verbose)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _format_age(seconds: float) -> str:
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h"
    return f"{int(seconds // 86400)}d"


def _display_changes(report: UpgradeReport) -> None:
    if not report.changes:
        return
    table = Table(title=f"Files ({len(report.changes)})")
    table.add_column("Path", style="cyan")
    table.add_column("Action")
    table.add_column("Detail", style="dim")
    styles = {"merge": "yellow", "skip": "magenta", "keep_deleted": "magenta", "unchanged": "dim"}
    conflicted = {c.path for c in report.conflicts}
    for change in report.changes:
        style = "red" if change.path in conflicted else styles.get(change.action, "green")
        detail = change.reason
        if change.outcome:
            detail = f"{detail} -> {change.outcome}"
        table.add_row(change.path, f"[{style}]{change.action}[/{style}]", detail)
    rprint(table)


def _display_conflicts(report: UpgradeReport) -> None:
    for conflict in report.conflicts:
        if conflict.binary:
            rprint(f"  [red]✗[/red] {conflict.path} [dim](binary, pick a version by hand)[/dim]")
            continue
        lines = ", ".join(str(c.line + 1) for c in conflict.conflicts)
        suffix = f" [dim](lines {lines})[/dim]" if lines else ""
        rprint(f"  [red]✗[/red] {conflict.path}{suffix}")


def _finish(report: UpgradeReport) -> None:
    """Print the outcome of an apply or resolve and exit with its status."""
    if report.status == "committed":
        rprint(Panel(
            f"[dim]Version:[/dim]  {report.from_version} -> {report.to_version}\n"
            f"[dim]Written:[/dim]  {len(report.written)} file(s)\n"
            f"[dim]Backup:[/dim]   {report.backup or '-'}",
            title="Upgrade Complete",
            border_style="green",
        ))
        rprint("[dim]If something looks wrong: stencil upgrade rollback --yes[/dim]")
        return
    if report.status == "conflicts_pending":
        rprint(f"[yellow]{len(report.conflicts)} file(s) need manual resolution:[/yellow]")
        _display_conflicts(report)
        rprint(
            "[dim]Edit the files, then run 'stencil upgrade resolve'. "
            f"Version stays at {report.from_version} until then.[/dim]"
        )
        raise typer.Exit(2)
    if report.status == "rolled_back":
        rprint(f"[red]Upgrade rolled back:[/red] {report.error}")
        rprint(f"[dim]Restored from backup {report.backup}[/dim]")
        raise typer.Exit(1)
    rprint(f"[green]Already on latest version[/green] ({report.from_version})")


# ---------------------------------------------------------------------------
# Project commands
# ---------------------------------------------------------------------------


@app.command()
def init(
    version: Annotated[
        str | None, typer.Option("--version", help="Template version installed (default: tool version)")
    ] = None,
    force: bool = typer.Option(False, "--force", help="Reinitialize an existing record"),
) -> None:
    """Record the installed template version and track existing managed files."""
    with _handle_errors():
        record, synced = _orchestrator().initialize(version, force=force)
    rprint(
        f"[green]Initialized[/green] at {record.template_version} "
        f"({synced.tracked} file(s) tracked)"
    )


@app.command()
def status() -> None:
    """Show installed version and local customizations."""
    orch = _orchestrator()
    with _handle_errors():
        summary = orch.registry.summary(_get_config().target_version)
        report = orch.tracker.report()

    check = summary.upgrade
    upgrade = (
        f"[yellow]{check.latest} available ({check.change_kind})[/yellow]"
        if check.available
        else "[green]up to date[/green]"
    )
    rprint(Panel(
        f"[dim]Template version:[/dim] {summary.current.template_version}\n"
        f"[dim]Installed:[/dim]        {summary.current.installed_at:%Y-%m-%d %H:%M}\n"
        f"[dim]Last upgrade:[/dim]     "
        f"{summary.current.last_upgrade_at.strftime('%Y-%m-%d %H:%M') if summary.current.last_upgrade_at else 'never'}\n"
        f"[dim]Upgrade:[/dim]          {upgrade}",
        title="stencil",
        border_style="blue",
    ))

    table = Table(title="Components")
    table.add_column("Component", style="cyan")
    table.add_column("Version")
    for name, ver in summary.current.components.items():
        table.add_row(name, ver)
    rprint(table)

    table = Table(title="Customizations")
    table.add_column("Kind", style="cyan")
    table.add_column("Files", justify="right")
    for kind, count in report.summary.items():
        table.add_row(kind.replace("_", " "), str(count))
    rprint(table)

    for rec in report.recommendations:
        color = "yellow" if rec.type == "warning" else "blue"
        rprint(f"[{color}]{rec.type}:[/{color}] {rec.message}")

    pending = orch.pending()
    if pending is not None:
        rprint(
            f"[red]Upgrade to {pending.version} waiting on "
            f"{len(pending.conflicts)} conflict(s).[/red]"
        )


@app.command()
def track(
    paths: Annotated[
        list[str] | None, typer.Argument(help="Files whose current content becomes the baseline")
    ] = None,
) -> None:
    """Track managed files. Without paths, sync tracking for every managed file."""
    orch = _orchestrator()
    with _handle_errors(), project_lock(orch.layout):
        if not paths:
            result = orch.tracker.sync_tracking()
            rprint(f"[green]Tracking synced:[/green] {result.tracked} new, {result.updated} refreshed")
            return
        for path in paths:
            entry = orch.tracker.mark_as_original(path)
            rprint(f"[green]Tracked[/green] {entry.path} [dim]({entry.original_fingerprint[:12]})[/dim]")


@app.command()
def info(path: str = typer.Argument(..., help="Managed file to inspect")) -> None:
    """Show tracking state of one file."""
    with _handle_errors():
        details = _orchestrator().tracker.info(path)
    state = "[yellow]customized[/yellow]" if details.customized else "[green]unmodified[/green]"
    rprint(Panel(
        f"[dim]Tracked:[/dim]   {details.tracked}\n"
        f"[dim]State:[/dim]     {state} ({details.reason})\n"
        f"[dim]Original:[/dim]  {details.original_fingerprint or '-'}\n"
        f"[dim]Current:[/dim]   {details.current_fingerprint or '-'}",
        title=path,
        border_style="blue",
    ))


@app.command()
def preserve(pattern: str = typer.Argument(..., help="Glob of paths that are always user-owned")) -> None:
    """Add a preserve pattern."""
    orch = _orchestrator()
    with _handle_errors(), project_lock(orch.layout):
        added = orch.tracker.add_preserve_pattern(pattern)
    if added:
        rprint(f"[green]Added preserve pattern[/green] {pattern}")
    else:
        rprint(f"[yellow]Already preserved:[/yellow] {pattern}")


# ---------------------------------------------------------------------------
# upgrade
# ---------------------------------------------------------------------------

ComponentOpt = Annotated[
    str | None, typer.Option("--component", help="Limit to one component (rules, templates, workflows, git-hooks)")
]
VersionOpt = Annotated[
    str | None, typer.Option("--version", help="Target version (default: latest available)")
]
VerboseOpt = Annotated[bool, typer.Option("--verbose", help="Debug logging")]


@upgrade_app.command("check")
def upgrade_check(version: VersionOpt = None, verbose: VerboseOpt = False) -> None:
    """Check whether a newer template version is available."""
    _set_verbose(verbose)
    with _handle_errors():
        check = _orchestrator().check_upgrade(version)
    if not check.available:
        rprint(f"[green]Already on latest version[/green] ({check.current})")
        return
    rprint(Panel(
        f"[dim]Current:[/dim] {check.current}\n"
        f"[dim]Latest:[/dim]  {check.latest}\n"
        f"[dim]Change:[/dim]  {check.change_kind}",
        title="Upgrade Available",
        border_style="yellow",
    ))
    rprint("[dim]Run 'stencil upgrade preview' to see details[/dim]")


@upgrade_app.command("preview")
def upgrade_preview(
    version: VersionOpt = None,
    component: ComponentOpt = None,
    force: bool = typer.Option(False, "--force", help="Treat every file as untouched"),
    verbose: VerboseOpt = False,
) -> None:
    """Show what an apply would do, without changing anything."""
    _set_verbose(verbose)
    with _handle_errors():
        report = _orchestrator().preview_upgrade(version, component=component, force=force)
    if report.status == "up_to_date":
        rprint(f"[green]Already on latest version[/green] ({report.from_version})")
        return
    rprint(f"[cyan]Upgrading: {report.from_version} -> {report.to_version}[/cyan]")
    if report.customizations is not None:
        c = report.customizations
        rprint(
            f"  Modified: {len(c.modified)}  User-created: {len(c.user_created)}  "
            f"Preserved: {len(c.preserved)}  Untracked: {len(c.untracked)}"
        )
    _display_changes(report)
    rprint("[dim]Run 'stencil upgrade apply' to proceed[/dim]")


@upgrade_app.command("apply")
def upgrade_apply(
    version: VersionOpt = None,
    component: ComponentOpt = None,
    auto: bool = typer.Option(False, "--auto", help="Auto-merge non-conflicting changes"),
    force: bool = typer.Option(False, "--force", help="Overwrite customized files with upstream"),
    strategy: Annotated[
        str | None, typer.Option("--strategy", help="ours, theirs, merge, manual or auto")
    ] = None,
    verbose: VerboseOpt = False,
) -> None:
    """Back up, fetch, merge and validate the new template version."""
    _set_verbose(verbose)
    if auto and strategy is None:
        strategy = "auto"
    with _handle_errors():
        report = _orchestrator().apply_upgrade(
            version, component=component, force=force, strategy=strategy
        )
    _display_changes(report)
    _finish(report)


@upgrade_app.command("resolve")
def upgrade_resolve(
    paths: Annotated[
        list[str] | None, typer.Argument(help="Resolved files (default: all pending)")
    ] = None,
    verbose: VerboseOpt = False,
) -> None:
    """Accept hand-resolved conflicts and finish the pending upgrade."""
    _set_verbose(verbose)
    with _handle_errors():
        report = _orchestrator().resolve(paths or None)
    _finish(report)


@upgrade_app.command("rollback")
def upgrade_rollback(
    backup: Annotated[
        str | None, typer.Option("--backup", help="Backup name (default: most recent)")
    ] = None,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: VerboseOpt = False,
) -> None:
    """Restore the most recent (or named) backup."""
    _set_verbose(verbose)
    orch = _orchestrator()
    with _handle_errors():
        target = orch.backups.get(backup) if backup else orch.backups.latest()
    if target is None:
        rprint("[yellow]No backups found.[/yellow] Nothing to roll back.")
        raise typer.Exit(1)
    rprint(
        f"[cyan]Backup:[/cyan] {target.name} "
        f"[dim]({target.created_at:%Y-%m-%d %H:%M}, {_format_size(target.size)})[/dim]"
    )
    if not yes and not typer.confirm("Restore this backup?"):
        raise typer.Exit(1)
    with _handle_errors():
        result = orch.rollback_upgrade(target.name)
    rprint(
        f"[green]Rolled back to {result.version}[/green] "
        f"[dim]({len(result.restore.restored_paths)} restored, "
        f"{len(result.restore.removed_paths)} removed)[/dim]"
    )


@upgrade_app.command("history")
def upgrade_history() -> None:
    """Show upgrade and rollback history alongside available backups."""
    with _handle_errors():
        view = _orchestrator().history()
    table = Table(title="Upgrade History")
    table.add_column("When")
    table.add_column("Type", style="cyan")
    table.add_column("Version")
    for entry in reversed(view.upgrades):
        table.add_row(f"{entry.timestamp:%Y-%m-%d %H:%M}", entry.type, entry.version)
    rprint(table)
    _display_backups(view.backups)


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------


def _display_backups(backups) -> None:
    table = Table(title=f"Backups ({len(backups)})")
    table.add_column("Name", style="cyan")
    table.add_column("Created")
    table.add_column("Version")
    table.add_column("Size", justify="right")
    for b in backups:
        table.add_row(
            b.name, f"{b.created_at:%Y-%m-%d %H:%M}", b.tool_version_at_backup, _format_size(b.size)
        )
    rprint(table)


@backup_app.command("create")
def backup_create(
    name: str = typer.Argument("manual", help="Backup name prefix"),
    paths: Annotated[
        list[str] | None, typer.Option("--path", "-p", help="Path to include (repeatable)")
    ] = None,
) -> None:
    """Snapshot managed paths now."""
    orch = _orchestrator()
    with _handle_errors(), project_lock(orch.layout):
        version = orch.registry.current().template_version
        backup = orch.backups.create(name, paths or None, version=version)
    rprint(f"[green]Backup created:[/green] {backup.name} ({_format_size(backup.size)})")


@backup_app.command("list")
def backup_list() -> None:
    """List backups, newest first."""
    _display_backups(_orchestrator().backups.list())


@backup_app.command("verify")
def backup_verify(name: str = typer.Argument(..., help="Backup name")) -> None:
    """Check a backup's archive and metadata."""
    result = _orchestrator().backups.verify(name)
    for label, ok in (
        ("archive exists", result.archive_exists),
        ("archive readable", result.archive_readable),
        ("metadata exists", result.metadata_exists),
        ("metadata valid", result.metadata_valid),
    ):
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        rprint(f"  {mark} {label}")
    if not result.valid:
        raise typer.Exit(1)


@backup_app.command("prune")
def backup_prune(
    keep: Annotated[
        int | None, typer.Option("--keep", help="Backups to keep (default from config)")
    ] = None,
) -> None:
    """Delete all but the most recent backups."""
    orch = _orchestrator()
    with _handle_errors(), project_lock(orch.layout):
        removed = orch.backups.prune(keep if keep is not None else _get_config().backup.keep)
    rprint(f"[green]Pruned {removed} backup(s)[/green]")


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


@cache_app.command("info")
def cache_info() -> None:
    """Show cached template trees."""
    info_ = _orchestrator().fetcher.cache_info()
    if not info_.exists or not info_.entries:
        rprint("[dim]Cache is empty.[/dim]")
        return
    table = Table(title=f"Cache ({_format_size(info_.size)})")
    table.add_column("Entry", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Age", justify="right")
    for entry in info_.entries:
        table.add_row(entry.name, _format_size(entry.size), _format_age(entry.age_seconds))
    rprint(table)


@cache_app.command("clear")
def cache_clear() -> None:
    """Remove every cached template tree."""
    removed = _orchestrator().fetcher.clear_cache()
    rprint(f"[green]Cleared {removed} cache entr{'y' if removed == 1 else 'ies'}[/green]")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show() -> None:
    """Show current resolved configuration."""
    cfg = _get_config()
    rprint(Syntax(yaml.dump(cfg.model_dump(), default_flow_style=False), "yaml"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
) -> None:
    """Create default stencil.yaml in the project root."""
    target = _root / CONFIG_FILENAME
    if target.exists() and not force:
        rprint("[yellow]stencil.yaml already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    target.write_text(DEFAULT_CONFIG_TEMPLATE)
    rprint(f"[green]Created[/green] {target}")
