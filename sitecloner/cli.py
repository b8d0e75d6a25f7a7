"""CLI entry point for site-cloner."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from sitecloner.comparison.cache import ReportCache
from sitecloner.comparison.engine import ComparisonEngine
from sitecloner.errors import SiteClonerError
from sitecloner.models.comparison import ComparisonReport
from sitecloner.models.config import DEFAULT_CONFIG_FILE, ClonerConfig
from sitecloner.models.job import Job, PipelineResult, ProgressEvent
from sitecloner.models.version import Version
from sitecloner.orchestrator import PipelineOrchestrator
from sitecloner.versioning.changelog import generate_changelog, generate_version_changelog
from sitecloner.versioning.version_store import VersionStore

console = Console()

config_option = click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(path: str) -> ClonerConfig:
    try:
        return ClonerConfig.load_or_default(path)
    except ValueError as e:
        console.print(f"[red]Invalid config {path}: {e}[/red]")
        sys.exit(1)


def _abort(error: Exception) -> None:
    console.print(f"[red]{type(error).__name__}: {error}[/red]")
    sys.exit(1)


def _print_progress(event: ProgressEvent) -> None:
    console.print(f"  [cyan]{event.percent:3d}%[/cyan] [bold]{event.phase.value}[/bold] {event.message}")


def _print_result(result: PipelineResult) -> None:
    job = result.job
    if not result.success:
        console.print(f"[red]Job {job.id} failed:[/red] {result.error} ({result.error_type})")
        return
    if result.duplicate:
        console.print(f"[yellow]Job {job.id} was already resumed; nothing re-run[/yellow]")
    if result.paused:
        console.print(f"[yellow]Job {job.id} is awaiting approval[/yellow]")
        console.print(f"  Approve with: [blue]site-cloner approve {job.id}[/blue]")
    else:
        console.print(f"[green]Job {job.id} {job.status.value}[/green] ({job.percent}%)")


async def _with_orchestrator(cfg: ClonerConfig, action):
    orchestrator = PipelineOrchestrator(cfg)
    try:
        return await action(orchestrator)
    finally:
        await orchestrator.aclose()


def _version_table(versions: list[Version], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Version", style="bold")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Accuracy", justify="right")
    table.add_column("Changelog")
    for v in versions:
        marker = " [green]*[/green]" if v.is_active else ""
        accuracy = f"{v.accuracy_score:.2f}%" if v.accuracy_score is not None else "-"
        table.add_row(f"{v.version_number}{marker}", v.id, v.created_at, accuracy, v.changelog or "")
    return table


def _report_table(report: ComparisonReport) -> Table:
    table = Table(title=f"Comparison — {report.website_id} ({report.timestamp})")
    table.add_column("Section", style="bold")
    table.add_column("Type")
    table.add_column("Accuracy", justify="right")
    table.add_column("Mismatched", justify="right")
    for s in report.sections:
        color = "green" if s.accuracy >= 90 else "yellow" if s.accuracy >= 80 else "red"
        table.add_row(s.section_name, s.section_type, f"[{color}]{s.accuracy:.2f}%[/{color}]",
                      f"{s.mismatched_pixels}/{s.total_pixels}")
    return table


def _print_report(report: ComparisonReport) -> None:
    console.print(_report_table(report))
    summary = report.summary
    console.print(
        f"Overall: [bold]{report.overall_accuracy:.2f}%[/bold] — "
        f"{summary.sections_above_90} ≥90%, {summary.sections_above_80} 80–90%, "
        f"{summary.sections_below_80} <80%"
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Clone websites into component libraries and track visual fidelity."""
    setup_logging(verbose)


@cli.command()
@click.option("--url", "-u", required=True, help="Website URL to clone")
@click.option("--website-id", "-w", required=True, help="Website identifier")
@click.option("--no-approval", is_flag=True, help="Run straight through without the approval pause")
@click.option("--skip-cache", is_flag=True, help="Recapture even if a reference capture exists")
@config_option
def run(url: str, website_id: str, no_approval: bool, skip_cache: bool, config: str) -> None:
    """Start a clone job: capture → extract → generate → (approval) → scaffold → version."""
    cfg = _load_config(config)
    try:
        job = Job(website_id=website_id, url=url, require_approval=not no_approval, skip_cache=skip_cache)
    except ValueError as e:
        _abort(e)
    console.print(f"[bold]Starting job {job.id}[/bold] for {url}")
    result = asyncio.run(_with_orchestrator(cfg, lambda o: o.start(job, _print_progress)))
    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@config_option
def approve(job_id: str, config: str) -> None:
    """Resume a job paused at the approval gate."""
    cfg = _load_config(config)
    try:
        result = asyncio.run(_with_orchestrator(cfg, lambda o: o.resume(job_id, _print_progress)))
    except SiteClonerError as e:
        _abort(e)
    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@config_option
def checkpoint(job_id: str, config: str) -> None:
    """Show the resumable checkpoint of a job, if any."""
    cfg = _load_config(config)
    orchestrator = PipelineOrchestrator(cfg)
    try:
        info = orchestrator.get_checkpoint_info(job_id)
    except SiteClonerError as e:
        _abort(e)
    if info is None:
        console.print(f"[yellow]No checkpoint for {job_id}[/yellow]")
        return
    table = Table(title=f"Checkpoint — {job_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Phase", info.phase)
    table.add_row("Saved", info.saved_at)
    table.add_row("Components", str(info.component_count))
    console.print(table)


@cli.command()
@click.argument("job_id")
@config_option
def status(job_id: str, config: str) -> None:
    """Show the last recorded status of a job."""
    cfg = _load_config(config)
    try:
        job = PipelineOrchestrator(cfg).get_job(job_id)
    except SiteClonerError as e:
        _abort(e)
    if job is None:
        console.print(f"[red]Job not found: {job_id}[/red]")
        sys.exit(1)
    console.print(f"{job.id}: [bold]{job.phase.value}[/bold] {job.percent}% ({job.status.value})")
    if job.message:
        console.print(f"  {job.message}")
    if job.error:
        console.print(f"  [red]{job.error}[/red]")


@cli.command()
@click.argument("website_id")
@click.option("--url", "-u", default=None, help="Generated site URL (skips starting the dev server)")
@click.option("--force", is_flag=True, help="Ignore a recent cached report")
@click.option("--no-server", is_flag=True, help="Do not start the dev server; use the configured port")
@config_option
def compare(website_id: str, url: str | None, force: bool, no_server: bool, config: str) -> None:
    """Diff the generated site against the reference capture."""
    cfg = _load_config(config)
    cache = ReportCache(ComparisonEngine(cfg))
    try:
        cached = asyncio.run(cache.get_or_run(
            website_id,
            force_recapture=force,
            generated_site_url=url,
            auto_start_server=not no_server,
        ))
    except SiteClonerError as e:
        _abort(e)
    if cached.from_cache:
        console.print("[yellow]Using cached report (pass --force to recapture)[/yellow]")
    _print_report(cached.report)


@cli.command()
@click.argument("website_id")
@config_option
def report(website_id: str, config: str) -> None:
    """Show the last comparison report for a website."""
    cfg = _load_config(config)
    existing = ComparisonEngine(cfg).get_existing_report(website_id)
    if existing is None:
        console.print(f"[yellow]No comparison report for {website_id}. Run 'site-cloner compare' first.[/yellow]")
        sys.exit(1)
    _print_report(existing)


@cli.command()
@click.option("--websites-dir", default=None, help="Directory holding website folders")
def init(websites_dir: str | None) -> None:
    """Create a default configuration file."""
    config_path = Path(DEFAULT_CONFIG_FILE)
    if config_path.exists():
        if not click.confirm(f"{DEFAULT_CONFIG_FILE} already exists. Overwrite?"):
            return

    cfg = ClonerConfig(websites_dir=websites_dir) if websites_dir else ClonerConfig()
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nYou can now customize this file and run:")
    console.print("  [blue]site-cloner run --url https://example.com --website-id example[/blue]")


@cli.group()
def versions() -> None:
    """Manage immutable version snapshots."""
    pass


def _store(config: str) -> VersionStore:
    cfg = _load_config(config)
    return VersionStore(cfg.websites_path, link_current=cfg.link_current)


@versions.command("list")
@click.argument("website_id")
@config_option
def versions_list(website_id: str, config: str) -> None:
    """List versions of a website, newest first."""
    try:
        found = _store(config).list_versions(website_id)
    except SiteClonerError as e:
        _abort(e)
    if not found:
        console.print(f"[yellow]No versions for {website_id}[/yellow]")
        return
    console.print(_version_table(found, f"Versions — {website_id}"))


@versions.command("show")
@click.argument("version_id")
@config_option
def versions_show(version_id: str, config: str) -> None:
    """Show a version and its files."""
    store = _store(config)
    try:
        version = store.get_version(version_id)
    except SiteClonerError as e:
        _abort(e)
    if version is None:
        console.print(f"[red]Version not found: {version_id}[/red]")
        sys.exit(1)
    console.print(_version_table([version], f"Version {version.version_number}"))
    files = store.get_files_for_version(version_id)
    console.print(f"{len(files)} files, {sum(f.file_size for f in files)} bytes")
    for f in files:
        console.print(f"  {f.file_path} [dim]{f.file_hash[:12]}[/dim]")
    changes = generate_version_changelog(store, version_id)
    if changes is not None:
        console.print(f"[bold]Changes vs parent:[/bold] {changes.summary}")


@versions.command("create")
@click.argument("website_id")
@click.argument("source_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--number", "version_number", default=None, help="Explicit version number (major.minor)")
@click.option("--message", "-m", "changelog", default=None, help="Changelog message")
@click.option("--regeneration", is_flag=True, help="Bump the major version instead of the minor")
@click.option("--activate/--no-activate", default=None, help="Activate the new version")
@config_option
def versions_create(website_id: str, source_dir: str, version_number: str | None, changelog: str | None,
                    regeneration: bool, activate: bool | None, config: str) -> None:
    """Snapshot SOURCE_DIR as a new version of WEBSITE_ID."""
    try:
        result = _store(config).create_new_version(
            website_id=website_id,
            source_dir=source_dir,
            version_number=version_number,
            changelog=changelog,
            set_active=activate,
            change_type="regeneration" if regeneration else "edit",
        )
    except SiteClonerError as e:
        _abort(e)
    v = result.version
    console.print(
        f"[green]Created version {v.version_number}[/green] ({v.id}), "
        f"{result.files_copied} files{' [active]' if v.is_active else ''}"
    )


@versions.command("activate")
@click.argument("version_id")
@click.argument("website_id")
@config_option
def versions_activate(version_id: str, website_id: str, config: str) -> None:
    """Make VERSION_ID the active version of WEBSITE_ID."""
    try:
        version = _store(config).activate_version(version_id, website_id)
    except SiteClonerError as e:
        _abort(e)
    if version is None:
        console.print(f"[red]Version not found: {version_id}[/red]")
        sys.exit(1)
    console.print(f"[green]Activated version {version.version_number}[/green] for {website_id}")


@versions.command("rollback")
@click.argument("version_id")
@click.option("--website-id", "-w", default=None, help="Website (defaults to the version's own)")
@click.option("--message", "-m", "changelog", default=None, help="Changelog message")
@click.option("--dry-run", is_flag=True, help="Only show what the rollback would do")
@config_option
def versions_rollback(version_id: str, website_id: str | None, changelog: str | None,
                      dry_run: bool, config: str) -> None:
    """Roll back by creating a new active version copied from VERSION_ID."""
    store = _store(config)
    try:
        if website_id is None:
            target = store.get_version(version_id)
            if target is None:
                console.print(f"[red]Version not found: {version_id}[/red]")
                sys.exit(1)
            website_id = target.website_id

        if dry_run:
            preview = store.get_rollback_preview(website_id, version_id)
            check = store.can_rollback(website_id, version_id)
            console.print(
                f"Rollback to {preview.target_version.version_number} would create "
                f"version {preview.new_version_number}"
            )
            if not check.can_rollback:
                console.print(f"[yellow]Not possible: {check.reason}[/yellow]")
            if preview.affected_versions:
                console.print(_version_table(preview.affected_versions, "Newer versions (kept)"))
            return

        result = store.rollback_to_version(website_id, version_id, changelog)
    except SiteClonerError as e:
        _abort(e)
    console.print(
        f"[green]Rolled back to {result.target_version.version_number}[/green] as "
        f"version {result.new_version.version_number} ({result.files_copied} files)"
    )


@versions.command("delete")
@click.argument("version_id")
@config_option
def versions_delete(version_id: str, config: str) -> None:
    """Versions cannot be deleted; this always fails."""
    try:
        _store(config).delete_version(version_id)
    except SiteClonerError as e:
        _abort(e)


@versions.command("diff")
@click.argument("from_version_id")
@click.argument("to_version_id")
@config_option
def versions_diff(from_version_id: str, to_version_id: str, config: str) -> None:
    """Show file and token changes between two versions."""
    try:
        changes = generate_changelog(_store(config), from_version_id, to_version_id)
    except SiteClonerError as e:
        _abort(e)
    console.print(f"[bold]{changes.summary}[/bold]")
    if changes.token_changes:
        console.print(f"Token groups changed: {', '.join(changes.token_changes)}")
    colors = {"added": "green", "removed": "red", "modified": "yellow"}
    for change in changes.file_changes:
        color = colors.get(change.change_type, "white")
        console.print(f"  [{color}]{change.change_type:8}[/{color}] {change.file_path}")


if __name__ == "__main__":
    cli()
