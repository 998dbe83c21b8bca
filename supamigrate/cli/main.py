"""
Main CLI entry point for Supamigrate.

A thin click command surface over the orchestrator. Every command that
runs an operation prints a rich report and exits with the outcome's code:
0 for success, 1 for completed with errors, 2 for aborted.
"""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from supamigrate import __version__
from supamigrate.core.exceptions import ConfigurationError, SupamigrateError
from supamigrate.models.config import SupamigrateConfig, config_summary, generate_sample_config
from supamigrate.models.session import MigrationOutcome, MigrationScope, MigrationStatus, PhaseStatus
from supamigrate.orchestrator.orchestrator import MigrationOrchestrator
from supamigrate.transfer.progress import TransferProgress
from supamigrate.utils.helpers import backup_timestamp, format_bytes, format_duration
from supamigrate.utils.logging import setup_logging

console = Console()

T = TypeVar("T")

EXIT_ABORTED = 2

STATUS_STYLES = {
    PhaseStatus.SUCCEEDED: "green",
    PhaseStatus.SUCCEEDED_WITH_WARNINGS: "yellow",
    PhaseStatus.FAILED: "red",
    PhaseStatus.SKIPPED: "dim",
    PhaseStatus.PENDING: "dim",
}

OUTCOME_STYLES = {
    MigrationStatus.SUCCESS: "bold green",
    MigrationStatus.COMPLETED_WITH_ERRORS: "bold yellow",
    MigrationStatus.ABORTED: "bold red",
}


class TransferProgressDisplay:
    """Rich progress bar fed by the transfer engine's progress snapshots."""

    def __init__(self, enabled: bool = True):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
            disable=not enabled,
        )
        self._task_id = None

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.progress.stop()

    def update(self, snapshot: TransferProgress) -> None:
        if self._task_id is None:
            self._task_id = self.progress.add_task("Objects", total=None)
        self.progress.update(
            self._task_id,
            total=snapshot.objects_total or None,
            completed=snapshot.objects_done,
            description=f"Objects ({format_bytes(snapshot.bytes_transferred)})",
        )


def _load_config(ctx: click.Context) -> SupamigrateConfig:
    try:
        return SupamigrateConfig.load(ctx.obj.get("config_path"))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        sys.exit(EXIT_ABORTED)


def _run(orchestrator: MigrationOrchestrator, operation: Callable[[], Awaitable[T]]) -> T:
    """Run an async operation; Ctrl-C requests a cooperative cancel."""

    async def runner() -> T:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
            installed = True
        except (NotImplementedError, RuntimeError):
            # no signal handlers on this platform or thread
            installed = False
        try:
            return await operation()
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(runner())


def _orchestrator(config: SupamigrateConfig, progress: TransferProgressDisplay, dry_run: bool = False):
    return MigrationOrchestrator(config=config, progress_callback=progress.update, dry_run=dry_run)


def _confirm(message: str, yes: bool, dry_run: bool = False) -> None:
    if yes or dry_run:
        return
    if not click.confirm(message, default=False):
        console.print("[yellow]Cancelled[/yellow]")
        sys.exit(EXIT_ABORTED)


def render_outcome(outcome: MigrationOutcome, output: Console = console) -> None:
    """Print the phase table and itemize every failure."""
    table = Table(
        title=f"{outcome.operation.capitalize()} report",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
        title_style="bold blue"
    )
    table.add_column("Phase", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Duration", justify="right")
    table.add_column("Summary", style="dim")

    for phase in outcome.phases:
        style = STATUS_STYLES.get(phase.status, "white")
        duration = format_duration(phase.duration) if phase.duration is not None else "-"
        summary = escape(phase.summary)
        if phase.error_message and phase.error_message != phase.summary:
            error = f"[red]{escape(phase.error_message)}[/red]"
            summary = f"{summary}\n{error}" if summary else error
        table.add_row(phase.phase.value, f"[{style}]{phase.status.value}[/{style}]", duration, summary)
    output.print(table)

    for phase in outcome.phases:
        if not phase.failures:
            continue
        failures = Table(
            title=f"{phase.phase.value}: {len(phase.failures)} failures",
            box=box.SIMPLE,
            header_style="bold red"
        )
        failures.add_column("Item", style="cyan")
        failures.add_column("Kind", style="yellow", no_wrap=True)
        failures.add_column("Error")
        for failure in phase.failures:
            failures.add_row(escape(failure.item), failure.kind, escape(failure.message))
        output.print(failures)

    style = OUTCOME_STYLES[outcome.status]
    lines = [f"[{style}]{outcome.status.value.replace('_', ' ')}[/{style}]"]
    if outcome.artifact_path:
        lines.append(f"Backup written to [bold]{outcome.artifact_path}[/bold]")
    output.print(Panel.fit("\n".join(lines), title="Result", border_style=style.split()[-1]))


def _finish(outcome: MigrationOutcome, output_format: str) -> None:
    if output_format == "json":
        console.print_json(outcome.model_dump_json())
    elif outcome.plan:
        console.print(Panel.fit("Dry run: nothing was changed", border_style="blue"))
        console.print_json(json.dumps(outcome.plan, default=str))
    else:
        render_outcome(outcome)
    sys.exit(outcome.exit_code)


def _scope(
    schema_only: bool,
    data_only: bool,
    include_storage: bool,
    include_functions: bool,
    exclude_schemas: Sequence[str] = (),
    exclude_tables: Sequence[str] = (),
    buckets: Sequence[str] = (),
    functions: Sequence[str] = ()
) -> MigrationScope:
    try:
        return MigrationScope.from_flags(
            schema_only=schema_only,
            data_only=data_only,
            include_storage=include_storage,
            include_functions=include_functions,
            excluded_schemas=_split(exclude_schemas),
            excluded_tables=_split(exclude_tables),
            bucket_filter=_split(buckets) or None,
            function_filter=_split(functions) or None,
        )
    except ValueError as e:
        raise click.UsageError(str(e))


def _split(values: Sequence[str]) -> list:
    """Accept repeated options as well as comma-separated lists."""
    return [part.strip() for value in values for part in value.split(",") if part.strip()]


format_option = click.option(
    '--format', '-f', 'output_format', type=click.Choice(['table', 'json']),
    default='table', help='Report format'
)
progress_option = click.option('--no-progress', is_flag=True, help='Hide the transfer progress bar')


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--config', '-c', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              envvar='SUPAMIGRATE_CONFIG', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--log-file', type=click.Path(dir_okay=False), help='Also write logs to this file')
@click.option('--json-logs', is_flag=True, help='Emit structured JSON log lines')
@click.pass_context
def main(
    ctx: click.Context,
    version: bool,
    config_path: Optional[Path],
    verbose: bool,
    log_file: Optional[str],
    json_logs: bool
):
    """
    Supamigrate

    Move the database, storage buckets and edge functions of a Supabase
    project to another project, or into and out of a backup archive.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['config_path'] = config_path

    if version:
        console.print(f"supamigrate version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    setup_logging(
        level="DEBUG" if verbose else "INFO",
        log_file=log_file,
        structured_logging=json_logs,
    )


@main.command()
@click.option('--from', 'source', required=True, envvar='SUPAMIGRATE_SOURCE', help='Source project alias or reference')
@click.option('--to', 'target', required=True, envvar='SUPAMIGRATE_TARGET', help='Target project alias or reference')
@click.option('--include-storage', is_flag=True, help='Copy storage buckets')
@click.option('--include-functions', is_flag=True, help='Copy edge functions')
@click.option('--schema-only', is_flag=True, help='Schema only (no data)')
@click.option('--data-only', is_flag=True, help='Data only (no schema)')
@click.option('--exclude-schemas', multiple=True, help='Schemas to exclude (comma-separated or repeated)')
@click.option('--exclude-tables', multiple=True, help='Tables to exclude (comma-separated or repeated)')
@click.option('--bucket', 'buckets', multiple=True, help='Bucket name or pattern to copy (all if omitted)')
@click.option('--function', 'functions', multiple=True, help='Function slug or pattern to copy (all if omitted)')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@format_option
@progress_option
@click.pass_context
def migrate(
    ctx: click.Context,
    source: str,
    target: str,
    include_storage: bool,
    include_functions: bool,
    schema_only: bool,
    data_only: bool,
    exclude_schemas: Sequence[str],
    exclude_tables: Sequence[str],
    buckets: Sequence[str],
    functions: Sequence[str],
    dry_run: bool,
    yes: bool,
    output_format: str,
    no_progress: bool
):
    """Migrate between two Supabase projects."""
    scope = _scope(
        schema_only, data_only, include_storage, include_functions,
        exclude_schemas, exclude_tables, buckets, functions
    )
    config = _load_config(ctx)
    _confirm(f"Migrate {source} into {target}? Existing objects on the target will be replaced", yes, dry_run)

    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_migration(source, target, scope))
    _finish(outcome, output_format)


@main.command()
@click.option('--project', required=True, envvar='SUPAMIGRATE_PROJECT', help='Project alias or reference to back up')
@click.option('--output', '-o', type=click.Path(file_okay=False, path_type=Path),
              help='Backup directory (default: ./backup/<project>_<timestamp>)')
@click.option('--include-storage', is_flag=True, help='Include storage objects')
@click.option('--no-functions', is_flag=True, help='Leave edge functions out of the backup')
@click.option('--schema-only', is_flag=True, help='Schema only (no data)')
@click.option('--exclude-schemas', multiple=True, help='Schemas to exclude (comma-separated or repeated)')
@click.option('--exclude-tables', multiple=True, help='Tables to exclude (comma-separated or repeated)')
@click.option('--bucket', 'buckets', multiple=True, help='Bucket name or pattern to include')
@click.option('--compress/--no-compress', default=None, help='gzip the dump and pack buckets (config default)')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@format_option
@progress_option
@click.pass_context
def backup(
    ctx: click.Context,
    project: str,
    output: Optional[Path],
    include_storage: bool,
    no_functions: bool,
    schema_only: bool,
    exclude_schemas: Sequence[str],
    exclude_tables: Sequence[str],
    buckets: Sequence[str],
    compress: Optional[bool],
    dry_run: bool,
    output_format: str,
    no_progress: bool
):
    """Back up a Supabase project into an archive directory."""
    scope = _scope(
        schema_only, False, include_storage, not no_functions,
        exclude_schemas, exclude_tables, buckets
    )
    config = _load_config(ctx)
    if output is None:
        output = Path("backup") / f"{project}_{backup_timestamp()}"

    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_backup(project, output, scope, compress))
    _finish(outcome, output_format)


@main.command()
@click.option('--from', 'archive', required=True, type=click.Path(path_type=Path), help='Backup directory')
@click.option('--to', 'target', required=True, envvar='SUPAMIGRATE_TARGET', help='Target project alias or reference')
@click.option('--include-storage', is_flag=True, help='Restore storage objects')
@click.option('--include-functions', is_flag=True, help='Restore edge functions')
@click.option('--bucket', 'buckets', multiple=True, help='Bucket name or pattern to restore')
@click.option('--function', 'functions', multiple=True, help='Function slug or pattern to restore')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@format_option
@progress_option
@click.pass_context
def restore(
    ctx: click.Context,
    archive: Path,
    target: str,
    include_storage: bool,
    include_functions: bool,
    buckets: Sequence[str],
    functions: Sequence[str],
    dry_run: bool,
    yes: bool,
    output_format: str,
    no_progress: bool
):
    """Restore a backup archive into a project."""
    scope = _scope(False, False, include_storage, include_functions, buckets=buckets, functions=functions)
    config = _load_config(ctx)
    _confirm(f"Restore {archive} into {target}? Existing data on the target will be replaced", yes, dry_run)

    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_restore(archive, target, scope))
    _finish(outcome, output_format)


@main.group()
def storage():
    """Storage-only operations."""


@storage.command('list')
@click.option('--project', required=True, help='Project alias or reference')
@click.pass_context
def storage_list(ctx: click.Context, project: str):
    """List buckets in a project."""
    config = _load_config(ctx)
    orchestrator = MigrationOrchestrator(config=config)
    try:
        buckets = _run(orchestrator, lambda: orchestrator.list_buckets(project))
    except SupamigrateError as e:
        console.print(f"[red]Error listing buckets: {escape(str(e))}[/red]")
        sys.exit(EXIT_ABORTED)

    if not buckets:
        console.print("[yellow]No buckets found[/yellow]")
        return
    table = Table(title=f"Buckets of {project}", box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Bucket", style="cyan", no_wrap=True)
    table.add_column("Public", justify="center")
    for bucket in buckets:
        table.add_row(bucket.name, "yes" if bucket.public else "no")
    console.print(table)


@storage.command('sync')
@click.option('--from', 'source', required=True, help='Source project')
@click.option('--to', 'target', required=True, help='Target project')
@click.option('--bucket', 'buckets', multiple=True, help='Bucket name or pattern to sync (all if omitted)')
@click.option('--parallel', type=click.IntRange(1, 64), help='Number of parallel transfers')
@click.option('--skip-existing', is_flag=True, help='Skip objects already present with the same size')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@format_option
@progress_option
@click.pass_context
def storage_sync(
    ctx: click.Context,
    source: str,
    target: str,
    buckets: Sequence[str],
    parallel: Optional[int],
    skip_existing: Optional[bool],
    dry_run: bool,
    output_format: str,
    no_progress: bool
):
    """Sync storage between projects."""
    config = _with_transfer_overrides(_load_config(ctx), parallel, skip_existing)
    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_storage_sync(source, target, _split(buckets) or None))
    _finish(outcome, output_format)


@storage.command('download')
@click.option('--project', required=True, help='Project alias or reference')
@click.option('--output', '-o', type=click.Path(file_okay=False, path_type=Path),
              default=Path("storage-backup"), show_default=True, help='Output directory')
@click.option('--bucket', 'buckets', multiple=True, help='Bucket name or pattern (all if omitted)')
@click.option('--parallel', type=click.IntRange(1, 64), help='Number of parallel transfers')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@format_option
@progress_option
@click.pass_context
def storage_download(
    ctx: click.Context,
    project: str,
    output: Path,
    buckets: Sequence[str],
    parallel: Optional[int],
    dry_run: bool,
    output_format: str,
    no_progress: bool
):
    """Download storage to a local directory."""
    config = _with_transfer_overrides(_load_config(ctx), parallel, None)
    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_storage_download(project, output, _split(buckets) or None))
    _finish(outcome, output_format)


@storage.command('upload')
@click.option('--from', 'directory', required=True, type=click.Path(file_okay=False, path_type=Path),
              help='Source directory')
@click.option('--to', 'target', required=True, help='Target project')
@click.option('--bucket', help='Upload the directory into this one bucket; otherwise each sub-directory is a bucket')
@click.option('--parallel', type=click.IntRange(1, 64), help='Number of parallel transfers')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@format_option
@progress_option
@click.pass_context
def storage_upload(
    ctx: click.Context,
    directory: Path,
    target: str,
    bucket: Optional[str],
    parallel: Optional[int],
    dry_run: bool,
    output_format: str,
    no_progress: bool
):
    """Upload a local directory to storage."""
    config = _with_transfer_overrides(_load_config(ctx), parallel, None)
    with TransferProgressDisplay(enabled=not no_progress and output_format == 'table') as progress:
        orchestrator = _orchestrator(config, progress, dry_run)
        outcome = _run(orchestrator, lambda: orchestrator.run_storage_upload(directory, target, into_bucket=bucket))
    _finish(outcome, output_format)


def _with_transfer_overrides(
    config: SupamigrateConfig,
    parallel: Optional[int],
    skip_existing: Optional[bool]
) -> SupamigrateConfig:
    updates = {}
    if parallel is not None:
        updates["parallel_transfers"] = parallel
    if skip_existing:
        updates["skip_existing"] = True
    if updates:
        config.defaults = config.defaults.model_copy(update=updates)
    return config


@main.command()
@click.option('--project', 'projects', multiple=True, help='Only check these projects')
@click.pass_context
def doctor(ctx: click.Context, projects: Sequence[str]):
    """Check external tools and project credentials."""
    config = _load_config(ctx)
    checks = MigrationOrchestrator(config=config).diagnose(projects or None)

    table = Table(title="Environment check", box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Detail", style="dim")
    for check in checks:
        table.add_row(check.name, "[green]ok[/green]" if check.ok else "[red]missing[/red]", check.detail)
    console.print(table)

    if not all(check.ok for check in checks):
        sys.exit(1)


@main.group('config')
def config_group():
    """Manage configuration."""


@config_group.command('init')
@click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path),
              default=Path("supamigrate.toml"), show_default=True, help='Output path')
@click.option('--force', is_flag=True, help='Overwrite an existing file')
def config_init(output: Path, force: bool):
    """Write a sample configuration file."""
    if output.exists() and not force:
        console.print(f"[red]{output} already exists; use --force to overwrite[/red]")
        sys.exit(1)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(generate_sample_config(), encoding="utf-8")
    console.print(f"[green]Configuration written to {output}[/green]")
    console.print("[dim]Fill in project references and credentials, then run: supamigrate doctor[/dim]")


@config_group.command('show')
@click.pass_context
def config_show(ctx: click.Context):
    """Show the loaded configuration without credential values."""
    config = _load_config(ctx)
    console.print_json(json.dumps(config_summary(config)))


@config_group.command('list')
@click.pass_context
def config_list(ctx: click.Context):
    """List configured projects."""
    config = _load_config(ctx)
    if not config.projects:
        console.print("[yellow]No projects configured[/yellow]")
        return
    table = Table(title="Configured projects", box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Alias", style="cyan", no_wrap=True)
    table.add_column("Project ref", style="green")
    table.add_column("Database", justify="center")
    table.add_column("Storage", justify="center")
    table.add_column("Functions", justify="center")
    for alias, info in config_summary(config)["projects"].items():
        table.add_row(
            alias,
            info["project_ref"],
            *("yes" if info[k] else "-" for k in ("database", "storage", "functions"))
        )
    console.print(table)


if __name__ == '__main__':
    main()
