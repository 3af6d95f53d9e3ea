"""Ferry CLI - migrate and back up backend projects."""

import sys
from dataclasses import replace
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ferry import __version__
from ferry.atomic import atomic_write_bytes
from ferry.backup import BackupService
from ferry.checkpoints import CheckpointStore
from ferry.client import ApiError, RestClient
from ferry.config import (
    FerryConfig,
    ProjectConfig,
    coerce_config_value,
    config_path,
    ensure_directories,
    get_project,
    load_projects,
    logs_dir,
    remove_project,
    save_project,
)
from ferry.errors import FerryException, format_error
from ferry.events import (
    NodeCreated,
    NodeSkipped,
    PayloadTransferred,
    PhaseStarted,
    ProxyDeployed,
    ProxyFallback,
    RunEvent,
)
from ferry.executor import RunHandle, RunResult, RunStatus, TransferExecutor
from ferry.logging import setup_logging
from ferry.plan import CATEGORIES, MigrationPlan, Options, apply_edit, apply_toggle, load_plan, save_plan
from ferry.proxy import ProxyWorker
from ferry.scanner import scan

console = Console()


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _project(name: str) -> ProjectConfig:
    project = get_project(name)
    if project is None:
        _fail(f"Unknown project '{name}'. Add it with: ferry projects add {name}")
    return project


def _connect(name: str, config: FerryConfig):
    project = _project(name)
    return project, RestClient.from_project(project, config)


def _parse_path(path: str) -> tuple[str, ...]:
    parts = tuple(p for p in path.strip("/").split("/") if p)
    if len(parts) not in (2, 3) or parts[0] not in CATEGORIES:
        _fail(f"Invalid node path '{path}'. Use <category>/<id>[/<collection id>], category one of {', '.join(CATEGORIES)}")
    return parts


def _load_plan_file(path: str) -> MigrationPlan:
    result = load_plan(Path(path))
    if not result.ok:
        _fail(format_error(result.error))
    return result.value


def _save_plan_file(plan: MigrationPlan, path: str) -> None:
    result = save_plan(plan, Path(path))
    if not result.ok:
        _fail(format_error(result.error))


def option_flags(fn):
    """Resource type switches shared by scan, migrate and backup create."""
    flags = [
        click.option("--databases/--no-databases", default=True, help="Databases and collections"),
        click.option("--documents/--no-documents", default=True, help="Documents in collections"),
        click.option("--storage/--no-storage", default=True, help="Bucket metadata"),
        click.option("--files/--no-files", default=True, help="File contents"),
        click.option("--functions/--no-functions", default=True, help="Functions and variables"),
        click.option("--code/--no-code", default=True, help="Function deployments"),
        click.option("--users/--no-users", default=True, help="Users"),
        click.option("--teams/--no-teams", default=True, help="Teams and memberships"),
        click.option("--proxy", is_flag=True, help="Move payloads with a cloud proxy worker"),
    ]
    for flag in reversed(flags):
        fn = flag(fn)
    return fn


def _options(databases, documents, storage, files, functions, code, users, teams, proxy) -> Options:
    return Options(
        include_databases=databases,
        include_documents=documents,
        include_storage_metadata=storage,
        include_files=files,
        include_functions=functions,
        include_function_code=code,
        include_users=users,
        include_teams=teams,
        use_cloud_proxy=proxy,
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose):
    """Ferry: migrate and back up backend projects."""
    ensure_directories()
    setup_logging(verbose=verbose, log_file=logs_dir() / "ferry.log")


# ============================================================================
# Projects
# ============================================================================


@main.group()
def projects():
    """Manage registered projects."""
    pass


@projects.command("add")
@click.argument("name")
@click.option("--endpoint", required=True, help="API endpoint, e.g. https://cloud.example.com/v1")
@click.option("--project-id", required=True, help="Remote project id")
@click.option("--api-key", prompt=True, hide_input=True, help="Server API key")
def projects_add(name, endpoint, project_id, api_key):
    """Register a project (credentials are checked on first use)."""
    result = save_project(ProjectConfig(name=name, endpoint=endpoint, project_id=project_id, api_key=api_key))
    if not result.ok:
        _fail(format_error(result.error))
    console.print(f"[green]✓[/green] Saved project: {name}")


@projects.command("list")
def projects_list():
    """List registered projects."""
    registered = load_projects()
    if not registered:
        console.print("[yellow]No projects registered.[/yellow]")
        console.print("Add one with: ferry projects add NAME --endpoint URL --project-id ID")
        return

    table = Table()
    table.add_column("NAME")
    table.add_column("ENDPOINT")
    table.add_column("PROJECT")
    for project in registered.values():
        table.add_row(project.name, project.base_url, project.project_id)
    console.print(table)


@projects.command("rm")
@click.argument("name")
def projects_rm(name):
    """Remove a registered project."""
    result = remove_project(name)
    if not result.ok:
        _fail(format_error(result.error))
    if result.value:
        console.print(f"[green]✓[/green] Removed project: {name}")
    else:
        console.print(f"[yellow]Project '{name}' not found[/yellow]")


# ============================================================================
# Plans
# ============================================================================


def _print_plan(plan: MigrationPlan) -> None:
    table = Table(title=plan.name)
    table.add_column("PATH")
    table.add_column("SOURCE")
    table.add_column("TARGET")
    table.add_column("ON", justify="center")

    for category in CATEGORIES:
        for node in plan.category(category):
            table.add_row(
                f"{category}/{node.source_id}",
                node.source_name,
                f"{node.target_name} ({node.target_id})",
                "✓" if node.enabled else "·",
            )
            for child in node.children:
                table.add_row(
                    f"  {category}/{node.source_id}/{child.source_id}",
                    child.source_name,
                    f"{child.target_name} ({child.target_id})",
                    "✓" if child.enabled else "·",
                )
    console.print(table)
    console.print(f"[dim]{plan.enabled_count()} nodes enabled[/dim]")


@main.command("scan")
@click.argument("source")
@click.option("--out", "out_file", type=click.Path(), help="Save the plan as YAML")
@option_flags
def scan_cmd(source, out_file, **flags):
    """Scan a project and show (or save) its migration plan."""
    config = FerryConfig.load()
    _, client = _connect(source, config)
    try:
        plan = scan(client, _options(**flags), config, name=f"{source}-plan")
    except FerryException as e:
        _fail(format_error(e.error))

    _print_plan(plan)
    if out_file:
        _save_plan_file(plan, out_file)
        console.print(f"[green]✓[/green] Plan saved: {out_file}")


@main.command()
@click.argument("plan_file", type=click.Path(exists=True))
@click.argument("path")
@click.option("--on/--off", "enabled", default=False, help="Enable or disable (default: disable)")
def toggle(plan_file, path, enabled):
    """Enable or disable a node in a saved plan.

    Toggling a database applies to all of its collections.

    Examples:
        ferry toggle plan.yaml databases/main --off
        ferry toggle plan.yaml databases/main/orders --on
    """
    plan = _load_plan_file(plan_file)
    try:
        plan = apply_toggle(plan, _parse_path(path), enabled)
    except KeyError as e:
        _fail(str(e.args[0]) if e.args else str(e))
    _save_plan_file(plan, plan_file)
    console.print(f"[green]✓[/green] {'Enabled' if enabled else 'Disabled'} {path}")


@main.command()
@click.argument("plan_file", type=click.Path(exists=True))
@click.argument("path")
@click.option("--target-id", help="New destination id")
@click.option("--target-name", help="New destination name")
def edit(plan_file, path, target_id, target_name):
    """Change where a node lands on the destination."""
    if target_id is None and target_name is None:
        _fail("Nothing to change: pass --target-id and/or --target-name")
    plan = _load_plan_file(plan_file)
    try:
        plan = apply_edit(plan, _parse_path(path), target_id=target_id, target_name=target_name)
    except KeyError as e:
        _fail(str(e.args[0]) if e.args else str(e))
    _save_plan_file(plan, plan_file)
    console.print(f"[green]✓[/green] Updated {path}")


# ============================================================================
# Runs
# ============================================================================


def _render_event(event: RunEvent) -> None:
    if isinstance(event, PhaseStarted):
        console.print(f"[bold]{event.phase.capitalize()}[/bold]")
    elif isinstance(event, NodeCreated):
        console.print(f"  [green]✓[/green] {event.node_key}")
    elif isinstance(event, NodeSkipped):
        console.print(f"  [dim]- {event.node_key} ({event.reason})[/dim]")
    elif isinstance(event, PayloadTransferred) and event.via == "proxy":
        console.print(f"  [dim]  payload via proxy: {event.node_key}[/dim]")
    elif isinstance(event, ProxyDeployed):
        console.print(f"[cyan]Proxy worker {event.function_id} ready in {event.project}[/cyan]")
    elif isinstance(event, ProxyFallback):
        console.print(f"[yellow]Proxy unavailable ({event.reason}), transferring locally[/yellow]")


def _await(handle: RunHandle) -> RunResult:
    """Wait for a run; the first Ctrl-C requests a stop."""
    try:
        while not handle.done():
            handle.wait(0.5)
    except KeyboardInterrupt:
        console.print("[yellow]Stopping after the current operation...[/yellow]")
        handle.cancel()
        handle.wait()
    return handle.result


def _report(result: RunResult, resume_hint: str | None = None) -> None:
    summary = f"{result.created} created, {result.skipped} skipped"
    if result.status == RunStatus.COMPLETED:
        console.print(f"[green]✓[/green] Completed: {summary}")
        return

    color = "yellow" if result.status == RunStatus.STOPPED else "red"
    console.print(f"[{color}]Run {result.status}[/{color}]: {summary}")
    if result.error is not None:
        console.print(f"[{color}]{format_error(result.error)}[/{color}]")
    if result.resumable and resume_hint:
        console.print(f"[dim]Continue with: {resume_hint}[/dim]")
    sys.exit(1)


@main.command()
@click.argument("source")
@click.argument("destination")
@click.option("--plan", "plan_file", type=click.Path(exists=True), help="Run a saved (edited) plan")
@click.option("--resume/--fresh", default=None, help="Skip or redo work recorded by a previous run")
@option_flags
def migrate(source, destination, plan_file, resume, **flags):
    """Copy resources from SOURCE to DESTINATION.

    Without --plan the source is scanned and everything selected by the
    flags is copied. Press Ctrl-C to stop after the current operation.
    """
    config = FerryConfig.load()
    src_project, src_client = _connect(source, config)
    dst_project, dst_client = _connect(destination, config)

    if plan_file:
        plan = _load_plan_file(plan_file)
        if flags["proxy"]:
            plan = replace(plan, options=replace(plan.options, use_cloud_proxy=True))
    else:
        try:
            plan = scan(src_client, _options(**flags), config, name=f"{source}-to-{destination}")
        except FerryException as e:
            _fail(format_error(e.error))

    proxy = None
    if plan.options.use_cloud_proxy:
        proxy = ProxyWorker(src_project, dst_project, config)

    executor = TransferExecutor(
        src_client,
        dst_client,
        CheckpointStore.default(),
        source_id=source,
        dest_id=destination,
        config=config,
        proxy=proxy,
        on_event=_render_event,
    )

    if resume is None:
        resume = False
        if executor.has_prior_checkpoint():
            resume = click.confirm(
                f"A previous run {source} -> {destination} left a checkpoint. Resume it?", default=True
            )

    console.print(f"[bold]{'Resuming' if resume else 'Migrating'} {source} -> {destination}[/bold]")
    result = _await(executor.execute(plan, resume=resume))
    _report(result, f"ferry migrate {source} {destination} --resume")


# ============================================================================
# Checkpoints
# ============================================================================


@main.group()
def checkpoints():
    """Inspect or reset migration checkpoints."""
    pass


@checkpoints.command("show")
@click.argument("source")
@click.argument("destination")
def checkpoints_show(source, destination):
    """Show what a previous run between two projects completed."""
    entries = CheckpointStore.default().get(source, destination)
    if not entries:
        console.print(f"[yellow]No checkpoint for {source} -> {destination}[/yellow]")
        return

    counts: dict[str, int] = {}
    for key in entries:
        kind = key.split(":", 1)[0]
        counts[kind] = counts.get(kind, 0) + 1

    table = Table(title=f"{source} -> {destination}")
    table.add_column("TYPE")
    table.add_column("COMPLETED", justify="right")
    for kind, count in sorted(counts.items()):
        table.add_row(kind, str(count))
    console.print(table)


@checkpoints.command("clear")
@click.argument("source")
@click.argument("destination")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
def checkpoints_clear(source, destination, force):
    """Forget progress so the next run starts over."""
    store = CheckpointStore.default()
    if not store.has_any(source, destination):
        console.print(f"[yellow]No checkpoint for {source} -> {destination}[/yellow]")
        return
    if not force and not click.confirm(f"Clear checkpoint {source} -> {destination}?"):
        console.print("Cancelled.")
        return
    store.clear(source, destination)
    console.print(f"[green]✓[/green] Cleared checkpoint: {source} -> {destination}")


# ============================================================================
# Backups
# ============================================================================


@main.group()
def backup():
    """Back up and restore a project."""
    pass


@backup.command("create")
@click.argument("project")
@option_flags
def backup_create(project, **flags):
    """Archive PROJECT into its backup bucket."""
    config = FerryConfig.load()
    _, client = _connect(project, config)
    service = BackupService(client, config)
    try:
        ref = service.create_backup(_options(**flags))
    except FerryException as e:
        _fail(format_error(e.error))
    except ApiError as e:
        _fail(f"Backup failed: {e}")
    console.print(f"[green]✓[/green] Backup {ref.name} ({ref.size} bytes) id: {ref.file_id}")


@backup.command("list")
@click.argument("project")
def backup_list(project):
    """List backups stored in PROJECT."""
    config = FerryConfig.load()
    _, client = _connect(project, config)
    try:
        refs = BackupService(client, config).list_backups()
    except ApiError as e:
        _fail(f"Could not list backups: {e}")

    if not refs:
        console.print("[yellow]No backups found.[/yellow]")
        return

    table = Table()
    table.add_column("ID")
    table.add_column("NAME")
    table.add_column("SIZE", justify="right")
    table.add_column("CREATED")
    for ref in refs:
        table.add_row(ref.file_id, ref.name, str(ref.size), ref.created_at[:16].replace("T", " "))
    console.print(table)


@backup.command("download")
@click.argument("project")
@click.argument("file_id")
@click.option("--out", "out_file", type=click.Path(), help="Destination path (default: backup name)")
def backup_download(project, file_id, out_file):
    """Save a backup archive locally."""
    config = FerryConfig.load()
    _, client = _connect(project, config)
    try:
        data = BackupService(client, config).download(file_id)
    except ApiError as e:
        _fail(f"Could not download backup {file_id}: {e}")

    result = atomic_write_bytes(Path(out_file or f"{file_id}.json.gz"), data)
    if not result.ok:
        _fail(format_error(result.error))
    console.print(f"[green]✓[/green] Saved {result.value} ({len(data)} bytes)")


@backup.command("restore")
@click.argument("project")
@click.argument("file_id")
@click.option("--into", "into", help="Restore into another registered project")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def backup_restore(project, file_id, into, yes):
    """Restore backup FILE_ID of PROJECT."""
    config = FerryConfig.load()
    _, client = _connect(project, config)
    destination = _connect(into, config)[1] if into else client
    target = into or project
    if not yes and not click.confirm(f"Restore backup {file_id} into {target}?"):
        console.print("Cancelled.")
        return

    service = BackupService(client, config)
    try:
        handle = service.restore(file_id, destination=destination, on_event=_render_event)
    except FerryException as e:
        _fail(format_error(e.error))
    except ApiError as e:
        _fail(f"Could not read backup {file_id}: {e}")
    _report(_await(handle))


# ============================================================================
# Config
# ============================================================================


@main.group()
def config():
    """Manage tuning configuration (config.yaml)."""
    pass


@config.command("show")
def config_show():
    """Show current configuration."""
    current = FerryConfig.load()
    defaults = FerryConfig()
    console.print(f"[bold]Configuration[/bold] [dim]({config_path()})[/dim]")
    console.print()
    for key, value in current.to_dict().items():
        default = getattr(defaults, key)
        if value != default:
            console.print(f"  {key}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
        else:
            console.print(f"  {key}: {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key, value):
    """Set a configuration value.

    Examples:
        ferry config set max_workers 8
        ferry config set proxy_fallback true
    """
    key = key.replace("-", "_")
    try:
        typed = coerce_config_value(key, value)
    except KeyError:
        _fail(f"Unknown config key: {key}")
    except ValueError:
        _fail(f"Invalid value for {key}: {value}")

    updated = replace(FerryConfig.load(), **{key: typed})
    result = updated.save()
    if not result.ok:
        _fail(format_error(result.error))
    console.print(f"[green]✓[/green] Set {key} = {typed}")
