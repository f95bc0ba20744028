"""Command-line interface for tasksync."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import ConfigModel, get_config, load_config
from .services import SyncServices, build_services
from .sync.errors import ErrorKind, TaskNotFoundError
from .sync.sync_models import CycleResult
from .task import Task, SyncStatus


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

console = Console()

STATUS_STYLES = {
    SyncStatus.PENDING: "yellow",
    SyncStatus.SYNCED: "green",
    SyncStatus.ERROR: "red",
}


def get_services(ctx: click.Context) -> SyncServices:
    """Build the service graph once per invocation."""
    if "services" not in ctx.obj:
        ctx.obj["services"] = build_services(ctx.obj["config"])
    return ctx.obj["services"]


def format_status(task: Task) -> str:
    style = STATUS_STYLES.get(task.sync_status, "white")
    return f"[{style}]{task.sync_status.value}[/{style}]"


def print_cycle_result(result: CycleResult):
    """Print a human-readable cycle summary."""
    color = "green" if result.success else "yellow"
    lines = [
        f"Synced: [green]{result.synced_items}[/green]",
        f"Failed: [red]{result.failed_items}[/red]",
        f"Conflicts resolved: {result.conflicts_resolved}",
        f"Batches: {result.batches}",
        f"Duration: {result.duration_seconds:.2f}s",
    ]
    console.print(Panel("\n".join(lines), title="Sync result", border_style=color))

    if result.errors:
        table = Table(title="Errors", show_header=True, header_style="bold magenta")
        table.add_column("Task")
        table.add_column("Operation")
        table.add_column("Kind")
        table.add_column("Error")
        for record in result.errors:
            table.add_row(record.task_id, record.operation, record.kind.value, record.error)
        console.print(table)


@click.group()
@click.option("--config", type=click.Path(), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Log level (defaults to WARNING for CLI commands)")
@click.version_option(__version__, prog_name="tasksync")
@click.pass_context
def main(ctx, config, verbose, log_level):
    """tasksync - local-first tasks with server sync."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose

    level = "DEBUG" if verbose else (log_level or "WARNING")
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)

    if config:
        ctx.obj['config'] = load_config(Path(config))
    else:
        ctx.obj['config'] = get_config()


# ----------------------------------------------------------------------
# Task commands
# ----------------------------------------------------------------------

@main.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.pass_context
def add(ctx, title, description):
    """Add a new task."""
    services = get_services(ctx)
    try:
        task = asyncio.run(services.tasks.create_task(title, description))
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✅ Added task {task.id}[/green]")


@main.command(name="list")
@click.option("--pending", is_flag=True, help="Only show tasks waiting for sync")
@click.pass_context
def list_tasks(ctx, pending):
    """List tasks."""
    services = get_services(ctx)
    if pending:
        tasks = asyncio.run(services.tasks.get_tasks_needing_sync())
    else:
        tasks = asyncio.run(services.tasks.get_all_tasks())

    if not tasks:
        console.print("[dim]No tasks[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Done")
    table.add_column("Sync")
    for task in tasks:
        table.add_row(task.id[:8], task.title, "✓" if task.completed else "", format_status(task))
    console.print(table)


@main.command()
@click.argument("task_id")
@click.pass_context
def show(ctx, task_id):
    """Show a task."""
    services = get_services(ctx)
    task = asyncio.run(services.tasks.get_task(task_id))
    if task is None:
        console.print(f"[red]Task not found: {task_id}[/red]")
        sys.exit(1)

    body = [
        f"[bold]{task.title}[/bold]",
        task.description or "[dim]No description[/dim]",
        "",
        f"Completed: {'yes' if task.completed else 'no'}",
        f"Sync status: {format_status(task)}",
        f"Server ID: {task.server_id or '-'}",
        f"Updated: {task.updated_at.isoformat()}",
        f"Last synced: {task.last_synced_at.isoformat() if task.last_synced_at else 'never'}",
    ]
    console.print(Panel("\n".join(body), title=task.id))


@main.command()
@click.argument("task_id")
@click.option("--title", "-t", help="New title")
@click.option("--description", "-d", help="New description")
@click.pass_context
def update(ctx, task_id, title, description):
    """Edit a task's title or description."""
    services = get_services(ctx)
    updates = {"title": title, "description": description}
    try:
        asyncio.run(services.tasks.update_task(task_id, updates))
    except TaskNotFoundError:
        console.print(f"[red]Task not found: {task_id}[/red]")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✅ Updated task {task_id}[/green]")


@main.command()
@click.argument("task_id")
@click.option("--undo", is_flag=True, help="Mark the task as not completed")
@click.pass_context
def complete(ctx, task_id, undo):
    """Mark a task as completed."""
    services = get_services(ctx)
    try:
        asyncio.run(services.tasks.complete_task(task_id, completed=not undo))
    except TaskNotFoundError:
        console.print(f"[red]Task not found: {task_id}[/red]")
        sys.exit(1)
    console.print(f"[green]✅ Task {task_id} marked {'open' if undo else 'completed'}[/green]")


@main.command()
@click.argument("task_id")
@click.pass_context
def delete(ctx, task_id):
    """Delete a task."""
    services = get_services(ctx)
    try:
        asyncio.run(services.tasks.delete_task(task_id))
    except TaskNotFoundError:
        console.print(f"[red]Task not found: {task_id}[/red]")
        sys.exit(1)
    console.print(f"[green]✅ Deleted task {task_id}[/green]")


# ----------------------------------------------------------------------
# Sync commands
# ----------------------------------------------------------------------

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the cycle result as JSON")
@click.pass_context
def sync(ctx, as_json):
    """Push queued changes to the server."""
    services = get_services(ctx)
    result = asyncio.run(services.engine.run_cycle())

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.abort_reason is ErrorKind.OFFLINE:
        console.print(f"[red]❌ Server not reachable at {services.config.api_base_url}[/red]")
        console.print("[dim]Changes stay queued and will be sent on the next sync.[/dim]")
    else:
        print_cycle_result(result)

    if result.abort_reason is not None:
        sys.exit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.pass_context
def status(ctx, as_json):
    """Show sync status."""
    services = get_services(ctx)
    info = asyncio.run(services.status.get_status())

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return

    online = "[green]online[/green]" if info["is_online"] else "[red]offline[/red]"
    table = Table(title="Sync Status", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Server", f"{services.config.api_base_url} ({online})")
    table.add_row("Pending changes", str(info["pending_sync_count"]))
    table.add_row("Queued changes", str(info["sync_queue_size"]))
    table.add_row("Failed changes", str(info["poisoned_count"]))
    table.add_row("Last sync", info["last_sync_timestamp"] or "never")
    console.print(table)


@main.command()
@click.pass_context
def failed(ctx):
    """List queued changes that exceeded the retry limit."""
    services = get_services(ctx)
    items = asyncio.run(services.engine.get_failed_items())

    if not items:
        console.print("[green]No failed changes[/green]")
        return

    table = Table(title=f"Failed changes ({len(items)})", show_header=True, header_style="bold magenta")
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Task", no_wrap=True)
    table.add_column("Operation")
    table.add_column("Retries")
    table.add_column("Last error")
    for item in items:
        table.add_row(item.id[:8], item.task_id[:8], item.operation.value,
                      str(item.retry_count), item.last_error or "")
    console.print(table)


@main.command(name="retry-failed")
@click.argument("item_ids", nargs=-1)
@click.pass_context
def retry_failed(ctx, item_ids):
    """Reset failed changes so the next sync retries them."""
    services = get_services(ctx)
    count = asyncio.run(services.engine.retry_failed_items(list(item_ids) or None))
    console.print(f"[green]Reset {count} failed changes[/green]")


@main.command(name="clear-failed")
@click.argument("item_ids", nargs=-1)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear_failed(ctx, item_ids, yes):
    """Discard failed changes. Their tasks stay in error."""
    if not yes and not click.confirm("Discard failed changes permanently?"):
        console.print("[yellow]Cancelled[/yellow]")
        return
    services = get_services(ctx)
    count = asyncio.run(services.engine.clear_failed_items(list(item_ids) or None))
    console.print(f"[green]Cleared {count} failed changes[/green]")


@main.command()
@click.option("--host", help="Bind address (defaults to config server_host)")
@click.option("--port", type=int, help="Port (defaults to config server_port)")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Run the HTTP API."""
    import uvicorn
    from .api.app import create_app

    config: ConfigModel = ctx.obj["config"]
    app = create_app(services=get_services(ctx))
    uvicorn.run(app, host=host or config.server_host, port=port or config.server_port)


if __name__ == "__main__":
    main()
