"""Command-line interface for todo-sync."""

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .config import Config, ConfigModel, get_config
from .services.notifications import (
    DesktopNotificationSink,
    LogNotificationSink,
    NotificationScheduler,
    QUICK_FILTERS,
    apply_quick_filter,
)
from .storage import STORAGE_MODE_KEY, JsonFileStore, KeyValueStore
from .sync.blob_store import FileBlobStore, HttpBlobStore, RemoteBlobStore
from .sync.models import ConflictDecision, SyncMode, SyncResult, SyncStatus, describe_instant
from .sync.orchestrator import SyncOrchestrator
from .todo import TaskRecord, find_record, new_record, priority_label, touch
from .utils.datetime import now_ms
from .utils.logging import configure_logging


console = Console()

PRIORITY_STYLES = {5: "bold red", 4: "red", 3: "yellow", 2: "blue", 1: "dim"}


def get_store(config: ConfigModel) -> KeyValueStore:
    store = JsonFileStore(config.get_state_path())
    # A fresh state file starts in the configured mode
    if store.get(STORAGE_MODE_KEY) is None:
        store.set(STORAGE_MODE_KEY, config.storage_mode)
    return store


def env_token_provider(env_var: str):
    """Token provider reading a bearer token from the environment."""
    async def provider() -> Optional[str]:
        return os.environ.get(env_var)
    return provider


def get_remote(config: ConfigModel) -> RemoteBlobStore:
    if config.remote_kind == "http":
        return HttpBlobStore(
            token_provider=env_token_provider(config.token_env_var),
            base_url=config.remote_base_url,
            timeout=config.network_timeout_seconds,
        )
    return FileBlobStore(config.remote_path)


def get_orchestrator(config: ConfigModel) -> SyncOrchestrator:
    return SyncOrchestrator(get_remote(config), get_store(config), settings=config.sync_settings())


def _run(coro):
    return asyncio.run(coro)


async def _with_orchestrator(config: ConfigModel, action):
    orchestrator = get_orchestrator(config)
    try:
        return await action(orchestrator)
    finally:
        await orchestrator.close()
        await orchestrator.remote_store.close()


def report_result(result: SyncResult) -> None:
    if result.success:
        suffix = " (remote updated)" if result.written else ""
        console.print(f"[green]Synced {len(result.records)} tasks{suffix}[/green]")
    elif result.status is SyncStatus.CONFLICT:
        console.print(f"[yellow]{result.message}[/yellow]")
    else:
        console.print(f"[red]Sync failed: {result.message}[/red]")


def lookup(records: List[TaskRecord], todo_id: str) -> Optional[TaskRecord]:
    """Find a record by id as typed on the command line."""
    record = find_record(records, todo_id)
    if record is None:
        record = next((r for r in records if str(r.id) == todo_id), None)
    return record


def render_records(records: List[TaskRecord]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Done", justify="center")
    table.add_column("Priority")
    table.add_column("Task")
    table.add_column("Tags", style="cyan")
    for record in records:
        style = PRIORITY_STYLES.get(record.priority, "")
        table.add_row(
            str(record.id),
            "x" if record.completed else "",
            f"[{style}]{priority_label(record.priority)}[/{style}]" if style else priority_label(record.priority),
            f"[strike]{record.text}[/strike]" if record.completed else record.text,
            " ".join(f"#{tag}" for tag in record.tags),
        )
    return table


def render_conflicts(orchestrator: SyncOrchestrator) -> Table:
    table = Table(title="Conflicts", show_header=True, header_style="bold yellow")
    table.add_column("Task", style="dim")
    table.add_column("Field", style="cyan")
    table.add_column("This device")
    table.add_column("Other device")
    for conflict in orchestrator.conflict_info.conflicts:
        for field_conflict in conflict.fields:
            table.add_row(
                str(conflict.id),
                field_conflict.field,
                str(field_conflict.local_value),
                str(field_conflict.remote_value),
            )
    return table


@click.group()
@click.option("--config", "config_path", type=click.Path(), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx, config_path, verbose):
    """todo-sync - tasks that follow you between devices."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    try:
        config = Config.reload(Path(config_path)) if config_path else get_config()
    except Exception as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    configure_logging(config.log_level, verbose)
    ctx.obj["config"] = config


@main.command(name="list")
@click.option("--all", "show_all", is_flag=True, help="Include completed tasks")
@click.option("--filter", "quick_filter", type=click.Choice(QUICK_FILTERS),
              help="Only tasks flagged by a reminder (implies pending)")
@click.pass_context
def list_todos(ctx, show_all, quick_filter):
    """List tasks."""
    orchestrator = get_orchestrator(ctx.obj["config"])
    records = orchestrator.current_records()
    if quick_filter:
        records = apply_quick_filter(records, quick_filter, now_ms())
    elif not show_all:
        records = [r for r in records if not r.completed]
    if not records:
        console.print("[dim]No tasks[/dim]")
        return
    console.print(render_records(records))


@main.command()
@click.argument("text")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag to attach (repeatable)")
@click.option("--priority", "-p", type=click.IntRange(1, 5), default=3, show_default=True,
              help="Priority from 1 (lowest) to 5 (highest)")
@click.pass_context
def add(ctx, text, tags, priority):
    """Add a task."""
    if not text.strip():
        console.print("[red]Task text cannot be empty[/red]")
        sys.exit(1)

    async def action(orchestrator):
        records = orchestrator.current_records()
        order = max((r.order for r in records), default=-1) + 1
        record = new_record(text, tags=tags, priority=priority, order=order)
        result = await orchestrator.save_immediately(records + [record])
        return record, result

    record, result = _run(_with_orchestrator(ctx.obj["config"], action))
    console.print(f"[green]Added[/green] {record.id}: {record.text}")
    if not result.success:
        report_result(result)


@main.command()
@click.argument("todo_id")
@click.pass_context
def done(ctx, todo_id):
    """Mark a task as completed."""
    async def action(orchestrator):
        records = orchestrator.current_records()
        record = lookup(records, todo_id)
        if record is None:
            return None, None
        updated = [touch(r, completed=True) if r.id == record.id else r for r in records]
        return record, await orchestrator.save_immediately(updated)

    record, result = _run(_with_orchestrator(ctx.obj["config"], action))
    if record is None:
        console.print(f"[red]Task {todo_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green]Completed[/green] {record.text}")
    if not result.success:
        report_result(result)


@main.command()
@click.argument("todo_id")
@click.pass_context
def rm(ctx, todo_id):
    """Delete a task."""
    async def action(orchestrator):
        records = orchestrator.current_records()
        record = lookup(records, todo_id)
        if record is None:
            return None, None
        orchestrator.mark_as_deleted(record.id)
        remaining = [r for r in records if r.id != record.id]
        return record, await orchestrator.save_immediately(remaining)

    record, result = _run(_with_orchestrator(ctx.obj["config"], action))
    if record is None:
        console.print(f"[red]Task {todo_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green]Deleted[/green] {record.text}")
    if not result.success:
        report_result(result)


@main.command()
@click.pass_context
def status(ctx):
    """Show synchronization status."""
    orchestrator = get_orchestrator(ctx.obj["config"])
    info = orchestrator.get_status()
    lines = [
        f"[bold]Mode:[/bold] {info['mode']}",
        f"[bold]Status:[/bold] {info['status']}",
        f"[bold]Tasks:[/bold] {len(orchestrator.current_records())}",
        f"[bold]Last sync:[/bold] {describe_instant(info['last_sync_time'])}",
    ]
    if info["message"]:
        lines.append(f"[bold]Message:[/bold] {info['message']}")
    console.print(Panel("\n".join(lines), title="Sync Status", border_style="cyan"))


@main.command()
@click.option("--on-conflict", type=click.Choice(["ask", "local", "remote"]), default="ask",
              show_default=True, help="How to settle conflicts that need a decision")
@click.pass_context
def sync(ctx, on_conflict):
    """Synchronize with the remote copy now."""
    config = ctx.obj["config"]

    async def action(orchestrator):
        if orchestrator.mode is SyncMode.LOCAL_ONLY:
            return None
        result = await orchestrator.save_immediately(orchestrator.current_records())
        if result.status is not SyncStatus.CONFLICT:
            return result

        choice = on_conflict
        if choice == "ask":
            console.print(render_conflicts(orchestrator))
            choice = Prompt.ask("Keep which version?", choices=["local", "remote"], default="local")
        decision = ConflictDecision.keep_local() if choice == "local" else ConflictDecision.keep_remote()
        return await orchestrator.resolve_conflict(decision)

    result = _run(_with_orchestrator(config, action))
    if result is None:
        console.print("[yellow]Local-only mode; switch with 'todo-sync mode cloud'[/yellow]")
        return
    report_result(result)
    if not result.success:
        sys.exit(1)


@main.command()
@click.pass_context
def pull(ctx):
    """Replace local tasks with the remote copy."""
    async def action(orchestrator):
        if orchestrator.mode is SyncMode.LOCAL_ONLY:
            return None, orchestrator
        return await orchestrator.load(), orchestrator

    records, orchestrator = _run(_with_orchestrator(ctx.obj["config"], action))
    if orchestrator.mode is SyncMode.LOCAL_ONLY:
        console.print("[yellow]Local-only mode; nothing to pull[/yellow]")
        return
    if records is None:
        console.print(f"[red]Pull failed: {orchestrator.status_message}[/red]")
        sys.exit(1)
    console.print(f"[green]Pulled {len(records)} tasks[/green]")


@main.command()
@click.argument("new_mode", required=False, type=click.Choice([m.value for m in SyncMode]))
@click.pass_context
def mode(ctx, new_mode):
    """Show or change the storage mode."""
    async def action(orchestrator):
        if new_mode is None or orchestrator.mode.value == new_mode:
            return None, orchestrator
        if new_mode == SyncMode.CLOUD.value:
            return await orchestrator.migrate(orchestrator.current_records()), orchestrator
        orchestrator.set_mode(SyncMode.LOCAL_ONLY)
        return None, orchestrator

    result, orchestrator = _run(_with_orchestrator(ctx.obj["config"], action))
    if result is not None and not result.success:
        report_result(result)
        sys.exit(1)
    console.print(f"Storage mode: [bold]{orchestrator.mode.value}[/bold]")


@main.command()
@click.option("--dry-run", is_flag=True, help="Show due notifications without sending them")
@click.pass_context
def notify(ctx, dry_run):
    """Check tasks and send due reminders."""
    config = ctx.obj["config"]
    store = get_store(config)
    orchestrator = SyncOrchestrator(get_remote(config), store, settings=config.sync_settings())
    desktop = DesktopNotificationSink()
    sink = desktop if desktop.is_available() else LogNotificationSink()
    scheduler = NotificationScheduler(
        store, sink, orchestrator.current_records,
        interval_minutes=config.notification_interval_minutes,
    )

    if dry_run:
        now = scheduler.clock()
        settings = scheduler.load_settings(now)
        pending = scheduler.collect(orchestrator.current_records(), settings, now)
        if not pending:
            console.print("[dim]No notifications due[/dim]")
        for p in pending:
            console.print(f"[cyan]{p.channel.tag}[/cyan] {p.event.title}: {p.event.body}")
        return

    result = _run(scheduler.check_and_notify())
    if result.errors:
        console.print(f"[red]Notification check failed: {result.errors[0]}[/red]")
        sys.exit(1)
    if not result.sent:
        console.print("[dim]No notifications sent[/dim]")
        return
    label = "batched " if result.batched else ""
    console.print(f"[green]Sent {label}notifications: {', '.join(c.tag for c in result.sent)}[/green]")


if __name__ == "__main__":
    main()
