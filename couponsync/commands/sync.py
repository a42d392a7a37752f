"""Slash command for running and inspecting sync cycles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from ..slash_commands import (
    CommandError,
    SlashCommand,
    SlashCommandContext,
    render_rich,
)
from ..sync.engine import SyncResult

MAX_PENDING_ROWS = 20
USAGE = "/sync [status|run|pending|schedule <min>|cancel|help] [user]"


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Run or inspect synchronization for a user."""

    subcommand = args[0].lower() if args else "status"
    if subcommand == "help":
        return _show_help()
    action = SUBCOMMANDS.get(subcommand)
    if action is None:
        raise CommandError(f"Unknown subcommand '{subcommand}'.")
    try:
        return action(context, args[1:])
    except ValueError as e:
        raise CommandError(str(e)) from e


def _user_arg(context: SlashCommandContext, args: List[str]) -> str:
    return context.user_id(args[0] if args else None)


def _format_ms(value: Optional[int]) -> str:
    if not value:
        return "(never)"
    return datetime.fromtimestamp(value / 1000, timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _show_status(context: SlashCommandContext, args: List[str]) -> str:
    status = context.service.user_status(_user_arg(context, args))

    def _render(console: Console) -> None:
        table = Table(title=f"Sync Status: {status['user_id']}", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("State", status["state"])
        table.add_row("Last outcome", status["last_outcome"] or "(none)")
        table.add_row("Last sync", _format_ms(status["last_sync_at"]))
        table.add_row("Attempts", str(status["attempts"]))
        if status["last_error"]:
            table.add_row("Last error", status["last_error"])
        if status["next_retry_in"] is not None:
            table.add_row("Next retry", f"in {status['next_retry_in']:.0f}s")
        periodic = status["periodic_minutes"]
        table.add_row("Periodic", f"every {periodic} min" if periodic else "(off)")
        table.add_row("Pending changes", str(status["pending_changes"]))
        for entity_type, watermark in status["watermarks"].items():
            table.add_row(f"Watermark ({entity_type})", _format_ms(watermark))

        console.print(table)

    return render_rich(_render)


def _run_sync(context: SlashCommandContext, args: List[str]) -> str:
    user = _user_arg(context, args)
    result = context.service.sync_now(user)
    if result is None:
        return f"[sync] A sync for {user} is already running; another cycle will follow it."
    return _render_result(result)


def _render_result(result: SyncResult) -> str:
    def _render(console: Console) -> None:
        if result.success:
            console.print(f"[green]Sync completed for {result.user_id}[/green]")
        else:
            console.print(f"[yellow]Sync incomplete for {result.user_id}:[/yellow] {result.message}")

        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Type", style="cyan")
        table.add_column("Upload")
        table.add_column("Download")
        table.add_column("Sent", justify="right")
        table.add_column("New", justify="right")
        table.add_column("Updated", justify="right")
        table.add_column("Kept local", justify="right")
        for entity_type, sub in result.sub_results.items():
            table.add_row(
                entity_type.value,
                sub.upload.value,
                sub.download.value,
                str(sub.uploaded),
                str(sub.inserted),
                str(sub.updated),
                str(sub.kept_local),
            )
        console.print(table)

    return render_rich(_render)


def _show_pending(context: SlashCommandContext, args: List[str]) -> str:
    user = _user_arg(context, args)
    changes = context.service.store.list_unsynced_changes(user)
    if not changes:
        return f"[sync] No pending changes for {user}."

    def _render(console: Console) -> None:
        table = Table(title=f"Pending changes: {user} ({len(changes)})", show_header=True)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Change")
        table.add_column("Type", style="cyan")
        table.add_column("Local id")
        table.add_column("Recorded")
        for change in changes[:MAX_PENDING_ROWS]:
            table.add_row(
                str(change.id),
                change.change_type.value,
                change.entity_type.value,
                change.entity_id,
                _format_ms(change.timestamp),
            )
        if len(changes) > MAX_PENDING_ROWS:
            console.print(f"(showing first {MAX_PENDING_ROWS} of {len(changes)})")
        console.print(table)

    return render_rich(_render)


def _schedule(context: SlashCommandContext, args: List[str]) -> str:
    if not args:
        raise CommandError("Missing interval in minutes.")
    try:
        minutes = float(args[0])
    except ValueError:
        raise CommandError(f"'{args[0]}' is not a number of minutes.") from None
    user = _user_arg(context, args[1:])
    context.service.scheduler.schedule_periodic(user, minutes)
    return f"[sync] Syncing {user} every {minutes:g} minutes."


def _cancel(context: SlashCommandContext, args: List[str]) -> str:
    user = _user_arg(context, args)
    if context.service.scheduler.cancel(user):
        return f"[sync] Cancelled scheduled and running sync for {user}."
    return f"[sync] Nothing scheduled for {user}."


SUBCOMMANDS: Dict[str, Callable[[SlashCommandContext, List[str]], str]] = {
    "status": _show_status,
    "run": _run_sync,
    "pending": _show_pending,
    "schedule": _schedule,
    "cancel": _cancel,
}


def _show_help() -> str:
    return """[sync] Usage:
  /sync                         Show sync status for the default user
  /sync status [user]           Show sync status
  /sync run [user]              Run a sync cycle now and wait for it
  /sync pending [user]          List changes waiting for upload
  /sync schedule <min> [user]   Sync periodically every <min> minutes
  /sync cancel [user]           Stop scheduled syncs and cancel a running one
  /sync help                    Show this help

Configuration:
  runtime:
    user_id: <default user>
  remote:
    base_url: https://api.example.com/rest/v1
    api_key: <key>
  sync:
    entity_types: [coupon, membership]
    conflict_strategy: newest_wins  # newest_wins, local_wins, remote_wins"""


COMMAND = SlashCommand(
    name="sync",
    description="Run a sync cycle now, inspect its state, or manage its schedule.",
    handler=_handler,
    usage=USAGE,
    aliases=("s",),
    requires_service=True,
)
