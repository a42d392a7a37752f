"""Slash command for runtime status."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich

SECTION_ALIASES: Dict[str, Sequence[str]] = {
    "info": ("info", "summary"),
    "diagnostics": ("diagnostics", "diag", "diags"),
    "sync": ("sync", "service"),
}
DEFAULT_MAX_ROWS = 5


def _resolve_sections(args: Iterable[str]) -> Tuple[List[str], bool]:
    """Return sections to render and whether all rows should be shown."""

    normalized = [arg.strip().lower() for arg in args]
    show_all = any(arg in {"--all", "-a", "all"} for arg in normalized)

    requested: List[str] = []
    for section, aliases in SECTION_ALIASES.items():
        if any(arg in aliases for arg in normalized):
            requested.append(section)

    if not requested:
        requested = list(SECTION_ALIASES.keys())

    return requested, show_all


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    config = context.config
    service = context.service
    sections, show_all = _resolve_sections(args)

    def _render_summary(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Data dir", str(config.data_dir))
        info.add_row("Status", config.status)
        info.add_row("Config files", str(len(config.files_loaded)))
        info.add_row("Database", str(config.database_path))
        info.add_row("Log path", str(config.log_path or "(not initialized)"))

        console.print(Panel(info, title="Runtime Status", border_style="green", padding=(0, 1)))

    def _render_diagnostics(console: Console) -> None:
        if not config.diagnostics:
            console.print(Panel("[green]No diagnostics reported.", title="Diagnostics", border_style="red"))
            return

        diag_table = Table(show_header=True, header_style="bold red", box=box.SIMPLE, pad_edge=False)
        diag_table.add_column("Lvl", style="red", no_wrap=True)
        diag_table.add_column("Message", overflow="fold", ratio=2)
        diag_table.add_column("Source", overflow="fold", ratio=2)

        rows = [
            (diag.level.upper(), diag.message, str(diag.source or config.data_dir))
            for diag in config.diagnostics
        ]
        max_rows = len(rows) if show_all else DEFAULT_MAX_ROWS
        for row in rows[:max_rows]:
            diag_table.add_row(*row)

        console.print(Panel(diag_table, title="Diagnostics", border_style="red", padding=(0, 1)))
        if len(rows) > max_rows:
            console.print(
                f"[dim]Showing {max_rows}/{len(rows)}. "
                "Use '/status diagnostics --all' for the full list.[/dim]"
            )

    def _render_sync(console: Console) -> None:
        if service is None:
            console.print(Panel("[yellow]Sync service not running.", title="Sync", border_style="blue"))
            return

        overview = service.overview()
        grid = Table.grid(padding=(0, 1))
        grid.add_column("Key", style="bold", no_wrap=True)
        grid.add_column("Value", overflow="fold")
        grid.add_row("Enabled", str(overview["sync_enabled"]))
        grid.add_row("Remote", "configured" if overview["remote_configured"] else "(not configured)")
        online = overview["online"]
        grid.add_row("Online", "unknown" if online is None else str(online))
        grid.add_row("Entity types", ", ".join(overview["entity_types"]))
        grid.add_row("Default user", overview["default_user_id"] or "(none)")
        grid.add_row("Tracked users", ", ".join(overview["users"]) or "(none)")
        console.print(Panel(grid, title="Sync", border_style="blue", padding=(0, 1)))

    renderers = {
        "info": _render_summary,
        "diagnostics": _render_diagnostics,
        "sync": _render_sync,
    }

    def _render(console: Console) -> None:
        for section in sections:
            renderers[section](console)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show data dir, configuration diagnostics and sync service state.",
    usage="/status [info|diagnostics|sync] [--all]",
    handler=_handler,
)
