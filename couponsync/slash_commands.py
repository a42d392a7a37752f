"""Console command routing for CouponSync.

Each command is a ``SlashCommand`` with a handler returning the text to
print. Handlers report operator mistakes by raising ``CommandError``; sync
failures (``SyncError``) are formatted by the router, so handlers only
deal with the happy path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import shlex
import shutil
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle
from .errors import SyncError

if TYPE_CHECKING:
    from .service import SyncService

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]

MIN_RENDER_WIDTH = 40


class CommandError(Exception):
    """Bad arguments or state for a console command; shown to the operator as-is."""


@dataclass
class SlashCommandContext:
    config: ConfigurationBundle
    router: "CommandRouter"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def service(self) -> Optional["SyncService"]:
        return self.metadata.get("service")

    def user_id(self, explicit: Optional[str] = None) -> str:
        """The user a command acts on: the argument, else the configured default."""
        if self.service is None:
            raise CommandError("the sync service is not running")
        try:
            return self.service.resolve_user(explicit)
        except ValueError as exc:
            raise CommandError(str(exc)) from exc


@dataclass
class SlashCommand:
    name: str
    description: str
    handler: SlashCommandHandler
    usage: str = ""
    aliases: Tuple[str, ...] = ()
    requires_ready: bool = False
    requires_service: bool = False


class CommandRouter:
    """Maps ``/name`` (and aliases) to commands and runs them."""

    def __init__(
        self,
        config: ConfigurationBundle,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.metadata = metadata or {}
        self._commands: Dict[str, SlashCommand] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, command: SlashCommand) -> None:
        name = command.name.lower()
        self._commands[name] = command
        for alias in command.aliases:
            self._aliases[alias.lower()] = name

    def resolve(self, command_name: str) -> Optional[SlashCommand]:
        key = command_name.lower().lstrip("/")
        return self._commands.get(self._aliases.get(key, key))

    def dispatch(self, line: str) -> str:
        """Parse a ``/name args...`` line and run it."""
        try:
            parts = shlex.split(line.strip())
        except ValueError as exc:
            return f"[router] Could not parse command: {exc}"
        if not parts or not parts[0].startswith("/"):
            return "[router] Commands start with '/'. Try /help."
        return self.handle(parts[0][1:], parts[1:])

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self.resolve(command_name)
        if command is None:
            return f"[router] Unknown command '/{command_name}'. Try /help."
        if command.requires_ready and self.config.status != "ready":
            return (
                f"[{command.name}] '/{command.name}' requires a ready configuration "
                f"(current status: {self.config.status})."
            )
        if command.requires_service and self.metadata.get("service") is None:
            return f"[{command.name}] The sync service is not running."

        context = SlashCommandContext(config=self.config, router=self, metadata=self.metadata)
        try:
            return command.handler(context, args)
        except CommandError as exc:
            usage = f"\nUsage: {command.usage}" if command.usage else ""
            return f"[{command.name}] {exc}{usage}"
        except SyncError as exc:
            return f"[{command.name}] Sync error ({exc.kind}): {exc}"

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands)

    @property
    def completions(self) -> Sequence[str]:
        """Names and aliases, for tab completion."""
        return sorted(set(self._commands) | set(self._aliases))

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    def _render(console: Console) -> None:
        table = Table(title="CouponSync commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Usage", style="dim")
        table.add_column("Description")
        for cmd in commands:
            name = f"/{cmd.name}"
            if cmd.aliases:
                name += " (" + ", ".join(f"/{a}" for a in cmd.aliases) + ")"
            table.add_row(name, cmd.usage, cmd.description)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None], width: Optional[int] = None) -> str:
    """Run ``render_fn`` against an off-screen console and return the ANSI text."""
    columns = width or shutil.get_terminal_size(fallback=(100, 24)).columns
    console = Console(
        record=True,
        force_terminal=True,
        width=max(MIN_RENDER_WIDTH, columns),
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "CommandError",
    "CommandRouter",
    "SlashCommand",
    "SlashCommandContext",
    "render_help_table",
    "render_rich",
]
