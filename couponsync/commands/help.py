"""Slash command for listing available commands."""

from __future__ import annotations

from typing import List

from ..slash_commands import CommandError, SlashCommand, SlashCommandContext, render_help_table


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    if not args:
        return render_help_table(context.router.commands()) + "\nType 'quit' to leave the console."

    command = context.router.resolve(args[0])
    if command is None:
        raise CommandError(f"Unknown command '/{args[0].lstrip('/')}'.")
    lines = [f"/{command.name}: {command.description}"]
    if command.usage:
        lines.append(f"Usage: {command.usage}")
    if command.aliases:
        lines.append("Aliases: " + ", ".join(f"/{alias}" for alias in command.aliases))
    return "\n".join(lines)


COMMAND = SlashCommand(
    name="help",
    description="List console commands, or describe one.",
    handler=_handler,
    usage="/help [command]",
    aliases=("?",),
)
