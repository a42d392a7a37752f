"""Unit tests for slash command registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from couponsync.configuration import ConfigurationBundle
from couponsync.errors import NetworkError
from couponsync.slash_commands import (
    CommandError,
    CommandRouter,
    SlashCommand,
    SlashCommandContext,
    render_help_table,
    render_rich,
)


def test_router_handles_registered_command(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    captured = {}

    def handler(context: SlashCommandContext, args: list[str]) -> str:
        captured["context"] = context
        return f"echo:{' '.join(args)}"

    router.register(SlashCommand(name="echo", description="Echo args", handler=handler))
    result = router.dispatch('/ECHO hello "big world"')

    assert result == "echo:hello big world"
    assert captured["context"].config is config
    assert "echo" in router.command_names


def test_dispatch_reports_unbalanced_quotes(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(data_dir=tmp_path, status="ready"))

    assert "Could not parse" in router.dispatch('/sync "run')


def test_render_help_table_lists_commands(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    router.register(SlashCommand(name="status", description="Show status", handler=lambda *_: ""))
    router.register(SlashCommand(name="help", description="Show help", handler=lambda *_: ""))

    output = render_help_table(router.commands())

    assert "/status" in output
    assert "Show status" in output


def test_render_rich_produces_ansi():
    def _render(console):
        console.print("hello", style="bold red")

    ansi = render_rich(_render)

    assert "\x1b[" in ansi  # contains ANSI escape sequence


def test_requires_ready_guard(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="invalid")
    router = CommandRouter(config)
    router.register(
        SlashCommand(
            name="needs_ready",
            description="Needs a valid configuration",
            handler=lambda *_: "ran",
            requires_ready=True,
        )
    )

    result = router.handle("needs_ready", [])

    assert "requires a ready configuration" in result
    assert "invalid" in result


def test_service_exposed_through_context(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    sentinel = object()
    router = CommandRouter(config, metadata={"service": sentinel})
    router.register(
        SlashCommand(
            name="peek",
            description="Peek at the service",
            handler=lambda context, _args: "same" if context.service is sentinel else "other",
            requires_service=True,
        )
    )

    assert router.handle("peek", []) == "same"


def test_aliases_resolve_to_the_command(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(data_dir=tmp_path, status="ready"))
    router.register(
        SlashCommand(name="sync", description="Sync", handler=lambda *_: "synced", aliases=("s",))
    )

    assert router.dispatch("/s") == "synced"
    assert router.resolve("/S").name == "sync"
    assert router.command_names == ["sync"]
    assert list(router.completions) == ["s", "sync"]


def test_handler_errors_are_formatted(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(data_dir=tmp_path, status="ready"))

    def _bad_args(context, args):
        raise CommandError("need a number")

    def _offline(context, args):
        raise NetworkError("connection refused")

    router.register(SlashCommand(name="bad", description="", handler=_bad_args, usage="/bad <n>"))
    router.register(SlashCommand(name="push", description="", handler=_offline))

    assert router.dispatch("/bad") == "[bad] need a number\nUsage: /bad <n>"
    assert router.dispatch("/push") == "[push] Sync error (network): connection refused"


def test_context_user_id_needs_a_service(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(data_dir=tmp_path, status="ready"))
    context = SlashCommandContext(config=router.config, router=router)

    with pytest.raises(CommandError):
        context.user_id("user-1")
