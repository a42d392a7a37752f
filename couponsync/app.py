"""Interactive operator console for CouponSync."""

from __future__ import annotations

import logging
import os
from pathlib import Path
try:
    import readline
except ImportError:  # pragma: no cover - not available on Windows
    readline = None
from typing import Optional

from rich.console import Console

from .api import CouponSyncAPIServer
from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    resolve_data_dir,
)
from .errors import LocalStorageError
from .logging_utils import setup_logging
from .service import SyncService
from .slash_commands import CommandRouter

logger = logging.getLogger("couponsync")
TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off"}


def _parse_env_flag(value: str, *, default: bool = True) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_STRINGS:
        return True
    if normalized in FALSE_STRINGS:
        return False
    return default


def _resolve_ui_verbose(config_bundle: ConfigurationBundle) -> bool:
    env_value = os.environ.get("COUPONSYNC_UI_VERBOSE")
    if env_value is not None:
        return _parse_env_flag(env_value)
    return bool(config_bundle.section("ui").get("verbose", True))


def _log_path_within(log_path: Path, data_dir: Path) -> bool:
    try:
        log_path.relative_to(data_dir)
        return True
    except ValueError:
        return False


def build_router(
    config: ConfigurationBundle,
    service: Optional[SyncService] = None,
) -> CommandRouter:
    router = CommandRouter(config, metadata={"service": service})
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(console: Console, config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    if not config.diagnostics:
        console.print(f"[config] Loaded {len(config.files_loaded)} file(s).", markup=False)
        return

    console.print("[config] Diagnostics:", markup=False)
    for diag in config.diagnostics:
        prefix = diag.source or config.data_dir
        console.print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]", markup=False)


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for slash commands."""

    if readline is None:
        return

    commands = list(router.completions)

    def completer(text: str, state: int):
        fragment = text[1:] if text.startswith("/") else text
        matches = [f"/{cmd}" for cmd in commands if cmd.startswith(fragment)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def prepare(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Create the data directory, load configuration and set up logging."""

    resolved = data_dir or resolve_data_dir()
    resolved.mkdir(parents=True, exist_ok=True)
    config_bundle = load_runtime_configuration(resolved)

    logging_cfg = config_bundle.section("logging")
    level = os.environ.get("COUPONSYNC_LOG_LEVEL") or logging_cfg.get("level") or "INFO"
    log_path = setup_logging(
        config_bundle.data_dir,
        level,
        structured=bool(logging_cfg.get("structured", True)),
        console=False,
    )
    config_bundle.log_path = log_path
    if not _log_path_within(log_path, config_bundle.data_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Data directory is not writable; logging to fallback path '{log_path}'.",
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    return config_bundle


def run_console(router: CommandRouter, console: Console) -> None:
    configure_autocomplete(router)
    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[Exiting CouponSync]", markup=False)
            break

        if line.lower() in {"quit", "exit", "/quit", "/exit"}:
            console.print("[Goodbye]", markup=False)
            break
        if not line:
            continue

        logger.info("Console command: %s", line)
        console.print(router.dispatch(line), markup=False, highlight=False)


def main() -> None:
    """Entry point for `python -m couponsync`."""

    console = Console()
    config_bundle = prepare()
    verbose = _resolve_ui_verbose(config_bundle)
    if verbose:
        console.rule("CouponSync")
        emit_configuration_report(console, config_bundle)

    service: Optional[SyncService] = None
    api_server: Optional[CouponSyncAPIServer] = None
    try:
        service = SyncService.from_bundle(config_bundle)
    except LocalStorageError as exc:
        logger.error("Sync service unavailable: %s", exc)
        console.print(f"[service] Sync service unavailable: {exc}", markup=False)

    if service is not None:
        service.start()
        if config_bundle.section("api").get("enabled"):
            api_server = CouponSyncAPIServer(config_bundle, service)
            if api_server.start():
                status = api_server.status()
                console.print(
                    f"[api] Listening on {status['url']} (key {status['auth']['fingerprint']}, from {status['auth']['source']})",
                    markup=False,
                )
            else:
                console.print("[api] Failed to start; see the log for details.", markup=False)

    try:
        run_console(build_router(config_bundle, service), console)
    finally:
        if api_server is not None:
            api_server.stop()
        if service is not None:
            service.stop()


__all__ = ["build_router", "main", "prepare", "run_console"]
