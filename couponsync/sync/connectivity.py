"""Connectivity monitoring: detect when the device comes back online."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psutil

logger = logging.getLogger("couponsync.sync.connectivity")


@dataclass
class ConnectivitySettings:
    """Settings for the connectivity monitor."""

    enabled: bool = True
    checks: List[str] = field(default_factory=list)
    timeout: float = 3.0
    poll_interval: float = 15.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConnectivitySettings":
        raw = config.get("connectivity", {}) if config else {}
        return cls(
            enabled=bool(raw.get("enabled", True)),
            checks=[str(c) for c in raw.get("checks") or []],
            timeout=float(raw.get("timeout", 3.0)),
            poll_interval=float(raw.get("poll_interval", 15.0)),
        )


def interfaces_up() -> List[str]:
    """Names of non-loopback interfaces that are up."""
    names: List[str] = []
    for name, stats in psutil.net_if_stats().items():
        if name.lower().startswith("lo"):
            continue
        if stats.isup:
            names.append(name)
    return names


def reachable(targets: Sequence[str], timeout: float) -> bool:
    """True when at least one ``host:port`` target accepts a TCP connection."""
    for target in targets:
        host, port = _parse_target(target)
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError as exc:
            logger.debug("Connectivity check %s:%s failed: %s", host, port, exc)
    return False


def _parse_target(target: str) -> Tuple[str, int]:
    default_port = 443
    stripped = target.strip()
    if not stripped:
        return ("localhost", default_port)
    if stripped.count(":") == 1 and stripped.split(":", 1)[1].isdigit():
        host, raw_port = stripped.split(":", 1)
        return (host or "localhost", int(raw_port))
    return (stripped, default_port)


class ConnectivityMonitor:
    """Polls the network and calls ``on_restored`` on each offline to online edge."""

    def __init__(
        self,
        settings: ConnectivitySettings,
        on_restored: Callable[[], Any],
        probe: Optional[Callable[[], bool]] = None,
    ):
        self.settings = settings
        self.on_restored = on_restored
        self._probe = probe or self._default_probe
        self._online: Optional[bool] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def online(self) -> Optional[bool]:
        """Last observed state; None before the first check."""
        return self._online

    def _default_probe(self) -> bool:
        if not interfaces_up():
            return False
        if self.settings.checks:
            return reachable(self.settings.checks, self.settings.timeout)
        return True

    def check_now(self) -> bool:
        """Probe once, firing the callback if connectivity was just restored."""
        try:
            online = bool(self._probe())
        except Exception:
            logger.exception("Connectivity probe failed")
            online = False

        with self._lock:
            previous = self._online
            self._online = online

        if previous is not None and previous != online:
            logger.info("Connectivity %s", "restored" if online else "lost")
        if previous is False and online:
            try:
                self.on_restored()
            except Exception:
                logger.exception("Connectivity restored callback failed")
        return online

    def start(self) -> bool:
        if self._thread and self._thread.is_alive():
            return True
        if not self.settings.enabled:
            logger.info("Connectivity monitoring is disabled")
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="couponsync-connectivity",
            daemon=True,
        )
        self._thread.start()
        logger.info("Connectivity monitor started (every %.0fs)", self.settings.poll_interval)
        return True

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            self.check_now()
            self._stop_event.wait(self.settings.poll_interval)


__all__ = [
    "ConnectivityMonitor",
    "ConnectivitySettings",
    "interfaces_up",
    "reachable",
]
