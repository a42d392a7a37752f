"""Service root wiring the store, remote client, engine, scheduler and monitor."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from .configuration import ConfigurationBundle
from .repository import CouponRepository, MembershipRepository, UserRepository
from .storage.store import LocalStore
from .sync.connectivity import ConnectivityMonitor, ConnectivitySettings
from .sync.engine import SyncEngine, SyncResult, SyncSettings
from .sync.remote import RemoteBackend, RemoteClient, RemoteSettings
from .sync.scheduler import SchedulerSettings, SyncScheduler, TimerFactory
from .sync.tracker import ChangeTracker

logger = logging.getLogger("couponsync.service")


class SyncService:
    """Owns every long-lived sync component for one local database."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        engine: SyncEngine,
        scheduler: SyncScheduler,
        monitor: Optional[ConnectivityMonitor] = None,
        default_user_id: str = "",
    ):
        self.store = store
        self.remote = remote
        self.engine = engine
        self.scheduler = scheduler
        self.monitor = monitor
        self.default_user_id = default_user_id

        self.tracker = ChangeTracker(store)
        self.coupons = CouponRepository(store, self.tracker)
        self.memberships = MembershipRepository(store, self.tracker)
        self.users = UserRepository(store, self.tracker)
        self._started = False

    @classmethod
    def from_bundle(
        cls,
        bundle: ConfigurationBundle,
        remote: Optional[RemoteBackend] = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> "SyncService":
        config = bundle.merged
        store = LocalStore(bundle.database_path)
        store.initialize()

        remote = remote or RemoteClient(RemoteSettings.from_config(config))
        engine = SyncEngine(store, remote, settings=SyncSettings.from_config(config))
        scheduler = SyncScheduler(
            engine,
            store,
            SchedulerSettings.from_config(config),
            timer_factory=timer_factory,
        )
        monitor = ConnectivityMonitor(
            ConnectivitySettings.from_config(config),
            on_restored=scheduler.notify_connectivity_restored,
        )
        default_user = str(bundle.section("runtime").get("user_id") or "")
        return cls(store, remote, engine, scheduler, monitor, default_user)

    def resolve_user(self, user_id: Optional[str] = None) -> str:
        resolved = user_id or self.default_user_id
        if not resolved:
            raise ValueError("No user id given and runtime.user_id is not configured.")
        return resolved

    def start(self) -> None:
        """Start background monitoring and, if configured, periodic sync."""
        if self._started:
            return
        self._started = True
        settings = self.engine.settings
        if not settings.enabled:
            logger.info("Sync is disabled; service started without scheduling")
            return
        if self.monitor is not None:
            self.monitor.start()
        if settings.auto_start and self.default_user_id:
            self.scheduler.schedule_periodic(self.default_user_id)
            self.scheduler.trigger_sync(self.default_user_id, "startup")

    def stop(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        self.scheduler.shutdown(wait=True)
        self.store.close()
        self._started = False
        logger.info("Sync service stopped")

    def sync_now(
        self,
        user_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[SyncResult]:
        """Run a cycle and wait for it; None when one was already running."""
        future = self.scheduler.trigger_sync(self.resolve_user(user_id), "manual")
        if future is None:
            return None
        return future.result(timeout=timeout)

    def user_status(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        user = self.resolve_user(user_id)
        status = self.scheduler.status(user).to_dict()
        status["watermarks"] = {
            entity_type.value: self.store.get_watermark(user, entity_type)
            for entity_type in self.engine.settings.entity_types
        }
        result = self.scheduler.last_result(user)
        status["last_result"] = result.to_dict() if result else None
        return status

    def overview(self) -> Dict[str, Any]:
        remote_configured = getattr(self.remote, "configured", True)
        return {
            "sync_enabled": self.engine.settings.enabled,
            "remote_configured": remote_configured,
            "online": self.monitor.online if self.monitor else None,
            "entity_types": [t.value for t in self.engine.settings.entity_types],
            "users": self.scheduler.users(),
            "default_user_id": self.default_user_id or None,
        }


__all__ = ["SyncService"]
