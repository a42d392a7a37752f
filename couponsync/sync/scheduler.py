"""Sync scheduling: single-flight cycles per user, periodic runs and retry backoff."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import LocalStorageError
from ..logging_utils import sync_context
from ..models import now_ms
from ..storage.store import LocalStore
from .engine import SyncEngine, SyncResult

logger = logging.getLogger("couponsync.sync.scheduler")

TimerFactory = Callable[..., Any]


def status_key(user_id: str) -> str:
    return f"last_sync_status:{user_id}"


class SchedulerState(str, Enum):
    """Sync state of one user."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"


@dataclass
class BackoffPolicy:
    """Exponential retry delay: ``min(base * multiplier ** (attempt - 1), max)``."""

    base_seconds: float = 300.0
    multiplier: float = 2.0
    max_seconds: float = 3600.0

    def delay_for(self, attempt: int) -> float:
        attempt = max(1, attempt)
        return min(self.base_seconds * self.multiplier ** (attempt - 1), self.max_seconds)


@dataclass
class SchedulerSettings:
    """Settings for the sync scheduler."""

    interval_minutes: float = 30
    max_workers: int = 4
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SchedulerSettings":
        raw = config.get("scheduler", {}) if config else {}
        return cls(
            interval_minutes=float(raw.get("interval_minutes", 30)),
            max_workers=int(raw.get("max_workers", 4)),
            backoff=BackoffPolicy(
                base_seconds=float(raw.get("backoff_base_seconds", 300)),
                multiplier=float(raw.get("backoff_multiplier", 2.0)),
                max_seconds=float(raw.get("backoff_max_seconds", 3600)),
            ),
        )


@dataclass
class UserSyncStatus:
    """Observable sync status of one user."""

    user_id: str
    state: SchedulerState = SchedulerState.IDLE
    attempts: int = 0
    last_outcome: Optional[str] = None  # success, partial, failed, cancelled
    last_error: Optional[str] = None
    last_sync_at: Optional[int] = None
    next_retry_in: Optional[float] = None
    periodic_minutes: Optional[float] = None
    pending_changes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_outcome": self.last_outcome,
            "last_error": self.last_error,
            "last_sync_at": self.last_sync_at,
            "next_retry_in": self.next_retry_in,
            "periodic_minutes": self.periodic_minutes,
            "pending_changes": self.pending_changes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSyncStatus":
        return cls(
            user_id=str(data["user_id"]),
            state=SchedulerState(data.get("state", "idle")),
            attempts=int(data.get("attempts", 0)),
            last_outcome=data.get("last_outcome"),
            last_error=data.get("last_error"),
            last_sync_at=data.get("last_sync_at"),
            next_retry_in=data.get("next_retry_in"),
            periodic_minutes=data.get("periodic_minutes"),
            pending_changes=int(data.get("pending_changes", 0)),
        )


@dataclass
class _UserSlot:
    status: UserSyncStatus
    running: bool = False
    rerun: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    retry_timer: Optional[Any] = None
    periodic_timer: Optional[Any] = None
    last_result: Optional[SyncResult] = None


class SyncScheduler:
    """Decides when sync cycles run.

    At most one cycle per user is in flight; a trigger that arrives while a
    cycle is running is folded into a single follow-up cycle. Failed cycles
    are retried on a timer with exponential backoff until one succeeds or
    the user is cancelled.
    """

    def __init__(
        self,
        engine: SyncEngine,
        store: LocalStore,
        settings: Optional[SchedulerSettings] = None,
        timer_factory: TimerFactory = threading.Timer,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.engine = engine
        self.store = store
        self.settings = settings or SchedulerSettings()
        self._timer_factory = timer_factory
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="couponsync-sync",
        )
        self._lock = threading.RLock()
        self._slots: Dict[str, _UserSlot] = {}
        self._shutdown = False

    @property
    def backoff(self) -> BackoffPolicy:
        return self.settings.backoff

    def users(self) -> List[str]:
        with self._lock:
            return list(self._slots)

    def _slot(self, user_id: str) -> _UserSlot:
        slot = self._slots.get(user_id)
        if slot is None:
            slot = _UserSlot(status=UserSyncStatus(user_id=user_id))
            self._slots[user_id] = slot
        return slot

    # === Triggers ===

    def trigger_sync(self, user_id: str, reason: str = "manual") -> Optional[Future]:
        """Start a sync cycle now; returns None if one is already running."""
        with self._lock:
            if self._shutdown:
                logger.warning("Ignoring %s sync for %s: scheduler is shut down", reason, user_id)
                return None

            slot = self._slot(user_id)
            if slot.running:
                slot.rerun = True
                logger.debug("Sync for %s already running; %s trigger coalesced", user_id, reason)
                return None

            self._cancel_timer(slot, "retry_timer")
            slot.running = True
            slot.cancel_event = threading.Event()
            slot.status.state = SchedulerState.SYNCING
            slot.status.next_retry_in = None

            logger.info(
                "Starting sync for %s (%s)", user_id, reason, extra=sync_context(user_id, reason=reason)
            )
            return self._executor.submit(self._run_cycle, user_id, slot)

    def schedule_periodic(self, user_id: str, interval_minutes: Optional[float] = None) -> None:
        """Run a sync cycle for the user every ``interval_minutes``."""
        minutes = interval_minutes if interval_minutes is not None else self.settings.interval_minutes
        if minutes <= 0:
            raise ValueError("interval_minutes must be positive")

        with self._lock:
            slot = self._slot(user_id)
            self._cancel_timer(slot, "periodic_timer")
            slot.status.periodic_minutes = minutes
            slot.periodic_timer = self._start_timer(minutes * 60, self._on_periodic, user_id)
        logger.info("Scheduled periodic sync for %s every %s minutes", user_id, minutes)

    def notify_connectivity_restored(self) -> List[str]:
        """Connectivity came back: retry every known user right away."""
        with self._lock:
            users = list(self._slots)
        triggered = [u for u in users if self.trigger_sync(u, "connectivity") is not None]
        if triggered:
            logger.info("Connectivity restored; syncing %s", ", ".join(triggered))
        return triggered

    def cancel(self, user_id: str) -> bool:
        """Stop timers, cancel the running cycle and forget the user."""
        with self._lock:
            slot = self._slots.pop(user_id, None)
            if slot is None:
                return False
            self._cancel_timer(slot, "retry_timer")
            self._cancel_timer(slot, "periodic_timer")
            slot.cancel_event.set()
        logger.info("Cancelled sync scheduling for %s", user_id)
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._shutdown = True
            for slot in self._slots.values():
                self._cancel_timer(slot, "retry_timer")
                self._cancel_timer(slot, "periodic_timer")
                slot.cancel_event.set()
        self._executor.shutdown(wait=wait)
        logger.info("Sync scheduler stopped")

    # === Status ===

    def status(self, user_id: str) -> UserSyncStatus:
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is not None:
                status = UserSyncStatus.from_dict(slot.status.to_dict())
            else:
                status = self._load_status(user_id)
        status.pending_changes = self.store.count_unsynced(user_id)
        return status

    def last_result(self, user_id: str) -> Optional[SyncResult]:
        with self._lock:
            slot = self._slots.get(user_id)
            return slot.last_result if slot else None

    def _load_status(self, user_id: str) -> UserSyncStatus:
        metadata = self.store.get_metadata(status_key(user_id))
        if metadata is None:
            return UserSyncStatus(user_id=user_id)
        try:
            status = UserSyncStatus.from_dict(json.loads(metadata.value))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring malformed sync status for %s: %s", user_id, e)
            return UserSyncStatus(user_id=user_id)
        # Nothing runs or waits for a user this scheduler does not track.
        status.next_retry_in = None
        status.periodic_minutes = None
        if status.state == SchedulerState.SYNCING:
            status.state = SchedulerState.IDLE
        return status

    def _persist_status(self, status: UserSyncStatus) -> None:
        try:
            self.store.set_metadata(status_key(status.user_id), json.dumps(status.to_dict()))
        except LocalStorageError as e:
            logger.error("Could not persist sync status for %s: %s", status.user_id, e)

    # === Cycle execution ===

    def _run_cycle(self, user_id: str, slot: _UserSlot) -> SyncResult:
        error: Optional[str] = None
        try:
            result = self.engine.sync_cycle(user_id, cancel_event=slot.cancel_event)
        except Exception as e:
            logger.exception("Sync cycle for %s crashed", user_id, extra=sync_context(user_id))
            result = SyncResult(user_id=user_id, finished_at=now_ms())
            error = f"{type(e).__name__}: {e}"
        self._finish_cycle(user_id, slot, result, error)
        return result

    def _finish_cycle(
        self,
        user_id: str,
        slot: _UserSlot,
        result: SyncResult,
        crash: Optional[str],
    ) -> None:
        with self._lock:
            slot.running = False
            slot.last_result = result
            if self._slots.get(user_id) is not slot:
                # Cancelled while the cycle ran.
                return

            status = slot.status
            status.last_sync_at = result.finished_at or now_ms()

            if result.cancelled:
                status.state = SchedulerState.IDLE
                status.last_outcome = "cancelled"
            elif result.success:
                status.state = SchedulerState.SUCCESS
                status.last_outcome = "success"
                status.last_error = None
                status.attempts = 0
            else:
                status.attempts += 1
                status.last_outcome = "partial" if result.partial else "failed"
                status.last_error = crash or result.message
                delay = self.backoff.delay_for(status.attempts)
                status.state = SchedulerState.RETRYABLE_FAILURE
                status.next_retry_in = delay
                slot.retry_timer = self._start_timer(delay, self._on_retry, user_id)
                logger.info(
                    "Sync for %s failed (attempt %d); retrying in %.0fs",
                    user_id,
                    status.attempts,
                    delay,
                    extra=sync_context(user_id, attempt=status.attempts),
                )

            self._persist_status(status)

            rerun = slot.rerun and not self._shutdown
            slot.rerun = False

        if rerun:
            self.trigger_sync(user_id, "coalesced")

    # === Timers ===

    def _start_timer(self, delay: float, callback: Callable[[str], None], user_id: str) -> Any:
        timer = self._timer_factory(delay, callback, args=(user_id,))
        timer.daemon = True
        timer.start()
        return timer

    @staticmethod
    def _cancel_timer(slot: _UserSlot, name: str) -> None:
        timer = getattr(slot, name)
        if timer is not None:
            timer.cancel()
            setattr(slot, name, None)

    def _on_retry(self, user_id: str) -> None:
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is None:
                return
            slot.retry_timer = None
        self.trigger_sync(user_id, "retry")

    def _on_periodic(self, user_id: str) -> None:
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is None or self._shutdown:
                return
            minutes = slot.status.periodic_minutes or self.settings.interval_minutes
            slot.periodic_timer = self._start_timer(minutes * 60, self._on_periodic, user_id)
        self.trigger_sync(user_id, "periodic")


__all__ = [
    "BackoffPolicy",
    "SchedulerSettings",
    "SchedulerState",
    "SyncScheduler",
    "UserSyncStatus",
    "status_key",
]
