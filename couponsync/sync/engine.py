"""Sync engine: upload pending changes, download snapshots, merge them locally."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set

from ..errors import LocalStorageError, RemoteRejected, SyncError
from ..logging_utils import sync_context
from ..models import (
    MILLIS_PER_HOUR,
    SYNCABLE_TYPES,
    EntityType,
    IdMapping,
    now_ms,
)
from ..storage.store import LocalStore
from .conflict import ConflictResolver, ConflictStrategy
from .protocol import RemoteEntity, SyncChange
from .remote import RemoteBackend

logger = logging.getLogger("couponsync.sync.engine")

DEFAULT_ENTITY_TYPES = (EntityType.COUPON, EntityType.MEMBERSHIP)


class PhaseStatus(str, Enum):
    """Outcome of one phase of a sub-cycle."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class SyncSettings:
    """Settings for sync cycles."""

    enabled: bool = True
    entity_types: tuple = DEFAULT_ENTITY_TYPES
    conflict_strategy: str = "newest_wins"
    retention_hours: int = 168
    auto_start: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}
        storage = config.get("storage", {}) if config else {}
        types = raw.get("entity_types") or [t.value for t in DEFAULT_ENTITY_TYPES]
        return cls(
            enabled=bool(raw.get("enabled", True)),
            entity_types=tuple(EntityType(str(t).lower()) for t in types),
            conflict_strategy=str(raw.get("conflict_strategy", "newest_wins")),
            retention_hours=int(storage.get("retention_hours", 168)),
            auto_start=bool(raw.get("auto_start", False)),
        )


@dataclass
class SubCycleResult:
    """Result of the upload/download/merge sub-cycle for one entity type."""

    entity_type: EntityType
    upload: PhaseStatus = PhaseStatus.PENDING
    download: PhaseStatus = PhaseStatus.PENDING
    uploaded: int = 0
    inserted: int = 0
    updated: int = 0
    kept_local: int = 0
    unchanged: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return (
            self.upload in (PhaseStatus.SUCCESS, PhaseStatus.SKIPPED)
            and self.download == PhaseStatus.SUCCESS
        )

    @property
    def partial(self) -> bool:
        """Upload went through but the download or merge did not complete."""
        return self.upload == PhaseStatus.SUCCESS and self.download != PhaseStatus.SUCCESS

    @property
    def cancelled(self) -> bool:
        return PhaseStatus.CANCELLED in (self.upload, self.download)

    def fail(self, error: SyncError) -> None:
        self.error = str(error)
        self.error_kind = error.kind
        self.retryable = error.retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "upload": self.upload.value,
            "download": self.download.value,
            "uploaded": self.uploaded,
            "inserted": self.inserted,
            "updated": self.updated,
            "kept_local": self.kept_local,
            "unchanged": self.unchanged,
            "success": self.success,
            "partial": self.partial,
            "error": self.error,
            "error_kind": self.error_kind,
            "retryable": self.retryable,
        }


@dataclass
class SyncResult:
    """Result of a sync cycle: one sub-result per entity type."""

    user_id: str
    started_at: int = field(default_factory=now_ms)
    finished_at: Optional[int] = None
    sub_results: Dict[EntityType, SubCycleResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.sub_results) and all(r.success for r in self.sub_results.values())

    @property
    def partial(self) -> bool:
        """Some work landed but the cycle as a whole did not succeed."""
        if self.success:
            return False
        results = list(self.sub_results.values())
        return any(r.partial for r in results) or any(r.success for r in results)

    @property
    def cancelled(self) -> bool:
        return any(r.cancelled for r in self.sub_results.values())

    @property
    def retryable(self) -> bool:
        return any(r.retryable for r in self.sub_results.values() if not r.success)

    @property
    def failed_types(self) -> List[EntityType]:
        return [t for t, r in self.sub_results.items() if not r.success]

    @property
    def errors(self) -> List[str]:
        return [
            f"{t.value}: {r.error}" for t, r in self.sub_results.items() if r.error
        ]

    @property
    def message(self) -> str:
        if self.success:
            return "Sync completed"
        if self.cancelled:
            return "Sync cancelled"
        return "; ".join(self.errors) or "Sync incomplete"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "success": self.success,
            "partial": self.partial,
            "cancelled": self.cancelled,
            "retryable": self.retryable,
            "failed_types": [t.value for t in self.failed_types],
            "message": self.message,
            "sub_results": {t.value: r.to_dict() for t, r in self.sub_results.items()},
        }


MergeHandler = Callable[[str, RemoteEntity, Set[str], SubCycleResult], None]

# Merge method per syncable entity type; locations merge with their parent.
MERGE_HANDLERS: Dict[EntityType, str] = {
    EntityType.COUPON: "_merge_parent",
    EntityType.MEMBERSHIP: "_merge_parent",
    EntityType.USER: "_merge_user",
}

_unhandled = [t.value for t in SYNCABLE_TYPES if t not in MERGE_HANDLERS]
if _unhandled:
    raise RuntimeError(f"No merge handler for: {', '.join(_unhandled)}")


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SyncEngine:
    """Runs sync cycles for one local store against one remote backend.

    Each configured entity type gets an independent sub-cycle: upload its
    pending changes, download the remote snapshot, merge it, then advance the
    watermark. A failure in one sub-cycle does not stop the others.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        resolver: Optional[ConflictResolver] = None,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.resolver = resolver or ConflictResolver(
            ConflictStrategy(self.settings.conflict_strategy)
        )
        self._clock = clock
        self._user_locks: Dict[str, _UserLock] = {}
        self._locks_guard = threading.Lock()

        self._merge_handlers: Dict[EntityType, MergeHandler] = {
            entity_type: getattr(self, name) for entity_type, name in MERGE_HANDLERS.items()
        }

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        """Hold the user's cycle lock; the entry is dropped once nobody holds or waits on it."""
        with self._locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._user_locks[user_id]

    @property
    def active_users(self) -> List[str]:
        """Users with a cycle running or waiting to run."""
        with self._locks_guard:
            return list(self._user_locks)

    def sync_cycle(
        self,
        user_id: str,
        entity_types: Optional[Sequence[EntityType]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Run one full sync cycle for a user."""
        types = list(entity_types or self.settings.entity_types)
        for entity_type in types:
            if entity_type not in self._merge_handlers:
                raise ValueError(f"Entity type '{entity_type.value}' is not syncable")

        with self._user_lock(user_id):
            result = SyncResult(user_id=user_id, started_at=self._clock())
            logger.info(
                "Sync cycle started for %s (%s)",
                user_id,
                ", ".join(t.value for t in types),
            )
            for entity_type in types:
                if _is_set(cancel_event):
                    result.sub_results[entity_type] = SubCycleResult(
                        entity_type,
                        upload=PhaseStatus.CANCELLED,
                        download=PhaseStatus.CANCELLED,
                    )
                    continue
                result.sub_results[entity_type] = self._run_subcycle(
                    user_id, entity_type, cancel_event
                )
            result.finished_at = self._clock()

        if result.success:
            logger.info("Sync cycle for %s finished", user_id, extra=sync_context(user_id))
        else:
            logger.warning(
                "Sync cycle for %s incomplete: %s", user_id, result.message, extra=sync_context(user_id)
            )
        return result

    def _run_subcycle(
        self,
        user_id: str,
        entity_type: EntityType,
        cancel_event: Optional[threading.Event],
    ) -> SubCycleResult:
        sub = SubCycleResult(entity_type)
        context = sync_context(user_id, entity_type)

        try:
            self._upload(user_id, entity_type, sub)
        except SyncError as e:
            logger.warning(
                "Upload of %s changes for %s failed: %s", entity_type.value, user_id, e, extra=context
            )
            sub.upload = PhaseStatus.FAILED
            sub.download = PhaseStatus.SKIPPED
            sub.fail(e)
            return sub

        if _is_set(cancel_event):
            sub.download = PhaseStatus.CANCELLED
            return sub

        try:
            remote_entities = self.remote.fetch_all(user_id, entity_type)
        except SyncError as e:
            logger.warning(
                "Download of %s for %s failed: %s", entity_type.value, user_id, e, extra=context
            )
            sub.download = PhaseStatus.FAILED
            sub.fail(e)
            return sub

        if _is_set(cancel_event):
            sub.download = PhaseStatus.CANCELLED
            return sub

        try:
            self._merge(user_id, entity_type, remote_entities, sub)
            self.store.set_watermark(user_id, entity_type, self._clock())
        except LocalStorageError as e:
            logger.error(
                "Merge of %s for %s failed: %s", entity_type.value, user_id, e, extra=context
            )
            sub.download = PhaseStatus.FAILED
            sub.fail(e)
            return sub

        sub.download = PhaseStatus.SUCCESS
        logger.debug("Sub-cycle %s for %s: %s", entity_type.value, user_id, sub.to_dict())
        return sub

    # === Upload ===

    def _upload(self, user_id: str, entity_type: EntityType, sub: SubCycleResult) -> None:
        changes = self.store.list_unsynced_changes(user_id, [entity_type])
        if not changes:
            sub.upload = PhaseStatus.SKIPPED
            return

        batch = [SyncChange.from_pending(c, self._remote_id(c.entity_type, c.entity_id)) for c in changes]
        response = self.remote.push_changes(user_id, batch)
        if not response.success:
            raise RemoteRejected(response.message or "Remote rejected the sync request")

        acked_at = self._clock()
        with self.store.transaction():
            for change in changes:
                self.store.mark_synced(change.id, acked_at)
            for mapping in response.id_mappings:
                self.store.record_id_mapping(mapping)

        sub.uploaded = len(changes)
        sub.upload = PhaseStatus.SUCCESS
        logger.info("Uploaded %d %s changes for %s", len(changes), entity_type.value, user_id)

        cutoff = acked_at - self.settings.retention_hours * MILLIS_PER_HOUR
        try:
            self.store.purge_synced(user_id, cutoff)
        except LocalStorageError as e:
            logger.warning("Could not purge synced changes for %s: %s", user_id, e)

    def _remote_id(self, entity_type: EntityType, local_id: str) -> Optional[str]:
        if entity_type == EntityType.USER:
            return local_id
        return self.store.remote_id_for(entity_type, local_id)

    # === Merge ===

    def _merge(
        self,
        user_id: str,
        entity_type: EntityType,
        remote_entities: List[RemoteEntity],
        sub: SubCycleResult,
    ) -> None:
        handler = self._merge_handlers[entity_type]
        pending_ids = self.store.unsynced_entity_ids(user_id, entity_type)
        for remote_entity in remote_entities:
            handler(user_id, remote_entity, pending_ids, sub)

    def _merge_parent(
        self,
        user_id: str,
        remote_entity: RemoteEntity,
        pending_ids: Set[str],
        sub: SubCycleResult,
    ) -> None:
        """Merge a coupon or membership together with its locations."""
        entity_type = remote_entity.entity_type
        incoming = remote_entity.entity
        remote_id = remote_entity.remote_id

        with self.store.transaction():
            local = None
            local_id = self.store.local_id_for(entity_type, remote_id)
            if local_id is not None:
                local = self.store.get_entity(entity_type, int(local_id))
                if local is None and local_id in pending_ids:
                    # Deleted locally; the deletion has not been acknowledged yet.
                    sub.kept_local += 1
                    return
            else:
                local = self.store.find_unmapped_match(entity_type, incoming)
                if local is not None:
                    self.store.record_id_mapping(IdMapping(entity_type, str(local.id), remote_id))

            if local is None:
                incoming.id = int(local_id) if local_id is not None else None
                self.store.upsert_entity(entity_type, incoming)
                self.store.replace_locations(entity_type, incoming.id, incoming.locations)
                if local_id is None:
                    self.store.record_id_mapping(IdMapping(entity_type, str(incoming.id), remote_id))
                sub.inserted += 1
                return

            resolution = self.resolver.resolve(
                local, incoming, has_pending_change=str(local.id) in pending_ids
            )
            if not resolution.use_remote:
                sub.kept_local += 1
                return

            incoming.id = local.id
            row_changed = _row(incoming) != _row(local)
            if row_changed:
                self.store.upsert_entity(entity_type, incoming)
            locations_changed = self.store.replace_locations(
                entity_type, local.id, incoming.locations
            )
            if row_changed or locations_changed:
                sub.updated += 1
            else:
                sub.unchanged += 1

    def _merge_user(
        self,
        user_id: str,
        remote_entity: RemoteEntity,
        pending_ids: Set[str],
        sub: SubCycleResult,
    ) -> None:
        incoming = remote_entity.entity
        with self.store.transaction():
            local = self.store.get_entity(EntityType.USER, remote_entity.remote_id)
            if local is None:
                self.store.upsert_entity(EntityType.USER, incoming)
                sub.inserted += 1
                return

            resolution = self.resolver.resolve(
                local, incoming, has_pending_change=local.user_id in pending_ids
            )
            if not resolution.use_remote:
                sub.kept_local += 1
                return

            # The last sync date is tracked on this device only.
            incoming.last_sync_date = local.last_sync_date
            if _row(incoming) == _row(local):
                sub.unchanged += 1
                return
            self.store.upsert_entity(EntityType.USER, incoming)
            sub.updated += 1


def _row(entity: Any) -> Dict[str, Any]:
    data = entity.to_dict()
    data.pop("locations", None)
    return data


def _is_set(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()


__all__ = [
    "PhaseStatus",
    "SubCycleResult",
    "SyncEngine",
    "SyncResult",
    "SyncSettings",
    "DEFAULT_ENTITY_TYPES",
    "MERGE_HANDLERS",
]
