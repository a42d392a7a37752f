"""Change tracking: every local mutation lands in the pending-change log."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from ..models import ChangeType, Entity, EntityType, PendingChange, entity_key, now_ms
from ..storage.store import LOCATION_PARENTS, EntityId, LocalStore

logger = logging.getLogger("couponsync.sync.tracker")

Payload = Union[str, Dict[str, Any], None]


def encode_payload(payload: Payload) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, sort_keys=True)


class ChangeTracker:
    """Writes entities and their pending changes in one transaction."""

    def __init__(self, store: LocalStore):
        self.store = store

    def record_change(
        self,
        user_id: str,
        change_type: ChangeType,
        entity_type: EntityType,
        entity_id: EntityId,
        payload: Payload = None,
    ) -> int:
        """Append one change to the log and return its id.

        Call inside the store transaction that performs the entity write so the
        record and the change commit together.
        """
        entity_id = str(entity_id)
        with self.store.transaction():
            if change_type == ChangeType.CREATE and self.store.has_unsynced_change(
                entity_type, entity_id, ChangeType.CREATE
            ):
                # A second create for the same record supersedes the first as an update.
                change_type = ChangeType.UPDATE

            timestamp = max(now_ms(), self.store.last_change_timestamp() + 1)
            change = PendingChange(
                user_id=user_id,
                change_type=change_type,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=encode_payload(payload),
                timestamp=timestamp,
            )
            change_id = self.store.append_pending_change(change)

        logger.debug(
            "Recorded %s %s/%s for %s (change %d)",
            change_type.value,
            entity_type.value,
            entity_id,
            user_id,
            change_id,
        )
        return change_id

    @contextmanager
    def track(
        self,
        user_id: str,
        change_type: ChangeType,
        entity_type: EntityType,
        entity_id: EntityId = "",
        payload: Payload = None,
    ) -> Iterator[PendingChange]:
        """Open a transaction for an entity write and log the change before commit.

        The yielded draft may be updated inside the block (for instance with
        the id assigned by the insert). If the block raises, neither the write
        nor the change is kept.
        """
        draft = PendingChange(
            user_id=user_id,
            change_type=change_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=encode_payload(payload),
        )
        with self.store.transaction():
            yield draft
            draft.id = self.record_change(
                draft.user_id,
                draft.change_type,
                draft.entity_type,
                draft.entity_id,
                draft.payload,
            )

    def save(
        self,
        entity_type: EntityType,
        entity: Entity,
        change_type: Optional[ChangeType] = None,
    ) -> Tuple[Entity, int]:
        """Insert or update an entity (with its locations) and log the change."""
        with self.track(entity.user_id, change_type or ChangeType.CREATE, entity_type) as change:
            if change_type is None and entity.id is not None:
                if self.store.get_entity(entity_type, entity.id) is not None:
                    change.change_type = ChangeType.UPDATE
            self.store.upsert_entity(entity_type, entity)
            if entity_type in LOCATION_PARENTS:
                self.store.replace_locations(entity_type, entity.id, entity.locations)
            change.entity_id = entity_key(entity)
            change.payload = encode_payload(entity.to_dict())
        return entity, change.id

    def remove(self, user_id: str, entity_type: EntityType, entity_id: EntityId) -> Optional[int]:
        """Delete an entity and log the deletion; returns None when nothing was deleted."""
        with self.store.transaction():
            if not self.store.delete_entity(entity_type, entity_id):
                return None
            return self.record_change(user_id, ChangeType.DELETE, entity_type, entity_id)


__all__ = ["ChangeTracker", "encode_payload"]
