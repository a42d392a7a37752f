"""Sync protocol data structures exchanged with the remote backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import (
    ChangeType,
    Entity,
    EntityType,
    IdMapping,
    PendingChange,
    User,
    entity_from_dict,
    now_ms,
)

# Remote-assigned identifiers for sub-records; never valid as local ids.
_LOCATION_REMOTE_KEYS = ("id", "coupon_id", "membership_id")


@dataclass
class SyncChange:
    """A pending change as sent in a bulk sync request."""

    change_type: ChangeType
    entity_type: EntityType
    local_id: str
    timestamp: int
    entity_id: Optional[str] = None  # remote id, when one is known
    change_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_pending(cls, change: PendingChange, remote_id: Optional[str] = None) -> "SyncChange":
        data = change.payload_dict()
        if remote_id is not None and data:
            data["id"] = remote_id
        return cls(
            change_type=change.change_type,
            entity_type=change.entity_type,
            local_id=change.entity_id,
            timestamp=change.timestamp,
            entity_id=remote_id,
            change_data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_type": self.change_type.value.upper(),
            "entity_type": self.entity_type.value.upper(),
            "entity_id": self.entity_id,
            "local_id": self.local_id,
            "timestamp": self.timestamp,
            "change_data": self.change_data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncChange":
        return cls(
            change_type=ChangeType(str(data["change_type"]).lower()),
            entity_type=EntityType(str(data["entity_type"]).lower()),
            local_id=str(data.get("local_id", "")),
            timestamp=int(data.get("timestamp", 0)),
            entity_id=data.get("entity_id"),
            change_data=data.get("change_data") or {},
        )


@dataclass
class SyncRequest:
    """Batch of changes pushed in one upload phase."""

    user_id: str
    changes: List[SyncChange] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "changes": [c.to_dict() for c in self.changes],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncRequest":
        return cls(
            user_id=str(data["user_id"]),
            changes=[SyncChange.from_dict(c) for c in data.get("changes", [])],
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class SyncResponse:
    """Remote acknowledgement of a bulk sync request."""

    success: bool
    message: str = ""
    timestamp: int = field(default_factory=now_ms)
    id_mappings: List[IdMapping] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp,
            "id_mappings": [m.to_dict() for m in self.id_mappings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncResponse":
        return cls(
            success=bool(data.get("success", False)),
            message=str(data.get("message") or ""),
            timestamp=int(data.get("timestamp") or now_ms()),
            id_mappings=[IdMapping.from_dict(m) for m in data.get("id_mappings") or []],
        )


@dataclass
class RemoteEntity:
    """An entity from a downloaded snapshot, keyed by its remote id."""

    entity_type: EntityType
    remote_id: str
    entity: Entity

    @classmethod
    def from_remote(cls, entity_type: EntityType, data: Dict[str, Any]) -> "RemoteEntity":
        """Decode a remote record; the local id is left unset for the merge to resolve."""
        if entity_type == EntityType.USER:
            user = entity_from_dict(entity_type, data)
            return cls(entity_type=entity_type, remote_id=user.user_id, entity=user)

        payload = dict(data)
        remote_id = str(payload.pop("id"))
        payload["locations"] = [
            {k: v for k, v in loc.items() if k not in _LOCATION_REMOTE_KEYS}
            for loc in payload.get("locations") or []
        ]
        return cls(
            entity_type=entity_type,
            remote_id=remote_id,
            entity=entity_from_dict(entity_type, payload),
        )


def encode_entity(entity: Entity, remote_id: Optional[str] = None) -> Dict[str, Any]:
    """Remote JSON body for a single-entity create or update."""
    data = entity.to_dict()
    data.pop("locations", None)
    if isinstance(entity, User):
        return data
    data["local_id"] = None if entity.id is None else str(entity.id)
    data["id"] = remote_id
    return data


__all__ = [
    "SyncChange",
    "SyncRequest",
    "SyncResponse",
    "RemoteEntity",
    "encode_entity",
]
