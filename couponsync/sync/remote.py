"""HTTP client for the remote CRUD + bulk sync backend."""

from __future__ import annotations

import json
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from ..errors import NetworkError, RemoteRejected
from ..models import Entity, EntityType
from .protocol import RemoteEntity, SyncChange, SyncRequest, SyncResponse, encode_entity

logger = logging.getLogger("couponsync.sync.remote")

DEFAULT_TIMEOUT = 30.0

RESOURCES: Dict[EntityType, str] = {
    EntityType.COUPON: "coupons",
    EntityType.MEMBERSHIP: "memberships",
    EntityType.USER: "users",
}

LOCATION_RESOURCES: Dict[EntityType, tuple] = {
    EntityType.COUPON: ("coupon_locations", "coupon_id"),
    EntityType.MEMBERSHIP: ("membership_locations", "membership_id"),
}


@dataclass
class RemoteSettings:
    """Settings for talking to the remote backend."""

    base_url: str = ""
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = "CouponSync/0.1"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RemoteSettings":
        raw = config.get("remote", {}) if config else {}
        return cls(
            base_url=str(raw.get("base_url", "")),
            api_key=str(raw.get("api_key", "")),
            timeout=float(raw.get("timeout", DEFAULT_TIMEOUT)),
            user_agent=str(raw.get("user_agent", "CouponSync/0.1")),
        )


class RemoteBackend(ABC):
    """What the sync engine needs from the remote side."""

    @abstractmethod
    def fetch_all(self, user_id: str, entity_type: EntityType) -> List[RemoteEntity]:
        """Return the full current snapshot of a user's entities of one type."""
        pass

    @abstractmethod
    def push_changes(self, user_id: str, changes: List[SyncChange]) -> SyncResponse:
        """Submit a batch of pending changes in order."""
        pass


class RemoteClient(RemoteBackend):
    """urllib-based client for the REST backend."""

    def __init__(self, settings: RemoteSettings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.base_url)

    # === Bulk sync ===

    def fetch_all(self, user_id: str, entity_type: EntityType) -> List[RemoteEntity]:
        if entity_type == EntityType.USER:
            data = self._request("GET", f"users/{quote(user_id, safe='')}")
            try:
                return [RemoteEntity.from_remote(entity_type, data)] if data else []
            except (KeyError, TypeError, ValueError) as e:
                raise RemoteRejected(f"Malformed user record: {e}") from e

        resource = RESOURCES.get(entity_type)
        if resource is None:
            raise ValueError(f"Entity type '{entity_type.value}' has no remote collection")

        records = self._request("GET", resource, query={"user_id": user_id}) or []
        entities: List[RemoteEntity] = []
        for record in records:
            try:
                record = dict(record)
                record["locations"] = self._fetch_locations(entity_type, str(record["id"]))
                entities.append(RemoteEntity.from_remote(entity_type, record))
            except (KeyError, TypeError, ValueError) as e:
                raise RemoteRejected(f"Malformed {entity_type.value} record: {e}") from e

        logger.debug("Fetched %d %s records for %s", len(entities), entity_type.value, user_id)
        return entities

    def push_changes(self, user_id: str, changes: List[SyncChange]) -> SyncResponse:
        request = SyncRequest(user_id=user_id, changes=list(changes))
        data = self._request("POST", "sync", body=request.to_dict())
        return _decode_response(data or {}, "sync")

    def _fetch_locations(self, parent_type: EntityType, remote_id: str) -> List[Dict[str, Any]]:
        resource, parent_key = LOCATION_RESOURCES[parent_type]
        return list(self._request("GET", resource, query={parent_key: remote_id}) or [])

    # === Single-entity CRUD ===

    def create_entity(self, entity_type: EntityType, entity: Entity) -> RemoteEntity:
        data = self._request("POST", RESOURCES[entity_type], body=encode_entity(entity))
        return RemoteEntity.from_remote(entity_type, data)

    def update_entity(self, entity_type: EntityType, remote_id: str, entity: Entity) -> RemoteEntity:
        path = f"{RESOURCES[entity_type]}/{quote(remote_id, safe='')}"
        data = self._request("PUT", path, body=encode_entity(entity, remote_id))
        return RemoteEntity.from_remote(entity_type, data)

    def delete_entity(self, entity_type: EntityType, remote_id: str) -> SyncResponse:
        path = f"{RESOURCES[entity_type]}/{quote(remote_id, safe='')}"
        return _decode_response(self._request("DELETE", path) or {"success": True}, "delete")

    def update_fcm_token(self, user_id: str, token: str) -> SyncResponse:
        data = self._request(
            "POST",
            "notifications/fcm-token",
            query={"user_id": user_id, "token": token},
        )
        return _decode_response(data or {"success": True}, "fcm-token")

    # === Transport ===

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self.settings.base_url:
            raise NetworkError("No remote base_url configured")

        url = f"{self.settings.base_url.rstrip('/')}/{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None

        req = Request(url, data=data, headers=self._build_headers(), method=method)

        try:
            with urlopen(req, timeout=self.settings.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as e:
            raise RemoteRejected(_error_message(e), status_code=e.code) from e
        except URLError as e:
            raise NetworkError(f"Connection error: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise NetworkError(f"Timed out after {self.settings.timeout}s: {method} {path}") from e
        except ConnectionError as e:
            raise NetworkError(f"Connection error: {e}") from e

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise RemoteRejected(f"Malformed response from {method} {path}: {e}") from e


def _decode_response(data: Any, operation: str) -> SyncResponse:
    try:
        return SyncResponse.from_dict(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise RemoteRejected(f"Malformed {operation} response: {e}") from e


def _error_message(error: HTTPError) -> str:
    try:
        body = error.read().decode("utf-8")
        payload = json.loads(body)
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
    except (OSError, ValueError):
        pass
    return f"HTTP error: {error.code} {error.reason}"


__all__ = ["RemoteBackend", "RemoteClient", "RemoteSettings", "RESOURCES"]
