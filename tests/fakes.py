"""In-memory stand-ins for the remote backend, timers and executor used in tests."""

from __future__ import annotations

import copy
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Tuple

from couponsync.models import (
    ChangeType,
    Coupon,
    EntityType,
    IdMapping,
    Location,
    Membership,
    now_ms,
)
from couponsync.sync.protocol import RemoteEntity, SyncChange, SyncResponse
from couponsync.sync.remote import RemoteBackend

DAY_MS = 24 * 60 * 60 * 1000


def make_coupon(user_id: str = "user-1", **overrides: Any) -> Coupon:
    fields: Dict[str, Any] = {
        "user_id": user_id,
        "code": "SAVE20",
        "merchant_name": "Corner Grocer",
        "expiration_date": now_ms() + 10 * DAY_MS,
        "discount_value": 20.0,
        "created_date": 1_700_000_000_000,
    }
    fields.update(overrides)
    return Coupon(**fields)


def make_membership(user_id: str = "user-1", **overrides: Any) -> Membership:
    fields: Dict[str, Any] = {
        "user_id": user_id,
        "organization_name": "City Gym",
        "membership_number": "G-1001",
        "membership_type": "Premium",
        "start_date": now_ms() - 300 * DAY_MS,
        "renewal_date": now_ms() + 65 * DAY_MS,
        "monthly_fee": 30.0,
        "created_date": 1_700_000_000_000,
    }
    fields.update(overrides)
    return Membership(**fields)


def make_location(user_id: str = "user-1", **overrides: Any) -> Location:
    fields: Dict[str, Any] = {
        "user_id": user_id,
        "latitude": 47.6062,
        "longitude": -122.3321,
        "location_name": "Downtown",
        "created_date": 1_700_000_000_000,
    }
    fields.update(overrides)
    return Location(**fields)


class FakeRemote(RemoteBackend):
    """Remote backend that keeps records in dictionaries keyed by remote id."""

    def __init__(self) -> None:
        self.records: Dict[EntityType, Dict[str, Dict[str, Any]]] = {
            EntityType.COUPON: {},
            EntityType.MEMBERSHIP: {},
            EntityType.USER: {},
        }
        self.pushed: List[List[SyncChange]] = []
        self.fetch_calls: List[Tuple[str, EntityType]] = []
        self.push_error: Optional[Exception] = None
        self.fetch_errors: Dict[EntityType, Exception] = {}
        self.reject_message: Optional[str] = None
        self.on_fetch: Optional[Callable[[EntityType], None]] = None
        self.gate: Optional[threading.Event] = None
        self.fetch_started = threading.Event()
        self.max_active = 0
        self._active = 0
        self._active_lock = threading.Lock()
        self._next_id = 1000

    def seed(self, entity_type: EntityType, remote_id: str, entity: Any) -> Dict[str, Any]:
        """Store an entity as if another device had uploaded it."""
        data = entity.to_dict()
        data["id"] = remote_id
        self.records[entity_type][remote_id] = data
        return data

    def fetch_all(self, user_id: str, entity_type: EntityType) -> List[RemoteEntity]:
        with self._active_lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            self.fetch_calls.append((user_id, entity_type))
            self.fetch_started.set()
            if self.gate is not None:
                self.gate.wait(5)
            if self.on_fetch is not None:
                self.on_fetch(entity_type)
            error = self.fetch_errors.get(entity_type)
            if error is not None:
                raise error
            return [
                RemoteEntity.from_remote(entity_type, copy.deepcopy(record))
                for record in self.records[entity_type].values()
                if record.get("user_id") == user_id
            ]
        finally:
            with self._active_lock:
                self._active -= 1

    def push_changes(self, user_id: str, changes: List[SyncChange]) -> SyncResponse:
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append(list(changes))
        if self.reject_message is not None:
            return SyncResponse(success=False, message=self.reject_message)

        assigned: Dict[Tuple[EntityType, str], str] = {}
        mappings: List[IdMapping] = []
        for change in changes:
            resource = self.records[change.entity_type]
            key = (change.entity_type, change.local_id)
            remote_id = change.entity_id or assigned.get(key)

            if change.change_type == ChangeType.DELETE:
                if remote_id is not None:
                    resource.pop(remote_id, None)
                continue

            if remote_id is None:
                remote_id = str(self._next_id)
                self._next_id += 1
                assigned[key] = remote_id
                mappings.append(IdMapping(change.entity_type, change.local_id, remote_id))

            data = copy.deepcopy(change.change_data)
            if change.entity_type != EntityType.USER:
                data["id"] = remote_id
            resource[remote_id] = data

        return SyncResponse(success=True, id_mappings=mappings)


class FakeTimer:
    """Timer that only fires when a test calls :meth:`fire`."""

    def __init__(self, interval: float, function: Callable[..., Any], args: Tuple = ()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fired = True
            self.function(*self.args)


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[..., Any], args: Tuple = ()) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.started and not (t.cancelled or t.fired)]


class InlineExecutor:
    """Executor that runs submitted work immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass
