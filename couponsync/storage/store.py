"""SQLite-backed local store for entities, the pending-change log and sync metadata."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from ..errors import LocalStorageError
from ..models import (
    ChangeType,
    Entity,
    EntityType,
    IdMapping,
    Location,
    PendingChange,
    SyncMetadata,
    entity_from_dict,
    now_ms,
)

logger = logging.getLogger("couponsync.storage.store")

EntityId = Union[int, str]
ChangeListener = Callable[[EntityType], None]

TABLES: Dict[EntityType, str] = {
    EntityType.COUPON: "coupons",
    EntityType.MEMBERSHIP: "memberships",
    EntityType.LOCATION: "locations",
    EntityType.USER: "users",
}

KEY_COLUMNS: Dict[EntityType, str] = {
    EntityType.COUPON: "id",
    EntityType.MEMBERSHIP: "id",
    EntityType.LOCATION: "id",
    EntityType.USER: "user_id",
}

# Parent column in the locations table for each location-owning entity type.
LOCATION_PARENTS: Dict[EntityType, str] = {
    EntityType.COUPON: "coupon_id",
    EntityType.MEMBERSHIP: "membership_id",
}

# Fields used to pair an unmapped remote record with a local record created offline.
NATURAL_KEYS: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.COUPON: ("code", "merchant_name", "created_date"),
    EntityType.MEMBERSHIP: ("membership_number", "organization_name", "created_date"),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS coupons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    code TEXT NOT NULL,
    merchant_name TEXT NOT NULL,
    discount_type TEXT NOT NULL,
    discount_value REAL NOT NULL,
    discount_value_currency TEXT NOT NULL DEFAULT 'USD',
    min_purchase_amount REAL,
    description TEXT,
    expiration_date INTEGER NOT NULL,
    created_date INTEGER NOT NULL,
    category TEXT,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    is_used INTEGER NOT NULL DEFAULT 0,
    is_archived INTEGER NOT NULL DEFAULT 0,
    image_url TEXT,
    barcode_data TEXT,
    notes TEXT,
    last_modified INTEGER
);
CREATE INDEX IF NOT EXISTS idx_coupons_user ON coupons(user_id);

CREATE TABLE IF NOT EXISTS memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    organization_name TEXT NOT NULL,
    membership_number TEXT NOT NULL,
    membership_type TEXT NOT NULL,
    start_date INTEGER NOT NULL,
    renewal_date INTEGER NOT NULL,
    annual_fee REAL,
    monthly_fee REAL,
    currency TEXT NOT NULL DEFAULT 'USD',
    benefits TEXT,
    notes TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    reminder_enabled INTEGER NOT NULL DEFAULT 1,
    reminder_days_before_renewal INTEGER NOT NULL DEFAULT 7,
    created_date INTEGER NOT NULL,
    last_modified INTEGER
);
CREATE INDEX IF NOT EXISTS idx_memberships_user ON memberships(user_id);

CREATE TABLE IF NOT EXISTS locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    coupon_id INTEGER,
    membership_id INTEGER,
    user_id TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    radius INTEGER NOT NULL DEFAULT 150,
    geofence_id TEXT NOT NULL DEFAULT '',
    location_name TEXT,
    address TEXT,
    created_date INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_locations_coupon ON locations(coupon_id);
CREATE INDEX IF NOT EXISTS idx_locations_membership ON locations(membership_id);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    profile_image_url TEXT,
    fcm_token TEXT,
    default_geofence_radius INTEGER NOT NULL DEFAULT 150,
    notifications_enabled INTEGER NOT NULL DEFAULT 1,
    proximity_notifications_enabled INTEGER NOT NULL DEFAULT 1,
    expiration_notifications_enabled INTEGER NOT NULL DEFAULT 1,
    membership_notifications_enabled INTEGER NOT NULL DEFAULT 1,
    created_date INTEGER NOT NULL,
    last_modified INTEGER,
    last_sync_date INTEGER
);

CREATE TABLE IF NOT EXISTS pending_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    change_type TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '',
    timestamp INTEGER NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    synced_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_pending_user_synced ON pending_changes(user_id, synced, timestamp);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    last_updated INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS id_mappings (
    entity_type TEXT NOT NULL,
    local_id TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (entity_type, local_id),
    UNIQUE (entity_type, remote_id)
);
"""


def watermark_key(user_id: str, entity_type: EntityType) -> str:
    return f"watermark:{entity_type.value}:{user_id}"


class LocalStore:
    """Durable record storage for CouponSync.

    One connection is shared by all threads and guarded by a re-entrant lock.
    Writes that must land together go through :meth:`transaction`; public write
    methods open their own transaction when called outside one.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._touched: Set[EntityType] = set()
        self._listeners: Dict[EntityType, List[ChangeListener]] = {}

    def initialize(self) -> None:
        """Open the database and create tables."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise LocalStorageError(f"Failed to open store at {self.db_path}: {e}") from e
        logger.info("Local store ready at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # === Transactions ===

    @contextmanager
    def transaction(self) -> Iterator["LocalStore"]:
        """Run a group of writes atomically; nested calls join the outer one."""
        self._lock.acquire()
        outermost = self._depth == 0
        touched: Set[EntityType] = set()
        try:
            if outermost:
                self._touched = set()
                self._raw_execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._rollback()
                raise
            self._depth -= 1
            if outermost:
                try:
                    self._raw_execute("COMMIT")
                except LocalStorageError:
                    self._rollback()
                    raise
                touched = self._touched
                self._touched = set()
        finally:
            self._lock.release()

        for entity_type in touched:
            self._notify(entity_type)

    def _rollback(self) -> None:
        try:
            self._require_conn().execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("Rollback failed: %s", e)
        self._touched = set()

    def _require_conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise LocalStorageError("Store not initialized")
        return self._conn

    def _raw_execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._require_conn().execute(sql, params)
        except sqlite3.Error as e:
            raise LocalStorageError(f"SQLite error: {e}") from e

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._raw_execute(sql, params).fetchall()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self.transaction():
            return self._raw_execute(sql, params)

    # === Subscriptions ===

    def subscribe(self, entity_type: EntityType, callback: ChangeListener) -> Callable[[], None]:
        """Call ``callback`` after every committed write touching ``entity_type``."""
        with self._lock:
            self._listeners.setdefault(entity_type, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(entity_type, [])
                if callback in listeners:
                    listeners.remove(callback)

        return _unsubscribe

    def _mark_touched(self, entity_type: EntityType) -> None:
        self._touched.add(entity_type)

    def _notify(self, entity_type: EntityType) -> None:
        with self._lock:
            listeners = list(self._listeners.get(entity_type, []))
        for listener in listeners:
            try:
                listener(entity_type)
            except Exception:
                logger.exception("Change listener for %s failed", entity_type.value)

    # === Entities ===

    def get_entity(self, entity_type: EntityType, entity_id: EntityId) -> Optional[Entity]:
        table = TABLES[entity_type]
        key = KEY_COLUMNS[entity_type]
        rows = self._query(f"SELECT * FROM {table} WHERE {key} = ?", (entity_id,))
        if not rows:
            return None
        return self._hydrate(entity_type, rows[0])

    def upsert_entity(self, entity_type: EntityType, entity: Entity) -> Entity:
        """Insert or replace an entity row; assigns ``entity.id`` on first insert.

        Locations nested in a coupon or membership are not written here; see
        :meth:`replace_locations`.
        """
        table = TABLES[entity_type]
        key = KEY_COLUMNS[entity_type]
        row = entity.to_dict()
        row.pop("locations", None)
        if row.get(key) is None:
            row.pop(key, None)

        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({placeholders})"
        )
        with self.transaction():
            cursor = self._raw_execute(sql, [row[c] for c in columns])
            if key == "id" and entity.id is None:
                entity.id = int(cursor.lastrowid)
            self._mark_touched(entity_type)
        return entity

    def delete_entity(self, entity_type: EntityType, entity_id: EntityId) -> bool:
        table = TABLES[entity_type]
        key = KEY_COLUMNS[entity_type]
        with self.transaction():
            cursor = self._raw_execute(f"DELETE FROM {table} WHERE {key} = ?", (entity_id,))
            parent_column = LOCATION_PARENTS.get(entity_type)
            if parent_column:
                self._raw_execute(f"DELETE FROM locations WHERE {parent_column} = ?", (entity_id,))
                self._mark_touched(EntityType.LOCATION)
            self._mark_touched(entity_type)
            return cursor.rowcount > 0

    def list_entities(
        self,
        entity_type: EntityType,
        user_id: str,
        where: str = "",
        params: Sequence[Any] = (),
        order_by: str = "",
    ) -> List[Entity]:
        """List a user's entities with an optional extra SQL filter."""
        table = TABLES[entity_type]
        sql = f"SELECT * FROM {table} WHERE user_id = ?"
        if where:
            sql += f" AND ({where})"
        if order_by:
            sql += f" ORDER BY {order_by}"
        rows = self._query(sql, (user_id, *params))
        return [self._hydrate(entity_type, row) for row in rows]

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        rows = self._query(sql, params)
        return rows[0][0] if rows else None

    def _hydrate(self, entity_type: EntityType, row: sqlite3.Row) -> Entity:
        entity = entity_from_dict(entity_type, dict(row))
        if entity_type in LOCATION_PARENTS:
            entity.locations = self.list_locations(entity_type, entity.id)
        return entity

    # === Locations ===

    def list_locations(self, parent_type: EntityType, parent_id: EntityId) -> List[Location]:
        column = LOCATION_PARENTS[parent_type]
        rows = self._query(
            f"SELECT * FROM locations WHERE {column} = ? ORDER BY id",
            (parent_id,),
        )
        return [Location.from_dict(dict(row)) for row in rows]

    def replace_locations(
        self,
        parent_type: EntityType,
        parent_id: int,
        locations: Sequence[Location],
    ) -> bool:
        """Replace all locations of a parent; returns False when nothing changed."""
        column = LOCATION_PARENTS[parent_type]
        current = sorted(loc.signature() for loc in self.list_locations(parent_type, parent_id))
        incoming = sorted(loc.signature() for loc in locations)
        if current == incoming:
            return False

        with self.transaction():
            self._raw_execute(f"DELETE FROM locations WHERE {column} = ?", (parent_id,))
            for location in locations:
                location.id = None
                location.coupon_id = parent_id if parent_type == EntityType.COUPON else None
                location.membership_id = parent_id if parent_type == EntityType.MEMBERSHIP else None
                self.upsert_entity(EntityType.LOCATION, location)
            self._mark_touched(parent_type)
        return True

    # === Pending-change log ===

    def append_pending_change(self, change: PendingChange) -> int:
        with self.transaction():
            cursor = self._raw_execute(
                """
                INSERT INTO pending_changes
                    (user_id, change_type, entity_type, entity_id, payload, timestamp, synced, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change.user_id,
                    change.change_type.value,
                    change.entity_type.value,
                    change.entity_id,
                    change.payload,
                    change.timestamp,
                    int(change.synced),
                    change.synced_at,
                ),
            )
            change.id = int(cursor.lastrowid)
        return change.id

    def last_change_timestamp(self) -> int:
        value = self.scalar("SELECT MAX(timestamp) FROM pending_changes")
        return int(value) if value is not None else 0

    def list_unsynced_changes(
        self,
        user_id: str,
        entity_types: Optional[Sequence[EntityType]] = None,
    ) -> List[PendingChange]:
        """Unsynced changes for a user, oldest first."""
        sql = "SELECT * FROM pending_changes WHERE user_id = ? AND synced = 0"
        params: List[Any] = [user_id]
        if entity_types:
            sql += f" AND entity_type IN ({', '.join('?' for _ in entity_types)})"
            params.extend(t.value for t in entity_types)
        sql += " ORDER BY timestamp ASC, id ASC"
        return [PendingChange.from_dict(dict(row)) for row in self._query(sql, params)]

    def list_changes(self, user_id: str) -> List[PendingChange]:
        rows = self._query(
            "SELECT * FROM pending_changes WHERE user_id = ? ORDER BY timestamp ASC, id ASC",
            (user_id,),
        )
        return [PendingChange.from_dict(dict(row)) for row in rows]

    def count_unsynced(self, user_id: str) -> int:
        value = self.scalar(
            "SELECT COUNT(*) FROM pending_changes WHERE user_id = ? AND synced = 0",
            (user_id,),
        )
        return int(value or 0)

    def has_unsynced_change(
        self,
        entity_type: EntityType,
        entity_id: EntityId,
        change_type: Optional[ChangeType] = None,
    ) -> bool:
        sql = (
            "SELECT 1 FROM pending_changes "
            "WHERE entity_type = ? AND entity_id = ? AND synced = 0"
        )
        params: List[Any] = [entity_type.value, str(entity_id)]
        if change_type is not None:
            sql += " AND change_type = ?"
            params.append(change_type.value)
        return bool(self._query(sql + " LIMIT 1", params))

    def unsynced_entity_ids(self, user_id: str, entity_type: EntityType) -> Set[str]:
        rows = self._query(
            "SELECT DISTINCT entity_id FROM pending_changes "
            "WHERE user_id = ? AND entity_type = ? AND synced = 0",
            (user_id, entity_type.value),
        )
        return {str(row["entity_id"]) for row in rows}

    def mark_synced(self, change_id: int, synced_at: Optional[int] = None) -> None:
        self._write(
            "UPDATE pending_changes SET synced = 1, synced_at = ? WHERE id = ?",
            (synced_at or now_ms(), change_id),
        )

    def purge_synced(self, user_id: str, older_than: int) -> int:
        """Delete acknowledged changes whose sync time is older than ``older_than``."""
        cursor = self._write(
            "DELETE FROM pending_changes WHERE user_id = ? AND synced = 1 AND synced_at < ?",
            (user_id, older_than),
        )
        if cursor.rowcount:
            logger.debug("Purged %d synced changes for %s", cursor.rowcount, user_id)
        return cursor.rowcount

    # === Sync metadata ===

    def get_metadata(self, key: str) -> Optional[SyncMetadata]:
        rows = self._query("SELECT * FROM sync_metadata WHERE key = ?", (key,))
        if not rows:
            return None
        row = rows[0]
        return SyncMetadata(key=row["key"], value=row["value"], last_updated=row["last_updated"])

    def set_metadata(self, key: str, value: str) -> None:
        self._write(
            "INSERT OR REPLACE INTO sync_metadata (key, value, last_updated) VALUES (?, ?, ?)",
            (key, value, now_ms()),
        )

    def get_watermark(self, user_id: str, entity_type: EntityType) -> Optional[int]:
        metadata = self.get_metadata(watermark_key(user_id, entity_type))
        if metadata is None:
            return None
        try:
            return int(metadata.value)
        except ValueError:
            logger.warning("Ignoring malformed watermark %r for %s", metadata.value, metadata.key)
            return None

    def set_watermark(self, user_id: str, entity_type: EntityType, timestamp: int) -> None:
        self.set_metadata(watermark_key(user_id, entity_type), str(int(timestamp)))

    # === ID mappings ===

    def record_id_mapping(self, mapping: IdMapping) -> None:
        with self.transaction():
            self._raw_execute(
                "DELETE FROM id_mappings WHERE entity_type = ? AND (local_id = ? OR remote_id = ?)",
                (mapping.entity_type.value, mapping.local_id, mapping.remote_id),
            )
            self._raw_execute(
                "INSERT INTO id_mappings (entity_type, local_id, remote_id, created_at) "
                "VALUES (?, ?, ?, ?)",
                (mapping.entity_type.value, mapping.local_id, mapping.remote_id, mapping.created_at),
            )

    def local_id_for(self, entity_type: EntityType, remote_id: str) -> Optional[str]:
        return self.scalar(
            "SELECT local_id FROM id_mappings WHERE entity_type = ? AND remote_id = ?",
            (entity_type.value, remote_id),
        )

    def remote_id_for(self, entity_type: EntityType, local_id: EntityId) -> Optional[str]:
        return self.scalar(
            "SELECT remote_id FROM id_mappings WHERE entity_type = ? AND local_id = ?",
            (entity_type.value, str(local_id)),
        )

    def find_unmapped_match(self, entity_type: EntityType, entity: Entity) -> Optional[Entity]:
        """Find a local record created offline that has the same natural key."""
        fields = NATURAL_KEYS.get(entity_type)
        if not fields:
            return None
        table = TABLES[entity_type]
        data = entity.to_dict()
        conditions = " AND ".join(f"{name} = ?" for name in fields)
        rows = self._query(
            f"SELECT * FROM {table} WHERE user_id = ? AND {conditions} "
            "AND CAST(id AS TEXT) NOT IN "
            "(SELECT local_id FROM id_mappings WHERE entity_type = ?) "
            "ORDER BY id LIMIT 1",
            (data["user_id"], *(data[name] for name in fields), entity_type.value),
        )
        return self._hydrate(entity_type, rows[0]) if rows else None


__all__ = ["LocalStore", "TABLES", "LOCATION_PARENTS", "watermark_key"]
