"""Tests for the SQLite local store."""

from __future__ import annotations

import pytest

from couponsync.errors import LocalStorageError
from couponsync.models import ChangeType, EntityType, IdMapping, PendingChange
from couponsync.storage.store import LocalStore

from fakes import make_coupon, make_location


def _change(user_id: str = "user-1", entity_id: str = "1", timestamp: int = 1) -> PendingChange:
    return PendingChange(
        user_id=user_id,
        change_type=ChangeType.UPDATE,
        entity_type=EntityType.COUPON,
        entity_id=entity_id,
        payload="{}",
        timestamp=timestamp,
    )


def test_upsert_assigns_id_and_round_trips(store: LocalStore):
    coupon = make_coupon(is_favorite=True, notes="front desk")

    store.upsert_entity(EntityType.COUPON, coupon)
    loaded = store.get_entity(EntityType.COUPON, coupon.id)

    assert coupon.id is not None
    assert loaded.code == "SAVE20"
    assert loaded.is_favorite is True
    assert loaded.notes == "front desk"


def test_transaction_rolls_back_on_error(store: LocalStore):
    coupon = make_coupon()

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.upsert_entity(EntityType.COUPON, coupon)
            store.append_pending_change(_change(entity_id=str(coupon.id)))
            raise RuntimeError("boom")

    assert store.get_entity(EntityType.COUPON, coupon.id) is None
    assert store.list_changes("user-1") == []


def test_uninitialized_store_raises_storage_error(tmp_path):
    store = LocalStore(tmp_path / "never-opened.db")

    with pytest.raises(LocalStorageError):
        store.get_entity(EntityType.COUPON, 1)


def test_replace_locations_reports_changes(store: LocalStore):
    coupon = store.upsert_entity(EntityType.COUPON, make_coupon())
    locations = [make_location(), make_location(latitude=40.0, location_name="Uptown")]

    assert store.replace_locations(EntityType.COUPON, coupon.id, locations) is True
    same = [make_location(), make_location(latitude=40.0, location_name="Uptown")]
    assert store.replace_locations(EntityType.COUPON, coupon.id, same) is False

    stored = store.list_locations(EntityType.COUPON, coupon.id)
    assert [loc.location_name for loc in stored] == ["Downtown", "Uptown"]
    assert all(loc.coupon_id == coupon.id for loc in stored)


def test_delete_entity_removes_its_locations(store: LocalStore):
    coupon = store.upsert_entity(EntityType.COUPON, make_coupon())
    store.replace_locations(EntityType.COUPON, coupon.id, [make_location()])

    assert store.delete_entity(EntityType.COUPON, coupon.id) is True
    assert store.list_locations(EntityType.COUPON, coupon.id) == []
    assert store.delete_entity(EntityType.COUPON, coupon.id) is False


def test_unsynced_changes_ordered_and_filtered(store: LocalStore):
    store.append_pending_change(_change(entity_id="2", timestamp=20))
    store.append_pending_change(_change(entity_id="1", timestamp=10))
    store.append_pending_change(_change(user_id="someone-else", timestamp=5))

    changes = store.list_unsynced_changes("user-1")

    assert [c.entity_id for c in changes] == ["1", "2"]
    assert store.list_unsynced_changes("user-1", [EntityType.MEMBERSHIP]) == []
    assert store.count_unsynced("user-1") == 2


def test_mark_synced_and_purge(store: LocalStore):
    old_id = store.append_pending_change(_change(entity_id="1", timestamp=1))
    new_id = store.append_pending_change(_change(entity_id="2", timestamp=2))
    store.mark_synced(old_id, synced_at=100)
    store.mark_synced(new_id, synced_at=500)

    assert store.count_unsynced("user-1") == 0
    assert store.purge_synced("user-1", older_than=200) == 1
    assert [c.id for c in store.list_changes("user-1")] == [new_id]


def test_has_unsynced_change_respects_type(store: LocalStore):
    store.append_pending_change(_change(entity_id="7"))

    assert store.has_unsynced_change(EntityType.COUPON, 7)
    assert store.has_unsynced_change(EntityType.COUPON, "7", ChangeType.UPDATE)
    assert not store.has_unsynced_change(EntityType.COUPON, "7", ChangeType.DELETE)
    assert store.unsynced_entity_ids("user-1", EntityType.COUPON) == {"7"}


def test_watermarks_are_per_user_and_type(store: LocalStore):
    store.set_watermark("user-1", EntityType.COUPON, 1234)

    assert store.get_watermark("user-1", EntityType.COUPON) == 1234
    assert store.get_watermark("user-1", EntityType.MEMBERSHIP) is None
    assert store.get_watermark("user-2", EntityType.COUPON) is None


def test_malformed_watermark_is_ignored(store: LocalStore):
    store.set_metadata("watermark:coupon:user-1", "yesterday")

    assert store.get_watermark("user-1", EntityType.COUPON) is None


def test_id_mapping_replaces_previous_link(store: LocalStore):
    store.record_id_mapping(IdMapping(EntityType.COUPON, "1", "abc"))
    store.record_id_mapping(IdMapping(EntityType.COUPON, "1", "def"))

    assert store.remote_id_for(EntityType.COUPON, 1) == "def"
    assert store.local_id_for(EntityType.COUPON, "def") == "1"
    assert store.local_id_for(EntityType.COUPON, "abc") is None


def test_find_unmapped_match_skips_mapped_records(store: LocalStore):
    first = store.upsert_entity(EntityType.COUPON, make_coupon())
    second = store.upsert_entity(EntityType.COUPON, make_coupon())
    store.record_id_mapping(IdMapping(EntityType.COUPON, str(first.id), "abc"))

    match = store.find_unmapped_match(EntityType.COUPON, make_coupon())

    assert match is not None
    assert match.id == second.id


def test_subscribers_notified_after_commit(store: LocalStore):
    seen = []
    unsubscribe = store.subscribe(EntityType.COUPON, seen.append)

    with store.transaction():
        store.upsert_entity(EntityType.COUPON, make_coupon())
        assert seen == []
    assert seen == [EntityType.COUPON]

    unsubscribe()
    store.upsert_entity(EntityType.COUPON, make_coupon())
    assert seen == [EntityType.COUPON]
