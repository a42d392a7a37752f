"""Tests for the change tracker."""

from __future__ import annotations

import json

import pytest

from couponsync.models import ChangeType, EntityType
from couponsync.storage.store import LocalStore
from couponsync.sync.tracker import ChangeTracker

from fakes import make_coupon, make_location


def test_save_writes_entity_and_change_together(store: LocalStore, tracker: ChangeTracker):
    coupon = make_coupon(locations=[make_location()])

    saved, change_id = tracker.save(EntityType.COUPON, coupon)

    changes = store.list_unsynced_changes("user-1")
    assert [c.id for c in changes] == [change_id]
    change = changes[0]
    assert change.change_type == ChangeType.CREATE
    assert change.entity_id == str(saved.id)
    payload = json.loads(change.payload)
    assert payload["code"] == "SAVE20"
    assert len(payload["locations"]) == 1
    assert len(store.list_locations(EntityType.COUPON, saved.id)) == 1


def test_failed_write_leaves_no_orphan_change(store: LocalStore, tracker: ChangeTracker, monkeypatch):
    def _fail(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "replace_locations", _fail)

    with pytest.raises(RuntimeError):
        tracker.save(EntityType.COUPON, make_coupon(locations=[make_location()]))

    assert store.list_changes("user-1") == []
    assert store.list_entities(EntityType.COUPON, "user-1") == []


def test_failed_change_record_rolls_back_entity(store: LocalStore, tracker: ChangeTracker, monkeypatch):
    def _fail(*_args, **_kwargs):
        raise RuntimeError("log unavailable")

    monkeypatch.setattr(tracker, "record_change", _fail)

    with pytest.raises(RuntimeError):
        tracker.save(EntityType.COUPON, make_coupon())

    assert store.list_entities(EntityType.COUPON, "user-1") == []


def test_saving_existing_entity_records_update(store: LocalStore, tracker: ChangeTracker):
    coupon, _ = tracker.save(EntityType.COUPON, make_coupon())
    coupon.notes = "edited"

    tracker.save(EntityType.COUPON, coupon)

    kinds = [c.change_type for c in store.list_unsynced_changes("user-1")]
    assert kinds == [ChangeType.CREATE, ChangeType.UPDATE]


def test_second_create_for_same_record_becomes_update(store: LocalStore, tracker: ChangeTracker):
    tracker.record_change("user-1", ChangeType.CREATE, EntityType.COUPON, 5, {"id": 5})
    tracker.record_change("user-1", ChangeType.CREATE, EntityType.COUPON, 5, {"id": 5})

    kinds = [c.change_type for c in store.list_unsynced_changes("user-1")]
    assert kinds == [ChangeType.CREATE, ChangeType.UPDATE]


def test_change_timestamps_strictly_increase(store: LocalStore, tracker: ChangeTracker, monkeypatch):
    monkeypatch.setattr("couponsync.sync.tracker.now_ms", lambda: 1_000)

    for entity_id in range(3):
        tracker.record_change("user-1", ChangeType.UPDATE, EntityType.COUPON, entity_id)

    timestamps = [c.timestamp for c in store.list_unsynced_changes("user-1")]
    assert timestamps == [1_000, 1_001, 1_002]


def test_track_yields_draft_and_assigns_id(store: LocalStore, tracker: ChangeTracker):
    with tracker.track("user-1", ChangeType.UPDATE, EntityType.MEMBERSHIP, 9) as draft:
        draft.payload = '{"note": "manual"}'

    changes = store.list_unsynced_changes("user-1")
    assert draft.id == changes[0].id
    assert changes[0].entity_type == EntityType.MEMBERSHIP
    assert changes[0].payload_dict() == {"note": "manual"}


def test_remove_logs_delete_only_when_something_was_deleted(store: LocalStore, tracker: ChangeTracker):
    coupon, _ = tracker.save(EntityType.COUPON, make_coupon())

    assert tracker.remove("user-1", EntityType.COUPON, coupon.id) is not None
    assert tracker.remove("user-1", EntityType.COUPON, coupon.id) is None

    kinds = [c.change_type for c in store.list_unsynced_changes("user-1")]
    assert kinds == [ChangeType.CREATE, ChangeType.DELETE]
    assert store.get_entity(EntityType.COUPON, coupon.id) is None
