"""Tests for the sync engine's upload, download and merge phases."""

from __future__ import annotations

import threading

import pytest

from couponsync.errors import NetworkError
from couponsync.models import EntityType, User
from couponsync.repository import CouponRepository, MembershipRepository, UserRepository
from couponsync.storage.store import LocalStore
from couponsync.sync.engine import PhaseStatus, SyncEngine, SyncSettings
from couponsync.sync.remote import RemoteClient, RemoteSettings

from fakes import FakeRemote, make_coupon, make_location, make_membership

COUPON = EntityType.COUPON
MEMBERSHIP = EntityType.MEMBERSHIP


def test_offline_create_is_reconciled_with_remote_id(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupon = coupons.create(make_coupon())

    result = engine.sync_cycle("user-1")

    assert result.success
    sub = result.sub_results[COUPON]
    assert sub.upload == PhaseStatus.SUCCESS
    assert sub.uploaded == 1
    assert sub.inserted == 0
    assert list(remote.records[COUPON]) == ["1000"]
    assert store.remote_id_for(COUPON, coupon.id) == "1000"
    assert [c.id for c in coupons.list_for_user("user-1")] == [coupon.id]
    assert store.count_unsynced("user-1") == 0


def test_second_cycle_after_upload_changes_nothing(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, memberships: MembershipRepository
):
    membership = memberships.create(make_membership(locations=[make_location()]))
    engine.sync_cycle("user-1")

    result = engine.sync_cycle("user-1")

    sub = result.sub_results[MEMBERSHIP]
    assert sub.upload == PhaseStatus.SKIPPED
    assert sub.unchanged == 1
    assert sub.inserted == sub.updated == 0
    assert len(store.list_locations(MEMBERSHIP, membership.id)) == 1
    assert len(remote.pushed) == 1


def test_remote_records_are_inserted_with_locations(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    remote.seed(COUPON, "r-1", make_coupon(code="REMOTE1", locations=[make_location()]))

    first = engine.sync_cycle("user-1")
    second = engine.sync_cycle("user-1")

    assert first.sub_results[COUPON].inserted == 1
    assert second.sub_results[COUPON].inserted == 0
    assert second.sub_results[COUPON].unchanged == 1
    local_id = store.local_id_for(COUPON, "r-1")
    local = coupons.require(int(local_id))
    assert local.code == "REMOTE1"
    assert len(local.locations) == 1
    assert store.count_unsynced("user-1") == 0


def test_merge_applies_last_write_wins(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupon = coupons.create(make_coupon(notes="local"))
    engine.sync_cycle("user-1")
    record = remote.records[COUPON]["1000"]

    record.update(notes="stale remote", last_modified=coupon.last_modified - 10)
    older = engine.sync_cycle("user-1")
    assert older.sub_results[COUPON].kept_local == 1
    assert coupons.require(coupon.id).notes == "local"

    record.update(notes="newer remote", last_modified=coupon.last_modified + 10)
    newer = engine.sync_cycle("user-1")
    assert newer.sub_results[COUPON].updated == 1
    assert coupons.require(coupon.id).notes == "newer remote"


def test_change_recorded_during_download_is_not_overwritten(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupon = coupons.create(make_coupon(notes="local"))
    engine.sync_cycle("user-1")

    def _edit_while_downloading(entity_type: EntityType) -> None:
        if entity_type != COUPON:
            return
        edited = coupons.toggle_favorite(coupon.id, True)
        remote.records[COUPON]["1000"].update(notes="remote", last_modified=edited.last_modified)

    remote.on_fetch = _edit_while_downloading
    result = engine.sync_cycle("user-1")

    assert result.sub_results[COUPON].kept_local == 1
    local = coupons.require(coupon.id)
    assert local.is_favorite is True
    assert local.notes == "local"
    assert store.count_unsynced("user-1") == 1


def test_pending_delete_is_not_reinserted(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupon = coupons.create(make_coupon())
    engine.sync_cycle("user-1")

    remote.on_fetch = lambda entity_type: coupons.delete(coupon.id) if entity_type == COUPON else None
    result = engine.sync_cycle("user-1")

    assert result.sub_results[COUPON].kept_local == 1
    assert result.sub_results[COUPON].inserted == 0
    assert coupons.get(coupon.id) is None

    remote.on_fetch = None
    engine.sync_cycle("user-1")

    assert remote.records[COUPON] == {}
    assert coupons.list_for_user("user-1") == []
    assert store.count_unsynced("user-1") == 0


def test_unmapped_local_record_matched_by_natural_key(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    local = store.upsert_entity(COUPON, make_coupon())
    remote.seed(COUPON, "r-9", make_coupon(last_modified=local.last_modified))

    result = engine.sync_cycle("user-1")

    assert result.sub_results[COUPON].inserted == 0
    assert store.local_id_for(COUPON, "r-9") == str(local.id)
    assert len(coupons.list_for_user("user-1")) == 1


def test_download_failure_after_upload_is_partial(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupons.create(make_coupon())
    remote.fetch_errors[COUPON] = NetworkError("timed out after 30s")

    first = engine.sync_cycle("user-1")

    sub = first.sub_results[COUPON]
    assert sub.upload == PhaseStatus.SUCCESS
    assert sub.download == PhaseStatus.FAILED
    assert first.partial
    assert first.retryable
    assert not first.success
    assert first.failed_types == [COUPON]
    assert store.count_unsynced("user-1") == 0
    assert store.get_watermark("user-1", COUPON) is None

    del remote.fetch_errors[COUPON]
    second = engine.sync_cycle("user-1")

    retry = second.sub_results[COUPON]
    assert retry.upload == PhaseStatus.SKIPPED
    assert retry.download == PhaseStatus.SUCCESS
    assert second.success
    assert len(remote.pushed) == 1
    assert store.get_watermark("user-1", COUPON) is not None


def test_upload_failure_keeps_changes_and_skips_download(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupons.create(make_coupon())
    remote.push_error = NetworkError("connection refused")

    result = engine.sync_cycle("user-1")

    sub = result.sub_results[COUPON]
    assert sub.upload == PhaseStatus.FAILED
    assert sub.download == PhaseStatus.SKIPPED
    assert sub.error_kind == "network"
    assert result.retryable
    assert remote.fetch_calls == [("user-1", MEMBERSHIP)]
    assert store.count_unsynced("user-1") == 1


def test_rejected_push_surfaces_message(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository
):
    coupons.create(make_coupon())
    remote.reject_message = "quota exceeded"

    result = engine.sync_cycle("user-1")

    sub = result.sub_results[COUPON]
    assert sub.error_kind == "rejected"
    assert "quota exceeded" in result.message
    assert store.count_unsynced("user-1") == 1


def test_failure_in_one_type_does_not_stop_others(
    remote: FakeRemote, engine: SyncEngine, memberships: MembershipRepository
):
    memberships.create(make_membership())
    remote.fetch_errors[COUPON] = NetworkError("offline")

    result = engine.sync_cycle("user-1")

    assert result.sub_results[MEMBERSHIP].success
    assert not result.sub_results[COUPON].success
    assert list(remote.records[MEMBERSHIP]) == ["1000"]


def test_cancelled_before_start_skips_everything(remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository):
    coupons.create(make_coupon())
    cancel = threading.Event()
    cancel.set()

    result = engine.sync_cycle("user-1", cancel_event=cancel)

    assert result.cancelled
    assert all(r.upload == PhaseStatus.CANCELLED for r in result.sub_results.values())
    assert remote.pushed == []


def test_cancel_between_phases(store: LocalStore, remote: FakeRemote, engine: SyncEngine, coupons: CouponRepository):
    coupons.create(make_coupon())
    cancel = threading.Event()
    remote.on_fetch = lambda _entity_type: cancel.set()

    result = engine.sync_cycle("user-1", cancel_event=cancel)

    coupon_sub = result.sub_results[COUPON]
    assert coupon_sub.upload == PhaseStatus.SUCCESS
    assert coupon_sub.download == PhaseStatus.CANCELLED
    assert result.sub_results[MEMBERSHIP].upload == PhaseStatus.CANCELLED
    assert result.message == "Sync cancelled"
    assert store.count_unsynced("user-1") == 0


def test_user_profile_sync_keeps_local_sync_date(
    store: LocalStore, remote: FakeRemote, engine: SyncEngine, users: UserRepository
):
    users.save(User(user_id="user-1", email="ana@example.com"))
    users.mark_synced("user-1", timestamp=42)

    result = engine.sync_cycle("user-1", [EntityType.USER])

    assert result.success
    assert "user-1" in remote.records[EntityType.USER]
    assert users.require("user-1").last_sync_date == 42


def test_non_syncable_type_is_rejected(engine: SyncEngine):
    with pytest.raises(ValueError):
        engine.sync_cycle("user-1", [EntityType.LOCATION])


def test_settings_from_config():
    settings = SyncSettings.from_config(
        {
            "sync": {"entity_types": ["coupon", "user"], "conflict_strategy": "remote_wins"},
            "storage": {"retention_hours": 24},
        }
    )

    assert settings.entity_types == (COUPON, EntityType.USER)
    assert settings.conflict_strategy == "remote_wins"
    assert settings.retention_hours == 24


def test_malformed_acknowledgement_fails_only_its_type(
    monkeypatch, store: LocalStore, coupons: CouponRepository
):
    client = RemoteClient(RemoteSettings(base_url="https://api.example.com"))
    responses = {
        ("POST", "sync"): {"success": True, "id_mappings": [{"local_id": "1"}]},
        ("GET", "coupons"): [],
        ("GET", "memberships"): [],
    }
    monkeypatch.setattr(
        client, "_request", lambda method, path, query=None, body=None: responses[(method, path)]
    )
    coupons.create(make_coupon())

    result = SyncEngine(store, client).sync_cycle("user-1")

    assert result.failed_types == [COUPON]
    coupon_sub = result.sub_results[COUPON]
    assert coupon_sub.upload == PhaseStatus.FAILED
    assert coupon_sub.download == PhaseStatus.SKIPPED
    assert "Malformed sync response" in coupon_sub.error
    assert result.sub_results[MEMBERSHIP].success
    assert store.count_unsynced("user-1") == 1


def test_concurrent_cycles_for_one_user_serialize(remote: FakeRemote, engine: SyncEngine):
    remote.gate = threading.Event()
    results = []

    def _sync():
        results.append(engine.sync_cycle("user-1", [COUPON]))

    first = threading.Thread(target=_sync)
    second = threading.Thread(target=_sync)
    try:
        first.start()
        assert remote.fetch_started.wait(5)
        second.start()
        second.join(0.1)

        assert second.is_alive()
        assert len(remote.fetch_calls) == 1
        assert engine.active_users == ["user-1"]
    finally:
        remote.gate.set()
        first.join(5)
        second.join(5)

    assert [r.success for r in results] == [True, True]
    assert len(remote.fetch_calls) == 2
    assert remote.max_active == 1
    assert engine.active_users == []
