from pathlib import Path

import pytest

from couponsync.configuration import load_runtime_configuration
from couponsync.models import EntityType
from couponsync.service import SyncService

from fakes import FakeRemote, FakeTimerFactory, make_coupon


def _bundle(tmp_path: Path, extra: str = ""):
    data_dir = tmp_path / "data"
    (data_dir / "config").mkdir(parents=True)
    (data_dir / "config" / "local.yml").write_text(
        "runtime:\n"
        "  user_id: user-1\n"
        "connectivity:\n"
        "  enabled: false\n" + extra
    )
    return load_runtime_configuration(data_dir)


def test_service_round_trip(tmp_path: Path):
    remote = FakeRemote()
    service = SyncService.from_bundle(_bundle(tmp_path), remote=remote, timer_factory=FakeTimerFactory())
    try:
        service.start()
        service.coupons.create(make_coupon())

        result = service.sync_now(timeout=5)

        assert result.success
        assert list(remote.records[EntityType.COUPON]) == ["1000"]
        status = service.user_status()
        assert status["state"] == "success"
        assert status["pending_changes"] == 0
        assert status["watermarks"]["coupon"] is not None
        assert status["last_result"]["success"] is True
        assert service.overview()["users"] == ["user-1"]
    finally:
        service.stop()

    assert (tmp_path / "data" / "state" / "couponsync.db").exists()


def test_auto_start_schedules_default_user(tmp_path: Path):
    timers = FakeTimerFactory()
    bundle = _bundle(tmp_path, "sync:\n  auto_start: true\nscheduler:\n  interval_minutes: 10\n")
    service = SyncService.from_bundle(bundle, remote=FakeRemote(), timer_factory=timers)
    try:
        service.start()

        assert [t.interval for t in timers.active()] == [600]
        assert service.scheduler.users() == ["user-1"]
    finally:
        service.stop()


def test_resolve_user_requires_a_user(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    service = SyncService.from_bundle(
        load_runtime_configuration(data_dir), remote=FakeRemote(), timer_factory=FakeTimerFactory()
    )
    try:
        assert service.resolve_user("someone") == "someone"
        with pytest.raises(ValueError):
            service.resolve_user()
    finally:
        service.stop()
