"""Shared fixtures for the CouponSync test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from couponsync.repository import CouponRepository, MembershipRepository, UserRepository
from couponsync.storage.store import LocalStore
from couponsync.sync.engine import SyncEngine
from couponsync.sync.tracker import ChangeTracker

from fakes import FakeRemote, FakeTimerFactory


@pytest.fixture
def store(tmp_path: Path):
    local = LocalStore(tmp_path / "state" / "couponsync.db")
    local.initialize()
    yield local
    local.close()


@pytest.fixture
def tracker(store: LocalStore) -> ChangeTracker:
    return ChangeTracker(store)


@pytest.fixture
def coupons(store: LocalStore, tracker: ChangeTracker) -> CouponRepository:
    return CouponRepository(store, tracker)


@pytest.fixture
def memberships(store: LocalStore, tracker: ChangeTracker) -> MembershipRepository:
    return MembershipRepository(store, tracker)


@pytest.fixture
def users(store: LocalStore, tracker: ChangeTracker) -> UserRepository:
    return UserRepository(store, tracker)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def engine(store: LocalStore, remote: FakeRemote) -> SyncEngine:
    return SyncEngine(store, remote)


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()
