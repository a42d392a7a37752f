"""CouponSync control API."""

from __future__ import annotations

from .auth import APIKeyManager
from .server import APIServerState, CouponSyncAPIServer

__all__ = ["APIKeyManager", "APIServerState", "CouponSyncAPIServer"]
