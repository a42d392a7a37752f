"""Local persistence for CouponSync."""

from __future__ import annotations

from .store import LocalStore, watermark_key

__all__ = ["LocalStore", "watermark_key"]
