"""CouponSync: offline-first coupon and membership tracking with background sync."""

__version__ = "0.1.0"
