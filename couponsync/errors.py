"""Error taxonomy shared by the store, the remote client and the sync engine."""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for CouponSync errors."""

    retryable: bool = False
    kind: str = "error"


class LocalStorageError(SyncError):
    """A local transaction failed; the originating operation must abort."""

    kind = "storage"


class NetworkError(SyncError):
    """The remote could not be reached (timeout, refused, reset)."""

    retryable = True
    kind = "network"


class RemoteRejected(SyncError):
    """The remote answered but refused the request."""

    retryable = True
    kind = "rejected"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.status_code}: {self.message}"
        return self.message


class ConflictResolutionError(SyncError):
    """An entity pair could not be compared (missing or malformed timestamp)."""

    kind = "conflict"


__all__ = [
    "SyncError",
    "LocalStorageError",
    "NetworkError",
    "RemoteRejected",
    "ConflictResolutionError",
]
