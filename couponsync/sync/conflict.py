"""Conflict resolution between a local record and its downloaded remote copy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Tuple

from ..errors import ConflictResolutionError
from ..models import Entity

logger = logging.getLogger("couponsync.sync.conflict")


class ConflictStrategy(str, Enum):
    """Strategies for resolving sync conflicts."""
    NEWEST_WINS = "newest_wins"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"


@dataclass
class ConflictResolution:
    """Result of conflict resolution."""

    winner: Entity
    action: str  # "use_local", "use_remote"
    message: str = ""

    @property
    def use_remote(self) -> bool:
        return self.action == "use_remote"


def _timestamp(entity: Entity, side: str) -> int:
    value = getattr(entity, "last_modified", None)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConflictResolutionError(f"{side} last_modified is not a timestamp: {value!r}")
    return int(value)


class ConflictResolver:
    """Decides which of two versions of a record survives the merge.

    The default policy is last-write-wins on ``last_modified`` with ties going
    to the remote copy. A local record with an unacknowledged change is only
    replaced by a strictly newer remote copy, whatever the strategy.
    """

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS):
        self.strategy = strategy

    def resolve(
        self,
        local: Entity,
        remote: Entity,
        has_pending_change: bool = False,
    ) -> ConflictResolution:
        try:
            local_ts = _timestamp(local, "local")
            remote_ts = _timestamp(remote, "remote")
        except ConflictResolutionError as e:
            logger.warning("Cannot compare %s: %s; preferring remote copy", _describe(remote), e)
            return ConflictResolution(remote, "use_remote", f"Unresolvable ({e}); remote preferred")

        if has_pending_change and remote_ts <= local_ts:
            return ConflictResolution(
                local,
                "use_local",
                f"Local has pending changes ({local_ts} >= {remote_ts})",
            )

        if self.strategy == ConflictStrategy.LOCAL_WINS:
            return ConflictResolution(local, "use_local", "Local wins strategy")
        elif self.strategy == ConflictStrategy.REMOTE_WINS:
            return ConflictResolution(remote, "use_remote", "Remote wins strategy")
        else:
            return self._resolve_newest_wins(local, remote, local_ts, remote_ts)

    def _resolve_newest_wins(
        self,
        local: Entity,
        remote: Entity,
        local_ts: int,
        remote_ts: int,
    ) -> ConflictResolution:
        if local_ts > remote_ts:
            return ConflictResolution(
                local,
                "use_local",
                f"Local is newer ({local_ts} > {remote_ts})",
            )
        return ConflictResolution(
            remote,
            "use_remote",
            f"Remote is newer or equal ({remote_ts} >= {local_ts})",
        )

    def resolve_all(self, pairs: Iterable[Tuple[Entity, Entity]]) -> List[ConflictResolution]:
        """Resolve multiple (local, remote) pairs."""
        return [self.resolve(local, remote) for local, remote in pairs]


def _describe(entity: Entity) -> str:
    return f"{type(entity).__name__}({getattr(entity, 'id', None)})"


__all__ = ["ConflictStrategy", "ConflictResolution", "ConflictResolver"]
