"""Domain repositories: every write goes through the change tracker."""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, List, Optional, TypeVar

from .models import (
    MILLIS_PER_DAY,
    ChangeType,
    Coupon,
    DiscountType,
    EntityType,
    Location,
    Membership,
    User,
    now_ms,
    validate_coordinates,
    validate_promo_code,
)
from .storage.store import EntityId, LocalStore
from .sync.tracker import ChangeTracker

logger = logging.getLogger("couponsync.repository")

T = TypeVar("T", Coupon, Membership, User)


class _Repository(Generic[T]):
    entity_type: EntityType

    def __init__(self, store: LocalStore, tracker: Optional[ChangeTracker] = None):
        self.store = store
        self.tracker = tracker or ChangeTracker(store)

    def get(self, entity_id: EntityId) -> Optional[T]:
        return self.store.get_entity(self.entity_type, entity_id)

    def require(self, entity_id: EntityId) -> T:
        entity = self.get(entity_id)
        if entity is None:
            raise KeyError(f"{self.entity_type.value} {entity_id} not found")
        return entity

    def watch(
        self,
        query: Callable[[], List[T]],
        callback: Callable[[List[T]], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with fresh query results now and after every committed change.

        Returns a function that stops the updates.
        """
        def _on_change(_entity_type: EntityType) -> None:
            callback(query())

        unsubscribe = self.store.subscribe(self.entity_type, _on_change)
        callback(query())
        return unsubscribe

    def _save(self, entity: T, change_type: ChangeType) -> T:
        entity.last_modified = now_ms()
        saved, _ = self.tracker.save(self.entity_type, entity, change_type)
        return saved

    def _modify(self, entity_id: EntityId, **changes: Any) -> T:
        entity = self.require(entity_id)
        for name, value in changes.items():
            setattr(entity, name, value)
        return self._save(entity, ChangeType.UPDATE)

    def _remove(self, entity: T) -> bool:
        return self.tracker.remove(entity.user_id, self.entity_type, entity.id) is not None


def _validate_locations(locations: List[Location]) -> None:
    for location in locations:
        validate_coordinates(location.latitude, location.longitude)


class CouponRepository(_Repository[Coupon]):
    entity_type = EntityType.COUPON

    def create(self, coupon: Coupon) -> Coupon:
        validate_promo_code(coupon.code)
        _validate_locations(coupon.locations)
        coupon.id = None
        coupon.code = coupon.code.strip()
        saved = self._save(coupon, ChangeType.CREATE)
        logger.info("Created coupon %s for %s", saved.id, saved.user_id)
        return saved

    def update(self, coupon: Coupon) -> Coupon:
        validate_promo_code(coupon.code)
        _validate_locations(coupon.locations)
        if coupon.id is None:
            raise ValueError("Cannot update a coupon that was never saved.")
        self.require(coupon.id)
        return self._save(coupon, ChangeType.UPDATE)

    def delete(self, coupon_id: int) -> bool:
        coupon = self.get(coupon_id)
        if coupon is None:
            return False
        return self._remove(coupon)

    def archive(self, coupon_id: int) -> Coupon:
        return self._modify(coupon_id, is_archived=True)

    def toggle_favorite(self, coupon_id: int, is_favorite: bool) -> Coupon:
        return self._modify(coupon_id, is_favorite=is_favorite)

    def set_used(self, coupon_id: int, is_used: bool) -> Coupon:
        return self._modify(coupon_id, is_used=is_used)

    def delete_expired(self, user_id: str, threshold: Optional[int] = None) -> int:
        """Delete coupons that expired before ``threshold`` (default: now)."""
        cutoff = threshold if threshold is not None else now_ms()
        expired = self.store.list_entities(
            self.entity_type, user_id, "expiration_date < ?", (cutoff,)
        )
        with self.store.transaction():
            removed = sum(1 for coupon in expired if self._remove(coupon))
        if removed:
            logger.info("Deleted %d expired coupons for %s", removed, user_id)
        return removed

    def add_location(self, coupon_id: int, location: Location) -> Coupon:
        validate_coordinates(location.latitude, location.longitude)
        coupon = self.require(coupon_id)
        location.user_id = location.user_id or coupon.user_id
        coupon.locations.append(location)
        return self._save(coupon, ChangeType.UPDATE)

    def remove_location(self, coupon_id: int, location_id: int) -> Coupon:
        coupon = self.require(coupon_id)
        remaining = [loc for loc in coupon.locations if loc.id != location_id]
        if len(remaining) == len(coupon.locations):
            raise KeyError(f"location {location_id} not found on coupon {coupon_id}")
        coupon.locations = remaining
        return self._save(coupon, ChangeType.UPDATE)

    # === Queries ===

    def list_for_user(self, user_id: str) -> List[Coupon]:
        """Non-archived coupons, soonest expiration first."""
        return self.store.list_entities(
            self.entity_type, user_id, "is_archived = 0", order_by="expiration_date ASC"
        )

    def favorites(self, user_id: str) -> List[Coupon]:
        return self.store.list_entities(
            self.entity_type, user_id, "is_favorite = 1 AND is_archived = 0"
        )

    def search(self, user_id: str, query: str) -> List[Coupon]:
        """Match merchant name or code, case-insensitive."""
        pattern = f"%{query.strip()}%"
        return self.store.list_entities(
            self.entity_type,
            user_id,
            "(merchant_name LIKE ? OR code LIKE ?) AND is_archived = 0",
            (pattern, pattern),
            order_by="expiration_date ASC",
        )

    def expiring_within(self, user_id: str, days: int) -> List[Coupon]:
        now = now_ms()
        return self.store.list_entities(
            self.entity_type,
            user_id,
            "expiration_date > ? AND expiration_date < ? AND is_archived = 0",
            (now, now + days * MILLIS_PER_DAY),
            order_by="expiration_date ASC",
        )

    def expired(self, user_id: str) -> List[Coupon]:
        return self.store.list_entities(
            self.entity_type,
            user_id,
            "expiration_date <= ? AND is_archived = 0",
            (now_ms(),),
            order_by="expiration_date DESC",
        )

    def by_discount_type(self, user_id: str, discount_type: DiscountType) -> List[Coupon]:
        return self.store.list_entities(
            self.entity_type,
            user_id,
            "discount_type = ? AND is_archived = 0",
            (discount_type.value,),
        )

    def by_category(self, user_id: str, category: str) -> List[Coupon]:
        return self.store.list_entities(
            self.entity_type,
            user_id,
            "category = ? AND is_archived = 0",
            (category,),
        )

    def count_active(self, user_id: str) -> int:
        value = self.store.scalar(
            "SELECT COUNT(*) FROM coupons WHERE user_id = ? AND is_archived = 0",
            (user_id,),
        )
        return int(value or 0)

    def user_locations(self, user_id: str) -> List[Location]:
        return self.store.list_entities(EntityType.LOCATION, user_id, "coupon_id IS NOT NULL")


class MembershipRepository(_Repository[Membership]):
    entity_type = EntityType.MEMBERSHIP

    def create(self, membership: Membership) -> Membership:
        self._validate(membership)
        membership.id = None
        saved = self._save(membership, ChangeType.CREATE)
        logger.info("Created membership %s for %s", saved.id, saved.user_id)
        return saved

    def update(self, membership: Membership) -> Membership:
        self._validate(membership)
        if membership.id is None:
            raise ValueError("Cannot update a membership that was never saved.")
        self.require(membership.id)
        return self._save(membership, ChangeType.UPDATE)

    def delete(self, membership_id: int) -> bool:
        membership = self.get(membership_id)
        if membership is None:
            return False
        return self._remove(membership)

    def deactivate(self, membership_id: int) -> Membership:
        return self._modify(membership_id, is_active=False)

    @staticmethod
    def _validate(membership: Membership) -> None:
        if not membership.organization_name.strip():
            raise ValueError("Organization name is required.")
        if not membership.membership_number.strip():
            raise ValueError("Membership number is required.")
        _validate_locations(membership.locations)

    # === Queries ===

    def list_for_user(self, user_id: str) -> List[Membership]:
        return self.store.list_entities(
            self.entity_type, user_id, order_by="renewal_date ASC"
        )

    def active(self, user_id: str) -> List[Membership]:
        return self.store.list_entities(
            self.entity_type, user_id, "is_active = 1", order_by="renewal_date ASC"
        )

    def needing_renewal_reminder(self, user_id: str) -> List[Membership]:
        return [m for m in self.active(user_id) if m.needs_renewal_reminder]

    def total_annual_cost(self, user_id: str) -> float:
        return sum(m.total_annual_cost for m in self.active(user_id))

    def count_active(self, user_id: str) -> int:
        value = self.store.scalar(
            "SELECT COUNT(*) FROM memberships WHERE user_id = ? AND is_active = 1",
            (user_id,),
        )
        return int(value or 0)


class UserRepository(_Repository[User]):
    entity_type = EntityType.USER

    def save(self, user: User) -> User:
        if not user.email.strip():
            raise ValueError("Email is required.")
        change_type = ChangeType.UPDATE if self.get(user.user_id) else ChangeType.CREATE
        return self._save(user, change_type)

    def update_fcm_token(self, user_id: str, token: str) -> User:
        return self._modify(user_id, fcm_token=token)

    def update_notification_preferences(
        self,
        user_id: str,
        notifications: Optional[bool] = None,
        proximity: Optional[bool] = None,
        expiration: Optional[bool] = None,
        membership: Optional[bool] = None,
    ) -> User:
        changes = {
            "notifications_enabled": notifications,
            "proximity_notifications_enabled": proximity,
            "expiration_notifications_enabled": expiration,
            "membership_notifications_enabled": membership,
        }
        return self._modify(user_id, **{k: v for k, v in changes.items() if v is not None})

    def mark_synced(self, user_id: str, timestamp: Optional[int] = None) -> None:
        """Record the last sync time on this device; not sent to the remote."""
        user = self.get(user_id)
        if user is None:
            return
        user.last_sync_date = timestamp if timestamp is not None else now_ms()
        self.store.upsert_entity(self.entity_type, user)


__all__ = ["CouponRepository", "MembershipRepository", "UserRepository"]
