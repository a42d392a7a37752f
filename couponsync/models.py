"""Domain records tracked by CouponSync."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

MILLIS_PER_HOUR = 60 * 60 * 1000
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
DEFAULT_GEOFENCE_RADIUS = 150  # meters


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class EntityType(str, Enum):
    """Kinds of records held in the local store."""
    COUPON = "coupon"
    MEMBERSHIP = "membership"
    LOCATION = "location"
    USER = "user"


class ChangeType(str, Enum):
    """Kinds of local mutation recorded in the pending-change log."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    BOGO = "BOGO"
    FREE_SHIPPING = "FREE_SHIPPING"

    @classmethod
    def parse(cls, raw: Any) -> "DiscountType":
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.PERCENTAGE


# Entity types that own a sync sub-cycle. Locations travel with their parent.
SYNCABLE_TYPES = (EntityType.COUPON, EntityType.MEMBERSHIP, EntityType.USER)


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


@dataclass
class Location:
    """A geofenced place attached to a coupon or a membership."""

    user_id: str
    latitude: float
    longitude: float
    id: Optional[int] = None
    coupon_id: Optional[int] = None
    membership_id: Optional[int] = None
    radius: int = DEFAULT_GEOFENCE_RADIUS
    geofence_id: str = ""
    location_name: Optional[str] = None
    address: Optional[str] = None
    created_date: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "membership_id": self.membership_id,
            "user_id": self.user_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius": self.radius,
            "geofence_id": self.geofence_id,
            "location_name": self.location_name,
            "address": self.address,
            "created_date": self.created_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            id=_opt_int(data.get("id")),
            coupon_id=_opt_int(data.get("coupon_id")),
            membership_id=_opt_int(data.get("membership_id")),
            user_id=str(data.get("user_id", "")),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            radius=int(data.get("radius", DEFAULT_GEOFENCE_RADIUS)),
            geofence_id=str(data.get("geofence_id") or ""),
            location_name=_opt_str(data.get("location_name")),
            address=_opt_str(data.get("address")),
            created_date=int(data.get("created_date", 0)),
        )

    def signature(self) -> tuple:
        """Content of the location without local identifiers."""
        return (
            self.latitude,
            self.longitude,
            self.radius,
            self.geofence_id,
            self.location_name,
            self.address,
            self.created_date,
        )


@dataclass
class Coupon:
    """A promo code or discount the user wants to remember."""

    user_id: str
    code: str
    merchant_name: str
    expiration_date: int
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: float = 0.0
    id: Optional[int] = None
    discount_value_currency: str = "USD"
    min_purchase_amount: Optional[float] = None
    description: Optional[str] = None
    created_date: int = field(default_factory=now_ms)
    category: Optional[str] = None
    is_favorite: bool = False
    is_used: bool = False
    is_archived: bool = False
    image_url: Optional[str] = None
    barcode_data: Optional[str] = None
    notes: Optional[str] = None
    last_modified: int = field(default_factory=now_ms)
    locations: List[Location] = field(default_factory=list)

    @property
    def is_expired(self) -> bool:
        return now_ms() > self.expiration_date

    @property
    def days_until_expiration(self) -> int:
        return int((self.expiration_date - now_ms()) / MILLIS_PER_DAY)

    @property
    def expires_in_hours(self) -> int:
        return int((self.expiration_date - now_ms()) / MILLIS_PER_HOUR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "code": self.code,
            "merchant_name": self.merchant_name,
            "discount_type": self.discount_type.value,
            "discount_value": self.discount_value,
            "discount_value_currency": self.discount_value_currency,
            "min_purchase_amount": self.min_purchase_amount,
            "description": self.description,
            "expiration_date": self.expiration_date,
            "created_date": self.created_date,
            "category": self.category,
            "is_favorite": self.is_favorite,
            "is_used": self.is_used,
            "is_archived": self.is_archived,
            "image_url": self.image_url,
            "barcode_data": self.barcode_data,
            "notes": self.notes,
            "last_modified": self.last_modified,
            "locations": [loc.to_dict() for loc in self.locations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coupon":
        return cls(
            id=_opt_int(data.get("id")),
            user_id=str(data["user_id"]),
            code=str(data["code"]),
            merchant_name=str(data["merchant_name"]),
            discount_type=DiscountType.parse(data.get("discount_type")),
            discount_value=float(data.get("discount_value") or 0.0),
            discount_value_currency=str(data.get("discount_value_currency") or "USD"),
            min_purchase_amount=_opt_float(data.get("min_purchase_amount")),
            description=_opt_str(data.get("description")),
            expiration_date=int(data["expiration_date"]),
            created_date=int(data.get("created_date", 0)),
            category=_opt_str(data.get("category")),
            is_favorite=bool(data.get("is_favorite", False)),
            is_used=bool(data.get("is_used", False)),
            is_archived=bool(data.get("is_archived", False)),
            image_url=_opt_str(data.get("image_url")),
            barcode_data=_opt_str(data.get("barcode_data")),
            notes=_opt_str(data.get("notes")),
            last_modified=data.get("last_modified"),
            locations=[Location.from_dict(loc) for loc in data.get("locations") or []],
        )


@dataclass
class Membership:
    """A gym, subscription or loyalty membership with a renewal date."""

    user_id: str
    organization_name: str
    membership_number: str
    membership_type: str
    start_date: int
    renewal_date: int
    id: Optional[int] = None
    annual_fee: Optional[float] = None
    monthly_fee: Optional[float] = None
    currency: str = "USD"
    benefits: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    reminder_enabled: bool = True
    reminder_days_before_renewal: int = 7
    created_date: int = field(default_factory=now_ms)
    last_modified: int = field(default_factory=now_ms)
    locations: List[Location] = field(default_factory=list)

    @property
    def days_until_renewal(self) -> int:
        return int((self.renewal_date - now_ms()) / MILLIS_PER_DAY)

    @property
    def needs_renewal_reminder(self) -> bool:
        days = self.days_until_renewal
        return self.reminder_enabled and 0 < days <= self.reminder_days_before_renewal

    @property
    def total_annual_cost(self) -> float:
        if self.annual_fee is not None:
            return self.annual_fee
        if self.monthly_fee is not None:
            return self.monthly_fee * 12
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_name": self.organization_name,
            "membership_number": self.membership_number,
            "membership_type": self.membership_type,
            "start_date": self.start_date,
            "renewal_date": self.renewal_date,
            "annual_fee": self.annual_fee,
            "monthly_fee": self.monthly_fee,
            "currency": self.currency,
            "benefits": self.benefits,
            "notes": self.notes,
            "is_active": self.is_active,
            "reminder_enabled": self.reminder_enabled,
            "reminder_days_before_renewal": self.reminder_days_before_renewal,
            "created_date": self.created_date,
            "last_modified": self.last_modified,
            "locations": [loc.to_dict() for loc in self.locations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Membership":
        return cls(
            id=_opt_int(data.get("id")),
            user_id=str(data["user_id"]),
            organization_name=str(data["organization_name"]),
            membership_number=str(data["membership_number"]),
            membership_type=str(data.get("membership_type") or ""),
            start_date=int(data["start_date"]),
            renewal_date=int(data["renewal_date"]),
            annual_fee=_opt_float(data.get("annual_fee")),
            monthly_fee=_opt_float(data.get("monthly_fee")),
            currency=str(data.get("currency") or "USD"),
            benefits=_opt_str(data.get("benefits")),
            notes=_opt_str(data.get("notes")),
            is_active=bool(data.get("is_active", True)),
            reminder_enabled=bool(data.get("reminder_enabled", True)),
            reminder_days_before_renewal=int(data.get("reminder_days_before_renewal", 7)),
            created_date=int(data.get("created_date", 0)),
            last_modified=data.get("last_modified"),
            locations=[Location.from_dict(loc) for loc in data.get("locations") or []],
        )


@dataclass
class User:
    """Profile and notification preferences of the signed-in user."""

    user_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    fcm_token: Optional[str] = None
    default_geofence_radius: int = DEFAULT_GEOFENCE_RADIUS
    notifications_enabled: bool = True
    proximity_notifications_enabled: bool = True
    expiration_notifications_enabled: bool = True
    membership_notifications_enabled: bool = True
    created_date: int = field(default_factory=now_ms)
    last_modified: int = field(default_factory=now_ms)
    last_sync_date: Optional[int] = None

    @property
    def id(self) -> str:
        return self.user_id

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name.strip() or self.email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "profile_image_url": self.profile_image_url,
            "fcm_token": self.fcm_token,
            "default_geofence_radius": self.default_geofence_radius,
            "notifications_enabled": self.notifications_enabled,
            "proximity_notifications_enabled": self.proximity_notifications_enabled,
            "expiration_notifications_enabled": self.expiration_notifications_enabled,
            "membership_notifications_enabled": self.membership_notifications_enabled,
            "created_date": self.created_date,
            "last_modified": self.last_modified,
            "last_sync_date": self.last_sync_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            user_id=str(data.get("user_id") or data["id"]),
            email=str(data["email"]),
            first_name=_opt_str(data.get("first_name")),
            last_name=_opt_str(data.get("last_name")),
            profile_image_url=_opt_str(data.get("profile_image_url")),
            fcm_token=_opt_str(data.get("fcm_token")),
            default_geofence_radius=int(data.get("default_geofence_radius", DEFAULT_GEOFENCE_RADIUS)),
            notifications_enabled=bool(data.get("notifications_enabled", True)),
            proximity_notifications_enabled=bool(data.get("proximity_notifications_enabled", True)),
            expiration_notifications_enabled=bool(data.get("expiration_notifications_enabled", True)),
            membership_notifications_enabled=bool(data.get("membership_notifications_enabled", True)),
            created_date=int(data.get("created_date", 0)),
            last_modified=data.get("last_modified"),
            last_sync_date=_opt_int(data.get("last_sync_date")),
        )


Entity = Union[Coupon, Membership, Location, User]

ENTITY_CLASSES: Dict[EntityType, type] = {
    EntityType.COUPON: Coupon,
    EntityType.MEMBERSHIP: Membership,
    EntityType.LOCATION: Location,
    EntityType.USER: User,
}


def entity_from_dict(entity_type: EntityType, data: Dict[str, Any]) -> Entity:
    return ENTITY_CLASSES[entity_type].from_dict(data)


def entity_key(entity: Entity) -> str:
    """Stable text key of an entity, as stored in the pending-change log."""
    return "" if entity.id is None else str(entity.id)


@dataclass
class PendingChange:
    """One uncommitted local mutation waiting for remote acknowledgement."""

    user_id: str
    change_type: ChangeType
    entity_type: EntityType
    entity_id: str
    payload: str = ""
    timestamp: int = 0
    id: Optional[int] = None
    synced: bool = False
    synced_at: Optional[int] = None

    def payload_dict(self) -> Dict[str, Any]:
        if not self.payload:
            return {}
        return json.loads(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "change_type": self.change_type.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "synced": self.synced,
            "synced_at": self.synced_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingChange":
        return cls(
            id=_opt_int(data.get("id")),
            user_id=str(data["user_id"]),
            change_type=ChangeType(data["change_type"]),
            entity_type=EntityType(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            payload=data.get("payload") or "",
            timestamp=int(data.get("timestamp", 0)),
            synced=bool(data.get("synced", False)),
            synced_at=_opt_int(data.get("synced_at")),
        )


@dataclass
class SyncMetadata:
    """Generic key/value row used for watermarks and sync indicators."""

    key: str
    value: str
    last_updated: int = field(default_factory=now_ms)


@dataclass
class IdMapping:
    """Link between a locally assigned id and the id the remote assigned."""

    entity_type: EntityType
    local_id: str
    remote_id: str
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdMapping":
        return cls(
            entity_type=EntityType(str(data["entity_type"]).lower()),
            local_id=str(data["local_id"]),
            remote_id=str(data["remote_id"]),
        )


def validate_promo_code(code: str) -> None:
    if not code or not code.strip() or len(code.strip()) < 3:
        raise ValueError("Promo code must have at least 3 characters.")


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"Latitude {latitude} is out of range.")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"Longitude {longitude} is out of range.")


__all__ = [
    "ChangeType",
    "Coupon",
    "DiscountType",
    "ENTITY_CLASSES",
    "Entity",
    "EntityType",
    "IdMapping",
    "Location",
    "Membership",
    "PendingChange",
    "SYNCABLE_TYPES",
    "SyncMetadata",
    "User",
    "entity_from_dict",
    "entity_key",
    "now_ms",
    "validate_coordinates",
    "validate_promo_code",
]
