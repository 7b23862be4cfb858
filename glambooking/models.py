"""Database models for the GlamBooking scheduling backend."""
from __future__ import annotations

from datetime import datetime, timezone

from .extensions import db
from .permissions import parse_permissions


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


BOOKING_STATUSES = ("PENDING", "CONFIRMED", "COMPLETED", "CANCELLED", "NO_SHOW")
PAYMENT_STATUSES = ("PENDING", "PAID", "FAILED", "REFUNDED")
PLANS = ("FREE", "STARTER", "PRO", "BUSINESS")
PAYMENT_METHODS = ("card", "cash", "bank_transfer")

# Statuses that no longer hold their time slot
RELEASED_STATUSES = ("CANCELLED", "NO_SHOW")


class Business(db.Model):
    """A tenant account; every other row belongs to exactly one business."""

    __tablename__ = "businesses"

    business_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    slug = db.Column(db.String(150), unique=True, nullable=False)
    plan = db.Column(
        db.Enum(*PLANS, name="business_plan", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="FREE",
    )
    subscription_status = db.Column(db.String(50))
    stripe_subscription_id = db.Column(db.String(255), unique=True)
    booking_page_enabled = db.Column(db.Boolean, nullable=False, server_default="1")
    address = db.Column(db.String(255))
    city = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.business_id,
            "name": self.name,
            "slug": self.slug,
            "plan": self.plan,
            "subscription_status": self.subscription_status,
            "booking_page_enabled": bool(self.booking_page_enabled),
            "address": self.address,
            "city": self.city,
        }


class Location(db.Model):
    __tablename__ = "locations"

    location_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    address = db.Column(db.String(255))
    city = db.Column(db.String(100))
    postcode = db.Column(db.String(20))
    phone = db.Column(db.String(30))
    is_primary = db.Column(db.Boolean, nullable=False, server_default="0")
    active = db.Column(db.Boolean, nullable=False, server_default="1")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    business = db.relationship("Business")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.location_id,
            "business_id": self.business_id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "postcode": self.postcode,
            "phone": self.phone,
            "is_primary": bool(self.is_primary),
            "active": bool(self.active),
            "created_at": _iso(self.created_at),
        }


class Staff(db.Model):
    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    role = db.Column(
        db.Enum("OWNER", "MANAGER", "STAFF", name="staff_role", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="STAFF",
    )
    # Stored as JSON, always read through StaffPermissions
    permissions_data = db.Column("permissions", db.JSON, nullable=True, default=dict)
    active = db.Column(db.Boolean, nullable=False, server_default="1")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    business = db.relationship("Business")

    @property
    def permissions(self):
        return parse_permissions(self.permissions_data, role=self.role)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "business_id": self.business_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "permissions": self.permissions.to_dict(),
            "active": bool(self.active),
            "created_at": _iso(self.created_at),
        }


class Client(db.Model):
    __tablename__ = "clients"

    client_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.client_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }


class Service(db.Model):
    """Services offered by a business; duration drives slot length."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    price_cents = db.Column(db.Integer, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    active = db.Column(db.Boolean, nullable=False, server_default="1")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint("duration_minutes >= 1", name="ck_services_duration_positive"),
        db.CheckConstraint("price_cents >= 0", name="ck_services_price_non_negative"),
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "business_id": self.business_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "duration_minutes": self.duration_minutes,
            "active": bool(self.active),
        }


class Booking(db.Model):
    """A client appointment occupying [starts_at, ends_at) in one resource scope."""

    __tablename__ = "bookings"

    booking_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.client_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.location_id"), nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(
        db.Enum(*BOOKING_STATUSES, name="booking_status", native_enum=False, validate_strings=True),
        nullable=False,
        default="PENDING",
        server_default="PENDING",
    )
    payment_status = db.Column(
        db.Enum(*PAYMENT_STATUSES, name="booking_payment_status", native_enum=False, validate_strings=True),
        nullable=False,
        default="PENDING",
        server_default="PENDING",
    )
    # Price charged at booking time; never recomputed from the service
    total_amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(
        db.Enum(*PAYMENT_METHODS, name="booking_payment_method", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="cash",
    )
    payment_intent_id = db.Column(db.String(255), unique=True)
    stripe_charge_id = db.Column(db.String(255))
    notes = db.Column(db.Text)
    created_by_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    client = db.relationship("Client")
    service = db.relationship("Service")
    location = db.relationship("Location")
    staff = db.relationship("Staff", foreign_keys=[staff_id])

    __table_args__ = (
        db.Index("ix_bookings_scope_start", "business_id", "location_id", "staff_id", "starts_at"),
        db.CheckConstraint("ends_at > starts_at", name="ck_bookings_interval"),
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_id,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "client": self.client.to_dict_basic() if self.client else None,
            "service_id": self.service_id,
            "service": {
                "id": self.service.service_id,
                "name": self.service.name,
                "duration_minutes": self.service.duration_minutes,
            } if self.service else None,
            "location_id": self.location_id,
            "staff_id": self.staff_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount_cents": self.total_amount_cents,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_public_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount_cents": self.total_amount_cents,
            "service": {
                "name": self.service.name,
                "duration_minutes": self.service.duration_minutes,
            } if self.service else None,
            "client": {"name": self.client.name} if self.client else None,
        }


class ProcessedPaymentEvent(db.Model):
    """Ledger of gateway webhook events already applied (idempotency key = event id)."""

    __tablename__ = "processed_payment_events"

    event_id = db.Column(db.String(255), primary_key=True)
    object_id = db.Column(db.String(255))
    event_type = db.Column(db.String(100), nullable=False)
    booking_id = db.Column(db.Integer, nullable=True)
    outcome = db.Column(db.String(50), nullable=False)
    processed_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class Notification(db.Model):
    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.business_id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.client_id"), nullable=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id", ondelete="SET NULL"), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(
        db.Enum(
            "booking_created",
            "booking_confirmed",
            "booking_cancelled",
            name="notification_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    is_read = db.Column(db.Boolean, nullable=False, server_default="0")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "client_id": self.client_id,
            "booking_id": self.booking_id,
            "title": self.title,
            "message": self.message,
            "notification_type": self.notification_type,
            "is_read": bool(self.is_read),
            "created_at": _iso(self.created_at),
        }
