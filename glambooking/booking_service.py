"""Authoritative booking writes: validation, conflict gate, state changes."""
from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .availability import business_now, find_overlapping
from .errors import (AlreadyCancelledError, ConflictError, NotFoundError,
                     ValidationError)
from .extensions import db
from .models import PAYMENT_METHODS, Booking, Client, Service
from .state_machine import (BookingStatus, Event, PaymentStatus, apply_event,
                            apply_manual_update, state_of)

logger = logging.getLogger(__name__)

LIST_FILTERS = ("status", "payment_status", "client_id", "service_id", "location_id", "staff_id", "date_from", "date_to")
UPDATABLE_FIELDS = frozenset({"starts_at", "staff_id", "status", "payment_status", "notes"})
DERIVED_FIELDS = frozenset({"ends_at", "total_amount_cents"})
MAX_PAGE_SIZE = 200


def parse_datetime(value: object, field: str = "starts_at") -> datetime:
    """Parse an ISO 8601 value into a naive business-time datetime.

    Offsets are normalised to UTC, the server's business clock.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO 8601 datetime", field=field) from None
    else:
        raise ValidationError(f"{field} is required", field=field)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: object, field: str = "date") -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date", field=field) from None


def parse_id(value: object, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field) from None
    if parsed < 1:
        raise ValidationError(f"{field} must be positive", field=field)
    return parsed


def parse_optional_id(value: object, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    return parse_id(value, field)


class BookingService:
    """Creates and mutates bookings for one tenant at a time.

    The overlap check and the write commit while the scope lock is held.
    Cache invalidation and notifications run after the commit; their
    failures are logged and counted in ``side_effect_failures`` and never
    reach the caller.
    """

    def __init__(
        self,
        catalog,
        notifier,
        cache,
        plan_guard,
        locks,
        clock: Callable[[], datetime] = business_now,
        cache_ttl: int = 300,
    ) -> None:
        self.catalog = catalog
        self.notifier = notifier
        self.cache = cache
        self.plan_guard = plan_guard
        self.locks = locks
        self.clock = clock
        self.cache_ttl = cache_ttl
        self.side_effects: Counter = Counter()
        self.side_effect_failures: Counter = Counter()

    # -- side effects -----------------------------------------------------

    def _fire_and_forget(self, kind: str, booking_id: int, func, *args) -> None:
        try:
            func(*args)
        except Exception:
            self.side_effect_failures[kind] += 1
            logger.exception("Side effect %s failed for booking %s", kind, booking_id)
        else:
            self.side_effects[kind] += 1

    def _after_write(self, tenant_id: int, booking: Booking, notify: Optional[str] = None) -> None:
        self._fire_and_forget("cache_invalidation", booking.booking_id, self.cache.invalidate_tenant, tenant_id)
        if notify:
            self._fire_and_forget(
                f"notify_{notify}", booking.booking_id, getattr(self.notifier, f"notify_booking_{notify}"), booking
            )

    # -- lookups ------------------------------------------------------------

    def get_booking(self, tenant_id: int, booking_id: int) -> Booking:
        booking = Booking.query.filter_by(booking_id=booking_id, business_id=tenant_id).first()
        if booking is None:
            raise NotFoundError("booking")
        return booking

    def _get_for_update(self, tenant_id: int, booking_id: int) -> Booking:
        # Row lock so staff edits and gateway callbacks on one booking apply in turn
        booking = (
            Booking.query.filter_by(booking_id=booking_id, business_id=tenant_id).with_for_update().first()
        )
        if booking is None:
            raise NotFoundError("booking")
        return booking

    def _normalize_filters(self, filters: dict) -> dict[str, object]:
        normalized: dict[str, object] = {}
        for key in LIST_FILTERS:
            value = filters.get(key)
            if value is None or value == "":
                continue
            if key == "status":
                value = str(value).upper()
                if value not in BookingStatus.ALL:
                    raise ValidationError(f"Invalid status: {value}", field=key)
            elif key == "payment_status":
                value = str(value).upper()
                if value not in PaymentStatus.ALL:
                    raise ValidationError(f"Invalid payment_status: {value}", field=key)
            elif key in ("date_from", "date_to"):
                value = parse_date(value, key).isoformat()
            else:
                value = parse_id(value, key)
            normalized[key] = value
        return normalized

    def list_bookings(self, tenant_id: int, filters: Optional[dict] = None, limit: int = 50, offset: int = 0) -> dict:
        """Newest first, with the total count; served from cache when possible."""
        criteria = self._normalize_filters(filters or {})
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))

        fingerprint = json.dumps({"filters": criteria, "limit": limit, "offset": offset}, sort_keys=True)
        cache_key = f"bookings:{tenant_id}:{hashlib.sha1(fingerprint.encode('utf-8')).hexdigest()}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        query = Booking.query.filter(Booking.business_id == tenant_id)
        for key in ("status", "payment_status", "client_id", "service_id", "location_id", "staff_id"):
            if key in criteria:
                query = query.filter(getattr(Booking, key) == criteria[key])
        if "date_from" in criteria:
            query = query.filter(Booking.starts_at >= datetime.fromisoformat(criteria["date_from"]))
        if "date_to" in criteria:
            day_after = date.fromisoformat(criteria["date_to"]) + timedelta(days=1)
            query = query.filter(Booking.starts_at < datetime.combine(day_after, datetime.min.time()))

        total = query.count()
        rows = query.order_by(Booking.starts_at.desc()).limit(limit).offset(offset).all()
        result = {
            "bookings": [booking.to_dict() for booking in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
        self.cache.set(cache_key, result, self.cache_ttl)
        return result

    # -- creation -----------------------------------------------------------

    def _check_scope(self, tenant_id: int, location_id: Optional[int], staff_id: Optional[int]) -> None:
        if location_id is not None and not self.catalog.location_exists(tenant_id, location_id):
            raise NotFoundError("location")
        if staff_id is not None and not self.catalog.staff_exists(tenant_id, staff_id):
            raise NotFoundError("staff")

    def _insert(
        self,
        tenant_id: int,
        actor_id: Optional[int],
        resolve_client: Callable[[], Client],
        service: Service,
        location_id: Optional[int],
        staff_id: Optional[int],
        starts_at: datetime,
        notes: Optional[str],
        payment_method: str,
    ) -> Booking:
        ends_at = starts_at + timedelta(minutes=service.duration_minutes)

        with self.locks.hold(tenant_id, location_id, staff_id):
            try:
                conflict = find_overlapping(tenant_id, location_id, staff_id, starts_at, ends_at)
                if conflict is not None:
                    db.session.rollback()
                    logger.info(
                        "Rejected booking for business %s scope (%s, %s) at %s: overlaps booking %s",
                        tenant_id, location_id, staff_id, starts_at.isoformat(), conflict.booking_id,
                    )
                    raise ConflictError(fields=("starts_at", "staff_id") if staff_id else ("starts_at",))

                # Any client row is written only under the scope lock
                client = resolve_client()
                booking = Booking(
                    business_id=tenant_id,
                    client_id=client.client_id,
                    service_id=service.service_id,
                    location_id=location_id,
                    staff_id=staff_id,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    status=BookingStatus.PENDING,
                    payment_status=PaymentStatus.PENDING,
                    total_amount_cents=service.price_cents,
                    payment_method=payment_method,
                    notes=notes,
                    created_by_id=actor_id,
                )
                db.session.add(booking)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise

        logger.info(
            "Created booking %s for business %s at %s (%s min)",
            booking.booking_id, tenant_id, starts_at.isoformat(), service.duration_minutes,
        )
        self._after_write(tenant_id, booking, notify="created")
        return booking

    def _payment_method(self, data: dict, default: str) -> str:
        method = data.get("payment_method") or default
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}", field="payment_method")
        return method

    def create_booking(self, tenant_id: int, actor_id: Optional[int], data: dict) -> Booking:
        """Validate references, then insert as (PENDING, PENDING) unless the scope is taken."""
        if "ends_at" in data or "total_amount_cents" in data:
            raise ValidationError("ends_at and total_amount_cents are derived from the service")
        client_id = parse_id(data.get("client_id"), "client_id")
        service_id = parse_id(data.get("service_id"), "service_id")
        location_id = parse_optional_id(data.get("location_id"), "location_id")
        staff_id = parse_optional_id(data.get("staff_id"), "staff_id")
        starts_at = parse_datetime(data.get("starts_at"), "starts_at")
        payment_method = self._payment_method(data, "cash")

        client = self.catalog.get_client(tenant_id, client_id)
        service = self.catalog.get_service(tenant_id, service_id)
        self._check_scope(tenant_id, location_id, staff_id)
        self.plan_guard.assert_can_book(tenant_id, self.clock())

        return self._insert(
            tenant_id, actor_id, lambda: client, service, location_id, staff_id, starts_at, data.get("notes"),
            payment_method,
        )

    def create_public_booking(self, slug: str, data: dict) -> Booking:
        """Booking page flow: the client is matched or created by email."""
        business = self.catalog.get_business_by_slug(slug)
        if not business.booking_page_enabled:
            raise NotFoundError("business", "Booking page is not available")
        tenant_id = business.business_id

        name = (data.get("name") or "").strip()
        email = (data.get("email") or "").strip()
        if not name or not email or "@" not in email:
            raise ValidationError("name and a valid email are required", fields=["name", "email"])
        service_id = parse_id(data.get("service_id"), "service_id")
        location_id = parse_optional_id(data.get("location_id"), "location_id")
        staff_id = parse_optional_id(data.get("staff_id"), "staff_id")
        starts_at = parse_datetime(data.get("starts_at"), "starts_at")
        payment_method = self._payment_method(data, "cash")

        if starts_at <= self.clock():
            raise ValidationError("starts_at must be in the future", field="starts_at")

        service = self.catalog.get_service(tenant_id, service_id)
        if not service.active:
            raise NotFoundError("service")
        self._check_scope(tenant_id, location_id, staff_id)
        self.plan_guard.assert_can_book(tenant_id, self.clock())

        def resolve_client() -> Client:
            return self.catalog.find_or_create_client(tenant_id, name, email, data.get("phone"))

        return self._insert(
            tenant_id, None, resolve_client, service, location_id, staff_id, starts_at, data.get("notes"), payment_method
        )

    # -- mutation -----------------------------------------------------------

    def update_booking(self, tenant_id: int, booking_id: int, patch: dict) -> Booking:
        derived = DERIVED_FIELDS.intersection(patch)
        if derived:
            raise ValidationError(f"{', '.join(sorted(derived))} cannot be set directly", fields=sorted(derived))
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}", fields=sorted(unknown))

        booking = self._get_for_update(tenant_id, booking_id)
        before = state_of(booking)

        starts_at = parse_datetime(patch["starts_at"], "starts_at") if "starts_at" in patch else booking.starts_at
        staff_id = parse_optional_id(patch["staff_id"], "staff_id") if "staff_id" in patch else booking.staff_id
        if "staff_id" in patch and staff_id is not None and not self.catalog.staff_exists(tenant_id, staff_id):
            raise NotFoundError("staff")

        status = patch.get("status")
        payment_status = patch.get("payment_status")
        after = apply_manual_update(
            before,
            status=str(status).upper() if status is not None else None,
            payment_status=str(payment_status).upper() if payment_status is not None else None,
        )

        rescheduled = starts_at != booking.starts_at or staff_id != booking.staff_id
        # Duration comes from the service as it is now; the price snapshot does not move
        ends_at = starts_at + timedelta(minutes=booking.service.duration_minutes) if rescheduled else booking.ends_at

        def apply() -> None:
            booking.starts_at = starts_at
            booking.ends_at = ends_at
            booking.staff_id = staff_id
            booking.status = after.status
            booking.payment_status = after.payment_status
            if "notes" in patch:
                booking.notes = patch["notes"]

        try:
            if rescheduled and after.holds_slot:
                with self.locks.hold(tenant_id, booking.location_id, staff_id):
                    conflict = find_overlapping(
                        tenant_id, booking.location_id, staff_id, starts_at, ends_at, exclude_booking_id=booking.booking_id
                    )
                    if conflict is not None:
                        db.session.rollback()
                        logger.info(
                            "Rejected reschedule of booking %s to %s: overlaps booking %s",
                            booking_id, starts_at.isoformat(), conflict.booking_id,
                        )
                        raise ConflictError(fields=tuple(key for key in ("starts_at", "staff_id") if key in patch))
                    apply()
                    db.session.commit()
            else:
                apply()
                db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        notify = None
        if after.status != before.status and after.status == BookingStatus.CANCELLED:
            notify = "cancelled"
        elif after.status != before.status and after.status == BookingStatus.CONFIRMED:
            notify = "confirmed"
        logger.info("Updated booking %s for business %s: %s -> %s", booking_id, tenant_id, before, after)
        self._after_write(tenant_id, booking, notify=notify)
        return booking

    def cancel_booking(self, tenant_id: int, booking_id: int) -> Booking:
        booking = self._get_for_update(tenant_id, booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise AlreadyCancelledError("Booking is already cancelled")

        after = apply_event(state_of(booking), Event.CANCEL)
        try:
            booking.status = after.status
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info("Cancelled booking %s for business %s", booking_id, tenant_id)
        self._after_write(tenant_id, booking, notify="cancelled")
        return booking

    def delete_booking(self, tenant_id: int, booking_id: int) -> None:
        booking = self.get_booking(tenant_id, booking_id)
        try:
            db.session.delete(booking)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info("Deleted booking %s for business %s", booking_id, tenant_id)
        self._fire_and_forget("cache_invalidation", booking_id, self.cache.invalidate_tenant, tenant_id)
