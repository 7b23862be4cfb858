"""Advisory availability: which grid slots are free for a resource scope."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from sqlalchemy import and_

from .extensions import db
from .models import RELEASED_STATUSES, Booking
from .time_grid import (DEFAULT_STEP_MINUTES, DEFAULT_WINDOW_END_HOUR,
                        DEFAULT_WINDOW_START_HOUR, generate_grid)

logger = logging.getLogger(__name__)


def business_now() -> datetime:
    """Current wall-clock time in the single business timezone, as a naive value."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test: [a_start, a_end) and [b_start, b_end) share time."""
    return a_start < b_end and a_end > b_start


def scope_filter(tenant_id: int, location_id: int | None, staff_id: int | None):
    """SQL criteria selecting live bookings in exactly this resource scope."""
    location_clause = Booking.location_id.is_(None) if location_id is None else Booking.location_id == location_id
    staff_clause = Booking.staff_id.is_(None) if staff_id is None else Booking.staff_id == staff_id
    return and_(
        Booking.business_id == tenant_id,
        location_clause,
        staff_clause,
        Booking.status.notin_(RELEASED_STATUSES),
    )


def find_overlapping(
    tenant_id: int,
    location_id: int | None,
    staff_id: int | None,
    starts_at: datetime,
    ends_at: datetime,
    exclude_booking_id: int | None = None,
) -> Booking | None:
    """Return one live booking in the scope that overlaps the interval, if any."""
    query = Booking.query.filter(
        scope_filter(tenant_id, location_id, staff_id),
        Booking.starts_at < ends_at,
        Booking.ends_at > starts_at,
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.booking_id != exclude_booking_id)
    return query.order_by(Booking.starts_at).first()


@dataclass(frozen=True)
class Slot:
    time: datetime
    end: datetime
    available: bool

    def to_dict(self) -> dict[str, object]:
        return {"time": self.time.isoformat(), "end": self.end.isoformat(), "available": self.available}


class AvailabilityResolver:
    """Marks candidate slots available/unavailable against existing bookings.

    The result is advisory only; BookingService repeats the overlap check
    under the scope lock before anything is written.
    """

    def __init__(
        self,
        catalog,
        clock: Callable[[], datetime] = business_now,
        window_start_hour: int = DEFAULT_WINDOW_START_HOUR,
        window_end_hour: int = DEFAULT_WINDOW_END_HOUR,
        step_minutes: int = DEFAULT_STEP_MINUTES,
    ) -> None:
        self.catalog = catalog
        self.clock = clock
        self.window_start_hour = window_start_hour
        self.window_end_hour = window_end_hour
        self.step_minutes = step_minutes

    def resolve(
        self,
        tenant_id: int,
        day: date,
        service_id: int,
        location_id: int | None = None,
        staff_id: int | None = None,
        public: bool = False,
    ) -> list[Slot]:
        service = self.catalog.get_service(tenant_id, service_id)

        candidates = generate_grid(
            day,
            service.duration_minutes,
            window_start_hour=self.window_start_hour,
            window_end_hour=self.window_end_hour,
            step_minutes=self.step_minutes,
        )
        if not candidates:
            return []

        day_start = datetime.combine(day, time.min)
        day_end = day_start + timedelta(days=1)
        # Anything touching the day, so a booking spilling over midnight still blocks
        bookings = (
            db.session.query(Booking.starts_at, Booking.ends_at)
            .filter(
                scope_filter(tenant_id, location_id, staff_id),
                Booking.starts_at < day_end,
                Booking.ends_at > day_start,
            )
            .all()
        )

        now = self.clock() if public else None
        slots = []
        for candidate in candidates:
            taken = any(
                intervals_overlap(candidate.start, candidate.end, booked_start, booked_end)
                for booked_start, booked_end in bookings
            )
            available = not taken
            if now is not None and candidate.start <= now:
                available = False
            slots.append(Slot(time=candidate.start, end=candidate.end, available=available))

        logger.debug(
            "Resolved %d slots for business %s service %s on %s (%d bookings in scope)",
            len(slots), tenant_id, service_id, day.isoformat(), len(bookings),
        )
        return slots
