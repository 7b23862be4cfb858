"""In-app booking notifications persisted as Notification rows."""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Booking, Notification

logger = logging.getLogger(__name__)


def _describe(booking: Booking) -> tuple[str, str]:
    service_name = booking.service.name if booking.service else "your service"
    client_name = booking.client.name if booking.client else "Client"
    when = booking.starts_at.strftime("%A %d %B %Y at %H:%M")
    return client_name, f"{service_name} on {when}"


class DatabaseNotifier:
    """Writes one notification per booking event in its own commit.

    Called only after the booking itself is committed; a failure here is
    rolled back and re-raised for the caller to log and count.
    """

    def _write(self, booking: Booking, notification_type: str, title: str, message: str) -> Notification:
        notification = Notification(
            business_id=booking.business_id,
            client_id=booking.client_id,
            booking_id=booking.booking_id,
            title=title,
            message=message,
            notification_type=notification_type,
        )
        try:
            db.session.add(notification)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info("Notification %s sent for booking %s", notification_type, booking.booking_id)
        return notification

    def notify_booking_created(self, booking: Booking) -> Notification:
        client_name, what = _describe(booking)
        return self._write(
            booking,
            "booking_created",
            "New booking",
            f"{client_name} booked {what}.",
        )

    def notify_booking_confirmed(self, booking: Booking) -> Notification:
        client_name, what = _describe(booking)
        return self._write(
            booking,
            "booking_confirmed",
            "Booking confirmed",
            f"Payment received. {client_name}'s booking for {what} is confirmed.",
        )

    def notify_booking_cancelled(self, booking: Booking) -> Notification:
        client_name, what = _describe(booking)
        return self._write(
            booking,
            "booking_cancelled",
            "Booking cancelled",
            f"{client_name}'s booking for {what} was cancelled.",
        )
