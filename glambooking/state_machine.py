"""Booking lifecycle on two independent axes: status and payment status.

Every change to either axis goes through the tables below. Gateway callbacks
and staff actions are expressed as events; manual PATCH writes are checked
against the per-axis "allowed next value" tables. A write of the current
value is always a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

from .errors import InvalidTransitionError, ValidationError


class BookingStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    ALL = (PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW)
    # These no longer occupy their interval
    RELEASED = frozenset({CANCELLED, NO_SHOW})


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    ALL = (PENDING, PAID, FAILED, REFUNDED)


class Event:
    CONFIRM = "CONFIRM"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"
    MARK_NO_SHOW = "MARK_NO_SHOW"
    CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND = "REFUND"

    ALL = (CONFIRM, COMPLETE, CANCEL, MARK_NO_SHOW, CHECKOUT_COMPLETED, PAYMENT_SUCCEEDED, PAYMENT_FAILED, REFUND)


# Manual writes: from value -> values a staff member may set next
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID, PaymentStatus.PENDING}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

# Event tables: (event, from) -> to. An event absent from an axis table leaves
# that axis untouched; an event present but without a row for the current
# value is illegal.
STATUS_EVENTS: dict[tuple[str, str], str] = {
    (Event.CONFIRM, BookingStatus.PENDING): BookingStatus.CONFIRMED,
    (Event.COMPLETE, BookingStatus.PENDING): BookingStatus.COMPLETED,
    (Event.COMPLETE, BookingStatus.CONFIRMED): BookingStatus.COMPLETED,
    (Event.CANCEL, BookingStatus.PENDING): BookingStatus.CANCELLED,
    (Event.CANCEL, BookingStatus.CONFIRMED): BookingStatus.CANCELLED,
    (Event.MARK_NO_SHOW, BookingStatus.PENDING): BookingStatus.NO_SHOW,
    (Event.MARK_NO_SHOW, BookingStatus.CONFIRMED): BookingStatus.NO_SHOW,
    (Event.CHECKOUT_COMPLETED, BookingStatus.PENDING): BookingStatus.CONFIRMED,
    (Event.CHECKOUT_COMPLETED, BookingStatus.CONFIRMED): BookingStatus.CONFIRMED,
    # Money can arrive after the booking is finished or released; status stays put
    (Event.CHECKOUT_COMPLETED, BookingStatus.COMPLETED): BookingStatus.COMPLETED,
    (Event.CHECKOUT_COMPLETED, BookingStatus.CANCELLED): BookingStatus.CANCELLED,
    (Event.CHECKOUT_COMPLETED, BookingStatus.NO_SHOW): BookingStatus.NO_SHOW,
}

PAYMENT_EVENTS: dict[tuple[str, str], str] = {
    (Event.CHECKOUT_COMPLETED, PaymentStatus.PENDING): PaymentStatus.PAID,
    (Event.CHECKOUT_COMPLETED, PaymentStatus.FAILED): PaymentStatus.PAID,
    (Event.CHECKOUT_COMPLETED, PaymentStatus.PAID): PaymentStatus.PAID,
    (Event.PAYMENT_SUCCEEDED, PaymentStatus.PENDING): PaymentStatus.PAID,
    (Event.PAYMENT_SUCCEEDED, PaymentStatus.FAILED): PaymentStatus.PAID,
    (Event.PAYMENT_SUCCEEDED, PaymentStatus.PAID): PaymentStatus.PAID,
    (Event.PAYMENT_FAILED, PaymentStatus.PENDING): PaymentStatus.FAILED,
    (Event.PAYMENT_FAILED, PaymentStatus.FAILED): PaymentStatus.FAILED,
    (Event.REFUND, PaymentStatus.PAID): PaymentStatus.REFUNDED,
}

_STATUS_EVENT_NAMES = frozenset(event for event, _ in STATUS_EVENTS)
_PAYMENT_EVENT_NAMES = frozenset(event for event, _ in PAYMENT_EVENTS)


@dataclass(frozen=True)
class BookingState:
    status: str = BookingStatus.PENDING
    payment_status: str = PaymentStatus.PENDING

    @property
    def holds_slot(self) -> bool:
        return self.status not in BookingStatus.RELEASED


INITIAL_STATE = BookingState()


def apply_event(state: BookingState, event: str) -> BookingState:
    """Return the state after ``event``; raise InvalidTransitionError if illegal."""
    if event not in Event.ALL:
        raise ValidationError(f"Unknown booking event: {event}")

    status = state.status
    if event in _STATUS_EVENT_NAMES:
        key = (event, state.status)
        if key not in STATUS_EVENTS:
            raise InvalidTransitionError(
                f"Cannot apply {event} to a booking with status {state.status}",
                field="status",
                current=state.status,
                event=event,
            )
        status = STATUS_EVENTS[key]

    payment_status = state.payment_status
    if event in _PAYMENT_EVENT_NAMES:
        key = (event, state.payment_status)
        if key not in PAYMENT_EVENTS:
            raise InvalidTransitionError(
                f"Cannot apply {event} to a booking with payment status {state.payment_status}",
                field="payment_status",
                current=state.payment_status,
                event=event,
            )
        payment_status = PAYMENT_EVENTS[key]

    return BookingState(status=status, payment_status=payment_status)


def _check_manual(field: str, table: dict[str, frozenset[str]], current: str, requested: str) -> None:
    if requested not in table:
        raise ValidationError(f"Invalid {field}: {requested}", field=field)
    if requested == current:
        return
    if requested not in table[current]:
        raise InvalidTransitionError(
            f"Cannot change {field} from {current} to {requested}",
            field=field,
            current=current,
            requested=requested,
        )


def apply_manual_update(
    state: BookingState,
    status: str | None = None,
    payment_status: str | None = None,
) -> BookingState:
    """Validate a staff write of either axis and return the resulting state."""
    if status is not None:
        _check_manual("status", STATUS_TRANSITIONS, state.status, status)
        state = replace(state, status=status)
    if payment_status is not None:
        _check_manual("payment_status", PAYMENT_TRANSITIONS, state.payment_status, payment_status)
        state = replace(state, payment_status=payment_status)
    return state


def state_of(booking) -> BookingState:
    return BookingState(status=booking.status, payment_status=booking.payment_status)
