"""Stripe payments for bookings and the idempotent webhook event handler."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Mapping, Optional

import stripe
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import (InvalidPayloadError, InvalidSignatureError,
                     InvalidStateError, InvalidTransitionError, PaymentError)
from .extensions import db
from .models import PLANS, Booking, Business, ProcessedPaymentEvent
from .state_machine import (BookingStatus, Event, PaymentStatus, apply_event,
                            state_of)

logger = logging.getLogger(__name__)


class StripeGateway:
    """Outbound Stripe calls. The API key is passed per request, never set globally."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        currency: str = "gbp",
        booking_page_url: str = "http://localhost:3000/book",
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.booking_page_url = booking_page_url.rstrip("/")

    def _require_key(self) -> str:
        if not self.secret_key:
            logger.warning("Stripe secret key not configured")
            raise PaymentError("Payments are not currently available. Please contact support.")
        return self.secret_key

    def create_payment_intent(self, booking: Booking):
        api_key = self._require_key()
        try:
            return stripe.PaymentIntent.create(
                api_key=api_key,
                amount=int(booking.total_amount_cents),
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
                metadata={
                    "booking_id": str(booking.booking_id),
                    "business_id": str(booking.business_id),
                    "client_id": str(booking.client_id),
                },
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe API error while creating payment intent for booking %s", booking.booking_id)
            raise PaymentError("An error occurred while processing the payment.") from exc

    def create_checkout_session(self, booking: Booking, success_url: str, cancel_url: str):
        api_key = self._require_key()
        service_name = booking.service.name if booking.service else "Booking"
        try:
            return stripe.checkout.Session.create(
                api_key=api_key,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": service_name},
                            "unit_amount": int(booking.total_amount_cents),
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=booking.client.email if booking.client else None,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    "booking_id": str(booking.booking_id),
                    "business_id": str(booking.business_id),
                },
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe API error while creating checkout session for booking %s", booking.booking_id)
            raise PaymentError("An error occurred while starting checkout.") from exc

    def construct_event(self, payload: bytes, signature: Optional[str]):
        """Verify the Stripe-Signature header; nothing is parsed before this passes."""
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            logger.warning("Invalid webhook payload")
            raise InvalidPayloadError("Invalid webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid signature for webhook")
            raise InvalidSignatureError("Invalid webhook signature") from exc


def _ensure_payable(booking: Booking) -> None:
    if booking.payment_status == PaymentStatus.PAID:
        raise InvalidStateError("Booking already paid")
    if booking.status in BookingStatus.RELEASED:
        raise InvalidStateError(f"Cannot take payment for a {booking.status.lower()} booking")


def start_payment_intent(gateway: StripeGateway, booking: Booking) -> dict[str, object]:
    """Create a card payment for a staff-entered booking and remember its intent id."""
    _ensure_payable(booking)
    intent = gateway.create_payment_intent(booking)
    try:
        booking.payment_intent_id = intent.id
        booking.payment_method = "card"
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Payment intent %s created for booking %s", intent.id, booking.booking_id)
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}


def start_checkout(gateway: StripeGateway, booking: Booking, slug: str, reference: str) -> dict[str, object]:
    """Redirect URLs carry the public booking reference, never the raw id."""
    _ensure_payable(booking)
    base = f"{gateway.booking_page_url}/{slug}"
    session = gateway.create_checkout_session(
        booking,
        success_url=f"{base}/success?reference={reference}&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}?cancelled=1",
    )
    try:
        booking.payment_method = "card"
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Checkout session %s created for booking %s", session.id, booking.booking_id)
    return {"session_id": session.id, "url": session.url}


@dataclass
class EventResult:
    outcome: str
    booking: Optional[Booking] = None
    business_id: Optional[int] = None
    notify: Optional[str] = None


def _metadata_int(obj: Mapping, key: str) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    value = metadata.get(key)
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class PaymentEventHandler:
    """Applies verified gateway events to bookings and business plans.

    Each event id is written to the processed-event ledger in the same
    commit as its mutation; a repeated delivery finds the ledger row (or
    loses the insert race) and changes nothing.
    """

    def __init__(self, notifier, cache) -> None:
        self.notifier = notifier
        self.cache = cache
        self.side_effects: Counter = Counter()
        self.side_effect_failures: Counter = Counter()
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "payment_intent.succeeded": self._payment_succeeded,
            "payment_intent.payment_failed": self._payment_failed,
            "customer.subscription.deleted": self._subscription_deleted,
        }

    def handle(self, event: Mapping) -> str:
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        if not event_id or not event_type:
            raise InvalidPayloadError("Webhook event is missing id or type")

        if db.session.get(ProcessedPaymentEvent, event_id) is not None:
            logger.info("Skipping already processed webhook event %s (%s)", event_id, event_type)
            return "duplicate"

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring webhook event type %s", event_type)
            return "ignored"

        try:
            result = handler(obj)
            db.session.add(
                ProcessedPaymentEvent(
                    event_id=event_id,
                    object_id=obj.get("id"),
                    event_type=event_type,
                    booking_id=result.booking.booking_id if result.booking is not None else None,
                    outcome=result.outcome,
                )
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning("Concurrent delivery of webhook event %s detected; skipped", event_id)
            return "duplicate"
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info("Processed webhook event %s (%s): %s", event_id, event_type, result.outcome)
        business_id = result.booking.business_id if result.booking is not None else result.business_id
        if business_id is not None:
            self._side_effect("cache_invalidation", self.cache.invalidate_tenant, business_id)
        if result.notify == "confirmed":
            self._side_effect("notify_confirmed", self.notifier.notify_booking_confirmed, result.booking)
        return result.outcome

    def _side_effect(self, kind: str, func, *args) -> None:
        try:
            func(*args)
        except Exception:
            self.side_effect_failures[kind] += 1
            logger.exception("Webhook side effect %s failed", kind)
        else:
            self.side_effects[kind] += 1

    def _find_booking(self, obj: Mapping, intent_id: Optional[str] = None) -> Optional[Booking]:
        booking_id = _metadata_int(obj, "booking_id")
        business_id = _metadata_int(obj, "business_id")
        query = Booking.query
        if booking_id is not None:
            query = query.filter(Booking.booking_id == booking_id)
            if business_id is not None:
                query = query.filter(Booking.business_id == business_id)
        elif intent_id:
            query = query.filter(Booking.payment_intent_id == intent_id)
        else:
            return None
        return query.with_for_update().first()

    def _apply_payment(self, obj: Mapping, booking: Optional[Booking], event: str, applied_outcome: str) -> EventResult:
        if booking is None:
            logger.warning("Webhook %s for unknown booking (object %s)", event, obj.get("id"))
            return EventResult("booking_not_found")

        before = state_of(booking)
        try:
            after = apply_event(before, event)
        except InvalidTransitionError as exc:
            logger.warning("Webhook %s rejected for booking %s: %s", event, booking.booking_id, exc.message)
            return EventResult("rejected_transition", booking)

        booking.status = after.status
        booking.payment_status = after.payment_status

        if before.status in BookingStatus.RELEASED and after.payment_status == PaymentStatus.PAID:
            logger.warning(
                "Payment received for %s booking %s; status left unchanged",
                before.status, booking.booking_id,
            )
            return EventResult("paid_after_release", booking)

        confirmed = before.status != after.status and after.status == BookingStatus.CONFIRMED
        return EventResult(applied_outcome, booking, notify="confirmed" if confirmed else None)

    def _checkout_completed(self, obj: Mapping) -> EventResult:
        if obj.get("mode") == "subscription":
            return self._subscription_started(obj)

        booking = self._find_booking(obj)
        result = self._apply_payment(obj, booking, Event.CHECKOUT_COMPLETED, "confirmed")
        if booking is not None and result.outcome != "rejected_transition":
            booking.payment_method = "card"
            if obj.get("payment_intent") and not booking.payment_intent_id:
                booking.payment_intent_id = obj.get("payment_intent")
        return result

    def _payment_succeeded(self, obj: Mapping) -> EventResult:
        booking = self._find_booking(obj, intent_id=obj.get("id"))
        result = self._apply_payment(obj, booking, Event.PAYMENT_SUCCEEDED, "paid")
        if booking is not None and result.outcome != "rejected_transition":
            booking.stripe_charge_id = obj.get("latest_charge") or booking.stripe_charge_id
        return result

    def _payment_failed(self, obj: Mapping) -> EventResult:
        booking = self._find_booking(obj, intent_id=obj.get("id"))
        return self._apply_payment(obj, booking, Event.PAYMENT_FAILED, "payment_failed")

    def _subscription_started(self, obj: Mapping) -> EventResult:
        business_id = _metadata_int(obj, "business_id")
        plan = ((obj.get("metadata") or {}).get("plan") or "").upper()
        business = db.session.get(Business, business_id) if business_id else None
        if business is None or plan not in PLANS:
            logger.warning("Subscription checkout %s without a valid business/plan", obj.get("id"))
            return EventResult("ignored")

        business.plan = plan
        business.subscription_status = "active"
        business.stripe_subscription_id = obj.get("subscription")
        logger.info("Business %s upgraded to %s", business.business_id, plan)
        return EventResult("plan_updated", business_id=business.business_id)

    def _subscription_deleted(self, obj: Mapping) -> EventResult:
        business = Business.query.filter_by(stripe_subscription_id=obj.get("id")).first()
        if business is None:
            logger.warning("Subscription %s deleted for unknown business", obj.get("id"))
            return EventResult("business_not_found")

        business.plan = "FREE"
        business.subscription_status = "canceled"
        logger.info("Business %s downgraded to FREE", business.business_id)
        return EventResult("plan_downgraded", business_id=business.business_id)
