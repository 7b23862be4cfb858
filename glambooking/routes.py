"""HTTP routes for the GlamBooking scheduling core."""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .booking_service import parse_date, parse_id, parse_optional_id
from .context import require_tenant
from .errors import ValidationError
from .extensions import db
from .payments import start_payment_intent
from .services import get_services

bp = Blueprint("api", __name__)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _database_error(message: str, exc: SQLAlchemyError):
    db.session.rollback()
    current_app.logger.exception(message, exc_info=exc)
    return jsonify({"error": "database_error"}), 500


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


@bp.get("/availability")
@require_tenant()
def get_availability() -> tuple[dict[str, object], int]:
    """List candidate slots for a service on a day, marked available or taken.
    ---
    tags:
      - Availability
    security:
      - Bearer: []
    parameters:
      - name: service_id
        in: query
        type: integer
        required: true
      - name: date
        in: query
        type: string
        format: date
        required: true
      - name: location_id
        in: query
        type: integer
      - name: staff_id
        in: query
        type: integer
    responses:
      200:
        description: Slots in chronological order
        schema:
          type: object
          properties:
            slots:
              type: array
              items:
                type: object
                properties:
                  time:
                    type: string
                  end:
                    type: string
                  available:
                    type: boolean
      400:
        description: Missing or malformed query parameters
      404:
        description: Service not found for this business
    """
    services = get_services()
    day = parse_date(request.args.get("date"))
    try:
        slots = services.availability.resolve(
            g.tenant.tenant_id,
            day,
            parse_id(request.args.get("service_id"), "service_id"),
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            staff_id=parse_optional_id(request.args.get("staff_id"), "staff_id"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to resolve availability", exc)

    return jsonify({"date": day.isoformat(), "slots": [slot.to_dict() for slot in slots]}), 200


@bp.get("/bookings")
@require_tenant()
def list_bookings() -> tuple[dict[str, object], int]:
    """List bookings for the business, newest first.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    parameters:
      - name: status
        in: query
        type: string
      - name: payment_status
        in: query
        type: string
      - name: client_id
        in: query
        type: integer
      - name: service_id
        in: query
        type: integer
      - name: location_id
        in: query
        type: integer
      - name: staff_id
        in: query
        type: integer
      - name: date_from
        in: query
        type: string
        format: date
      - name: date_to
        in: query
        type: string
        format: date
      - name: limit
        in: query
        type: integer
        default: 50
      - name: offset
        in: query
        type: integer
        default: 0
    responses:
      200:
        description: Page of bookings with the total count
    """
    try:
        limit = int(request.args.get("limit", 50))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        raise ValidationError("limit and offset must be integers", fields=["limit", "offset"]) from None

    try:
        result = get_services().bookings.list_bookings(g.tenant.tenant_id, request.args.to_dict(), limit, offset)
    except SQLAlchemyError as exc:
        return _database_error("Failed to list bookings", exc)

    return jsonify(result), 200


@bp.post("/bookings")
@require_tenant("can_manage_bookings")
def create_booking() -> tuple[dict[str, object], int]:
    """Create a booking after the authoritative overlap check.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - client_id
            - service_id
            - starts_at
          properties:
            client_id:
              type: integer
            service_id:
              type: integer
            location_id:
              type: integer
            staff_id:
              type: integer
            starts_at:
              type: string
              format: date-time
            notes:
              type: string
            payment_method:
              type: string
              enum: [card, cash, bank_transfer]
    responses:
      201:
        description: Booking created as PENDING/PENDING
      400:
        description: Invalid payload or slot_unavailable
      404:
        description: Client, service, location or staff not found
    """
    payload = _json_body()
    try:
        booking = get_services().bookings.create_booking(g.tenant.tenant_id, g.tenant.actor_id, payload)
    except SQLAlchemyError as exc:
        return _database_error("Failed to create booking", exc)

    return jsonify({"booking": booking.to_dict()}), 201


@bp.get("/bookings/<int:booking_id>")
@require_tenant()
def get_booking(booking_id: int) -> tuple[dict[str, object], int]:
    """Fetch one booking of the business.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    responses:
      200:
        description: Booking details
      404:
        description: Booking not found
    """
    booking = get_services().bookings.get_booking(g.tenant.tenant_id, booking_id)
    return jsonify({"booking": booking.to_dict()}), 200


@bp.patch("/bookings/<int:booking_id>")
@require_tenant("can_manage_bookings")
def update_booking(booking_id: int) -> tuple[dict[str, object], int]:
    """Reschedule a booking or change its status / payment status.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            starts_at:
              type: string
              format: date-time
            staff_id:
              type: integer
            status:
              type: string
              enum: [PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW]
            payment_status:
              type: string
              enum: [PENDING, PAID, FAILED, REFUNDED]
            notes:
              type: string
    responses:
      200:
        description: Updated booking
      400:
        description: Invalid payload, illegal transition or slot_unavailable
      404:
        description: Booking or staff not found
    """
    payload = _json_body()
    if not payload:
        raise ValidationError("No fields to update")
    try:
        booking = get_services().bookings.update_booking(g.tenant.tenant_id, booking_id, payload)
    except SQLAlchemyError as exc:
        return _database_error("Failed to update booking", exc)

    return jsonify({"booking": booking.to_dict()}), 200


@bp.post("/bookings/<int:booking_id>/cancel")
@require_tenant("can_manage_bookings")
def cancel_booking(booking_id: int) -> tuple[dict[str, object], int]:
    """Cancel a booking and release its slot.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    responses:
      200:
        description: Booking cancelled
      400:
        description: Booking already cancelled or no longer cancellable
      404:
        description: Booking not found
    """
    try:
        booking = get_services().bookings.cancel_booking(g.tenant.tenant_id, booking_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to cancel booking", exc)

    return jsonify({"booking": booking.to_dict()}), 200


@bp.delete("/bookings/<int:booking_id>")
@require_tenant("can_manage_bookings")
def delete_booking(booking_id: int):
    """Permanently delete a booking.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    responses:
      204:
        description: Booking deleted
      404:
        description: Booking not found
    """
    try:
        get_services().bookings.delete_booking(g.tenant.tenant_id, booking_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to delete booking", exc)

    return "", 204


@bp.post("/bookings/<int:booking_id>/payment-intent")
@require_tenant("can_manage_bookings")
def create_payment_intent(booking_id: int) -> tuple[dict[str, object], int]:
    """Create a Stripe PaymentIntent for a booking's snapshotted total.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    responses:
      200:
        description: Payment intent created successfully
        schema:
          type: object
          properties:
            client_secret:
              type: string
            payment_intent_id:
              type: string
      400:
        description: Booking already paid or released
      404:
        description: Booking not found
      502:
        description: Payment processing error
    """
    services = get_services()
    booking = services.bookings.get_booking(g.tenant.tenant_id, booking_id)
    try:
        result = start_payment_intent(services.gateway, booking)
    except SQLAlchemyError as exc:
        return _database_error("Failed to record payment intent", exc)

    return jsonify(result), 200


@bp.post("/payments/webhook")
def payments_webhook():
    """Stripe webhook endpoint to receive asynchronous payment events.
    ---
    tags:
      - Payments
    parameters:
      - name: Stripe-Signature
        in: header
        required: true
        type: string
        description: Stripe signature for webhook verification
      - name: body
        in: body
        required: true
        description: Stripe webhook event payload
    responses:
      200:
        description: Webhook event received and processed
        schema:
          type: object
          properties:
            received:
              type: boolean
              example: true
            outcome:
              type: string
      400:
        description: Invalid payload or signature
    """
    services = get_services()
    if not services.gateway.webhook_secret:
        current_app.logger.error("Stripe webhook secret not configured - webhooks will not be processed")
        # 200 so Stripe stops retrying; the configuration has to be fixed server-side
        return jsonify({"received": True}), 200

    event = services.gateway.construct_event(request.get_data(), request.headers.get("Stripe-Signature"))
    try:
        outcome = services.payment_events.handle(event)
    except SQLAlchemyError as exc:
        return _database_error("Failed to apply webhook event", exc)

    return jsonify({"received": True, "outcome": outcome}), 200
