"""Extended routes: plan-guarded locations and staff, business views, public booking page."""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .availability import business_now
from .booking_service import parse_date, parse_id, parse_optional_id
from .cache import business_key
from .context import (build_booking_reference, load_booking_reference,
                      require_tenant)
from .errors import NotFoundError, ValidationError
from .extensions import db
from .models import Booking, Location, Service, Staff
from .payments import start_checkout
from .permissions import parse_permissions
from .services import get_services
from .state_machine import BookingStatus

bp_ext = Blueprint("api_ext", __name__)


def _payload() -> dict:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


# LOCATIONS
@bp_ext.get("/locations")
@require_tenant()
def list_locations() -> tuple[dict[str, object], int]:
    """List the business's locations.
    ---
    tags:
      - Locations
    security:
      - Bearer: []
    responses:
      200:
        description: Locations, primary first
    """
    locations = (
        Location.query.filter_by(business_id=g.tenant.tenant_id)
        .order_by(Location.is_primary.desc(), Location.created_at)
        .all()
    )
    return jsonify({"locations": [location.to_dict() for location in locations]}), 200


@bp_ext.post("/locations")
@require_tenant("can_manage_locations")
def create_location() -> tuple[dict[str, object], int]:
    """Add a location, subject to the plan's location limit.
    ---
    tags:
      - Locations
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - name
          properties:
            name:
              type: string
            address:
              type: string
            city:
              type: string
            postcode:
              type: string
            phone:
              type: string
    responses:
      201:
        description: Location created
      400:
        description: Invalid payload
      403:
        description: plan_limit_reached, with limit and current
    """
    payload = _payload()
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", field="name")

    services = get_services()
    tenant_id = g.tenant.tenant_id
    try:
        with services.plan_guard.reserve(tenant_id, "locations"):
            is_first = Location.query.filter_by(business_id=tenant_id).count() == 0
            location = Location(
                business_id=tenant_id,
                name=name,
                address=payload.get("address"),
                city=payload.get("city"),
                postcode=payload.get("postcode"),
                phone=payload.get("phone"),
                is_primary=is_first,
            )
            db.session.add(location)
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create location", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    services.cache.delete(business_key(tenant_id))
    return jsonify({"location": location.to_dict()}), 201


# STAFF
@bp_ext.get("/staff")
@require_tenant()
def list_staff() -> tuple[dict[str, object], int]:
    """List team members.
    ---
    tags:
      - Staff
    security:
      - Bearer: []
    responses:
      200:
        description: Staff members
    """
    members = Staff.query.filter_by(business_id=g.tenant.tenant_id).order_by(Staff.created_at).all()
    return jsonify({"staff": [member.to_dict() for member in members]}), 200


@bp_ext.post("/staff")
@require_tenant("can_manage_team")
def create_staff() -> tuple[dict[str, object], int]:
    """Add a team member, subject to the plan's staff limit.
    ---
    tags:
      - Staff
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - name
          properties:
            name:
              type: string
            email:
              type: string
            role:
              type: string
              enum: [MANAGER, STAFF]
            permissions:
              type: object
    responses:
      201:
        description: Staff member created
      400:
        description: Invalid payload
      403:
        description: plan_limit_reached, with limit and current
    """
    payload = _payload()
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", field="name")
    role = (payload.get("role") or "STAFF").upper()
    if role not in ("MANAGER", "STAFF"):
        raise ValidationError("role must be MANAGER or STAFF", field="role")

    services = get_services()
    tenant_id = g.tenant.tenant_id
    try:
        with services.plan_guard.reserve(tenant_id, "staff"):
            member = Staff(
                business_id=tenant_id,
                name=name,
                email=payload.get("email"),
                role=role,
                permissions_data=parse_permissions(payload.get("permissions"), role=role).to_dict(),
            )
            db.session.add(member)
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create staff member", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    services.cache.delete(business_key(tenant_id))
    return jsonify({"staff": member.to_dict()}), 201


# BUSINESS VIEWS
@bp_ext.get("/business/summary")
@require_tenant()
def business_summary() -> tuple[dict[str, object], int]:
    """Business profile with resource counts; cached until the next write.
    ---
    tags:
      - Business
    security:
      - Bearer: []
    responses:
      200:
        description: Business summary
    """
    services = get_services()
    tenant_id = g.tenant.tenant_id
    cached = services.cache.get(business_key(tenant_id))
    if cached is not None:
        return jsonify(cached), 200

    try:
        business = services.catalog.get_business(tenant_id)
        now = business_now()
        summary = {
            "business": business.to_dict(),
            "counts": {
                "locations": Location.query.filter_by(business_id=tenant_id).count(),
                "staff": Staff.query.filter_by(business_id=tenant_id).count(),
                "services": Service.query.filter_by(business_id=tenant_id, active=True).count(),
                "upcoming_bookings": Booking.query.filter(
                    Booking.business_id == tenant_id,
                    Booking.starts_at >= now,
                    Booking.status.in_((BookingStatus.PENDING, BookingStatus.CONFIRMED)),
                ).count(),
            },
        }
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to build business summary", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    services.cache.set(business_key(tenant_id), summary)
    return jsonify(summary), 200


@bp_ext.get("/plan/usage")
@require_tenant()
def plan_usage() -> tuple[dict[str, object], int]:
    """Current usage against the plan's limits.
    ---
    tags:
      - Business
    security:
      - Bearer: []
    responses:
      200:
        description: Counts and limits per resource (null limit means unlimited)
    """
    try:
        usage = get_services().plan_guard.usage(g.tenant.tenant_id, business_now())
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to compute plan usage", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify(usage), 200


# PUBLIC BOOKING PAGE
def _public_business(slug: str):
    business = get_services().catalog.get_business_by_slug(slug)
    if not business.booking_page_enabled:
        raise NotFoundError("business", "Booking page is not available")
    return business


@bp_ext.get("/public/<slug>/availability")
def public_availability(slug: str) -> tuple[dict[str, object], int]:
    """Open slots for the public booking page; past slots are never available.
    ---
    tags:
      - Public
    parameters:
      - name: slug
        in: path
        type: string
        required: true
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
      404:
        description: Booking page or service not found
    """
    business = _public_business(slug)
    day = parse_date(request.args.get("date"))
    try:
        slots = get_services().availability.resolve(
            business.business_id,
            day,
            parse_id(request.args.get("service_id"), "service_id"),
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            staff_id=parse_optional_id(request.args.get("staff_id"), "staff_id"),
            public=True,
        )
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to resolve public availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"date": day.isoformat(), "slots": [slot.to_dict() for slot in slots]}), 200


@bp_ext.post("/public/<slug>/bookings")
def public_create_booking(slug: str) -> tuple[dict[str, object], int]:
    """Book from the public page; the client is matched or created by email.
    ---
    tags:
      - Public
    parameters:
      - name: slug
        in: path
        type: string
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - name
            - email
            - service_id
            - starts_at
          properties:
            name:
              type: string
            email:
              type: string
            phone:
              type: string
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
        description: Booking created as PENDING/PENDING, with a signed reference for lookup and checkout
      400:
        description: Invalid payload, past start time or slot_unavailable
      404:
        description: Booking page, service, location or staff not found
    """
    payload = _payload()
    try:
        booking = get_services().bookings.create_public_booking(slug, payload)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create public booking", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"booking": booking.to_public_dict(), "reference": build_booking_reference(booking)}), 201


@bp_ext.get("/public/<slug>/bookings/<reference>")
def public_get_booking(slug: str, reference: str) -> tuple[dict[str, object], int]:
    """Booking confirmation view for the public page.
    ---
    tags:
      - Public
    responses:
      200:
        description: Public booking details
      404:
        description: Booking not found for this business
    """
    business = _public_business(slug)
    booking_id = load_booking_reference(reference, business.business_id)
    booking = get_services().bookings.get_booking(business.business_id, booking_id)
    return jsonify({"booking": booking.to_public_dict()}), 200


@bp_ext.post("/public/<slug>/checkout")
def public_checkout(slug: str) -> tuple[dict[str, object], int]:
    """Start a Stripe Checkout session to pay for a public booking.
    ---
    tags:
      - Public
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - reference
          properties:
            reference:
              type: string
    responses:
      200:
        description: Checkout session created
        schema:
          type: object
          properties:
            session_id:
              type: string
            url:
              type: string
      400:
        description: Booking already paid or released
      404:
        description: Booking not found for this business
      502:
        description: Payment processing error
    """
    business = _public_business(slug)
    services = get_services()
    reference = _payload().get("reference")
    if not isinstance(reference, str) or not reference:
        raise ValidationError("reference is required", field="reference")
    booking_id = load_booking_reference(reference, business.business_id)
    booking = services.bookings.get_booking(business.business_id, booking_id)
    try:
        result = start_checkout(services.gateway, booking, slug, reference)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record checkout session", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify(result), 200
