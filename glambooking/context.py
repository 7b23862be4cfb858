"""Identity and tenant context carried by signed bearer tokens."""
from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import current_app, g, jsonify, request
from itsdangerous import BadData, URLSafeTimedSerializer

from .errors import NotFoundError
from .extensions import db
from .models import Staff
from .permissions import StaffPermissions

TOKEN_SALT = "auth-token"
BOOKING_REFERENCE_SALT = "booking-reference"
TOKEN_MAX_AGE = 86400  # 24 hours


@dataclass(frozen=True)
class TenantContext:
    tenant_id: int
    actor_id: int
    actor_role: str
    permissions: StaffPermissions


def _serializer(salt: str = TOKEN_SALT) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=salt)


def build_token(staff: Staff) -> str:
    return _serializer().dumps({"staff_id": staff.staff_id, "business_id": staff.business_id})


def build_booking_reference(booking) -> str:
    """Unguessable handle for a booking made on the public page."""
    return _serializer(BOOKING_REFERENCE_SALT).dumps(
        {"booking_id": booking.booking_id, "business_id": booking.business_id}
    )


def load_booking_reference(reference: str, business_id: int) -> int:
    """Booking id behind a public reference; any mismatch reads as not found."""
    try:
        payload = _serializer(BOOKING_REFERENCE_SALT).loads(reference)
    except BadData:
        raise NotFoundError("booking") from None
    if not isinstance(payload, dict) or payload.get("business_id") != business_id or not payload.get("booking_id"):
        raise NotFoundError("booking")
    return payload["booking_id"]


def load_context() -> Optional[TenantContext]:
    """Resolve the Authorization header to a tenant context.

    Returns None if the token is missing, invalid, expired, or names a staff
    member that no longer exists or is inactive.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    try:
        payload = _serializer().loads(auth_header[7:], max_age=TOKEN_MAX_AGE)
    except BadData:
        return None
    if not isinstance(payload, dict) or not payload.get("staff_id"):
        return None

    staff = db.session.get(Staff, payload.get("staff_id"))
    if staff is None or not staff.active or staff.business_id != payload.get("business_id"):
        return None

    return TenantContext(
        tenant_id=staff.business_id,
        actor_id=staff.staff_id,
        actor_role=staff.role,
        permissions=staff.permissions,
    )


def require_tenant(permission: Optional[str] = None):
    """Route decorator: sets ``g.tenant`` or answers 401/403."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            context = load_context()
            if context is None:
                return jsonify({"error": "unauthorized", "message": "Authentication required. Please log in to continue."}), 401
            if permission and not context.permissions.allows(permission):
                current_app.logger.info(
                    "Staff %s of business %s lacks %s", context.actor_id, context.tenant_id, permission
                )
                return jsonify({"error": "forbidden", "message": "You do not have permission to perform this action."}), 403
            g.tenant = context
            return view(*args, **kwargs)

        return wrapper

    return decorator
