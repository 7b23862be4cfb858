"""Error taxonomy for the scheduling core and its JSON rendering."""
from __future__ import annotations

from flask import Flask, current_app, jsonify


class SchedulingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400
    code = "scheduling_error"

    def __init__(self, message: str | None = None, **extra: object) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(SchedulingError):
    code = "invalid_payload"


class NotFoundError(SchedulingError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, message: str | None = None) -> None:
        super().__init__(message or f"{resource.capitalize()} not found", resource=resource)
        self.resource = resource


class ConflictError(SchedulingError):
    """The requested interval overlaps a live booking in the same scope."""

    code = "slot_unavailable"

    def __init__(self, message: str | None = None, fields: tuple[str, ...] = ("starts_at",), **extra: object) -> None:
        super().__init__(
            message or "Time slot not available. There is a conflicting booking.",
            fields=list(fields),
            **extra,
        )


class PlanLimitError(SchedulingError):
    status_code = 403
    code = "plan_limit_reached"

    def __init__(self, resource: str, plan: str, limit: int, current: int, message: str | None = None) -> None:
        super().__init__(
            message or f"{plan.capitalize()} plan allows only {limit} {resource}. Upgrade to Pro to add more.",
            resource=resource,
            plan=plan,
            limit=limit,
            current=current,
            upgrade_required=True,
        )
        self.resource = resource
        self.plan = plan
        self.limit = limit
        self.current = current


class InvalidStateError(SchedulingError):
    code = "invalid_state"


class InvalidTransitionError(InvalidStateError):
    code = "invalid_transition"


class AlreadyCancelledError(InvalidStateError):
    code = "already_cancelled"


class WebhookError(SchedulingError):
    """A gateway callback rejected before any booking is touched."""

    code = "invalid_webhook"


class InvalidPayloadError(WebhookError):
    code = "invalid_payload"


class InvalidSignatureError(WebhookError):
    code = "invalid_signature"


class PaymentError(SchedulingError):
    status_code = 502
    code = "payment_error"


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SchedulingError)
    def handle_scheduling_error(exc: SchedulingError):
        if exc.status_code >= 500:
            current_app.logger.error("Unhandled scheduling error: %s", exc.message)
        return jsonify(exc.to_dict()), exc.status_code
