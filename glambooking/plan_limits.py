"""
Plan limits for subscription tiers: locations, staff and monthly bookings.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from .errors import PlanLimitError, ValidationError
from .extensions import db
from .locking import ScopeLocks
from .models import Booking, Location, Staff

logger = logging.getLogger(__name__)

# None means unlimited
PLAN_LIMITS: dict[str, dict[str, Optional[int]]] = {
    "FREE": {"locations": 1, "staff": 1, "bookings_per_month": 50},
    "STARTER": {"locations": 1, "staff": 1, "bookings_per_month": None},
    "PRO": {"locations": None, "staff": None, "bookings_per_month": None},
    "BUSINESS": {"locations": None, "staff": None, "bookings_per_month": None},
}

RESOURCE_MODELS = {
    "locations": Location,
    "staff": Staff,
}


def get_plan_limit(plan: Optional[str], resource_type: str) -> Optional[int]:
    """Limit for a resource on a plan; unknown plans get FREE limits."""
    limits = PLAN_LIMITS.get((plan or "FREE").upper(), PLAN_LIMITS["FREE"])
    return limits[resource_type]


def _month_bounds(when: datetime) -> tuple[datetime, datetime]:
    start = datetime(when.year, when.month, 1)
    if when.month == 12:
        return start, datetime(when.year + 1, 1, 1)
    return start, datetime(when.year, when.month + 1, 1)


class PlanLimitGuard:
    def __init__(self, catalog, locks=None, enforce_monthly_bookings: bool = False) -> None:
        self.catalog = catalog
        self.locks = locks if locks is not None else ScopeLocks()
        self.enforce_monthly_bookings = enforce_monthly_bookings

    def count(self, tenant_id: int, resource_type: str) -> int:
        model = RESOURCE_MODELS[resource_type]
        return db.session.query(model).filter(model.business_id == tenant_id).count()

    def assert_can_create(self, tenant_id: int, resource_type: str) -> None:
        """Raise PlanLimitError when the tenant's plan has no room for another resource."""
        if resource_type not in RESOURCE_MODELS:
            raise ValidationError(f"Unknown resource type: {resource_type}")

        business = self.catalog.get_business(tenant_id)
        limit = get_plan_limit(business.plan, resource_type)
        if limit is None:
            return

        current = self.count(tenant_id, resource_type)
        if current >= limit:
            logger.info(
                "Plan limit reached for business %s: %s %s/%s on %s",
                tenant_id, resource_type, current, limit, business.plan,
            )
            raise PlanLimitError(resource_type, business.plan, limit, current)

    @contextmanager
    def reserve(self, tenant_id: int, resource_type: str) -> Iterator[None]:
        """Check the limit and keep the tenant's creation lock until the caller commits.

        The insert and commit must happen inside the block; anything left
        uncommitted is rolled back on the way out.
        """
        with self.locks.hold_resource(tenant_id, resource_type):
            try:
                self.assert_can_create(tenant_id, resource_type)
                yield
            except Exception:
                db.session.rollback()
                raise

    def bookings_in_month(self, tenant_id: int, when: datetime) -> int:
        start, end = _month_bounds(when)
        return (
            db.session.query(Booking)
            .filter(Booking.business_id == tenant_id, Booking.created_at >= start, Booking.created_at < end)
            .count()
        )

    def assert_can_book(self, tenant_id: int, when: datetime) -> None:
        """Monthly booking cap; a no-op unless enforcement is switched on."""
        if not self.enforce_monthly_bookings:
            return
        business = self.catalog.get_business(tenant_id)
        limit = get_plan_limit(business.plan, "bookings_per_month")
        if limit is None:
            return
        current = self.bookings_in_month(tenant_id, when)
        if current >= limit:
            logger.info("Monthly booking limit reached for business %s: %s/%s", tenant_id, current, limit)
            raise PlanLimitError(
                "bookings",
                business.plan,
                limit,
                current,
                message=f"{business.plan.capitalize()} plan allows {limit} bookings per month. Upgrade to add more.",
            )

    def usage(self, tenant_id: int, when: datetime) -> dict[str, object]:
        business = self.catalog.get_business(tenant_id)
        return {
            "plan": business.plan,
            "locations": {
                "current": self.count(tenant_id, "locations"),
                "limit": get_plan_limit(business.plan, "locations"),
            },
            "staff": {
                "current": self.count(tenant_id, "staff"),
                "limit": get_plan_limit(business.plan, "staff"),
            },
            "bookings_this_month": {
                "current": self.bookings_in_month(tenant_id, when),
                "limit": get_plan_limit(business.plan, "bookings_per_month"),
                "enforced": self.enforce_monthly_bookings,
            },
        }
