"""Explicitly constructed scheduling collaborators, one set per application."""
from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from .availability import AvailabilityResolver
from .booking_service import BookingService
from .cache import Cache
from .catalog import Catalog
from .locking import ScopeLocks
from .notifications import DatabaseNotifier
from .payments import PaymentEventHandler, StripeGateway
from .plan_limits import PlanLimitGuard

EXTENSION_KEY = "glambooking"


@dataclass
class Services:
    catalog: Catalog
    cache: Cache
    notifier: DatabaseNotifier
    gateway: StripeGateway
    plan_guard: PlanLimitGuard
    availability: AvailabilityResolver
    bookings: BookingService
    payment_events: PaymentEventHandler


def build_services(app: Flask) -> Services:
    config = app.config
    catalog = Catalog()
    cache = Cache.from_url(config.get("REDIS_URL"), default_ttl=config.get("CACHE_TTL_SECONDS", 300))
    notifier = DatabaseNotifier()
    locks = ScopeLocks()
    plan_guard = PlanLimitGuard(
        catalog, locks, enforce_monthly_bookings=config.get("ENFORCE_MONTHLY_BOOKING_LIMIT", False)
    )

    return Services(
        catalog=catalog,
        cache=cache,
        notifier=notifier,
        gateway=StripeGateway(
            config.get("STRIPE_SECRET_KEY"),
            config.get("STRIPE_WEBHOOK_SECRET"),
            currency=config.get("STRIPE_CURRENCY", "gbp"),
            booking_page_url=config.get("BOOKING_PAGE_URL", "http://localhost:3002"),
        ),
        plan_guard=plan_guard,
        availability=AvailabilityResolver(
            catalog,
            window_start_hour=config.get("BUSINESS_DAY_START_HOUR", 9),
            window_end_hour=config.get("BUSINESS_DAY_END_HOUR", 18),
            step_minutes=config.get("SLOT_STEP_MINUTES", 30),
        ),
        bookings=BookingService(
            catalog,
            notifier,
            cache,
            plan_guard,
            locks,
            cache_ttl=config.get("CACHE_TTL_SECONDS", 300),
        ),
        payment_events=PaymentEventHandler(notifier, cache),
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
