"""pytest configuration: path management and shared application fixtures."""
from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from glambooking import create_app  # noqa: E402
from glambooking.config import TestingConfig  # noqa: E402
from glambooking.context import build_token  # noqa: E402
from glambooking.extensions import db  # noqa: E402
from glambooking.models import (Booking, Business, Client, Location,  # noqa: E402
                                Service, Staff)

# A weekday comfortably in the future so public "not in the past" checks pass
BOOKING_DAY = datetime(2031, 3, 10)


def at(hour: int, minute: int = 0) -> datetime:
    return BOOKING_DAY.replace(hour=hour, minute=minute)


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["glambooking"]


@pytest.fixture
def make_tenant(app):
    """Factory creating a business with an owner, a client, a service and a location."""
    counter = {"n": 0}

    def factory(plan: str = "FREE", with_location: bool = True, booking_page_enabled: bool = True):
        counter["n"] += 1
        n = counter["n"]
        with app.app_context():
            business = Business(
                name=f"Glow Studio {n}",
                slug=f"glow-studio-{n}",
                plan=plan,
                booking_page_enabled=booking_page_enabled,
            )
            db.session.add(business)
            db.session.flush()

            owner = Staff(business_id=business.business_id, name=f"Owner {n}", email=f"owner{n}@glow.test", role="OWNER")
            customer = Client(business_id=business.business_id, name="Chloe Client", email=f"chloe{n}@example.com")
            service = Service(
                business_id=business.business_id, name="Cut & Finish", price_cents=4500, duration_minutes=60
            )
            db.session.add_all([owner, customer, service])
            location = None
            if with_location:
                location = Location(business_id=business.business_id, name="High Street", is_primary=True)
                db.session.add(location)
            db.session.commit()

            token = build_token(owner)
            return SimpleNamespace(
                business_id=business.business_id,
                slug=business.slug,
                owner_id=owner.staff_id,
                client_id=customer.client_id,
                service_id=service.service_id,
                location_id=location.location_id if location else None,
                headers={"Authorization": f"Bearer {token}"},
            )

    return factory


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def add_booking(app):
    """Insert a booking row directly, bypassing the service layer."""

    def factory(tenant, starts_at, ends_at, status="PENDING", staff_id=None, location_id=None, payment_status="PENDING"):
        with app.app_context():
            booking = Booking(
                business_id=tenant.business_id,
                client_id=tenant.client_id,
                service_id=tenant.service_id,
                location_id=location_id,
                staff_id=staff_id,
                starts_at=starts_at,
                ends_at=ends_at,
                status=status,
                payment_status=payment_status,
                total_amount_cents=4500,
            )
            db.session.add(booking)
            db.session.commit()
            return booking.booking_id

    return factory
