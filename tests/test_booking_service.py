"""Tests for authoritative booking creation, update, cancel and delete."""
from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from glambooking.booking_service import BookingService
from glambooking.cache import CacheError
from glambooking.catalog import Catalog
from glambooking.errors import (AlreadyCancelledError, ConflictError,
                                InvalidTransitionError, NotFoundError,
                                PlanLimitError, ValidationError)
from glambooking.extensions import db
from glambooking.locking import ScopeLocks
from glambooking.models import Booking, Client, Notification, Service, Staff
from glambooking.plan_limits import PLAN_LIMITS, PlanLimitGuard

from conftest import BOOKING_DAY, at


def _create(services, tenant, starts_at, **extra):
    if isinstance(starts_at, datetime):
        starts_at = starts_at.isoformat()
    data = {"client_id": tenant.client_id, "service_id": tenant.service_id, "starts_at": starts_at}
    data.update(extra)
    return services.bookings.create_booking(tenant.business_id, tenant.owner_id, data)


def test_create_booking_derives_end_and_snapshots_price(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10), notes="Fringe please")

        assert booking.status == "PENDING"
        assert booking.payment_status == "PENDING"
        assert booking.ends_at == at(11)
        assert booking.total_amount_cents == 4500
        assert booking.created_by_id == tenant.owner_id
        assert Notification.query.filter_by(booking_id=booking.booking_id, notification_type="booking_created").count() == 1


def test_offset_start_time_is_normalised(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, "2031-03-10T11:00:00+01:00")

        assert booking.starts_at == at(10)


def test_overlapping_booking_is_rejected(app, services, tenant) -> None:
    with app.app_context():
        _create(services, tenant, at(10))

        with pytest.raises(ConflictError) as excinfo:
            _create(services, tenant, at(10, 30))

        assert excinfo.value.to_dict()["error"] == "slot_unavailable"
        assert "starts_at" in excinfo.value.to_dict()["fields"]
        assert Booking.query.count() == 1


def test_adjacent_bookings_are_allowed(app, services, tenant) -> None:
    with app.app_context():
        _create(services, tenant, at(10))
        _create(services, tenant, at(11))
        _create(services, tenant, at(9))

        assert Booking.query.count() == 3


def test_same_time_in_a_different_scope_is_allowed(app, services, tenant) -> None:
    with app.app_context():
        _create(services, tenant, at(10))
        _create(services, tenant, at(10), location_id=tenant.location_id)

        assert Booking.query.count() == 2


def test_no_overlap_invariant_holds_after_many_attempts(app, services, tenant) -> None:
    with app.app_context():
        start = at(9)
        while start < at(17):
            try:
                _create(services, tenant, start)
            except ConflictError:
                pass
            start += timedelta(minutes=15)

        live = Booking.query.filter(Booking.status.notin_(("CANCELLED", "NO_SHOW"))).all()
        for first in live:
            for second in live:
                if first.booking_id != second.booking_id:
                    assert not (first.starts_at < second.ends_at and first.ends_at > second.starts_at)
        assert len(live) == 8


def test_cross_tenant_references_are_not_found(app, services, make_tenant) -> None:
    first = make_tenant()
    second = make_tenant()

    with app.app_context():
        with pytest.raises(NotFoundError) as excinfo:
            services.bookings.create_booking(
                first.business_id, first.owner_id,
                {"client_id": second.client_id, "service_id": first.service_id, "starts_at": at(10).isoformat()},
            )
        assert excinfo.value.resource == "client"

        with pytest.raises(NotFoundError) as excinfo:
            _create(services, first, at(10), location_id=second.location_id)
        assert excinfo.value.resource == "location"

        with pytest.raises(NotFoundError) as excinfo:
            _create(services, first, at(10), staff_id=second.owner_id)
        assert excinfo.value.resource == "staff"

        assert Booking.query.count() == 0


def test_inactive_staff_cannot_be_booked(app, services, tenant) -> None:
    with app.app_context():
        former = Staff(business_id=tenant.business_id, name="Former Stylist", role="STAFF", active=False)
        db.session.add(former)
        db.session.commit()

        with pytest.raises(NotFoundError) as excinfo:
            _create(services, tenant, at(10), staff_id=former.staff_id)

        assert excinfo.value.resource == "staff"
        assert Booking.query.count() == 0


@pytest.mark.parametrize(
    "data",
    [
        {"service_id": 1, "starts_at": "2031-03-10T10:00:00"},
        {"client_id": 1, "service_id": 1, "starts_at": "tomorrow"},
        {"client_id": 1, "service_id": 1, "starts_at": "2031-03-10T10:00:00", "ends_at": "2031-03-10T12:00:00"},
        {"client_id": 1, "service_id": 1, "starts_at": "2031-03-10T10:00:00", "payment_method": "cheque"},
    ],
)
def test_invalid_payloads_are_rejected(app, services, tenant, data) -> None:
    with app.app_context():
        with pytest.raises(ValidationError):
            services.bookings.create_booking(tenant.business_id, tenant.owner_id, data)


def test_price_change_does_not_alter_existing_booking(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))
        booking_id = booking.booking_id

        service = db.session.get(Service, tenant.service_id)
        service.price_cents = 9900
        db.session.commit()

        services.bookings.update_booking(tenant.business_id, booking_id, {"starts_at": at(14).isoformat()})

        assert db.session.get(Booking, booking_id).total_amount_cents == 4500


def test_cancellation_frees_the_slot(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))
        services.bookings.cancel_booking(tenant.business_id, booking.booking_id)

        slots = services.availability.resolve(tenant.business_id, BOOKING_DAY.date(), tenant.service_id)
        assert {slot.time: slot.available for slot in slots}[at(10)] is True

        replacement = _create(services, tenant, at(10))
        assert replacement.status == "PENDING"
        assert Notification.query.filter_by(notification_type="booking_cancelled").count() == 1


def test_cancelling_twice_is_an_invalid_state(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))
        services.bookings.cancel_booking(tenant.business_id, booking.booking_id)

        with pytest.raises(AlreadyCancelledError) as excinfo:
            services.bookings.cancel_booking(tenant.business_id, booking.booking_id)

        assert excinfo.value.status_code == 400
        assert excinfo.value.code == "already_cancelled"


def test_completed_booking_cannot_be_cancelled(app, services, tenant, add_booking) -> None:
    booking_id = add_booking(tenant, at(10), at(11), status="COMPLETED")

    with app.app_context():
        with pytest.raises(InvalidTransitionError):
            services.bookings.cancel_booking(tenant.business_id, booking_id)


def test_reschedule_excludes_the_booking_itself(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))

        updated = services.bookings.update_booking(
            tenant.business_id, booking.booking_id, {"starts_at": at(10, 30).isoformat()}
        )

        assert updated.starts_at == at(10, 30)
        assert updated.ends_at == at(11, 30)


def test_reschedule_into_another_booking_conflicts(app, services, tenant) -> None:
    with app.app_context():
        _create(services, tenant, at(12))
        booking = _create(services, tenant, at(10))

        with pytest.raises(ConflictError):
            services.bookings.update_booking(tenant.business_id, booking.booking_id, {"starts_at": at(11, 30).isoformat()})

        db.session.expire_all()
        assert db.session.get(Booking, booking.booking_id).starts_at == at(10)


def test_reschedule_uses_current_service_duration(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))
        db.session.get(Service, tenant.service_id).duration_minutes = 90
        db.session.commit()

        updated = services.bookings.update_booking(tenant.business_id, booking.booking_id, {"starts_at": at(13).isoformat()})

        assert updated.ends_at == at(14, 30)


def test_changing_staff_moves_the_booking_to_a_new_scope(app, services, tenant) -> None:
    with app.app_context():
        stylist = Staff(business_id=tenant.business_id, name="Sam Stylist", role="STAFF")
        db.session.add(stylist)
        db.session.commit()
        _create(services, tenant, at(10), staff_id=stylist.staff_id)
        unassigned = _create(services, tenant, at(10))

        with pytest.raises(ConflictError):
            services.bookings.update_booking(tenant.business_id, unassigned.booking_id, {"staff_id": stylist.staff_id})


def test_manual_status_changes_follow_the_transition_table(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))

        confirmed = services.bookings.update_booking(tenant.business_id, booking.booking_id, {"status": "confirmed"})
        assert confirmed.status == "CONFIRMED"

        completed = services.bookings.update_booking(
            tenant.business_id, booking.booking_id, {"status": "COMPLETED", "payment_status": "PAID"}
        )
        assert (completed.status, completed.payment_status) == ("COMPLETED", "PAID")

        with pytest.raises(InvalidTransitionError):
            services.bookings.update_booking(tenant.business_id, booking.booking_id, {"status": "PENDING"})

        # Writing the current value is a no-op, not an error
        services.bookings.update_booking(tenant.business_id, booking.booking_id, {"status": "COMPLETED"})


@pytest.mark.parametrize("patch_body", [{"ends_at": "2031-03-10T15:00:00"}, {"total_amount_cents": 1}, {"client_id": 3}])
def test_derived_and_unknown_fields_cannot_be_patched(app, services, tenant, patch_body) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))

        with pytest.raises(ValidationError):
            services.bookings.update_booking(tenant.business_id, booking.booking_id, patch_body)


def test_notification_failure_does_not_fail_the_booking(app, services, tenant) -> None:
    with app.app_context():
        with patch.object(services.notifier, "notify_booking_created", side_effect=RuntimeError("smtp down")):
            booking = _create(services, tenant, at(10))

        assert db.session.get(Booking, booking.booking_id) is not None
        assert services.bookings.side_effect_failures["notify_created"] == 1


def test_cache_failure_does_not_fail_the_booking(app, services, tenant) -> None:
    with app.app_context():
        with patch.object(services.cache, "invalidate_tenant", side_effect=CacheError("redis down")):
            booking = _create(services, tenant, at(10))
            services.bookings.cancel_booking(tenant.business_id, booking.booking_id)

        assert services.bookings.side_effect_failures["cache_invalidation"] == 2


def test_every_write_invalidates_the_tenant_cache(app, services, tenant) -> None:
    with app.app_context():
        with patch.object(services.cache, "invalidate_tenant") as invalidate:
            booking = _create(services, tenant, at(10))
            services.bookings.update_booking(tenant.business_id, booking.booking_id, {"notes": "Running late"})
            services.bookings.cancel_booking(tenant.business_id, booking.booking_id)
            services.bookings.delete_booking(tenant.business_id, booking.booking_id)

        assert invalidate.call_count == 4
        invalidate.assert_called_with(tenant.business_id)


def test_delete_booking(app, services, tenant) -> None:
    with app.app_context():
        booking = _create(services, tenant, at(10))
        services.bookings.delete_booking(tenant.business_id, booking.booking_id)

        with pytest.raises(NotFoundError):
            services.bookings.get_booking(tenant.business_id, booking.booking_id)


def test_bookings_of_other_tenants_are_invisible(app, services, make_tenant) -> None:
    first = make_tenant()
    second = make_tenant()

    with app.app_context():
        booking = _create(services, second, at(10))

        with pytest.raises(NotFoundError):
            services.bookings.cancel_booking(first.business_id, booking.booking_id)
        with pytest.raises(NotFoundError):
            services.bookings.update_booking(first.business_id, booking.booking_id, {"notes": "x"})


def test_list_bookings_filters_and_pages(app, services, tenant) -> None:
    with app.app_context():
        for hour in (9, 11, 13, 15):
            _create(services, tenant, at(hour))
        services.bookings.cancel_booking(tenant.business_id, Booking.query.filter_by(starts_at=at(9)).one().booking_id)

        everything = services.bookings.list_bookings(tenant.business_id)
        pending = services.bookings.list_bookings(tenant.business_id, {"status": "pending"}, limit=2)

    assert everything["total"] == 4
    assert [b["starts_at"] for b in everything["bookings"]][0] == "2031-03-10T15:00:00"
    assert pending["total"] == 3
    assert len(pending["bookings"]) == 2


def test_list_bookings_rejects_bad_filters(app, services, tenant) -> None:
    with app.app_context():
        with pytest.raises(ValidationError):
            services.bookings.list_bookings(tenant.business_id, {"status": "LOST"})


def test_list_bookings_is_served_from_cache(app, services, tenant) -> None:
    cached = {"bookings": [], "total": 0, "limit": 50, "offset": 0}
    with app.app_context():
        with patch.object(services.cache, "get", return_value=cached) as cache_get:
            result = services.bookings.list_bookings(tenant.business_id)

    assert result is cached
    assert cache_get.call_args[0][0].startswith(f"bookings:{tenant.business_id}:")


def test_monthly_cap_is_off_by_default(app, services, tenant) -> None:
    with app.app_context(), patch.dict(PLAN_LIMITS["FREE"], {"bookings_per_month": 1}):
        _create(services, tenant, at(10))
        _create(services, tenant, at(12))

        assert Booking.query.count() == 2


def test_monthly_cap_when_enforced(app, services, tenant) -> None:
    services.plan_guard.enforce_monthly_bookings = True
    with app.app_context(), patch.dict(PLAN_LIMITS["FREE"], {"bookings_per_month": 1}):
        _create(services, tenant, at(10))

        with pytest.raises(PlanLimitError) as excinfo:
            _create(services, tenant, at(12))

    assert excinfo.value.limit == 1
    assert excinfo.value.current == 1
    assert excinfo.value.resource == "bookings"


class _ClientCountingLocks(ScopeLocks):
    """Records how many clients with the given email exist whenever a scope lock is requested."""

    def __init__(self, email: str) -> None:
        super().__init__()
        self.email = email
        self.seen: list[int] = []

    def hold(self, tenant_id, location_id, staff_id):
        self.seen.append(Client.query.filter_by(email=self.email).count())
        return super().hold(tenant_id, location_id, staff_id)


def _public_service(email: str) -> tuple[BookingService, _ClientCountingLocks]:
    catalog = Catalog()
    locks = _ClientCountingLocks(email)
    return BookingService(catalog, MagicMock(), MagicMock(), PlanLimitGuard(catalog, locks), locks), locks


def test_public_client_is_written_after_the_scope_lock(app, tenant) -> None:
    service, locks = _public_service("walk.in@example.com")
    data = {"name": "Wren Walker", "email": "walk.in@example.com", "service_id": tenant.service_id,
            "starts_at": at(10).isoformat()}

    with app.app_context():
        booking = service.create_public_booking(tenant.slug, data)

        assert locks.seen == [0]
        assert booking.client.email == "walk.in@example.com"


def test_conflicting_public_booking_leaves_no_client(app, tenant, add_booking) -> None:
    add_booking(tenant, at(10), at(11))
    service, locks = _public_service("walk.in@example.com")
    data = {"name": "Wren Walker", "email": "walk.in@example.com", "service_id": tenant.service_id,
            "starts_at": at(10, 30).isoformat()}

    with app.app_context():
        with pytest.raises(ConflictError):
            service.create_public_booking(tenant.slug, data)

        assert Client.query.filter_by(email="walk.in@example.com").count() == 0


def test_side_effects_use_injected_collaborators(app, tenant) -> None:
    notifier = MagicMock()
    cache = MagicMock()
    catalog = Catalog()
    service = BookingService(catalog, notifier, cache, PlanLimitGuard(catalog), ScopeLocks())

    with app.app_context():
        booking = _create(SimpleNamespace(bookings=service), tenant, at(10))

    notifier.notify_booking_created.assert_called_once_with(booking)
    cache.invalidate_tenant.assert_called_once_with(tenant.business_id)
    assert service.side_effects["notify_created"] == 1
