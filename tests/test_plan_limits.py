"""Tests for plan-based admission control of locations and staff."""
from __future__ import annotations

import pytest

from glambooking.errors import PlanLimitError, ValidationError
from glambooking.extensions import db
from glambooking.models import Location, Staff
from glambooking.plan_limits import get_plan_limit


def test_free_plan_rejects_second_location(app, services, tenant) -> None:
    with app.app_context():
        with pytest.raises(PlanLimitError) as excinfo:
            services.plan_guard.assert_can_create(tenant.business_id, "locations")

    error = excinfo.value
    assert (error.limit, error.current, error.plan) == (1, 1, "FREE")
    assert error.status_code == 403
    assert error.to_dict()["error"] == "plan_limit_reached"


def test_free_plan_allows_first_location(app, services, make_tenant) -> None:
    tenant = make_tenant(with_location=False)

    with app.app_context():
        services.plan_guard.assert_can_create(tenant.business_id, "locations")


def test_reserve_rolls_back_uncommitted_work(app, services, make_tenant) -> None:
    tenant = make_tenant(with_location=False)

    with app.app_context():
        with pytest.raises(RuntimeError):
            with services.plan_guard.reserve(tenant.business_id, "locations"):
                db.session.add(Location(business_id=tenant.business_id, name="Half Made"))
                db.session.flush()
                raise RuntimeError("boom")

        assert Location.query.filter_by(business_id=tenant.business_id).count() == 0


def test_reserve_refuses_when_the_plan_is_full(app, services, tenant) -> None:
    with app.app_context():
        with pytest.raises(PlanLimitError):
            with services.plan_guard.reserve(tenant.business_id, "locations"):
                pytest.fail("block must not run once the limit is reached")


def test_starter_plan_allows_only_the_owner(app, services, make_tenant) -> None:
    tenant = make_tenant(plan="STARTER")

    with app.app_context():
        with pytest.raises(PlanLimitError):
            services.plan_guard.assert_can_create(tenant.business_id, "staff")


def test_pro_plan_is_unlimited(app, services, make_tenant) -> None:
    tenant = make_tenant(plan="PRO")

    with app.app_context():
        for n in range(9):
            db.session.add(Location(business_id=tenant.business_id, name=f"Branch {n}"))
        db.session.commit()
        assert Location.query.filter_by(business_id=tenant.business_id).count() == 10

        services.plan_guard.assert_can_create(tenant.business_id, "locations")
        services.plan_guard.assert_can_create(tenant.business_id, "staff")


def test_unknown_resource_type(app, services, tenant) -> None:
    with app.app_context():
        with pytest.raises(ValidationError):
            services.plan_guard.assert_can_create(tenant.business_id, "chairs")


def test_unknown_plan_falls_back_to_free_limits() -> None:
    assert get_plan_limit("LEGACY", "locations") == 1
    assert get_plan_limit(None, "staff") == 1
    assert get_plan_limit("business", "staff") is None


def test_create_location_endpoint_reports_limit(client, tenant) -> None:
    response = client.post("/locations", json={"name": "Second Branch"}, headers=tenant.headers)

    assert response.status_code == 403
    data = response.get_json()
    assert data["error"] == "plan_limit_reached"
    assert data["limit"] == 1
    assert data["current"] == 1
    assert data["upgrade_required"] is True


def test_create_location_endpoint_on_pro_plan(app, client, make_tenant) -> None:
    tenant = make_tenant(plan="PRO")
    with app.app_context():
        for n in range(9):
            db.session.add(Location(business_id=tenant.business_id, name=f"Branch {n}"))
        db.session.commit()

    response = client.post("/locations", json={"name": "Eleventh"}, headers=tenant.headers)

    assert response.status_code == 201
    assert response.get_json()["location"]["is_primary"] is False


def test_create_staff_endpoint_enforces_limit(app, client, make_tenant) -> None:
    free = make_tenant()
    pro = make_tenant(plan="PRO")

    rejected = client.post("/staff", json={"name": "Jo"}, headers=free.headers)
    accepted = client.post(
        "/staff",
        json={"name": "Jo", "role": "manager", "permissions": {"can_manage_settings": True, "is_admin": True}},
        headers=pro.headers,
    )

    assert rejected.status_code == 403
    assert rejected.get_json()["resource"] == "staff"
    assert accepted.status_code == 201
    permissions = accepted.get_json()["staff"]["permissions"]
    assert permissions["can_manage_settings"] is True
    assert permissions["can_manage_bookings"] is True
    assert "is_admin" not in permissions
    with app.app_context():
        assert Staff.query.filter_by(business_id=pro.business_id).count() == 2


def test_plan_usage_endpoint(client, tenant) -> None:
    response = client.get("/plan/usage", headers=tenant.headers)

    assert response.status_code == 200
    data = response.get_json()
    assert data["plan"] == "FREE"
    assert data["locations"] == {"current": 1, "limit": 1}
    assert data["bookings_this_month"]["limit"] == 50
    assert data["bookings_this_month"]["enforced"] is False
