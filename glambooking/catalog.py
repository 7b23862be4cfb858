"""Tenant-filtered lookups of reference data consulted by the scheduling core."""
from __future__ import annotations

import logging

from .errors import NotFoundError
from .extensions import db
from .models import Business, Client, Location, Service, Staff

logger = logging.getLogger(__name__)


class Catalog:
    """Every lookup takes the tenant id; a row of another tenant is reported as missing."""

    def get_business(self, tenant_id: int) -> Business:
        business = db.session.get(Business, tenant_id)
        if business is None:
            raise NotFoundError("business")
        return business

    def get_business_by_slug(self, slug: str) -> Business:
        business = Business.query.filter_by(slug=slug).first()
        if business is None:
            raise NotFoundError("business")
        return business

    def get_service(self, tenant_id: int, service_id: int) -> Service:
        service = Service.query.filter_by(service_id=service_id, business_id=tenant_id).first()
        if service is None:
            raise NotFoundError("service")
        return service

    def get_client(self, tenant_id: int, client_id: int) -> Client:
        client = Client.query.filter_by(client_id=client_id, business_id=tenant_id).first()
        if client is None:
            raise NotFoundError("client")
        return client

    def location_exists(self, tenant_id: int, location_id: int) -> bool:
        return (
            db.session.query(Location.location_id)
            .filter_by(location_id=location_id, business_id=tenant_id)
            .first()
            is not None
        )

    def staff_exists(self, tenant_id: int, staff_id: int) -> bool:
        """Only active staff can be booked."""
        return (
            db.session.query(Staff.staff_id)
            .filter_by(staff_id=staff_id, business_id=tenant_id, active=True)
            .first()
            is not None
        )

    def find_or_create_client(self, tenant_id: int, name: str, email: str, phone: str | None = None) -> Client:
        """Match on email within the tenant; the new row is flushed, not committed."""
        client = (
            Client.query.filter(Client.business_id == tenant_id, db.func.lower(Client.email) == email.lower())
            .first()
        )
        if client is not None:
            return client

        client = Client(business_id=tenant_id, name=name, email=email, phone=phone)
        db.session.add(client)
        db.session.flush()
        logger.info("Created client %s for business %s from public booking", client.client_id, tenant_id)
        return client
