"""Per resource-scope serialization of check-then-write sequences."""
from __future__ import annotations

import logging
import threading
import zlib
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text

from .extensions import db

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


def _crc(value: str) -> int:
    return zlib.crc32(value.encode("utf-8")) & 0x7FFFFFFF


def scope_key(tenant_id: int, location_id: int | None, staff_id: int | None) -> tuple[int, int]:
    """Two 32-bit keys for pg_advisory_xact_lock: tenant plus a hash of the scope."""
    scope = f"{location_id if location_id is not None else '-'}:{staff_id if staff_id is not None else '-'}"
    return int(tenant_id), _crc(scope)


def resource_key(tenant_id: int, resource_type: str) -> tuple[int, int]:
    return int(tenant_id), _crc(f"plan:{resource_type}")


class ScopeLocks:
    """Mutual exclusion for one (tenant, location, staff) scope.

    Within a process the scope hashes onto one of a fixed set of locks, so
    unrelated scopes may occasionally wait on each other but memory stays
    bounded. On PostgreSQL a transaction-scoped advisory lock is taken as
    well, so separate workers sharing the database serialize on the same key.
    The caller must commit or roll back before leaving the block; the
    advisory lock is released by that commit.
    """

    def __init__(self, stripes: int = LOCK_STRIPES) -> None:
        self._scope_stripes = [threading.Lock() for _ in range(stripes)]
        self._resource_stripes = [threading.Lock() for _ in range(stripes)]

    def _stripe(self, stripes: list[threading.Lock], key: tuple[int, int]) -> threading.Lock:
        return stripes[hash(key) % len(stripes)]

    @contextmanager
    def _hold(self, stripes: list[threading.Lock], key: tuple[int, int]) -> Iterator[None]:
        with self._stripe(stripes, key):
            if db.session.get_bind().dialect.name == "postgresql":
                db.session.execute(text("SELECT pg_advisory_xact_lock(:k1, :k2)"), {"k1": key[0], "k2": key[1]})
                logger.debug("Advisory lock taken for %s", key)
            yield

    def hold(self, tenant_id: int, location_id: int | None, staff_id: int | None):
        return self._hold(self._scope_stripes, scope_key(tenant_id, location_id, staff_id))

    def hold_resource(self, tenant_id: int, resource_type: str):
        """Serialize plan-limited creation of one resource type for a tenant."""
        return self._hold(self._resource_stripes, resource_key(tenant_id, resource_type))
