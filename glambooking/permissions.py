"""Staff permission flags as a closed record."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace


@dataclass(frozen=True)
class StaffPermissions:
    can_manage_bookings: bool = False
    can_view_all_bookings: bool = False
    can_manage_clients: bool = False
    can_view_all_clients: bool = False
    can_manage_services: bool = False
    can_manage_locations: bool = False
    can_manage_team: bool = False
    can_view_analytics: bool = False
    can_manage_settings: bool = False
    can_view_business_bookings: bool = False

    def allows(self, permission: str) -> bool:
        if permission not in PERMISSION_NAMES:
            raise KeyError(f"Unknown permission: {permission}")
        return bool(getattr(self, permission))

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


PERMISSION_NAMES = frozenset(f.name for f in fields(StaffPermissions))

DEFAULT_PERMISSIONS = StaffPermissions()

MANAGER_PERMISSIONS = StaffPermissions(
    can_manage_bookings=True,
    can_view_all_bookings=True,
    can_manage_clients=True,
    can_view_all_clients=True,
    can_manage_services=True,
    can_manage_team=True,
    can_view_analytics=True,
    can_view_business_bookings=True,
)

OWNER_PERMISSIONS = StaffPermissions(**{name: True for name in PERMISSION_NAMES})

ROLE_PERMISSIONS = {
    "OWNER": OWNER_PERMISSIONS,
    "MANAGER": MANAGER_PERMISSIONS,
    "STAFF": DEFAULT_PERMISSIONS,
}


def parse_permissions(raw: object, role: str | None = None) -> StaffPermissions:
    """Build permissions from the role preset overlaid with stored flags.

    Unknown keys and non-boolean values are dropped, so the stored blob can
    never widen the record beyond its named fields.
    """
    base = ROLE_PERMISSIONS.get((role or "").upper(), DEFAULT_PERMISSIONS)
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return base
    if not isinstance(raw, dict):
        return base

    overrides = {
        key: value
        for key, value in raw.items()
        if key in PERMISSION_NAMES and isinstance(value, bool)
    }
    return replace(base, **overrides)
