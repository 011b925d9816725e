"""Caller identity resolved from trusted upstream headers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


class Capability(str, Enum):
    DECIDE_ADS = "DECIDE_ADS"
    EDIT_PRICING = "EDIT_PRICING"
    OVERRIDE_SLOTS = "OVERRIDE_SLOTS"
    VIEW_BOOKINGS = "VIEW_BOOKINGS"
    FORCE_CANCEL = "FORCE_CANCEL"
    RUN_SWEEP = "RUN_SWEEP"
    CREATE_SYSTEM_ADS = "CREATE_SYSTEM_ADS"


_STAFF = frozenset(
    {
        Capability.DECIDE_ADS,
        Capability.EDIT_PRICING,
        Capability.VIEW_BOOKINGS,
        Capability.FORCE_CANCEL,
        Capability.RUN_SWEEP,
    }
)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.USER: frozenset(),
    Role.ADMIN: _STAFF,
    Role.OWNER: _STAFF | {Capability.OVERRIDE_SLOTS, Capability.CREATE_SYSTEM_ADS},
}


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: str
    role: Role = Role.USER
    username: str | None = None

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES[self.role]

    @property
    def is_staff(self) -> bool:
        return self.role is not Role.USER

    @property
    def display_name(self) -> str:
        return self.username or self.user_id
