"""Fixed parameters and status vocabularies of the partner slot marketplace."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum

PARTNER_SLOTS = 10
DEFAULT_MAX_DAYS = 30
DEFAULT_PENDING_GRACE = timedelta(minutes=30)
LEASE_DAY = timedelta(hours=24)

PRICING_SETTINGS_KEY = "partner.pricing"
OVERRIDES_SETTINGS_KEY = "partner.overrides"


class AdStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class DurationKind(str, Enum):
    CUSTOM = "CUSTOM"
    MONTHLY = "MONTHLY"


class ReviewAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class CancelCause(str, Enum):
    GRACE_EXPIRED = "GRACE_EXPIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    REQUESTER = "REQUESTER"
    ADMIN = "ADMIN"
    AD_REJECTED = "AD_REJECTED"
    AD_DELETED = "AD_DELETED"


HOLDING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.ACTIVE.value)
TERMINAL_STATUSES = (BookingStatus.EXPIRED.value, BookingStatus.CANCELED.value)
# Cancellations a late payment may undo; administrative removals stay final.
RECLAIMABLE_CAUSES = (
    CancelCause.GRACE_EXPIRED.value,
    CancelCause.SESSION_EXPIRED.value,
    CancelCause.REQUESTER.value,
)


def slot_range() -> range:
    return range(1, PARTNER_SLOTS + 1)
