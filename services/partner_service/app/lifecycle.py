"""Booking state machine.

Every transition is one conditional UPDATE keyed on the booking's current
status, so concurrent callers (a webhook, the confirmation poll, the sweep, an
admin) can race freely: exactly one of them applies a given transition and
the others observe a no-op.

    PENDING --mark_paid--> PENDING(paid) --try_activate--> ACTIVE --expire_lapsed--> EXPIRED
    PENDING/ACTIVE --cancel/force_cancel--> CANCELED --mark_refunded--> CANCELED(refunded)

Leaving PENDING/ACTIVE clears the ``slot_hold`` and ``ad_hold`` reservation
keys. ``reclaim`` sets them again for a payment that arrives after its
booking lapsed or was abandoned by the buyer; bookings removed by staff are
never reclaimed.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .clock import Clock, utcnow
from .constants import LEASE_DAY, RECLAIMABLE_CAUSES, AdStatus, BookingStatus, CancelCause
from .events import PartnerEventPublisher
from .metrics import PARTNER_BOOKING_TRANSITIONS_TOTAL
from .models import PartnerAd, PartnerBooking
from .repository import PartnerRepository, hold_conflict, stale_reservation

_LOGGER = logging.getLogger(__name__)

_RELEASE_HOLDS: dict[str, Any] = {"slot_hold": None, "ad_hold": None}


def _canceled(reason: str, cause: CancelCause) -> dict[str, Any]:
    return {
        "status": BookingStatus.CANCELED.value,
        "canceled_reason": reason,
        "cancel_cause": cause.value,
        **_RELEASE_HOLDS,
    }


class BookingLifecycle:
    def __init__(
        self,
        repository: PartnerRepository,
        *,
        grace: timedelta,
        clock: Clock = utcnow,
        publisher: PartnerEventPublisher | None = None,
    ) -> None:
        self.repository = repository
        self.grace = grace
        self.clock = clock
        self.publisher = publisher

    async def _apply(
        self,
        booking_id: int,
        transition: str,
        conditions: list[Any],
        values: dict[str, Any],
        *,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        now = values.setdefault("updated_at", self.clock())
        applied = await self.repository.conditional_update(booking_id, *conditions, **values)
        if not applied:
            _LOGGER.debug("Booking %s: %s not applicable", booking_id, transition)
            return False
        await self.repository.add_event(booking_id, event_type=transition, payload=payload, now=now)
        PARTNER_BOOKING_TRANSITIONS_TOTAL.labels(transition=transition).inc()
        _LOGGER.info("Booking %s: %s", booking_id, transition)
        if self.publisher is not None:
            booking = await self.repository.get_booking(booking_id)
            if booking is not None:
                await self.publisher.booking_transitioned(booking, transition)
        return True

    async def mark_paid(
        self,
        booking_id: int,
        *,
        capture_id: str | None = None,
        provider_status: str | None = None,
    ) -> bool:
        now = self.clock()
        return await self._apply(
            booking_id,
            "paid",
            [PartnerBooking.status == BookingStatus.PENDING.value, PartnerBooking.paid_at.is_(None)],
            {
                "paid_at": now,
                "provider_capture_id": capture_id,
                "provider_status": provider_status,
                "updated_at": now,
            },
            payload={"captureId": capture_id, "providerStatus": provider_status},
        )

    async def try_activate(self, booking_id: int) -> bool:
        """Activate a paid booking whose advertisement is approved.

        The lease starts at the moment both conditions hold.
        """

        booking = await self.repository.get_booking(booking_id)
        if booking is None or booking.status != BookingStatus.PENDING.value or booking.paid_at is None:
            return False
        now = self.clock()
        starts_at = now
        ends_at = now + LEASE_DAY * booking.days
        approved_ads = select(PartnerAd.id).where(PartnerAd.status == AdStatus.APPROVED.value)
        return await self._apply(
            booking_id,
            "activated",
            [
                PartnerBooking.status == BookingStatus.PENDING.value,
                PartnerBooking.paid_at.is_not(None),
                PartnerBooking.ad_id.in_(approved_ads),
            ],
            {
                "status": BookingStatus.ACTIVE.value,
                "starts_at": starts_at,
                "ends_at": ends_at,
                "updated_at": now,
            },
            payload={"startsAt": starts_at.isoformat(), "endsAt": ends_at.isoformat()},
        )

    async def cancel_pending(
        self,
        booking_id: int,
        *,
        reason: str = "canceled by requester",
        cause: CancelCause = CancelCause.REQUESTER,
    ) -> bool:
        """Release an unpaid PENDING booking; any other state is left untouched."""

        return await self._apply(
            booking_id,
            "canceled",
            [PartnerBooking.status == BookingStatus.PENDING.value, PartnerBooking.paid_at.is_(None)],
            _canceled(reason, cause),
            payload={"reason": reason, "cause": cause.value},
        )

    async def cancel_stale_pending(self, booking_id: int) -> bool:
        cutoff = self.clock() - self.grace
        reason = "payment not confirmed within the grace window"
        return await self._apply(
            booking_id,
            "canceled",
            [stale_reservation(cutoff)],
            _canceled(reason, CancelCause.GRACE_EXPIRED),
            payload={"reason": reason, "cause": CancelCause.GRACE_EXPIRED.value},
        )

    async def expire_lapsed(self, booking_id: int) -> bool:
        now = self.clock()
        return await self._apply(
            booking_id,
            "expired",
            [PartnerBooking.status == BookingStatus.ACTIVE.value, PartnerBooking.ends_at <= now],
            {"status": BookingStatus.EXPIRED.value, "updated_at": now, **_RELEASE_HOLDS},
        )

    async def force_cancel(self, booking_id: int, *, reason: str, cause: CancelCause = CancelCause.ADMIN) -> bool:
        return await self._apply(
            booking_id,
            "canceled",
            [PartnerBooking.status.in_((BookingStatus.PENDING.value, BookingStatus.ACTIVE.value))],
            _canceled(reason, cause),
            payload={"reason": reason, "cause": cause.value, "forced": True},
        )

    async def reclaim(
        self,
        booking_id: int,
        *,
        capture_id: str | None = None,
        provider_status: str | None = None,
    ) -> bool:
        """Restore a released unpaid booking whose payment has just been captured.

        Only bookings that lapsed or were abandoned by the buyer qualify; for
        any other cancellation this returns ``False``. Raises ``SlotUnavailable``
        (or ``StateConflict`` for the advertisement key) when someone else holds
        the slot by now.
        """

        booking = await self.repository.get_booking(booking_id)
        if booking is None or booking.ad_id is None:
            return False
        now = self.clock()
        try:
            return await self._apply(
                booking_id,
                "reclaimed",
                [
                    PartnerBooking.status == BookingStatus.CANCELED.value,
                    PartnerBooking.paid_at.is_(None),
                    PartnerBooking.refunded_at.is_(None),
                    PartnerBooking.cancel_cause.in_(RECLAIMABLE_CAUSES),
                ],
                {
                    "status": BookingStatus.PENDING.value,
                    "slot_hold": booking.slot,
                    "ad_hold": booking.ad_id,
                    "paid_at": now,
                    "provider_capture_id": capture_id,
                    "provider_status": provider_status,
                    "canceled_reason": None,
                    "cancel_cause": None,
                    "updated_at": now,
                },
                payload={"captureId": capture_id, "providerStatus": provider_status},
            )
        except IntegrityError as exc:
            raise hold_conflict(exc, booking.slot) from exc

    async def mark_refunded(self, booking_id: int, *, capture_id: str, amount: str) -> bool:
        """Record that the payment of a canceled booking went back to the buyer."""

        now = self.clock()
        return await self._apply(
            booking_id,
            "refunded",
            [PartnerBooking.status == BookingStatus.CANCELED.value, PartnerBooking.refunded_at.is_(None)],
            {
                "refunded_at": now,
                "provider_capture_id": capture_id,
                "provider_status": "REFUNDED",
                "updated_at": now,
            },
            payload={"captureId": capture_id, "amount": amount},
        )

    async def release_stale_holds(
        self, *, slot: int | None = None, ad_id: int | None = None
    ) -> list[PartnerBooking]:
        """Release lapsed reservations on a slot or advertisement before reserving it again.

        Returns the unpaid reservations canceled here; their checkout sessions
        are still open at the processor.
        """

        canceled = []
        for booking_id in await self.repository.holding_booking_ids(slot=slot, ad_id=ad_id):
            if await self.cancel_stale_pending(booking_id):
                booking = await self.repository.get_booking(booking_id)
                if booking is not None:
                    canceled.append(booking)
            else:
                await self.expire_lapsed(booking_id)
        return canceled
