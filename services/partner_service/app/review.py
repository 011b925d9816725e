"""Administrative decisions on advertisements and bookings."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .ads import ad_content
from .clock import Clock, utcnow
from .constants import HOLDING_STATUSES, TERMINAL_STATUSES, AdStatus, CancelCause, ReviewAction
from .errors import NotFound, StateConflict, ValidationError
from .events import PartnerEventPublisher
from .lifecycle import BookingLifecycle
from .metrics import PARTNER_AD_DECISIONS_TOTAL
from .models import PartnerAd, PartnerBooking
from .principal import Principal
from .repository import PartnerRepository

_LOGGER = logging.getLogger(__name__)


@dataclass
class ReviewOutcome:
    ad: PartnerAd
    activated_booking_id: int | None = None
    canceled_booking_ids: list[int] = field(default_factory=list)


class AdReviewService:
    def __init__(
        self,
        repository: PartnerRepository,
        *,
        lifecycle: BookingLifecycle,
        clock: Clock = utcnow,
        publisher: PartnerEventPublisher | None = None,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.clock = clock
        self.publisher = publisher

    async def _get(self, ad_id: int) -> PartnerAd:
        ad = await self.repository.get_ad(ad_id)
        if ad is None:
            raise NotFound("Advertisement not found.")
        return ad

    async def _cancel_bookings(self, ad_id: int, reason: str, cause: CancelCause) -> list[int]:
        canceled = []
        for booking_id in await self.repository.booking_ids_for_ad(ad_id, HOLDING_STATUSES):
            if await self.lifecycle.force_cancel(booking_id, reason=reason, cause=cause):
                canceled.append(booking_id)
        return canceled

    async def decide(
        self,
        ad_id: int,
        action: ReviewAction | str,
        *,
        actor: Principal,
        reason: str | None = None,
    ) -> ReviewOutcome:
        decision = ReviewAction(action)
        ad = await self._get(ad_id)
        outcome = ReviewOutcome(ad=ad)
        now = self.clock()

        if decision is ReviewAction.APPROVE:
            await self.repository.set_ad_status(ad, status=AdStatus.APPROVED.value, reason=None, now=now)
            booking = await self.repository.newest_paid_pending_for_ad(ad.id)
            if booking is not None and await self.lifecycle.try_activate(booking.id):
                outcome.activated_booking_id = booking.id
        else:
            cleaned = (reason or "").strip()
            if not cleaned:
                raise ValidationError("A rejection needs a reason.")
            await self.repository.set_ad_status(ad, status=AdStatus.REJECTED.value, reason=cleaned, now=now)
            outcome.canceled_booking_ids = await self._cancel_bookings(
                ad.id, f"advertisement rejected: {cleaned}", CancelCause.AD_REJECTED
            )

        PARTNER_AD_DECISIONS_TOTAL.labels(decision=decision.value.lower()).inc()
        _LOGGER.info("Advertisement %s %s by %s", ad.id, decision.value.lower(), actor.display_name)
        if self.publisher is not None:
            await self.publisher.ad_reviewed(ad, decision=decision.value, actor=actor.user_id)
        return outcome

    async def delete_ad(self, ad_id: int, *, actor: Principal) -> list[int]:
        ad = await self._get(ad_id)
        canceled = await self._cancel_bookings(ad.id, "advertisement deleted", CancelCause.AD_DELETED)
        await self.repository.delete_ad(ad)
        PARTNER_AD_DECISIONS_TOTAL.labels(decision="delete").inc()
        _LOGGER.info("Advertisement %s deleted by %s", ad_id, actor.display_name)
        return canceled

    async def create_system_ad(self, draft: Mapping[str, Any], *, actor: Principal) -> PartnerAd:
        """System ads are pre-approved and exist to fill overridden slots."""

        return await self.repository.create_ad(
            user_id=f"system:{uuid.uuid4()}",
            owner_username=actor.username,
            content={**ad_content(draft), "submission_note": draft.get("submission_note")},
            status=AdStatus.APPROVED.value,
            now=self.clock(),
        )


class BookingAdminService:
    """Booking maintenance shared by the admin surface and booking owners."""

    def __init__(self, repository: PartnerRepository, *, lifecycle: BookingLifecycle) -> None:
        self.repository = repository
        self.lifecycle = lifecycle

    async def force_cancel(self, booking_id: int, *, actor: Principal, reason: str | None = None) -> tuple[PartnerBooking, bool]:
        booking = await self.repository.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking not found.")
        canceled = await self.lifecycle.force_cancel(
            booking.id, reason=(reason or "").strip() or f"removed by {actor.display_name}"
        )
        refreshed = await self.repository.get_booking(booking.id)
        return refreshed or booking, canceled

    async def delete_record(self, booking_id: int, *, actor: Principal, own_only: bool) -> None:
        """Delete a finished booking; live ones must be canceled first."""

        booking = await self.repository.get_booking(booking_id)
        if booking is None or (own_only and booking.user_id != actor.user_id):
            raise NotFound("Booking not found.")
        if booking.status not in TERMINAL_STATUSES:
            raise StateConflict("Only expired or canceled bookings can be deleted.")
        await self.repository.delete_booking(booking)
        _LOGGER.info("Booking %s deleted by %s", booking_id, actor.display_name)
