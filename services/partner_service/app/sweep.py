"""Background release of lapsed reservations and leases."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import lifespan_session

from .clock import Clock, utcnow
from .errors import PartnerError
from .events import PartnerEventPublisher
from .lifecycle import BookingLifecycle
from .metrics import PARTNER_SWEEP_FAILURES_TOTAL, PARTNER_SWEEP_RESULTS_TOTAL
from .processors import ProcessorRegistry
from .repository import PartnerRepository

_LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    canceled: int = 0
    expired: int = 0
    failures: int = 0
    sessions_closed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "canceled": self.canceled,
            "expired": self.expired,
            "failures": self.failures,
            "sessionsClosed": self.sessions_closed,
        }


class BookingSweeper:
    """Cancels unpaid reservations past the grace window and expires finished leases.

    Each booking is handled in its own transaction so one bad record never
    blocks the rest.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        grace: timedelta,
        processors: ProcessorRegistry | None = None,
        clock: Clock = utcnow,
        publisher: PartnerEventPublisher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.grace = grace
        self.processors = processors
        self.clock = clock
        self.publisher = publisher

    def _lifecycle(self, session: AsyncSession) -> BookingLifecycle:
        return BookingLifecycle(
            PartnerRepository(session), grace=self.grace, clock=self.clock, publisher=self.publisher
        )

    async def candidates(self) -> tuple[list[int], list[int]]:
        """Ids of unpaid reservations past the grace window and of finished leases."""

        now = self.clock()
        async with lifespan_session(self.session_factory) as session:
            repository = PartnerRepository(session)
            stale = await repository.stale_pending_ids(now - self.grace)
            lapsed = await repository.lapsed_active_ids(now)
        return stale, lapsed

    async def run(self) -> SweepReport:
        stale, lapsed = await self.candidates()
        report = SweepReport()
        for booking_id in stale:
            session_ref = await self._process(booking_id, "canceled", report)
            if session_ref is not None:
                report.canceled += 1
                if await self._close_session(*session_ref):
                    report.sessions_closed += 1
        for booking_id in lapsed:
            if await self._process(booking_id, "expired", report) is not None:
                report.expired += 1

        _LOGGER.info(
            "Partner sweep finished: %s canceled, %s expired, %s failed",
            report.canceled,
            report.expired,
            report.failures,
        )
        return report

    async def _process(self, booking_id: int, result: str, report: SweepReport) -> tuple[str, str | None] | None:
        """Apply one transition; returns the booking's provider session when it was applied."""

        try:
            async with lifespan_session(self.session_factory) as session:
                lifecycle = self._lifecycle(session)
                if result == "canceled":
                    applied = await lifecycle.cancel_stale_pending(booking_id)
                else:
                    applied = await lifecycle.expire_lapsed(booking_id)
                if not applied:
                    return None
                booking = await lifecycle.repository.get_booking(booking_id)
                session_ref = (booking.provider, booking.provider_session_id) if booking is not None else ("", None)
        except Exception:
            report.failures += 1
            PARTNER_SWEEP_FAILURES_TOTAL.inc()
            _LOGGER.exception("Partner sweep failed for booking %s", booking_id)
            return None
        PARTNER_SWEEP_RESULTS_TOTAL.labels(result=result).inc()
        return session_ref

    async def _close_session(self, provider: str, session_id: str | None) -> bool:
        if self.processors is None or not session_id:
            return False
        try:
            await self.processors.get(provider).cancel_session(session_id)
        except PartnerError as exc:
            _LOGGER.warning("Could not close %s session %s: %s", provider, session_id, exc.message)
            return False
        return True
