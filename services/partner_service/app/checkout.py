"""Checkout orchestration: reserve a slot, take the payment, activate the lease."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

from services.common import ServiceSettings

from .ads import AdService
from .clock import Clock, utcnow
from .constants import PARTNER_SLOTS, RECLAIMABLE_CAUSES, BookingStatus, CancelCause, DurationKind
from .errors import (
    ConfigurationError,
    InvalidParameter,
    NotFound,
    PartnerError,
    PaymentError,
    PaymentIncomplete,
    SlotUnavailable,
    StateConflict,
    ValidationError,
)
from .lifecycle import BookingLifecycle
from .metrics import PARTNER_CHECKOUT_TOTAL, PARTNER_PAYMENT_CONFIRMATIONS_TOTAL, normalise_checkout_outcome
from .models import PartnerBooking
from .overrides import resolve_slot
from .pricing import from_cents, normalize_days, price_for
from .principal import Principal
from .processors import CaptureResult, PaymentProcessor, ProcessorRegistry
from .repository import PartnerRepository
from .settings_store import PartnerSettingsStore

_LOGGER = logging.getLogger(__name__)

_DEFAULT_SITE_URL = "http://localhost:3000"
# Paid booking whose advertisement still waits for a moderator.
AWAITING_APPROVAL = "AWAITING_APPROVAL"


@dataclass(frozen=True)
class CheckoutStart:
    booking_id: int
    session_id: str
    redirect_url: str
    slot: int
    days: int
    total: Decimal
    currency: str


@dataclass(frozen=True)
class Confirmation:
    booking: PartnerBooking
    already_paid: bool

    @property
    def state(self) -> str:
        if self.booking.status == BookingStatus.PENDING.value and self.booking.paid_at is not None:
            return AWAITING_APPROVAL
        return self.booking.status


class CheckoutService:
    def __init__(
        self,
        repository: PartnerRepository,
        *,
        store: PartnerSettingsStore,
        lifecycle: BookingLifecycle,
        processors: ProcessorRegistry,
        settings: ServiceSettings,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.store = store
        self.lifecycle = lifecycle
        self.processors = processors
        self.settings = settings
        self.clock = clock
        self.ads = AdService(repository, clock=clock)

    def _urls(self, provider: str, booking_id: int) -> tuple[str, str]:
        base = (self.settings.site_url or _DEFAULT_SITE_URL).rstrip("/")
        query = urlencode({"bookingId": booking_id})
        return (
            f"{base}/partner/checkout/{provider}/return?{query}",
            f"{base}/partner/checkout/cancel?{query}",
        )

    async def start_checkout(
        self,
        principal: Principal,
        provider: str,
        *,
        slot: int,
        kind: DurationKind | str,
        days: int | None,
        draft: Mapping[str, Any],
    ) -> CheckoutStart:
        processor = self.processors.get(provider)
        try:
            started = await self._start(principal, processor, slot=slot, kind=kind, days=days, draft=draft)
        except PartnerError as exc:
            PARTNER_CHECKOUT_TOTAL.labels(provider=processor.name, outcome=_checkout_outcome(exc)).inc()
            raise
        PARTNER_CHECKOUT_TOTAL.labels(provider=processor.name, outcome="started").inc()
        return started

    async def _start(
        self,
        principal: Principal,
        processor: PaymentProcessor,
        *,
        slot: int,
        kind: DurationKind | str,
        days: int | None,
        draft: Mapping[str, Any],
    ) -> CheckoutStart:
        if slot < 1 or slot > PARTNER_SLOTS:
            raise InvalidParameter(f"Slot must be between 1 and {PARTNER_SLOTS}.")
        lease_days = normalize_days(kind, days, max_days=self.store.max_days)

        if resolve_slot(await self.store.load_overrides(), slot) is not None:
            raise SlotUnavailable(slot)
        quote = price_for(await self.store.load_matrix(), slot, lease_days)

        ad = await self.ads.submit(principal, draft)
        for released in await self.lifecycle.release_stale_holds(slot=slot, ad_id=ad.id):
            if released.provider_session_id:
                await self._close_session(released.provider, released.provider_session_id)
        now = self.clock()
        booking = await self.repository.insert_booking(
            ad_id=ad.id,
            user_id=principal.user_id,
            slot=slot,
            kind=DurationKind(kind).value,
            days=lease_days,
            total_cents=quote.total_cents,
            currency=quote.currency,
            provider=processor.name,
            now=now,
        )
        await self.repository.add_event(
            booking.id,
            event_type="reserved",
            payload={"slot": slot, "days": lease_days, "total": str(quote.total), "currency": quote.currency},
            now=now,
        )

        return_url, cancel_url = self._urls(processor.name, booking.id)
        session = await processor.create_session(
            amount=quote.total,
            currency=quote.currency,
            reference=str(booking.id),
            description=f"Partner slot #{slot} for {lease_days} day(s)",
            return_url=return_url,
            cancel_url=cancel_url,
        )
        await self.repository.set_provider_session(
            booking.id, session_id=session.session_id, provider_status=session.status, now=now
        )
        await self.repository.add_event(
            booking.id,
            event_type="session_opened",
            payload={"provider": processor.name, "sessionId": session.session_id},
            now=now,
        )
        _LOGGER.info(
            "Booking %s reserved slot %s for %s day(s) via %s", booking.id, slot, lease_days, processor.name
        )
        return CheckoutStart(
            booking_id=booking.id,
            session_id=session.session_id,
            redirect_url=session.redirect_url,
            slot=slot,
            days=lease_days,
            total=quote.total,
            currency=quote.currency,
        )

    async def _owned_booking(self, booking: PartnerBooking | None, principal: Principal | None) -> PartnerBooking:
        if booking is None:
            raise NotFound("Booking not found.")
        if principal is not None and booking.user_id != principal.user_id and not principal.is_staff:
            raise NotFound("Booking not found.")
        return booking

    async def confirm_payment(
        self,
        provider: str,
        session_id: str,
        *,
        principal: Principal | None = None,
        booking_id: int | None = None,
    ) -> Confirmation:
        """Record a captured payment and activate the booking if its ad is approved.

        Safe to repeat: once a booking is paid the processor is not asked again.
        """

        processor = self.processors.get(provider)
        booking = await self._owned_booking(
            await self.repository.find_booking_by_session(processor.name, session_id), principal
        )
        if booking_id is not None and booking.id != booking_id:
            raise ValidationError("The payment session does not belong to this booking.")

        if booking.refunded_at is not None:
            PARTNER_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=processor.name, result="refunded").inc()
            raise _refunded(booking.slot, booking.cancel_cause)

        if booking.paid_at is not None:
            if booking.status == BookingStatus.PENDING.value:
                await self.lifecycle.try_activate(booking.id)
            PARTNER_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=processor.name, result="repeat").inc()
            return Confirmation(booking=await self._reload(booking.id), already_paid=True)

        capture = await processor.confirm_capture(session_id)
        if not capture.paid:
            PARTNER_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=processor.name, result="incomplete").inc()
            raise PaymentIncomplete(f"Payment has not been completed (status: {capture.status or 'unknown'}).")

        paid = await self.lifecycle.mark_paid(
            booking.id, capture_id=capture.capture_id, provider_status=capture.status
        )
        if not paid:
            current = await self._reload(booking.id)
            if current.paid_at is not None:
                # A concurrent confirmation recorded it first.
                await self.lifecycle.try_activate(current.id)
                PARTNER_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=processor.name, result="repeat").inc()
                return Confirmation(booking=await self._reload(current.id), already_paid=True)
            await self._reclaim(processor, current, capture)

        await self.lifecycle.try_activate(booking.id)
        PARTNER_PAYMENT_CONFIRMATIONS_TOTAL.labels(provider=processor.name, result="paid").inc()
        return Confirmation(booking=await self._reload(booking.id), already_paid=False)

    async def _reclaim(self, processor: PaymentProcessor, booking: PartnerBooking, capture: CaptureResult) -> None:
        """Payment arrived for a booking that had already been released."""

        booking_id, slot, cause = booking.id, booking.slot, booking.cancel_cause
        amount, currency = from_cents(booking.total_cents), booking.currency
        if booking.status == BookingStatus.CANCELED.value and cause in RECLAIMABLE_CAUSES:
            try:
                if await self.lifecycle.reclaim(
                    booking_id, capture_id=capture.capture_id, provider_status=capture.status
                ):
                    _LOGGER.warning("Booking %s reclaimed slot %s after a late payment", booking_id, slot)
                    return
            except (SlotUnavailable, StateConflict):
                pass
        _LOGGER.warning("Booking %s was paid after its release (%s); refunding", booking_id, cause)
        await self._refund_and_commit(processor, booking_id, capture, amount=amount, currency=currency)
        raise _refunded(slot, cause)

    async def _refund_and_commit(
        self,
        processor: PaymentProcessor,
        booking_id: int,
        capture: CaptureResult,
        *,
        amount: Decimal,
        currency: str,
    ) -> None:
        session = self.repository.session
        # Discard the failed reclaim before recording the refund outcome.
        await session.rollback()
        if capture.capture_id is None:
            await self._refund_failed(booking_id, None, "processor returned no capture id")
        else:
            try:
                await processor.refund(capture.capture_id, amount=amount, currency=currency)
            except PaymentError as exc:
                await self._refund_failed(booking_id, capture.capture_id, exc.message)
            else:
                await self.lifecycle.mark_refunded(booking_id, capture_id=capture.capture_id, amount=str(amount))
        await session.commit()

    async def _refund_failed(self, booking_id: int, capture_id: str | None, reason: str) -> None:
        # Left unmarked so the next confirmation retries the refund.
        _LOGGER.error("Refund for booking %s needs manual handling: %s", booking_id, reason)
        now = self.clock()
        await self.repository.conditional_update(
            booking_id, provider_capture_id=capture_id, provider_status="REFUND_FAILED", updated_at=now
        )
        await self.repository.add_event(
            booking_id, event_type="refund_failed", payload={"captureId": capture_id, "reason": reason}, now=now
        )

    async def cancel(self, principal: Principal, booking_id: int) -> tuple[PartnerBooking, bool]:
        booking = await self._owned_booking(await self.repository.get_booking(booking_id), principal)
        canceled = await self.lifecycle.cancel_pending(booking.id, cause=CancelCause.REQUESTER)
        if canceled and booking.provider_session_id:
            await self._close_session(booking.provider, booking.provider_session_id)
        return await self._reload(booking.id), canceled

    async def _close_session(self, provider: str, session_id: str) -> None:
        try:
            await self.processors.get(provider).cancel_session(session_id)
        except PartnerError as exc:
            _LOGGER.warning("Could not close %s session %s: %s", provider, session_id, exc.message)

    async def handle_stripe_event(self, event: Mapping[str, Any]) -> str:
        """Apply a Stripe webhook event; returns what was done for the response body."""

        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        session_id = obj.get("id")
        if not session_id:
            return "ignored"
        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            if str(obj.get("payment_status") or "").lower() != "paid":
                return "awaiting_payment"
            try:
                confirmation = await self.confirm_payment("stripe", session_id)
            except NotFound:
                _LOGGER.warning("Stripe webhook for unknown session %s", session_id)
                return "ignored"
            except (SlotUnavailable, StateConflict):
                # Answered with 2xx so Stripe stops redelivering a settled payment.
                released = await self.repository.find_booking_by_session("stripe", session_id)
                return "refunded" if released is not None and released.refunded_at is not None else "refund_failed"
            return confirmation.state.lower()
        if event_type == "checkout.session.expired":
            booking = await self.repository.find_booking_by_session("stripe", session_id)
            if booking is not None and await self.lifecycle.cancel_pending(
                booking.id, reason="checkout session expired", cause=CancelCause.SESSION_EXPIRED
            ):
                return "canceled"
            return "ignored"
        return "ignored"

    async def _reload(self, booking_id: int) -> PartnerBooking:
        booking = await self.repository.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking not found.")
        return booking


def _checkout_outcome(exc: PartnerError) -> str:
    if isinstance(exc, SlotUnavailable):
        return normalise_checkout_outcome("slot_unavailable")
    if isinstance(exc, StateConflict):
        return normalise_checkout_outcome("ad_conflict")
    if isinstance(exc, ConfigurationError):
        return normalise_checkout_outcome("unpriced")
    if isinstance(exc, PaymentError):
        return normalise_checkout_outcome("payment_error")
    return normalise_checkout_outcome("invalid")


def _refunded(slot: int, cause: str | None) -> PartnerError:
    if cause in RECLAIMABLE_CAUSES:
        return SlotUnavailable(slot, f"Slot #{slot} was released before the payment arrived; the payment was refunded.")
    return StateConflict(
        "The booking was canceled before the payment arrived; the payment was refunded.", details={"slot": slot}
    )
