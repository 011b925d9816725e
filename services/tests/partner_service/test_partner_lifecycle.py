from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import MetricTracker, draft, prepare_database
from services.common import ServiceSettings, dispose_engines, lifespan_session
from services.partner_service.app.ads import AdService
from services.partner_service.app.availability import AvailabilityResolver
from services.partner_service.app.constants import AdStatus, BookingStatus, CancelCause, DurationKind
from services.partner_service.app.errors import SlotUnavailable, StateConflict
from services.partner_service.app.lifecycle import BookingLifecycle
from services.partner_service.app.models import PartnerBooking
from services.partner_service.app.principal import Principal
from services.partner_service.app.repository import PartnerRepository
from services.partner_service.app.settings_store import PartnerSettingsStore

GRACE = timedelta(minutes=30)


async def _ad(session, clock, user_id: str, *, approved: bool = False) -> int:
    repository = PartnerRepository(session)
    ad = await AdService(repository, clock=clock).submit(Principal(user_id=user_id), {
        "server_name": "Server " + user_id,
        "address": "play.example",
        "description": draft()["description"],
    })
    if approved:
        await repository.set_ad_status(ad, status=AdStatus.APPROVED.value, reason=None, now=clock())
    return ad.id


async def _reserve(session, clock, *, ad_id: int, user_id: str, slot: int, days: int = 7) -> int:
    booking = await PartnerRepository(session).insert_booking(
        ad_id=ad_id,
        user_id=user_id,
        slot=slot,
        kind=DurationKind.CUSTOM.value,
        days=days,
        total_cents=days * 800,
        currency="EUR",
        provider="stripe",
        now=clock(),
    )
    return booking.id


def _lifecycle(session, clock) -> BookingLifecycle:
    return BookingLifecycle(PartnerRepository(session), grace=GRACE, clock=clock)


def _resolver(session, clock, settings: ServiceSettings) -> AvailabilityResolver:
    repository = PartnerRepository(session)
    store = PartnerSettingsStore(repository, settings=settings, clock=clock)
    return AvailabilityResolver(repository, store, grace=GRACE, clock=clock)


@pytest.mark.asyncio
async def test_quote_on_empty_system_prices_every_slot(database_url, settings, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        quotes = await _resolver(session, clock, settings).quote(DurationKind.CUSTOM, 7)

    assert [quote.slot for quote in quotes] == list(range(1, 11))
    assert all(quote.available for quote in quotes)
    assert quotes[0].total_price == Decimal("70.00")
    assert quotes[9].total_price == Decimal("7.00")
    assert all(quote.days == 7 and quote.currency == "EUR" for quote in quotes)
    await dispose_engines()


@pytest.mark.asyncio
async def test_second_reservation_for_a_held_slot_is_rejected(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        first_ad = await _ad(session, clock, "user-1")
        second_ad = await _ad(session, clock, "user-2")
        await _reserve(session, clock, ad_id=first_ad, user_id="user-1", slot=3)

    with pytest.raises(SlotUnavailable) as excinfo:
        async with lifespan_session(factory) as session:
            await _reserve(session, clock, ad_id=second_ad, user_id="user-2", slot=3)
    assert excinfo.value.slot == 3

    with pytest.raises(StateConflict):
        async with lifespan_session(factory) as session:
            await _reserve(session, clock, ad_id=first_ad, user_id="user-1", slot=4)

    async with lifespan_session(factory) as session:
        bookings, total = await PartnerRepository(session).list_bookings()
    assert total == 1
    assert bookings[0].status == BookingStatus.PENDING.value
    await dispose_engines()


@pytest.mark.asyncio
async def test_unique_hold_rejects_direct_second_insert(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        first_ad = await _ad(session, clock, "user-1")
        second_ad = await _ad(session, clock, "user-2")
        await _reserve(session, clock, ad_id=first_ad, user_id="user-1", slot=5)

    with pytest.raises(IntegrityError):
        async with lifespan_session(factory) as session:
            session.add(
                PartnerBooking(
                    ad_id=second_ad,
                    user_id="user-2",
                    slot=5,
                    kind="CUSTOM",
                    days=1,
                    total_cents=100,
                    currency="EUR",
                    provider="stripe",
                    status=BookingStatus.ACTIVE.value,
                    slot_hold=5,
                    created_at=clock(),
                    updated_at=clock(),
                )
            )
    await dispose_engines()


@pytest.mark.asyncio
async def test_stale_pending_booking_is_released(database_url, settings, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1")
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=3)

    async with lifespan_session(factory) as session:
        quotes = await _resolver(session, clock, settings).quote(DurationKind.CUSTOM, 7)
        assert not quotes[2].available
        assert not await _lifecycle(session, clock).cancel_stale_pending(booking_id)

    clock.advance(minutes=31)
    async with lifespan_session(factory) as session:
        # Past the grace window the slot already reads as free.
        quotes = await _resolver(session, clock, settings).quote(DurationKind.CUSTOM, 7)
        assert quotes[2].available
        assert await _lifecycle(session, clock).cancel_stale_pending(booking_id)

    async with lifespan_session(factory) as session:
        booking = await PartnerRepository(session).get_booking(booking_id)
        assert booking.status == BookingStatus.CANCELED.value
        assert booking.slot_hold is None and booking.ad_hold is None
        other_ad = await _ad(session, clock, "user-2")
        await _reserve(session, clock, ad_id=other_ad, user_id="user-2", slot=3)
    await dispose_engines()


@pytest.mark.asyncio
async def test_quote_and_release_agree_on_the_grace_boundary(database_url, settings, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1")
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=3)

    clock.advance(minutes=29, seconds=59)
    async with lifespan_session(factory) as session:
        quotes = await _resolver(session, clock, settings).quote(DurationKind.CUSTOM, 7)
        assert not quotes[2].available
        assert await PartnerRepository(session).stale_pending_ids(clock() - GRACE) == []
        assert await _lifecycle(session, clock).release_stale_holds(slot=3) == []

    clock.advance(seconds=1)
    async with lifespan_session(factory) as session:
        # Exactly at the end of the window the slot is free and the hold is released.
        quotes = await _resolver(session, clock, settings).quote(DurationKind.CUSTOM, 7)
        assert quotes[2].available
        assert await PartnerRepository(session).stale_pending_ids(clock() - GRACE) == [booking_id]
        released = await _lifecycle(session, clock).release_stale_holds(slot=3)
        assert [booking.id for booking in released] == [booking_id]
        assert released[0].cancel_cause == CancelCause.GRACE_EXPIRED.value
        assert released[0].slot_hold is None
    await dispose_engines()


@pytest.mark.asyncio
async def test_paid_booking_waits_for_approval_then_activates(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1")
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=2, days=7)

    async with lifespan_session(factory) as session:
        lifecycle = _lifecycle(session, clock)
        assert await lifecycle.mark_paid(booking_id, capture_id="cap_1", provider_status="paid")
        assert not await lifecycle.mark_paid(booking_id, capture_id="cap_2")
        assert not await lifecycle.try_activate(booking_id)
        booking = await lifecycle.repository.get_booking(booking_id)
        assert booking.status == BookingStatus.PENDING.value
        assert booking.provider_capture_id == "cap_1"

    # Paid reservations are not released by the grace window.
    clock.advance(hours=5)
    async with lifespan_session(factory) as session:
        assert not await _lifecycle(session, clock).cancel_stale_pending(booking_id)
        assert not await _lifecycle(session, clock).cancel_pending(booking_id)

    activated_at = clock.advance(hours=1)
    async with lifespan_session(factory) as session:
        repository = PartnerRepository(session)
        ad = await repository.get_ad(ad_id)
        await repository.set_ad_status(ad, status=AdStatus.APPROVED.value, reason=None, now=clock())
        lifecycle = _lifecycle(session, clock)
        assert await lifecycle.try_activate(booking_id)
        assert not await lifecycle.try_activate(booking_id)

    async with lifespan_session(factory) as session:
        booking = await PartnerRepository(session).get_booking_with_events(booking_id)
        assert booking.status == BookingStatus.ACTIVE.value
        assert booking.starts_at.replace(tzinfo=None) == activated_at.replace(tzinfo=None)
        assert booking.ends_at - booking.starts_at == timedelta(days=7)
        assert [event.type for event in booking.events] == ["paid", "activated"]
    await dispose_engines()


@pytest.mark.asyncio
async def test_lapsed_lease_expires_and_frees_the_slot(database_url, settings, clock) -> None:
    factory = await prepare_database(database_url)
    transitions = MetricTracker("partner_booking_transitions_total", {"transition": "expired"})
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1", approved=True)
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=1, days=1)
        lifecycle = _lifecycle(session, clock)
        await lifecycle.mark_paid(booking_id)
        assert await lifecycle.try_activate(booking_id)

    clock.advance(hours=23)
    async with lifespan_session(factory) as session:
        assert not await _lifecycle(session, clock).expire_lapsed(booking_id)
        running = await PartnerRepository(session).running_bookings(clock())
        assert [booking.id for booking in running] == [booking_id]

    clock.advance(hours=1)
    async with lifespan_session(factory) as session:
        assert await PartnerRepository(session).running_bookings(clock()) == []
        assert await _lifecycle(session, clock).expire_lapsed(booking_id)
        quotes = await _resolver(session, clock, settings).quote(DurationKind.MONTHLY, None)
        assert quotes[0].available
        assert quotes[0].days == 30

    assert transitions.delta() == 1
    await dispose_engines()


@pytest.mark.asyncio
async def test_reclaim_restores_a_released_booking_unless_the_slot_is_taken(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        first_ad = await _ad(session, clock, "user-1")
        second_ad = await _ad(session, clock, "user-2")
        first = await _reserve(session, clock, ad_id=first_ad, user_id="user-1", slot=6)
        second = await _reserve(session, clock, ad_id=second_ad, user_id="user-2", slot=7)
        lifecycle = _lifecycle(session, clock)
        assert await lifecycle.cancel_pending(first)
        assert await lifecycle.cancel_pending(second)
        assert not await lifecycle.cancel_pending(second)

    async with lifespan_session(factory) as session:
        assert await _lifecycle(session, clock).reclaim(first, capture_id="cap_late")
        booking = await PartnerRepository(session).get_booking(first)
        assert booking.status == BookingStatus.PENDING.value
        assert booking.slot_hold == 6
        assert booking.paid_at is not None

    async with lifespan_session(factory) as session:
        third_ad = await _ad(session, clock, "user-3")
        await _reserve(session, clock, ad_id=third_ad, user_id="user-3", slot=7)

    with pytest.raises(SlotUnavailable):
        async with lifespan_session(factory) as session:
            await _lifecycle(session, clock).reclaim(second, capture_id="cap_late_2")
    await dispose_engines()


@pytest.mark.asyncio
async def test_force_cancel_releases_active_bookings(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1", approved=True)
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=9)
        lifecycle = _lifecycle(session, clock)
        await lifecycle.mark_paid(booking_id)
        await lifecycle.try_activate(booking_id)
        assert not await lifecycle.cancel_pending(booking_id)
        assert await lifecycle.force_cancel(booking_id, reason="terms violation")
        assert not await lifecycle.force_cancel(booking_id, reason="again")

    async with lifespan_session(factory) as session:
        booking = await PartnerRepository(session).get_booking(booking_id)
        assert booking.status == BookingStatus.CANCELED.value
        assert booking.canceled_reason == "terms violation"
        assert booking.slot_hold is None
    await dispose_engines()


@pytest.mark.asyncio
async def test_staff_cancellations_are_not_reclaimed_by_a_late_payment(database_url, clock) -> None:
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        removed_ad = await _ad(session, clock, "user-1")
        rejected_ad = await _ad(session, clock, "user-2")
        removed = await _reserve(session, clock, ad_id=removed_ad, user_id="user-1", slot=4)
        rejected = await _reserve(session, clock, ad_id=rejected_ad, user_id="user-2", slot=5)
        lifecycle = _lifecycle(session, clock)
        assert await lifecycle.force_cancel(removed, reason="terms violation")
        assert await lifecycle.force_cancel(
            rejected, reason="advertisement rejected: spam", cause=CancelCause.AD_REJECTED
        )

    async with lifespan_session(factory) as session:
        lifecycle = _lifecycle(session, clock)
        assert not await lifecycle.reclaim(removed, capture_id="cap_removed")
        assert not await lifecycle.reclaim(rejected, capture_id="cap_rejected")

    async with lifespan_session(factory) as session:
        repository = PartnerRepository(session)
        removed_booking = await repository.get_booking(removed)
        rejected_booking = await repository.get_booking(rejected)
        assert removed_booking.status == BookingStatus.CANCELED.value
        assert removed_booking.cancel_cause == CancelCause.ADMIN.value
        assert removed_booking.slot_hold is None and removed_booking.paid_at is None
        assert rejected_booking.status == BookingStatus.CANCELED.value
        assert rejected_booking.cancel_cause == CancelCause.AD_REJECTED.value
        assert rejected_booking.slot_hold is None
    await dispose_engines()


@pytest.mark.asyncio
async def test_refunded_booking_is_marked_once_and_stays_released(database_url, clock) -> None:
    transitions = MetricTracker("partner_booking_transitions_total", {"transition": "refunded"})
    factory = await prepare_database(database_url)
    async with lifespan_session(factory) as session:
        ad_id = await _ad(session, clock, "user-1")
        booking_id = await _reserve(session, clock, ad_id=ad_id, user_id="user-1", slot=6)
        assert await _lifecycle(session, clock).cancel_pending(booking_id)

    async with lifespan_session(factory) as session:
        lifecycle = _lifecycle(session, clock)
        assert await lifecycle.mark_refunded(booking_id, capture_id="cap_late", amount="56.00")
        assert not await lifecycle.mark_refunded(booking_id, capture_id="cap_late", amount="56.00")
        assert not await lifecycle.reclaim(booking_id, capture_id="cap_late")

    async with lifespan_session(factory) as session:
        booking = await PartnerRepository(session).get_booking(booking_id)
        assert booking.status == BookingStatus.CANCELED.value
        assert booking.refunded_at is not None
        assert booking.provider_capture_id == "cap_late"
        assert booking.provider_status == "REFUNDED"
        assert booking.slot_hold is None
    assert transitions.delta() == 1
    await dispose_engines()
