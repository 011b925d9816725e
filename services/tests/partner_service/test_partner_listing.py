from datetime import datetime, timedelta, timezone

import pytest

from services.partner_service.app.constants import AdStatus, BookingStatus
from services.partner_service.app.errors import ValidationError
from services.partner_service.app.listing import compose, decode_cursor, encode_cursor
from services.partner_service.app.models import PartnerAd, PartnerBooking
from services.partner_service.app.overrides import (
    normalize_overrides,
    overridden_slots,
    parse_override_ids,
    resolve_slot,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _ad(ad_id: int, status: AdStatus = AdStatus.APPROVED) -> PartnerAd:
    return PartnerAd(id=ad_id, user_id=f"user-{ad_id}", server_name=f"Server {ad_id}", status=status.value)


def _active(booking_id: int, slot: int, ad_id: int, *, starts: timedelta, ends: timedelta) -> PartnerBooking:
    return PartnerBooking(
        id=booking_id,
        slot=slot,
        ad_id=ad_id,
        status=BookingStatus.ACTIVE.value,
        starts_at=NOW + starts,
        ends_at=NOW + ends,
    )


def test_normalize_overrides_pads_and_trims() -> None:
    assert normalize_overrides(None) == [""] * 10
    assert normalize_overrides([" 5 ", None, 7]) == ["5", "", "7"] + [""] * 7
    assert len(normalize_overrides([str(n) for n in range(15)])) == 10


def test_override_helpers() -> None:
    overrides = normalize_overrides(["", "12", "", "4"])

    assert resolve_slot(overrides, 2) == "12"
    assert resolve_slot(overrides, 1) is None
    assert overridden_slots(overrides) == {2, 4}
    assert parse_override_ids(overrides) == {2: 12, 4: 4}

    with pytest.raises(ValidationError):
        parse_override_ids(["abc"])


def test_override_wins_over_active_booking_and_reverts_when_removed() -> None:
    ads = {1: _ad(1), 2: _ad(2)}
    booking = _active(10, 1, 2, starts=-timedelta(days=1), ends=timedelta(days=2))

    with_override = compose(["1"], [booking], ads, now=NOW)
    assert with_override[0].source == "override"
    assert with_override[0].ad is ads[1]

    without_override = compose([], [booking], ads, now=NOW)
    assert without_override[0].source == "booking"
    assert without_override[0].ad is ads[2]
    assert without_override[0].booking_id == 10

    later = compose([], [booking], ads, now=NOW + timedelta(days=3))
    assert later[0].source == "empty"
    assert later[0].ad is None


def test_override_to_unapproved_or_missing_ad_shows_empty_slot() -> None:
    ads = {1: _ad(1, AdStatus.REJECTED), 2: _ad(2)}
    booking = _active(10, 2, 2, starts=-timedelta(hours=1), ends=timedelta(days=1))

    entries = compose(["1", "99"], [booking], ads, now=NOW)

    assert [entry.source for entry in entries[:3]] == ["empty", "empty", "empty"]
    assert all(entry.ad is None for entry in entries)


def test_bookings_for_unapproved_ads_are_hidden() -> None:
    ads = {3: _ad(3, AdStatus.PENDING_REVIEW)}
    booking = _active(11, 5, 3, starts=-timedelta(hours=1), ends=timedelta(days=1))

    entries = compose([], [booking], ads, now=NOW)

    assert len(entries) == 10
    assert entries[4].source == "empty"


def test_cursor_round_trip_and_garbage() -> None:
    ad = _ad(7)
    ad.created_at = NOW.replace(tzinfo=None)

    assert decode_cursor(encode_cursor(ad)) == (NOW, 7)
    assert decode_cursor("not-a-cursor") is None
    assert decode_cursor(None) is None
