"""Public ranking of the ten slots and the partner directory."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from .clock import Clock, as_utc, utcnow
from .constants import AdStatus, BookingStatus, slot_range
from .models import PartnerAd, PartnerBooking
from .overrides import normalize_overrides
from .repository import PartnerRepository
from .settings_store import PartnerSettingsStore


@dataclass(frozen=True)
class ListingEntry:
    slot: int
    source: str
    ad: PartnerAd | None = None
    booking_id: int | None = None
    ends_at: datetime | None = None


def _approved(ad: PartnerAd | None) -> bool:
    return ad is not None and ad.status == AdStatus.APPROVED.value


def _override_id(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def _running(booking: PartnerBooking, now: datetime) -> bool:
    starts_at, ends_at = as_utc(booking.starts_at), as_utc(booking.ends_at)
    return (
        booking.status == BookingStatus.ACTIVE.value
        and starts_at is not None
        and ends_at is not None
        and starts_at <= now < ends_at
    )


def compose(
    overrides: Sequence[str],
    active_bookings: Iterable[PartnerBooking],
    ads: Mapping[int, PartnerAd],
    *,
    now: datetime,
) -> list[ListingEntry]:
    """Resolve what each slot displays.

    A set override always owns its slot, even when the ad it names is gone or
    unapproved, in which case the slot shows nothing.
    """

    by_slot: dict[int, PartnerBooking] = {}
    for booking in active_bookings:
        if not _running(booking, now) or booking.ad_id is None or not _approved(ads.get(booking.ad_id)):
            continue
        current = by_slot.get(booking.slot)
        if current is None or as_utc(booking.starts_at) > as_utc(current.starts_at):
            by_slot[booking.slot] = booking

    entries: list[ListingEntry] = []
    for slot, override in zip(slot_range(), normalize_overrides(overrides)):
        if override:
            ad_id = _override_id(override)
            ad = ads.get(ad_id) if ad_id is not None else None
            if _approved(ad):
                entries.append(ListingEntry(slot=slot, source="override", ad=ad))
            else:
                entries.append(ListingEntry(slot=slot, source="empty"))
            continue
        booking = by_slot.get(slot)
        if booking is not None:
            entries.append(
                ListingEntry(
                    slot=slot,
                    source="booking",
                    ad=ads[booking.ad_id],
                    booking_id=booking.id,
                    ends_at=as_utc(booking.ends_at),
                )
            )
        else:
            entries.append(ListingEntry(slot=slot, source="empty"))
    return entries


def encode_cursor(ad: PartnerAd) -> str:
    payload = json.dumps({"createdAt": as_utc(ad.created_at).isoformat(), "id": ad.id})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(raw: str | None) -> tuple[datetime, int] | None:
    """Unreadable cursors restart from the first page."""

    if not raw:
        return None
    try:
        data = json.loads(base64.urlsafe_b64decode(raw.encode("ascii")).decode("utf-8"))
        return as_utc(datetime.fromisoformat(data["createdAt"])), int(data["id"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        return None


class ListingService:
    def __init__(self, repository: PartnerRepository, store: PartnerSettingsStore, *, clock: Clock = utcnow) -> None:
        self.repository = repository
        self.store = store
        self.clock = clock

    async def public_ranking(self) -> list[ListingEntry]:
        now = self.clock()
        overrides = await self.store.load_overrides()
        bookings = await self.repository.running_bookings(now)
        wanted = {booking.ad_id for booking in bookings if booking.ad_id is not None}
        wanted.update(ad_id for ad_id in map(_override_id, filter(None, overrides)) if ad_id is not None)
        ads = await self.repository.get_ads(wanted)
        return compose(overrides, bookings, ads, now=now)

    async def browse(
        self,
        *,
        limit: int,
        cursor: str | None = None,
        exclude: Sequence[int] = (),
    ) -> tuple[list[PartnerAd], str | None]:
        ads = await self.repository.browse_ads(limit=limit + 1, before=decode_cursor(cursor), exclude=exclude)
        page = ads[:limit]
        next_cursor = encode_cursor(page[-1]) if len(ads) > limit and page else None
        return page, next_cursor
