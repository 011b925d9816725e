"""Database helpers for the partner service."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .constants import AdStatus, BookingStatus
from .errors import PartnerError, SlotUnavailable, StateConflict
from .models import PartnerAd, PartnerBooking, PartnerBookingEvent, PartnerSetting, PartnerSettingChange


def hold_conflict(exc: IntegrityError, slot: int) -> PartnerError:
    """Map a unique violation on the reservation keys to a domain error."""

    message = str(exc.orig if exc.orig is not None else exc).lower()
    if "slot_hold" in message:
        return SlotUnavailable(slot)
    if "ad_hold" in message:
        return StateConflict("Your advertisement already has a pending or active booking.")
    return StateConflict("The booking conflicts with an existing record.")


def stale_reservation(cutoff: datetime) -> Any:
    """Unpaid PENDING bookings created at or before ``cutoff``.

    The exact complement of what ``held_slots`` counts as a live reservation.
    """

    return and_(
        PartnerBooking.status == BookingStatus.PENDING.value,
        PartnerBooking.paid_at.is_(None),
        PartnerBooking.created_at <= cutoff,
    )


class PartnerRepository:
    """Persistence utilities for advertisements, bookings and settings records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Advertisements ---------------------------------------------------------------------
    async def get_ad(self, ad_id: int) -> PartnerAd | None:
        result = await self.session.execute(
            select(PartnerAd).where(PartnerAd.id == ad_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_ad_for_user(self, user_id: str) -> PartnerAd | None:
        result = await self.session.execute(
            select(PartnerAd).where(PartnerAd.user_id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_ads(self, ad_ids: Iterable[int]) -> dict[int, PartnerAd]:
        ids = {ad_id for ad_id in ad_ids if ad_id is not None}
        if not ids:
            return {}
        result = await self.session.execute(select(PartnerAd).where(PartnerAd.id.in_(ids)))
        return {ad.id: ad for ad in result.scalars()}

    async def list_ads(self, *, status: str | None = None) -> list[PartnerAd]:
        stmt = select(PartnerAd).order_by(PartnerAd.updated_at.desc(), PartnerAd.id.desc())
        if status is not None:
            stmt = stmt.where(PartnerAd.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def browse_ads(
        self,
        *,
        limit: int,
        before: tuple[datetime, int] | None = None,
        exclude: Sequence[int] = (),
    ) -> list[PartnerAd]:
        """Approved ads newest first, keyset-paginated on ``(created_at, id)``."""

        stmt = (
            select(PartnerAd)
            .where(PartnerAd.status == AdStatus.APPROVED.value)
            .order_by(PartnerAd.created_at.desc(), PartnerAd.id.desc())
            .limit(limit)
        )
        if exclude:
            stmt = stmt.where(PartnerAd.id.not_in(list(exclude)))
        if before is not None:
            created_at, ad_id = before
            stmt = stmt.where(
                or_(
                    PartnerAd.created_at < created_at,
                    and_(PartnerAd.created_at == created_at, PartnerAd.id < ad_id),
                )
            )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def create_ad(
        self,
        *,
        user_id: str,
        owner_username: str | None,
        content: dict[str, Any],
        status: str,
        now: datetime,
    ) -> PartnerAd:
        ad = PartnerAd(
            user_id=user_id,
            owner_username=owner_username,
            status=status,
            created_at=now,
            updated_at=now,
            **content,
        )
        self.session.add(ad)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise StateConflict("An advertisement already exists for this account.") from exc
        return ad

    async def update_ad(
        self,
        ad: PartnerAd,
        *,
        content: dict[str, Any],
        status: str,
        now: datetime,
        owner_username: str | None = None,
    ) -> PartnerAd:
        for field, value in content.items():
            setattr(ad, field, value)
        if owner_username:
            ad.owner_username = owner_username
        ad.status = status
        if status != AdStatus.REJECTED.value:
            ad.rejection_reason = None
        ad.updated_at = now
        await self.session.flush()
        return ad

    async def set_ad_status(self, ad: PartnerAd, *, status: str, reason: str | None, now: datetime) -> PartnerAd:
        ad.status = status
        ad.rejection_reason = reason
        ad.updated_at = now
        await self.session.flush()
        return ad

    async def delete_ad(self, ad: PartnerAd) -> None:
        # Booking history survives with ad_id cleared.
        await self.session.execute(
            update(PartnerBooking)
            .where(PartnerBooking.ad_id == ad.id)
            .values(ad_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(delete(PartnerAd).where(PartnerAd.id == ad.id))
        self.session.expunge(ad)

    # Bookings ---------------------------------------------------------------------------
    async def insert_booking(
        self,
        *,
        ad_id: int,
        user_id: str,
        slot: int,
        kind: str,
        days: int,
        total_cents: int,
        currency: str,
        provider: str,
        now: datetime,
    ) -> PartnerBooking:
        booking = PartnerBooking(
            ad_id=ad_id,
            user_id=user_id,
            slot=slot,
            kind=kind,
            days=days,
            total_cents=total_cents,
            currency=currency,
            provider=provider,
            status=BookingStatus.PENDING.value,
            slot_hold=slot,
            ad_hold=ad_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(booking)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise hold_conflict(exc, slot) from exc
        return booking

    async def get_booking(self, booking_id: int) -> PartnerBooking | None:
        result = await self.session.execute(
            select(PartnerBooking)
            .where(PartnerBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_booking_with_events(self, booking_id: int) -> PartnerBooking | None:
        result = await self.session.execute(
            select(PartnerBooking)
            .options(selectinload(PartnerBooking.events))
            .where(PartnerBooking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_booking_by_session(self, provider: str, session_id: str) -> PartnerBooking | None:
        result = await self.session.execute(
            select(PartnerBooking)
            .where(PartnerBooking.provider == provider, PartnerBooking.provider_session_id == session_id)
            .order_by(PartnerBooking.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_bookings(
        self,
        *,
        status: str | None = None,
        user_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[PartnerBooking], int]:
        filters = []
        if status is not None:
            filters.append(PartnerBooking.status == status)
        if user_id is not None:
            filters.append(PartnerBooking.user_id == user_id)

        base: Select[tuple[PartnerBooking]] = select(PartnerBooking).order_by(
            PartnerBooking.created_at.desc(), PartnerBooking.id.desc()
        )
        count: Select[tuple[int]] = select(func.count(PartnerBooking.id))
        if filters:
            combined = and_(*filters)
            base = base.where(combined)
            count = count.where(combined)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars()), total

    async def holding_booking_ids(self, *, slot: int | None = None, ad_id: int | None = None) -> list[int]:
        conditions = []
        if slot is not None:
            conditions.append(PartnerBooking.slot_hold == slot)
        if ad_id is not None:
            conditions.append(PartnerBooking.ad_hold == ad_id)
        if not conditions:
            return []
        result = await self.session.execute(select(PartnerBooking.id).where(or_(*conditions)))
        return list(result.scalars())

    async def stale_pending_ids(self, cutoff: datetime) -> list[int]:
        result = await self.session.execute(
            select(PartnerBooking.id).where(stale_reservation(cutoff)).order_by(PartnerBooking.id)
        )
        return list(result.scalars())

    async def lapsed_active_ids(self, now: datetime) -> list[int]:
        result = await self.session.execute(
            select(PartnerBooking.id)
            .where(PartnerBooking.status == BookingStatus.ACTIVE.value, PartnerBooking.ends_at <= now)
            .order_by(PartnerBooking.id)
        )
        return list(result.scalars())

    async def held_slots(self, *, now: datetime, grace_cutoff: datetime) -> set[int]:
        result = await self.session.execute(
            select(PartnerBooking.slot)
            .where(
                or_(
                    and_(
                        PartnerBooking.status == BookingStatus.ACTIVE.value,
                        PartnerBooking.ends_at > now,
                    ),
                    and_(
                        PartnerBooking.status == BookingStatus.PENDING.value,
                        or_(PartnerBooking.paid_at.is_not(None), PartnerBooking.created_at > grace_cutoff),
                    ),
                )
            )
            .distinct()
        )
        return set(result.scalars())

    async def running_bookings(self, now: datetime) -> list[PartnerBooking]:
        result = await self.session.execute(
            select(PartnerBooking)
            .where(
                PartnerBooking.status == BookingStatus.ACTIVE.value,
                PartnerBooking.starts_at <= now,
                PartnerBooking.ends_at > now,
            )
            .order_by(PartnerBooking.slot, PartnerBooking.starts_at)
        )
        return list(result.scalars())

    async def booking_ids_for_ad(self, ad_id: int, statuses: Sequence[str]) -> list[int]:
        result = await self.session.execute(
            select(PartnerBooking.id)
            .where(PartnerBooking.ad_id == ad_id, PartnerBooking.status.in_(statuses))
            .order_by(PartnerBooking.id)
        )
        return list(result.scalars())

    async def newest_paid_pending_for_ad(self, ad_id: int) -> PartnerBooking | None:
        result = await self.session.execute(
            select(PartnerBooking)
            .where(
                PartnerBooking.ad_id == ad_id,
                PartnerBooking.status == BookingStatus.PENDING.value,
                PartnerBooking.paid_at.is_not(None),
            )
            .order_by(PartnerBooking.created_at.desc(), PartnerBooking.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def conditional_update(self, booking_id: int, *conditions: Any, **values: Any) -> bool:
        """Apply ``values`` only if the row still matches ``conditions``."""

        result = await self.session.execute(
            update(PartnerBooking)
            .where(PartnerBooking.id == booking_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_provider_session(self, booking_id: int, *, session_id: str, provider_status: str, now: datetime) -> None:
        await self.session.execute(
            update(PartnerBooking)
            .where(PartnerBooking.id == booking_id)
            .values(provider_session_id=session_id, provider_status=provider_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def set_provider_status(self, booking_id: int, *, provider_status: str, now: datetime) -> None:
        await self.session.execute(
            update(PartnerBooking)
            .where(PartnerBooking.id == booking_id)
            .values(provider_status=provider_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def add_event(
        self,
        booking_id: int,
        *,
        event_type: str,
        payload: dict[str, Any] | None,
        now: datetime,
    ) -> PartnerBookingEvent:
        event = PartnerBookingEvent(
            booking_id=booking_id,
            type=event_type,
            payload=json.dumps(payload or {}, default=str),
            created_at=now,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def delete_booking(self, booking: PartnerBooking) -> None:
        await self.session.execute(delete(PartnerBookingEvent).where(PartnerBookingEvent.booking_id == booking.id))
        await self.session.execute(delete(PartnerBooking).where(PartnerBooking.id == booking.id))
        self.session.expunge(booking)

    # Settings records -------------------------------------------------------------------
    async def get_setting(self, key: str) -> PartnerSetting | None:
        result = await self.session.execute(
            select(PartnerSetting).where(PartnerSetting.key == key).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def put_setting(self, key: str, value: str, *, updated_by: str | None, now: datetime) -> PartnerSetting:
        record = await self.get_setting(key)
        if record is None:
            record = PartnerSetting(key=key, value=value, updated_by=updated_by, updated_at=now)
            self.session.add(record)
        else:
            record.value = value
            record.updated_by = updated_by
            record.updated_at = now
        await self.session.flush()
        return record

    async def add_setting_change(
        self, key: str, value: str, *, actor: str | None, now: datetime
    ) -> PartnerSettingChange:
        change = PartnerSettingChange(key=key, value=value, actor=actor, created_at=now)
        self.session.add(change)
        await self.session.flush()
        return change

    async def list_setting_changes(self, *, key: str | None = None, limit: int = 50) -> list[PartnerSettingChange]:
        stmt = select(PartnerSettingChange).order_by(PartnerSettingChange.id.desc()).limit(limit)
        if key is not None:
            stmt = stmt.where(PartnerSettingChange.key == key)
        result = await self.session.execute(stmt)
        return list(result.scalars())
