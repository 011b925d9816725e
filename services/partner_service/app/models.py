"""SQLAlchemy models for the partner service."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .constants import AdStatus, BookingStatus, DurationKind


class Base(DeclarativeBase):
    """Base class for partner service ORM models."""


class PartnerAd(Base):
    __tablename__ = "partner_ads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    owner_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    server_name: Mapped[str] = mapped_column(String(60), nullable=False)
    address: Mapped[str] = mapped_column(String(80), nullable=False)
    version: Mapped[str] = mapped_column(String(30), nullable=False, default="", server_default="")
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    website: Mapped[str] = mapped_column(String(200), nullable=False, default="", server_default="")
    discord: Mapped[str] = mapped_column(String(200), nullable=False, default="", server_default="")
    banner: Mapped[str] = mapped_column(String(500), nullable=False, default="", server_default="")
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AdStatus.PENDING_REVIEW.value,
        server_default=AdStatus.PENDING_REVIEW.value,
    )
    rejection_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    submission_note: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    bookings: Mapped[list[PartnerBooking]] = relationship(back_populates="ad", passive_deletes=True)


class PartnerBooking(Base):
    __tablename__ = "partner_bookings"
    __table_args__ = (
        UniqueConstraint("slot_hold", name="uq_partner_booking_slot_hold"),
        UniqueConstraint("ad_hold", name="uq_partner_booking_ad_hold"),
        CheckConstraint("slot >= 1 AND slot <= 10", name="ck_partner_booking_slot"),
        CheckConstraint("days >= 1", name="ck_partner_booking_days"),
        Index("ix_partner_bookings_status_slot", "status", "slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ad_id: Mapped[int | None] = mapped_column(
        ForeignKey("partner_ads.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=DurationKind.CUSTOM.value)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_capture_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=BookingStatus.PENDING.value,
        server_default=BookingStatus.PENDING.value,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    cancel_cause: Mapped[str | None] = mapped_column(String(24), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Reservation keys: populated only while PENDING or ACTIVE.
    slot_hold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ad_hold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    ad: Mapped[PartnerAd | None] = relationship(back_populates="bookings")
    events: Mapped[list[PartnerBookingEvent]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="PartnerBookingEvent.id",
    )


class PartnerBookingEvent(Base):
    __tablename__ = "partner_booking_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        ForeignKey("partner_bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    booking: Mapped[PartnerBooking] = relationship(back_populates="events")


class PartnerSetting(Base):
    """Whole-record JSON settings such as the price grid and slot overrides."""

    __tablename__ = "partner_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class PartnerSettingChange(Base):
    """Append-only audit trail of price grid and override replacements."""

    __tablename__ = "partner_setting_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
