"""Pydantic schemas for the partner service."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from .constants import PARTNER_SLOTS, DurationKind, ReviewAction


class AdDraft(BaseModel):
    server_name: str = Field(alias="serverName", min_length=3, max_length=60)
    address: str = Field(min_length=3, max_length=80)
    version: str = Field(default="", max_length=30)
    description: str = Field(min_length=20, max_length=500)
    website: str = Field(default="", max_length=200)
    discord: str = Field(default="", max_length=200)
    banner: str = Field(default="", max_length=500)
    submission_note: str | None = Field(default=None, alias="submissionNote", max_length=300)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class AdPatch(BaseModel):
    server_name: str | None = Field(default=None, alias="serverName", min_length=3, max_length=60)
    address: str | None = Field(default=None, min_length=3, max_length=80)
    version: str | None = Field(default=None, max_length=30)
    description: str | None = Field(default=None, min_length=20, max_length=500)
    website: str | None = Field(default=None, max_length=200)
    discord: str | None = Field(default=None, max_length=200)
    banner: str | None = Field(default=None, max_length=500)
    submission_note: str | None = Field(default=None, alias="submissionNote", max_length=300)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class AdResponse(BaseModel):
    id: PositiveInt
    user_id: str = Field(alias="userId")
    owner_username: str | None = Field(default=None, alias="ownerUsername")
    server_name: str = Field(alias="serverName")
    address: str
    version: str
    description: str
    website: str
    discord: str
    banner: str
    status: str
    rejection_reason: str | None = Field(default=None, alias="rejectionReason")
    submission_note: str | None = Field(default=None, alias="submissionNote")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class PublicAdResponse(BaseModel):
    id: PositiveInt
    owner_username: str | None = Field(default=None, alias="ownerUsername")
    server_name: str = Field(alias="serverName")
    address: str
    version: str
    description: str
    website: str
    discord: str
    banner: str

    model_config = ConfigDict(populate_by_name=True)


class SlotQuoteResponse(BaseModel):
    slot: int
    available: bool
    sellable: bool
    total_price: Decimal | None = Field(default=None, alias="totalPrice")
    currency: str
    days: int

    model_config = ConfigDict(populate_by_name=True)


class SlotQuoteListResponse(BaseModel):
    kind: DurationKind
    days: int
    max_days: int = Field(alias="maxDays")
    slots: list[SlotQuoteResponse]

    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(BaseModel):
    slot: int = Field(ge=1, le=PARTNER_SLOTS)
    kind: DurationKind = DurationKind.CUSTOM
    days: PositiveInt | None = None
    ad: AdDraft


class CheckoutResponse(BaseModel):
    booking_id: PositiveInt = Field(alias="bookingId")
    session_id: str = Field(alias="sessionId")
    redirect_url: str = Field(alias="redirectUrl")
    slot: int
    days: int
    total: Decimal
    currency: str

    model_config = ConfigDict(populate_by_name=True)


class ConfirmRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1, max_length=255)
    booking_id: PositiveInt | None = Field(default=None, alias="bookingId")

    model_config = ConfigDict(populate_by_name=True)


class ConfirmResponse(BaseModel):
    booking_id: PositiveInt = Field(alias="bookingId")
    status: str
    state: str
    already_paid: bool = Field(alias="alreadyPaid")
    starts_at: datetime | None = Field(default=None, alias="startsAt")
    ends_at: datetime | None = Field(default=None, alias="endsAt")

    model_config = ConfigDict(populate_by_name=True)


class CancelRequest(BaseModel):
    booking_id: PositiveInt = Field(alias="bookingId")

    model_config = ConfigDict(populate_by_name=True)


class CancelResponse(BaseModel):
    booking_id: PositiveInt = Field(alias="bookingId")
    status: str
    canceled: bool

    model_config = ConfigDict(populate_by_name=True)


class ListingEntryResponse(BaseModel):
    slot: int
    source: str
    ad: PublicAdResponse | None = None
    ends_at: datetime | None = Field(default=None, alias="endsAt")

    model_config = ConfigDict(populate_by_name=True)


class BrowseResponse(BaseModel):
    items: list[PublicAdResponse]
    next_cursor: str | None = Field(default=None, alias="nextCursor")

    model_config = ConfigDict(populate_by_name=True)


class BookingResponse(BaseModel):
    id: PositiveInt
    ad_id: int | None = Field(default=None, alias="adId")
    user_id: str = Field(alias="userId")
    slot: int
    kind: str
    days: int
    total: Decimal
    currency: str
    provider: str
    provider_status: str | None = Field(default=None, alias="providerStatus")
    status: str
    paid_at: datetime | None = Field(default=None, alias="paidAt")
    starts_at: datetime | None = Field(default=None, alias="startsAt")
    ends_at: datetime | None = Field(default=None, alias="endsAt")
    canceled_reason: str | None = Field(default=None, alias="canceledReason")
    cancel_cause: str | None = Field(default=None, alias="cancelCause")
    refunded_at: datetime | None = Field(default=None, alias="refundedAt")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int


class ForceCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class UnpricedCell(BaseModel):
    slot: int
    days: int


class PricingResponse(BaseModel):
    currency: str
    max_days: int = Field(alias="maxDays")
    totals: list[list[Decimal | None]]
    unpriced: list[UnpricedCell]

    model_config = ConfigDict(populate_by_name=True)


class PricingUpdate(BaseModel):
    totals: list[list[Decimal]]
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class OverridesResponse(BaseModel):
    slots: list[str]


class OverridesUpdate(BaseModel):
    slots: list[str | int | None] = Field(max_length=PARTNER_SLOTS)


class SettingChangeResponse(BaseModel):
    id: PositiveInt
    key: str
    actor: str | None = None
    value: dict
    changed_at: datetime = Field(alias="changedAt")

    model_config = ConfigDict(populate_by_name=True)


class AdDecisionRequest(BaseModel):
    action: ReviewAction
    reason: str | None = Field(default=None, max_length=300)


class AdDecisionResponse(BaseModel):
    ad: AdResponse
    activated_booking_id: int | None = Field(default=None, alias="activatedBookingId")
    canceled_booking_ids: list[int] = Field(default_factory=list, alias="canceledBookingIds")

    model_config = ConfigDict(populate_by_name=True)


class AdDeleteResponse(BaseModel):
    id: PositiveInt
    canceled_booking_ids: list[int] = Field(alias="canceledBookingIds")

    model_config = ConfigDict(populate_by_name=True)


class SweepResponse(BaseModel):
    canceled: int
    expired: int
    failures: int
    sessions_closed: int = Field(alias="sessionsClosed")

    model_config = ConfigDict(populate_by_name=True)


class WebhookResponse(BaseModel):
    received: bool = True
    result: str
