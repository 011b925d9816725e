"""Public and account-holder endpoints of the partner marketplace."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status

from services.common import ServiceSettings

from ..ads import AdService
from ..availability import AvailabilityResolver
from ..checkout import CheckoutService
from ..constants import DurationKind
from ..dependencies import (
    get_ad_service,
    get_availability,
    get_booking_admin,
    get_checkout_service,
    get_listing_service,
    get_principal,
    get_repository,
    get_service_settings,
)
from ..errors import NotFound
from ..listing import ListingService
from ..principal import Principal
from ..processors import parse_stripe_webhook
from ..repository import PartnerRepository
from ..review import BookingAdminService
from ..schemas import (
    AdDraft,
    AdPatch,
    AdResponse,
    BookingListResponse,
    BookingResponse,
    BrowseResponse,
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmRequest,
    ConfirmResponse,
    ListingEntryResponse,
    PublicAdResponse,
    SlotQuoteListResponse,
    SlotQuoteResponse,
    WebhookResponse,
)
from .serializers import serialize_ad, serialize_booking, serialize_listing_entry, serialize_public_ad

router = APIRouter(prefix="/partner", tags=["partner"])


@router.get("/slots", response_model=SlotQuoteListResponse)
async def quote_slots(
    kind: DurationKind = Query(default=DurationKind.CUSTOM),
    days: int | None = Query(default=None, ge=1),
    resolver: AvailabilityResolver = Depends(get_availability),
) -> SlotQuoteListResponse:
    quotes = await resolver.quote(kind, days)
    lease_days = quotes[0].days if quotes else resolver.store.max_days
    return SlotQuoteListResponse(
        kind=kind,
        days=lease_days,
        max_days=resolver.store.max_days,
        slots=[
            SlotQuoteResponse(
                slot=quote.slot,
                available=quote.available,
                sellable=quote.sellable,
                total_price=quote.total_price,
                currency=quote.currency,
                days=quote.days,
            )
            for quote in quotes
        ],
    )


@router.post("/checkout/cancel", response_model=CancelResponse)
async def cancel_checkout(
    payload: CancelRequest,
    principal: Principal = Depends(get_principal),
    service: CheckoutService = Depends(get_checkout_service),
) -> CancelResponse:
    booking, canceled = await service.cancel(principal, payload.booking_id)
    return CancelResponse(booking_id=booking.id, status=booking.status, canceled=canceled)


@router.post("/checkout/{provider}", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def start_checkout(
    provider: str,
    payload: CheckoutRequest,
    principal: Principal = Depends(get_principal),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    started = await service.start_checkout(
        principal,
        provider,
        slot=payload.slot,
        kind=payload.kind,
        days=payload.days,
        draft=payload.ad.model_dump(),
    )
    return CheckoutResponse(
        booking_id=started.booking_id,
        session_id=started.session_id,
        redirect_url=started.redirect_url,
        slot=started.slot,
        days=started.days,
        total=started.total,
        currency=started.currency,
    )


@router.post("/checkout/{provider}/confirm", response_model=ConfirmResponse)
async def confirm_checkout(
    provider: str,
    payload: ConfirmRequest,
    principal: Principal = Depends(get_principal),
    service: CheckoutService = Depends(get_checkout_service),
) -> ConfirmResponse:
    confirmation = await service.confirm_payment(
        provider, payload.session_id, principal=principal, booking_id=payload.booking_id
    )
    booking = serialize_booking(confirmation.booking)
    return ConfirmResponse(
        booking_id=confirmation.booking.id,
        status=confirmation.booking.status,
        state=confirmation.state,
        already_paid=confirmation.already_paid,
        starts_at=booking["startsAt"],
        ends_at=booking["endsAt"],
    )


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    settings: ServiceSettings = Depends(get_service_settings),
    service: CheckoutService = Depends(get_checkout_service),
) -> WebhookResponse:
    event = parse_stripe_webhook(
        await request.body(),
        stripe_signature,
        secret=settings.stripe_webhook_secret,
    )
    result = await service.handle_stripe_event(event)
    return WebhookResponse(result=result)


@router.get("/active", response_model=list[ListingEntryResponse])
async def public_ranking(service: ListingService = Depends(get_listing_service)) -> list[ListingEntryResponse]:
    entries = await service.public_ranking()
    return [ListingEntryResponse.model_validate(serialize_listing_entry(entry)) for entry in entries]


@router.get("/browse", response_model=BrowseResponse)
async def browse_partners(
    limit: int = Query(default=24, ge=1, le=50),
    cursor: str | None = Query(default=None),
    exclude: str | None = Query(default=None),
    service: ListingService = Depends(get_listing_service),
) -> BrowseResponse:
    excluded = [int(part) for part in (exclude or "").split(",") if part.strip().isdigit()]
    ads, next_cursor = await service.browse(limit=limit, cursor=cursor, exclude=excluded)
    return BrowseResponse(
        items=[PublicAdResponse.model_validate(serialize_public_ad(ad)) for ad in ads],
        next_cursor=next_cursor,
    )


@router.get("/my-ad", response_model=AdResponse)
async def get_my_ad(
    principal: Principal = Depends(get_principal),
    service: AdService = Depends(get_ad_service),
) -> AdResponse:
    ad = await service.get_own(principal)
    if ad is None:
        raise NotFound("You have not submitted an advertisement yet.")
    return AdResponse.model_validate(serialize_ad(ad))


@router.post("/my-ad", response_model=AdResponse)
async def submit_my_ad(
    payload: AdDraft,
    principal: Principal = Depends(get_principal),
    service: AdService = Depends(get_ad_service),
) -> AdResponse:
    ad = await service.submit(principal, payload.model_dump())
    return AdResponse.model_validate(serialize_ad(ad))


@router.patch("/my-ad", response_model=AdResponse)
async def edit_my_ad(
    payload: AdPatch,
    principal: Principal = Depends(get_principal),
    service: AdService = Depends(get_ad_service),
) -> AdResponse:
    ad = await service.edit(principal, payload.model_dump(exclude_unset=True))
    return AdResponse.model_validate(serialize_ad(ad))


@router.get("/my-bookings", response_model=BookingListResponse)
async def list_my_bookings(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    repository: PartnerRepository = Depends(get_repository),
) -> BookingListResponse:
    bookings, total = await repository.list_bookings(user_id=principal.user_id, limit=limit, offset=offset)
    items = [BookingResponse.model_validate(serialize_booking(booking)) for booking in bookings]
    return BookingListResponse(items=items, total=total)


@router.delete("/my-bookings/{booking_id}")
async def delete_my_booking(
    booking_id: int,
    principal: Principal = Depends(get_principal),
    service: BookingAdminService = Depends(get_booking_admin),
) -> Response:
    await service.delete_record(booking_id, actor=principal, own_only=True)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
