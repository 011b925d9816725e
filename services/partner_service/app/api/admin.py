"""Administrative endpoints of the partner marketplace."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status

from ..constants import OVERRIDES_SETTINGS_KEY, PRICING_SETTINGS_KEY, AdStatus, BookingStatus
from ..dependencies import (
    get_booking_admin,
    get_repository,
    get_review_service,
    get_settings_store,
    get_sweeper,
    require_capability,
)
from ..pricing import PriceMatrix, unpriced_cells
from ..principal import Capability, Principal
from ..repository import PartnerRepository
from ..review import AdReviewService, BookingAdminService
from ..schemas import (
    AdDecisionRequest,
    AdDecisionResponse,
    AdDeleteResponse,
    AdDraft,
    AdResponse,
    BookingListResponse,
    BookingResponse,
    ForceCancelRequest,
    OverridesResponse,
    OverridesUpdate,
    PricingResponse,
    PricingUpdate,
    SettingChangeResponse,
    SweepResponse,
)
from ..settings_store import PartnerSettingsStore
from ..sweep import BookingSweeper
from .serializers import serialize_ad, serialize_booking

router = APIRouter(prefix="/admin/partner", tags=["partner-admin"])

_HISTORY_KEYS = {"pricing": PRICING_SETTINGS_KEY, "overrides": OVERRIDES_SETTINGS_KEY}


def _pricing_response(matrix: PriceMatrix) -> PricingResponse:
    return PricingResponse(
        currency=matrix.currency,
        max_days=matrix.max_days,
        totals=[list(row) for row in matrix.totals],
        unpriced=[{"slot": slot, "days": days} for slot, days in unpriced_cells(matrix)],
    )


@router.get("/pricing", response_model=PricingResponse)
async def get_pricing(
    _: Principal = Depends(require_capability(Capability.EDIT_PRICING)),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> PricingResponse:
    return _pricing_response(await store.load_matrix())


@router.put("/pricing", response_model=PricingResponse)
async def replace_pricing(
    payload: PricingUpdate,
    principal: Principal = Depends(require_capability(Capability.EDIT_PRICING)),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> PricingResponse:
    matrix = await store.save_matrix(payload.totals, currency=payload.currency, actor=principal.user_id)
    return _pricing_response(matrix)


@router.get("/overrides", response_model=OverridesResponse)
async def get_overrides(
    _: Principal = Depends(require_capability(Capability.OVERRIDE_SLOTS)),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> OverridesResponse:
    return OverridesResponse(slots=await store.load_overrides())


@router.put("/overrides", response_model=OverridesResponse)
async def replace_overrides(
    payload: OverridesUpdate,
    principal: Principal = Depends(require_capability(Capability.OVERRIDE_SLOTS)),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> OverridesResponse:
    return OverridesResponse(slots=await store.save_overrides(payload.slots, actor=principal.user_id))


@router.get("/settings/history", response_model=list[SettingChangeResponse])
async def settings_history(
    record: Literal["pricing", "overrides"] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    _: Principal = Depends(require_capability(Capability.EDIT_PRICING)),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> list[SettingChangeResponse]:
    key = _HISTORY_KEYS[record] if record is not None else None
    return [SettingChangeResponse.model_validate(change) for change in await store.history(key, limit=limit)]


@router.get("/ads", response_model=list[AdResponse])
async def list_ads(
    status_filter: AdStatus | None = Query(default=None, alias="status"),
    _: Principal = Depends(require_capability(Capability.DECIDE_ADS)),
    repository: PartnerRepository = Depends(get_repository),
) -> list[AdResponse]:
    ads = await repository.list_ads(status=status_filter.value if status_filter else None)
    return [AdResponse.model_validate(serialize_ad(ad)) for ad in ads]


@router.post("/ads", response_model=AdResponse, status_code=status.HTTP_201_CREATED)
async def create_system_ad(
    payload: AdDraft,
    principal: Principal = Depends(require_capability(Capability.CREATE_SYSTEM_ADS)),
    service: AdReviewService = Depends(get_review_service),
) -> AdResponse:
    ad = await service.create_system_ad(payload.model_dump(), actor=principal)
    return AdResponse.model_validate(serialize_ad(ad))


@router.patch("/ads/{ad_id}", response_model=AdDecisionResponse)
async def decide_ad(
    ad_id: int,
    payload: AdDecisionRequest,
    principal: Principal = Depends(require_capability(Capability.DECIDE_ADS)),
    service: AdReviewService = Depends(get_review_service),
) -> AdDecisionResponse:
    outcome = await service.decide(ad_id, payload.action, actor=principal, reason=payload.reason)
    return AdDecisionResponse(
        ad=AdResponse.model_validate(serialize_ad(outcome.ad)),
        activated_booking_id=outcome.activated_booking_id,
        canceled_booking_ids=outcome.canceled_booking_ids,
    )


@router.delete("/ads/{ad_id}", response_model=AdDeleteResponse)
async def delete_ad(
    ad_id: int,
    principal: Principal = Depends(require_capability(Capability.DECIDE_ADS)),
    service: AdReviewService = Depends(get_review_service),
) -> AdDeleteResponse:
    canceled = await service.delete_ad(ad_id, actor=principal)
    return AdDeleteResponse(id=ad_id, canceled_booking_ids=canceled)


@router.get("/bookings", response_model=BookingListResponse)
async def list_bookings(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_filter: BookingStatus | None = Query(default=None, alias="status"),
    _: Principal = Depends(require_capability(Capability.VIEW_BOOKINGS)),
    repository: PartnerRepository = Depends(get_repository),
) -> BookingListResponse:
    bookings, total = await repository.list_bookings(
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    items = [BookingResponse.model_validate(serialize_booking(booking)) for booking in bookings]
    return BookingListResponse(items=items, total=total)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def force_cancel_booking(
    booking_id: int,
    payload: ForceCancelRequest | None = None,
    principal: Principal = Depends(require_capability(Capability.FORCE_CANCEL)),
    service: BookingAdminService = Depends(get_booking_admin),
) -> BookingResponse:
    booking, _ = await service.force_cancel(
        booking_id, actor=principal, reason=payload.reason if payload is not None else None
    )
    return BookingResponse.model_validate(serialize_booking(booking))


@router.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: int,
    principal: Principal = Depends(require_capability(Capability.FORCE_CANCEL)),
    service: BookingAdminService = Depends(get_booking_admin),
) -> Response:
    await service.delete_record(booking_id, actor=principal, own_only=False)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    _: Principal = Depends(require_capability(Capability.RUN_SWEEP)),
    sweeper: BookingSweeper = Depends(get_sweeper),
) -> SweepResponse:
    report = await sweeper.run()
    return SweepResponse.model_validate(report.as_dict())
