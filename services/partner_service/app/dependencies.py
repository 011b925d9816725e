"""Dependency helpers for the partner service."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import timedelta

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .ads import AdService
from .availability import AvailabilityResolver
from .checkout import CheckoutService
from .clock import Clock
from .errors import PermissionDenied, Unauthenticated
from .events import PartnerEventPublisher
from .lifecycle import BookingLifecycle
from .listing import ListingService
from .principal import Capability, Principal, Role
from .processors import ProcessorRegistry
from .repository import PartnerRepository
from .review import AdReviewService, BookingAdminService
from .settings_store import PartnerSettingsStore
from .sweep import BookingSweeper


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> PartnerRepository:
    return PartnerRepository(session)


def get_service_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_processors(request: Request) -> ProcessorRegistry:
    return request.app.state.processors


def _grace(settings: ServiceSettings) -> timedelta:
    return timedelta(minutes=settings.partner_pending_grace_minutes)


def _publisher(request: Request) -> PartnerEventPublisher | None:
    return getattr(request.app.state, "event_publisher", None)


def get_settings_store(request: Request, repository: PartnerRepository = Depends(get_repository)) -> PartnerSettingsStore:
    return PartnerSettingsStore(
        repository,
        settings=get_service_settings(request),
        redis=getattr(request.app.state, "redis", None),
        clock=get_clock(request),
    )


def get_lifecycle(request: Request, repository: PartnerRepository = Depends(get_repository)) -> BookingLifecycle:
    return BookingLifecycle(
        repository,
        grace=_grace(get_service_settings(request)),
        clock=get_clock(request),
        publisher=_publisher(request),
    )


def get_availability(
    request: Request,
    repository: PartnerRepository = Depends(get_repository),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> AvailabilityResolver:
    return AvailabilityResolver(
        repository, store, grace=_grace(get_service_settings(request)), clock=get_clock(request)
    )


def get_checkout_service(
    request: Request,
    repository: PartnerRepository = Depends(get_repository),
    store: PartnerSettingsStore = Depends(get_settings_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> CheckoutService:
    return CheckoutService(
        repository,
        store=store,
        lifecycle=lifecycle,
        processors=get_processors(request),
        settings=get_service_settings(request),
        clock=get_clock(request),
    )


def get_listing_service(
    request: Request,
    repository: PartnerRepository = Depends(get_repository),
    store: PartnerSettingsStore = Depends(get_settings_store),
) -> ListingService:
    return ListingService(repository, store, clock=get_clock(request))


def get_ad_service(request: Request, repository: PartnerRepository = Depends(get_repository)) -> AdService:
    return AdService(repository, clock=get_clock(request))


def get_review_service(
    request: Request,
    repository: PartnerRepository = Depends(get_repository),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> AdReviewService:
    return AdReviewService(repository, lifecycle=lifecycle, clock=get_clock(request), publisher=_publisher(request))


def get_booking_admin(
    repository: PartnerRepository = Depends(get_repository),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
) -> BookingAdminService:
    return BookingAdminService(repository, lifecycle=lifecycle)


def get_sweeper(request: Request) -> BookingSweeper:
    return BookingSweeper(
        request.app.state.session_factory,
        grace=_grace(get_service_settings(request)),
        processors=get_processors(request),
        clock=get_clock(request),
        publisher=_publisher(request),
    )


def get_principal(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
    role: str | None = Header(default=None, alias="X-User-Role"),
    username: str | None = Header(default=None, alias="X-User-Name"),
) -> Principal:
    """Identity asserted by the upstream gateway."""

    cleaned = (user_id or "").strip()
    if not cleaned:
        raise Unauthenticated("Sign in to continue.")
    try:
        resolved_role = Role((role or Role.USER.value).strip().upper())
    except ValueError as exc:
        raise Unauthenticated("Unknown role.") from exc
    return Principal(user_id=cleaned, role=resolved_role, username=(username or "").strip() or None)


def require_capability(capability: Capability) -> Callable[..., Principal]:
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.can(capability):
            raise PermissionDenied("You do not have permission to perform this action.")
        return principal

    return dependency
