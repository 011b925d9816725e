"""Read-only availability quotes for the ten slots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from .clock import Clock, utcnow
from .constants import DurationKind, slot_range
from .errors import ConfigurationError
from .overrides import overridden_slots
from .pricing import normalize_days, price_for
from .repository import PartnerRepository
from .settings_store import PartnerSettingsStore


@dataclass(frozen=True)
class SlotQuote:
    slot: int
    available: bool
    total_price: Decimal | None
    currency: str
    days: int

    @property
    def sellable(self) -> bool:
        return self.total_price is not None


def compose_quotes(
    *,
    held: set[int],
    overridden: set[int],
    prices: dict[int, Decimal | None],
    currency: str,
    days: int,
) -> list[SlotQuote]:
    return [
        SlotQuote(
            slot=slot,
            available=slot not in held and slot not in overridden,
            total_price=prices.get(slot),
            currency=currency,
            days=days,
        )
        for slot in slot_range()
    ]


class AvailabilityResolver:
    """Answers which slots can be bought right now and at what price."""

    def __init__(
        self,
        repository: PartnerRepository,
        store: PartnerSettingsStore,
        *,
        grace: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.store = store
        self.grace = grace
        self.clock = clock

    async def held_slots(self, now: datetime | None = None) -> set[int]:
        current = now or self.clock()
        return await self.repository.held_slots(now=current, grace_cutoff=current - self.grace)

    async def quote(self, kind: DurationKind | str, days: int | None) -> list[SlotQuote]:
        lease_days = normalize_days(kind, days, max_days=self.store.max_days)
        matrix = await self.store.load_matrix()
        overrides = await self.store.load_overrides()
        held = await self.held_slots()

        prices: dict[int, Decimal | None] = {}
        for slot in slot_range():
            try:
                prices[slot] = price_for(matrix, slot, lease_days).total
            except ConfigurationError:
                prices[slot] = None
        return compose_quotes(
            held=held,
            overridden=overridden_slots(overrides),
            prices=prices,
            currency=matrix.currency,
            days=lease_days,
        )
