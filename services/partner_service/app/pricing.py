"""Price grid handling: validation, storage format and quote resolution.

The grid holds one row per slot and one column per lease length, each cell
being the total price of leasing that slot for that many days. Cells that are
zero or missing are unsellable.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .constants import PARTNER_SLOTS, DurationKind
from .errors import ConfigurationError, InvalidParameter, ValidationError

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int((amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(value: int) -> Decimal:
    return (Decimal(value) / Decimal("100")).quantize(_CENT)


@dataclass(frozen=True)
class PriceMatrix:
    currency: str
    max_days: int
    totals: tuple[tuple[Decimal | None, ...], ...]

    def cell(self, slot: int, days: int) -> Decimal | None:
        if slot > len(self.totals):
            return None
        row = self.totals[slot - 1]
        if days > len(row):
            return None
        return row[days - 1]

    def to_record(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "totals": [[str(cell) if cell is not None else None for cell in row] for row in self.totals],
        }


@dataclass(frozen=True)
class PriceQuote:
    slot: int
    days: int
    total: Decimal
    currency: str

    @property
    def daily(self) -> Decimal:
        return quantize(self.total / self.days)

    @property
    def total_cents(self) -> int:
        return to_cents(self.total)


def _coerce(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_totals(rows: Sequence[Sequence[Any]], *, max_days: int) -> tuple[tuple[Decimal, ...], ...]:
    """Validate an admin-supplied grid and return it with amounts rounded to cents.

    Zero marks a combination that is not for sale; the other totals of a row
    must not decrease as the lease gets longer.
    """

    if len(rows) != PARTNER_SLOTS:
        raise ValidationError(f"Expected {PARTNER_SLOTS} rows of prices, got {len(rows)}.")
    validated: list[tuple[Decimal, ...]] = []
    for index, row in enumerate(rows, start=1):
        if len(row) != max_days:
            raise ValidationError(f"Slot #{index} must have {max_days} prices, got {len(row)}.")
        cells: list[Decimal] = []
        previous = _ZERO
        for day, raw in enumerate(row, start=1):
            amount = _coerce(raw)
            if amount is None:
                raise ValidationError(f"Slot #{index}, {day} day(s): price is not a number.")
            if amount < _ZERO:
                raise ValidationError(f"Slot #{index}, {day} day(s): price must not be negative.")
            amount = quantize(amount)
            if amount == _ZERO:
                cells.append(amount)
                continue
            if amount < previous:
                raise ValidationError(
                    f"Slot #{index}, {day} day(s): total {amount} is lower than the {day - 1} day total {previous}."
                )
            previous = amount
            cells.append(amount)
        validated.append(tuple(cells))
    return tuple(validated)


def build_matrix(rows: Sequence[Sequence[Any]], *, currency: str, max_days: int) -> PriceMatrix:
    return PriceMatrix(currency=currency.upper(), max_days=max_days, totals=validate_totals(rows, max_days=max_days))


def matrix_from_daily_prices(daily: Sequence[Any], *, currency: str, max_days: int) -> PriceMatrix:
    """Derive a grid where each slot costs ``daily * days``."""

    prices = [_coerce(value) for value in daily]
    if len(prices) != PARTNER_SLOTS or any(price is None or price < _ZERO for price in prices):
        raise ConfigurationError(f"Daily partner prices must list {PARTNER_SLOTS} non-negative amounts.")
    totals = tuple(
        tuple(quantize(price * day) for day in range(1, max_days + 1))  # type: ignore[operator]
        for price in prices
    )
    return PriceMatrix(currency=currency.upper(), max_days=max_days, totals=totals)


def matrix_from_record(record: dict[str, Any], *, currency: str, max_days: int) -> PriceMatrix:
    """Parse a stored grid leniently; unreadable cells become unsellable."""

    stored_currency = str(record.get("currency") or currency).upper()
    raw_totals = record.get("totals")
    if not isinstance(raw_totals, list) and isinstance(record.get("dailyPrices"), list):
        return matrix_from_daily_prices(record["dailyPrices"], currency=stored_currency, max_days=max_days)
    rows: list[tuple[Decimal | None, ...]] = []
    for index in range(PARTNER_SLOTS):
        raw_row = raw_totals[index] if isinstance(raw_totals, list) and index < len(raw_totals) else []
        if not isinstance(raw_row, list):
            raw_row = []
        cells: list[Decimal | None] = []
        for day in range(max_days):
            amount = _coerce(raw_row[day]) if day < len(raw_row) else None
            cells.append(quantize(amount) if amount is not None and amount >= _ZERO else None)
        rows.append(tuple(cells))
    return PriceMatrix(currency=stored_currency, max_days=max_days, totals=tuple(rows))


def normalize_days(kind: DurationKind | str, days: int | None, *, max_days: int) -> int:
    """Resolve the lease length for a duration kind."""

    try:
        resolved_kind = DurationKind(kind)
    except ValueError as exc:
        raise InvalidParameter(f"Unknown duration kind {kind!r}.") from exc
    if resolved_kind is DurationKind.MONTHLY:
        return max_days
    if days is None:
        raise InvalidParameter("A custom lease needs a number of days.")
    if days < 1 or days > max_days:
        raise InvalidParameter(f"Days must be between 1 and {max_days}.")
    return days


def price_for(matrix: PriceMatrix, slot: int, days: int) -> PriceQuote:
    if slot < 1 or slot > PARTNER_SLOTS:
        raise InvalidParameter(f"Slot must be between 1 and {PARTNER_SLOTS}.")
    if days < 1 or days > matrix.max_days:
        raise InvalidParameter(f"Days must be between 1 and {matrix.max_days}.")
    total = matrix.cell(slot, days)
    if total is None or total <= _ZERO:
        raise ConfigurationError(f"No price configured for slot #{slot} and {days} day(s).")
    return PriceQuote(slot=slot, days=days, total=total, currency=matrix.currency)


def unpriced_cells(matrix: PriceMatrix) -> list[tuple[int, int]]:
    """Return ``(slot, days)`` pairs that cannot be sold."""

    missing: list[tuple[int, int]] = []
    for slot in range(1, PARTNER_SLOTS + 1):
        for days in range(1, matrix.max_days + 1):
            cell = matrix.cell(slot, days)
            if cell is None or cell <= _ZERO:
                missing.append((slot, days))
    return missing
