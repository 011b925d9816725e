"""Manual slot bindings set by the owner."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .constants import PARTNER_SLOTS
from .errors import InvalidParameter, ValidationError


def normalize_overrides(raw: Sequence[Any] | None) -> list[str]:
    """Pad or trim to one trimmed entry per slot; empty string means no override."""

    values = list(raw or [])[:PARTNER_SLOTS]
    normalized = ["" if value is None else str(value).strip() for value in values]
    normalized.extend([""] * (PARTNER_SLOTS - len(normalized)))
    return normalized


def parse_override_ids(overrides: Sequence[str]) -> dict[int, int]:
    """Return ``{slot: ad_id}`` for every set entry, rejecting non-numeric ids."""

    bound: dict[int, int] = {}
    for slot, value in enumerate(normalize_overrides(overrides), start=1):
        if not value:
            continue
        try:
            bound[slot] = int(value)
        except ValueError as exc:
            raise ValidationError(f"Override for slot #{slot} is not a valid advertisement id.") from exc
    return bound


def resolve_slot(overrides: Sequence[str], slot: int) -> str | None:
    """Return the advertisement id bound to ``slot`` or None."""

    if slot < 1 or slot > PARTNER_SLOTS:
        raise InvalidParameter(f"Slot must be between 1 and {PARTNER_SLOTS}.")
    value = normalize_overrides(overrides)[slot - 1]
    return value or None


def overridden_slots(overrides: Sequence[str]) -> set[int]:
    return {slot for slot, value in enumerate(normalize_overrides(overrides), start=1) if value}
