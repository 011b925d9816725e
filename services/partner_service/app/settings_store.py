"""Storage for whole-record settings: the price grid and slot overrides.

Records live in ``partner_settings`` as JSON and are replaced whole on write.
Reads go through a short-lived Redis copy when Redis is configured.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

from services.common import ServiceSettings
from services.common.cache import delete_key, read_json, write_json

from .clock import Clock, as_utc, utcnow
from .constants import OVERRIDES_SETTINGS_KEY, PRICING_SETTINGS_KEY, AdStatus
from .errors import ConfigurationError, ValidationError
from .metrics import PARTNER_SETTINGS_CACHE_TOTAL
from .overrides import normalize_overrides, parse_override_ids
from .pricing import PriceMatrix, build_matrix, matrix_from_daily_prices, matrix_from_record
from .repository import PartnerRepository

_LOGGER = logging.getLogger(__name__)
_CACHE_PREFIX = "partner:settings:"


class PartnerSettingsStore:
    def __init__(
        self,
        repository: PartnerRepository,
        *,
        settings: ServiceSettings,
        redis: Any | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.redis = redis
        self.clock = clock

    @property
    def max_days(self) -> int:
        return self.settings.partner_max_days

    async def _read(self, key: str) -> dict[str, Any] | None:
        ttl = self.settings.partner_settings_cache_ttl_seconds
        cache_key = f"{_CACHE_PREFIX}{key}"
        if self.redis is not None and ttl > 0:
            cached = await read_json(self.redis, cache_key)
            if isinstance(cached, dict):
                PARTNER_SETTINGS_CACHE_TOTAL.labels(key=key, result="hit").inc()
                return cached.get("value")
            PARTNER_SETTINGS_CACHE_TOTAL.labels(key=key, result="miss").inc()

        record = await self.repository.get_setting(key)
        value: dict[str, Any] | None = None
        if record is not None:
            try:
                decoded = json.loads(record.value)
            except json.JSONDecodeError:
                _LOGGER.error("Settings record %s is not valid JSON; ignoring it", key)
            else:
                value = decoded if isinstance(decoded, dict) else None

        if self.redis is not None and ttl > 0:
            # Absent records are cached too so the default is not recomputed per request.
            await write_json(self.redis, cache_key, {"value": value}, ttl_seconds=ttl)
        return value

    async def _write(self, key: str, value: dict[str, Any], *, actor: str | None) -> None:
        encoded, now = json.dumps(value), self.clock()
        await self.repository.put_setting(key, encoded, updated_by=actor, now=now)
        await self.repository.add_setting_change(key, encoded, actor=actor, now=now)
        if self.redis is not None:
            await delete_key(self.redis, f"{_CACHE_PREFIX}{key}")
        _LOGGER.info("Settings record %s replaced by %s", key, actor or "system")

    def default_matrix(self) -> PriceMatrix:
        daily = self.settings.partner_default_daily_prices
        if not daily:
            raise ConfigurationError("Partner pricing has not been configured.")
        return matrix_from_daily_prices(daily, currency=self.settings.partner_currency, max_days=self.max_days)

    async def load_matrix(self) -> PriceMatrix:
        record = await self._read(PRICING_SETTINGS_KEY)
        if record is None:
            return self.default_matrix()
        return matrix_from_record(record, currency=self.settings.partner_currency, max_days=self.max_days)

    async def save_matrix(
        self,
        totals: Sequence[Sequence[Any]],
        *,
        currency: str | None = None,
        actor: str | None = None,
    ) -> PriceMatrix:
        matrix = build_matrix(totals, currency=currency or self.settings.partner_currency, max_days=self.max_days)
        await self._write(PRICING_SETTINGS_KEY, matrix.to_record(), actor=actor)
        return matrix

    async def load_overrides(self) -> list[str]:
        record = await self._read(OVERRIDES_SETTINGS_KEY)
        if record is None:
            return normalize_overrides([])
        return normalize_overrides(record.get("slots"))

    async def save_overrides(self, raw: Sequence[Any], *, actor: str | None = None) -> list[str]:
        overrides = normalize_overrides(raw)
        bound = parse_override_ids(overrides)
        ads = await self.repository.get_ads(bound.values())
        for slot, ad_id in bound.items():
            ad = ads.get(ad_id)
            if ad is None:
                raise ValidationError(f"Override for slot #{slot} references unknown advertisement {ad_id}.")
            if ad.status != AdStatus.APPROVED.value:
                raise ValidationError(f"Override for slot #{slot} references advertisement {ad_id} which is not approved.")
        await self._write(OVERRIDES_SETTINGS_KEY, {"slots": overrides}, actor=actor)
        return overrides

    async def history(self, key: str | None = None, *, limit: int = 50) -> list[dict[str, Any]]:
        """Past replacements of the settings records, newest first."""

        changes = await self.repository.list_setting_changes(key=key, limit=limit)
        return [
            {
                "id": change.id,
                "key": change.key,
                "actor": change.actor,
                "value": json.loads(change.value),
                "changedAt": as_utc(change.created_at),
            }
            for change in changes
        ]
