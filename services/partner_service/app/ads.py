"""Owner-side advertisement handling."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .clock import Clock, utcnow
from .constants import AdStatus
from .errors import NotFound, StateConflict
from .models import PartnerAd
from .principal import Principal
from .repository import PartnerRepository

_LOGGER = logging.getLogger(__name__)

AD_CONTENT_FIELDS = ("server_name", "address", "version", "description", "website", "discord", "banner")


def ad_content(draft: Mapping[str, Any]) -> dict[str, Any]:
    """Pick the content fields of a draft; optional ones default to empty."""

    return {name: (draft.get(name) or "") for name in AD_CONTENT_FIELDS}


def content_changed(ad: PartnerAd, content: Mapping[str, Any]) -> bool:
    return any((getattr(ad, name) or "") != content[name] for name in AD_CONTENT_FIELDS)


class AdService:
    def __init__(self, repository: PartnerRepository, *, clock: Clock = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    async def get_own(self, principal: Principal) -> PartnerAd | None:
        return await self.repository.get_ad_for_user(principal.user_id)

    async def submit(self, principal: Principal, draft: Mapping[str, Any]) -> PartnerAd:
        """Create or replace the caller's advertisement.

        An approved ad resubmitted unchanged stays approved; any change sends it
        back to review.
        """

        content = ad_content(draft)
        note = draft.get("submission_note")
        now = self.clock()
        existing = await self.repository.get_ad_for_user(principal.user_id)
        if existing is None:
            ad = await self.repository.create_ad(
                user_id=principal.user_id,
                owner_username=principal.username,
                content={**content, "submission_note": note},
                status=AdStatus.PENDING_REVIEW.value,
                now=now,
            )
            _LOGGER.info("Advertisement %s submitted by %s", ad.id, principal.user_id)
            return ad

        keep_approved = existing.status == AdStatus.APPROVED.value and not content_changed(existing, content)
        status = AdStatus.APPROVED.value if keep_approved else AdStatus.PENDING_REVIEW.value
        if note is not None:
            content["submission_note"] = note
        return await self.repository.update_ad(
            existing,
            content=content,
            status=status,
            now=now,
            owner_username=principal.username,
        )

    async def edit(self, principal: Principal, changes: Mapping[str, Any]) -> PartnerAd:
        """Apply a partial edit; only ads that are not approved can be edited."""

        ad = await self.repository.get_ad_for_user(principal.user_id)
        if ad is None:
            raise NotFound("You have not submitted an advertisement yet.")
        if ad.status == AdStatus.APPROVED.value:
            raise StateConflict("Approved advertisements cannot be edited.")
        content = {
            name: (changes[name] or "") for name in AD_CONTENT_FIELDS if name in changes
        }
        if "submission_note" in changes:
            content["submission_note"] = changes["submission_note"]
        return await self.repository.update_ad(
            ad,
            content=content,
            status=AdStatus.PENDING_REVIEW.value,
            now=self.clock(),
            owner_username=principal.username,
        )
