"""Event publishing helpers for the partner service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.common.kafka import KafkaProducerStub

from .clock import iso
from .models import PartnerAd, PartnerBooking


class PartnerEventPublisher:
    """Publishes booking lifecycle and ad review events."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any], *, key: str) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(topic, envelope, key=key)

    async def booking_transitioned(self, booking: PartnerBooking, transition: str) -> None:
        await self._emit(
            f"partner.booking.{transition}.v1",
            {"booking": self._serialize_booking(booking)},
            key=f"booking-{booking.id}",
        )

    async def ad_reviewed(self, ad: PartnerAd, *, decision: str, actor: str) -> None:
        await self._emit(
            "partner.ad.reviewed.v1",
            {
                "adId": ad.id,
                "userId": ad.user_id,
                "status": ad.status,
                "decision": decision,
                "reason": ad.rejection_reason,
                "actor": actor,
            },
            key=f"ad-{ad.id}",
        )

    def _serialize_booking(self, booking: PartnerBooking) -> dict[str, Any]:
        return {
            "id": booking.id,
            "adId": booking.ad_id,
            "userId": booking.user_id,
            "slot": booking.slot,
            "days": booking.days,
            "status": booking.status,
            "provider": booking.provider,
            "totalCents": booking.total_cents,
            "currency": booking.currency,
            "paidAt": iso(booking.paid_at),
            "startsAt": iso(booking.starts_at),
            "endsAt": iso(booking.ends_at),
        }
