from __future__ import annotations

from ..clock import as_utc
from ..listing import ListingEntry
from ..models import PartnerAd, PartnerBooking
from ..pricing import from_cents


def serialize_ad(ad: PartnerAd) -> dict[str, object]:
    return {
        "id": ad.id,
        "userId": ad.user_id,
        "ownerUsername": ad.owner_username,
        "serverName": ad.server_name,
        "address": ad.address,
        "version": ad.version,
        "description": ad.description,
        "website": ad.website,
        "discord": ad.discord,
        "banner": ad.banner,
        "status": ad.status,
        "rejectionReason": ad.rejection_reason,
        "submissionNote": ad.submission_note,
        "createdAt": as_utc(ad.created_at),
        "updatedAt": as_utc(ad.updated_at),
    }


def serialize_public_ad(ad: PartnerAd) -> dict[str, object]:
    return {
        "id": ad.id,
        "ownerUsername": ad.owner_username,
        "serverName": ad.server_name,
        "address": ad.address,
        "version": ad.version,
        "description": ad.description,
        "website": ad.website,
        "discord": ad.discord,
        "banner": ad.banner,
    }


def serialize_booking(booking: PartnerBooking) -> dict[str, object]:
    return {
        "id": booking.id,
        "adId": booking.ad_id,
        "userId": booking.user_id,
        "slot": booking.slot,
        "kind": booking.kind,
        "days": booking.days,
        "total": from_cents(booking.total_cents),
        "currency": booking.currency,
        "provider": booking.provider,
        "providerStatus": booking.provider_status,
        "status": booking.status,
        "paidAt": as_utc(booking.paid_at),
        "startsAt": as_utc(booking.starts_at),
        "endsAt": as_utc(booking.ends_at),
        "canceledReason": booking.canceled_reason,
        "cancelCause": booking.cancel_cause,
        "refundedAt": as_utc(booking.refunded_at),
        "createdAt": as_utc(booking.created_at),
        "updatedAt": as_utc(booking.updated_at),
    }


def serialize_listing_entry(entry: ListingEntry) -> dict[str, object]:
    return {
        "slot": entry.slot,
        "source": entry.source,
        "ad": serialize_public_ad(entry.ad) if entry.ad is not None else None,
        "endsAt": entry.ends_at,
    }
