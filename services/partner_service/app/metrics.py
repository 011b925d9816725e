"""Prometheus metrics for the partner service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

_CHECKOUT_OUTCOMES: Final = (
    "started",
    "slot_unavailable",
    "ad_conflict",
    "unpriced",
    "payment_error",
    "invalid",
)

# Checkout -------------------------------------------------------------------------------
PARTNER_CHECKOUT_TOTAL: Final = Counter(
    "partner_checkout_total",
    "Checkout attempts by provider and outcome.",
    labelnames=("provider", "outcome"),
)

PARTNER_PAYMENT_CONFIRMATIONS_TOTAL: Final = Counter(
    "partner_payment_confirmations_total",
    "Payment confirmations handled, including idempotent repeats.",
    labelnames=("provider", "result"),
)

PARTNER_PAYMENT_ERRORS_TOTAL: Final = Counter(
    "partner_payment_errors_total",
    "Payment processor failures by provider and operation.",
    labelnames=("provider", "operation"),
)

PARTNER_PROCESSOR_LATENCY_SECONDS: Final = Histogram(
    "partner_processor_latency_seconds",
    "Time spent waiting on payment processors.",
    labelnames=("provider", "operation"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

# Booking lifecycle ----------------------------------------------------------------------
PARTNER_BOOKING_TRANSITIONS_TOTAL: Final = Counter(
    "partner_booking_transitions_total",
    "Booking state transitions applied by conditional updates.",
    labelnames=("transition",),
)

PARTNER_AD_DECISIONS_TOTAL: Final = Counter(
    "partner_ad_decisions_total",
    "Advertisement review decisions.",
    labelnames=("decision",),
)

# Sweep ----------------------------------------------------------------------------------
PARTNER_SWEEP_RESULTS_TOTAL: Final = Counter(
    "partner_sweep_results_total",
    "Bookings transitioned by the background sweep.",
    labelnames=("result",),
)

PARTNER_SWEEP_FAILURES_TOTAL: Final = Counter(
    "partner_sweep_failures_total",
    "Bookings the sweep failed to process.",
)

# Settings cache -------------------------------------------------------------------------
PARTNER_SETTINGS_CACHE_TOTAL: Final = Counter(
    "partner_settings_cache_total",
    "Settings record cache lookups.",
    labelnames=("key", "result"),
)


def normalise_checkout_outcome(raw: str) -> str:
    """Return a bounded label value for checkout outcome counters."""

    outcome = (raw or "").strip().lower()
    if outcome not in _CHECKOUT_OUTCOMES:
        return "invalid"
    return outcome
