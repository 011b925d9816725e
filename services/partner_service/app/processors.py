"""Payment processor implementations used by the checkout flow.

All processors expose the same four operations so the booking state machine
never needs to know which one took the money.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, TypeVar

import httpx
import stripe

from services.common import ServiceSettings
from services.common.tracing import outbound_span

from .errors import InvalidParameter, PaymentError, Unauthenticated
from .metrics import PARTNER_PAYMENT_ERRORS_TOTAL, PARTNER_PROCESSOR_LATENCY_SECONDS
from .pricing import quantize, to_cents

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    session_id: str
    redirect_url: str
    status: str


@dataclass(frozen=True, slots=True)
class CaptureResult:
    paid: bool
    status: str
    capture_id: str | None = None


class PaymentProcessor(Protocol):
    name: str

    async def create_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    async def confirm_capture(self, session_id: str) -> CaptureResult: ...

    async def cancel_session(self, session_id: str) -> None: ...

    async def refund(self, capture_id: str, *, amount: Decimal, currency: str) -> None: ...


def payment_failure(provider: str, operation: str, message: str) -> PaymentError:
    PARTNER_PAYMENT_ERRORS_TOTAL.labels(provider=provider, operation=operation).inc()
    _LOGGER.warning("%s %s failed: %s", provider, operation, message)
    return PaymentError(message, provider=provider, operation=operation)


async def _timed(provider: str, operation: str, call: Awaitable[T], *, timeout: float) -> T:
    started = time.perf_counter()
    try:
        with outbound_span(f"payment.{operation}", **{"payment.provider": provider}):
            return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise payment_failure(provider, operation, f"{provider} did not respond in time") from exc
    finally:
        PARTNER_PROCESSOR_LATENCY_SECONDS.labels(provider=provider, operation=operation).observe(
            time.perf_counter() - started
        )


class StripeProcessor:
    """Stripe Checkout Sessions through the official SDK.

    The SDK is synchronous, so every call runs in a worker thread.
    """

    name = "stripe"

    def __init__(self, secret_key: str, *, timeout: float = 10.0) -> None:
        self._secret_key = secret_key
        self._timeout = timeout

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await _timed(
                self.name,
                operation,
                asyncio.to_thread(func, *args, api_key=self._secret_key, **kwargs),
                timeout=self._timeout,
            )
        except stripe.StripeError as exc:
            raise payment_failure(self.name, operation, exc.user_message or str(exc)) from exc

    async def create_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        separator = "&" if "?" in return_url else "?"
        session = await self._call(
            "create_session",
            stripe.checkout.Session.create,
            mode="payment",
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": to_cents(amount),
                        "product_data": {"name": description},
                    },
                }
            ],
            client_reference_id=reference,
            metadata={"booking_id": reference},
            payment_intent_data={"metadata": {"booking_id": reference}},
            success_url=f"{return_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
        )
        if not session.get("url"):
            raise payment_failure(self.name, "create_session", "Stripe did not return a checkout URL")
        return CheckoutSession(session_id=session["id"], redirect_url=session["url"], status=str(session.get("status") or ""))

    async def confirm_capture(self, session_id: str) -> CaptureResult:
        session = await self._call(
            "confirm_capture",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent"],
        )
        payment_status = str(session.get("payment_status") or "").lower()
        intent = session.get("payment_intent")
        intent_id = intent if isinstance(intent, str) else (intent.get("id") if intent else None)
        return CaptureResult(paid=payment_status == "paid", status=payment_status, capture_id=intent_id)

    async def cancel_session(self, session_id: str) -> None:
        await self._call("cancel_session", stripe.checkout.Session.expire, session_id)

    async def refund(self, capture_id: str, *, amount: Decimal, currency: str) -> None:
        await self._call("refund", stripe.Refund.create, payment_intent=capture_id, amount=to_cents(amount))


def parse_stripe_webhook(payload: bytes, signature: str | None, *, secret: str | None) -> dict[str, Any]:
    """Return a Stripe webhook event, verifying its signature when a secret is configured."""

    if secret:
        try:
            stripe.Webhook.construct_event(payload, signature or "", secret)
        except stripe.SignatureVerificationError as exc:
            raise Unauthenticated("Invalid Stripe signature.") from exc
        except ValueError as exc:
            raise InvalidParameter("Malformed Stripe webhook payload.") from exc
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise InvalidParameter("Malformed Stripe webhook payload.") from exc
    if not isinstance(event, dict):
        raise InvalidParameter("Malformed Stripe webhook payload.")
    return event


class PayPalProcessor:
    """PayPal Orders v2 over the REST API."""

    name = "paypal"

    _TOKEN_MARGIN_SECONDS = 30.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        environment: str = "sandbox",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self.base_url = "https://api-m.paypal.com" if environment == "live" else "https://api-m.sandbox.paypal.com"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._timeout = timeout
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and self._token_expires_at - self._TOKEN_MARGIN_SECONDS > time.monotonic():
                return self._token
            try:
                response = await self._client.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self._client_id, self._client_secret),
                    data={"grant_type": "client_credentials"},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                raise payment_failure(self.name, "authenticate", f"PayPal unreachable: {exc}") from exc
            data = _json_body(response)
            if response.status_code != 200 or not data.get("access_token"):
                raise payment_failure(self.name, "authenticate", "PayPal authentication failed")
            self._token = str(data["access_token"])
            self._token_expires_at = time.monotonic() + float(data.get("expires_in") or 0)
            return self._token

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if method == "POST":
            headers["PayPal-Request-Id"] = str(uuid.uuid4())
        try:
            return await _timed(
                self.name,
                operation,
                self._client.request(method, f"{self.base_url}{path}", json=body, headers=headers),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise payment_failure(self.name, operation, f"PayPal unreachable: {exc}") from exc

    async def create_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        response = await self._request(
            "create_session",
            "POST",
            "/v2/checkout/orders",
            body={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {"currency_code": currency.upper(), "value": str(quantize(amount))},
                        "description": description,
                        "custom_id": reference,
                    }
                ],
                "application_context": {
                    "return_url": return_url,
                    "cancel_url": cancel_url,
                    "user_action": "PAY_NOW",
                    "shipping_preference": "NO_SHIPPING",
                },
            },
        )
        data = _json_body(response)
        if response.status_code not in (200, 201) or not data.get("id"):
            raise payment_failure(self.name, "create_session", _paypal_reason(data, "PayPal could not create the order"))
        approval = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approval:
            raise payment_failure(self.name, "create_session", "PayPal did not return an approval link")
        return CheckoutSession(session_id=str(data["id"]), redirect_url=str(approval), status=str(data.get("status") or ""))

    async def confirm_capture(self, session_id: str) -> CaptureResult:
        response = await self._request("confirm_capture", "POST", f"/v2/checkout/orders/{session_id}/capture")
        data = _json_body(response)
        if response.status_code == 422:
            issue = _paypal_issue(data)
            if issue == "ORDER_ALREADY_CAPTURED":
                lookup = await self._request("confirm_capture", "GET", f"/v2/checkout/orders/{session_id}")
                return _capture_result(_json_body(lookup))
            if issue in ("ORDER_NOT_APPROVED", "PAYER_ACTION_REQUIRED"):
                return CaptureResult(paid=False, status="PAYER_ACTION_REQUIRED")
        if response.status_code not in (200, 201):
            raise payment_failure(self.name, "confirm_capture", _paypal_reason(data, "PayPal could not capture the payment"))
        return _capture_result(data)

    async def cancel_session(self, session_id: str) -> None:
        # Orders cannot be voided through the API; unapproved orders lapse on their own.
        _LOGGER.debug("PayPal order %s left to expire", session_id)

    async def refund(self, capture_id: str, *, amount: Decimal, currency: str) -> None:
        response = await self._request(
            "refund",
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            body={"amount": {"currency_code": currency.upper(), "value": str(quantize(amount))}},
        )
        if response.status_code not in (200, 201):
            raise payment_failure(self.name, "refund", _paypal_reason(_json_body(response), "PayPal refund failed"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _paypal_issue(data: dict[str, Any]) -> str | None:
    details = data.get("details") or []
    if details and isinstance(details[0], dict):
        return details[0].get("issue")
    return None


def _paypal_reason(data: dict[str, Any], fallback: str) -> str:
    issue = _paypal_issue(data)
    message = data.get("message")
    if issue and message:
        return f"{message} ({issue})"
    return str(message or issue or fallback)


def _capture_result(data: dict[str, Any]) -> CaptureResult:
    status = str(data.get("status") or "")
    capture_id = None
    for unit in data.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            capture_id = captures[0].get("id")
            break
    return CaptureResult(paid=status == "COMPLETED", status=status, capture_id=capture_id)


@dataclass(slots=True)
class _LocalSession:
    amount: Decimal
    currency: str
    reference: str
    status: str = "open"
    capture_id: str | None = None


@dataclass
class InMemoryPaymentProcessor:
    """Processor keeping sessions in memory, for local development and tests.

    ``approve`` plays the buyer completing the payment page.
    """

    name: str = "local"
    base_url: str = "https://payments.invalid"
    sessions: dict[str, _LocalSession] = field(default_factory=dict)
    refunds: list[tuple[str, Decimal, str]] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)
    failing: set[str] = field(default_factory=set)
    capture_calls: int = 0

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise payment_failure(self.name, operation, f"{self.name} rejected {operation}")

    def approve(self, session_id: str) -> None:
        self.sessions[session_id].status = "approved"

    async def create_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        self._check("create_session")
        session_id = f"{self.name}_{uuid.uuid4().hex}"
        self.sessions[session_id] = _LocalSession(amount=amount, currency=currency, reference=reference)
        return CheckoutSession(session_id=session_id, redirect_url=f"{self.base_url}/pay/{session_id}", status="open")

    async def confirm_capture(self, session_id: str) -> CaptureResult:
        self.capture_calls += 1
        self._check("confirm_capture")
        session = self.sessions.get(session_id)
        if session is None:
            raise payment_failure(self.name, "confirm_capture", f"Unknown session {session_id}")
        if session.status == "approved":
            session.status = "captured"
            session.capture_id = f"cap_{uuid.uuid4().hex[:12]}"
        if session.status == "captured":
            return CaptureResult(paid=True, status="captured", capture_id=session.capture_id)
        return CaptureResult(paid=False, status=session.status)

    async def cancel_session(self, session_id: str) -> None:
        self._check("cancel_session")
        session = self.sessions.get(session_id)
        if session is not None and session.status == "open":
            session.status = "expired"
        self.canceled.append(session_id)

    async def refund(self, capture_id: str, *, amount: Decimal, currency: str) -> None:
        self._check("refund")
        self.refunds.append((capture_id, amount, currency))


class ProcessorRegistry:
    def __init__(self, processors: Iterable[PaymentProcessor] = ()) -> None:
        self._processors: dict[str, PaymentProcessor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: PaymentProcessor) -> None:
        self._processors[processor.name] = processor

    def get(self, name: str) -> PaymentProcessor:
        processor = self._processors.get(name.lower())
        if processor is None:
            raise InvalidParameter(f"Payment provider {name!r} is not available.")
        return processor

    def names(self) -> list[str]:
        return sorted(self._processors)

    async def aclose(self) -> None:
        for processor in self._processors.values():
            closer = getattr(processor, "aclose", None)
            if closer is not None:
                await closer()


def build_processors(settings: ServiceSettings, *, http_client: httpx.AsyncClient | None = None) -> ProcessorRegistry:
    """Register every processor with credentials in ``settings``."""

    registry = ProcessorRegistry()
    if settings.stripe_secret_key:
        registry.register(
            StripeProcessor(
                settings.stripe_secret_key,
                timeout=settings.payment_timeout_seconds,
            )
        )
    if settings.paypal_client_id and settings.paypal_client_secret:
        registry.register(
            PayPalProcessor(
                settings.paypal_client_id,
                settings.paypal_client_secret,
                environment=settings.paypal_environment,
                client=http_client,
                timeout=settings.payment_timeout_seconds,
            )
        )
    if not registry.names() and settings.environment in ("local", "dev"):
        _LOGGER.warning("No payment processor configured; using the in-memory processor")
        registry.register(InMemoryPaymentProcessor())
    return registry
