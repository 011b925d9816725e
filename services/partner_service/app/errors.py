"""Domain errors of the partner marketplace and their HTTP translation.

Services raise these; routes let them propagate and ``register_error_handlers``
turns them into JSON responses of the form ``{"detail": ..., "code": ...}``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

_LOGGER = logging.getLogger(__name__)


class PartnerError(Exception):
    """Base class for all marketplace errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)


class ValidationError(PartnerError):
    """Malformed advertisement draft, price grid or override mapping."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidParameter(ValidationError):
    """Slot or lease length outside of the sellable range."""


class ConfigurationError(PartnerError):
    """A sellable combination has no usable price."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class SlotUnavailable(PartnerError):
    """The slot is held by another booking or by an override."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, slot: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Slot #{slot} is no longer available, choose another.",
            details={"slot": slot},
        )
        self.slot = slot


class StateConflict(PartnerError):
    """The record is no longer in a state that permits the transition."""

    status_code = status.HTTP_409_CONFLICT


class PaymentError(PartnerError):
    """The payment processor rejected or failed an operation."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, provider: str, operation: str) -> None:
        super().__init__(message, details={"provider": provider, "operation": operation})
        self.provider = provider
        self.operation = operation


class PaymentIncomplete(PartnerError):
    """The buyer has not completed the payment yet."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED


class NotFound(PartnerError):
    status_code = status.HTTP_404_NOT_FOUND


class Unauthenticated(PartnerError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDenied(PartnerError):
    status_code = status.HTTP_403_FORBIDDEN


def register_error_handlers(app: FastAPI) -> None:
    """Translate ``PartnerError`` subclasses into JSON responses."""

    @app.exception_handler(PartnerError)
    async def partner_error_handler(request: Request, exc: PartnerError) -> JSONResponse:
        if exc.status_code >= 500:
            _LOGGER.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        body: dict[str, Any] = {"detail": exc.message, "code": exc.code}
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(body, status_code=exc.status_code)
