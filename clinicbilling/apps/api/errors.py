from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinicbilling.apps.api.response import error_response, is_versioned_request
from clinicbilling.core.errors import (
    BillingError,
    ConcurrencyConflictError,
    ConfigError,
    DuplicatePaymentError,
    GatewayTransportError,
    IncomparableTierError,
    InvalidTransitionError,
    PaymentDeclinedError,
    PreconditionError,
    SubscriptionCancelledError,
    SubscriptionNotFoundError,
    UnknownFeatureError,
    UnknownTierError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# First match wins, so subclasses must precede their bases.
_BILLING_ERROR_STATUS: tuple[tuple[type[BillingError], int, str | None], ...] = (
    (SubscriptionNotFoundError, 404, None),
    (DuplicatePaymentError, 409, None),
    (SubscriptionCancelledError, 409, None),
    (InvalidTransitionError, 409, None),
    (ConcurrencyConflictError, 409, None),
    (WebhookSignatureError, 400, None),
    # Unknown identifiers in request input are caller mistakes, not broken configuration.
    (UnknownTierError, 422, None),
    (UnknownFeatureError, 422, None),
    (IncomparableTierError, 422, None),
    (PreconditionError, 422, None),
    (PaymentDeclinedError, 402, "declined"),
    (GatewayTransportError, 503, "transient"),
    (ConfigError, 500, "configuration"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details are either a plain message or a {"code", "message", ...} dict.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def billing_error_status(exc: BillingError) -> tuple[int, str | None]:
    for error_type, status_code, reason in _BILLING_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, reason
    return 500, None


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    status_code, reason = billing_error_status(exc)
    details: dict[str, Any] = dict(exc.details)
    if reason is not None:
        details["reason"] = reason
    if status_code >= 500:
        logger.error("billing_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(details) or None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses get the same envelope as handler errors.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clinics; the log line carries them instead.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
