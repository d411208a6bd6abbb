from __future__ import annotations

from typing import Any

from clinicbilling.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(code="AUTH_INVALID_ROLE", message="Unsupported role: guest"),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="FEATURE_NOT_ENABLED",
            message="Lab Tests requires PRO",
            details={"feature_key": "LAB_TESTS", "required_tier": "PRO"},
        ),
    ),
    404: _response(
        "Not found",
        _error_example(code="SUBSCRIPTION_NOT_FOUND", message="No subscription for clinic clinic_42"),
    ),
    409: _response(
        "Conflict",
        _error_example(
            code="DUPLICATE_PAYMENT",
            message="Payment pay_29QQoUBi66xm2f was already applied",
            details={"gateway_payment_id": "pay_29QQoUBi66xm2f"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="INVALID_TIER", message="Invalid tier: GOLD", details={"tier": "GOLD"}),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

PAYMENT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    402: _response(
        "Payment declined",
        _error_example(code="PAYMENT_DECLINED", message="Card declined", details={"reason": "declined"}),
    ),
    503: _response(
        "Payment gateway unavailable",
        _error_example(
            code="GATEWAY_UNAVAILABLE",
            message="payment gateway unreachable: ConnectTimeout",
            details={"reason": "transient"},
        ),
    ),
}
