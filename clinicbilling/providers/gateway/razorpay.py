from __future__ import annotations

import logging
import time
from typing import Any, Mapping

import httpx

from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import ConfigError, GatewayTransportError, IntegrationUnavailableError
from clinicbilling.providers.gateway.base import ChargeResult
from clinicbilling.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    get_circuit_breaker,
    retry_async,
)
from clinicbilling.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "payment.gateway.razorpay"
_SUCCESS_STATUSES = {"captured", "authorized"}
# Throttling and request timeouts say nothing about the card; retry them like 5xx.
_TRANSIENT_CLIENT_STATUSES = {408, 429}
_CREDENTIAL_STATUSES = {401, 403}


class _TransientStatusError(Exception):
    # Carry the status code so the retry predicate can classify it.
    def __init__(self, status_code: int) -> None:
        super().__init__(f"gateway responded with status {status_code}")
        self.status_code = status_code


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status in _TRANSIENT_CLIENT_STATUSES)


class RazorpayGateway:
    """Recurring-charge adapter for a Razorpay-style REST API.

    Charges go through a shared circuit breaker and bounded retries. Anything
    that prevents a definitive answer (timeouts, network errors, 5xx, 408, 429,
    an open breaker) surfaces as GatewayTransportError. Rejected credentials
    (401, 403) raise ConfigError. Any other 4xx refusal or a failed payment
    status comes back as a declined ChargeResult.
    """

    name = "razorpay"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.razorpay_base_url).rstrip("/")
        self._key_id = key_id or settings.razorpay_key_id
        self._key_secret = key_secret or settings.razorpay_key_secret
        if not self._key_id or not self._key_secret:
            raise ConfigError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required for the razorpay gateway")
        self._transport = transport
        self._breaker = breaker
        self._retry_policy = retry_policy
        self._timeout_s = settings.ext_call_timeout_ms / 1000.0

    async def _post(self, path: str, body: dict[str, Any], idempotency_key: str) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            auth=(self._key_id, self._key_secret),
            timeout=self._timeout_s,
            transport=self._transport,
        ) as client:
            response = await client.post(path, json=body, headers={"Idempotency-Key": idempotency_key})
        if response.status_code >= 500 or response.status_code in _TRANSIENT_CLIENT_STATUSES:
            raise _TransientStatusError(response.status_code)
        if response.status_code in _CREDENTIAL_STATUSES:
            raise ConfigError(
                f"payment gateway rejected the configured credentials (status {response.status_code})",
                status_code=response.status_code,
            )
        return response

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        method: str,
        idempotency_key: str,
        description: str | None = None,
        notes: Mapping[str, str] | None = None,
    ) -> ChargeResult:
        breaker = self._breaker or await get_circuit_breaker(INTEGRATION_NAME)
        body = {
            "amount": amount,
            "currency": currency,
            "token": method,
            "recurring": "1",
            "description": description or "Subscription renewal",
            "notes": {**dict(notes or {}), "idempotency_key": idempotency_key},
        }
        start = time.monotonic()
        try:
            await breaker.before_call()
            response = await retry_async(
                lambda: self._post("/payments/create/recurring", body, idempotency_key),
                policy=self._retry_policy,
                retryable=_retryable,
            )
        except IntegrationUnavailableError:
            record_external_call(integration=INTEGRATION_NAME, latency_ms=0.0, success=False)
            raise
        except ConfigError:
            record_external_call(
                integration=INTEGRATION_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.error("gateway_charge_credentials_rejected key=%s", idempotency_key)
            raise
        except (httpx.HTTPError, _TransientStatusError, TimeoutError, OSError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("gateway_charge_transport_failed key=%s", idempotency_key, exc_info=exc)
            raise GatewayTransportError(f"payment gateway unreachable: {type(exc).__name__}") from exc

        await breaker.record_success()
        record_external_call(
            integration=INTEGRATION_NAME,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return _parse_charge_response(response)


def _parse_charge_response(response: httpx.Response) -> ChargeResult:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if response.status_code >= 400:
        error = payload.get("error") or {}
        reason = error.get("reason") or error.get("description") or f"http_{response.status_code}"
        return ChargeResult(success=False, gateway_payment_id=None, decline_reason=str(reason))
    payment_id = payload.get("razorpay_payment_id") or payload.get("id")
    status = str(payload.get("status") or "captured").lower()
    if status not in _SUCCESS_STATUSES:
        reason = payload.get("error_reason") or payload.get("error_description") or status
        return ChargeResult(success=False, gateway_payment_id=payment_id, decline_reason=str(reason))
    return ChargeResult(success=True, gateway_payment_id=payment_id)
