from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import ConfigError, PreconditionError, WebhookSignatureError
from clinicbilling.services.payments import (
    PAYMENT_KIND_WEBHOOK,
    process_payment,
    record_failed_payment,
)
from clinicbilling.services.subscriptions import require_subscription
from clinicbilling.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"


@dataclass(frozen=True)
class WebhookHandlingResult:
    event_type: str
    action: str
    gateway_payment_id: str | None = None
    subscription_id: str | None = None
    replayed: bool = False


def build_gateway_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the raw request body, hex encoded.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_gateway_signature(payload: bytes, signature: str | None, *, secret: str | None = None) -> None:
    secret = secret if secret is not None else get_settings().gateway_webhook_secret
    if not secret:
        raise ConfigError("GATEWAY_WEBHOOK_SECRET is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    expected = build_gateway_signature(secret, payload)
    if not hmac.compare_digest(expected, signature.strip()):
        increment_counter("gateway_webhooks_rejected_total")
        raise WebhookSignatureError("Webhook signature mismatch")


def parse_gateway_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PreconditionError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise PreconditionError("Webhook body must be a JSON object")
    return payload


def _payment_entity(payload: dict[str, Any]) -> dict[str, Any]:
    entity = (((payload.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    if not isinstance(entity, dict) or not entity.get("id"):
        raise PreconditionError("Webhook payload is missing payment.entity.id")
    return entity


async def handle_gateway_event(session: AsyncSession, payload: dict[str, Any]) -> WebhookHandlingResult:
    """Apply a verified gateway event.

    ``payment.captured`` goes through ``process_payment`` keyed on the
    gateway's payment id, so a redelivered event replays instead of applying
    twice. ``payment.failed`` only appends a failed ledger entry. Other event
    types are acknowledged and ignored.
    """
    event_type = str(payload.get("event") or "")
    if event_type not in (EVENT_PAYMENT_CAPTURED, EVENT_PAYMENT_FAILED):
        increment_counter("gateway_webhooks_ignored_total")
        logger.info("gateway_webhook_ignored event=%s", event_type)
        return WebhookHandlingResult(event_type=event_type, action="ignored")

    entity = _payment_entity(payload)
    notes = entity.get("notes") or {}
    subscription_id = notes.get("subscription_id") if isinstance(notes, dict) else None
    if not subscription_id:
        raise PreconditionError("Webhook payment notes must carry subscription_id")
    gateway_payment_id = str(entity["id"])
    amount = entity.get("amount")
    currency = str(entity.get("currency") or get_settings().default_currency)
    method = entity.get("method")

    if event_type == EVENT_PAYMENT_FAILED:
        await record_failed_payment(
            session,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            gateway_payment_id=gateway_payment_id,
            payment_method=method,
            failure_reason=entity.get("error_reason") or entity.get("error_description") or "failed",
            kind=PAYMENT_KIND_WEBHOOK,
        )
        return WebhookHandlingResult(
            event_type=event_type,
            action="recorded_failure",
            gateway_payment_id=gateway_payment_id,
            subscription_id=subscription_id,
        )

    tier = notes.get("tier")
    if not tier:
        # No tier in the notes means a plain renewal of the current tier.
        tier = (await require_subscription(session, subscription_id)).tier
    outcome = await process_payment(
        session,
        subscription_id=subscription_id,
        amount=amount,
        currency=currency,
        new_tier=tier,
        payment_method=method or "UNKNOWN",
        gateway_payment_id=gateway_payment_id,
        notes=notes.get("description"),
        kind=PAYMENT_KIND_WEBHOOK,
    )
    return WebhookHandlingResult(
        event_type=event_type,
        action="replayed" if outcome.replayed else "applied",
        gateway_payment_id=gateway_payment_id,
        subscription_id=subscription_id,
        replayed=outcome.replayed,
    )
