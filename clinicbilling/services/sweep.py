from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import BillingError, GatewayTransportError
from clinicbilling.domain.lifecycle import (
    ChargeRequired,
    LifecycleEvent,
    LifecyclePolicy,
    RenewalDeclined,
    RenewalDeferred,
    RenewalSucceeded,
    SubscriptionStatus,
    TransitionResult,
    next_due,
)
from clinicbilling.domain.models import Payment, Subscription, utc_now
from clinicbilling.domain.tiers import parse_ladder_tier, snapshot_price
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.persistence.repos.payments import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PAID,
    get_paid_payment_by_gateway_id,
)
from clinicbilling.persistence.repos.subscriptions import list_due_subscription_ids
from clinicbilling.providers.gateway.base import PaymentGateway
from clinicbilling.providers.gateway.factory import get_payment_gateway
from clinicbilling.services.payments import (
    PAYMENT_KIND_RENEWAL,
    build_failed_payment,
    charge_notes,
    new_paid_payment,
)
from clinicbilling.services.subscriptions import (
    apply_event,
    lifecycle_policy,
    lifecycle_state,
    require_subscription,
    run_with_optimistic_retry,
)
from clinicbilling.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

OUTCOME_RENEWED = "renewed"
OUTCOME_GRACE = "grace"
OUTCOME_SUSPENDED = "suspended"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_DEFERRED = "deferred"
OUTCOME_SKIPPED = "skipped"

SWEEP_STAT_KEYS = (
    "scanned",
    OUTCOME_RENEWED,
    OUTCOME_GRACE,
    OUTCOME_SUSPENDED,
    OUTCOME_CANCELLED,
    OUTCOME_DEFERRED,
    OUTCOME_SKIPPED,
    "errors",
)

_STATUS_OUTCOMES = {
    SubscriptionStatus.ACTIVE.value: OUTCOME_RENEWED,
    SubscriptionStatus.GRACE.value: OUTCOME_GRACE,
    SubscriptionStatus.SUSPENDED.value: OUTCOME_SUSPENDED,
    SubscriptionStatus.CANCELLED.value: OUTCOME_CANCELLED,
}


@dataclass(frozen=True)
class AdvanceResult:
    subscription_id: str
    outcome: str
    status: str


@dataclass(frozen=True)
class _RenewalAttempt:
    event: LifecycleEvent
    amount: int | None
    ledger_status: str | None = None
    error: str | None = None
    # Tier the amount was charged for; a concurrent payment may change the record.
    tier: str | None = None


def renewal_idempotency_key(subscription: Subscription) -> str:
    # One key per billing period so a retried charge is collapsed by the gateway.
    return f"renewal:{subscription.id}:{subscription.current_period_end.isoformat()}"


def _is_missing_table_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def _load_due(
    session: AsyncSession, subscription_id: str, *, now: datetime, policy: LifecyclePolicy
) -> tuple[Subscription, LifecycleEvent | ChargeRequired | None]:
    subscription = await require_subscription(session, subscription_id)
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        return subscription, None
    return subscription, next_due(lifecycle_state(subscription), now=now, policy=policy)


async def _attempt_renewal_charge(subscription: Subscription, *, gateway: PaymentGateway) -> _RenewalAttempt:
    amount = subscription.price_at_snapshot
    if amount is None:
        amount = snapshot_price(subscription.tier, subscription.billing_cycle)
    if amount is None:
        # Negotiated pricing without a locked amount needs an operator-recorded payment.
        return _RenewalAttempt(event=RenewalDeclined(reason="custom_pricing"), amount=None)
    if amount == 0:
        return _RenewalAttempt(event=RenewalSucceeded(), amount=0)

    key = renewal_idempotency_key(subscription)
    try:
        result = await gateway.charge(
            amount=amount,
            currency=subscription.currency,
            method=subscription.payment_method_token or "",
            idempotency_key=key,
            description=f"{subscription.tier} {subscription.billing_cycle.lower()} renewal",
            notes=charge_notes(subscription),
        )
    except GatewayTransportError as exc:
        increment_counter("renewal_charges_total.transient")
        logger.warning("renewal_charge_deferred id=%s key=%s error=%s", subscription.id, key, exc)
        return _RenewalAttempt(event=RenewalDeferred(reason="transient"), amount=amount, error=str(exc))

    if result.success:
        increment_counter("renewal_charges_total.success")
        return _RenewalAttempt(
            event=RenewalSucceeded(gateway_payment_id=result.gateway_payment_id),
            amount=amount,
            ledger_status=PAYMENT_STATUS_PAID,
            tier=subscription.tier,
        )
    increment_counter("renewal_charges_total.declined")
    reason = result.decline_reason or "declined"
    logger.info("renewal_charge_declined id=%s key=%s reason=%s", subscription.id, key, reason)
    return _RenewalAttempt(
        event=RenewalDeclined(reason=reason),
        amount=amount,
        ledger_status=PAYMENT_STATUS_FAILED,
        error=reason,
        tier=subscription.tier,
    )


def _renewal_payment(
    subscription: Subscription, attempt: _RenewalAttempt, *, now: datetime
) -> Payment | None:
    if attempt.ledger_status is None or attempt.amount is None:
        return None
    method = subscription.payment_method_type
    if attempt.ledger_status == PAYMENT_STATUS_PAID:
        return new_paid_payment(
            subscription,
            amount=attempt.amount,
            currency=subscription.currency,
            tier=parse_ladder_tier(attempt.tier or subscription.tier),
            gateway_payment_id=attempt.event.gateway_payment_id,
            payment_method=method,
            kind=PAYMENT_KIND_RENEWAL,
            description="Automatic renewal",
            now=now,
        )
    return build_failed_payment(
        subscription,
        amount=attempt.amount,
        currency=subscription.currency,
        gateway_payment_id=getattr(attempt.event, "gateway_payment_id", None),
        payment_method=method,
        failure_reason=attempt.error,
        kind=PAYMENT_KIND_RENEWAL,
        now=now,
    )


async def _keep_unapplied_charge(
    session: AsyncSession, subscription: Subscription, attempt: _RenewalAttempt | None, *, now: datetime
) -> None:
    # The gateway already took the money even though the period moved on without it.
    if attempt is None or attempt.ledger_status != PAYMENT_STATUS_PAID:
        return
    gateway_payment_id = getattr(attempt.event, "gateway_payment_id", None)
    if not gateway_payment_id:
        return
    if await get_paid_payment_by_gateway_id(session, gateway_payment_id) is not None:
        return
    payment = _renewal_payment(subscription, attempt, now=now)
    if payment is None:
        return
    payment.description = "Automatic renewal not applied; period already advanced"
    session.add(payment)
    increment_counter("renewal_charges_unapplied_total")
    logger.warning(
        "renewal_charge_unapplied id=%s tenant_id=%s gateway_payment_id=%s amount=%s needs_reconciliation=true",
        subscription.id,
        subscription.tenant_id,
        gateway_payment_id,
        attempt.amount,
    )


def _classify(result: TransitionResult | None, status: str) -> str:
    if result is None or not result.changed:
        return OUTCOME_SKIPPED
    if result.event_type == RenewalDeferred.__name__ and result.from_status == result.state.status:
        return OUTCOME_DEFERRED
    return _STATUS_OUTCOMES.get(status, OUTCOME_SKIPPED)


async def advance_subscription(
    session: AsyncSession,
    subscription_id: str,
    *,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
    policy: LifecyclePolicy | None = None,
) -> AdvanceResult:
    """Apply whatever the clock has made due for one subscription.

    A renewal charge runs before the write transaction; the write then
    re-checks that the same period is still due, so a concurrent sweep or a
    webhook that already advanced the period turns this run into a no-op for
    the lifecycle. A charge the gateway captured in the meantime is still
    written to the ledger for reconciliation. Re-running for the same instant
    never double-charges or double-rolls.
    """
    now = now or utc_now()
    policy = policy or lifecycle_policy()
    subscription, due = await _load_due(session, subscription_id, now=now, policy=policy)
    if due is None:
        return AdvanceResult(subscription_id, OUTCOME_SKIPPED, subscription.status)

    attempt: _RenewalAttempt | None = None
    expected_period_end = subscription.current_period_end
    if isinstance(due, ChargeRequired):
        attempt = await _attempt_renewal_charge(subscription, gateway=gateway or get_payment_gateway())
        event: LifecycleEvent = attempt.event
    else:
        event = due

    async def _operation() -> tuple[Subscription, TransitionResult | None]:
        # Other writers may have committed while the charge was in flight.
        session.expire_all()
        current, still_due = await _load_due(session, subscription_id, now=now, policy=policy)
        if (
            still_due is None
            or type(still_due) is not type(due)
            or current.current_period_end != expected_period_end
        ):
            await _keep_unapplied_charge(session, current, attempt, now=now)
            await session.flush()
            return current, None
        metadata: dict[str, Any] = {"source": "sweep"}
        if attempt is not None:
            metadata["amount"] = attempt.amount
            metadata["gateway_payment_id"] = getattr(attempt.event, "gateway_payment_id", None)
        result = apply_event(session, current, event, now=now, metadata=metadata)
        if attempt is not None:
            current.last_renewal_error = attempt.error
            payment = _renewal_payment(current, attempt, now=now)
            if payment is not None and payment.status == PAYMENT_STATUS_PAID:
                prior = await get_paid_payment_by_gateway_id(session, payment.gateway_payment_id or "")
                if prior is not None:
                    payment = None
            if payment is not None:
                session.add(payment)
        await session.flush()
        return current, result

    subscription, result = await run_with_optimistic_retry(session, _operation)
    outcome = _classify(result, subscription.status)
    if outcome != OUTCOME_SKIPPED:
        logger.info(
            "lifecycle_advanced id=%s tenant_id=%s outcome=%s status=%s",
            subscription.id,
            subscription.tenant_id,
            outcome,
            subscription.status,
        )
    return AdvanceResult(subscription.id, outcome, subscription.status)


async def run_lifecycle_sweep_cycle(
    *,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    # Advance every subscription whose period end or grace deadline has passed, one session each.
    settings = get_settings()
    now = now or utc_now()
    policy = lifecycle_policy()
    batch = max(1, int(limit or settings.sweep_batch_size))
    grace_cutoff = now - timedelta(days=policy.grace_period_days)
    stats: dict[str, Any] = {key: 0 for key in SWEEP_STAT_KEYS}
    try:
        async with SessionLocal() as session:
            subscription_ids = await list_due_subscription_ids(
                session, now=now, grace_cutoff=grace_cutoff, limit=batch
            )
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            stats["status"] = "waiting_for_migrations"
            return stats
        raise

    gateway = gateway or get_payment_gateway()
    stats["scanned"] = len(subscription_ids)
    for subscription_id in subscription_ids:
        try:
            async with SessionLocal() as session:
                result = await advance_subscription(
                    session, subscription_id, now=now, gateway=gateway, policy=policy
                )
        except (BillingError, SQLAlchemyError):
            stats["errors"] += 1
            logger.exception("lifecycle_advance_failed id=%s", subscription_id)
            continue
        stats[result.outcome] += 1

    stats["status"] = "ok"
    set_gauge("lifecycle_sweep_last_scanned", float(stats["scanned"]))
    increment_counter("lifecycle_sweeps_total")
    logger.info(
        "lifecycle_sweep_complete scanned=%s renewed=%s grace=%s suspended=%s cancelled=%s deferred=%s errors=%s",
        stats["scanned"],
        stats[OUTCOME_RENEWED],
        stats[OUTCOME_GRACE],
        stats[OUTCOME_SUSPENDED],
        stats[OUTCOME_CANCELLED],
        stats[OUTCOME_DEFERRED],
        stats["errors"],
    )
    return stats


async def run_lifecycle_sweep_loop() -> None:
    interval = max(5, int(get_settings().sweep_interval_s))
    while True:
        try:
            await run_lifecycle_sweep_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("lifecycle sweep cycle failed")
        await asyncio.sleep(interval)
