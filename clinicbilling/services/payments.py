from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.core.errors import (
    ConcurrencyConflictError,
    DuplicatePaymentError,
    InvalidAmountError,
    InvalidTransitionError,
    NoPaymentMethodError,
    PaymentDeclinedError,
    PreconditionError,
)
from clinicbilling.domain.lifecycle import PaymentRecorded, SubscriptionStatus
from clinicbilling.domain.models import Payment, Subscription, utc_now
from clinicbilling.domain.tiers import Tier, snapshot_price
from clinicbilling.persistence.repos.payments import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PAID,
    count_failed_payments,
    get_paid_payment_by_gateway_id,
)
from clinicbilling.providers.gateway.base import PaymentGateway
from clinicbilling.providers.gateway.factory import get_payment_gateway
from clinicbilling.services.subscriptions import (
    SubscriptionSnapshot,
    apply_event,
    build_snapshot,
    parse_purchasable_tier,
    require_subscription,
    run_with_optimistic_retry,
)
from clinicbilling.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PAYMENT_KIND_MANUAL = "manual"
PAYMENT_KIND_RENEWAL = "renewal"
PAYMENT_KIND_WEBHOOK = "webhook"
PAYMENT_KIND_RETRY = "retry"

_RETRYABLE_STATUSES = (SubscriptionStatus.GRACE.value, SubscriptionStatus.SUSPENDED.value)


@dataclass(frozen=True)
class PriorPayment:
    # Plain copy of an applied payment; survives the rollback that follows a duplicate.
    id: str
    subscription_id: str
    amount: int
    currency: str
    status: str
    tier: str | None
    gateway_payment_id: str | None
    paid_at: datetime | None

    @classmethod
    def from_payment(cls, payment: Payment) -> PriorPayment:
        return cls(
            id=payment.id,
            subscription_id=payment.subscription_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            tier=payment.tier,
            gateway_payment_id=payment.gateway_payment_id,
            paid_at=payment.paid_at,
        )


@dataclass(frozen=True)
class PaymentOutcome:
    subscription: SubscriptionSnapshot
    payment: Payment
    replayed: bool = False


def _validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Amount must be an integer number of minor currency units", amount=amount)
    if amount < 0:
        raise InvalidAmountError("Amount must be non-negative", amount=amount)
    return amount


def _validate_currency(currency: str) -> str:
    normalized = (currency or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise PreconditionError(f"Invalid currency code: {currency}", currency=currency)
    return normalized


def new_paid_payment(
    subscription: Subscription,
    *,
    amount: int,
    currency: str,
    tier: Tier,
    gateway_payment_id: str | None,
    payment_method: str | None,
    kind: str,
    description: str | None,
    now: datetime,
) -> Payment:
    return Payment(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        amount=amount,
        currency=currency,
        status=PAYMENT_STATUS_PAID,
        kind=kind,
        gateway_payment_id=gateway_payment_id,
        payment_method=payment_method,
        tier=tier.value,
        description=description,
        paid_at=now,
        created_at=now,
    )


async def apply_payment(
    session: AsyncSession,
    *,
    subscription_id: str,
    amount: int,
    currency: str,
    new_tier: str | Tier,
    payment_method: str,
    gateway_payment_id: str,
    notes: str | None = None,
    kind: str = PAYMENT_KIND_MANUAL,
    now: datetime | None = None,
) -> PaymentOutcome:
    """Record a paid payment and apply its tier and lifecycle effect atomically.

    Raises DuplicatePaymentError (carrying a PriorPayment copy) when the gateway
    payment id was already applied. Every precondition is checked before the
    first write, and all writes share one commit.
    """
    amount = _validate_amount(amount)
    currency = _validate_currency(currency)
    tier = parse_purchasable_tier(new_tier)
    if not gateway_payment_id:
        raise PreconditionError("gateway_payment_id is required for idempotent application")
    now = now or utc_now()

    async def _operation() -> tuple[Subscription, Payment]:
        subscription = await require_subscription(session, subscription_id)
        prior = await get_paid_payment_by_gateway_id(session, gateway_payment_id)
        if prior is not None:
            raise DuplicatePaymentError(
                f"Payment {gateway_payment_id} was already applied",
                prior=PriorPayment.from_payment(prior),
                gateway_payment_id=gateway_payment_id,
            )
        payment = new_paid_payment(
            subscription,
            amount=amount,
            currency=currency,
            tier=tier,
            gateway_payment_id=gateway_payment_id,
            payment_method=payment_method,
            kind=kind,
            description=notes,
            now=now,
        )
        # CANCELLED raises here, before anything is added to the session.
        apply_event(
            session,
            subscription,
            PaymentRecorded(tier),
            now=now,
            metadata={"gateway_payment_id": gateway_payment_id, "amount": amount, "kind": kind},
        )
        session.add(payment)
        # Custom-priced tiers lock in the negotiated amount instead of a catalog price.
        catalog_price = snapshot_price(tier, subscription.billing_cycle)
        subscription.price_at_snapshot = amount if catalog_price is None else catalog_price
        subscription.currency = currency
        subscription.last_renewal_error = None
        await session.flush()
        return subscription, payment

    subscription, payment = await run_with_optimistic_retry(session, _operation)
    increment_counter(f"payments_applied_total.{kind}")
    logger.info(
        "payment_applied subscription_id=%s gateway_payment_id=%s amount=%s currency=%s tier=%s status=%s",
        subscription.id,
        gateway_payment_id,
        amount,
        currency,
        tier.value,
        subscription.status,
    )
    return PaymentOutcome(subscription=build_snapshot(subscription, now=now), payment=payment)


async def process_payment(
    session: AsyncSession,
    *,
    subscription_id: str,
    amount: int,
    currency: str,
    new_tier: str | Tier,
    payment_method: str,
    gateway_payment_id: str,
    notes: str | None = None,
    kind: str = PAYMENT_KIND_MANUAL,
    now: datetime | None = None,
) -> PaymentOutcome:
    # Replays of an applied gateway id return the prior result instead of double-applying.
    try:
        return await apply_payment(
            session,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            new_tier=new_tier,
            payment_method=payment_method,
            gateway_payment_id=gateway_payment_id,
            notes=notes,
            kind=kind,
            now=now,
        )
    except DuplicatePaymentError:
        integrity_error: IntegrityError | None = None
    except IntegrityError as exc:
        # A concurrent writer may have inserted the same paid gateway id after our check.
        integrity_error = exc
    # Re-read after the rollback, which expired everything the failed attempt loaded.
    prior = await get_paid_payment_by_gateway_id(session, gateway_payment_id)
    if prior is None:
        if integrity_error is not None:
            raise integrity_error
        raise ConcurrencyConflictError(f"Payment {gateway_payment_id} could not be applied or replayed")
    increment_counter("payments_replayed_total")
    logger.info("payment_replayed subscription_id=%s gateway_payment_id=%s", subscription_id, gateway_payment_id)
    subscription = await require_subscription(session, prior.subscription_id)
    return PaymentOutcome(subscription=build_snapshot(subscription, now=now), payment=prior, replayed=True)


async def record_failed_payment(
    session: AsyncSession,
    *,
    subscription_id: str,
    amount: int,
    currency: str,
    gateway_payment_id: str | None,
    payment_method: str | None,
    failure_reason: str | None,
    kind: str = PAYMENT_KIND_WEBHOOK,
    now: datetime | None = None,
) -> Payment:
    # Failed attempts are ledger entries only; lifecycle moves happen on the renewal path.
    amount = _validate_amount(amount)
    currency = _validate_currency(currency)
    now = now or utc_now()
    subscription = await require_subscription(session, subscription_id)
    payment = build_failed_payment(
        subscription,
        amount=amount,
        currency=currency,
        gateway_payment_id=gateway_payment_id,
        payment_method=payment_method,
        failure_reason=failure_reason,
        kind=kind,
        now=now,
    )
    session.add(payment)
    await session.commit()
    increment_counter(f"payments_failed_total.{kind}")
    logger.info(
        "payment_failed_recorded subscription_id=%s gateway_payment_id=%s reason=%s",
        subscription_id,
        gateway_payment_id,
        failure_reason,
    )
    return payment


def build_failed_payment(
    subscription: Subscription,
    *,
    amount: int,
    currency: str,
    gateway_payment_id: str | None,
    payment_method: str | None,
    failure_reason: str | None,
    kind: str,
    now: datetime,
) -> Payment:
    return Payment(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        amount=amount,
        currency=currency,
        status=PAYMENT_STATUS_FAILED,
        kind=kind,
        gateway_payment_id=gateway_payment_id,
        payment_method=payment_method,
        tier=subscription.tier,
        failure_reason=failure_reason,
        created_at=now,
    )


def charge_notes(subscription: Subscription) -> dict[str, str]:
    # Echoed back on gateway webhooks so a captured event finds its subscription and tier.
    return {"subscription_id": subscription.id, "tier": subscription.tier}


async def retry_payment(
    session: AsyncSession,
    subscription_id: str,
    *,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> PaymentOutcome:
    """Charge the saved payment method now for a clinic in GRACE or SUSPENDED.

    Success goes through ``process_payment`` exactly like a captured webhook.
    A decline appends a failed ledger entry and raises PaymentDeclinedError;
    an unreachable gateway raises GatewayTransportError and records nothing,
    so the next attempt reuses the same idempotency key.
    """
    now = now or utc_now()
    subscription = await require_subscription(session, subscription_id)
    if subscription.status not in _RETRYABLE_STATUSES:
        raise InvalidTransitionError(
            f"Subscription {subscription_id} has no overdue payment to retry",
            status=subscription.status,
        )
    if not subscription.payment_method_token:
        raise NoPaymentMethodError("Save a payment method before retrying the charge")
    amount = subscription.price_at_snapshot
    if amount is None:
        amount = snapshot_price(subscription.tier, subscription.billing_cycle)
    if not amount:
        raise PreconditionError(
            "No chargeable amount on file; record the payment manually",
            subscription_id=subscription_id,
        )

    # A new key per decline, so the gateway does not replay the previous refusal.
    declines = await count_failed_payments(session, subscription.id)
    key = f"retry:{subscription.id}:{subscription.current_period_end.isoformat()}:{declines}"
    currency = subscription.currency
    method_type = subscription.payment_method_type
    tier = subscription.tier
    gateway = gateway or get_payment_gateway()
    result = await gateway.charge(
        amount=amount,
        currency=currency,
        method=subscription.payment_method_token,
        idempotency_key=key,
        description=f"{tier} overdue payment",
        notes=charge_notes(subscription),
    )

    if not result.success:
        reason = result.decline_reason or "declined"
        await record_failed_payment(
            session,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            gateway_payment_id=result.gateway_payment_id,
            payment_method=method_type,
            failure_reason=reason,
            kind=PAYMENT_KIND_RETRY,
            now=now,
        )
        raise PaymentDeclinedError(
            f"Payment gateway declined the charge: {reason}",
            decline_reason=reason,
            subscription_id=subscription_id,
        )

    return await process_payment(
        session,
        subscription_id=subscription_id,
        amount=amount,
        currency=currency,
        new_tier=tier,
        payment_method=method_type or "CARD",
        gateway_payment_id=result.gateway_payment_id or key,
        notes="Operator-initiated charge",
        kind=PAYMENT_KIND_RETRY,
        now=now,
    )
