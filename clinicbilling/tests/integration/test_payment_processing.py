from __future__ import annotations

from datetime import timedelta

import pytest

from clinicbilling.core.errors import (
    DuplicatePaymentError,
    InvalidAmountError,
    InvalidTierError,
    InvalidTransitionError,
    NoPaymentMethodError,
    PaymentDeclinedError,
    SubscriptionCancelledError,
)
from clinicbilling.domain.lifecycle import SubscriptionStatus
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.persistence.repos.payments import count_paid_payments, list_payments_for_subscription
from clinicbilling.persistence.repos.subscriptions import list_events
from clinicbilling.providers.gateway.fake import FakePaymentGateway
from clinicbilling.services.payments import (
    PriorPayment,
    apply_payment,
    process_payment,
    record_failed_payment,
    retry_payment,
)
from clinicbilling.tests.utils.subscriptions import NOW, load_subscription, seed_subscription


async def _seed_grace() -> str:
    # CORE clinic two days into grace after a declined renewal.
    return await seed_subscription(
        status=SubscriptionStatus.GRACE.value,
        grace_started_at=NOW - timedelta(days=2),
        current_period_start=NOW - timedelta(days=30),
        current_period_end=NOW - timedelta(days=2),
    )


@pytest.mark.asyncio
async def test_payment_in_grace_upgrades_and_restores_active() -> None:
    subscription_id = await _seed_grace()
    async with SessionLocal() as session:
        outcome = await process_payment(
            session,
            subscription_id=subscription_id,
            amount=249900,
            currency="INR",
            new_tier="PLUS",
            payment_method="UPI",
            gateway_payment_id="pay_grace_1",
            now=NOW,
        )

    assert outcome.replayed is False
    assert outcome.subscription.status == SubscriptionStatus.ACTIVE.value
    assert outcome.subscription.tier == "PLUS"
    assert outcome.subscription.price_at_snapshot == 249900
    assert outcome.subscription.grace_days_remaining is None
    assert outcome.payment.status == "paid"
    assert outcome.payment.amount == 249900

    stored = await load_subscription(subscription_id)
    assert stored.grace_started_at is None
    # The period rolls from the old period end, not from the payment instant.
    assert stored.current_period_start == NOW - timedelta(days=2)

    async with SessionLocal() as session:
        events = await list_events(session, subscription_id)
    assert [(e.from_status, e.to_status) for e in events] == [("GRACE", "ACTIVE")]
    assert events[0].to_tier == "PLUS"


@pytest.mark.asyncio
async def test_replayed_gateway_id_is_applied_once() -> None:
    subscription_id = await _seed_grace()
    kwargs = dict(
        subscription_id=subscription_id,
        amount=249900,
        currency="INR",
        new_tier="PLUS",
        payment_method="CARD",
        gateway_payment_id="pay_dup_1",
        now=NOW,
    )
    async with SessionLocal() as session:
        first = await process_payment(session, **kwargs)
    async with SessionLocal() as session:
        second = await process_payment(session, **kwargs)

    assert second.replayed is True
    assert second.payment.id == first.payment.id
    assert second.subscription.version == first.subscription.version
    assert second.subscription.current_period_end == first.subscription.current_period_end

    async with SessionLocal() as session:
        assert await count_paid_payments(session, "pay_dup_1") == 1


@pytest.mark.asyncio
async def test_apply_payment_reports_duplicate_with_prior() -> None:
    subscription_id = await seed_subscription()
    kwargs = dict(
        subscription_id=subscription_id,
        amount=99900,
        currency="INR",
        new_tier="CORE",
        payment_method="CARD",
        gateway_payment_id="pay_dup_2",
        now=NOW,
    )
    async with SessionLocal() as session:
        first = await apply_payment(session, **kwargs)
    async with SessionLocal() as session:
        with pytest.raises(DuplicatePaymentError) as exc_info:
            await apply_payment(session, **kwargs)
    # Readable after the session is gone.
    prior = exc_info.value.prior
    assert isinstance(prior, PriorPayment)
    assert prior.id == first.payment.id
    assert prior.subscription_id == subscription_id
    assert (prior.amount, prior.currency, prior.status, prior.tier) == (99900, "INR", "paid", "CORE")


@pytest.mark.asyncio
async def test_mid_period_payment_changes_tier_only() -> None:
    subscription_id = await seed_subscription()
    before = await load_subscription(subscription_id)
    async with SessionLocal() as session:
        outcome = await process_payment(
            session,
            subscription_id=subscription_id,
            amount=499900,
            currency="inr",
            new_tier="pro",
            payment_method="CARD",
            gateway_payment_id="pay_upgrade_1",
            now=NOW,
        )
    assert outcome.subscription.tier == "PRO"
    assert outcome.subscription.current_period_end == before.current_period_end
    assert outcome.subscription.currency == "INR"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "error"),
    [
        ({"amount": -1}, InvalidAmountError),
        ({"new_tier": "GOLD"}, InvalidTierError),
        ({"new_tier": "INTELLIGENCE"}, InvalidTierError),
    ],
)
async def test_invalid_payment_leaves_no_trace(overrides: dict, error: type[Exception]) -> None:
    subscription_id = await seed_subscription()
    kwargs = dict(
        subscription_id=subscription_id,
        amount=99900,
        currency="INR",
        new_tier="CORE",
        payment_method="CARD",
        gateway_payment_id="pay_bad_1",
        now=NOW,
    )
    kwargs.update(overrides)
    async with SessionLocal() as session:
        with pytest.raises(error):
            await process_payment(session, **kwargs)
        assert await list_payments_for_subscription(session, subscription_id) == []
    stored = await load_subscription(subscription_id)
    assert stored.version == 1


@pytest.mark.asyncio
async def test_payment_on_cancelled_subscription_is_rejected() -> None:
    subscription_id = await seed_subscription(
        status=SubscriptionStatus.CANCELLED.value,
        cancelled_at=NOW - timedelta(days=1),
    )
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionCancelledError):
            await process_payment(
                session,
                subscription_id=subscription_id,
                amount=99900,
                currency="INR",
                new_tier="CORE",
                payment_method="CARD",
                gateway_payment_id="pay_cancelled_1",
                now=NOW,
            )
        assert await list_payments_for_subscription(session, subscription_id) == []


@pytest.mark.asyncio
async def test_failed_payment_is_ledger_only() -> None:
    subscription_id = await seed_subscription()
    async with SessionLocal() as session:
        payment = await record_failed_payment(
            session,
            subscription_id=subscription_id,
            amount=99900,
            currency="INR",
            gateway_payment_id="pay_failed_1",
            payment_method="CARD",
            failure_reason="insufficient_funds",
            now=NOW,
        )
    assert payment.status == "failed"
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.ACTIVE.value
    assert stored.version == 1


async def _seed_grace_with_card(**overrides) -> str:
    values = dict(
        status=SubscriptionStatus.GRACE.value,
        grace_started_at=NOW - timedelta(days=2),
        current_period_start=NOW - timedelta(days=30),
        current_period_end=NOW - timedelta(days=2),
        payment_method_token="tok_card_9",
        payment_method_type="CARD",
    )
    values.update(overrides)
    return await seed_subscription(**values)


@pytest.mark.asyncio
async def test_operator_retry_charges_saved_method_and_restores_active() -> None:
    subscription_id = await _seed_grace_with_card()
    gateway = FakePaymentGateway()
    async with SessionLocal() as session:
        outcome = await retry_payment(session, subscription_id, gateway=gateway, now=NOW)

    assert outcome.subscription.status == SubscriptionStatus.ACTIVE.value
    assert outcome.payment.kind == "retry"
    assert outcome.payment.amount == 99900
    assert gateway.charges[0].method == "tok_card_9"
    assert gateway.charges[0].notes == {"subscription_id": subscription_id, "tier": "CORE"}


@pytest.mark.asyncio
async def test_operator_retry_decline_is_recorded_and_raised() -> None:
    subscription_id = await _seed_grace_with_card()
    gateway = FakePaymentGateway()
    gateway.script("decline")

    async with SessionLocal() as session:
        with pytest.raises(PaymentDeclinedError) as exc_info:
            await retry_payment(session, subscription_id, gateway=gateway, now=NOW)
    assert exc_info.value.details["decline_reason"] == "card_declined"

    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.GRACE.value
    async with SessionLocal() as session:
        payments = await list_payments_for_subscription(session, subscription_id)
    assert [(p.status, p.kind, p.failure_reason) for p in payments] == [("failed", "retry", "card_declined")]

    # The next attempt gets a fresh key instead of replaying the refusal.
    async with SessionLocal() as session:
        outcome = await retry_payment(session, subscription_id, gateway=gateway, now=NOW)
    assert outcome.subscription.status == SubscriptionStatus.ACTIVE.value
    assert gateway.charges[0].idempotency_key != gateway.charges[1].idempotency_key


@pytest.mark.asyncio
async def test_operator_retry_preconditions() -> None:
    current = await seed_subscription(payment_method_token="tok_card_1", payment_method_type="CARD")
    no_card = await _seed_grace_with_card(payment_method_token=None, payment_method_type=None)
    gateway = FakePaymentGateway()
    async with SessionLocal() as session:
        with pytest.raises(InvalidTransitionError):
            await retry_payment(session, current, gateway=gateway, now=NOW)
        with pytest.raises(NoPaymentMethodError):
            await retry_payment(session, no_card, gateway=gateway, now=NOW)
    assert gateway.charges == []
