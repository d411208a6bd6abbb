from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from clinicbilling.domain.lifecycle import SubscriptionStatus
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.persistence.repos.payments import list_payments_for_subscription
from clinicbilling.persistence.repos.subscriptions import list_events
from clinicbilling.providers.gateway.fake import FakePaymentGateway
from clinicbilling.providers.gateway.razorpay import RazorpayGateway
from clinicbilling.services.gateway_webhook import handle_gateway_event
from clinicbilling.services.payments import process_payment
from clinicbilling.services.resilience import CircuitBreaker, RetryPolicy
from clinicbilling.services.sweep import (
    OUTCOME_DEFERRED,
    OUTCOME_SKIPPED,
    advance_subscription,
    run_lifecycle_sweep_cycle,
)
from clinicbilling.services.telemetry import counters_snapshot, gauges_snapshot
from clinicbilling.tests.utils.subscriptions import NOW, load_subscription, seed_subscription


async def _seed_auto_renewing(**overrides) -> str:
    # ACTIVE clinic whose period ended an hour ago with auto-pay on.
    values = dict(
        auto_pay_enabled=True,
        payment_method_token="tok_card_1",
        payment_method_type="CARD",
        current_period_start=NOW - timedelta(days=28, hours=1),
        current_period_end=NOW - timedelta(hours=1),
    )
    values.update(overrides)
    return await seed_subscription(**values)


async def _seed_grace(started: datetime) -> str:
    return await seed_subscription(
        status=SubscriptionStatus.GRACE.value,
        grace_started_at=started,
        current_period_start=started - timedelta(days=30),
        current_period_end=started,
    )


async def _payments(subscription_id: str):
    async with SessionLocal() as session:
        return await list_payments_for_subscription(session, subscription_id)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("offset", "expected"),
    [
        (timedelta(seconds=-1), SubscriptionStatus.GRACE),
        (timedelta(0), SubscriptionStatus.SUSPENDED),
        (timedelta(seconds=1), SubscriptionStatus.SUSPENDED),
    ],
)
async def test_grace_deadline_boundary(offset: timedelta, expected: SubscriptionStatus) -> None:
    # Grace started seven days before the sweep instant, shifted by the offset.
    subscription_id = await _seed_grace(NOW - timedelta(days=7) - offset)
    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=FakePaymentGateway())
    stored = await load_subscription(subscription_id)
    assert stored.status == expected.value
    if expected == SubscriptionStatus.SUSPENDED:
        assert stats["suspended"] == 1
        assert stored.grace_started_at is None
    else:
        assert stats["scanned"] == 0


@pytest.mark.asyncio
async def test_successful_renewal_rolls_period_once() -> None:
    subscription_id = await _seed_auto_renewing()
    gateway = FakePaymentGateway()

    first = await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)
    second = await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)

    assert first["renewed"] == 1
    assert second["scanned"] == 0
    assert len(gateway.charges) == 1
    assert gateway.charges[0].amount == 99900
    assert gateway.charges[0].method == "tok_card_1"

    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.ACTIVE.value
    assert stored.current_period_start == NOW - timedelta(hours=1)
    assert stored.current_period_end == datetime(2026, 4, 15, 8, 30, tzinfo=timezone.utc)

    payments = await _payments(subscription_id)
    assert [(p.status, p.kind) for p in payments] == [("paid", "renewal")]
    assert payments[0].gateway_payment_id.startswith("pay_fake_")


@pytest.mark.asyncio
async def test_advance_is_idempotent_for_the_same_instant() -> None:
    subscription_id = await _seed_auto_renewing()
    gateway = FakePaymentGateway()
    async with SessionLocal() as session:
        first = await advance_subscription(session, subscription_id, now=NOW, gateway=gateway)
    async with SessionLocal() as session:
        second = await advance_subscription(session, subscription_id, now=NOW, gateway=gateway)
    assert first.outcome == "renewed"
    assert second.outcome == OUTCOME_SKIPPED
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_transport_failures_defer_then_enter_grace() -> None:
    subscription_id = await _seed_auto_renewing()
    gateway = FakePaymentGateway()
    gateway.script("timeout", "timeout", "timeout")

    for attempt in (1, 2):
        stats = await run_lifecycle_sweep_cycle(now=NOW + timedelta(minutes=10 * attempt), gateway=gateway)
        stored = await load_subscription(subscription_id)
        assert stats["deferred"] == 1
        assert stored.status == SubscriptionStatus.ACTIVE.value
        assert stored.renewal_attempts == attempt
        assert stored.last_renewal_error

    stats = await run_lifecycle_sweep_cycle(now=NOW + timedelta(minutes=30), gateway=gateway)
    stored = await load_subscription(subscription_id)
    assert stats["grace"] == 1
    assert stored.status == SubscriptionStatus.GRACE.value
    assert stored.grace_started_at == NOW + timedelta(minutes=30)
    # Every attempt reused the same per-period key.
    assert len({charge.idempotency_key for charge in gateway.charges}) == 1
    assert await _payments(subscription_id) == []


@pytest.mark.asyncio
async def test_declined_renewal_enters_grace_with_failed_entry() -> None:
    subscription_id = await _seed_auto_renewing(tier="PLUS")
    gateway = FakePaymentGateway()
    gateway.script("decline")

    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)

    assert stats["grace"] == 1
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.GRACE.value
    assert stored.last_renewal_error == "card_declined"
    payments = await _payments(subscription_id)
    assert [(p.status, p.amount, p.failure_reason) for p in payments] == [("failed", 249900, "card_declined")]


@pytest.mark.asyncio
async def test_auto_pay_disabled_goes_to_grace_without_charge() -> None:
    subscription_id = await _seed_auto_renewing(auto_pay_enabled=False)
    gateway = FakePaymentGateway()
    await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.GRACE.value
    assert gateway.charges == []

    async with SessionLocal() as session:
        events = await list_events(session, subscription_id)
    assert events[-1].reason == "auto_pay_disabled"


@pytest.mark.asyncio
async def test_free_tier_renews_without_gateway() -> None:
    subscription_id = await _seed_auto_renewing(tier="CAPTURE")
    gateway = FakePaymentGateway()
    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)
    assert stats["renewed"] == 1
    assert gateway.charges == []
    stored = await load_subscription(subscription_id)
    assert stored.current_period_start == NOW - timedelta(hours=1)


@pytest.mark.asyncio
async def test_custom_priced_tier_without_amount_goes_to_grace() -> None:
    subscription_id = await _seed_auto_renewing(tier="ENTERPRISE", price_at_snapshot=None)
    gateway = FakePaymentGateway()
    await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.GRACE.value
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_expired_trial_without_method_is_cancelled() -> None:
    subscription_id = await seed_subscription(
        status=SubscriptionStatus.TRIALING.value,
        tier="CAPTURE",
        tier_selected=False,
        current_period_start=NOW - timedelta(days=14),
        current_period_end=NOW - timedelta(minutes=1),
        trial_ends_at=NOW - timedelta(minutes=1),
    )
    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=FakePaymentGateway())
    stored = await load_subscription(subscription_id)
    assert stats["cancelled"] == 1
    assert stored.status == SubscriptionStatus.CANCELLED.value
    assert stored.cancelled_at == NOW


@pytest.mark.asyncio
async def test_expired_trial_with_selected_tier_enters_grace() -> None:
    subscription_id = await seed_subscription(
        status=SubscriptionStatus.TRIALING.value,
        tier="CORE",
        tier_selected=True,
        current_period_start=NOW - timedelta(days=14),
        current_period_end=NOW - timedelta(minutes=1),
    )
    await run_lifecycle_sweep_cycle(now=NOW, gateway=FakePaymentGateway())
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.GRACE.value


@pytest.mark.asyncio
async def test_cancel_at_period_end_cancels_without_charging() -> None:
    subscription_id = await _seed_auto_renewing(cancel_at_period_end=True)
    gateway = FakePaymentGateway()
    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=gateway)
    stored = await load_subscription(subscription_id)
    assert stats["cancelled"] == 1
    assert stored.status == SubscriptionStatus.CANCELLED.value
    assert stored.auto_pay_enabled is False
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_sweep_ignores_subscriptions_not_yet_due() -> None:
    await seed_subscription()
    await _seed_grace(NOW - timedelta(days=1))
    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=FakePaymentGateway())
    assert stats["scanned"] == 0
    assert stats["status"] == "ok"
    assert gauges_snapshot()["lifecycle_sweep_last_scanned"] == 0.0
    assert counters_snapshot()["lifecycle_sweeps_total"] == 1


def _razorpay(handler) -> RazorpayGateway:
    return RazorpayGateway(
        base_url="https://gateway.test/v1",
        key_id="rzp_test",
        key_secret="secret",
        transport=httpx.MockTransport(handler),
        breaker=CircuitBreaker("payment.gateway.razorpay.sweep"),
        retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=0),
    )


@pytest.mark.asyncio
async def test_throttled_gateway_defers_instead_of_grace() -> None:
    subscription_id = await _seed_auto_renewing()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"description": "Too many requests"}})

    async with SessionLocal() as session:
        result = await advance_subscription(session, subscription_id, now=NOW, gateway=_razorpay(handler))

    assert result.outcome == OUTCOME_DEFERRED
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.ACTIVE.value
    assert stored.renewal_attempts == 1
    assert await _payments(subscription_id) == []


@pytest.mark.asyncio
async def test_rejected_gateway_credentials_leave_subscription_untouched() -> None:
    subscription_id = await _seed_auto_renewing()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"description": "Authentication failed"}})

    stats = await run_lifecycle_sweep_cycle(now=NOW, gateway=_razorpay(handler))

    assert stats["errors"] == 1
    assert stats[OUTCOME_DEFERRED] == 0
    stored = await load_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.ACTIVE.value
    assert stored.renewal_attempts == 0
    assert stored.grace_started_at is None


class _PaidElsewhereGateway(FakePaymentGateway):
    # Records a manual payment for the same subscription while the renewal charge is in flight.
    def __init__(self, subscription_id: str) -> None:
        super().__init__()
        self._subscription_id = subscription_id

    async def charge(self, **kwargs):
        async with SessionLocal() as other:
            await process_payment(
                other,
                subscription_id=self._subscription_id,
                amount=99900,
                currency="INR",
                new_tier="CORE",
                payment_method="UPI",
                gateway_payment_id="pay_manual_1",
                now=NOW,
            )
        return await super().charge(**kwargs)


@pytest.mark.asyncio
async def test_charge_captured_after_period_advanced_stays_in_ledger() -> None:
    subscription_id = await _seed_auto_renewing()
    gateway = _PaidElsewhereGateway(subscription_id)

    async with SessionLocal() as session:
        result = await advance_subscription(session, subscription_id, now=NOW, gateway=gateway)

    assert result.outcome == OUTCOME_SKIPPED
    assert len(gateway.charges) == 1
    payments = await _payments(subscription_id)
    captured = next(p for p in payments if p.gateway_payment_id.startswith("pay_fake_"))
    assert sorted(p.gateway_payment_id for p in payments) == sorted(["pay_manual_1", captured.gateway_payment_id])
    assert captured.status == "paid"
    assert captured.amount == 99900
    assert captured.tier == "CORE"
    assert "not applied" in captured.description
    # Only the manual payment moved the period.
    stored = await load_subscription(subscription_id)
    assert stored.current_period_start == NOW - timedelta(hours=1)
    assert counters_snapshot()["renewal_charges_unapplied_total"] == 1


@pytest.mark.asyncio
async def test_renewal_charge_notes_let_its_webhook_replay() -> None:
    subscription_id = await _seed_auto_renewing()
    sent: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        sent["notes"] = json.loads(request.content)["notes"]
        return httpx.Response(200, json={"razorpay_payment_id": "pay_live_renew", "status": "captured"})

    await run_lifecycle_sweep_cycle(now=NOW, gateway=_razorpay(handler))
    assert sent["notes"]["subscription_id"] == subscription_id
    assert sent["notes"]["tier"] == "CORE"

    # The gateway later confirms the same charge, echoing the notes it was given.
    event = {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_live_renew",
                    "amount": 99900,
                    "currency": "INR",
                    "method": "card",
                    "notes": sent["notes"],
                }
            }
        },
    }
    async with SessionLocal() as session:
        handled = await handle_gateway_event(session, event)

    assert handled.action == "replayed"
    payments = await _payments(subscription_id)
    assert [(p.gateway_payment_id, p.status) for p in payments] == [("pay_live_renew", "paid")]
