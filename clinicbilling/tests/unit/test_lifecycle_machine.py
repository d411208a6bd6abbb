from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from clinicbilling.core.errors import InvalidTransitionError, SubscriptionCancelledError
from clinicbilling.domain.lifecycle import (
    CancellationRequested,
    ChargeRequired,
    GraceDeadlineReached,
    LifecyclePolicy,
    PaymentRecorded,
    PeriodEndedWithCancellation,
    RenewalDeclined,
    RenewalDeferred,
    RenewalSucceeded,
    SubscriptionStatus,
    TierChanged,
    TrialExpired,
    add_cycle,
    next_due,
    transition,
)
from clinicbilling.domain.tiers import BillingCycle, Tier
from clinicbilling.tests.utils.subscriptions import NOW, make_state


def _grace_state(started: datetime):
    return make_state(
        status=SubscriptionStatus.GRACE,
        grace_started_at=started,
        current_period_start=started - timedelta(days=30),
        current_period_end=started,
    )


def test_add_cycle_uses_calendar_months() -> None:
    jan_31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
    assert add_cycle(jan_31, BillingCycle.MONTHLY) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_cycle(jan_31, BillingCycle.YEARLY) == datetime(2027, 1, 31, tzinfo=timezone.utc)


def test_state_rejects_impossible_shapes() -> None:
    with pytest.raises(ValueError):
        make_state(current_period_end=NOW - timedelta(days=60))
    with pytest.raises(ValueError):
        make_state(status=SubscriptionStatus.GRACE)
    with pytest.raises(ValueError):
        make_state(grace_started_at=NOW)


def test_renewal_success_rolls_from_period_end() -> None:
    state = make_state()
    result = transition(state, RenewalSucceeded("pay_1"), now=NOW + timedelta(hours=3))
    assert result.state.status == SubscriptionStatus.ACTIVE
    assert result.state.current_period_start == NOW
    assert result.state.current_period_end == datetime(2026, 4, 15, 9, 30, tzinfo=timezone.utc)
    assert result.changed is True


def test_renewal_before_period_end_is_noop() -> None:
    state = make_state(current_period_end=NOW + timedelta(days=1))
    result = transition(state, RenewalSucceeded(), now=NOW)
    assert result.changed is False
    assert result.state == state


def test_declined_renewal_enters_grace() -> None:
    result = transition(make_state(), RenewalDeclined("card_declined"), now=NOW)
    assert result.state.status == SubscriptionStatus.GRACE
    assert result.state.grace_started_at == NOW
    assert result.reason == "card_declined"


def test_transport_failures_defer_until_attempts_exhausted() -> None:
    policy = LifecyclePolicy(renewal_max_transport_attempts=3)
    state = make_state()
    for expected_attempts in (1, 2):
        result = transition(state, RenewalDeferred(), now=NOW, policy=policy)
        state = result.state
        assert state.status == SubscriptionStatus.ACTIVE
        assert state.renewal_attempts == expected_attempts
    result = transition(state, RenewalDeferred(), now=NOW, policy=policy)
    assert result.state.status == SubscriptionStatus.GRACE
    assert result.state.renewal_attempts == 0
    assert result.reason == "transport_retries_exhausted"


def test_grace_deadline_boundary() -> None:
    policy = LifecyclePolicy(grace_period_days=7)
    state = _grace_state(NOW)
    deadline = NOW + timedelta(days=7)

    early = transition(state, GraceDeadlineReached(), now=deadline - timedelta(seconds=1), policy=policy)
    assert early.state.status == SubscriptionStatus.GRACE
    assert next_due(state, now=deadline - timedelta(seconds=1), policy=policy) is None

    due = next_due(state, now=deadline, policy=policy)
    assert isinstance(due, GraceDeadlineReached)
    late = transition(state, GraceDeadlineReached(), now=deadline + timedelta(seconds=1), policy=policy)
    assert late.state.status == SubscriptionStatus.SUSPENDED
    assert late.state.grace_started_at is None


def test_grace_deadline_invalid_outside_grace() -> None:
    with pytest.raises(InvalidTransitionError):
        transition(make_state(), GraceDeadlineReached(), now=NOW)


def test_payment_in_grace_restores_active_and_keeps_anchor() -> None:
    state = _grace_state(NOW - timedelta(days=2))
    result = transition(state, PaymentRecorded(Tier.PLUS), now=NOW)
    assert result.state.status == SubscriptionStatus.ACTIVE
    assert result.state.tier == Tier.PLUS
    assert result.state.grace_started_at is None
    assert result.state.current_period_start == state.current_period_end


def test_payment_in_suspended_starts_fresh_period() -> None:
    state = make_state(status=SubscriptionStatus.SUSPENDED, current_period_end=NOW - timedelta(days=10))
    result = transition(state, PaymentRecorded(Tier.CORE), now=NOW)
    assert result.state.status == SubscriptionStatus.ACTIVE
    assert result.state.current_period_start == NOW


def test_payment_during_trial_activates() -> None:
    state = make_state(status=SubscriptionStatus.TRIALING, current_period_end=NOW + timedelta(days=5))
    result = transition(state, PaymentRecorded(Tier.PRO), now=NOW)
    assert result.state.status == SubscriptionStatus.ACTIVE
    assert result.state.tier_selected is True
    assert result.state.current_period_start == NOW


def test_payment_mid_period_only_changes_tier() -> None:
    state = make_state(current_period_end=NOW + timedelta(days=10))
    result = transition(state, PaymentRecorded(Tier.PLUS), now=NOW)
    assert result.state == replace(state, tier=Tier.PLUS)


def test_tier_change_keeps_status_and_period() -> None:
    state = make_state(status=SubscriptionStatus.TRIALING, current_period_end=NOW + timedelta(days=3))
    result = transition(state, TierChanged(Tier.PLUS), now=NOW)
    assert result.state.status == SubscriptionStatus.TRIALING
    assert result.state.current_period_end == state.current_period_end
    assert result.state.tier_selected is True


@pytest.mark.parametrize(
    ("has_method", "tier_selected", "expected"),
    [
        (False, False, SubscriptionStatus.CANCELLED),
        (True, False, SubscriptionStatus.GRACE),
        (False, True, SubscriptionStatus.GRACE),
    ],
)
def test_trial_expiry(has_method: bool, tier_selected: bool, expected: SubscriptionStatus) -> None:
    state = make_state(
        status=SubscriptionStatus.TRIALING,
        has_payment_method=has_method,
        tier_selected=tier_selected,
    )
    assert isinstance(next_due(state, now=NOW), TrialExpired)
    assert transition(state, TrialExpired(), now=NOW).state.status == expected


def test_cancellation_at_period_end() -> None:
    state = make_state(current_period_end=NOW + timedelta(days=3), auto_pay_enabled=True, has_payment_method=True)
    flagged = transition(state, CancellationRequested(at_period_end=True), now=NOW).state
    assert flagged.status == SubscriptionStatus.ACTIVE
    assert next_due(flagged, now=NOW) is None

    ended_at = NOW + timedelta(days=3)
    assert isinstance(next_due(flagged, now=ended_at), PeriodEndedWithCancellation)
    cancelled = transition(flagged, PeriodEndedWithCancellation(), now=ended_at).state
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancelled_at == ended_at
    assert cancelled.auto_pay_enabled is False


def test_immediate_cancellation() -> None:
    result = transition(make_state(), CancellationRequested(at_period_end=False), now=NOW)
    assert result.state.status == SubscriptionStatus.CANCELLED
    assert result.reason == "cancelled_immediately"


def test_cancelled_is_terminal() -> None:
    cancelled = make_state(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
    with pytest.raises(SubscriptionCancelledError):
        transition(cancelled, PaymentRecorded(Tier.CORE), now=NOW)
    assert next_due(cancelled, now=NOW + timedelta(days=365)) is None


def test_next_due_charge_requires_auto_pay_and_method() -> None:
    assert isinstance(next_due(make_state(auto_pay_enabled=True, has_payment_method=True), now=NOW), ChargeRequired)
    declined = next_due(make_state(auto_pay_enabled=True), now=NOW)
    assert isinstance(declined, RenewalDeclined)
    assert declined.reason == "auto_pay_disabled"
