"""Subscription lifecycle state machine.

``transition`` is a pure function from ``(LifecycleState, event)`` to a new
``LifecycleState``. It performs no I/O; callers load the persisted record,
build a state, apply one event and write the result back under the record's
version check. ``next_due`` tells the sweep which event, if any, the clock has
made due for a subscription.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Union

from dateutil.relativedelta import relativedelta

from clinicbilling.core.errors import (
    InvalidTransitionError,
    SubscriptionCancelledError,
)
from clinicbilling.domain.tiers import BillingCycle, Tier, parse_ladder_tier


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


# Statuses whose period end triggers a renewal decision.
RENEWABLE_STATUSES = (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE)


@dataclass(frozen=True)
class LifecyclePolicy:
    grace_period_days: int = 7
    renewal_max_transport_attempts: int = 3


@dataclass(frozen=True)
class LifecycleState:
    status: SubscriptionStatus
    tier: Tier
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    auto_pay_enabled: bool = False
    has_payment_method: bool = False
    cancel_at_period_end: bool = False
    grace_started_at: datetime | None = None
    tier_selected: bool = False
    renewal_attempts: int = 0
    cancelled_at: datetime | None = None

    def __post_init__(self) -> None:
        # Reject states the machine can never produce so bad rows surface on load.
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        in_grace = self.status == SubscriptionStatus.GRACE
        if in_grace and self.grace_started_at is None:
            raise ValueError("GRACE requires grace_started_at")
        if not in_grace and self.grace_started_at is not None:
            raise ValueError(f"{self.status.value} must not carry grace_started_at")
        if self.renewal_attempts < 0:
            raise ValueError("renewal_attempts must be non-negative")
        parse_ladder_tier(self.tier)

    def grace_deadline(self, policy: LifecyclePolicy) -> datetime | None:
        if self.grace_started_at is None:
            return None
        return self.grace_started_at + timedelta(days=policy.grace_period_days)

    @property
    def can_auto_renew(self) -> bool:
        return self.auto_pay_enabled and self.has_payment_method


@dataclass(frozen=True)
class TrialExpired:
    """Trial ended without a renewal charge being attempted."""


@dataclass(frozen=True)
class RenewalSucceeded:
    gateway_payment_id: str | None = None


@dataclass(frozen=True)
class RenewalDeclined:
    reason: str = "declined"


@dataclass(frozen=True)
class RenewalDeferred:
    """Gateway was unreachable; leave the subscription as-is and retry later."""

    reason: str = "transient"


@dataclass(frozen=True)
class GraceDeadlineReached:
    pass


@dataclass(frozen=True)
class PaymentRecorded:
    tier: Tier


@dataclass(frozen=True)
class TierChanged:
    tier: Tier


@dataclass(frozen=True)
class CancellationRequested:
    at_period_end: bool = True


@dataclass(frozen=True)
class PeriodEndedWithCancellation:
    pass


LifecycleEvent = Union[
    TrialExpired,
    RenewalSucceeded,
    RenewalDeclined,
    RenewalDeferred,
    GraceDeadlineReached,
    PaymentRecorded,
    TierChanged,
    CancellationRequested,
    PeriodEndedWithCancellation,
]


@dataclass(frozen=True)
class ChargeRequired:
    """The period has ended and auto-pay should attempt a renewal charge."""


@dataclass(frozen=True)
class TransitionResult:
    state: LifecycleState
    from_status: SubscriptionStatus
    event_type: str
    changed: bool
    reason: str | None = None


def add_cycle(moment: datetime, cycle: BillingCycle) -> datetime:
    # Calendar arithmetic: Jan 31 + 1 month lands on the last day of February.
    if BillingCycle(cycle) == BillingCycle.YEARLY:
        return moment + relativedelta(years=1)
    return moment + relativedelta(months=1)


def event_type_of(event: LifecycleEvent) -> str:
    return type(event).__name__


def _result(
    previous: LifecycleState,
    state: LifecycleState,
    event: LifecycleEvent,
    reason: str | None = None,
) -> TransitionResult:
    return TransitionResult(
        state=state,
        from_status=previous.status,
        event_type=event_type_of(event),
        changed=state != previous,
        reason=reason,
    )


def _roll_from_period_end(state: LifecycleState, **changes) -> LifecycleState:
    start = state.current_period_end
    return replace(
        state,
        current_period_start=start,
        current_period_end=add_cycle(start, state.billing_cycle),
        **changes,
    )


def _fresh_period(state: LifecycleState, now: datetime, **changes) -> LifecycleState:
    return replace(
        state,
        current_period_start=now,
        current_period_end=add_cycle(now, state.billing_cycle),
        **changes,
    )


def _enter_grace(state: LifecycleState, now: datetime) -> LifecycleState:
    return replace(
        state,
        status=SubscriptionStatus.GRACE,
        grace_started_at=now,
        renewal_attempts=0,
    )


def _cancel(state: LifecycleState, now: datetime) -> LifecycleState:
    return replace(
        state,
        status=SubscriptionStatus.CANCELLED,
        grace_started_at=None,
        auto_pay_enabled=False,
        cancelled_at=now,
    )


def _invalid(state: LifecycleState, event: LifecycleEvent) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"{event_type_of(event)} is not valid while {state.status.value}",
        status=state.status.value,
        event=event_type_of(event),
    )


def _period_due(state: LifecycleState, now: datetime) -> bool:
    return state.current_period_end <= now


def transition(
    state: LifecycleState,
    event: LifecycleEvent,
    *,
    now: datetime,
    policy: LifecyclePolicy | None = None,
) -> TransitionResult:
    policy = policy or LifecyclePolicy()
    status = state.status

    if status == SubscriptionStatus.CANCELLED:
        raise SubscriptionCancelledError(
            "Subscription is cancelled; create a new subscription to reactivate",
            event=event_type_of(event),
        )

    if isinstance(event, TierChanged):
        # Administrative tier change never touches status or period bounds.
        tier = parse_ladder_tier(event.tier)
        selected = state.tier_selected or status == SubscriptionStatus.TRIALING
        return _result(state, replace(state, tier=tier, tier_selected=selected), event)

    if isinstance(event, PaymentRecorded):
        tier = parse_ladder_tier(event.tier)
        if status == SubscriptionStatus.TRIALING:
            new_state = _fresh_period(
                state,
                now,
                status=SubscriptionStatus.ACTIVE,
                tier=tier,
                tier_selected=True,
                renewal_attempts=0,
            )
        elif status == SubscriptionStatus.ACTIVE:
            if _period_due(state, now):
                new_state = _roll_from_period_end(state, tier=tier, renewal_attempts=0)
            else:
                new_state = replace(state, tier=tier)
        elif status == SubscriptionStatus.GRACE:
            # Roll from the old period end so disputes do not drift the billing anchor.
            new_state = _roll_from_period_end(
                state,
                status=SubscriptionStatus.ACTIVE,
                tier=tier,
                grace_started_at=None,
                renewal_attempts=0,
            )
        else:
            # The suspension itself is not billed; start a fresh period.
            new_state = _fresh_period(
                state,
                now,
                status=SubscriptionStatus.ACTIVE,
                tier=tier,
                renewal_attempts=0,
            )
        return _result(state, new_state, event)

    if isinstance(event, CancellationRequested):
        if event.at_period_end:
            return _result(state, replace(state, cancel_at_period_end=True), event)
        return _result(state, _cancel(state, now), event, reason="cancelled_immediately")

    if isinstance(event, GraceDeadlineReached):
        if status != SubscriptionStatus.GRACE:
            raise _invalid(state, event)
        deadline = state.grace_deadline(policy)
        if deadline is None or now < deadline:
            return _result(state, state, event)
        return _result(
            state,
            replace(state, status=SubscriptionStatus.SUSPENDED, grace_started_at=None),
            event,
            reason="grace_elapsed",
        )

    # Remaining events are all period-end decisions for TRIALING/ACTIVE.
    if status not in RENEWABLE_STATUSES:
        raise _invalid(state, event)
    if not _period_due(state, now):
        # Another worker already advanced this period.
        return _result(state, state, event)

    if isinstance(event, RenewalSucceeded):
        new_state = _roll_from_period_end(
            state,
            status=SubscriptionStatus.ACTIVE,
            renewal_attempts=0,
        )
        return _result(state, new_state, event)

    if isinstance(event, RenewalDeclined):
        return _result(state, _enter_grace(state, now), event, reason=event.reason)

    if isinstance(event, RenewalDeferred):
        attempts = state.renewal_attempts + 1
        if attempts >= max(1, policy.renewal_max_transport_attempts):
            return _result(state, _enter_grace(state, now), event, reason="transport_retries_exhausted")
        return _result(state, replace(state, renewal_attempts=attempts), event, reason=event.reason)

    if isinstance(event, PeriodEndedWithCancellation):
        if not state.cancel_at_period_end:
            raise _invalid(state, event)
        return _result(state, _cancel(state, now), event, reason="cancel_at_period_end")

    if isinstance(event, TrialExpired):
        if status != SubscriptionStatus.TRIALING:
            raise _invalid(state, event)
        if not state.has_payment_method and not state.tier_selected:
            return _result(state, _cancel(state, now), event, reason="trial_expired")
        return _result(state, _enter_grace(state, now), event, reason="awaiting_payment")

    raise _invalid(state, event)


def next_due(
    state: LifecycleState,
    *,
    now: datetime,
    policy: LifecyclePolicy | None = None,
) -> LifecycleEvent | ChargeRequired | None:
    """Return what the clock has made due for this subscription, if anything."""
    policy = policy or LifecyclePolicy()
    if state.status == SubscriptionStatus.GRACE:
        deadline = state.grace_deadline(policy)
        if deadline is not None and now >= deadline:
            return GraceDeadlineReached()
        return None
    if state.status not in RENEWABLE_STATUSES or not _period_due(state, now):
        return None
    if state.cancel_at_period_end:
        return PeriodEndedWithCancellation()
    if state.can_auto_renew:
        return ChargeRequired()
    if state.status == SubscriptionStatus.TRIALING:
        return TrialExpired()
    return RenewalDeclined(reason="auto_pay_disabled")
