from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import (
    ConcurrencyConflictError,
    InvalidTierError,
    NoPaymentMethodError,
    PreconditionError,
    SubscriptionCancelledError,
    SubscriptionNotFoundError,
    UnknownTierError,
)
from clinicbilling.domain.features import parse_feature
from clinicbilling.domain.lifecycle import (
    CancellationRequested,
    LifecycleEvent,
    LifecyclePolicy,
    LifecycleState,
    SubscriptionStatus,
    TierChanged,
    TransitionResult,
    transition,
)
from clinicbilling.domain.models import (
    Payment,
    Subscription,
    SubscriptionEvent,
    TenantFeatureOverride,
    utc_now,
)
from clinicbilling.domain.tiers import (
    BillingCycle,
    Tier,
    exceeded_limits,
    get_tier,
    parse_ladder_tier,
    snapshot_price,
)
from clinicbilling.persistence.repos.payments import list_payments_for_subscription
from clinicbilling.persistence.repos.subscriptions import (
    get_override,
    get_subscription,
    get_subscription_for_tenant,
)
from clinicbilling.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYMENT_METHOD_TYPES = {"CARD", "BANK_TRANSFER", "UPI"}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    tenant_id: str
    status: str
    tier: str
    tier_name: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: datetime | None
    grace_days_remaining: int | None
    auto_pay_enabled: bool
    cancel_at_period_end: bool
    intelligence_addon: bool
    has_payment_method: bool
    payment_method_type: str | None
    price_at_snapshot: int | None
    currency: str
    version: int


@dataclass(frozen=True)
class TierChangeOutcome:
    subscription: SubscriptionSnapshot
    exceeded_limits: list[str]


def lifecycle_policy() -> LifecyclePolicy:
    settings = get_settings()
    return LifecyclePolicy(
        grace_period_days=settings.grace_period_days,
        renewal_max_transport_attempts=settings.renewal_max_transport_attempts,
    )


def lifecycle_state(subscription: Subscription) -> LifecycleState:
    return LifecycleState(
        status=SubscriptionStatus(subscription.status),
        tier=parse_ladder_tier(subscription.tier),
        billing_cycle=BillingCycle(subscription.billing_cycle),
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        auto_pay_enabled=bool(subscription.auto_pay_enabled),
        has_payment_method=bool(subscription.payment_method_token),
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        grace_started_at=subscription.grace_started_at,
        tier_selected=bool(subscription.tier_selected),
        renewal_attempts=int(subscription.renewal_attempts or 0),
        cancelled_at=subscription.cancelled_at,
    )


def apply_lifecycle_state(subscription: Subscription, state: LifecycleState) -> None:
    subscription.status = state.status.value
    subscription.tier = state.tier.value
    subscription.current_period_start = state.current_period_start
    subscription.current_period_end = state.current_period_end
    subscription.auto_pay_enabled = state.auto_pay_enabled
    subscription.cancel_at_period_end = state.cancel_at_period_end
    subscription.grace_started_at = state.grace_started_at
    subscription.tier_selected = state.tier_selected
    subscription.renewal_attempts = state.renewal_attempts
    subscription.cancelled_at = state.cancelled_at


def record_transition(
    session: AsyncSession,
    subscription: Subscription,
    result: TransitionResult,
    *,
    from_tier: str | None,
    now: datetime,
    metadata: dict[str, Any] | None = None,
) -> None:
    # History rows ride in the same transaction as the state change they describe.
    session.add(
        SubscriptionEvent(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_type=result.event_type,
            from_status=result.from_status.value,
            to_status=result.state.status.value,
            from_tier=from_tier,
            to_tier=result.state.tier.value,
            reason=result.reason,
            metadata_json=metadata,
            occurred_at=now,
        )
    )
    if result.from_status != result.state.status:
        increment_counter(f"subscription_transitions_total.{result.from_status.value}.{result.state.status.value}")
        logger.info(
            "subscription_transition id=%s tenant_id=%s event=%s from=%s to=%s tier=%s reason=%s",
            subscription.id,
            subscription.tenant_id,
            result.event_type,
            result.from_status.value,
            result.state.status.value,
            result.state.tier.value,
            result.reason,
        )


def apply_event(
    session: AsyncSession,
    subscription: Subscription,
    event: LifecycleEvent,
    *,
    now: datetime,
    metadata: dict[str, Any] | None = None,
) -> TransitionResult:
    # Run the pure transition and persist its result plus a history row.
    from_tier = subscription.tier
    result = transition(lifecycle_state(subscription), event, now=now, policy=lifecycle_policy())
    if result.changed:
        apply_lifecycle_state(subscription, result.state)
        record_transition(session, subscription, result, from_tier=from_tier, now=now, metadata=metadata)
    return result


async def run_with_optimistic_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
) -> T:
    """Run ``operation`` and commit, re-running it on a stale version write.

    ``operation`` must re-read the rows it mutates: after a conflict the
    session is rolled back and every loaded instance is expired, so the next
    attempt sees the competing writer's committed state.
    """
    attempts = max(1, attempts or get_settings().optimistic_retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
            await session.commit()
            return result
        except StaleDataError as exc:
            await session.rollback()
            increment_counter("subscription_conflicts_total")
            logger.info("subscription_write_conflict attempt=%s max_attempts=%s", attempt, attempts)
            if attempt >= attempts:
                raise ConcurrencyConflictError("Subscription was modified concurrently") from exc
        except Exception:
            await session.rollback()
            raise
    raise ConcurrencyConflictError("Subscription was modified concurrently")


async def require_subscription(session: AsyncSession, subscription_id: str) -> Subscription:
    subscription = await get_subscription(session, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(
            f"Subscription {subscription_id} not found", subscription_id=subscription_id
        )
    return subscription


async def require_tenant_subscription(session: AsyncSession, tenant_id: str) -> Subscription:
    subscription = await get_subscription_for_tenant(session, tenant_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"No subscription for clinic {tenant_id}", tenant_id=tenant_id)
    return subscription


def parse_purchasable_tier(value: str | Tier) -> Tier:
    try:
        return parse_ladder_tier(value)
    except UnknownTierError as exc:
        raise InvalidTierError(f"Invalid tier: {value}", tier=str(value)) from exc


def _ensure_open(subscription: Subscription) -> None:
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        raise SubscriptionCancelledError(
            "Subscription is cancelled; create a new subscription to reactivate",
            subscription_id=subscription.id,
        )


def build_snapshot(subscription: Subscription, *, now: datetime | None = None) -> SubscriptionSnapshot:
    now = now or utc_now()
    grace_days_remaining: int | None = None
    if subscription.status == SubscriptionStatus.GRACE.value and subscription.grace_started_at is not None:
        deadline = subscription.grace_started_at + timedelta(days=get_settings().grace_period_days)
        remaining_s = (deadline - now).total_seconds()
        grace_days_remaining = max(0, math.ceil(remaining_s / 86400))
    return SubscriptionSnapshot(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        status=subscription.status,
        tier=subscription.tier,
        tier_name=get_tier(subscription.tier).name,
        billing_cycle=subscription.billing_cycle,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_ends_at=subscription.trial_ends_at,
        grace_days_remaining=grace_days_remaining,
        auto_pay_enabled=bool(subscription.auto_pay_enabled),
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        intelligence_addon=bool(subscription.intelligence_addon),
        has_payment_method=bool(subscription.payment_method_token),
        payment_method_type=subscription.payment_method_type,
        price_at_snapshot=subscription.price_at_snapshot,
        currency=subscription.currency,
        version=int(subscription.version),
    )


async def provision_subscription(
    session: AsyncSession,
    tenant_id: str,
    *,
    billing_cycle: str | BillingCycle | None = None,
    trial_days: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Create the clinic's TRIALING/CAPTURE record, or return the open one.

    A clinic whose latest record is CANCELLED gets a brand-new record; the
    cancelled one stays behind as history.
    """
    settings = get_settings()
    now = now or utc_now()
    if not tenant_id:
        raise PreconditionError("tenant_id is required")
    existing = await get_subscription_for_tenant(session, tenant_id)
    if existing is not None and existing.status != SubscriptionStatus.CANCELLED.value:
        return existing
    cycle = BillingCycle(str(billing_cycle or settings.default_billing_cycle).upper())
    days = settings.trial_days if trial_days is None else int(trial_days)
    if days < 1:
        raise PreconditionError("trial_days must be at least 1")
    trial_end = now + timedelta(days=days)
    subscription = Subscription(
        tenant_id=tenant_id,
        status=SubscriptionStatus.TRIALING.value,
        tier=Tier.CAPTURE.value,
        intelligence_addon=False,
        billing_cycle=cycle.value,
        current_period_start=now,
        current_period_end=trial_end,
        trial_ends_at=trial_end,
        price_at_snapshot=snapshot_price(Tier.CAPTURE, cycle),
        currency=settings.default_currency,
        auto_pay_enabled=False,
        cancel_at_period_end=False,
        tier_selected=False,
        renewal_attempts=0,
        created_at=now,
        updated_at=now,
    )
    session.add(subscription)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent provision won the partial unique index; hand back its record.
        await session.rollback()
        existing = await get_subscription_for_tenant(session, tenant_id)
        if existing is None:
            raise
        return existing
    session.add(
        SubscriptionEvent(
            subscription_id=subscription.id,
            tenant_id=tenant_id,
            event_type="Provisioned",
            from_status=None,
            to_status=subscription.status,
            from_tier=None,
            to_tier=subscription.tier,
            occurred_at=now,
        )
    )
    await session.commit()
    logger.info("subscription_provisioned id=%s tenant_id=%s trial_ends_at=%s", subscription.id, tenant_id, trial_end.isoformat())
    return subscription


async def get_subscription_snapshot(
    session: AsyncSession, tenant_id: str, *, now: datetime | None = None
) -> SubscriptionSnapshot:
    return build_snapshot(await require_tenant_subscription(session, tenant_id), now=now)


async def list_payment_history(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[Payment]:
    subscription = await require_tenant_subscription(session, tenant_id)
    return await list_payments_for_subscription(session, subscription.id, limit=limit, offset=offset)


async def change_tier(
    session: AsyncSession,
    subscription_id: str,
    tier: str | Tier,
    *,
    usage: dict[str, int] | None = None,
    now: datetime | None = None,
) -> TierChangeOutcome:
    # Grandfather existing usage: report exceeded limits, never block the change.
    target = parse_purchasable_tier(tier)
    now = now or utc_now()

    async def _operation() -> Subscription:
        subscription = await require_subscription(session, subscription_id)
        _ensure_open(subscription)
        apply_event(session, subscription, TierChanged(target), now=now, metadata={"source": "admin"})
        price = snapshot_price(target, subscription.billing_cycle)
        subscription.price_at_snapshot = price
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    exceeded = exceeded_limits(target, usage or {})
    if exceeded:
        logger.warning(
            "tier_change_usage_over_limit id=%s tier=%s exceeded=%s",
            subscription.id,
            target.value,
            ",".join(exceeded),
        )
    return TierChangeOutcome(subscription=build_snapshot(subscription, now=now), exceeded_limits=exceeded)


async def set_auto_pay(session: AsyncSession, subscription_id: str, enabled: bool) -> SubscriptionSnapshot:
    async def _operation() -> Subscription:
        subscription = await require_subscription(session, subscription_id)
        _ensure_open(subscription)
        if enabled and not subscription.payment_method_token:
            raise NoPaymentMethodError(
                "Save a payment method before enabling auto-pay", subscription_id=subscription_id
            )
        subscription.auto_pay_enabled = bool(enabled)
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    logger.info("subscription_auto_pay id=%s enabled=%s", subscription.id, bool(enabled))
    return build_snapshot(subscription)


async def save_payment_method(
    session: AsyncSession,
    subscription_id: str,
    *,
    token: str,
    method_type: str,
    enable_auto_pay: bool = False,
) -> SubscriptionSnapshot:
    normalized_type = (method_type or "").strip().upper()
    if normalized_type not in PAYMENT_METHOD_TYPES:
        raise PreconditionError(f"Unsupported payment method type: {method_type}", method_type=method_type)
    if not token:
        raise PreconditionError("Payment method token is required")

    async def _operation() -> Subscription:
        subscription = await require_subscription(session, subscription_id)
        _ensure_open(subscription)
        subscription.payment_method_token = token
        subscription.payment_method_type = normalized_type
        if enable_auto_pay:
            subscription.auto_pay_enabled = True
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    return build_snapshot(subscription)


async def request_cancellation(
    session: AsyncSession,
    subscription_id: str,
    *,
    at_period_end: bool = True,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    now = now or utc_now()

    async def _operation() -> Subscription:
        subscription = await require_subscription(session, subscription_id)
        apply_event(
            session,
            subscription,
            CancellationRequested(at_period_end=at_period_end),
            now=now,
        )
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    return build_snapshot(subscription, now=now)


async def set_intelligence_addon(
    session: AsyncSession, subscription_id: str, enabled: bool
) -> SubscriptionSnapshot:
    async def _operation() -> Subscription:
        subscription = await require_subscription(session, subscription_id)
        if enabled:
            _ensure_open(subscription)
        subscription.intelligence_addon = bool(enabled)
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    logger.info("intelligence_addon_toggled id=%s enabled=%s", subscription.id, bool(enabled))
    return build_snapshot(subscription)


async def set_feature_overrides(
    session: AsyncSession, tenant_id: str, overrides: Mapping[str, bool | None]
) -> None:
    """Apply a batch of overrides in one commit; None removes an override.

    Every key is parsed before anything is staged, so one unknown feature
    rejects the whole batch, and a failed commit leaves none of it applied.
    """
    parsed = {parse_feature(feature).value: enabled for feature, enabled in overrides.items()}
    try:
        for feature_key, enabled in parsed.items():
            override = await get_override(session, tenant_id, feature_key)
            if enabled is None:
                if override is not None:
                    await session.delete(override)
            elif override is None:
                session.add(
                    TenantFeatureOverride(tenant_id=tenant_id, feature_key=feature_key, enabled=bool(enabled))
                )
            else:
                override.enabled = bool(enabled)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    for feature_key, enabled in parsed.items():
        logger.info("feature_override_set tenant_id=%s feature=%s enabled=%s", tenant_id, feature_key, enabled)


async def set_feature_override(
    session: AsyncSession, tenant_id: str, feature: str, enabled: bool | None
) -> None:
    # enabled=None removes the override so the tier decides again.
    await set_feature_overrides(session, tenant_id, {feature: enabled})


async def clear_feature_override(session: AsyncSession, tenant_id: str, feature: str) -> None:
    await set_feature_override(session, tenant_id, feature, None)


async def _clear_grants(session: AsyncSession, subscription: Subscription) -> None:
    subscription.intelligence_addon = False
    await session.execute(
        delete(TenantFeatureOverride).where(TenantFeatureOverride.tenant_id == subscription.tenant_id)
    )


async def reset_entitlements(session: AsyncSession, tenant_id: str) -> SubscriptionSnapshot:
    # Drop the add-on and every override; tier and status are left alone.
    async def _operation() -> Subscription:
        subscription = await require_tenant_subscription(session, tenant_id)
        await _clear_grants(session, subscription)
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    logger.info("entitlements_reset tenant_id=%s subscription_id=%s", tenant_id, subscription.id)
    return build_snapshot(subscription)


async def deactivate_clinic(
    session: AsyncSession, tenant_id: str, *, now: datetime | None = None
) -> SubscriptionSnapshot:
    """Cancel immediately and soft-reset entitlements; nothing is deleted but overrides."""
    now = now or utc_now()

    async def _operation() -> Subscription:
        subscription = await require_tenant_subscription(session, tenant_id)
        if subscription.status != SubscriptionStatus.CANCELLED.value:
            apply_event(
                session,
                subscription,
                CancellationRequested(at_period_end=False),
                now=now,
                metadata={"source": "deactivation"},
            )
        await _clear_grants(session, subscription)
        return subscription

    subscription = await run_with_optimistic_retry(session, _operation)
    logger.info("clinic_deactivated tenant_id=%s subscription_id=%s", tenant_id, subscription.id)
    return build_snapshot(subscription, now=now)
