from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.domain.lifecycle import SubscriptionStatus
from clinicbilling.domain.models import Subscription, SubscriptionEvent, TenantFeatureOverride


async def get_subscription(session: AsyncSession, subscription_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_subscription_for_tenant(session: AsyncSession, tenant_id: str) -> Subscription | None:
    # Latest record wins; older ones are cancelled history.
    result = await session.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_due_subscription_ids(
    session: AsyncSession,
    *,
    now: datetime,
    grace_cutoff: datetime,
    limit: int,
) -> list[str]:
    # Period ended on a renewable status, or grace started before the cutoff.
    result = await session.execute(
        select(Subscription.id)
        .where(
            or_(
                and_(
                    Subscription.status.in_(
                        [SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value]
                    ),
                    Subscription.current_period_end <= now,
                ),
                and_(
                    Subscription.status == SubscriptionStatus.GRACE.value,
                    Subscription.grace_started_at <= grace_cutoff,
                ),
            )
        )
        .order_by(Subscription.current_period_end, Subscription.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_overrides(session: AsyncSession, tenant_id: str) -> list[TenantFeatureOverride]:
    result = await session.execute(
        select(TenantFeatureOverride)
        .where(TenantFeatureOverride.tenant_id == tenant_id)
        .order_by(TenantFeatureOverride.feature_key)
    )
    return list(result.scalars().all())


async def get_override(
    session: AsyncSession, tenant_id: str, feature_key: str
) -> TenantFeatureOverride | None:
    return await session.get(TenantFeatureOverride, (tenant_id, feature_key))


async def list_events(session: AsyncSession, subscription_id: str) -> list[SubscriptionEvent]:
    result = await session.execute(
        select(SubscriptionEvent)
        .where(SubscriptionEvent.subscription_id == subscription_id)
        .order_by(SubscriptionEvent.id)
    )
    return list(result.scalars().all())
