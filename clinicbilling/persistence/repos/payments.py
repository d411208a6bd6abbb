from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.domain.models import Payment


PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_FAILED = "failed"


async def get_paid_payment_by_gateway_id(session: AsyncSession, gateway_payment_id: str) -> Payment | None:
    result = await session.execute(
        select(Payment).where(
            Payment.gateway_payment_id == gateway_payment_id,
            Payment.status == PAYMENT_STATUS_PAID,
        )
    )
    return result.scalar_one_or_none()


async def list_payments_for_subscription(
    session: AsyncSession,
    subscription_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[Payment]:
    # Newest first for the billing history view.
    result = await session.execute(
        select(Payment)
        .where(Payment.subscription_id == subscription_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def count_paid_payments(session: AsyncSession, gateway_payment_id: str) -> int:
    result = await session.execute(
        select(Payment.id).where(
            Payment.gateway_payment_id == gateway_payment_id,
            Payment.status == PAYMENT_STATUS_PAID,
        )
    )
    return len(result.scalars().all())


async def count_failed_payments(session: AsyncSession, subscription_id: str) -> int:
    result = await session.execute(
        select(func.count(Payment.id)).where(
            Payment.subscription_id == subscription_id,
            Payment.status == PAYMENT_STATUS_FAILED,
        )
    )
    return int(result.scalar_one())
