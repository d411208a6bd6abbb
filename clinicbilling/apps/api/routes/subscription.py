from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.apps.api.deps import Principal, get_db, require_tenant_role
from clinicbilling.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clinicbilling.apps.api.response import SuccessEnvelope, success_response
from clinicbilling.domain.models import Payment
from clinicbilling.services.subscriptions import (
    SubscriptionSnapshot,
    get_subscription_snapshot,
    list_payment_history,
    request_cancellation,
    require_tenant_subscription,
    save_payment_method,
    set_auto_pay,
)


router = APIRouter(prefix="/subscription", tags=["subscription"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionResponse(BaseModel):
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


class PaymentResponse(BaseModel):
    payment_id: str
    amount: int
    currency: str
    status: str
    kind: str
    tier: str | None
    gateway_payment_id: str | None
    payment_method: str | None
    failure_reason: str | None
    paid_at: datetime | None
    created_at: datetime


class PaymentListResponse(BaseModel):
    items: list[PaymentResponse]
    limit: int
    offset: int


class AutoPayRequest(BaseModel):
    enabled: bool


class PaymentMethodRequest(BaseModel):
    # Gateway-issued token; raw card data never reaches this service.
    token: str = Field(min_length=1, max_length=256)
    method_type: Literal["CARD", "BANK_TRANSFER", "UPI"]
    enable_auto_pay: bool = False


class CancelRequest(BaseModel):
    at_period_end: bool = True


def snapshot_payload(snapshot: SubscriptionSnapshot) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription_id=snapshot.subscription_id,
        tenant_id=snapshot.tenant_id,
        status=snapshot.status,
        tier=snapshot.tier,
        tier_name=snapshot.tier_name,
        billing_cycle=snapshot.billing_cycle,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        trial_ends_at=snapshot.trial_ends_at,
        grace_days_remaining=snapshot.grace_days_remaining,
        auto_pay_enabled=snapshot.auto_pay_enabled,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        intelligence_addon=snapshot.intelligence_addon,
        has_payment_method=snapshot.has_payment_method,
        payment_method_type=snapshot.payment_method_type,
        price_at_snapshot=snapshot.price_at_snapshot,
        currency=snapshot.currency,
    )


def payment_payload(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        kind=payment.kind,
        tier=payment.tier,
        gateway_payment_id=payment.gateway_payment_id,
        payment_method=payment.payment_method,
        failure_reason=payment.failure_reason,
        paid_at=payment.paid_at,
        created_at=payment.created_at,
    )


@router.get("", response_model=SuccessEnvelope[SubscriptionResponse])
async def get_subscription(
    request: Request,
    principal: Principal = Depends(require_tenant_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Billing page view: status, tier, period end and grace countdown.
    try:
        snapshot = await get_subscription_snapshot(db, principal.tenant_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading subscription") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))


@router.get("/payments", response_model=SuccessEnvelope[PaymentListResponse])
async def list_payments(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_tenant_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        payments = await list_payment_history(db, principal.tenant_id, limit=limit, offset=offset)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing payments") from exc
    payload = PaymentListResponse(items=[payment_payload(p) for p in payments], limit=limit, offset=offset)
    return success_response(request=request, data=payload)


@router.put("/auto-pay", response_model=SuccessEnvelope[SubscriptionResponse])
async def update_auto_pay(
    request: Request,
    payload: AutoPayRequest,
    principal: Principal = Depends(require_tenant_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        subscription = await require_tenant_subscription(db, principal.tenant_id)
        snapshot = await set_auto_pay(db, subscription.id, payload.enabled)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating auto-pay") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))


@router.put("/payment-method", response_model=SuccessEnvelope[SubscriptionResponse])
async def update_payment_method(
    request: Request,
    payload: PaymentMethodRequest,
    principal: Principal = Depends(require_tenant_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        subscription = await require_tenant_subscription(db, principal.tenant_id)
        snapshot = await save_payment_method(
            db,
            subscription.id,
            token=payload.token,
            method_type=payload.method_type,
            enable_auto_pay=payload.enable_auto_pay,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while saving payment method") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))


@router.post("/cancel", response_model=SuccessEnvelope[SubscriptionResponse])
async def cancel_subscription(
    request: Request,
    payload: CancelRequest | None = None,
    principal: Principal = Depends(require_tenant_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Default keeps access until the paid period ends.
    at_period_end = True if payload is None else payload.at_period_end
    try:
        subscription = await require_tenant_subscription(db, principal.tenant_id)
        snapshot = await request_cancellation(db, subscription.id, at_period_end=at_period_end)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while cancelling subscription") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))
