from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.apps.api.deps import Principal, get_db, require_role
from clinicbilling.apps.api.openapi import DEFAULT_ERROR_RESPONSES, PAYMENT_ERROR_RESPONSES
from clinicbilling.apps.api.response import SuccessEnvelope, success_response
from clinicbilling.apps.api.routes.subscription import (
    PaymentResponse,
    SubscriptionResponse,
    payment_payload,
    snapshot_payload,
)
from clinicbilling.persistence.repos.subscriptions import list_overrides
from clinicbilling.services.payments import PAYMENT_KIND_MANUAL, process_payment, retry_payment
from clinicbilling.services.subscriptions import (
    build_snapshot,
    change_tier,
    deactivate_clinic,
    provision_subscription,
    require_tenant_subscription,
    set_feature_overrides,
    set_intelligence_addon,
)
from clinicbilling.services.sweep import run_lifecycle_sweep_cycle
from clinicbilling.services.telemetry import (
    availability,
    counters_snapshot,
    external_call_summary,
    gauges_snapshot,
    request_latency_p95,
)


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={**DEFAULT_ERROR_RESPONSES, **PAYMENT_ERROR_RESPONSES},
)


class ProvisionRequest(BaseModel):
    billing_cycle: Literal["MONTHLY", "YEARLY"] | None = None
    trial_days: int | None = Field(default=None, ge=1, le=365)


class ManualPaymentRequest(BaseModel):
    # Amount in minor currency units (paise for INR).
    amount: int
    currency: str = Field(default="INR", min_length=3, max_length=3)
    tier: str
    payment_method: str = Field(min_length=1, max_length=64)
    gateway_payment_id: str = Field(min_length=1, max_length=128)
    notes: str | None = Field(default=None, max_length=1024)


class PaymentOutcomeResponse(BaseModel):
    subscription: SubscriptionResponse
    payment: PaymentResponse
    replayed: bool


class TierChangeRequest(BaseModel):
    tier: str
    # Current usage, keyed like tier limits, so the response can flag exceeded limits.
    usage: dict[str, int] | None = None


class TierChangeResponse(BaseModel):
    subscription: SubscriptionResponse
    exceeded_limits: list[str]


class OverridesRequest(BaseModel):
    # null removes an override and hands the decision back to the tier.
    overrides: dict[str, bool | None]


class OverridesResponse(BaseModel):
    tenant_id: str
    overrides: dict[str, bool]


class IntelligenceRequest(BaseModel):
    enabled: bool


class SweepRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


@router.post("/clinics/{clinic_id}/provision", response_model=SuccessEnvelope[SubscriptionResponse])
async def provision_clinic(
    clinic_id: str,
    request: Request,
    payload: ProvisionRequest | None = None,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = payload or ProvisionRequest()
    try:
        subscription = await provision_subscription(
            db,
            clinic_id,
            billing_cycle=payload.billing_cycle,
            trial_days=payload.trial_days,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while provisioning clinic") from exc
    return success_response(request=request, data=snapshot_payload(build_snapshot(subscription)))


@router.post("/clinics/{clinic_id}/payments", response_model=SuccessEnvelope[PaymentOutcomeResponse])
async def record_payment(
    clinic_id: str,
    request: Request,
    payload: ManualPaymentRequest,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Replaying a gateway_payment_id returns the original result with replayed=true.
    try:
        subscription = await require_tenant_subscription(db, clinic_id)
        outcome = await process_payment(
            db,
            subscription_id=subscription.id,
            amount=payload.amount,
            currency=payload.currency,
            new_tier=payload.tier,
            payment_method=payload.payment_method,
            gateway_payment_id=payload.gateway_payment_id,
            notes=payload.notes,
            kind=PAYMENT_KIND_MANUAL,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while recording payment") from exc
    data = PaymentOutcomeResponse(
        subscription=snapshot_payload(outcome.subscription),
        payment=payment_payload(outcome.payment),
        replayed=outcome.replayed,
    )
    return success_response(request=request, data=data)


@router.post("/clinics/{clinic_id}/charge", response_model=SuccessEnvelope[PaymentOutcomeResponse])
async def charge_overdue(
    clinic_id: str,
    request: Request,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Declines answer 402 with a failed ledger entry; an unreachable gateway answers 503.
    try:
        subscription = await require_tenant_subscription(db, clinic_id)
        outcome = await retry_payment(db, subscription.id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while charging clinic") from exc
    data = PaymentOutcomeResponse(
        subscription=snapshot_payload(outcome.subscription),
        payment=payment_payload(outcome.payment),
        replayed=outcome.replayed,
    )
    return success_response(request=request, data=data)


@router.patch("/clinics/{clinic_id}/tier", response_model=SuccessEnvelope[TierChangeResponse])
async def update_tier(
    clinic_id: str,
    request: Request,
    payload: TierChangeRequest,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        subscription = await require_tenant_subscription(db, clinic_id)
        outcome = await change_tier(db, subscription.id, payload.tier, usage=payload.usage)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while changing tier") from exc
    data = TierChangeResponse(
        subscription=snapshot_payload(outcome.subscription),
        exceeded_limits=outcome.exceeded_limits,
    )
    return success_response(request=request, data=data)


@router.patch("/clinics/{clinic_id}/overrides", response_model=SuccessEnvelope[OverridesResponse])
async def update_overrides(
    clinic_id: str,
    request: Request,
    payload: OverridesRequest,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # One bad feature name or a failed write rejects the whole batch.
    try:
        await set_feature_overrides(db, clinic_id, payload.overrides)
        rows = await list_overrides(db, clinic_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating overrides") from exc
    data = OverridesResponse(
        tenant_id=clinic_id,
        overrides={row.feature_key: bool(row.enabled) for row in rows},
    )
    return success_response(request=request, data=data)


@router.put("/clinics/{clinic_id}/intelligence", response_model=SuccessEnvelope[SubscriptionResponse])
async def update_intelligence(
    clinic_id: str,
    request: Request,
    payload: IntelligenceRequest,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        subscription = await require_tenant_subscription(db, clinic_id)
        snapshot = await set_intelligence_addon(db, subscription.id, payload.enabled)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while toggling add-on") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))


@router.post("/clinics/{clinic_id}/deactivate", response_model=SuccessEnvelope[SubscriptionResponse])
async def deactivate(
    clinic_id: str,
    request: Request,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Cancels immediately and drops grants; records are retained for audit.
    try:
        snapshot = await deactivate_clinic(db, clinic_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deactivating clinic") from exc
    return success_response(request=request, data=snapshot_payload(snapshot))


@router.post("/lifecycle/sweep", response_model=SuccessEnvelope[dict[str, Any]])
async def trigger_sweep(
    request: Request,
    payload: SweepRequest | None = None,
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # Runs one sweep inline; the worker runs the same cycle on a schedule.
    limit = payload.limit if payload is not None else None
    try:
        stats = await run_lifecycle_sweep_cycle(limit=limit)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while running lifecycle sweep") from exc
    return success_response(request=request, data=stats)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def billing_metrics(
    request: Request,
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # In-process figures for this API worker only.
    data = {
        "availability_5m": availability(300),
        "availability_1h": availability(3600),
        "request_latency_p95_ms_1h": request_latency_p95(3600, path_prefix="/v1"),
        "gateway_calls_1h": external_call_summary(3600),
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
    }
    return success_response(request=request, data=data)
