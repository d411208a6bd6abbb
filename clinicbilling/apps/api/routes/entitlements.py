from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.apps.api.deps import Principal, get_db, require_tenant_role
from clinicbilling.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clinicbilling.apps.api.response import SuccessEnvelope, success_response
from clinicbilling.domain.features import display_name
from clinicbilling.services.entitlements import (
    EntitlementDecision,
    evaluate_all,
    load_entitlement_state,
    require_feature,
)


router = APIRouter(prefix="/entitlements", tags=["entitlements"], responses=DEFAULT_ERROR_RESPONSES)


class EntitlementResponse(BaseModel):
    feature_key: str
    display_name: str
    enabled: bool
    required_tier: str
    source: str


class EntitlementListResponse(BaseModel):
    tenant_id: str
    current_tier: str
    has_intelligence: bool
    features: list[EntitlementResponse]


def _decision_payload(decision: EntitlementDecision) -> EntitlementResponse:
    return EntitlementResponse(
        feature_key=decision.feature.value,
        display_name=display_name(decision.feature),
        enabled=decision.allowed,
        required_tier=decision.required_tier.value,
        source=decision.source,
    )


@router.get("", response_model=SuccessEnvelope[EntitlementListResponse])
async def list_entitlements(
    request: Request,
    principal: Principal = Depends(require_tenant_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Locked features are listed too so the UI can render upgrade prompts.
    try:
        state = await load_entitlement_state(db, principal.tenant_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading entitlements") from exc
    payload = EntitlementListResponse(
        tenant_id=principal.tenant_id,
        current_tier=state.current_tier.value,
        has_intelligence=state.has_intelligence,
        features=[_decision_payload(decision) for decision in evaluate_all(state)],
    )
    return success_response(request=request, data=payload)


@router.get("/{feature}", response_model=SuccessEnvelope[EntitlementResponse])
async def check_entitlement(
    feature: str,
    request: Request,
    principal: Principal = Depends(require_tenant_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # 403 FEATURE_NOT_ENABLED with required_tier when locked.
    try:
        decision = await require_feature(session=db, tenant_id=principal.tenant_id, feature=feature)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while checking entitlement") from exc
    return success_response(request=request, data=_decision_payload(decision))
