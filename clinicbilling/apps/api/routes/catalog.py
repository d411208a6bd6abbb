from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from clinicbilling.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clinicbilling.apps.api.response import SuccessEnvelope, success_response
from clinicbilling.domain.features import FEATURE_TIER_MAP, display_name
from clinicbilling.domain.tiers import (
    ANNUAL_DISCOUNT_PERCENT,
    TierDefinition,
    pricing_table,
)


router = APIRouter(prefix="/catalog", tags=["catalog"], responses=DEFAULT_ERROR_RESPONSES)


class TierLimitsResponse(BaseModel):
    max_patients: int
    max_doctors: int
    storage_gb: int
    max_branches: int


class TierResponse(BaseModel):
    tier: str
    name: str
    description: str
    tagline: str
    # Minor currency units, or "custom" for negotiated pricing.
    monthly_price: int | str
    yearly_price: int | str
    currency: str
    is_addon: bool
    limits: TierLimitsResponse | None


class TierCatalogResponse(BaseModel):
    annual_discount_percent: int
    tiers: list[TierResponse]


class FeatureResponse(BaseModel):
    feature_key: str
    display_name: str
    required_tier: str


class FeatureCatalogResponse(BaseModel):
    features: list[FeatureResponse]


def _tier_payload(definition: TierDefinition) -> TierResponse:
    limits = definition.limits
    return TierResponse(
        tier=definition.tier.value,
        name=definition.name,
        description=definition.description,
        tagline=definition.tagline,
        monthly_price=definition.pricing.monthly,
        yearly_price=definition.pricing.yearly,
        currency=definition.pricing.currency,
        is_addon=limits is None,
        limits=(
            TierLimitsResponse(
                max_patients=limits.max_patients,
                max_doctors=limits.max_doctors,
                storage_gb=limits.storage_gb,
                max_branches=limits.max_branches,
            )
            if limits is not None
            else None
        ),
    )


@router.get("/tiers", response_model=SuccessEnvelope[TierCatalogResponse])
async def list_tiers(request: Request) -> dict:
    # Public pricing page data; ladder order first, add-on last.
    payload = TierCatalogResponse(
        annual_discount_percent=ANNUAL_DISCOUNT_PERCENT,
        tiers=[_tier_payload(definition) for definition in pricing_table()],
    )
    return success_response(request=request, data=payload)


@router.get("/features", response_model=SuccessEnvelope[FeatureCatalogResponse])
async def list_features(request: Request) -> dict:
    payload = FeatureCatalogResponse(
        features=[
            FeatureResponse(
                feature_key=feature.value,
                display_name=display_name(feature),
                required_tier=tier.value,
            )
            for feature, tier in FEATURE_TIER_MAP.items()
        ]
    )
    return success_response(request=request, data=payload)
