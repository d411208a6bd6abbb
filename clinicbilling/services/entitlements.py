from __future__ import annotations

from dataclasses import dataclass, field
import logging
from types import MappingProxyType
from typing import Mapping

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.core.errors import UnknownFeatureError
from clinicbilling.domain.features import Feature, display_name, parse_feature, required_tier
from clinicbilling.domain.lifecycle import SubscriptionStatus
from clinicbilling.domain.models import Subscription
from clinicbilling.domain.tiers import Tier, compare, parse_ladder_tier
from clinicbilling.persistence.repos.subscriptions import get_subscription_for_tenant, list_overrides


logger = logging.getLogger(__name__)

BASELINE_TIER = Tier.CAPTURE
# Lapsed subscriptions keep read access to the free baseline only.
_LAPSED_STATUSES = {SubscriptionStatus.SUSPENDED.value, SubscriptionStatus.CANCELLED.value}

SOURCE_OVERRIDE = "override"
SOURCE_ADDON = "addon"
SOURCE_TIER = "tier"


@dataclass(frozen=True)
class TenantEntitlementState:
    current_tier: Tier = BASELINE_TIER
    has_intelligence: bool = False
    feature_overrides: Mapping[Feature, bool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze overrides so a snapshot can be shared across concurrent checks.
        object.__setattr__(self, "current_tier", parse_ladder_tier(self.current_tier))
        frozen = {parse_feature(key): bool(value) for key, value in dict(self.feature_overrides).items()}
        object.__setattr__(self, "feature_overrides", MappingProxyType(frozen))


@dataclass(frozen=True)
class EntitlementDecision:
    feature: Feature
    allowed: bool
    required_tier: Tier
    source: str


def decide(state: TenantEntitlementState, feature: Feature | str) -> EntitlementDecision:
    feature = parse_feature(feature)
    required = required_tier(feature)
    if feature in state.feature_overrides:
        return EntitlementDecision(feature, state.feature_overrides[feature], required, SOURCE_OVERRIDE)
    if required == Tier.INTELLIGENCE:
        return EntitlementDecision(feature, state.has_intelligence, required, SOURCE_ADDON)
    return EntitlementDecision(feature, compare(state.current_tier, required) >= 0, required, SOURCE_TIER)


def can_access(state: TenantEntitlementState, feature: Feature | str) -> bool:
    return decide(state, feature).allowed


def is_locked(state: TenantEntitlementState, feature: Feature | str) -> bool:
    return not can_access(state, feature)


def get_required_tier(feature: Feature | str) -> Tier:
    return required_tier(feature)


def evaluate_all(state: TenantEntitlementState) -> list[EntitlementDecision]:
    return [decide(state, feature) for feature in Feature]


def state_from_subscription(
    subscription: Subscription | None,
    overrides: Mapping[Feature | str, bool] | None = None,
) -> TenantEntitlementState:
    # A clinic without a record, or with a lapsed one, resolves to the free baseline.
    overrides = overrides or {}
    if subscription is None or subscription.status in _LAPSED_STATUSES:
        return TenantEntitlementState(BASELINE_TIER, False, overrides)
    return TenantEntitlementState(
        current_tier=parse_ladder_tier(subscription.tier),
        has_intelligence=bool(subscription.intelligence_addon),
        feature_overrides=overrides,
    )


async def load_entitlement_state(session: AsyncSession, tenant_id: str) -> TenantEntitlementState:
    # Read straight from the subscription record; there is no cache to invalidate.
    subscription = await get_subscription_for_tenant(session, tenant_id)
    overrides: dict[Feature, bool] = {}
    for row in await list_overrides(session, tenant_id):
        try:
            overrides[parse_feature(row.feature_key)] = bool(row.enabled)
        except UnknownFeatureError:
            # Overrides for retired features are ignored rather than failing every request.
            logger.warning("entitlement_override_unknown_feature tenant_id=%s feature=%s", tenant_id, row.feature_key)
    return state_from_subscription(subscription, overrides)


def feature_not_enabled_error(decision: EntitlementDecision) -> HTTPException:
    # Always ship the required tier so clients can render an upgrade prompt.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "FEATURE_NOT_ENABLED",
            "message": f"{display_name(decision.feature)} requires {decision.required_tier.value}",
            "feature_key": decision.feature.value,
            "required_tier": decision.required_tier.value,
        },
    )


async def require_feature(
    *,
    session: AsyncSession,
    tenant_id: str,
    feature: Feature | str,
) -> EntitlementDecision:
    state = await load_entitlement_state(session, tenant_id)
    decision = decide(state, feature)
    if not decision.allowed:
        logger.info(
            "entitlement_denied tenant_id=%s feature=%s required_tier=%s source=%s",
            tenant_id,
            decision.feature.value,
            decision.required_tier.value,
            decision.source,
        )
        raise feature_not_enabled_error(decision)
    return decision
