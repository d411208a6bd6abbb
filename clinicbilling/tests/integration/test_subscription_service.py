from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from clinicbilling.core.errors import SubscriptionCancelledError, UnknownFeatureError
from clinicbilling.domain.features import Feature
from clinicbilling.domain.lifecycle import SubscriptionStatus
from clinicbilling.domain.models import TenantFeatureOverride
from clinicbilling.domain.tiers import Tier
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.persistence.repos.subscriptions import list_events, list_overrides
from clinicbilling.services.entitlements import can_access, load_entitlement_state
from clinicbilling.services.subscriptions import (
    change_tier,
    clear_feature_override,
    deactivate_clinic,
    provision_subscription,
    reset_entitlements,
    set_feature_override,
    set_feature_overrides,
    set_intelligence_addon,
)
from clinicbilling.tests.utils.subscriptions import NOW, load_subscription, seed_subscription


@pytest.mark.asyncio
async def test_provision_is_idempotent_and_records_history() -> None:
    async with SessionLocal() as session:
        created = await provision_subscription(session, "clinic-provision", now=NOW)
    async with SessionLocal() as session:
        again = await provision_subscription(session, "clinic-provision", now=NOW + timedelta(hours=1))
        events = await list_events(session, created.id)

    assert again.id == created.id
    assert created.status == SubscriptionStatus.TRIALING.value
    assert created.tier == Tier.CAPTURE.value
    assert created.current_period_end == NOW + timedelta(days=14)
    assert [e.event_type for e in events] == ["Provisioned"]


@pytest.mark.asyncio
async def test_cancelled_clinic_reactivates_with_new_record() -> None:
    async with SessionLocal() as session:
        first = await provision_subscription(session, "clinic-reactivate", now=NOW)
    async with SessionLocal() as session:
        await deactivate_clinic(session, "clinic-reactivate", now=NOW + timedelta(days=1))
    async with SessionLocal() as session:
        second = await provision_subscription(session, "clinic-reactivate", now=NOW + timedelta(days=2))

    assert second.id != first.id
    assert second.status == SubscriptionStatus.TRIALING.value
    old = await load_subscription(first.id)
    assert old.status == SubscriptionStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_downgrade_is_grandfathered() -> None:
    subscription_id = await seed_subscription(tier="PRO")
    async with SessionLocal() as session:
        outcome = await change_tier(
            session, subscription_id, "CORE", usage={"max_doctors": 4, "max_patients": 300}, now=NOW
        )
    assert outcome.subscription.tier == "CORE"
    assert outcome.subscription.price_at_snapshot == 99900
    assert outcome.exceeded_limits == ["max_doctors"]


@pytest.mark.asyncio
async def test_tier_change_on_cancelled_is_rejected() -> None:
    subscription_id = await seed_subscription(status=SubscriptionStatus.CANCELLED.value, cancelled_at=NOW)
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionCancelledError):
            await change_tier(session, subscription_id, "PLUS", now=NOW)


@pytest.mark.asyncio
async def test_override_store_round_trip() -> None:
    subscription_id = await seed_subscription(tier="CORE")
    stored = await load_subscription(subscription_id)
    tenant_id = stored.tenant_id

    async with SessionLocal() as session:
        await set_feature_override(session, tenant_id, "MULTI_DOCTOR", True)
        await set_feature_override(session, tenant_id, "INVOICING", False)
        await set_feature_override(session, tenant_id, "INVOICING", True)
        state = await load_entitlement_state(session, tenant_id)
    assert can_access(state, Feature.MULTI_DOCTOR) is True
    assert dict(state.feature_overrides) == {Feature.MULTI_DOCTOR: True, Feature.INVOICING: True}

    async with SessionLocal() as session:
        await clear_feature_override(session, tenant_id, "MULTI_DOCTOR")
        state = await load_entitlement_state(session, tenant_id)
    assert can_access(state, Feature.MULTI_DOCTOR) is False

    async with SessionLocal() as session:
        with pytest.raises(UnknownFeatureError):
            await set_feature_override(session, tenant_id, "WARP_DRIVE", True)


@pytest.mark.asyncio
async def test_retired_override_keys_are_ignored() -> None:
    subscription_id = await seed_subscription()
    tenant_id = (await load_subscription(subscription_id)).tenant_id
    async with SessionLocal() as session:
        session.add(TenantFeatureOverride(tenant_id=tenant_id, feature_key="RETIRED_FEATURE", enabled=True))
        await session.commit()
        state = await load_entitlement_state(session, tenant_id)
    assert dict(state.feature_overrides) == {}


@pytest.mark.asyncio
async def test_reset_entitlements_drops_grants_but_keeps_tier() -> None:
    subscription_id = await seed_subscription(tier="PLUS")
    tenant_id = (await load_subscription(subscription_id)).tenant_id
    async with SessionLocal() as session:
        await set_intelligence_addon(session, subscription_id, True)
        await set_feature_override(session, tenant_id, "SSO", True)
    async with SessionLocal() as session:
        snapshot = await reset_entitlements(session, tenant_id)
        remaining = await list_overrides(session, tenant_id)

    assert snapshot.intelligence_addon is False
    assert snapshot.tier == "PLUS"
    assert snapshot.status == SubscriptionStatus.ACTIVE.value
    assert remaining == []


@pytest.mark.asyncio
async def test_override_batch_is_all_or_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    subscription_id = await seed_subscription()
    tenant_id = (await load_subscription(subscription_id)).tenant_id
    batch = {"SSO": True, "INVOICING": False, "MULTI_DOCTOR": True}

    async with SessionLocal() as session:
        commits = {"count": 0}
        original_commit = session.commit

        async def counting_commit() -> None:
            commits["count"] += 1
            await original_commit()

        monkeypatch.setattr(session, "commit", counting_commit)
        await set_feature_overrides(session, tenant_id, batch)
    assert commits["count"] == 1

    async with SessionLocal() as session:
        async def failing_commit() -> None:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(OperationalError):
            await set_feature_overrides(session, tenant_id, {"SSO": None, "INVOICING": True})

    async with SessionLocal() as session:
        with pytest.raises(UnknownFeatureError):
            await set_feature_overrides(session, tenant_id, {"INVOICING": True, "WARP_DRIVE": True})
        rows = await list_overrides(session, tenant_id)
    assert {row.feature_key: row.enabled for row in rows} == batch
