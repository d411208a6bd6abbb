from __future__ import annotations

import itertools

import pytest

from clinicbilling.core.errors import IncomparableTierError, UnknownTierError
from clinicbilling.domain.tiers import (
    LADDER,
    BillingCycle,
    Tier,
    compare,
    exceeded_limits,
    get_tier,
    next_tier,
    parse_ladder_tier,
    parse_tier,
    price_for,
    pricing_table,
    snapshot_price,
)


def test_ladder_order_is_total_and_antisymmetric() -> None:
    for a, b in itertools.product(LADDER, repeat=2):
        if compare(a, b) >= 0 and compare(b, a) >= 0:
            assert a == b
    assert compare(Tier.CAPTURE, Tier.ENTERPRISE) == -1
    assert compare(Tier.PRO, Tier.PLUS) == 1
    assert compare("core", Tier.CORE) == 0


@pytest.mark.parametrize("tier", LADDER)
def test_intelligence_is_incomparable(tier: Tier) -> None:
    with pytest.raises(IncomparableTierError):
        compare(Tier.INTELLIGENCE, tier)
    with pytest.raises(IncomparableTierError):
        compare(tier, Tier.INTELLIGENCE)


def test_unknown_tier_is_rejected() -> None:
    with pytest.raises(UnknownTierError):
        parse_tier("GOLD")
    with pytest.raises(UnknownTierError):
        parse_ladder_tier(Tier.INTELLIGENCE)


def test_catalog_prices_in_paise() -> None:
    assert price_for(Tier.CAPTURE, BillingCycle.MONTHLY) == 0
    assert price_for(Tier.CORE, BillingCycle.MONTHLY) == 99900
    assert price_for(Tier.PLUS, BillingCycle.MONTHLY) == 249900
    assert price_for(Tier.PRO, "YEARLY") == 5399000
    assert snapshot_price(Tier.ENTERPRISE, BillingCycle.MONTHLY) is None
    assert get_tier(Tier.ENTERPRISE).pricing.is_custom


def test_yearly_price_is_discounted() -> None:
    for tier in (Tier.CORE, Tier.PLUS, Tier.PRO, Tier.INTELLIGENCE):
        monthly = price_for(tier, BillingCycle.MONTHLY)
        assert price_for(tier, BillingCycle.YEARLY) < monthly * 12


def test_next_tier_walks_the_ladder() -> None:
    assert next_tier(Tier.CAPTURE) == Tier.CORE
    assert next_tier(Tier.ENTERPRISE) is None
    with pytest.raises(IncomparableTierError):
        next_tier(Tier.INTELLIGENCE)


def test_pricing_table_lists_ladder_then_addon() -> None:
    tiers = [definition.tier for definition in pricing_table()]
    assert tiers == [*LADDER, Tier.INTELLIGENCE]
    assert get_tier(Tier.INTELLIGENCE).limits is None


def test_exceeded_limits_reports_grandfathered_usage() -> None:
    usage = {"max_patients": 600, "max_doctors": 1, "storage_gb": 3}
    assert exceeded_limits(Tier.CORE, usage) == ["max_patients", "storage_gb"]
    assert exceeded_limits(Tier.PRO, usage) == []
