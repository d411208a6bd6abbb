"""Static tier catalog.

The ladder ``CAPTURE < CORE < PLUS < PRO < ENTERPRISE`` is total and fixed;
``INTELLIGENCE`` is an add-on that a clinic may hold at any ladder tier and is
never ordered against the ladder. Prices are minor currency units (paise).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from clinicbilling.core.errors import IncomparableTierError, UnknownTierError


class Tier(str, Enum):
    CAPTURE = "CAPTURE"
    CORE = "CORE"
    PLUS = "PLUS"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"
    INTELLIGENCE = "INTELLIGENCE"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


# Access checks compare ladder positions; the add-on has no position.
LADDER: tuple[Tier, ...] = (Tier.CAPTURE, Tier.CORE, Tier.PLUS, Tier.PRO, Tier.ENTERPRISE)
_LADDER_INDEX: dict[Tier, int] = {tier: index for index, tier in enumerate(LADDER)}

CUSTOM_PRICE = "custom"
ANNUAL_DISCOUNT_PERCENT = 10


@dataclass(frozen=True)
class TierPricing:
    monthly: int | str
    yearly: int | str
    currency: str = "INR"

    @property
    def is_custom(self) -> bool:
        return self.monthly == CUSTOM_PRICE or self.yearly == CUSTOM_PRICE


@dataclass(frozen=True)
class TierLimits:
    max_patients: int
    max_doctors: int
    storage_gb: int
    max_branches: int


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    description: str
    tagline: str
    pricing: TierPricing
    limits: TierLimits | None


_CATALOG: dict[Tier, TierDefinition] = {
    Tier.CAPTURE: TierDefinition(
        tier=Tier.CAPTURE,
        name="Docita Capture",
        description="Digitize paper records and keep a searchable patient archive",
        tagline="Start paperless",
        pricing=TierPricing(monthly=0, yearly=0),
        limits=TierLimits(max_patients=100, max_doctors=1, storage_gb=1, max_branches=1),
    ),
    Tier.CORE: TierDefinition(
        tier=Tier.CORE,
        name="Docita Core",
        description="Appointments, prescriptions and invoicing for a solo practice",
        tagline="Run your clinic",
        pricing=TierPricing(monthly=99900, yearly=1079000),
        limits=TierLimits(max_patients=500, max_doctors=1, storage_gb=2, max_branches=1),
    ),
    Tier.PLUS: TierDefinition(
        tier=Tier.PLUS,
        name="Docita Plus",
        description="Patient messaging, reminders and payment links",
        tagline="Engage your patients",
        pricing=TierPricing(monthly=249900, yearly=2699000),
        limits=TierLimits(max_patients=2000, max_doctors=3, storage_gb=5, max_branches=1),
    ),
    Tier.PRO: TierDefinition(
        tier=Tier.PRO,
        name="Docita Pro",
        description="Multi-doctor clinics with labs, inventory and queues",
        tagline="Scale your practice",
        pricing=TierPricing(monthly=499900, yearly=5399000),
        limits=TierLimits(max_patients=10000, max_doctors=999, storage_gb=20, max_branches=3),
    ),
    Tier.ENTERPRISE: TierDefinition(
        tier=Tier.ENTERPRISE,
        name="Docita Enterprise",
        description="Hospital groups with full EHR, SSO and data warehouse export",
        tagline="Built for networks",
        pricing=TierPricing(monthly=CUSTOM_PRICE, yearly=CUSTOM_PRICE),
        limits=TierLimits(max_patients=999999, max_doctors=999, storage_gb=100, max_branches=999),
    ),
    Tier.INTELLIGENCE: TierDefinition(
        tier=Tier.INTELLIGENCE,
        name="Docita Intelligence",
        description="AI prescription assistant, diagnosis hints and predictive insights",
        tagline="Add-on for any tier",
        pricing=TierPricing(monthly=299900, yearly=3239000),
        limits=None,
    ),
}


def parse_tier(value: str | Tier) -> Tier:
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().upper())
    except ValueError as exc:
        raise UnknownTierError(f"Unknown tier: {value}", tier=str(value)) from exc


def parse_ladder_tier(value: str | Tier) -> Tier:
    # Subscriptions only ever sit on the ladder; the add-on is a separate flag.
    tier = parse_tier(value)
    if tier not in _LADDER_INDEX:
        raise UnknownTierError(f"{tier.value} is an add-on, not a ladder tier", tier=tier.value)
    return tier


def get_tier(tier: str | Tier) -> TierDefinition:
    return _CATALOG[parse_tier(tier)]


def compare(a: str | Tier, b: str | Tier) -> int:
    """Order two ladder tiers, returning -1, 0 or 1.

    Raises IncomparableTierError when either side is the add-on tier.
    """
    left = parse_tier(a)
    right = parse_tier(b)
    if left not in _LADDER_INDEX or right not in _LADDER_INDEX:
        raise IncomparableTierError(
            f"{left.value} and {right.value} cannot be compared",
            left=left.value,
            right=right.value,
        )
    diff = _LADDER_INDEX[left] - _LADDER_INDEX[right]
    return (diff > 0) - (diff < 0)


def next_tier(tier: str | Tier) -> Tier | None:
    current = parse_tier(tier)
    if current not in _LADDER_INDEX:
        raise IncomparableTierError(f"{current.value} has no position on the ladder", tier=current.value)
    index = _LADDER_INDEX[current] + 1
    return LADDER[index] if index < len(LADDER) else None


def price_for(tier: str | Tier, cycle: str | BillingCycle) -> int | str:
    pricing = get_tier(tier).pricing
    return pricing.yearly if BillingCycle(cycle) == BillingCycle.YEARLY else pricing.monthly


def snapshot_price(tier: str | Tier, cycle: str | BillingCycle) -> int | None:
    # Custom-priced tiers carry no catalog amount; the negotiated amount lives on the payment.
    price = price_for(tier, cycle)
    return None if price == CUSTOM_PRICE else int(price)


def pricing_table() -> list[TierDefinition]:
    return [_CATALOG[tier] for tier in (*LADDER, Tier.INTELLIGENCE)]


def exceeded_limits(tier: str | Tier, usage: dict[str, int]) -> list[str]:
    # Report which limits current usage already exceeds so downgrades can warn.
    limits = get_tier(tier).limits
    if limits is None:
        return []
    exceeded: list[str] = []
    for key in ("max_patients", "max_doctors", "storage_gb", "max_branches"):
        used = usage.get(key)
        if used is not None and used > getattr(limits, key):
            exceeded.append(key)
    return exceeded
