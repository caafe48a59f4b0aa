"""Price and plan catalog used by checkout and reconciliation."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .exceptions import ConfigurationError
from .models import CheckoutMode, PlanTier


@dataclass(frozen=True)
class TierDefinition:
    """Describes a subscription tier and its monthly allotment."""

    tier: PlanTier
    display_name: str
    monthly_credits: int = 0
    unlimited: bool = False


@dataclass(frozen=True)
class CheckoutItem:
    """A purchasable SKU resolved to a provider price."""

    sku: str
    price_id: str
    mode: CheckoutMode
    credits: int = 0
    tier: Optional[PlanTier] = None


@dataclass(frozen=True)
class PriceCatalog:
    """Maps provider price ids to credit amounts or plan tiers.

    The tables are external configuration: operators adjust prices and
    allotments through the environment rather than through code changes.
    """

    credit_packs: Mapping[str, int] = field(default_factory=dict)
    subscription_prices: Mapping[str, PlanTier] = field(default_factory=dict)
    tiers: Mapping[PlanTier, TierDefinition] = field(default_factory=dict)
    skus: Mapping[str, CheckoutItem] = field(default_factory=dict)

    def credits_for_price(self, price_id: str) -> int:
        try:
            return self.credit_packs[price_id]
        except KeyError as exc:
            raise ConfigurationError(
                f"No credit amount configured for price {price_id!r}", price_id=price_id
            ) from exc

    def tier_for_price(self, price_id: str) -> PlanTier:
        try:
            return self.subscription_prices[price_id]
        except KeyError as exc:
            raise ConfigurationError(
                f"No plan tier configured for price {price_id!r}", price_id=price_id
            ) from exc

    def tier_definition(self, tier: PlanTier) -> TierDefinition:
        definition = self.tiers.get(tier)
        if definition is None:
            return TierDefinition(tier=tier, display_name=tier.value.title())
        return definition

    def monthly_allotment(self, tier: PlanTier) -> int:
        definition = self.tier_definition(tier)
        if definition.unlimited:
            return 0
        return definition.monthly_credits

    def is_unlimited(self, tier: PlanTier) -> bool:
        return self.tier_definition(tier).unlimited

    def checkout_item(self, sku: str) -> Optional[CheckoutItem]:
        return self.skus.get((sku or "").strip().lower())

    def price_for_tier(self, tier: PlanTier) -> Optional[str]:
        for price_id, mapped in self.subscription_prices.items():
            if mapped == tier:
                return price_id
        return None


def build_price_catalog(
    *,
    starter_price_id: Optional[str],
    premium_price_id: Optional[str],
    coins_price_id: Optional[str],
    coins_credits: int,
    starter_monthly_credits: int,
    premium_monthly_credits: int,
    extra_credit_packs: Optional[Mapping[str, int]] = None,
) -> PriceCatalog:
    """Assemble the catalog from the configured price ids."""

    credit_packs: Dict[str, int] = {}
    if coins_price_id:
        credit_packs[coins_price_id] = coins_credits
    credit_packs.update(extra_credit_packs or {})

    subscription_prices: Dict[str, PlanTier] = {}
    if starter_price_id:
        subscription_prices[starter_price_id] = PlanTier.STARTER
    if premium_price_id:
        subscription_prices[premium_price_id] = PlanTier.PREMIUM

    tiers: Dict[PlanTier, TierDefinition] = {
        PlanTier.FREE: TierDefinition(tier=PlanTier.FREE, display_name="Free"),
        PlanTier.STARTER: TierDefinition(
            tier=PlanTier.STARTER,
            display_name="Starter",
            monthly_credits=starter_monthly_credits,
        ),
        # A premium allotment of zero means usage is not metered at all.
        PlanTier.PREMIUM: TierDefinition(
            tier=PlanTier.PREMIUM,
            display_name="Premium",
            monthly_credits=premium_monthly_credits,
            unlimited=premium_monthly_credits <= 0,
        ),
    }

    skus: Dict[str, CheckoutItem] = {}
    if starter_price_id:
        skus["starter"] = CheckoutItem(
            sku="starter",
            price_id=starter_price_id,
            mode=CheckoutMode.SUBSCRIPTION,
            tier=PlanTier.STARTER,
        )
    if premium_price_id:
        skus["premium"] = CheckoutItem(
            sku="premium",
            price_id=premium_price_id,
            mode=CheckoutMode.SUBSCRIPTION,
            tier=PlanTier.PREMIUM,
        )
    if coins_price_id:
        coins = CheckoutItem(
            sku="coins",
            price_id=coins_price_id,
            mode=CheckoutMode.PAYMENT,
            credits=coins_credits,
        )
        skus["coins"] = coins
        skus["topup15"] = coins

    return PriceCatalog(
        credit_packs=credit_packs,
        subscription_prices=subscription_prices,
        tiers=tiers,
        skus=skus,
    )


def parse_credit_packs(raw: Optional[str]) -> Dict[str, int]:
    """Parse ``price_a=30,price_b=100`` into a price to credits mapping."""

    packs: Dict[str, int] = {}
    if not raw:
        return packs
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        price_id, sep, amount = chunk.partition("=")
        if not sep or not price_id.strip():
            raise ValueError(f"Invalid credit pack entry {chunk!r}; expected price_id=credits")
        try:
            credits = int(amount.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid credit amount in {chunk!r}") from exc
        if credits <= 0:
            raise ValueError(f"Credit pack {price_id.strip()!r} must grant a positive amount")
        packs[price_id.strip()] = credits
    return packs


def known_skus(catalog: PriceCatalog) -> Tuple[str, ...]:
    return tuple(sorted(catalog.skus))


__all__ = [
    "CheckoutItem",
    "PriceCatalog",
    "TierDefinition",
    "build_price_catalog",
    "known_skus",
    "parse_credit_packs",
]
