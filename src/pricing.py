"""Tier-based pricing strategies.

Each customer tier maps to one strategy answering two questions: how much
to take off a base amount, and whether a final amount earns the gift item.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict

from customers import Tier

ZERO = Decimal("0")
CENT = Decimal("0.01")
GIFT_THRESHOLD = Decimal("300")


# ---------- Strategy interfaces ----------

class PricingStrategy:
    """Abstract base for tier pricing."""

    tier: Tier

    def discount(self, base: Decimal) -> Decimal:  # amount to subtract, >= 0
        raise NotImplementedError

    def is_gift_eligible(self, final: Decimal) -> bool:
        return False


class NewCustomerPricing(PricingStrategy):
    """No discount, no gift."""

    tier = Tier.NEW

    def discount(self, base: Decimal) -> Decimal:
        return ZERO


class PercentagePricing(PricingStrategy):
    rate: Decimal = ZERO

    def discount(self, base: Decimal) -> Decimal:
        if base is None or base <= 0:
            return ZERO
        return base * self.rate


class ReturningCustomerPricing(PercentagePricing):
    """5% off the base amount."""

    tier = Tier.RETURNING
    rate = Decimal("0.05")


class VipPricing(PercentagePricing):
    """12% off, plus a gift when the final total reaches the threshold."""

    tier = Tier.VIP
    rate = Decimal("0.12")

    def is_gift_eligible(self, final: Decimal) -> bool:
        if final is None:
            return False
        # compared as reported to the customer, in whole cents
        return final.quantize(CENT, rounding=ROUND_HALF_UP) >= GIFT_THRESHOLD


_STRATEGIES: Dict[Tier, PricingStrategy] = {
    Tier.NEW: NewCustomerPricing(),
    Tier.RETURNING: ReturningCustomerPricing(),
    Tier.VIP: VipPricing(),
}


def strategy_for(tier: Tier) -> PricingStrategy:
    return _STRATEGIES[tier]
