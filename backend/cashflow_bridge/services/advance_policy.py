"""Risk-tier policy for advances.

Percentages are expressed in percent (``80`` means 80%); risk provision rates
are plain fractions of the advance amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from cashflow_bridge.core.money import Money


@dataclass(frozen=True)
class TierPolicy:
    tier: str
    max_advance_percentage: Decimal
    farmer_fee_percentage: Decimal
    buyer_fee_percentage: Decimal
    risk_provision_rate: Decimal


TIER_POLICIES: dict[str, TierPolicy] = {
    "A": TierPolicy("A", Decimal("90"), Decimal("2.0"), Decimal("0.75"), Decimal("0.02")),
    "B": TierPolicy("B", Decimal("80"), Decimal("2.5"), Decimal("1.0"), Decimal("0.05")),
    "C": TierPolicy("C", Decimal("70"), Decimal("3.5"), Decimal("1.75"), Decimal("0.10")),
}

MIN_ADVANCE_AMOUNT = Money.of("5000.00")
MAX_ADVANCE_AMOUNT = Money.of("500000.00")
AUTO_APPROVE_THRESHOLD = 85
ANNUAL_CAPITAL_COST_RATE = Decimal("0.08")
PAYMENT_GRACE_DAYS = 7
OPERATING_COST_PER_ADVANCE = Money.of("100.00")
CONTRACT_PREFIX = "ACF"


def policy_for_tier(tier: str) -> TierPolicy:
    try:
        return TIER_POLICIES[str(tier).strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown risk tier: {tier!r}") from None
