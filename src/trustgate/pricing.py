"""
Pricing Engine — trust-adjusted price for one call.

Trusted, staked, low-risk agents pay less; unknown or risky agents pay
more. Whatever the factors, the price never drops below a quarter of the
endpoint's base price.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from trustgate.config import (
    ATOMIC_UNITS_PER_USDC,
    DEFAULT_REFERENCE_STAKE,
    DEFAULT_TIERS,
    EndpointPolicy,
    TierThresholds,
)
from trustgate.models import AgentSnapshot, ServiceTier

PRICE_FLOOR_RATIO = 0.25
MAX_STAKE_DISCOUNT = 0.2
NEW_AGENT_FACTOR = 1.25

REPUTATION_FACTORS = {
    ServiceTier.PREMIUM: 0.5,
    ServiceTier.STANDARD: 0.75,
    ServiceTier.BASIC: 1.0,
    ServiceTier.RESTRICTED: 1.5,
}


@dataclass(frozen=True)
class PriceBreakdown:
    reputation_factor: float
    risk_factor: float
    stake_factor: float
    new_agent_factor: float

    def to_dict(self) -> dict[str, float]:
        return {
            "reputation": self.reputation_factor,
            "risk": self.risk_factor,
            "stake": self.stake_factor,
            "new_agent": self.new_agent_factor,
        }


@dataclass(frozen=True)
class PriceQuote:
    """Base price, final price and the factors between them."""

    base_price: float
    final_price: float
    multiplier: float
    breakdown: PriceBreakdown

    def to_atomic(self) -> int:
        """Final price in atomic payment units (1 USDC = 1,000,000)."""
        return round(self.final_price * ATOMIC_UNITS_PER_USDC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_price": self.base_price,
            "final_price": self.final_price,
            "multiplier": self.multiplier,
            "breakdown": self.breakdown.to_dict(),
        }


def reputation_factor(reputation: int, thresholds: TierThresholds = DEFAULT_TIERS) -> float:
    return REPUTATION_FACTORS[thresholds.tier_for(reputation)]


def risk_factor(risk_score: int) -> float:
    if risk_score > 50:
        return 1.5
    if risk_score > 25:
        return 1.25
    return 1.0


def stake_factor(stake: int, reference_stake: int = DEFAULT_REFERENCE_STAKE) -> float:
    if stake <= 0 or reference_stake <= 0:
        return 1.0
    return 1.0 - min(stake / reference_stake, MAX_STAKE_DISCOUNT)


def price(
    base_price: float,
    reputation: int,
    risk_score: int,
    stake: int,
    is_new_agent: bool,
    *,
    thresholds: TierThresholds = DEFAULT_TIERS,
    reference_stake: int = DEFAULT_REFERENCE_STAKE,
) -> PriceQuote:
    """
    Compute the price an agent pays for one call.

    Args:
        base_price: Endpoint base price in USDC
        reputation: Ledger score 0-100
        risk_score: Risk engine score 0-100
        stake: Free stake in base units
        is_new_agent: True when the ledger holds no history for the agent

    Returns:
        PriceQuote with the multiplier and each factor
    """
    if base_price <= 0:
        raise ValueError(f"base_price must be positive, got {base_price}")

    breakdown = PriceBreakdown(
        reputation_factor=reputation_factor(reputation, thresholds),
        risk_factor=risk_factor(risk_score),
        stake_factor=stake_factor(stake, reference_stake),
        new_agent_factor=NEW_AGENT_FACTOR if is_new_agent else 1.0,
    )
    multiplier = (
        breakdown.reputation_factor
        * breakdown.risk_factor
        * breakdown.stake_factor
        * breakdown.new_agent_factor
    )
    final_price = max(base_price * multiplier, base_price * PRICE_FLOOR_RATIO)
    return PriceQuote(
        base_price=base_price,
        final_price=final_price,
        multiplier=multiplier,
        breakdown=breakdown,
    )


class PricingEngine:
    """``price`` bound to one gateway's tier thresholds and reference stake."""

    def __init__(
        self,
        thresholds: TierThresholds = DEFAULT_TIERS,
        reference_stake: int = DEFAULT_REFERENCE_STAKE,
    ) -> None:
        self.thresholds = thresholds
        self.reference_stake = reference_stake

    def quote(self, policy: EndpointPolicy, agent: AgentSnapshot) -> PriceQuote:
        return price(
            policy.base_price,
            agent.reputation,
            agent.risk_score,
            agent.stake,
            agent.is_new,
            thresholds=self.thresholds,
            reference_stake=self.reference_stake,
        )
