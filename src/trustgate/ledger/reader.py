"""
Ledger reader — the admission path's only view of ledger state.

Reads fall back to documented neutral defaults (score 50, stake 0) when a
ledger is unavailable, so the gateway degrades to "treat as new agent"
instead of failing open or closed unpredictably.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol
import logging

from trustgate.errors import LedgerUnavailable
from trustgate.ledger.staking import StakeRequirementCheck
from trustgate.models import NEUTRAL_SCORE

logger = logging.getLogger(__name__)


class ReputationSource(Protocol):
    def get_score(self, agent_id: str) -> int: ...

    def has_history(self, agent_id: str) -> bool: ...


class StakeSource(Protocol):
    def get_stake(self, agent_id: str) -> int: ...

    def check_stake_requirement(
        self, agent_id: str, service_tier_id: str
    ) -> StakeRequirementCheck: ...


class RegistrySource(Protocol):
    def is_registered(self, agent_id: str) -> bool: ...

    def is_active(self, agent_id: str) -> bool: ...


@dataclass(frozen=True)
class LedgerView:
    """Ledger facts for one agent at one point in time."""

    agent_id: str
    registered: bool = False
    active: bool = True
    reputation: int = NEUTRAL_SCORE
    stake: int = 0
    is_new: bool = True
    degraded: bool = False  # True when any read fell back to a default


class LedgerReader:
    """Reads registry, reputation and stake with neutral fallbacks."""

    def __init__(
        self,
        registry: RegistrySource,
        reputation: ReputationSource,
        staking: StakeSource,
    ) -> None:
        self._registry = registry
        self._reputation = reputation
        self._staking = staking

    def read(self, agent_id: str) -> LedgerView:
        try:
            registered = self._registry.is_registered(agent_id)
            active = self._registry.is_active(agent_id) if registered else True
        except LedgerUnavailable as e:
            logger.warning("Registry unavailable for %s, treating as new agent: %s", agent_id, e)
            return LedgerView(agent_id=agent_id, degraded=True)

        if not registered:
            return LedgerView(agent_id=agent_id)

        degraded = False
        try:
            reputation = self._reputation.get_score(agent_id)
            is_new = not self._reputation.has_history(agent_id)
        except LedgerUnavailable as e:
            logger.warning("Reputation ledger unavailable for %s, using neutral score: %s", agent_id, e)
            reputation, is_new, degraded = NEUTRAL_SCORE, True, True

        try:
            stake = self._staking.get_stake(agent_id)
        except LedgerUnavailable as e:
            logger.warning("Staking ledger unavailable for %s, using zero stake: %s", agent_id, e)
            stake, degraded = 0, True

        return LedgerView(
            agent_id=agent_id,
            registered=True,
            active=active,
            reputation=reputation,
            stake=stake,
            is_new=is_new,
            degraded=degraded,
        )

    def check_stake_requirement(
        self, agent_id: str, service_tier_id: str
    ) -> Optional[StakeRequirementCheck]:
        """None when the staking ledger cannot answer."""
        try:
            return self._staking.check_stake_requirement(agent_id, service_tier_id)
        except LedgerUnavailable as e:
            logger.warning(
                "Stake requirement for %s/%s unavailable: %s", agent_id, service_tier_id, e
            )
            return None
