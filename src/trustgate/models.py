"""Core data models shared across the gateway."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
import re

from trustgate.errors import InvalidInput

# Type alias for injectable clocks (ledgers, risk engine, gate, issuer)
Clock = Callable[[], datetime]

NEUTRAL_SCORE = 50

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9:._\-]{1,128}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_agent_id(agent_id: Any) -> str:
    """Return ``agent_id`` unchanged if well-formed, else raise InvalidInput."""
    if not isinstance(agent_id, str) or not _AGENT_ID_RE.match(agent_id):
        raise InvalidInput(f"Malformed agent identifier: {agent_id!r}")
    return agent_id


def validate_amount(amount: Any, name: str = "amount") -> int:
    """Ledger amounts are positive integers in base units."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidInput(f"{name} must be a positive integer, got {amount!r}")
    return amount


class ServiceTier(str, Enum):
    """Reputation bands. Boundaries come from ``TierThresholds``."""

    PREMIUM = "premium"
    STANDARD = "standard"
    BASIC = "basic"
    RESTRICTED = "restricted"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    ServiceTier.RESTRICTED: 0,
    ServiceTier.BASIC: 1,
    ServiceTier.STANDARD: 2,
    ServiceTier.PREMIUM: 3,
}


@dataclass(frozen=True)
class AgentSnapshot:
    """The agent facts a single admission decision was computed from."""

    agent_id: str
    registered: bool = False
    active: bool = True
    reputation: int = NEUTRAL_SCORE
    stake: int = 0
    risk_score: int = 0
    is_new: bool = True
    tier: ServiceTier = ServiceTier.BASIC

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        # Stake can exceed JSON-safe integer range on 18-decimal ledgers
        data["stake"] = str(self.stake)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentSnapshot:
        return cls(
            agent_id=data["agent_id"],
            registered=bool(data.get("registered", False)),
            active=bool(data.get("active", True)),
            reputation=int(data.get("reputation", NEUTRAL_SCORE)),
            stake=int(data.get("stake", 0)),
            risk_score=int(data.get("risk_score", 0)),
            is_new=bool(data.get("is_new", True)),
            tier=ServiceTier(data.get("tier", ServiceTier.BASIC.value)),
        )
