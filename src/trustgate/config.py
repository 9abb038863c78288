"""
Gateway configuration.

Tier thresholds are defined once here and consumed by both the pricing
engine and the admission controller's minimum-tier checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import os
import secrets

from dotenv import load_dotenv

from trustgate.models import ServiceTier

ATOMIC_UNITS_PER_USDC = 1_000_000

# 10 tokens at 18 decimals; 2 tokens already earn the full 20% discount
DEFAULT_REFERENCE_STAKE = 10 * 10**18


@dataclass(frozen=True)
class TierThresholds:
    """Minimum reputation score for each service tier."""

    premium: int = 90
    standard: int = 70
    basic: int = 50

    def __post_init__(self) -> None:
        if not (0 <= self.basic <= self.standard <= self.premium <= 100):
            raise ValueError(
                f"Tier thresholds must satisfy 0 <= basic <= standard <= premium <= 100, "
                f"got basic={self.basic} standard={self.standard} premium={self.premium}"
            )

    def tier_for(self, score: int) -> ServiceTier:
        if score >= self.premium:
            return ServiceTier.PREMIUM
        if score >= self.standard:
            return ServiceTier.STANDARD
        if score >= self.basic:
            return ServiceTier.BASIC
        return ServiceTier.RESTRICTED

    def minimum_score(self, tier: ServiceTier) -> int:
        return {
            ServiceTier.PREMIUM: self.premium,
            ServiceTier.STANDARD: self.standard,
            ServiceTier.BASIC: self.basic,
            ServiceTier.RESTRICTED: 0,
        }[tier]


DEFAULT_TIERS = TierThresholds()


@dataclass(frozen=True)
class EndpointPolicy:
    """Admission requirements for one protected endpoint."""

    base_price: float = 0.01
    min_stake: int = 0
    min_reputation: int = 0
    min_tier: Optional[ServiceTier] = None
    pow_difficulty: int = 0  # leading zero bits, 0 = no proof required
    block_unregistered: bool = False
    block_unstaked: bool = False
    service_tier_id: Optional[str] = None  # staking ledger requirement key

    def __post_init__(self) -> None:
        if self.base_price <= 0:
            raise ValueError(f"base_price must be positive, got {self.base_price}")
        if not 0 <= self.pow_difficulty <= 256:
            raise ValueError(f"pow_difficulty must be in 0..256, got {self.pow_difficulty}")


@dataclass(frozen=True)
class GatewayConfig:
    """Top-level gateway configuration. All fields have working defaults."""

    tiers: TierThresholds = field(default_factory=TierThresholds)
    reference_stake: int = DEFAULT_REFERENCE_STAKE

    # Session tokens
    session_secret: str = field(default_factory=lambda: secrets.token_hex(32))
    session_ttl_seconds: int = 300
    max_session_requests: int = 100
    max_session_cost: float = 1.0

    # Risk: local-hour window that adds a small penalty, None disables it
    suspicious_hours: Optional[tuple[int, int]] = (2, 5)

    # Anti-flood
    challenge_ttl_seconds: int = 30

    # Staking
    unbonding_period_seconds: int = 3600
    min_stake: int = 1

    # Payment destination
    pay_to: str = "0x9263c9114a3c9192fac7890067369a656075a114"
    asset: str = "USDC"
    network: str = "avalanche-fuji"
    payment_timeout_seconds: int = 300

    # Identity that owns both ledgers, and so is their first feedback
    # submitter and slasher
    operator_id: str = "trustgate-operator"

    # Registry administrators besides the operator
    admins: tuple[str, ...] = ()

    # HTTP API keys, each mapped to the caller identity it authenticates
    api_keys: dict[str, str] = field(default_factory=dict)

    # Ledger write pipeline
    write_max_attempts: int = 5
    write_retry_base_seconds: float = 0.5
    write_history_limit: int = 10_000

    # Events kept by the in-process event bus, None for no bound
    max_events: Optional[int] = 10_000

    # Level for the ``trustgate`` logger when run as a server
    log_level: str = "INFO"

    endpoints: dict[str, EndpointPolicy] = field(default_factory=dict)
    default_policy: EndpointPolicy = field(default_factory=EndpointPolicy)

    def policy_for(self, endpoint: str) -> EndpointPolicy:
        return self.endpoints.get(endpoint, self.default_policy)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> GatewayConfig:
        """
        Build a config from ``TRUSTGATE_*`` environment variables.

        A ``.env`` file is loaded first when present; variables already set
        in the process environment win.
        """
        load_dotenv(env_file)
        defaults = cls()
        kwargs: dict = {
            "tiers": TierThresholds(
                premium=_env_int("TRUSTGATE_TIER_PREMIUM", defaults.tiers.premium),
                standard=_env_int("TRUSTGATE_TIER_STANDARD", defaults.tiers.standard),
                basic=_env_int("TRUSTGATE_TIER_BASIC", defaults.tiers.basic),
            ),
            "reference_stake": _env_int("TRUSTGATE_REFERENCE_STAKE", defaults.reference_stake),
            "session_ttl_seconds": _env_int("TRUSTGATE_SESSION_TTL", defaults.session_ttl_seconds),
            "max_session_requests": _env_int(
                "TRUSTGATE_SESSION_MAX_REQUESTS", defaults.max_session_requests
            ),
            "max_session_cost": _env_float("TRUSTGATE_SESSION_MAX_COST", defaults.max_session_cost),
            "challenge_ttl_seconds": _env_int(
                "TRUSTGATE_CHALLENGE_TTL", defaults.challenge_ttl_seconds
            ),
            "suspicious_hours": _env_hours("TRUSTGATE_SUSPICIOUS_HOURS", defaults.suspicious_hours),
            "unbonding_period_seconds": _env_int(
                "TRUSTGATE_UNBONDING_PERIOD", defaults.unbonding_period_seconds
            ),
            "min_stake": _env_int("TRUSTGATE_MIN_STAKE", defaults.min_stake),
            "pay_to": os.getenv("TRUSTGATE_PAY_TO", defaults.pay_to),
            "asset": os.getenv("TRUSTGATE_ASSET", defaults.asset),
            "network": os.getenv("TRUSTGATE_NETWORK", defaults.network),
            "operator_id": os.getenv("TRUSTGATE_OPERATOR_ID", defaults.operator_id),
            "log_level": os.getenv("TRUSTGATE_LOG_LEVEL", defaults.log_level).upper(),
            "admins": _env_list("TRUSTGATE_ADMINS"),
            "api_keys": _env_api_keys("TRUSTGATE_API_KEYS"),
            "write_history_limit": _env_int(
                "TRUSTGATE_WRITE_HISTORY_LIMIT", defaults.write_history_limit
            ),
            "max_events": _env_int("TRUSTGATE_MAX_EVENTS", defaults.max_events) or None,
            "default_policy": EndpointPolicy(
                base_price=_env_float("TRUSTGATE_BASE_PRICE", defaults.default_policy.base_price),
                min_stake=_env_int("TRUSTGATE_POLICY_MIN_STAKE", 0),
                min_reputation=_env_int("TRUSTGATE_POLICY_MIN_SCORE", 0),
                pow_difficulty=_env_int("TRUSTGATE_POW_DIFFICULTY", 0),
                block_unregistered=_env_bool("TRUSTGATE_BLOCK_UNREGISTERED", False),
                block_unstaked=_env_bool("TRUSTGATE_BLOCK_UNSTAKED", False),
            ),
        }
        secret = os.getenv("TRUSTGATE_SESSION_SECRET")
        if secret:
            kwargs["session_secret"] = secret
        return cls(**kwargs)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from None


def _env_hours(name: str, default: Optional[tuple[int, int]]) -> Optional[tuple[int, int]]:
    """Parse 'START-END' (e.g. '2-5'), or 'off' to disable."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    if raw.strip().lower() in ("off", "none", "0"):
        return None
    try:
        start, end = (int(part) for part in raw.split("-", 1))
    except ValueError:
        raise ValueError(f"Environment variable {name} must look like '2-5', got {raw!r}") from None
    return start, end


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_api_keys(name: str) -> dict[str, str]:
    """Parse 'KEY:CALLER,KEY:CALLER'."""
    keys: dict[str, str] = {}
    for entry in _env_list(name):
        key, sep, caller = entry.partition(":")
        if not sep or not key.strip() or not caller.strip():
            raise ValueError(
                f"Environment variable {name} entries must look like 'KEY:CALLER', got {entry!r}"
            )
        keys[key.strip()] = caller.strip()
    return keys


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
