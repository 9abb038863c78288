"""Tests for gateway configuration."""

import pytest

from trustgate.config import EndpointPolicy, GatewayConfig, TierThresholds
from trustgate.models import ServiceTier

_ENV_VARS = [
    "TRUSTGATE_TIER_PREMIUM",
    "TRUSTGATE_TIER_STANDARD",
    "TRUSTGATE_TIER_BASIC",
    "TRUSTGATE_SESSION_SECRET",
    "TRUSTGATE_SESSION_TTL",
    "TRUSTGATE_SUSPICIOUS_HOURS",
    "TRUSTGATE_BASE_PRICE",
    "TRUSTGATE_POW_DIFFICULTY",
    "TRUSTGATE_BLOCK_UNREGISTERED",
    "TRUSTGATE_PAY_TO",
    "TRUSTGATE_LOG_LEVEL",
    "TRUSTGATE_API_KEYS",
    "TRUSTGATE_ADMINS",
    "TRUSTGATE_MAX_EVENTS",
    "TRUSTGATE_WRITE_HISTORY_LIMIT",
]


@pytest.fixture
def env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestTierThresholds:
    def test_defaults(self):
        tiers = TierThresholds()
        assert tiers.tier_for(90) == ServiceTier.PREMIUM
        assert tiers.tier_for(70) == ServiceTier.STANDARD
        assert tiers.tier_for(50) == ServiceTier.BASIC
        assert tiers.tier_for(49) == ServiceTier.RESTRICTED
        assert tiers.minimum_score(ServiceTier.STANDARD) == 70

    def test_out_of_order_rejected(self):
        with pytest.raises(ValueError):
            TierThresholds(premium=60, standard=70, basic=50)


class TestEndpointPolicy:
    def test_unknown_endpoint_gets_default(self):
        config = GatewayConfig(endpoints={"search": EndpointPolicy(base_price=0.05)})
        assert config.policy_for("search").base_price == 0.05
        assert config.policy_for("other") is config.default_policy

    @pytest.mark.parametrize("kwargs", [{"base_price": 0}, {"pow_difficulty": -1}, {"pow_difficulty": 257}])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            EndpointPolicy(**kwargs)


class TestFromEnv:
    def test_defaults(self, env):
        config = GatewayConfig.from_env()
        assert config.tiers == TierThresholds()
        assert config.suspicious_hours == (2, 5)
        assert len(config.session_secret) == 64

    def test_overrides(self, env):
        env.setenv("TRUSTGATE_TIER_PREMIUM", "95")
        env.setenv("TRUSTGATE_SESSION_SECRET", "from-the-environment-123")
        env.setenv("TRUSTGATE_SESSION_TTL", "60")
        env.setenv("TRUSTGATE_BASE_PRICE", "0.2")
        env.setenv("TRUSTGATE_POW_DIFFICULTY", "12")
        env.setenv("TRUSTGATE_BLOCK_UNREGISTERED", "yes")
        env.setenv("TRUSTGATE_PAY_TO", "0xabc")
        config = GatewayConfig.from_env()
        assert config.tiers.premium == 95
        assert config.session_secret == "from-the-environment-123"
        assert config.session_ttl_seconds == 60
        assert config.default_policy.base_price == 0.2
        assert config.default_policy.pow_difficulty == 12
        assert config.default_policy.block_unregistered
        assert config.pay_to == "0xabc"

    @pytest.mark.parametrize("raw,expected", [("1-4", (1, 4)), ("22-3", (22, 3)), ("off", None)])
    def test_suspicious_hours(self, env, raw, expected):
        env.setenv("TRUSTGATE_SUSPICIOUS_HOURS", raw)
        assert GatewayConfig.from_env().suspicious_hours == expected

    def test_access_and_bounds(self, env):
        env.setenv("TRUSTGATE_API_KEYS", "k1:trustgate-operator, k2:wallet-1")
        env.setenv("TRUSTGATE_ADMINS", "ops-2,ops-3")
        env.setenv("TRUSTGATE_MAX_EVENTS", "0")
        env.setenv("TRUSTGATE_WRITE_HISTORY_LIMIT", "50")
        config = GatewayConfig.from_env()
        assert config.api_keys == {"k1": "trustgate-operator", "k2": "wallet-1"}
        assert config.admins == ("ops-2", "ops-3")
        assert config.max_events is None
        assert config.write_history_limit == 50

    def test_bounded_by_default(self, env):
        config = GatewayConfig.from_env()
        assert config.api_keys == {}
        assert config.max_events == 10_000

    def test_bad_api_keys(self, env):
        env.setenv("TRUSTGATE_API_KEYS", "no-caller-here")
        with pytest.raises(ValueError, match="TRUSTGATE_API_KEYS"):
            GatewayConfig.from_env()

    def test_bad_integer(self, env):
        env.setenv("TRUSTGATE_SESSION_TTL", "soon")
        with pytest.raises(ValueError, match="TRUSTGATE_SESSION_TTL"):
            GatewayConfig.from_env()

    def test_bad_hours(self, env):
        env.setenv("TRUSTGATE_SUSPICIOUS_HOURS", "late")
        with pytest.raises(ValueError):
            GatewayConfig.from_env()

    def test_dotenv_file(self, env, tmp_path):
        env_file = tmp_path / "gateway.env"
        env_file.write_text("TRUSTGATE_TIER_BASIC=40\n")
        # load_dotenv writes straight into os.environ; registering the
        # variable first makes monkeypatch remove it again afterwards
        env.setenv("TRUSTGATE_TIER_BASIC", "50")
        env.delenv("TRUSTGATE_TIER_BASIC")
        config = GatewayConfig.from_env(str(env_file))
        assert config.tiers.basic == 40
