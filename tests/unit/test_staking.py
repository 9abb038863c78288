"""Tests for the staking ledger: unbonding, slashing, tier requirements."""

import pytest

from trustgate.errors import InvalidInput, PolicyViolation
from trustgate.ledger.registry import AgentRegistry
from trustgate.ledger.staking import StakingLedger

OWNER = "operator"
TOKEN = 10**18


@pytest.fixture
def staking(clock):
    return StakingLedger(OWNER, clock=clock)


class TestStake:
    def test_stake_accumulates(self, staking):
        staking.stake("agent-1", 5)
        staking.stake("agent-1", 7)
        assert staking.get_stake("agent-1") == 12
        assert staking.total_staked == 12

    def test_below_minimum_rejected(self, clock):
        staking = StakingLedger(OWNER, min_stake=100, clock=clock)
        with pytest.raises(InvalidInput):
            staking.stake("agent-1", 99)

    @pytest.mark.parametrize("amount", [0, -1, 2.5, "10"])
    def test_invalid_amount(self, staking, amount):
        with pytest.raises(InvalidInput):
            staking.stake("agent-1", amount)

    def test_unknown_agent_has_zero_stake(self, staking):
        assert staking.get_stake("nobody") == 0
        assert staking.get_record("nobody").amount == 0

    def test_returned_records_are_copies(self, staking):
        staking.stake("agent-1", 10).amount = 10**30
        staking.request_unstake("agent-1", 4, caller="agent-1").pending_unstake = 0
        staking.cancel_unstake("agent-1", caller="agent-1").amount = 0
        assert staking.get_stake("agent-1") == 10
        assert staking.total_staked == 10


# ── Unbonding ───────────────────────────────────────────────────


class TestUnbonding:
    def test_complete_before_unlock_fails_then_succeeds_once(self, staking, clock):
        staking.stake("agent-1", 2 * TOKEN)
        staking.request_unstake("agent-1", TOKEN, caller="agent-1")
        assert staking.get_stake("agent-1") == TOKEN

        clock.advance(minutes=30)
        with pytest.raises(PolicyViolation):
            staking.complete_unstake("agent-1", caller="agent-1")

        clock.advance(minutes=30)
        assert staking.complete_unstake("agent-1", caller="agent-1") == TOKEN

        with pytest.raises(PolicyViolation):
            staking.complete_unstake("agent-1", caller="agent-1")
        record = staking.get_record("agent-1")
        assert record.pending_unstake == 0
        assert record.unlocks_at is None

    def test_pending_sets_unlock_time(self, staking, clock):
        staking.stake("agent-1", 10)
        staking.request_unstake("agent-1", 4, caller="agent-1")
        record = staking.get_record("agent-1")
        assert record.pending_unstake == 4
        assert record.amount == 6
        assert record.unlocks_at is not None
        assert (record.unlocks_at - clock.now).total_seconds() == 3600

    def test_only_one_pending_request(self, staking):
        staking.stake("agent-1", 10)
        staking.request_unstake("agent-1", 4, caller="agent-1")
        with pytest.raises(PolicyViolation):
            staking.request_unstake("agent-1", 1, caller="agent-1")

    def test_cannot_exceed_free_stake(self, staking):
        staking.stake("agent-1", 10)
        with pytest.raises(InvalidInput):
            staking.request_unstake("agent-1", 11, caller="agent-1")

    def test_only_controller_may_unstake(self, staking):
        staking.stake("agent-1", 10)
        with pytest.raises(PolicyViolation):
            staking.request_unstake("agent-1", 5, caller="mallory")

    def test_registry_controller(self, clock):
        registry = AgentRegistry(clock=clock)
        registry.register("agent-1", controller="wallet-1")
        staking = StakingLedger(OWNER, registry=registry, clock=clock)
        staking.stake("agent-1", 10)
        with pytest.raises(PolicyViolation):
            staking.request_unstake("agent-1", 5, caller="agent-1")
        staking.request_unstake("agent-1", 5, caller="wallet-1")
        assert staking.get_record("agent-1").pending_unstake == 5

    def test_cancel_restores_stake(self, staking):
        staking.stake("agent-1", 10)
        staking.request_unstake("agent-1", 4, caller="agent-1")
        staking.cancel_unstake("agent-1", caller="agent-1")
        record = staking.get_record("agent-1")
        assert record.amount == 10
        assert record.pending_unstake == 0
        assert record.unlocks_at is None

    def test_cancel_without_pending(self, staking):
        staking.stake("agent-1", 10)
        with pytest.raises(PolicyViolation):
            staking.cancel_unstake("agent-1", caller="agent-1")

    def test_pending_does_not_count_toward_requirements(self, staking):
        staking.set_service_requirement("premium", 8, OWNER)
        staking.stake("agent-1", 10)
        assert staking.check_stake_requirement("agent-1", "premium").meets
        staking.request_unstake("agent-1", 5, caller="agent-1")
        check = staking.check_stake_requirement("agent-1", "premium")
        assert not check.meets
        assert check.current == 5
        assert check.required == 8


# ── Slashing ────────────────────────────────────────────────────


class TestSlash:
    def test_slash_moves_to_treasury(self, staking, clock):
        staking.stake("agent-1", 100)
        slash = staking.slash("agent-1", 30, "spam", OWNER)
        assert slash.amount == 30
        assert slash.timestamp == clock.now
        assert staking.get_stake("agent-1") == 70
        assert staking.treasury_balance == 30
        assert staking.get_record("agent-1").slashed_total == 30
        assert staking.slash_history("agent-1") == [slash]

    def test_slash_bounded_by_free_stake(self, staking):
        staking.stake("agent-1", 10)
        with pytest.raises(InvalidInput):
            staking.slash("agent-1", 11, "too much", OWNER)
        assert staking.get_stake("agent-1") == 10

    def test_slash_never_touches_pending_unstake(self, staking):
        staking.stake("agent-1", 10)
        staking.request_unstake("agent-1", 6, caller="agent-1")
        with pytest.raises(InvalidInput):
            staking.slash("agent-1", 5, "fraud", OWNER)
        staking.slash("agent-1", 4, "fraud", OWNER)
        record = staking.get_record("agent-1")
        assert record.amount == 0
        assert record.pending_unstake == 6

    def test_unauthorized_slasher(self, staking):
        staking.stake("agent-1", 10)
        with pytest.raises(PolicyViolation):
            staking.slash("agent-1", 1, "grudge", "mallory")

    def test_authorized_slasher(self, staking):
        staking.authorize_slasher("arbiter", OWNER)
        staking.stake("agent-1", 10)
        staking.slash("agent-1", 1, "ruling", "arbiter")
        assert staking.treasury_balance == 1


class TestServiceRequirements:
    def test_unknown_tier_requires_nothing(self, staking):
        check = staking.check_stake_requirement("agent-1", "unknown")
        assert check.meets
        assert check.required == 0

    def test_only_owner_sets_requirements(self, staking):
        with pytest.raises(PolicyViolation):
            staking.set_service_requirement("premium", 5, "mallory")

    def test_negative_requirement_rejected(self, staking):
        with pytest.raises(InvalidInput):
            staking.set_service_requirement("premium", -1, OWNER)
