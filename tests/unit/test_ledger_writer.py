"""Tests for the queued ledger write pipeline."""

from trustgate.errors import LedgerUnavailable
from trustgate.ledger.reputation import ReputationLedger
from trustgate.ledger.staking import StakingLedger
from trustgate.ledger.writer import LedgerWriteKind, LedgerWriter, WriteStatus
from trustgate.observability.event_bus import EventType, GatewayEventBus

OWNER = "operator"


class FlakyReputation(ReputationLedger):
    """Reputation ledger whose job-outcome writes fail a set number of times."""

    def __init__(self, failures: int) -> None:
        super().__init__(OWNER)
        self.failures = failures

    def record_job_outcome(self, agent_id, job_id, success, caller):
        if self.failures > 0:
            self.failures -= 1
            raise LedgerUnavailable("ledger node unreachable")
        return super().record_job_outcome(agent_id, job_id, success, caller)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _writer(reputation=None, staking=None, **kwargs):
    return LedgerWriter(
        reputation or ReputationLedger(OWNER),
        staking or StakingLedger(OWNER),
        **kwargs,
    )


class TestLedgerWriter:
    async def test_submit_does_not_block(self):
        writer = _writer()
        write = writer.submit_job_outcome("agent-1", "job-1", True, OWNER)
        assert write.status == WriteStatus.PENDING
        assert writer.pending == 1
        assert writer.get(write.write_id) is write

    async def test_applies_in_order(self):
        staking = StakingLedger(OWNER)
        writer = _writer(staking=staking)
        await writer.start()
        writer.submit_stake_change(LedgerWriteKind.STAKE, "agent-1", "agent-1", amount=10)
        writer.submit_stake_change(LedgerWriteKind.REQUEST_UNSTAKE, "agent-1", "agent-1", amount=4)
        await writer.drain()
        record = staking.get_record("agent-1")
        assert record.amount == 6
        assert record.pending_unstake == 4
        assert [w.status for w in writer.completed] == [WriteStatus.APPLIED, WriteStatus.APPLIED]
        await writer.stop()
        assert not writer.running

    async def test_retries_unavailable_ledger(self):
        bus = GatewayEventBus()
        sleep = RecordingSleep()
        reputation = FlakyReputation(failures=2)
        writer = _writer(reputation=reputation, event_bus=bus, sleep=sleep)
        await writer.start()
        write = writer.submit_job_outcome("agent-1", "job-1", True, OWNER)
        await writer.drain()
        assert write.status == WriteStatus.APPLIED
        assert write.attempts == 3
        assert sleep.delays == [0.5, 1.0]
        assert reputation.get_reputation("agent-1").successful_jobs == 1
        assert len(bus.query(event_type=EventType.LEDGER_WRITE_RETRIED)) == 2
        assert len(bus.query(event_type=EventType.LEDGER_WRITE_APPLIED)) == 1
        await writer.stop()

    async def test_dead_letter_after_max_attempts(self):
        sleep = RecordingSleep()
        writer = _writer(reputation=FlakyReputation(failures=10), max_attempts=3, sleep=sleep)
        await writer.start()
        write = writer.submit_job_outcome("agent-1", "job-1", False, OWNER)
        await writer.drain()
        assert write.status == WriteStatus.DEAD
        assert write.attempts == 3
        assert writer.dead_letters == [write]
        assert sleep.delays == [0.5, 1.0]
        await writer.stop()

    async def test_policy_rejection_not_retried(self):
        sleep = RecordingSleep()
        writer = _writer(sleep=sleep)
        await writer.start()
        write = writer.submit_feedback("agent-1", "rater-1", 5, 100, "job-1", caller="mallory")
        await writer.drain()
        assert write.status == WriteStatus.REJECTED
        assert write.attempts == 1
        assert write.error.startswith("POLICY_VIOLATION")
        assert sleep.delays == []
        await writer.stop()

    async def test_job_completion_with_feedback(self):
        reputation = ReputationLedger(OWNER)
        writer = _writer(reputation=reputation)
        await writer.start()
        writes = writer.record_job_completion(
            "agent-1", "job-1", True, OWNER, rater_id="client-1", rating=5, payment_amount=250
        )
        await writer.drain()
        assert [w.kind for w in writes] == [LedgerWriteKind.JOB_OUTCOME, LedgerWriteKind.FEEDBACK]
        summary = reputation.get_reputation("agent-1")
        assert summary.successful_jobs == 1
        assert summary.total_weight == 250
        assert summary.score == 100
        await writer.stop()

    async def test_job_completion_without_rating(self):
        writer = _writer()
        writes = writer.record_job_completion("agent-1", "job-1", False, OWNER)
        assert len(writes) == 1

    async def test_stop_finishes_queued_writes(self):
        staking = StakingLedger(OWNER)
        writer = _writer(staking=staking)
        await writer.start()
        writer.submit_stake_change(LedgerWriteKind.STAKE, "agent-1", "agent-1", amount=3)
        await writer.stop()
        assert staking.get_stake("agent-1") == 3

    async def test_slash_write(self):
        staking = StakingLedger(OWNER)
        staking.stake("agent-1", 10)
        writer = _writer(staking=staking)
        await writer.start()
        write = writer.submit_stake_change(
            LedgerWriteKind.SLASH, "agent-1", OWNER, amount=4, reason="fraud"
        )
        await writer.drain()
        assert write.status == WriteStatus.APPLIED
        assert write.result.amount == 4
        assert staking.treasury_balance == 4
        await writer.stop()

    async def test_history_is_bounded(self):
        writer = _writer(history_limit=2)
        await writer.start()
        writes = [
            writer.submit_stake_change(LedgerWriteKind.STAKE, "agent-1", "agent-1", amount=1)
            for _ in range(3)
        ]
        await writer.drain()
        assert [w.write_id for w in writer.completed] == [w.write_id for w in writes[1:]]
        assert writer.get(writes[0].write_id) is None
        assert writer.get(writes[2].write_id).status == WriteStatus.APPLIED
        await writer.stop()
