"""
Ledger write pipeline — out-of-band application of ledger mutations.

Job completion (and the HTTP adapter) emit ``LedgerWrite`` entries onto an
asyncio queue; a single background worker applies them in order. The
admission path never awaits a ledger write, so ledger latency and failures
cannot stall request serving.

Failure handling:
- LedgerUnavailable: retried with exponential backoff, dead-lettered after
  ``max_attempts``
- Any other gateway error (policy, invalid input): rejected, not retried

Finished writes stay queryable by id until ``history_limit`` newer ones
have finished.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import asyncio
import logging
import uuid

from trustgate.errors import LedgerUnavailable, TrustGatewayError
from trustgate.ledger.reputation import ReputationLedger
from trustgate.ledger.staking import StakingLedger
from trustgate.models import utcnow
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10_000


class LedgerWriteKind(str, Enum):
    """Ledger mutations the pipeline knows how to apply."""

    FEEDBACK = "feedback"
    JOB_OUTCOME = "job_outcome"
    STAKE = "stake"
    REQUEST_UNSTAKE = "request_unstake"
    COMPLETE_UNSTAKE = "complete_unstake"
    CANCEL_UNSTAKE = "cancel_unstake"
    SLASH = "slash"


class WriteStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"  # refused by ledger policy, never retried
    DEAD = "dead"  # ledger stayed unavailable for every attempt


@dataclass
class LedgerWrite:
    """A queued ledger mutation."""

    kind: LedgerWriteKind
    agent_id: str
    caller: str
    params: dict[str, Any] = field(default_factory=dict)
    write_id: str = field(default_factory=lambda: f"lw:{uuid.uuid4().hex[:10]}")
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    status: WriteStatus = WriteStatus.PENDING
    error: Optional[str] = None
    result: Any = None


class LedgerWriter:
    """
    Single-worker asyncio consumer for ledger writes.

    Usage:
        writer = LedgerWriter(reputation, staking)
        await writer.start()
        writer.submit_job_outcome("agent-1", "job-9", success=True, caller=operator)
        ...
        await writer.stop()
    """

    def __init__(
        self,
        reputation: ReputationLedger,
        staking: StakingLedger,
        event_bus: Optional[GatewayEventBus] = None,
        max_attempts: int = 5,
        retry_base_seconds: float = 0.5,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if history_limit < 1:
            raise ValueError(f"history_limit must be at least 1, got {history_limit}")
        self._reputation = reputation
        self._staking = staking
        self._bus = event_bus
        self._max_attempts = max_attempts
        self._retry_base = retry_base_seconds
        self._sleep = sleep
        self._queue: asyncio.Queue[LedgerWrite] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        # Finished writes, oldest first; evicting one also forgets its id
        self._completed: deque[LedgerWrite] = deque(maxlen=history_limit)
        self._writes: dict[str, LedgerWrite] = {}

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="trustgate-ledger-writer")

    async def stop(self) -> None:
        """Finish queued writes, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def drain(self) -> None:
        """Wait until every submitted write has been processed."""
        await self._queue.join()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Submission ──────────────────────────────────────────────

    def submit(self, write: LedgerWrite) -> LedgerWrite:
        self._writes[write.write_id] = write
        self._queue.put_nowait(write)
        logger.debug("Queued %s %s for %s", write.kind.value, write.write_id, write.agent_id)
        return write

    def submit_feedback(
        self,
        agent_id: str,
        rater_id: str,
        rating: int,
        payment_amount: int,
        job_id: str,
        caller: str,
    ) -> LedgerWrite:
        return self.submit(LedgerWrite(
            kind=LedgerWriteKind.FEEDBACK,
            agent_id=agent_id,
            caller=caller,
            params={
                "rater_id": rater_id,
                "rating": rating,
                "payment_amount": payment_amount,
                "job_id": job_id,
            },
        ))

    def submit_job_outcome(self, agent_id: str, job_id: str, success: bool, caller: str) -> LedgerWrite:
        return self.submit(LedgerWrite(
            kind=LedgerWriteKind.JOB_OUTCOME,
            agent_id=agent_id,
            caller=caller,
            params={"job_id": job_id, "success": success},
        ))

    def submit_stake_change(
        self,
        kind: LedgerWriteKind,
        agent_id: str,
        caller: str,
        amount: Optional[int] = None,
        reason: str = "",
    ) -> LedgerWrite:
        params: dict[str, Any] = {}
        if amount is not None:
            params["amount"] = amount
        if kind == LedgerWriteKind.SLASH:
            params["reason"] = reason
        return self.submit(LedgerWrite(kind=kind, agent_id=agent_id, caller=caller, params=params))

    def record_job_completion(
        self,
        agent_id: str,
        job_id: str,
        success: bool,
        caller: str,
        rater_id: Optional[str] = None,
        rating: Optional[int] = None,
        payment_amount: Optional[int] = None,
    ) -> list[LedgerWrite]:
        """
        Emit the writes a finished job produces: always its outcome, plus
        payment-weighted feedback when the paying counterparty rated it.
        """
        writes = [self.submit_job_outcome(agent_id, job_id, success, caller)]
        if rater_id is not None and rating is not None and payment_amount:
            writes.append(
                self.submit_feedback(agent_id, rater_id, rating, payment_amount, job_id, caller)
            )
        return writes

    # ── Worker ──────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            write = await self._queue.get()
            try:
                await self._process(write)
            except Exception:
                # A broken write must not take the worker down with it
                logger.exception("Unexpected error applying %s", write.write_id)
                write.status = WriteStatus.REJECTED
                write.error = "internal error"
                self._finish(write)
            finally:
                self._queue.task_done()

    async def _process(self, write: LedgerWrite) -> None:
        while True:
            write.attempts += 1
            try:
                write.result = await asyncio.to_thread(self._apply, write)
            except LedgerUnavailable as e:
                write.error = str(e)
                if write.attempts >= self._max_attempts:
                    write.status = WriteStatus.DEAD
                    logger.error(
                        "Ledger write %s (%s for %s) dead after %d attempts: %s",
                        write.write_id, write.kind.value, write.agent_id, write.attempts, e,
                    )
                    self._publish(EventType.LEDGER_WRITE_FAILED, write)
                    break
                delay = self._retry_base * (2 ** (write.attempts - 1))
                logger.warning(
                    "Ledger unavailable for %s, retrying in %.2fs (attempt %d/%d)",
                    write.write_id, delay, write.attempts, self._max_attempts,
                )
                self._publish(EventType.LEDGER_WRITE_RETRIED, write)
                await self._sleep(delay)
                continue
            except TrustGatewayError as e:
                write.status = WriteStatus.REJECTED
                write.error = f"{e.code}: {e.message}"
                logger.warning("Ledger write %s rejected: %s", write.write_id, write.error)
                self._publish(EventType.LEDGER_WRITE_FAILED, write)
                break
            write.status = WriteStatus.APPLIED
            write.error = None
            self._publish(EventType.LEDGER_WRITE_APPLIED, write)
            break
        self._finish(write)

    def _finish(self, write: LedgerWrite) -> None:
        if len(self._completed) == self._completed.maxlen:
            evicted = self._completed[0]
            self._writes.pop(evicted.write_id, None)
        self._completed.append(write)

    def _apply(self, write: LedgerWrite) -> Any:
        p = write.params
        if write.kind == LedgerWriteKind.FEEDBACK:
            return self._reputation.submit_feedback(
                write.agent_id, p["rater_id"], p["rating"], p["payment_amount"], p["job_id"], write.caller
            )
        if write.kind == LedgerWriteKind.JOB_OUTCOME:
            return self._reputation.record_job_outcome(
                write.agent_id, p["job_id"], p["success"], write.caller
            )
        if write.kind == LedgerWriteKind.STAKE:
            return self._staking.stake(write.agent_id, p["amount"], write.caller)
        if write.kind == LedgerWriteKind.REQUEST_UNSTAKE:
            return self._staking.request_unstake(write.agent_id, p["amount"], write.caller)
        if write.kind == LedgerWriteKind.COMPLETE_UNSTAKE:
            return self._staking.complete_unstake(write.agent_id, write.caller)
        if write.kind == LedgerWriteKind.CANCEL_UNSTAKE:
            return self._staking.cancel_unstake(write.agent_id, write.caller)
        if write.kind == LedgerWriteKind.SLASH:
            return self._staking.slash(write.agent_id, p["amount"], p.get("reason", ""), write.caller)
        raise ValueError(f"Unknown ledger write kind: {write.kind}")

    def _publish(self, event_type: EventType, write: LedgerWrite) -> None:
        if self._bus:
            self._bus.publish(
                event_type,
                agent_id=write.agent_id,
                write_id=write.write_id,
                kind=write.kind.value,
                attempts=write.attempts,
                error=write.error,
            )

    # ── Inspection ──────────────────────────────────────────────

    def get(self, write_id: str) -> Optional[LedgerWrite]:
        return self._writes.get(write_id)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def completed(self) -> list[LedgerWrite]:
        return list(self._completed)

    @property
    def dead_letters(self) -> list[LedgerWrite]:
        return [w for w in self._completed if w.status == WriteStatus.DEAD]
