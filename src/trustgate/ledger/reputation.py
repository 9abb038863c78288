"""
Reputation Ledger — payment-weighted, diversity-aware agent scoring.

Feedback is weighted by the payment that backed it, so flooding the ledger
with cheap self-dealt ratings moves the score very little. Binary job
outcomes are tracked separately from opinion: a single large payment cannot
offset a pattern of failures.

Score formula (0-100):
- No weighted feedback: neutral 50
- base = round(total_weighted_rating / total_weight * 20)   (1 star -> 20, 5 stars -> 100)
- success modifier = successful / (successful + failed) in percent, 100 with no jobs
- diversity bonus = linear from 0 (<= 1 unique rater) to DIVERSITY_BONUS_CAP (>= 100 raters)
- score = clamp(0, 100, round(base * modifier / 100 + bonus))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction
from typing import Callable, Optional
import logging
import math
import threading

from trustgate.errors import InvalidInput, PolicyViolation
from trustgate.models import NEUTRAL_SCORE, Clock, utcnow, validate_agent_id, validate_amount
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
DIVERSITY_BONUS_CAP = 10
DIVERSITY_FULL_RATERS = 100


@dataclass
class ReputationRecord:
    """Raw score inputs for one agent. Counters only ever grow."""

    agent_id: str
    total_weighted_rating: int = 0
    total_weight: int = 0
    unique_raters: set[str] = field(default_factory=set)
    successful_jobs: int = 0
    failed_jobs: int = 0
    last_update: Optional[datetime] = None
    rated_jobs: set[tuple[str, str]] = field(default_factory=set)  # (rater, job_id)

    @property
    def has_history(self) -> bool:
        return self.total_weight > 0 or (self.successful_jobs + self.failed_jobs) > 0


@dataclass(frozen=True)
class ReputationSummary:
    """Read model of an agent's reputation."""

    agent_id: str
    score: int
    successful_jobs: int
    failed_jobs: int
    total_weight: int
    unique_raters: int
    last_update: Optional[datetime]


def compute_score(record: ReputationRecord) -> int:
    """Pure function from score inputs to a 0-100 score."""
    if record.total_weight == 0:
        return NEUTRAL_SCORE

    base = _round_half_up(Fraction(record.total_weighted_rating * 20, record.total_weight))

    jobs = record.successful_jobs + record.failed_jobs
    success_pct = Fraction(record.successful_jobs * 100, jobs) if jobs else Fraction(100)

    raters = len(record.unique_raters)
    if raters <= 1:
        bonus = Fraction(0)
    elif raters >= DIVERSITY_FULL_RATERS:
        bonus = Fraction(DIVERSITY_BONUS_CAP)
    else:
        bonus = Fraction(DIVERSITY_BONUS_CAP * (raters - 1), DIVERSITY_FULL_RATERS - 1)

    score = _round_half_up(base * success_pct / 100 + bonus)
    return max(0, min(100, score))


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


class ReputationLedger:
    """
    Authoritative reputation state machine.

    Only authorized submitters (the owner, and identities the owner adds)
    can write feedback or job outcomes. Reads are pure.
    """

    def __init__(
        self,
        owner: str,
        event_bus: Optional[GatewayEventBus] = None,
        rater_weight: Optional[Callable[[str], int]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._owner = validate_agent_id(owner)
        self._submitters: set[str] = {owner}
        self._records: dict[str, ReputationRecord] = {}
        self._bus = event_bus
        self._rater_weight = rater_weight or (lambda rater_id: 1)
        self._clock = clock
        self._lock = threading.Lock()

    # ── Administration ──────────────────────────────────────────

    def authorize_submitter(self, submitter: str, caller: str) -> None:
        self._require_owner(caller)
        self._submitters.add(validate_agent_id(submitter))

    def revoke_submitter(self, submitter: str, caller: str) -> None:
        self._require_owner(caller)
        if submitter == self._owner:
            raise PolicyViolation("The ledger owner cannot be revoked as submitter")
        self._submitters.discard(submitter)

    def is_submitter(self, caller: str) -> bool:
        return caller in self._submitters

    # ── Writes ──────────────────────────────────────────────────

    def submit_feedback(
        self,
        agent_id: str,
        rater_id: str,
        rating: int,
        payment_amount: int,
        job_id: str,
        caller: str,
    ) -> int:
        """
        Record payment-weighted feedback and return the new score.

        Raises:
            PolicyViolation: If ``caller`` is not an authorized submitter
            InvalidInput: If the rating is out of range, the payment is not
                positive, the agent rates itself, or the rater already rated
                this job
        """
        self._require_submitter(caller)
        validate_agent_id(agent_id)
        validate_agent_id(rater_id)
        if isinstance(rating, bool) or not isinstance(rating, int) or not (
            MIN_RATING <= rating <= MAX_RATING
        ):
            raise InvalidInput(f"Rating must be an integer in {MIN_RATING}..{MAX_RATING}, got {rating!r}")
        validate_amount(payment_amount, "payment_amount")
        if rater_id == agent_id:
            raise InvalidInput(f"Agent {agent_id} cannot rate itself")
        if not job_id:
            raise InvalidInput("job_id is required")

        weight = payment_amount * self._rater_weight(rater_id)
        with self._lock:
            record = self._records.setdefault(agent_id, ReputationRecord(agent_id=agent_id))
            if (rater_id, job_id) in record.rated_jobs:
                raise InvalidInput(f"Rater {rater_id} already rated job {job_id} for {agent_id}")
            record.rated_jobs.add((rater_id, job_id))
            record.total_weighted_rating += rating * weight
            record.total_weight += weight
            record.unique_raters.add(rater_id)
            record.last_update = self._clock()
            score = compute_score(record)

        logger.debug(
            "Feedback for %s from %s: rating=%d weight=%d -> score %d",
            agent_id, rater_id, rating, weight, score,
        )
        if self._bus:
            self._bus.publish(
                EventType.FEEDBACK_SUBMITTED,
                agent_id=agent_id,
                rater_id=rater_id,
                rating=rating,
                weight=str(weight),
                job_id=job_id,
                score=score,
            )
        return score

    def record_job_outcome(
        self,
        agent_id: str,
        job_id: str,
        success: bool,
        caller: str,
    ) -> int:
        """Increment the success or failure counter and return the new score."""
        self._require_submitter(caller)
        validate_agent_id(agent_id)
        if not job_id:
            raise InvalidInput("job_id is required")

        with self._lock:
            record = self._records.setdefault(agent_id, ReputationRecord(agent_id=agent_id))
            if success:
                record.successful_jobs += 1
            else:
                record.failed_jobs += 1
            record.last_update = self._clock()
            score = compute_score(record)

        if self._bus:
            self._bus.publish(
                EventType.JOB_OUTCOME_RECORDED,
                agent_id=agent_id,
                job_id=job_id,
                success=success,
                score=score,
            )
        return score

    # ── Reads ───────────────────────────────────────────────────

    def get_score(self, agent_id: str) -> int:
        record = self._records.get(agent_id)
        if record is None:
            return NEUTRAL_SCORE
        with self._lock:
            return compute_score(record)

    def meets_threshold(self, agent_id: str, min_score: int) -> bool:
        return self.get_score(agent_id) >= min_score

    def has_history(self, agent_id: str) -> bool:
        record = self._records.get(agent_id)
        return record is not None and record.has_history

    def get_reputation(self, agent_id: str) -> ReputationSummary:
        with self._lock:
            record = self._records.get(agent_id) or ReputationRecord(agent_id=agent_id)
            return ReputationSummary(
                agent_id=agent_id,
                score=compute_score(record),
                successful_jobs=record.successful_jobs,
                failed_jobs=record.failed_jobs,
                total_weight=record.total_weight,
                unique_raters=len(record.unique_raters),
                last_update=record.last_update,
            )

    @property
    def tracked_agents(self) -> list[str]:
        return list(self._records.keys())

    # ── Helpers ─────────────────────────────────────────────────

    def _require_owner(self, caller: str) -> None:
        if caller != self._owner:
            raise PolicyViolation(f"{caller} is not the reputation ledger owner")

    def _require_submitter(self, caller: str) -> None:
        if caller not in self._submitters:
            raise PolicyViolation(f"{caller} is not an authorized feedback submitter")
