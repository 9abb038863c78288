"""
Anti-Flood Gate — proof-of-work challenges in front of expensive lookups.

A caller must find an answer such that SHA-256(challenge + answer) has
``difficulty`` leading zero bits. Verification is one hash; solving costs
about 2**difficulty hashes. Difficulty 0 disables the gate for an endpoint.

The only state is the in-flight challenge map plus a short memory of
consumed challenges, both bounded by the challenge TTL.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
import hashlib
import itertools
import logging
import secrets
import threading

from trustgate.models import Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL = timedelta(seconds=30)


class ChallengeOutcome(str, Enum):
    PASSED = "passed"
    MISSING = "missing"
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    REPLAYED = "replayed"
    INVALID_SOLUTION = "invalid_solution"


@dataclass(frozen=True)
class Challenge:
    """An issued proof-of-work challenge."""

    value: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class ChallengeResult:
    """Outcome of a verification. ``challenge`` is what the caller should solve next."""

    outcome: ChallengeOutcome
    challenge: Optional[Challenge] = None
    consumed_by: Optional[str] = None  # agent that solved a REPLAYED challenge

    @property
    def valid(self) -> bool:
        return self.outcome == ChallengeOutcome.PASSED


def leading_zero_bits(digest: bytes) -> int:
    bits = 0
    for byte in digest:
        if byte == 0:
            bits += 8
            continue
        bits += 8 - byte.bit_length()
        break
    return bits


def check_solution(challenge: str, answer: str, difficulty: int) -> bool:
    """True if SHA-256(challenge + answer) has ``difficulty`` leading zero bits."""
    if difficulty <= 0:
        return True
    digest = hashlib.sha256((challenge + answer).encode()).digest()
    return leading_zero_bits(digest) >= difficulty


def solve_challenge(challenge: str, difficulty: int, max_attempts: Optional[int] = None) -> str:
    """
    Client-side brute force. Returns the first decimal answer that satisfies
    ``difficulty``.

    Raises:
        ValueError: If no answer is found within ``max_attempts``
    """
    counter = itertools.count() if max_attempts is None else range(max_attempts)
    for n in counter:
        answer = str(n)
        if check_solution(challenge, answer, difficulty):
            return answer
    raise ValueError(f"No solution for difficulty {difficulty} within {max_attempts} attempts")


class AntiFloodGate:
    """
    Issues and verifies proof-of-work challenges.

    Usage:
        gate = AntiFloodGate()
        challenge = gate.generate_challenge()
        answer = solve_challenge(challenge.value, 12)      # client side
        result = gate.verify(challenge.value, answer, 12)  # server side
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        clock: Clock = utcnow,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._in_flight: dict[str, Challenge] = {}
        self._consumed: dict[str, tuple[datetime, Optional[str]]] = {}  # value -> (expiry, solver)
        self._lock = threading.Lock()

    def generate_challenge(self) -> Challenge:
        now = self._clock()
        challenge = Challenge(
            value=secrets.token_hex(32),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._purge_locked(now)
            self._in_flight[challenge.value] = challenge
        return challenge

    def verify(
        self,
        challenge: Optional[str],
        answer: Optional[str],
        difficulty: int,
        agent_id: Optional[str] = None,
    ) -> ChallengeResult:
        """
        Check a proposed answer.

        Difficulty 0 always passes. A missing, unknown or expired challenge is
        answered with a fresh one; a wrong answer keeps the stored challenge.
        A successfully used challenge is consumed and reported as REPLAYED if
        presented again. The agent that solved it is remembered so a replay
        can be attributed to it.
        """
        if difficulty <= 0:
            return ChallengeResult(ChallengeOutcome.PASSED)
        if not challenge or answer is None:
            return ChallengeResult(ChallengeOutcome.MISSING, self.generate_challenge())

        now = self._clock()
        with self._lock:
            stored = self._in_flight.get(challenge)
            consumed_by = None
            if stored is None:
                spent = self._consumed.get(challenge)
                if spent is not None:
                    outcome = ChallengeOutcome.REPLAYED
                    consumed_by = spent[1]
                else:
                    outcome = ChallengeOutcome.UNKNOWN
            elif stored.is_expired(now):
                del self._in_flight[challenge]
                outcome = ChallengeOutcome.EXPIRED
            elif check_solution(challenge, answer, difficulty):
                del self._in_flight[challenge]
                self._consumed[challenge] = (stored.expires_at, agent_id)
                return ChallengeResult(ChallengeOutcome.PASSED)
            else:
                return ChallengeResult(ChallengeOutcome.INVALID_SOLUTION, stored)

        if outcome == ChallengeOutcome.REPLAYED:
            logger.warning("Consumed challenge presented again")
        return ChallengeResult(outcome, self.generate_challenge(), consumed_by=consumed_by)

    def purge_expired(self) -> int:
        """Drop expired in-flight and consumed entries. Returns how many were removed."""
        with self._lock:
            return self._purge_locked(self._clock())

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _purge_locked(self, now: datetime) -> int:
        stale = [v for v, c in self._in_flight.items() if c.is_expired(now)]
        for v in stale:
            del self._in_flight[v]
        # Past its expiry a replayed value would be rejected as unknown anyway
        spent = [v for v, (exp, _) in self._consumed.items() if now > exp]
        for v in spent:
            del self._consumed[v]
        return len(stale) + len(spent)
