"""
Risk Engine — short-horizon behavioral scoring per agent.

Profiles live only in process memory: a restart (or ``reset()``) starts
every agent from zero. Risk is a recent-behavior signal, not a ledger fact.

Each agent's profile is guarded by its own lock, so concurrent requests
from one agent serialize while different agents never contend. Locks and
profiles are created only by the mutators; scoring an unknown agent leaves
no state behind. Abuse flags expire after ``abuse_flag_ttl``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Optional
import logging
import threading

from trustgate.models import Clock, utcnow
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)

HISTORY_WINDOW = timedelta(hours=1)
ABUSE_FLAG_TTL = timedelta(hours=1)
BURST_WINDOW = timedelta(seconds=60)

MAX_RISK = 100
BLOCK_RISK_THRESHOLD = 80
BLOCK_ABUSE_FLAGS = 3

LARGE_PAYLOAD_BYTES = 100_000


@dataclass(frozen=True)
class AbuseFlag:
    reason: str
    timestamp: datetime


@dataclass
class RiskProfile:
    """Behavioral history for one agent."""

    agent_id: str
    request_timestamps: list[datetime] = field(default_factory=list)
    total_requests: int = 0
    failure_count: int = 0
    abuse_flags: list[AbuseFlag] = field(default_factory=list)

    def copy(self) -> RiskProfile:
        return RiskProfile(
            agent_id=self.agent_id,
            request_timestamps=list(self.request_timestamps),
            total_requests=self.total_requests,
            failure_count=self.failure_count,
            abuse_flags=list(self.abuse_flags),
        )


@dataclass(frozen=True)
class RiskBreakdown:
    """Individual penalty terms behind a risk score."""

    burst: int = 0
    failures: int = 0
    abuse: int = 0
    cold_start: int = 0
    suspicious_hours: int = 0
    payload: int = 0

    @property
    def total(self) -> int:
        raw = (
            self.burst + self.failures + self.abuse
            + self.cold_start + self.suspicious_hours + self.payload
        )
        return min(raw, MAX_RISK)


class RiskEngine:
    """
    Keyed store of per-agent risk profiles.

    Penalty terms (summed, capped at 100):
    - Burst: +20 for more than 30 requests in the last 60s, +10 for more than 10
    - Failures: +30 for more than 10, +15 for more than 5
    - Abuse: +10 per unexpired flag
    - Cold start: +15 with fewer than 5 known requests
    - Suspicious hours: small bump inside a configurable local-hour window
    - Payload: +20 for payloads over 100 kB
    """

    def __init__(
        self,
        suspicious_hours: Optional[tuple[int, int]] = (2, 5),
        suspicious_hours_penalty: int = 5,
        suspicious_hours_tz: Optional[tzinfo] = None,
        abuse_flag_ttl: timedelta = ABUSE_FLAG_TTL,
        event_bus: Optional[GatewayEventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        if suspicious_hours is not None:
            start, end = suspicious_hours
            if not (0 <= start <= 23 and 0 <= end <= 23):
                raise ValueError(f"suspicious_hours must be hours in 0..23, got {suspicious_hours}")
        if abuse_flag_ttl <= timedelta(0):
            raise ValueError(f"abuse_flag_ttl must be positive, got {abuse_flag_ttl}")
        self._suspicious_hours = suspicious_hours
        self._suspicious_penalty = suspicious_hours_penalty
        self._suspicious_tz = suspicious_hours_tz  # None = server local time
        self._abuse_flag_ttl = abuse_flag_ttl
        self._bus = event_bus
        self._clock = clock
        self._profiles: dict[str, RiskProfile] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ── Mutators ────────────────────────────────────────────────

    def record_request(self, agent_id: str) -> None:
        """Record a served request and prune history older than one hour."""
        now = self._clock()
        cutoff = now - HISTORY_WINDOW
        with self._lock_for(agent_id):
            profile = self._profile(agent_id)
            profile.request_timestamps.append(now)
            profile.total_requests += 1
            profile.request_timestamps = [t for t in profile.request_timestamps if t > cutoff]
            self._prune_flags(profile, now)

    def record_failure(self, agent_id: str) -> None:
        with self._lock_for(agent_id):
            self._profile(agent_id).failure_count += 1

    def flag_abuse(self, agent_id: str, reason: str) -> int:
        """Attach an abuse flag. Returns the agent's unexpired flag count."""
        now = self._clock()
        with self._lock_for(agent_id):
            profile = self._profile(agent_id)
            self._prune_flags(profile, now)
            profile.abuse_flags.append(AbuseFlag(reason=reason, timestamp=now))
            count = len(profile.abuse_flags)

        logger.warning("Abuse flag on %s: %s (%d total)", agent_id, reason, count)
        if self._bus:
            self._bus.publish(EventType.ABUSE_FLAGGED, agent_id=agent_id, reason=reason, flags=count)
        return count

    def reset(self) -> None:
        """Drop every profile, as a process restart would."""
        with self._registry_lock:
            self._profiles.clear()
            self._locks.clear()

    # ── Scoring ─────────────────────────────────────────────────

    def breakdown(self, agent_id: str, payload_size: Optional[int] = None) -> RiskBreakdown:
        now = self._clock()
        burst_cutoff = now - BURST_WINDOW
        profile = self._snapshot(agent_id) or RiskProfile(agent_id=agent_id)
        recent = sum(1 for t in profile.request_timestamps if t > burst_cutoff)
        failures = profile.failure_count
        flags = self._live_flags(profile, now)
        known = profile.total_requests

        if recent > 30:
            burst = 20
        elif recent > 10:
            burst = 10
        else:
            burst = 0

        if failures > 10:
            failure_penalty = 30
        elif failures > 5:
            failure_penalty = 15
        else:
            failure_penalty = 0

        return RiskBreakdown(
            burst=burst,
            failures=failure_penalty,
            abuse=10 * flags,
            cold_start=15 if known < 5 else 0,
            suspicious_hours=self._suspicious_penalty if self._in_suspicious_hours(now) else 0,
            payload=20 if payload_size is not None and payload_size > LARGE_PAYLOAD_BYTES else 0,
        )

    def calculate_risk(self, agent_id: str, payload_size: Optional[int] = None) -> int:
        """Risk score 0-100, higher is riskier."""
        return self.breakdown(agent_id, payload_size).total

    def should_block(self, agent_id: str, payload_size: Optional[int] = None) -> bool:
        risk = self.calculate_risk(agent_id, payload_size)
        return risk > BLOCK_RISK_THRESHOLD or self.abuse_flag_count(agent_id) >= BLOCK_ABUSE_FLAGS

    def abuse_flag_count(self, agent_id: str) -> int:
        profile = self._snapshot(agent_id)
        return self._live_flags(profile, self._clock()) if profile else 0

    def profile(self, agent_id: str) -> Optional[RiskProfile]:
        """A copy of the agent's profile, or None if never seen."""
        return self._snapshot(agent_id)

    @property
    def tracked_agents(self) -> int:
        return len(self._profiles)

    # ── Helpers ─────────────────────────────────────────────────

    def _lock_for(self, agent_id: str) -> threading.Lock:
        # Mutators only
        lock = self._locks.get(agent_id)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(agent_id, threading.Lock())
        return lock

    def _profile(self, agent_id: str) -> RiskProfile:
        # Caller holds the agent's lock
        profile = self._profiles.get(agent_id)
        if profile is None:
            with self._registry_lock:
                profile = self._profiles.setdefault(agent_id, RiskProfile(agent_id=agent_id))
        return profile

    def _snapshot(self, agent_id: str) -> Optional[RiskProfile]:
        lock = self._locks.get(agent_id)
        if lock is None:
            return None
        with lock:
            profile = self._profiles.get(agent_id)
            return profile.copy() if profile else None

    def _prune_flags(self, profile: RiskProfile, now: datetime) -> None:
        cutoff = now - self._abuse_flag_ttl
        profile.abuse_flags = [f for f in profile.abuse_flags if f.timestamp > cutoff]

    def _live_flags(self, profile: RiskProfile, now: datetime) -> int:
        cutoff = now - self._abuse_flag_ttl
        return sum(1 for f in profile.abuse_flags if f.timestamp > cutoff)

    def _in_suspicious_hours(self, now: datetime) -> bool:
        if self._suspicious_hours is None:
            return False
        start, end = self._suspicious_hours
        hour = now.astimezone(self._suspicious_tz).hour
        if start <= end:
            return start <= hour <= end
        return hour >= start or hour <= end
