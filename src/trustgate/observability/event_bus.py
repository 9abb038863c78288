"""
Structured event bus for the trust gateway.

Every admission decision, session lifecycle change, abuse flag and ledger
mutation emits a typed event to an append-only store. Subscribers (metrics
exporters, indexers, a persistence layer) attach here instead of reaching
into component internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
import logging
import threading
import uuid

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Categorised gateway event types."""

    # Admission
    ADMISSION_ADMITTED = "admission.admitted"
    ADMISSION_BLOCKED = "admission.blocked"
    ADMISSION_PAYMENT_REQUIRED = "admission.payment_required"
    ADMISSION_CHALLENGED = "admission.challenged"

    # Sessions
    SESSION_ISSUED = "session.issued"
    SESSION_REJECTED = "session.rejected"
    SESSION_REVOKED = "session.revoked"

    # Security
    ABUSE_FLAGGED = "security.abuse_flagged"
    CHALLENGE_REPLAYED = "security.challenge_replayed"

    # Registry
    AGENT_REGISTERED = "registry.agent_registered"
    AGENT_DEACTIVATED = "registry.agent_deactivated"
    AGENT_REACTIVATED = "registry.agent_reactivated"

    # Reputation ledger
    FEEDBACK_SUBMITTED = "reputation.feedback_submitted"
    JOB_OUTCOME_RECORDED = "reputation.job_outcome_recorded"

    # Staking ledger
    STAKE_ADDED = "staking.stake_added"
    UNSTAKE_REQUESTED = "staking.unstake_requested"
    UNSTAKE_COMPLETED = "staking.unstake_completed"
    UNSTAKE_CANCELLED = "staking.unstake_cancelled"
    STAKE_SLASHED = "staking.slashed"

    # Write pipeline
    LEDGER_WRITE_APPLIED = "ledger.write_applied"
    LEDGER_WRITE_RETRIED = "ledger.write_retried"
    LEDGER_WRITE_FAILED = "ledger.write_failed"


@dataclass(frozen=True)
class GatewayEvent:
    """An immutable, structured event emitted by the gateway."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    event_type: EventType = EventType.ADMISSION_ADMITTED
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    agent_id: Optional[str] = None
    endpoint: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "agent_id": self.agent_id,
            "endpoint": self.endpoint,
            "payload": self.payload,
        }


# Type alias for event subscribers
EventHandler = Callable[[GatewayEvent], None]


class GatewayEventBus:
    """
    Append-only structured event store with pub/sub.

    Supports:
    - Append-only storage (immutable event log, optionally bounded)
    - Query by type, agent, endpoint
    - Subscribe to specific event types
    - Event counts per type

    A failing subscriber is logged and skipped; it never breaks the emitter.
    """

    def __init__(self, max_events: Optional[int] = None) -> None:
        self._events: list[GatewayEvent] = []
        self._subscribers: dict[Optional[EventType], list[EventHandler]] = {}
        self._type_counts: dict[EventType, int] = {}
        self._max_events = max_events
        self._lock = threading.Lock()

    def emit(self, event: GatewayEvent) -> None:
        """Append an event and notify subscribers."""
        with self._lock:
            self._events.append(event)
            self._type_counts[event.event_type] = self._type_counts.get(event.event_type, 0) + 1
            if self._max_events is not None and len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]
            handlers = list(self._subscribers.get(event.event_type, []))
            handlers.extend(self._subscribers.get(None, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber %r failed on %s", handler, event.event_type.value
                )

    def publish(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        **payload: Any,
    ) -> GatewayEvent:
        """Build and emit an event in one call."""
        event = GatewayEvent(
            event_type=event_type,
            agent_id=agent_id,
            endpoint=endpoint,
            payload=payload,
        )
        self.emit(event)
        return event

    def subscribe(
        self,
        event_type: Optional[EventType] = None,
        handler: Optional[EventHandler] = None,
    ) -> None:
        """Subscribe to events. Use event_type=None for all events."""
        if handler:
            with self._lock:
                self._subscribers.setdefault(event_type, []).append(handler)

    def query(
        self,
        event_type: Optional[EventType] = None,
        agent_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GatewayEvent]:
        """Flexible query with multiple filters."""
        with self._lock:
            results = list(self._events)

        if event_type is not None:
            results = [e for e in results if e.event_type == event_type]
        if agent_id is not None:
            results = [e for e in results if e.agent_id == agent_id]
        if endpoint is not None:
            results = [e for e in results if e.endpoint == endpoint]

        if limit is not None:
            results = results[-limit:]

        return results

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def all_events(self) -> list[GatewayEvent]:
        with self._lock:
            return list(self._events)

    def type_counts(self) -> dict[str, int]:
        """Return count of events per type, including evicted ones."""
        with self._lock:
            return {t.value: n for t, n in self._type_counts.items()}

    def clear(self) -> None:
        """Clear all events (for testing)."""
        with self._lock:
            self._events.clear()
            self._type_counts.clear()
