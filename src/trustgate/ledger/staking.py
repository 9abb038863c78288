"""
Staking Ledger — collateral, unbonding and slashing.

Funds are either free (``amount``, counted toward requirements and
slashable) or pending exit (``pending_unstake``, neither). Moving funds out
always goes through a fixed unbonding delay so stake cannot be withdrawn
inside the settlement window it was used to qualify for.

Slashing only ever touches free stake. Funds already committed to exit are
outside its reach; this is a known policy gap left open deliberately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
import logging
import threading
import uuid

from trustgate.errors import InvalidInput, PolicyViolation
from trustgate.ledger.registry import AgentRegistry
from trustgate.models import Clock, utcnow, validate_agent_id, validate_amount
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)

DEFAULT_UNBONDING_PERIOD = timedelta(hours=1)


@dataclass
class StakeRecord:
    """Collateral state for one agent."""

    agent_id: str
    amount: int = 0
    pending_unstake: int = 0
    unlocks_at: Optional[datetime] = None
    slashed_total: int = 0

    @property
    def is_unbonding(self) -> bool:
        return self.pending_unstake > 0


@dataclass(frozen=True)
class SlashRecord:
    """An executed slash."""

    slash_id: str = field(default_factory=lambda: f"slash:{uuid.uuid4().hex[:8]}")
    agent_id: str = ""
    amount: int = 0
    reason: str = ""
    slasher: str = ""
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StakeRequirementCheck:
    """Result of checking free stake against a service tier minimum."""

    meets: bool
    current: int
    required: int


class StakingLedger:
    """
    Authoritative staking state machine.

    Lifecycle per agent:
        stake() ─► amount ──request_unstake()──► pending_unstake
                    ▲                               │
                    └──────cancel_unstake()─────────┤
                                                    └─complete_unstake() after unlocks_at ─► released

    ``slash()`` moves free ``amount`` to the treasury and is irreversible.
    """

    def __init__(
        self,
        owner: str,
        registry: Optional[AgentRegistry] = None,
        min_stake: int = 1,
        unbonding_period: timedelta = DEFAULT_UNBONDING_PERIOD,
        event_bus: Optional[GatewayEventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        if min_stake < 1:
            raise ValueError(f"min_stake must be at least 1, got {min_stake}")
        self._owner = validate_agent_id(owner)
        self._registry = registry
        self._min_stake = min_stake
        self._unbonding_period = unbonding_period
        self._bus = event_bus
        self._clock = clock
        self._records: dict[str, StakeRecord] = {}
        self._slashers: set[str] = {owner}
        self._tier_requirements: dict[str, int] = {}
        self._slashes: list[SlashRecord] = []
        self._treasury = 0
        self._lock = threading.Lock()

    # ── Administration ──────────────────────────────────────────

    def authorize_slasher(self, slasher: str, caller: str) -> None:
        self._require_owner(caller)
        self._slashers.add(validate_agent_id(slasher))

    def set_service_requirement(self, service_tier_id: str, minimum: int, caller: str) -> None:
        """Set the minimum free stake for a service tier (0 clears it)."""
        self._require_owner(caller)
        if not service_tier_id:
            raise InvalidInput("service_tier_id is required")
        if isinstance(minimum, bool) or not isinstance(minimum, int) or minimum < 0:
            raise InvalidInput(f"minimum must be a non-negative integer, got {minimum!r}")
        self._tier_requirements[service_tier_id] = minimum

    # ── Writes ──────────────────────────────────────────────────

    def stake(self, agent_id: str, amount: int, caller: Optional[str] = None) -> StakeRecord:
        """Add free stake. Anyone may top up an agent's collateral."""
        validate_agent_id(agent_id)
        validate_amount(amount)
        if amount < self._min_stake:
            raise InvalidInput(f"Stake {amount} is below the minimum of {self._min_stake}")

        with self._lock:
            record = self._records.setdefault(agent_id, StakeRecord(agent_id=agent_id))
            record.amount += amount
            total = record.amount

        logger.info("Agent %s staked %d (free stake now %d)", agent_id, amount, total)
        if self._bus:
            self._bus.publish(
                EventType.STAKE_ADDED,
                agent_id=agent_id,
                amount=str(amount),
                caller=caller or agent_id,
            )
        return self.get_record(agent_id)

    def request_unstake(self, agent_id: str, amount: int, caller: str) -> StakeRecord:
        """
        Move free stake into the unbonding queue.

        Raises:
            PolicyViolation: If the caller is not the controller or a request
                is already pending
            InvalidInput: If the amount is not positive or exceeds free stake
        """
        self._require_controller(agent_id, caller)
        validate_amount(amount)

        with self._lock:
            record = self._records.get(agent_id)
            if record is None or amount > record.amount:
                available = record.amount if record else 0
                raise InvalidInput(
                    f"Unstake of {amount} exceeds free stake {available} for {agent_id}"
                )
            if record.is_unbonding:
                raise PolicyViolation(f"Agent {agent_id} already has a pending unstake request")
            record.amount -= amount
            record.pending_unstake = amount
            record.unlocks_at = self._clock() + self._unbonding_period
            unlocks_at = record.unlocks_at

        logger.info("Agent %s requested unstake of %d, unlocks at %s", agent_id, amount, unlocks_at)
        if self._bus:
            self._bus.publish(
                EventType.UNSTAKE_REQUESTED,
                agent_id=agent_id,
                amount=str(amount),
                unlocks_at=unlocks_at.isoformat(),
            )
        return self.get_record(agent_id)

    def complete_unstake(self, agent_id: str, caller: str) -> int:
        """
        Release unbonded funds. Returns the released amount.

        Raises:
            PolicyViolation: If nothing is pending or the delay has not elapsed
        """
        self._require_controller(agent_id, caller)

        with self._lock:
            record = self._records.get(agent_id)
            if record is None or not record.is_unbonding:
                raise PolicyViolation(f"Agent {agent_id} has no pending unstake request")
            now = self._clock()
            if now < record.unlocks_at:
                raise PolicyViolation(
                    f"Unstake for {agent_id} is locked until {record.unlocks_at.isoformat()}"
                )
            released = record.pending_unstake
            record.pending_unstake = 0
            record.unlocks_at = None

        logger.info("Agent %s completed unstake, released %d", agent_id, released)
        if self._bus:
            self._bus.publish(EventType.UNSTAKE_COMPLETED, agent_id=agent_id, amount=str(released))
        return released

    def cancel_unstake(self, agent_id: str, caller: str) -> StakeRecord:
        """Return a pending request to free stake."""
        self._require_controller(agent_id, caller)

        with self._lock:
            record = self._records.get(agent_id)
            if record is None or not record.is_unbonding:
                raise PolicyViolation(f"Agent {agent_id} has no pending unstake request")
            restored = record.pending_unstake
            record.amount += restored
            record.pending_unstake = 0
            record.unlocks_at = None

        if self._bus:
            self._bus.publish(EventType.UNSTAKE_CANCELLED, agent_id=agent_id, amount=str(restored))
        return self.get_record(agent_id)

    def slash(self, agent_id: str, amount: int, reason: str, caller: str) -> SlashRecord:
        """
        Confiscate free stake into the treasury.

        Raises:
            PolicyViolation: If the caller is not an authorized slasher
            InvalidInput: If the amount exceeds free stake
        """
        if caller not in self._slashers:
            raise PolicyViolation(f"{caller} is not an authorized slasher")
        validate_agent_id(agent_id)
        validate_amount(amount)

        with self._lock:
            record = self._records.get(agent_id)
            if record is None or amount > record.amount:
                available = record.amount if record else 0
                raise InvalidInput(
                    f"Slash of {amount} exceeds free stake {available} for {agent_id}"
                )
            record.amount -= amount
            record.slashed_total += amount
            self._treasury += amount
            slash = SlashRecord(
                agent_id=agent_id,
                amount=amount,
                reason=reason,
                slasher=caller,
                timestamp=self._clock(),
            )
            self._slashes.append(slash)

        logger.warning("Slashed %d from agent %s: %s", amount, agent_id, reason)
        if self._bus:
            self._bus.publish(
                EventType.STAKE_SLASHED,
                agent_id=agent_id,
                amount=str(amount),
                reason=reason,
                slasher=caller,
            )
        return slash

    # ── Reads ───────────────────────────────────────────────────

    def get_stake(self, agent_id: str) -> int:
        """Free (effective) stake. Pending unstake does not count."""
        record = self._records.get(agent_id)
        return record.amount if record else 0

    def get_record(self, agent_id: str) -> StakeRecord:
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                return StakeRecord(agent_id=agent_id)
            return StakeRecord(
                agent_id=record.agent_id,
                amount=record.amount,
                pending_unstake=record.pending_unstake,
                unlocks_at=record.unlocks_at,
                slashed_total=record.slashed_total,
            )

    def check_stake_requirement(self, agent_id: str, service_tier_id: str) -> StakeRequirementCheck:
        required = self._tier_requirements.get(service_tier_id, 0)
        current = self.get_stake(agent_id)
        return StakeRequirementCheck(meets=current >= required, current=current, required=required)

    def slash_history(self, agent_id: Optional[str] = None) -> list[SlashRecord]:
        if agent_id is None:
            return list(self._slashes)
        return [s for s in self._slashes if s.agent_id == agent_id]

    @property
    def treasury_balance(self) -> int:
        return self._treasury

    @property
    def total_staked(self) -> int:
        return sum(r.amount for r in self._records.values())

    # ── Helpers ─────────────────────────────────────────────────

    def _require_owner(self, caller: str) -> None:
        if caller != self._owner:
            raise PolicyViolation(f"{caller} is not the staking ledger owner")

    def _require_controller(self, agent_id: str, caller: str) -> None:
        validate_agent_id(agent_id)
        controller = self._registry.controller_of(agent_id) if self._registry else agent_id
        if caller != controller:
            raise PolicyViolation(f"{caller} is not the controller of agent {agent_id}")
