"""
Agent Registry — identity lifecycle for gated agents.

Agents are created on first registration and never deleted. Either the
agent's controller or a registry administrator may deactivate and
reactivate them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import logging
import threading

from trustgate.errors import InvalidInput, PolicyViolation
from trustgate.models import Clock, utcnow, validate_agent_id
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)


@dataclass
class AgentRecord:
    """A registered agent."""

    agent_id: str
    controller: str
    metadata: str = ""
    registered_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


class AgentRegistry:
    """
    Authoritative registry of agent identities.

    The controller is the identity allowed to manage the agent's stake and
    status; it defaults to the agent itself.
    """

    def __init__(
        self,
        admins: Optional[set[str]] = None,
        event_bus: Optional[GatewayEventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._agents: dict[str, AgentRecord] = {}
        self._admins: set[str] = set(admins or ())
        self._bus = event_bus
        self._clock = clock
        self._lock = threading.Lock()

    def register(
        self,
        agent_id: str,
        controller: Optional[str] = None,
        metadata: str = "",
    ) -> AgentRecord:
        """
        Register a new agent.

        Raises:
            InvalidInput: If the identifier is malformed
            PolicyViolation: If the agent is already registered
        """
        validate_agent_id(agent_id)
        controller = validate_agent_id(controller) if controller else agent_id
        with self._lock:
            if agent_id in self._agents:
                raise PolicyViolation(f"Agent {agent_id} is already registered")
            record = AgentRecord(
                agent_id=agent_id,
                controller=controller,
                metadata=metadata,
                registered_at=self._clock(),
            )
            self._agents[agent_id] = record

        logger.info("Registered agent %s (controller %s)", agent_id, controller)
        if self._bus:
            self._bus.publish(EventType.AGENT_REGISTERED, agent_id=agent_id, controller=controller)
        return record

    def deactivate(self, agent_id: str, caller: str) -> AgentRecord:
        return self._set_active(agent_id, caller, False)

    def reactivate(self, agent_id: str, caller: str) -> AgentRecord:
        return self._set_active(agent_id, caller, True)

    def get(self, agent_id: str) -> Optional[AgentRecord]:
        return self._agents.get(agent_id)

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def is_active(self, agent_id: str) -> bool:
        record = self._agents.get(agent_id)
        return record is not None and record.is_active

    def controller_of(self, agent_id: str) -> str:
        """Controller of a registered agent; an unregistered agent controls itself."""
        record = self._agents.get(agent_id)
        return record.controller if record else agent_id

    def add_admin(self, admin_id: str) -> None:
        self._admins.add(validate_agent_id(admin_id))

    def is_admin(self, caller: str) -> bool:
        return caller in self._admins

    def _set_active(self, agent_id: str, caller: str, active: bool) -> AgentRecord:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                raise InvalidInput(f"Agent {agent_id} is not registered")
            if caller != record.controller and caller not in self._admins:
                raise PolicyViolation(
                    f"{caller} may not change status of agent {agent_id}"
                )
            record.is_active = active

        logger.info("Agent %s %s by %s", agent_id, "reactivated" if active else "deactivated", caller)
        if self._bus:
            self._bus.publish(
                EventType.AGENT_REACTIVATED if active else EventType.AGENT_DEACTIVATED,
                agent_id=agent_id,
                caller=caller,
            )
        return record

    @property
    def agent_count(self) -> int:
        return len(self._agents)

    @property
    def agents(self) -> list[AgentRecord]:
        return list(self._agents.values())
