"""
TrustGateway — top-level composition of ledgers, security and admission.

Wires one instance of every component around a shared event bus and clock,
with the configured operator identity as owner of both ledgers (and
therefore their first feedback submitter and slasher).
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional
import hmac
import logging

from trustgate.admission import AdmissionController, AdmissionRequest, Decision
from trustgate.config import GatewayConfig
from trustgate.ledger.reader import LedgerReader
from trustgate.ledger.registry import AgentRecord, AgentRegistry
from trustgate.ledger.reputation import ReputationLedger
from trustgate.ledger.staking import StakingLedger
from trustgate.ledger.writer import LedgerWriter
from trustgate.models import Clock, utcnow
from trustgate.observability.event_bus import GatewayEventBus
from trustgate.payment import PaymentVerifier
from trustgate.security.anti_flood import AntiFloodGate
from trustgate.security.risk import RiskEngine
from trustgate.security.session_tokens import DEFAULT_MAX_TTL_SECONDS, SessionIssuer

logger = logging.getLogger(__name__)


class TrustGateway:
    """
    One gateway instance.

    Usage:
        gateway = TrustGateway(GatewayConfig.from_env())
        await gateway.start()
        decision = await gateway.admit(AdmissionRequest("agent-1", "gpt4-premium"))
        ...
        await gateway.stop()
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        payment_verifier: Optional[PaymentVerifier] = None,
        event_bus: Optional[GatewayEventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or GatewayConfig()
        self.event_bus = event_bus or GatewayEventBus(max_events=self.config.max_events)
        operator = self.config.operator_id

        self.registry = AgentRegistry(admins={operator}, event_bus=self.event_bus, clock=clock)
        for admin in self.config.admins:
            self.registry.add_admin(admin)
        self.reputation = ReputationLedger(operator, event_bus=self.event_bus, clock=clock)
        self.staking = StakingLedger(
            operator,
            registry=self.registry,
            min_stake=self.config.min_stake,
            unbonding_period=timedelta(seconds=self.config.unbonding_period_seconds),
            event_bus=self.event_bus,
            clock=clock,
        )
        self.reader = LedgerReader(self.registry, self.reputation, self.staking)
        self.writer = LedgerWriter(
            self.reputation,
            self.staking,
            event_bus=self.event_bus,
            max_attempts=self.config.write_max_attempts,
            retry_base_seconds=self.config.write_retry_base_seconds,
            history_limit=self.config.write_history_limit,
        )

        self.risk = RiskEngine(
            suspicious_hours=self.config.suspicious_hours,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.anti_flood = AntiFloodGate(
            ttl=timedelta(seconds=self.config.challenge_ttl_seconds), clock=clock
        )
        self.sessions = SessionIssuer(
            self.config.session_secret,
            max_ttl_seconds=max(DEFAULT_MAX_TTL_SECONDS, self.config.session_ttl_seconds),
            event_bus=self.event_bus,
            clock=clock,
        )
        self.admission = AdmissionController(
            self.config,
            self.reader,
            self.risk,
            self.anti_flood,
            self.sessions,
            payment_verifier=payment_verifier,
            event_bus=self.event_bus,
        )

    @property
    def operator_id(self) -> str:
        return self.config.operator_id

    def authenticate(self, api_key: Optional[str]) -> Optional[str]:
        """Caller identity for an API key, or None if the key is unknown."""
        if not api_key:
            return None
        presented = api_key.encode()
        caller = None
        for key, identity in self.config.api_keys.items():
            if hmac.compare_digest(presented, key.encode()):
                caller = identity
        return caller

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        await self.writer.start()
        logger.info(
            "Trust gateway started (%d endpoint policies, operator %s)",
            len(self.config.endpoints), self.operator_id,
        )

    async def stop(self) -> None:
        await self.writer.stop()
        logger.info("Trust gateway stopped")

    # ── Admission ───────────────────────────────────────────────

    async def admit(self, request: AdmissionRequest) -> Decision:
        return await self.admission.admit(request)

    # ── Agents ──────────────────────────────────────────────────

    def register_agent(
        self,
        agent_id: str,
        controller: Optional[str] = None,
        metadata: str = "",
    ) -> AgentRecord:
        return self.registry.register(agent_id, controller=controller, metadata=metadata)

    def deactivate_agent(self, agent_id: str, caller: str) -> AgentRecord:
        """Deactivate an agent and revoke every session it holds."""
        record = self.registry.deactivate(agent_id, caller)
        revoked = self.sessions.revoke_agent(agent_id)
        if revoked:
            logger.info("Revoked %d sessions of deactivated agent %s", revoked, agent_id)
        return record

    def reactivate_agent(self, agent_id: str, caller: str) -> AgentRecord:
        return self.registry.reactivate(agent_id, caller)

    def agent_info(self, agent_id: str) -> dict[str, Any]:
        """Ledger and risk facts about an agent, for operators."""
        record = self.registry.get(agent_id)
        reputation = self.reputation.get_reputation(agent_id)
        stake = self.staking.get_record(agent_id)
        return {
            "agent_id": agent_id,
            "registered": record is not None,
            "active": record.is_active if record else True,
            "controller": record.controller if record else agent_id,
            "metadata": record.metadata if record else "",
            "registered_at": record.registered_at.isoformat() if record else None,
            "reputation": reputation.score,
            "tier": self.config.tiers.tier_for(reputation.score).value,
            "successful_jobs": reputation.successful_jobs,
            "failed_jobs": reputation.failed_jobs,
            "unique_raters": reputation.unique_raters,
            "stake": str(stake.amount),
            "pending_unstake": str(stake.pending_unstake),
            "unlocks_at": stake.unlocks_at.isoformat() if stake.unlocks_at else None,
            "slashed_total": str(stake.slashed_total),
            "risk_score": self.risk.calculate_risk(agent_id),
            "abuse_flags": self.risk.abuse_flag_count(agent_id),
        }

    def stats(self) -> dict[str, Any]:
        return {
            "registered_agents": self.registry.agent_count,
            "tracked_risk_profiles": self.risk.tracked_agents,
            "active_sessions": self.sessions.active_sessions,
            "revoked_sessions": self.sessions.revoked_count,
            "challenges_in_flight": self.anti_flood.in_flight,
            "total_staked": str(self.staking.total_staked),
            "treasury_balance": str(self.staking.treasury_balance),
            "pending_ledger_writes": self.writer.pending,
            "dead_letters": len(self.writer.dead_letters),
            "event_count": self.event_bus.event_count,
            "admissions": self.admission.stats.to_dict(),
        }
