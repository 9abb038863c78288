"""
Admission Controller — per-request serve / price / challenge / reject.

Order of checks for one request:

1. Agent id well-formed
2. Proof-of-work, when the endpoint demands it
3. Session fast path (snapshot cached in the token, no ledger read)
4. Ledger reads and risk score
5. Blocking conditions, all reported together
6. Trust-adjusted price
7. Payment proof present, correct, and accepted by the verifier
8. Admit and issue a session token

``admit`` never raises: every failure maps to a decision.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Optional, Union
import asyncio
import logging

from trustgate.config import EndpointPolicy, GatewayConfig
from trustgate.errors import (
    ExpiredOrExhausted,
    InvalidInput,
    PolicyViolation,
    ReplayOrForgery,
    TrustGatewayError,
)
from trustgate.ledger.reader import LedgerReader, LedgerView
from trustgate.ledger.staking import StakeRequirementCheck
from trustgate.logging import token_preview
from trustgate.models import AgentSnapshot, validate_agent_id
from trustgate.observability.event_bus import EventType, GatewayEventBus
from trustgate.payment import (
    PaymentProof,
    PaymentRequirements,
    PaymentVerifier,
    check_payment,
)
from trustgate.pricing import PriceQuote, PricingEngine
from trustgate.security.anti_flood import AntiFloodGate, Challenge, ChallengeOutcome
from trustgate.security.risk import BLOCK_ABUSE_FLAGS, BLOCK_RISK_THRESHOLD, RiskEngine
from trustgate.security.session_tokens import SessionCaveats, SessionIssuer

logger = logging.getLogger(__name__)


# ── Requests and decisions ──────────────────────────────────────


@dataclass(frozen=True)
class AdmissionRequest:
    agent_id: str
    endpoint: str
    pow_challenge: Optional[str] = None
    pow_answer: Optional[str] = None
    session_token: Optional[str] = None
    payment: Optional[PaymentProof] = None
    payload_size: Optional[int] = None


@dataclass(frozen=True)
class UnmetRequirement:
    """One reason a request was blocked."""

    code: str
    message: str
    required: Any = None
    current: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "required": _jsonable(self.required),
            "current": _jsonable(self.current),
        }


@dataclass(frozen=True)
class ChallengeRequired:
    challenge: Challenge
    difficulty: int
    outcome: ChallengeOutcome = ChallengeOutcome.MISSING


@dataclass(frozen=True)
class Blocked:
    reason: str
    unmet: tuple[UnmetRequirement, ...] = ()
    agent: Optional[AgentSnapshot] = None


@dataclass(frozen=True)
class PaymentRequired:
    pricing: PriceQuote
    agent: AgentSnapshot
    requirements: PaymentRequirements
    reason: Optional[str] = None


@dataclass(frozen=True)
class Admitted:
    agent: AgentSnapshot
    session_token: str
    pricing: PriceQuote
    resumed: bool = False


Decision = Union[ChallengeRequired, Blocked, PaymentRequired, Admitted]


@dataclass
class AdmissionStats:
    total: int = 0
    admitted: int = 0
    resumed: int = 0
    blocked: int = 0
    payment_required: int = 0
    challenged: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "admitted": self.admitted,
            "resumed": self.resumed,
            "blocked": self.blocked,
            "payment_required": self.payment_required,
            "challenged": self.challenged,
        }


# ── Controller ──────────────────────────────────────────────────


class AdmissionController:
    """
    Composes the ledger reader, risk engine, anti-flood gate, pricing and
    session issuer into one decision per request.
    """

    def __init__(
        self,
        config: GatewayConfig,
        reader: LedgerReader,
        risk: RiskEngine,
        anti_flood: AntiFloodGate,
        sessions: SessionIssuer,
        payment_verifier: Optional[PaymentVerifier] = None,
        event_bus: Optional[GatewayEventBus] = None,
    ) -> None:
        self.config = config
        self.reader = reader
        self.risk = risk
        self.anti_flood = anti_flood
        self.sessions = sessions
        self.pricing = PricingEngine(config.tiers, config.reference_stake)
        self.payment_verifier = payment_verifier
        self._bus = event_bus
        self.stats = AdmissionStats()

    async def admit(self, request: AdmissionRequest) -> Decision:
        """Decide one request. Never raises."""
        self.stats.total += 1
        try:
            decision = await self._decide(request)
        except TrustGatewayError as e:
            logger.warning("Admission for %r failed: %s", request.agent_id, e)
            decision = Blocked(
                reason=e.message,
                unmet=(UnmetRequirement(code=e.code, message=e.message),),
            )
        self._record(request, decision)
        return decision

    async def quote(self, agent_id: str, endpoint: str) -> tuple[PriceQuote, AgentSnapshot]:
        """Price a call without admitting it or touching risk history."""
        validate_agent_id(agent_id)
        policy = self.config.policy_for(endpoint)
        agent, _ = await self._snapshot(agent_id, None)
        return self.pricing.quote(policy, agent), agent

    # ── Steps ───────────────────────────────────────────────────

    async def _decide(self, request: AdmissionRequest) -> Decision:
        try:
            validate_agent_id(request.agent_id)
        except InvalidInput as e:
            return Blocked(
                reason=e.message,
                unmet=(UnmetRequirement(code=e.code, message=e.message),),
            )

        agent_id = request.agent_id
        policy = self.config.policy_for(request.endpoint)

        if policy.pow_difficulty > 0:
            result = self.anti_flood.verify(
                request.pow_challenge, request.pow_answer, policy.pow_difficulty, agent_id=agent_id
            )
            if not result.valid:
                if result.outcome == ChallengeOutcome.REPLAYED:
                    # Only the agent that solved the challenge is flagged for reusing it
                    if result.consumed_by == agent_id:
                        self.risk.flag_abuse(agent_id, "replayed proof-of-work challenge")
                    self._publish(
                        EventType.CHALLENGE_REPLAYED, agent_id, request.endpoint,
                        solver=result.consumed_by,
                    )
                return ChallengeRequired(
                    challenge=result.challenge,
                    difficulty=policy.pow_difficulty,
                    outcome=result.outcome,
                )

        if request.session_token:
            resumed = await self._resume(request, policy)
            if resumed is not None:
                return resumed

        agent, stake_check = await self._snapshot(
            agent_id, request.payload_size, policy.service_tier_id
        )

        unmet = self._unmet_requirements(agent, policy, request.payload_size, stake_check)
        if unmet:
            return Blocked(reason=unmet[0].message, unmet=tuple(unmet), agent=agent)

        quote = self.pricing.quote(policy, agent)
        requirements = self._requirements(request.endpoint, quote)

        rejection = await self._check_payment(request, requirements)
        if rejection is not None:
            return PaymentRequired(quote, agent, requirements, reason=rejection or None)

        self.risk.record_request(agent_id)
        token = self.sessions.issue(
            agent_id,
            SessionCaveats(
                ttl_seconds=self.config.session_ttl_seconds,
                max_requests=self.config.max_session_requests,
                allowed_endpoints=(request.endpoint,),
                max_cost=self.config.max_session_cost,
            ),
            context={"agent": agent.to_dict(), "endpoint": request.endpoint},
        )
        return Admitted(agent=agent, session_token=token, pricing=quote)

    async def _resume(self, request: AdmissionRequest, policy: EndpointPolicy) -> Optional[Decision]:
        """
        Session fast path. Returns None when the token cannot be used and
        full verification should run instead.
        """
        token = request.session_token
        agent_id = request.agent_id
        try:
            cached = self.sessions.decode_unverified(token).get("context", {}).get("agent")
            agent = AgentSnapshot.from_dict(cached)
            cost = self.pricing.quote(policy, agent).final_price
            claims = self.sessions.verify(token, endpoint=request.endpoint, cost=cost)
        except (ReplayOrForgery, ExpiredOrExhausted, PolicyViolation) as e:
            # An unsigned or mis-signed token names nobody, so nobody is flagged
            self._reject_session(request, e)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self._reject_session(request, ReplayOrForgery(f"Unreadable session context: {e}"))
            return None

        if claims.agent_id != agent_id:
            # The signed holder lent its token to another identity
            self._reject_session(
                request,
                ReplayOrForgery(f"Session belongs to {claims.agent_id}, presented by {agent_id}"),
                flag=claims.agent_id,
            )
            return None

        risk_score = self.risk.calculate_risk(agent_id, request.payload_size)
        agent = replace(agent, risk_score=risk_score)
        if self.risk.should_block(agent_id, request.payload_size):
            return Blocked(
                reason="Agent blocked due to abuse",
                unmet=(self._risk_requirement(agent_id, risk_score),),
                agent=agent,
            )

        quote = self.pricing.quote(policy, agent)
        requirements = self._requirements(request.endpoint, quote)
        rejection = await self._check_payment(request, requirements)
        if rejection is not None:
            return PaymentRequired(quote, agent, requirements, reason=rejection or None)

        self.risk.record_request(agent_id)
        logger.debug(
            "Resumed session %s for %s (%d/%d)",
            claims.token_id, agent_id, claims.request_count, claims.caveats.max_requests,
        )
        return Admitted(agent=agent, session_token=token, pricing=quote, resumed=True)

    async def _snapshot(
        self,
        agent_id: str,
        payload_size: Optional[int],
        service_tier_id: Optional[str] = None,
    ) -> tuple[AgentSnapshot, Optional[StakeRequirementCheck]]:
        """Ledger reads run off the event loop; the stake check rides along when needed."""
        view, stake_check = await asyncio.to_thread(self._read_ledgers, agent_id, service_tier_id)
        risk_score = self.risk.calculate_risk(agent_id, payload_size)
        agent = AgentSnapshot(
            agent_id=agent_id,
            registered=view.registered,
            active=view.active,
            reputation=view.reputation,
            stake=view.stake,
            risk_score=risk_score,
            is_new=view.is_new,
            tier=self.config.tiers.tier_for(view.reputation),
        )
        return agent, stake_check

    def _read_ledgers(
        self, agent_id: str, service_tier_id: Optional[str]
    ) -> tuple[LedgerView, Optional[StakeRequirementCheck]]:
        view = self.reader.read(agent_id)
        if not service_tier_id:
            return view, None
        return view, self.reader.check_stake_requirement(agent_id, service_tier_id)

    def _unmet_requirements(
        self,
        agent: AgentSnapshot,
        policy: EndpointPolicy,
        payload_size: Optional[int],
        stake_check: Optional[StakeRequirementCheck] = None,
    ) -> list[UnmetRequirement]:
        unmet: list[UnmetRequirement] = []

        if self.risk.should_block(agent.agent_id, payload_size):
            unmet.append(self._risk_requirement(agent.agent_id, agent.risk_score))

        if agent.registered and not agent.active:
            unmet.append(UnmetRequirement("AGENT_INACTIVE", "Agent is deactivated", True, False))

        if policy.block_unregistered and not agent.registered:
            unmet.append(UnmetRequirement("NOT_REGISTERED", "Agent not registered", True, False))

        if policy.block_unstaked and agent.stake == 0:
            unmet.append(UnmetRequirement("NO_STAKE", "Stake required", 1, 0))

        if policy.min_stake > 0 and agent.stake < policy.min_stake:
            unmet.append(UnmetRequirement(
                "INSUFFICIENT_STAKE",
                f"Minimum stake of {policy.min_stake} required",
                policy.min_stake,
                agent.stake,
            ))

        if policy.min_reputation > 0 and agent.reputation < policy.min_reputation:
            unmet.append(UnmetRequirement(
                "INSUFFICIENT_REPUTATION",
                f"Minimum reputation of {policy.min_reputation} required",
                policy.min_reputation,
                agent.reputation,
            ))

        if policy.min_tier is not None and agent.tier.rank < policy.min_tier.rank:
            unmet.append(UnmetRequirement(
                "INSUFFICIENT_TIER",
                f"Service tier {policy.min_tier.value} required",
                policy.min_tier.value,
                agent.tier.value,
            ))

        if policy.service_tier_id:
            check = stake_check
            if check is None:
                unmet.append(UnmetRequirement(
                    "STAKE_UNVERIFIED",
                    f"Stake requirement for {policy.service_tier_id} could not be verified",
                    policy.service_tier_id,
                    None,
                ))
            elif not check.meets:
                unmet.append(UnmetRequirement(
                    "SERVICE_STAKE_REQUIREMENT",
                    f"Service tier {policy.service_tier_id} requires stake of {check.required}",
                    check.required,
                    check.current,
                ))

        return unmet

    def _risk_requirement(self, agent_id: str, risk_score: int) -> UnmetRequirement:
        flags = self.risk.abuse_flag_count(agent_id)
        if flags >= BLOCK_ABUSE_FLAGS:
            return UnmetRequirement(
                "BLOCKED", "Agent blocked due to abuse", BLOCK_ABUSE_FLAGS - 1, flags
            )
        return UnmetRequirement(
            "BLOCKED", "Agent blocked due to risk", BLOCK_RISK_THRESHOLD, risk_score
        )

    def _requirements(self, endpoint: str, quote: PriceQuote) -> PaymentRequirements:
        return PaymentRequirements(
            max_amount_required=quote.to_atomic(),
            pay_to=self.config.pay_to,
            asset=self.config.asset,
            network=self.config.network,
            resource=endpoint,
            description=f"API access - {quote.final_price:.4f} {self.config.asset}",
            max_timeout_seconds=self.config.payment_timeout_seconds,
        )

    async def _check_payment(
        self, request: AdmissionRequest, requirements: PaymentRequirements
    ) -> Optional[str]:
        """
        None if the payment is acceptable. An empty string means no proof
        was presented; any other string is the rejection reason.
        """
        proof = request.payment
        if proof is None:
            return ""

        reason = check_payment(proof, requirements)
        if reason is None and self.payment_verifier is not None:
            try:
                accepted = await self.payment_verifier(proof, requirements)
            except Exception:
                logger.exception("Payment verifier failed for %s", request.agent_id)
                accepted = False
            if not accepted:
                reason = "Payment rejected by verifier"

        if reason is not None:
            self.risk.record_failure(request.agent_id)
            logger.info("Payment from %s rejected: %s", request.agent_id, reason)
        return reason

    def _reject_session(
        self,
        request: AdmissionRequest,
        error: TrustGatewayError,
        flag: Optional[str] = None,
    ) -> None:
        """Log and publish an unusable token. ``flag`` names the signed holder to flag."""
        logger.info(
            "Session %s for %s not usable: %s",
            token_preview(request.session_token), request.agent_id, error,
        )
        if flag:
            self.risk.flag_abuse(flag, "session token presented by another agent")
        self._publish(
            EventType.SESSION_REJECTED,
            request.agent_id,
            request.endpoint,
            code=error.code,
            reason=error.message,
        )

    # ── Bookkeeping ─────────────────────────────────────────────

    def _record(self, request: AdmissionRequest, decision: Decision) -> None:
        agent_id, endpoint = request.agent_id, request.endpoint
        if isinstance(decision, Admitted):
            self.stats.admitted += 1
            if decision.resumed:
                self.stats.resumed += 1
            self._publish(
                EventType.ADMISSION_ADMITTED, agent_id, endpoint,
                price=decision.pricing.final_price, resumed=decision.resumed,
            )
        elif isinstance(decision, Blocked):
            self.stats.blocked += 1
            self._publish(
                EventType.ADMISSION_BLOCKED, agent_id, endpoint,
                codes=[u.code for u in decision.unmet],
            )
        elif isinstance(decision, PaymentRequired):
            self.stats.payment_required += 1
            self._publish(
                EventType.ADMISSION_PAYMENT_REQUIRED, agent_id, endpoint,
                price=decision.pricing.final_price, reason=decision.reason,
            )
        else:
            self.stats.challenged += 1
            self._publish(
                EventType.ADMISSION_CHALLENGED, agent_id, endpoint,
                outcome=decision.outcome.value, difficulty=decision.difficulty,
            )

    def _publish(
        self,
        event_type: EventType,
        agent_id: Optional[str],
        endpoint: Optional[str],
        **payload: Any,
    ) -> None:
        if self._bus:
            self._bus.publish(event_type, agent_id=agent_id, endpoint=endpoint, **payload)



def _jsonable(value: Any) -> Any:
    # Stake amounts can exceed the JSON-safe integer range
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) > 2**53:
        return str(value)
    return value
