"""Pydantic request/response models for the Trust Gateway REST API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Admission models ────────────────────────────────────────────────────────

class AgentInfo(BaseModel):
    """Agent facts an admission decision was computed from."""

    agent_id: str
    registered: bool
    active: bool
    reputation: int
    stake: str
    risk_score: int
    is_new: bool
    tier: str


class PricingInfo(BaseModel):
    """Trust-adjusted price for one call."""

    base_price: float
    final_price: float
    multiplier: float
    breakdown: dict[str, float]
    currency: str = "USDC"


class UnmetRequirementInfo(BaseModel):
    code: str
    message: str
    required: Any = None
    current: Any = None


class AdmittedResponse(BaseModel):
    """200: request admitted."""

    admitted: bool = True
    resumed: bool
    endpoint: str
    agent: AgentInfo
    pricing: PricingInfo


class PaymentRequiredResponse(BaseModel):
    """402: pay ``accepts[0].maxAmountRequired`` to ``accepts[0].payTo``."""

    error: str = "Payment Required"
    code: str = "PAYMENT_REQUIRED"
    x402Version: str = "1"
    reason: Optional[str] = None
    accepts: list[dict[str, Any]]
    pricing: PricingInfo
    agentInfo: AgentInfo
    policy: dict[str, Any]


class BlockedResponse(BaseModel):
    """403: one or more requirements unmet."""

    error: str
    code: str
    unmet: list[UnmetRequirementInfo]
    agent: Optional[AgentInfo] = None


class ChallengeResponse(BaseModel):
    """429: solve the proof-of-work challenge and retry."""

    error: str = "Proof of Work Required"
    code: str = "POW_REQUIRED"
    outcome: str
    challenge: str
    difficulty: int
    expires_at: str
    instructions: str = (
        "Find a nonce such that SHA256(challenge + nonce) has "
        "`difficulty` leading zero bits"
    )


class QuoteResponse(BaseModel):
    endpoint: str
    agent: AgentInfo
    pricing: PricingInfo
    max_amount_required: str


# ── Agent models ────────────────────────────────────────────────────────────

class RegisterAgentRequest(BaseModel):
    """Request body for registering an agent."""

    agent_id: str = Field(..., description="Agent identifier")
    controller: Optional[str] = Field(None, description="Identity that manages the agent's stake")
    metadata: str = ""


class AgentResponse(BaseModel):
    agent_id: str
    controller: str
    metadata: str
    registered_at: str
    is_active: bool


class AgentDetailResponse(BaseModel):
    """Ledger and risk facts about an agent."""

    agent_id: str
    registered: bool
    active: bool
    controller: str
    metadata: str
    registered_at: Optional[str] = None
    reputation: int
    tier: str
    successful_jobs: int
    failed_jobs: int
    unique_raters: int
    stake: str
    pending_unstake: str
    unlocks_at: Optional[str] = None
    slashed_total: str
    risk_score: int
    abuse_flags: int


# ── Ledger write models ─────────────────────────────────────────────────────

class FeedbackRequest(BaseModel):
    """Payment-weighted feedback from a paying counterparty."""

    rater_id: str
    rating: int = Field(..., ge=1, le=5)
    payment_amount: int = Field(..., gt=0, description="Payment in base units")
    job_id: str


class JobOutcomeRequest(BaseModel):
    """A finished job, optionally rated by the counterparty that paid for it."""

    job_id: str
    success: bool
    rater_id: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    payment_amount: Optional[int] = Field(None, gt=0)


class StakeRequest(BaseModel):
    """Stake deposit or unstake request, made by the authenticated caller."""

    amount: int = Field(..., gt=0, description="Amount in base units")


class SlashRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in base units")
    reason: str


class LedgerWriteResponse(BaseModel):
    """202: write queued for the ledger worker."""

    write_id: str
    kind: str
    agent_id: str
    status: str
    attempts: int = 0
    error: Optional[str] = None


# ── Session models ──────────────────────────────────────────────────────────

class RevokeSessionResponse(BaseModel):
    token_id: str
    revoked: bool
    newly_revoked: bool


# ── Event and stats models ──────────────────────────────────────────────────

class EventResponse(BaseModel):
    """Serialized gateway event."""

    event_id: str
    event_type: str
    timestamp: str
    agent_id: Optional[str] = None
    endpoint: Optional[str] = None
    payload: dict[str, Any] = {}


class EventStatsResponse(BaseModel):
    total_events: int
    by_type: dict[str, int]


class StatsResponse(BaseModel):
    """Gateway-wide statistics."""

    version: str
    registered_agents: int
    tracked_risk_profiles: int
    active_sessions: int
    revoked_sessions: int
    challenges_in_flight: int
    total_staked: str
    treasury_balance: str
    pending_ledger_writes: int
    dead_letters: int
    event_count: int
    admissions: dict[str, int]
