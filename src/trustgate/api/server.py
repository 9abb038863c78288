"""
FastAPI REST API server for the Agent Trust Gateway.

Exposes admission, pricing, agent registration, queued ledger writes,
session revocation, events and health as a RESTful API with OpenAPI docs.

Ledger writes and agent status changes act as the caller identity mapped
to the ``X-API-Key`` header; the ledgers decide what that identity may do.

Run with: uvicorn trustgate.api.server:app
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, NoReturn, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from trustgate import __version__
from trustgate.admission import (
    AdmissionRequest,
    Admitted,
    Blocked,
    ChallengeRequired,
    Decision,
    PaymentRequired,
)
from trustgate.config import EndpointPolicy, GatewayConfig
from trustgate.core import TrustGateway
from trustgate.errors import (
    ExpiredOrExhausted,
    InvalidInput,
    LedgerUnavailable,
    PolicyViolation,
    ReplayOrForgery,
    TrustGatewayError,
)
from trustgate.ledger.registry import AgentRecord
from trustgate.ledger.writer import LedgerWrite, LedgerWriteKind
from trustgate.logging import configure_logging
from trustgate.models import AgentSnapshot, validate_agent_id
from trustgate.observability.event_bus import EventType
from trustgate.payment import PaymentProof
from trustgate.pricing import PriceQuote

from trustgate.api.models import (
    AdmittedResponse,
    AgentDetailResponse,
    AgentInfo,
    AgentResponse,
    BlockedResponse,
    ChallengeResponse,
    EventResponse,
    EventStatsResponse,
    FeedbackRequest,
    JobOutcomeRequest,
    LedgerWriteResponse,
    PaymentRequiredResponse,
    PricingInfo,
    QuoteResponse,
    RegisterAgentRequest,
    RevokeSessionResponse,
    SlashRequest,
    StakeRequest,
    StatsResponse,
    UnmetRequirementInfo,
)

# ── Global state ────────────────────────────────────────────────────────────

_gateway: Optional[TrustGateway] = None

_ERROR_STATUS: dict[type, int] = {
    InvalidInput: 400,
    ReplayOrForgery: 401,
    PolicyViolation: 403,
    ExpiredOrExhausted: 410,
    LedgerUnavailable: 503,
}


def _gw() -> TrustGateway:
    """Get the global TrustGateway instance."""
    if _gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return _gateway


def _raise(e: TrustGatewayError, status_code: Optional[int] = None) -> NoReturn:
    status = status_code or _ERROR_STATUS.get(type(e), 400)
    raise HTTPException(status_code=status, detail={"error": e.message, "code": e.code})


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_caller(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """Resolve the caller identity behind the X-API-Key header."""
    caller = _gw().authenticate(api_key)
    if caller is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "Missing or unknown API key", "code": "UNAUTHENTICATED"},
            headers={"WWW-Authenticate": "APIKey"},
        )
    return caller


def _agent_id(agent_id: str) -> str:
    try:
        return validate_agent_id(agent_id)
    except InvalidInput as e:
        _raise(e)


def _agent_info(agent: AgentSnapshot) -> AgentInfo:
    return AgentInfo(**agent.to_dict())


def _pricing_info(quote: PriceQuote) -> PricingInfo:
    return PricingInfo(
        base_price=quote.base_price,
        final_price=quote.final_price,
        multiplier=quote.multiplier,
        breakdown=quote.breakdown.to_dict(),
    )


def _agent_response(record: AgentRecord) -> AgentResponse:
    return AgentResponse(
        agent_id=record.agent_id,
        controller=record.controller,
        metadata=record.metadata,
        registered_at=record.registered_at.isoformat(),
        is_active=record.is_active,
    )


def _write_response(write: LedgerWrite) -> LedgerWriteResponse:
    return LedgerWriteResponse(
        write_id=write.write_id,
        kind=write.kind.value,
        agent_id=write.agent_id,
        status=write.status.value,
        attempts=write.attempts,
        error=write.error,
    )


def _policy_info(policy: EndpointPolicy) -> dict[str, Any]:
    return {
        "min_stake": str(policy.min_stake),
        "min_reputation": policy.min_reputation,
        "min_tier": policy.min_tier.value if policy.min_tier else None,
        "pow_difficulty": policy.pow_difficulty,
        "block_unregistered": policy.block_unregistered,
        "block_unstaked": policy.block_unstaked,
    }


def _render(decision: Decision, endpoint: str, policy: EndpointPolicy) -> JSONResponse:
    """Map an admission decision to its HTTP response."""
    if isinstance(decision, Admitted):
        body = AdmittedResponse(
            resumed=decision.resumed,
            endpoint=endpoint,
            agent=_agent_info(decision.agent),
            pricing=_pricing_info(decision.pricing),
        )
        return JSONResponse(
            status_code=200,
            content=body.model_dump(),
            headers={
                "X-Session-Token": decision.session_token,
                "X-Trust-Score": str(decision.agent.reputation),
                "X-Risk-Score": str(decision.agent.risk_score),
            },
        )
    if isinstance(decision, PaymentRequired):
        body = PaymentRequiredResponse(
            reason=decision.reason,
            accepts=[decision.requirements.to_dict()],
            pricing=_pricing_info(decision.pricing),
            agentInfo=_agent_info(decision.agent),
            policy=_policy_info(policy),
        )
        return JSONResponse(status_code=402, content=body.model_dump())
    if isinstance(decision, Blocked):
        body = BlockedResponse(
            error=decision.reason,
            code=decision.unmet[0].code if decision.unmet else "BLOCKED",
            unmet=[UnmetRequirementInfo(**u.to_dict()) for u in decision.unmet],
            agent=_agent_info(decision.agent) if decision.agent else None,
        )
        return JSONResponse(status_code=403, content=body.model_dump())
    if isinstance(decision, ChallengeRequired):
        body = ChallengeResponse(
            outcome=decision.outcome.value,
            challenge=decision.challenge.value,
            difficulty=decision.difficulty,
            expires_at=decision.challenge.expires_at.isoformat(),
        )
        return JSONResponse(status_code=429, content=body.model_dump())
    raise TypeError(f"Unknown admission decision: {decision!r}")


# ── Lifespan ────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
    """Build and start the gateway on startup, drain ledger writes on shutdown."""
    global _gateway
    config = getattr(app.state, "config", None) or GatewayConfig.from_env()
    configure_logging(config.log_level)
    verifier = getattr(app.state, "payment_verifier", None)
    _gateway = TrustGateway(config, payment_verifier=verifier)
    await _gateway.start()
    yield
    await _gateway.stop()
    _gateway = None


# ── App factory ─────────────────────────────────────────────────────────────

def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Agent Trust Gateway API",
        description=(
            "REST API for the Agent Trust Gateway — trust-based admission "
            "control for metered agent APIs, with payment-weighted reputation, "
            "staking, proof-of-work challenges, and session tokens."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-Token", "X-Trust-Score", "X-Risk-Score"],
    )

    return application


app = create_app()


# ── Health ──────────────────────────────────────────────────────────────────

@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/api/v1/stats", response_model=StatsResponse, tags=["Health"])
async def get_stats() -> StatsResponse:
    """Get overall gateway statistics."""
    return StatsResponse(version=__version__, **_gw().stats())


# ── Admission ───────────────────────────────────────────────────────────────

@app.post(
    "/api/v1/admit/{endpoint}",
    tags=["Admission"],
    responses={
        200: {"model": AdmittedResponse},
        402: {"model": PaymentRequiredResponse},
        403: {"model": BlockedResponse},
        429: {"model": ChallengeResponse},
    },
)
async def admit(
    endpoint: str,
    request: Request,
    x_agent_id: Optional[str] = Header(None),
    x_pow_challenge: Optional[str] = Header(None),
    x_pow_nonce: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None),
    x_payment: Optional[str] = Header(None),
) -> JSONResponse:
    """Decide whether to serve, price, challenge, or reject one call."""
    gw = _gw()
    payment = None
    if x_payment:
        try:
            payment = PaymentProof.from_header(x_payment)
        except InvalidInput as e:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid payment header", "code": "INVALID_PAYMENT", "detail": e.message},
            )

    content_length = request.headers.get("content-length")
    payload_size = int(content_length) if content_length and content_length.isdigit() else None

    decision = await gw.admit(AdmissionRequest(
        agent_id=x_agent_id or "",
        endpoint=endpoint,
        pow_challenge=x_pow_challenge,
        pow_answer=x_pow_nonce,
        session_token=x_session_token,
        payment=payment,
        payload_size=payload_size,
    ))
    return _render(decision, endpoint, gw.config.policy_for(endpoint))


@app.get("/api/v1/pricing/{endpoint}", response_model=QuoteResponse, tags=["Admission"])
async def get_pricing(
    endpoint: str,
    agent_id: str = Query(..., description="Agent to price the call for"),
) -> QuoteResponse:
    """Quote the price of one call without admitting it."""
    try:
        quote, agent = await _gw().admission.quote(agent_id, endpoint)
    except TrustGatewayError as e:
        _raise(e)
    return QuoteResponse(
        endpoint=endpoint,
        agent=_agent_info(agent),
        pricing=_pricing_info(quote),
        max_amount_required=str(quote.to_atomic()),
    )


# ── Agents ──────────────────────────────────────────────────────────────────

@app.post("/api/v1/agents", response_model=AgentResponse, status_code=201, tags=["Agents"])
async def register_agent(req: RegisterAgentRequest) -> AgentResponse:
    """Register a new agent."""
    try:
        record = _gw().register_agent(req.agent_id, controller=req.controller, metadata=req.metadata)
    except PolicyViolation as e:
        _raise(e, 409)
    except TrustGatewayError as e:
        _raise(e)
    return _agent_response(record)


@app.get("/api/v1/agents", response_model=list[AgentResponse], tags=["Agents"])
async def list_agents(
    active: Optional[bool] = Query(None, description="Filter by active status"),
) -> list[AgentResponse]:
    """List registered agents."""
    records = _gw().registry.agents
    if active is not None:
        records = [r for r in records if r.is_active == active]
    return [_agent_response(r) for r in records]


@app.get("/api/v1/agents/{agent_id}", response_model=AgentDetailResponse, tags=["Agents"])
async def get_agent(agent_id: str) -> AgentDetailResponse:
    """Get an agent's ledger and risk facts."""
    gw = _gw()
    _agent_id(agent_id)
    if not gw.registry.is_registered(agent_id):
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not registered")
    return AgentDetailResponse(**gw.agent_info(agent_id))


@app.post("/api/v1/agents/{agent_id}/deactivate", response_model=AgentResponse, tags=["Agents"])
async def deactivate_agent(agent_id: str, caller: str = Depends(require_caller)) -> AgentResponse:
    """Deactivate an agent and revoke its sessions. Controller or administrator only."""
    try:
        record = _gw().deactivate_agent(agent_id, caller)
    except InvalidInput as e:
        _raise(e, 404)
    except TrustGatewayError as e:
        _raise(e)
    return _agent_response(record)


@app.post("/api/v1/agents/{agent_id}/reactivate", response_model=AgentResponse, tags=["Agents"])
async def reactivate_agent(agent_id: str, caller: str = Depends(require_caller)) -> AgentResponse:
    """Reactivate a deactivated agent. Controller or administrator only."""
    try:
        record = _gw().reactivate_agent(agent_id, caller)
    except InvalidInput as e:
        _raise(e, 404)
    except TrustGatewayError as e:
        _raise(e)
    return _agent_response(record)


# ── Ledger writes ───────────────────────────────────────────────────────────

@app.post(
    "/api/v1/agents/{agent_id}/feedback",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def submit_feedback(
    agent_id: str,
    req: FeedbackRequest,
    caller: str = Depends(require_caller),
) -> LedgerWriteResponse:
    """Queue payment-weighted feedback. Applied only for authorized submitters."""
    _agent_id(agent_id)
    write = _gw().writer.submit_feedback(
        agent_id, req.rater_id, req.rating, req.payment_amount, req.job_id, caller
    )
    return _write_response(write)


@app.post(
    "/api/v1/agents/{agent_id}/jobs",
    response_model=list[LedgerWriteResponse],
    status_code=202,
    tags=["Ledger"],
)
async def record_job(
    agent_id: str,
    req: JobOutcomeRequest,
    caller: str = Depends(require_caller),
) -> list[LedgerWriteResponse]:
    """Queue a job outcome, plus feedback when the paying counterparty rated it."""
    _agent_id(agent_id)
    writes = _gw().writer.record_job_completion(
        agent_id,
        req.job_id,
        req.success,
        caller,
        rater_id=req.rater_id,
        rating=req.rating,
        payment_amount=req.payment_amount,
    )
    return [_write_response(w) for w in writes]


@app.post(
    "/api/v1/agents/{agent_id}/stake",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def add_stake(
    agent_id: str,
    req: StakeRequest,
    caller: str = Depends(require_caller),
) -> LedgerWriteResponse:
    """Queue a stake deposit."""
    _agent_id(agent_id)
    write = _gw().writer.submit_stake_change(
        LedgerWriteKind.STAKE, agent_id, caller, amount=req.amount
    )
    return _write_response(write)


@app.post(
    "/api/v1/agents/{agent_id}/unstake",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def request_unstake(
    agent_id: str,
    req: StakeRequest,
    caller: str = Depends(require_caller),
) -> LedgerWriteResponse:
    """Queue an unstake request; funds unlock after the unbonding period. Controller only."""
    _agent_id(agent_id)
    write = _gw().writer.submit_stake_change(
        LedgerWriteKind.REQUEST_UNSTAKE, agent_id, caller, amount=req.amount
    )
    return _write_response(write)


@app.post(
    "/api/v1/agents/{agent_id}/unstake/complete",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def complete_unstake(agent_id: str, caller: str = Depends(require_caller)) -> LedgerWriteResponse:
    """Queue release of an unlocked unstake request. Controller only."""
    _agent_id(agent_id)
    write = _gw().writer.submit_stake_change(LedgerWriteKind.COMPLETE_UNSTAKE, agent_id, caller)
    return _write_response(write)


@app.post(
    "/api/v1/agents/{agent_id}/unstake/cancel",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def cancel_unstake(agent_id: str, caller: str = Depends(require_caller)) -> LedgerWriteResponse:
    """Queue cancellation of a pending unstake request. Controller only."""
    _agent_id(agent_id)
    write = _gw().writer.submit_stake_change(LedgerWriteKind.CANCEL_UNSTAKE, agent_id, caller)
    return _write_response(write)


@app.post(
    "/api/v1/agents/{agent_id}/slash",
    response_model=LedgerWriteResponse,
    status_code=202,
    tags=["Ledger"],
)
async def slash_stake(
    agent_id: str,
    req: SlashRequest,
    caller: str = Depends(require_caller),
) -> LedgerWriteResponse:
    """Queue a slash of free stake. Applied only for authorized slashers."""
    _agent_id(agent_id)
    write = _gw().writer.submit_stake_change(
        LedgerWriteKind.SLASH, agent_id, caller, amount=req.amount, reason=req.reason
    )
    return _write_response(write)


@app.get("/api/v1/ledger/writes/{write_id}", response_model=LedgerWriteResponse, tags=["Ledger"])
async def get_ledger_write(write_id: str) -> LedgerWriteResponse:
    """Get the status of a queued ledger write."""
    write = _gw().writer.get(write_id)
    if write is None:
        raise HTTPException(status_code=404, detail=f"Ledger write {write_id} not found")
    return _write_response(write)


# ── Sessions ────────────────────────────────────────────────────────────────

@app.post(
    "/api/v1/sessions/{token_id}/revoke",
    response_model=RevokeSessionResponse,
    tags=["Sessions"],
)
async def revoke_session(token_id: str) -> RevokeSessionResponse:
    """Revoke a session token by id. Revoking twice is a no-op."""
    newly = _gw().sessions.revoke(token_id)
    return RevokeSessionResponse(token_id=token_id, revoked=True, newly_revoked=newly)


# ── Events ──────────────────────────────────────────────────────────────────

@app.get("/api/v1/events", response_model=list[EventResponse], tags=["Events"])
async def query_events(
    event_type: Optional[str] = Query(None, description="Filter by event type"),
    agent_id: Optional[str] = Query(None, description="Filter by agent id"),
    endpoint: Optional[str] = Query(None, description="Filter by endpoint"),
    limit: Optional[int] = Query(None, description="Max events to return"),
) -> list[EventResponse]:
    """Query events with optional filters."""
    et = None
    if event_type:
        try:
            et = EventType(event_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown event type: {event_type}")
    events = _gw().event_bus.query(event_type=et, agent_id=agent_id, endpoint=endpoint, limit=limit)
    return [EventResponse(**e.to_dict()) for e in events]


@app.get("/api/v1/events/stats", response_model=EventStatsResponse, tags=["Events"])
async def get_event_stats() -> EventStatsResponse:
    """Get event type counts."""
    bus = _gw().event_bus
    return EventStatsResponse(total_events=bus.event_count, by_type=bus.type_counts())
