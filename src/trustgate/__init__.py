"""
Agent Trust Gateway v0.1

Admission control for metered agent APIs. Decides per request whether to
serve, price, challenge, or reject a caller before payment is accepted,
using a payment-weighted reputation ledger, a staking ledger with an
unbonding delay, and short-term behavioral risk.

Core Components:
    - ReputationLedger: Payment-weighted feedback with a diversity bonus
    - StakingLedger: Collateral, unbonding delay, slashing
    - RiskEngine: Per-agent burst, failure and abuse scoring
    - AntiFloodGate: Proof-of-work challenges
    - SessionIssuer: HMAC-signed capability tokens
    - AdmissionController: Serve / price / challenge / reject
    - LedgerWriter: Queued, retried ledger writes

Usage:
    >>> from trustgate import TrustGateway, AdmissionRequest
    >>> gateway = TrustGateway()
    >>> await gateway.start()
    >>> decision = await gateway.admit(AdmissionRequest("agent-1", "search"))

Version: 0.1.0
"""

__version__ = "0.1.0"

# Errors and models
from trustgate.errors import (
    ExpiredOrExhausted,
    InvalidInput,
    LedgerUnavailable,
    PolicyViolation,
    ReplayOrForgery,
    TrustGatewayError,
)
from trustgate.models import AgentSnapshot, ServiceTier

# Configuration
from trustgate.config import EndpointPolicy, GatewayConfig, TierThresholds

# Ledgers
from trustgate.ledger.registry import AgentRegistry
from trustgate.ledger.reputation import ReputationLedger
from trustgate.ledger.staking import StakingLedger
from trustgate.ledger.reader import LedgerReader
from trustgate.ledger.writer import LedgerWriter, LedgerWriteKind

# Security
from trustgate.security.risk import RiskEngine
from trustgate.security.anti_flood import AntiFloodGate, solve_challenge
from trustgate.security.session_tokens import SessionCaveats, SessionIssuer

# Pricing and payment
from trustgate.pricing import PriceQuote, PricingEngine, price
from trustgate.payment import PaymentProof, PaymentRequirements, check_payment

# Admission
from trustgate.admission import (
    AdmissionController,
    AdmissionRequest,
    Admitted,
    Blocked,
    ChallengeRequired,
    PaymentRequired,
)

# Observability
from trustgate.observability.event_bus import EventType, GatewayEvent, GatewayEventBus

# Top-level gateway
from trustgate.core import TrustGateway

__all__ = [
    # Version
    "__version__",
    # Core
    "TrustGateway",
    # Errors
    "TrustGatewayError",
    "InvalidInput",
    "PolicyViolation",
    "ReplayOrForgery",
    "LedgerUnavailable",
    "ExpiredOrExhausted",
    # Models
    "AgentSnapshot",
    "ServiceTier",
    # Config
    "EndpointPolicy",
    "GatewayConfig",
    "TierThresholds",
    # Ledgers
    "AgentRegistry",
    "ReputationLedger",
    "StakingLedger",
    "LedgerReader",
    "LedgerWriter",
    "LedgerWriteKind",
    # Security
    "RiskEngine",
    "AntiFloodGate",
    "solve_challenge",
    "SessionCaveats",
    "SessionIssuer",
    # Pricing and payment
    "PriceQuote",
    "PricingEngine",
    "price",
    "PaymentProof",
    "PaymentRequirements",
    "check_payment",
    # Admission
    "AdmissionController",
    "AdmissionRequest",
    "Admitted",
    "Blocked",
    "ChallengeRequired",
    "PaymentRequired",
    # Observability
    "EventType",
    "GatewayEvent",
    "GatewayEventBus",
]
