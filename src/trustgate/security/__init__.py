"""Security module — risk scoring, anti-flood challenges, and session tokens."""

from trustgate.security.risk import RiskBreakdown, RiskEngine, RiskProfile
from trustgate.security.anti_flood import (
    AntiFloodGate,
    Challenge,
    ChallengeOutcome,
    ChallengeResult,
    solve_challenge,
)
from trustgate.security.session_tokens import SessionCaveats, SessionClaims, SessionIssuer

__all__ = [
    "RiskBreakdown",
    "RiskEngine",
    "RiskProfile",
    "AntiFloodGate",
    "Challenge",
    "ChallengeOutcome",
    "ChallengeResult",
    "solve_challenge",
    "SessionCaveats",
    "SessionClaims",
    "SessionIssuer",
]
