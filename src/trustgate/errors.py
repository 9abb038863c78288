"""
Error taxonomy shared by the ledgers, the security primitives and the
admission path.

Ledgers and primitives raise these; the admission controller turns every
one of them into a decision and never lets them escape to the caller.
"""

from __future__ import annotations

from typing import Optional


class TrustGatewayError(Exception):
    """Base class for all gateway errors."""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidInput(TrustGatewayError):
    """Malformed identifier or amount. Rejected before reaching a ledger."""

    code = "INVALID_INPUT"


class PolicyViolation(TrustGatewayError):
    """A threshold, authorization or lifecycle rule was not met."""

    code = "POLICY_VIOLATION"


class ReplayOrForgery(TrustGatewayError):
    """Bad session signature, malformed token, or a reused challenge."""

    code = "REPLAY_OR_FORGERY"


class LedgerUnavailable(TrustGatewayError):
    """A ledger read or write could not complete."""

    code = "LEDGER_UNAVAILABLE"


class ExpiredOrExhausted(TrustGatewayError):
    """Session token or challenge is past its TTL, request budget, or revoked."""

    code = "EXPIRED_OR_EXHAUSTED"
