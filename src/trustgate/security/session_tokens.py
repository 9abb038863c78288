"""
Session Issuer — short-lived signed capability tokens.

A token lets an agent that just passed full verification skip it for a
bounded number of follow-up calls. The token is self-contained (no session
table): ``base64url(canonical JSON payload) + "." + hex HMAC-SHA256``. The
server keeps only the revocation set and a per-id usage counter, both pruned
once the tokens they describe have expired, so any replica holding the
secret can verify.

Encodings are checked for canonical form as well as signature, so every
single-bit mutation of a valid token is rejected, including mutations that
a lenient base64 or hex decoder would silently absorb.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import threading

from trustgate.errors import ExpiredOrExhausted, PolicyViolation, ReplayOrForgery
from trustgate.logging import token_preview
from trustgate.models import Clock, utcnow, validate_agent_id
from trustgate.observability.event_bus import EventType, GatewayEventBus

logger = logging.getLogger(__name__)

WILDCARD_ENDPOINT = "*"
DEFAULT_MAX_TTL_SECONDS = 24 * 3600


@dataclass(frozen=True)
class SessionCaveats:
    """Restrictions baked into a token at issuance."""

    ttl_seconds: int = 300
    max_requests: int = 100
    allowed_endpoints: tuple[str, ...] = (WILDCARD_ENDPOINT,)
    max_cost: float = 1.0

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {self.max_requests}")
        if self.max_cost < 0:
            raise ValueError(f"max_cost must be non-negative, got {self.max_cost}")

    def allows(self, endpoint: str) -> bool:
        return WILDCARD_ENDPOINT in self.allowed_endpoints or endpoint in self.allowed_endpoints

    def to_dict(self) -> dict[str, Any]:
        return {
            "ttl": self.ttl_seconds,
            "max_requests": self.max_requests,
            "endpoints": list(self.allowed_endpoints),
            "max_cost": self.max_cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionCaveats:
        return cls(
            ttl_seconds=int(data["ttl"]),
            max_requests=int(data["max_requests"]),
            allowed_endpoints=tuple(data["endpoints"]),
            max_cost=float(data["max_cost"]),
        )


@dataclass(frozen=True)
class SessionClaims:
    """A verified token's decoded contents."""

    token_id: str
    agent_id: str
    issued_at: datetime
    caveats: SessionCaveats
    context: dict[str, Any] = field(default_factory=dict)
    request_count: int = 0
    spent: float = 0.0

    @property
    def remaining_requests(self) -> int:
        return max(0, self.caveats.max_requests - self.request_count)


@dataclass
class _Usage:
    agent_id: str
    expires_at: datetime
    count: int = 0
    spent: float = 0.0


class SessionIssuer:
    """
    Issues, verifies and revokes session tokens.

    Verification order: format, revocation, signature, TTL, request budget,
    endpoint scope, cost budget. Only a fully successful verification
    consumes one request from the budget.
    """

    def __init__(
        self,
        secret: str | bytes,
        max_ttl_seconds: int = DEFAULT_MAX_TTL_SECONDS,
        event_bus: Optional[GatewayEventBus] = None,
        clock: Clock = utcnow,
    ) -> None:
        key = secret.encode() if isinstance(secret, str) else secret
        if len(key) < 16:
            raise ValueError("Session secret must be at least 16 bytes")
        if max_ttl_seconds <= 0:
            raise ValueError(f"max_ttl_seconds must be positive, got {max_ttl_seconds}")
        self._key = key
        self._max_ttl = timedelta(seconds=max_ttl_seconds)
        self._bus = event_bus
        self._clock = clock
        # token id -> moment after which no token with that id can still verify
        self._revoked: dict[str, datetime] = {}
        self._usage: dict[str, _Usage] = {}
        self._lock = threading.Lock()

    # ── Issue ───────────────────────────────────────────────────

    def issue(
        self,
        agent_id: str,
        caveats: Optional[SessionCaveats] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> str:
        """Sign and encode a new token for ``agent_id``."""
        validate_agent_id(agent_id)
        caveats = caveats or SessionCaveats()
        if caveats.ttl_seconds > self._max_ttl.total_seconds():
            raise ValueError(
                f"ttl_seconds {caveats.ttl_seconds} exceeds the issuer maximum of "
                f"{int(self._max_ttl.total_seconds())}"
            )
        now = self._clock()
        token_id = secrets.token_hex(16)
        payload = {
            "id": token_id,
            "agent_id": agent_id,
            "issued_at": _to_millis(now),
            "caveats": caveats.to_dict(),
            "context": context or {},
        }
        raw = _canonical_json(payload)
        token = f"{_b64encode(raw)}.{self._sign(raw)}"

        with self._lock:
            self._purge_locked(now)
            self._usage[token_id] = _Usage(
                agent_id=agent_id,
                expires_at=now + timedelta(seconds=caveats.ttl_seconds),
            )

        logger.debug("Issued session %s for %s", token_id, agent_id)
        if self._bus:
            self._bus.publish(
                EventType.SESSION_ISSUED,
                agent_id=agent_id,
                token_id=token_id,
                ttl=caveats.ttl_seconds,
                max_requests=caveats.max_requests,
            )
        return token

    # ── Verify ──────────────────────────────────────────────────

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """
        Parse a token without checking its signature.

        Only for attributing a rejected token to its presumed agent.

        Raises:
            ReplayOrForgery: If the token is not well-formed
        """
        raw, _ = self._split(token)
        return _parse_payload(raw)

    def verify(
        self,
        token: str,
        endpoint: Optional[str] = None,
        cost: float = 0.0,
    ) -> SessionClaims:
        """
        Verify a token and consume one request from its budget.

        Raises:
            ReplayOrForgery: Malformed, non-canonical or wrongly signed token
            ExpiredOrExhausted: Revoked, past TTL, or request budget used up
            PolicyViolation: Endpoint outside scope or cost budget exceeded
        """
        raw, signature = self._split(token)
        payload = _parse_payload(raw)
        token_id = payload["id"]

        if token_id in self._revoked:
            raise ExpiredOrExhausted(f"Session {token_id} has been revoked")

        if not hmac.compare_digest(signature, self._sign(raw)):
            logger.warning("Session signature mismatch for %s", token_preview(token))
            raise ReplayOrForgery("Session token signature is invalid")

        caveats = SessionCaveats.from_dict(payload["caveats"])
        issued_at = _from_millis(payload["issued_at"])
        now = self._clock()
        if (now - issued_at).total_seconds() > caveats.ttl_seconds:
            raise ExpiredOrExhausted(f"Session {token_id} expired")

        if endpoint is not None and not caveats.allows(endpoint):
            raise PolicyViolation(f"Session {token_id} is not valid for endpoint {endpoint}")

        with self._lock:
            if token_id in self._revoked:
                raise ExpiredOrExhausted(f"Session {token_id} has been revoked")
            usage = self._usage.get(token_id)
            if usage is None:
                # Issued by another replica or before a restart
                usage = _Usage(
                    agent_id=payload["agent_id"],
                    expires_at=issued_at + timedelta(seconds=caveats.ttl_seconds),
                )
                self._usage[token_id] = usage
            if usage.count >= caveats.max_requests:
                raise ExpiredOrExhausted(
                    f"Session {token_id} used all {caveats.max_requests} requests"
                )
            if usage.spent + cost > caveats.max_cost + 1e-12:
                raise PolicyViolation(
                    f"Session {token_id} cost budget {caveats.max_cost} would be exceeded"
                )
            usage.count += 1
            usage.spent += cost
            count, spent = usage.count, usage.spent

        return SessionClaims(
            token_id=token_id,
            agent_id=payload["agent_id"],
            issued_at=issued_at,
            caveats=caveats,
            context=payload.get("context") or {},
            request_count=count,
            spent=spent,
        )

    # ── Revoke ──────────────────────────────────────────────────

    def revoke(self, token_id: str) -> bool:
        """
        Revoke a token id. Returns False if it was already revoked.

        The entry is kept until the token would have expired anyway: the
        known expiry for tokens this issuer has seen, else the issuer's
        maximum TTL from now.
        """
        now = self._clock()
        with self._lock:
            self._purge_locked(now)
            if token_id in self._revoked:
                return False
            usage = self._usage.get(token_id)
            self._revoked[token_id] = usage.expires_at if usage else now + self._max_ttl

        logger.info("Revoked session %s", token_id)
        if self._bus:
            self._bus.publish(
                EventType.SESSION_REVOKED,
                agent_id=usage.agent_id if usage else None,
                token_id=token_id,
            )
        return True

    def revoke_agent(self, agent_id: str) -> int:
        """Revoke every live token this issuer knows for an agent."""
        with self._lock:
            ids = [tid for tid, u in self._usage.items() if u.agent_id == agent_id]
        return sum(1 for tid in ids if self.revoke(tid))

    def is_revoked(self, token_id: str) -> bool:
        return token_id in self._revoked

    @property
    def revoked_count(self) -> int:
        return len(self._revoked)

    @property
    def active_sessions(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(
                1 for tid, u in self._usage.items()
                if u.expires_at >= now and tid not in self._revoked
            )

    # ── Helpers ─────────────────────────────────────────────────

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._key, raw, hashlib.sha256).hexdigest()

    @staticmethod
    def _split(token: str) -> tuple[bytes, str]:
        if not isinstance(token, str):
            raise ReplayOrForgery("Session token must be a string")
        if not token.isascii():
            raise ReplayOrForgery("Session token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ReplayOrForgery("Malformed session token")
        encoded, signature = parts
        try:
            raw = base64.b64decode(_pad(encoded), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            raise ReplayOrForgery("Malformed session token encoding") from None
        if _b64encode(raw) != encoded:
            raise ReplayOrForgery("Non-canonical session token encoding")
        return raw, signature

    def _purge_locked(self, now: datetime) -> None:
        expired = [tid for tid, u in self._usage.items() if u.expires_at < now]
        for tid in expired:
            del self._usage[tid]
        # A token past its expiry fails the TTL check, revoked or not
        spent = [tid for tid, until in self._revoked.items() if until < now]
        for tid in spent:
            del self._revoked[tid]


def _parse_payload(raw: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ReplayOrForgery("Session token payload is not valid JSON") from None
    if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
        raise ReplayOrForgery("Session token payload is malformed")
    for key in ("agent_id", "issued_at", "caveats"):
        if key not in payload:
            raise ReplayOrForgery(f"Session token payload is missing {key!r}")
    caveats = payload["caveats"]
    if not isinstance(caveats, dict) or not {"ttl", "max_requests", "endpoints", "max_cost"} <= caveats.keys():
        raise ReplayOrForgery("Session token caveats are malformed")
    return payload


def _canonical_json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _pad(encoded: str) -> str:
    return encoded + "=" * (-len(encoded) % 4)


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_millis(millis: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ReplayOrForgery("Session token issue time is malformed") from None
