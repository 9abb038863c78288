"""
Payment proof handling.

The gateway does not settle payments. It only checks that a presented proof
names the right destination and covers the quoted amount, then hands the
proof to an injected ``PaymentVerifier`` for cryptographic verification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
import base64
import binascii
import json

from trustgate.errors import InvalidInput

PAYMENT_SCHEME = "exact"


@dataclass(frozen=True)
class PaymentRequirements:
    """What a caller must pay to be admitted, in x402 ``accepts`` form."""

    max_amount_required: int  # atomic units
    pay_to: str
    asset: str
    network: str
    resource: str = ""
    description: str = ""
    max_timeout_seconds: int = 300
    scheme: str = PAYMENT_SCHEME

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": str(self.max_amount_required),
            "resource": self.resource,
            "description": self.description,
            "payTo": self.pay_to,
            "asset": self.asset,
            "maxTimeoutSeconds": self.max_timeout_seconds,
        }


@dataclass(frozen=True)
class PaymentProof:
    """A payment claim decoded from the ``X-Payment`` header."""

    amount: int  # atomic units
    to: str
    sender: Optional[str] = None
    tx_hash: Optional[str] = None
    signature: Optional[str] = None
    timestamp: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentProof:
        if not isinstance(data, dict):
            raise InvalidInput("Payment proof must be a JSON object")
        to = data.get("to") or data.get("payTo")
        if not isinstance(to, str) or not to:
            raise InvalidInput("Payment proof is missing its destination")
        amount = data.get("amount")
        if isinstance(amount, bool):
            raise InvalidInput(f"Payment amount must be an integer, got {amount!r}")
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise InvalidInput(f"Payment amount must be an integer, got {amount!r}") from None
        if amount < 0:
            raise InvalidInput(f"Payment amount must be non-negative, got {amount}")
        return cls(
            amount=amount,
            to=to,
            sender=data.get("from"),
            tx_hash=data.get("txHash") or data.get("transactionHash"),
            signature=data.get("signature"),
            timestamp=data.get("timestamp"),
            raw=data,
        )

    @classmethod
    def from_header(cls, header: str) -> PaymentProof:
        """
        Decode a base64 JSON ``X-Payment`` header.

        Raises:
            InvalidInput: If the header is not base64 JSON or lacks fields
        """
        try:
            decoded = base64.b64decode(header, validate=True)
            data = json.loads(decoded.decode("utf-8"))
        except (binascii.Error, ValueError):
            raise InvalidInput("Invalid payment header format") from None
        return cls.from_dict(data)

    def to_header(self) -> str:
        data = dict(self.raw) or {
            "amount": str(self.amount),
            "to": self.to,
            "from": self.sender,
            "txHash": self.tx_hash,
            "signature": self.signature,
            "timestamp": self.timestamp,
        }
        return base64.b64encode(json.dumps(data).encode()).decode()


# External settlement check, e.g. a facilitator client
PaymentVerifier = Callable[[PaymentProof, PaymentRequirements], Awaitable[bool]]


def check_payment(proof: PaymentProof, requirements: PaymentRequirements) -> Optional[str]:
    """Return why ``proof`` does not satisfy ``requirements``, or None if it does."""
    if proof.to.lower() != requirements.pay_to.lower():
        return f"Payment sent to {proof.to}, expected {requirements.pay_to}"
    if proof.amount < requirements.max_amount_required:
        return (
            f"Payment of {proof.amount} is below the required "
            f"{requirements.max_amount_required}"
        )
    return None
