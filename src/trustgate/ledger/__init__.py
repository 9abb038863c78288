"""Ledger module — registry, reputation, staking, reads and the write pipeline."""

from trustgate.ledger.registry import AgentRecord, AgentRegistry
from trustgate.ledger.reputation import ReputationLedger, ReputationSummary, compute_score
from trustgate.ledger.staking import (
    SlashRecord,
    StakeRecord,
    StakeRequirementCheck,
    StakingLedger,
)
from trustgate.ledger.reader import LedgerReader, LedgerView
from trustgate.ledger.writer import LedgerWrite, LedgerWriteKind, LedgerWriter, WriteStatus

__all__ = [
    "AgentRecord",
    "AgentRegistry",
    "ReputationLedger",
    "ReputationSummary",
    "compute_score",
    "SlashRecord",
    "StakeRecord",
    "StakeRequirementCheck",
    "StakingLedger",
    "LedgerReader",
    "LedgerView",
    "LedgerWrite",
    "LedgerWriteKind",
    "LedgerWriter",
    "WriteStatus",
]
