from __future__ import annotations

from enum import StrEnum


class TxStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNSTAKED = "unstaked"


class RiskTier(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class StakeOutcome(StrEnum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    UNCHANGED = "unchanged"


class UnstakeOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    NO_MATCH = "no_match"
