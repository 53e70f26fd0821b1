from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final


class JobStatus(StrEnum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class QueuePolicy:
    attempts: int
    backoff_base_s: float
    keep_completed: int
    keep_failed: int


TRANSACTION_QUEUE: Final[str] = "transaction-processing"
OPTIONS_QUEUE: Final[str] = "update-staking-options"

JOB_PROCESS_STAKE: Final[str] = "process-stake"
JOB_PROCESS_UNSTAKE: Final[str] = "process-unstake"

JOB_UPDATE_OPTIONS: Final[str] = "update-options"
JOB_INITIAL_UPDATE: Final[str] = "initial-update"
JOB_MANUAL_UPDATE: Final[str] = "manual-update"

QUEUE_POLICIES: Final[dict[str, QueuePolicy]] = {
    TRANSACTION_QUEUE: QueuePolicy(
        attempts=3, backoff_base_s=1.0, keep_completed=100, keep_failed=500
    ),
    OPTIONS_QUEUE: QueuePolicy(
        attempts=3, backoff_base_s=2.0, keep_completed=100, keep_failed=50
    ),
}
