from __future__ import annotations

from typing import Any

from loguru import logger

from staking_relayer.core.constants.base import UNKNOWN_PROTOCOL
from staking_relayer.jobqueue.constants import JOB_PROCESS_STAKE, JOB_PROCESS_UNSTAKE
from staking_relayer.jobs.payloads import StakeEventJob, UnstakeEventJob
from staking_relayer.ledger.constants import TxStatus, UnstakeOutcome
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingTransaction
from staking_relayer.registry.adapter_registry import AdapterRegistry


class TransactionReconciler:
    """Turn chain events into ledger state.

    Every path is safe to re-run for the same payload: the stake path only
    promotes pending rows and the unstake path refuses an unstake hash that
    is already attached.
    """

    def __init__(
        self, ledger: LedgerDB, registry: AdapterRegistry, *, network: str
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.network = network
        self.logger = logger.bind(component="TransactionReconciler")

    async def handle(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        if name == JOB_PROCESS_STAKE:
            return await self.process_stake(StakeEventJob.model_validate(payload))
        if name == JOB_PROCESS_UNSTAKE:
            return await self.process_unstake(UnstakeEventJob.model_validate(payload))
        raise ValueError(f"Unknown transaction job: {name}")

    async def process_stake(self, job: StakeEventJob) -> dict[str, Any]:
        protocol = self.registry.protocol_for_adapter(job.adapter_address)
        outcome = self.ledger.confirm_stake(
            StakingTransaction(
                tx_hash=job.tx_hash,
                user_address=job.user_address,
                token=job.token,
                token_address=job.token_address,
                amount=job.amount,
                protocol=protocol,
                adapter_address=job.adapter_address,
                status=TxStatus.CONFIRMED,
                fee=job.fee,
                network=job.network or self.network,
                block_number=job.block_number,
            )
        )
        self.logger.info(f"Stake {job.tx_hash} ({protocol}): {outcome}")
        return {"processed": True, "tx_hash": job.tx_hash, "outcome": str(outcome)}

    async def process_unstake(self, job: UnstakeEventJob) -> dict[str, Any]:
        protocol = self.registry.protocol_for_adapter(job.adapter_address)
        outcome, row = self.ledger.mark_unstaked(
            user_address=job.user_address,
            token=job.token,
            unstake_tx_hash=job.tx_hash,
            protocol=None if protocol == UNKNOWN_PROTOCOL else protocol,
        )
        if outcome == UnstakeOutcome.NO_MATCH:
            self.logger.warning(
                f"Orphan unstake {job.tx_hash}: no confirmed {job.token} stake "
                f"for {job.user_address}"
            )
            return {"processed": False, "reason": "no_matching_stake"}

        stake_hash = row.tx_hash if row is not None else None
        self.logger.info(f"Unstake {job.tx_hash} -> stake {stake_hash}: {outcome}")
        return {
            "processed": True,
            "tx_hash": job.tx_hash,
            "stake_tx_hash": stake_hash,
            "outcome": str(outcome),
        }
