from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class _EventJob(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    tx_hash: str
    user_address: str
    token: str
    token_address: str
    adapter_address: str
    amount: str
    block_number: int | None = None
    network: str | None = None


class StakeEventJob(_EventJob):
    fee: str = "0"


class UnstakeEventJob(_EventJob):
    pass
