from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

from staking_relayer.ledger.constants import RiskTier, TxStatus

_WHITESPACE = re.compile(r"\s+")


def slug(value: str) -> str:
    return _WHITESPACE.sub("-", str(value).strip().lower())


def option_id(protocol: str, token: str, network: str) -> str:
    """``("Uniswap V3", "WETH", "sepolia") -> "uniswap-v3-weth-sepolia"``"""
    return f"{slug(protocol)}-{slug(token)}-{slug(network)}"


@dataclass(frozen=True)
class StakingOption:
    id: str
    protocol: str
    token: str
    apy: float
    tvl: str
    tvl_usd: float
    risk: RiskTier
    adapter_address: str
    network: str
    is_active: bool = True
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StakingTransaction:
    tx_hash: str
    user_address: str
    token: str
    token_address: str
    amount: str
    protocol: str
    adapter_address: str
    status: TxStatus
    fee: str
    network: str
    block_number: int | None = None
    created_at: int | None = None
    updated_at: int | None = None
    unstake_tx_hash: str | None = None
    unstaked_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class User:
    address: str
    created_at: int
    last_login_at: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
