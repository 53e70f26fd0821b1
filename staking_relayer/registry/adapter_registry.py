from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from staking_relayer.core.config import RelayerConfig, normalize_address
from staking_relayer.core.constants.base import (
    DEFAULT_MARKET_CHAIN,
    HIGH_TVL_THRESHOLD_USD,
    LOW_TVL_THRESHOLD_USD,
    UNKNOWN_PROTOCOL,
)
from staking_relayer.ledger.constants import RiskTier


class AdapterKind(StrEnum):
    LIQUID_STAKING = "liquid-staking"
    LENDING = "lending"
    DEX = "dex"


@dataclass(frozen=True)
class AdapterDefinition:
    key: str
    protocol: str
    protocol_id: str
    kind: AdapterKind
    supported_tokens: tuple[str, ...]
    base_risk: RiskTier
    # symbol of the derivative pool for liquid-staking protocols
    lsd_symbol: str | None = None


@dataclass(frozen=True)
class AdapterEntry:
    protocol: str
    protocol_id: str
    adapter_address: str
    supported_tokens: tuple[str, ...]
    base_risk: RiskTier
    kind: AdapterKind
    chain: str = DEFAULT_MARKET_CHAIN
    lsd_symbol: str | None = None


# Keyed by the suffix of the ADAPTER_<KEY> environment variable.
ADAPTER_DEFINITIONS: tuple[AdapterDefinition, ...] = (
    AdapterDefinition(
        key="uniswap",
        protocol="Uniswap V3",
        protocol_id="uniswap-v3",
        kind=AdapterKind.DEX,
        supported_tokens=("WETH", "WBTC"),
        base_risk=RiskTier.MEDIUM,
    ),
    AdapterDefinition(
        key="aave",
        protocol="Aave V3",
        protocol_id="aave-v3",
        kind=AdapterKind.LENDING,
        supported_tokens=("WETH", "WBTC", "USDC"),
        base_risk=RiskTier.LOW,
    ),
    AdapterDefinition(
        key="lido",
        protocol="Lido",
        protocol_id="lido",
        kind=AdapterKind.LIQUID_STAKING,
        supported_tokens=("WETH",),
        base_risk=RiskTier.LOW,
        lsd_symbol="STETH",
    ),
)

_ESCALATE = {
    RiskTier.LOW: RiskTier.MEDIUM,
    RiskTier.MEDIUM: RiskTier.HIGH,
    RiskTier.HIGH: RiskTier.HIGH,
}


def risk_for(base_tier: RiskTier | str, tvl_usd: float) -> RiskTier:
    """Re-rate a protocol's base risk by pool depth.

    Under $1M escalates one step toward High; over $100M lets Medium drop to
    Low. Everything else keeps the base tier.
    """
    tier = RiskTier(base_tier)
    tvl = float(tvl_usd)
    if tvl < LOW_TVL_THRESHOLD_USD:
        return _ESCALATE[tier]
    if tvl > HIGH_TVL_THRESHOLD_USD and tier == RiskTier.MEDIUM:
        return RiskTier.LOW
    return tier


class AdapterRegistry:
    """Which protocols are backed by a deployed, non-zero adapter.

    A read-only projection over an immutable address snapshot; every call
    re-evaluates the snapshot, nothing is cached between calls.
    """

    def __init__(
        self,
        adapter_addresses: Mapping[str, str],
        *,
        definitions: tuple[AdapterDefinition, ...] = ADAPTER_DEFINITIONS,
        market_chain: str = DEFAULT_MARKET_CHAIN,
    ) -> None:
        self._addresses = dict(adapter_addresses)
        self._definitions = definitions
        self._market_chain = market_chain
        self.logger = logger.bind(component="AdapterRegistry")

    @classmethod
    def from_config(cls, config: RelayerConfig) -> AdapterRegistry:
        return cls(config.adapters, market_chain=config.market_chain)

    risk_for = staticmethod(risk_for)

    def _entries(self) -> list[AdapterEntry]:
        entries: list[AdapterEntry] = []
        for definition in self._definitions:
            address = normalize_address(self._addresses.get(definition.key))
            if address is None:
                continue
            entries.append(
                AdapterEntry(
                    protocol=definition.protocol,
                    protocol_id=definition.protocol_id,
                    adapter_address=address,
                    supported_tokens=definition.supported_tokens,
                    base_risk=definition.base_risk,
                    kind=definition.kind,
                    chain=self._market_chain,
                    lsd_symbol=definition.lsd_symbol,
                )
            )
        return entries

    def list_configured(self) -> list[AdapterEntry]:
        entries = self._entries()
        if not entries:
            self.logger.warning(
                "No adapters configured; set ADAPTER_UNISWAP, ADAPTER_AAVE or ADAPTER_LIDO"
            )
        return entries

    def is_supported(self, protocol: str, token: str) -> bool:
        protocol_key = str(protocol).strip().lower()
        token_key = str(token).strip().upper()
        return any(
            protocol_key in (entry.protocol.lower(), entry.protocol_id)
            and token_key in entry.supported_tokens
            for entry in self._entries()
        )

    def adapter_protocols(self) -> dict[str, str]:
        """Lowercase adapter address -> protocol display name."""
        return {
            entry.adapter_address.lower(): entry.protocol
            for entry in self._entries()
        }

    def protocol_for_adapter(self, adapter_address: str | None) -> str:
        if not adapter_address:
            return UNKNOWN_PROTOCOL
        return self.adapter_protocols().get(
            str(adapter_address).strip().lower(), UNKNOWN_PROTOCOL
        )
