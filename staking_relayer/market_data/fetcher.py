from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import httpx
from loguru import logger

from staking_relayer.core.clients.YieldsClient import YieldPool, YieldsClient
from staking_relayer.core.constants.base import DEX_MIN_TVL_USD
from staking_relayer.core.utils.units import format_tvl
from staking_relayer.ledger.constants import RiskTier
from staking_relayer.registry.adapter_registry import (
    AdapterEntry,
    AdapterKind,
    AdapterRegistry,
    risk_for,
)


@dataclass(frozen=True)
class PoolQuote:
    protocol: str
    token: str
    apy_percent: float
    tvl_formatted: str
    tvl_usd_raw: float
    risk_tier: RiskTier
    adapter_address: str


def select_pool(
    adapter: AdapterEntry,
    token: str,
    pools: Sequence[YieldPool],
    *,
    dex_min_tvl_usd: float = DEX_MIN_TVL_USD,
) -> YieldPool | None:
    """Pick the pool that prices ``token`` for one adapter.

    ``pools`` must already be narrowed to the adapter's project and chain.
    """
    token = token.upper()
    if adapter.kind == AdapterKind.LIQUID_STAKING:
        target = (adapter.lsd_symbol or token).upper()
        return next((p for p in pools if p.symbol.upper() == target), None)
    if adapter.kind == AdapterKind.LENDING:
        return next((p for p in pools if p.symbol.upper() == token), None)

    candidates = [
        p for p in pools if token in p.symbol.upper() and p.tvl_usd > dex_min_tvl_usd
    ]
    if not candidates:
        return None
    # max() keeps the first pool on equal TVL
    return max(candidates, key=lambda p: p.tvl_usd)


class MarketDataFetcher:
    def __init__(
        self,
        client: YieldsClient,
        registry: AdapterRegistry,
        *,
        dex_min_tvl_usd: float = DEX_MIN_TVL_USD,
    ) -> None:
        self.client = client
        self.registry = registry
        self.dex_min_tvl_usd = float(dex_min_tvl_usd)
        self.logger = logger.bind(component="MarketDataFetcher")

    async def fetch_all(
        self, adapters: Sequence[AdapterEntry] | None = None
    ) -> dict[str, list[PoolQuote]]:
        """Quote every configured (adapter, token) pair from one upstream call.

        Returns ``{}`` when the upstream is unavailable or malformed; callers
        must treat that as "no update this cycle". On success the mapping has
        a key for every configured token, even if no pool qualified.
        """
        if adapters is None:
            adapters = self.registry.list_configured()
        if not adapters:
            return {}

        try:
            pools = await self.client.get_pools()
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.warning(f"Market data unavailable, skipping update: {exc}")
            return {}

        quotes: dict[str, list[PoolQuote]] = {
            token: [] for adapter in adapters for token in adapter.supported_tokens
        }
        for adapter in adapters:
            chain = adapter.chain.lower()
            project_pools = [
                p
                for p in pools
                if p.project.lower() == adapter.protocol_id and p.chain.lower() == chain
            ]
            for token in adapter.supported_tokens:
                pool = select_pool(
                    adapter,
                    token,
                    project_pools,
                    dex_min_tvl_usd=self.dex_min_tvl_usd,
                )
                if pool is None:
                    self.logger.debug(
                        f"No qualifying {adapter.protocol_id} pool for {token}"
                    )
                    continue
                quotes[token].append(
                    PoolQuote(
                        protocol=adapter.protocol,
                        token=token,
                        apy_percent=float(pool.apy or 0.0),
                        tvl_formatted=format_tvl(pool.tvl_usd),
                        tvl_usd_raw=float(pool.tvl_usd),
                        risk_tier=risk_for(adapter.base_risk, pool.tvl_usd),
                        adapter_address=adapter.adapter_address,
                    )
                )

        total = sum(len(v) for v in quotes.values())
        self.logger.info(
            f"Fetched {len(pools)} pools, {total} quotes for {len(adapters)} adapters"
        )
        return quotes
