from __future__ import annotations

from typing import Any

from loguru import logger

from staking_relayer.core.config import normalize_address
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingOption, option_id
from staking_relayer.market_data.fetcher import MarketDataFetcher
from staking_relayer.registry.adapter_registry import AdapterRegistry


class OptionsSynchronizer:
    """Refresh the options catalog for one network from live market data.

    Options that were not quoted this pass are deactivated, never deleted.
    """

    def __init__(
        self,
        ledger: LedgerDB,
        registry: AdapterRegistry,
        fetcher: MarketDataFetcher,
        *,
        network: str,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.fetcher = fetcher
        self.network = network
        self.logger = logger.bind(component="OptionsSynchronizer", network=network)

    async def handle(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.logger.info(f"Running options sync ({name})")
        return await self.run()

    async def run(self) -> dict[str, Any]:
        adapters = self.registry.list_configured()
        if not adapters:
            self.logger.warning("Options sync skipped: no adapters configured")
            return {"skipped": True, "reason": "no_adapters"}

        quotes = await self.fetcher.fetch_all(adapters)
        if not quotes:
            self.logger.warning("Options sync skipped: no market data this cycle")
            return {"skipped": True, "reason": "no_market_data"}

        created = 0
        updated = 0
        touched: set[str] = set()
        for token, token_quotes in quotes.items():
            for quote in token_quotes:
                adapter_address = normalize_address(quote.adapter_address)
                if adapter_address is None:
                    continue
                oid = option_id(quote.protocol, token, self.network)
                option = StakingOption(
                    id=oid,
                    protocol=quote.protocol,
                    token=token,
                    apy=quote.apy_percent,
                    tvl=quote.tvl_formatted,
                    tvl_usd=quote.tvl_usd_raw,
                    risk=quote.risk_tier,
                    adapter_address=adapter_address,
                    network=self.network,
                )
                if self.ledger.upsert_option(option):
                    created += 1
                else:
                    updated += 1
                touched.add(oid)

        deactivated = self.ledger.deactivate_options_except(
            network=self.network, keep_ids=touched
        )
        self.logger.info(
            f"Options sync done: {updated} updated, {created} created, {deactivated} deactivated"
        )
        return {"updated": updated, "created": created, "deactivated": deactivated}
