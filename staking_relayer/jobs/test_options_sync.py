from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from staking_relayer.core.clients.YieldsClient import YieldPool
from staking_relayer.jobs.options_sync import OptionsSynchronizer
from staking_relayer.ledger.constants import RiskTier
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingOption, option_id
from staking_relayer.market_data.fetcher import MarketDataFetcher
from staking_relayer.registry.adapter_registry import AdapterRegistry

UNISWAP = "0x1111111111111111111111111111111111111111"
AAVE = "0x2222222222222222222222222222222222222222"
LIDO = "0x3333333333333333333333333333333333333333"


def _pool(project, symbol, tvl, apy=1.0):
    return YieldPool.model_validate(
        {"chain": "Ethereum", "project": project, "symbol": symbol, "tvlUsd": tvl, "apy": apy}
    )


POOLS = [
    _pool("lido", "STETH", 25_000_000_000, apy=3.2),
    _pool("aave-v3", "WETH", 2_500_000_000, apy=1.9),
    _pool("aave-v3", "USDC", 3_000_000_000, apy=4.4),
    _pool("uniswap-v3", "USDC-WETH", 300_000_000, apy=12.0),
]


@pytest.fixture
def ledger(tmp_path):
    db = LedgerDB(tmp_path / "ledger.db")
    yield db
    db.close()


def _sync(ledger, adapters, *, pools=None, error=None):
    client = MagicMock()
    client.get_pools = AsyncMock(return_value=pools if pools is not None else POOLS, side_effect=error)
    registry = AdapterRegistry(adapters)
    fetcher = MarketDataFetcher(client, registry)
    return OptionsSynchronizer(ledger, registry, fetcher, network="sepolia"), client


@pytest.mark.asyncio
async def test_first_run_creates_options(ledger):
    sync, _ = _sync(ledger, {"uniswap": UNISWAP, "aave": AAVE, "lido": LIDO})
    result = await sync.run()

    assert result == {"updated": 0, "created": 4, "deactivated": 0}
    lido = ledger.get_option("lido-weth-sepolia")
    assert lido is not None
    assert lido.apy == 3.2
    assert lido.tvl == "$25.00B"
    assert lido.risk == RiskTier.LOW
    assert lido.adapter_address.lower() == LIDO
    assert ledger.get_option("uniswap-v3-weth-sepolia").is_active


@pytest.mark.asyncio
async def test_second_run_updates_in_place(ledger):
    sync, _ = _sync(ledger, {"uniswap": UNISWAP, "aave": AAVE, "lido": LIDO})
    await sync.run()
    result = await sync.run()
    assert result == {"updated": 4, "created": 0, "deactivated": 0}
    assert len(ledger.list_options()) == 4


@pytest.mark.asyncio
async def test_no_adapters_skips_without_writes(ledger):
    sync, client = _sync(ledger, {})
    result = await sync.run()
    assert result == {"skipped": True, "reason": "no_adapters"}
    client.get_pools.assert_not_awaited()
    assert ledger.list_options() == []


@pytest.mark.asyncio
async def test_upstream_failure_keeps_catalog(ledger):
    sync, _ = _sync(ledger, {"lido": LIDO})
    await sync.run()

    failing, _ = _sync(ledger, {"lido": LIDO}, error=httpx.ConnectError("down"))
    result = await failing.run()
    assert result == {"skipped": True, "reason": "no_market_data"}
    assert ledger.get_option("lido-weth-sepolia").is_active


@pytest.mark.asyncio
async def test_dropped_adapter_is_deactivated_not_deleted(ledger):
    sync, _ = _sync(ledger, {"uniswap": UNISWAP, "aave": AAVE, "lido": LIDO})
    await sync.run()

    without_lido, _ = _sync(ledger, {"uniswap": UNISWAP, "aave": AAVE})
    result = await without_lido.run()
    assert result["deactivated"] == 1

    lido = ledger.get_option("lido-weth-sepolia")
    assert lido is not None
    assert lido.is_active is False
    active_ids = {o.id for o in ledger.active_options(network="sepolia")}
    assert "lido-weth-sepolia" not in active_ids
    assert "aave-v3-weth-sepolia" in active_ids


@pytest.mark.asyncio
async def test_returning_adapter_reactivates_option(ledger):
    all_adapters = {"uniswap": UNISWAP, "aave": AAVE, "lido": LIDO}
    sync, _ = _sync(ledger, all_adapters)
    await sync.run()
    without_lido, _ = _sync(ledger, {"uniswap": UNISWAP, "aave": AAVE})
    await without_lido.run()
    assert ledger.get_option("lido-weth-sepolia").is_active is False

    again, _ = _sync(ledger, all_adapters)
    result = await again.run()

    assert result == {"updated": 4, "created": 0, "deactivated": 0}
    lido = ledger.get_option("lido-weth-sepolia")
    assert lido.is_active is True
    assert len(ledger.list_options(network="sepolia")) == 4


@pytest.mark.asyncio
async def test_other_networks_untouched(ledger):
    ledger.upsert_option(
        StakingOption(
            id=option_id("Lido", "WETH", "mainnet"),
            protocol="Lido",
            token="WETH",
            apy=3.0,
            tvl="$1.00B",
            tvl_usd=1e9,
            risk=RiskTier.LOW,
            adapter_address=LIDO,
            network="mainnet",
        )
    )
    sync, _ = _sync(ledger, {"aave": AAVE})
    await sync.run()
    assert ledger.get_option("lido-weth-mainnet").is_active


@pytest.mark.asyncio
async def test_handle_runs_sync(ledger):
    sync, _ = _sync(ledger, {"lido": LIDO})
    result = await sync.handle("manual-update", {})
    assert result["created"] == 1
