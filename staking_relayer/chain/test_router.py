from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hexbytes import HexBytes

from staking_relayer.chain.router import RouterClient
from staking_relayer.core.constants.base import DEFAULT_FEE_BASIS_POINTS, ZERO_ADDRESS
from staking_relayer.core.errors import ConfigurationError

ROUTER = "0x4444444444444444444444444444444444444444"
ADAPTER = "0x1111111111111111111111111111111111111111"
WETH = "0x0fe44892c3279c09654f3590cf6CedAc3FC3ccdc"
OWNER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def _call(value=None, error=None):
    fn = MagicMock()
    fn.return_value.call = AsyncMock(return_value=value, side_effect=error)
    return fn


@pytest.fixture
def contracts():
    router = MagicMock()
    erc20 = MagicMock()
    return router, erc20


@pytest.fixture
def client(contracts):
    router, erc20 = contracts
    web3 = MagicMock()
    web3.eth.contract.side_effect = lambda address, abi: (
        router if address.lower() == ROUTER else erc20
    )
    return RouterClient(
        web3,
        ROUTER,
        chain_id=11155111,
        sign_callback=AsyncMock(),
        from_address=OWNER,
    )


class TestReads:
    @pytest.mark.asyncio
    async def test_fee_basis_points(self, client, contracts):
        contracts[0].functions.feeBasisPoints = _call(30)
        assert await client.fee_basis_points() == 30

    @pytest.mark.asyncio
    async def test_fee_basis_points_falls_back(self, client, contracts):
        contracts[0].functions.feeBasisPoints = _call(error=RuntimeError("rpc down"))
        assert await client.fee_basis_points() == DEFAULT_FEE_BASIS_POINTS

    @pytest.mark.asyncio
    async def test_is_adapter_supported(self, client, contracts):
        contracts[0].functions.supportedAdapters = _call(True)
        assert await client.is_adapter_supported(ADAPTER) is True
        (arg,) = contracts[0].functions.supportedAdapters.call_args.args
        assert arg.lower() == ADAPTER

    @pytest.mark.asyncio
    async def test_allowance_targets_router(self, client, contracts):
        contracts[1].functions.allowance = _call(123)
        assert await client.allowance(WETH, OWNER) == 123
        owner, spender = contracts[1].functions.allowance.call_args.args
        assert owner == OWNER
        assert spender.lower() == ROUTER

    @pytest.mark.asyncio
    async def test_native_decimals_skip_rpc(self, client, contracts):
        contracts[1].functions.decimals = _call(6)
        assert await client.token_decimals(ZERO_ADDRESS) == 18
        assert await client.token_decimals(WETH) == 6

    @pytest.mark.asyncio
    async def test_fetch_events_orders_by_block(self, client, contracts):
        staked = {"blockNumber": 12, "logIndex": 0, "transactionHash": HexBytes("0x01")}
        unstaked = {"blockNumber": 11, "logIndex": 3, "transactionHash": HexBytes("0x02")}
        contracts[0].events.Staked.return_value.get_logs = AsyncMock(return_value=[staked])
        contracts[0].events.Unstaked.return_value.get_logs = AsyncMock(
            return_value=[unstaked]
        )

        events = await client.fetch_events(10, 20)
        assert events == [("Unstaked", unstaked), ("Staked", staked)]
        contracts[0].events.Staked.return_value.get_logs.assert_awaited_once_with(
            from_block=10, to_block=20
        )


class TestWrites:
    @pytest.mark.asyncio
    async def test_native_stake_attaches_value(self, client):
        with (
            patch(
                "staking_relayer.chain.router.encode_call",
                return_value={"to": ROUTER, "data": "0x"},
            ) as mock_encode,
            patch(
                "staking_relayer.chain.router.send_transaction",
                new_callable=AsyncMock,
                return_value="0xstake",
            ) as mock_send,
        ):
            tx_hash = await client.stake(ZERO_ADDRESS, 10**18, ADAPTER)

        assert tx_hash == "0xstake"
        kwargs = mock_encode.call_args.kwargs
        assert kwargs["fn_name"] == "stake"
        assert kwargs["args"][0] == ZERO_ADDRESS
        assert kwargs["value"] == 10**18
        mock_send.assert_awaited_once_with(
            client.web3, {"to": ROUTER, "data": "0x"}, client.sign_callback
        )

    @pytest.mark.asyncio
    async def test_erc20_stake_has_no_value(self, client):
        with (
            patch("staking_relayer.chain.router.encode_call", return_value={}) as mock_encode,
            patch(
                "staking_relayer.chain.router.send_transaction",
                new_callable=AsyncMock,
                return_value="0xstake",
            ),
        ):
            await client.stake(WETH, 5, ADAPTER)
        kwargs = mock_encode.call_args.kwargs
        assert kwargs["args"][0].lower() == WETH.lower()
        assert kwargs["value"] == 0

    @pytest.mark.asyncio
    async def test_approve_router_as_spender(self, client):
        with (
            patch("staking_relayer.chain.router.encode_call", return_value={}) as mock_encode,
            patch(
                "staking_relayer.chain.router.send_transaction",
                new_callable=AsyncMock,
                return_value="0xapprove",
            ),
        ):
            assert await client.approve(WETH, 5) == "0xapprove"
        kwargs = mock_encode.call_args.kwargs
        assert kwargs["fn_name"] == "approve"
        assert kwargs["target"].lower() == WETH.lower()
        assert kwargs["args"][0].lower() == ROUTER

    @pytest.mark.asyncio
    async def test_writes_require_signer(self, contracts):
        web3 = MagicMock()
        read_only = RouterClient(web3, ROUTER, chain_id=11155111)
        with pytest.raises(ConfigurationError):
            await read_only.unstake(WETH, 1, ADAPTER)
