from contextlib import asynccontextmanager

from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3

from staking_relayer.core.constants.base import DEFAULT_HTTP_TIMEOUT


def get_web3(rpc_url: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT) -> AsyncWeb3:
    provider = AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
    return AsyncWeb3(provider)


def get_transaction_chain_id(transaction: dict) -> int:
    if "chainId" not in transaction:
        raise ValueError("Transaction does not contain chainId")
    return int(transaction["chainId"])


async def close_web3(web3: AsyncWeb3) -> None:
    try:
        await web3.provider.disconnect()
    except Exception as exc:  # noqa: BLE001
        logger.debug(f"Failed to disconnect web3 provider: {exc}")


@asynccontextmanager
async def web3_from_rpc(rpc_url: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT):
    web3 = get_web3(rpc_url, timeout=timeout)
    try:
        yield web3
    finally:
        await close_web3(web3)
