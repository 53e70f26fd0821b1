from __future__ import annotations

import asyncio
from typing import Any

from eth_utils import to_checksum_address
from loguru import logger
from web3 import AsyncWeb3

from staking_relayer.core.constants.base import (
    DEFAULT_FEE_BASIS_POINTS,
    DEFAULT_RECEIPT_POLL_INTERVAL,
    ZERO_ADDRESS,
)
from staking_relayer.core.constants.erc20_abi import ERC20_ABI
from staking_relayer.core.constants.router_abi import (
    STAKED_EVENT,
    STAKING_ROUTER_ABI,
    UNSTAKED_EVENT,
)
from staking_relayer.core.errors import ConfigurationError
from staking_relayer.core.utils.tokens import is_native_token
from staking_relayer.core.utils.transaction import (
    SignCallback,
    encode_call,
    local_sign_callback,
    send_transaction,
    wait_for_transaction_receipt,
)


def _router_token(token_address: str | None) -> str:
    if is_native_token(token_address):
        return ZERO_ADDRESS
    return to_checksum_address(token_address)


class RouterClient:
    """Reads, writes and event queries against the staking router.

    The web3 instance is injected; signing is optional so read-only users
    (the watcher, quotes) can share the same client type.
    """

    def __init__(
        self,
        web3: AsyncWeb3,
        router_address: str,
        *,
        chain_id: int,
        sign_callback: SignCallback | None = None,
        from_address: str | None = None,
        receipt_poll_interval_s: float = DEFAULT_RECEIPT_POLL_INTERVAL,
    ) -> None:
        self.web3 = web3
        self.router_address = to_checksum_address(router_address)
        self.chain_id = int(chain_id)
        self.sign_callback = sign_callback
        self.from_address = to_checksum_address(from_address) if from_address else None
        self.receipt_poll_interval_s = float(receipt_poll_interval_s)
        self.router = web3.eth.contract(
            address=self.router_address, abi=STAKING_ROUTER_ABI
        )
        self.logger = logger.bind(component="RouterClient")

    @classmethod
    def with_private_key(
        cls,
        web3: AsyncWeb3,
        router_address: str,
        *,
        chain_id: int,
        private_key: str,
        **kwargs: Any,
    ) -> RouterClient:
        from eth_account import Account

        account = Account.from_key(private_key)
        return cls(
            web3,
            router_address,
            chain_id=chain_id,
            sign_callback=local_sign_callback(private_key),
            from_address=account.address,
            **kwargs,
        )

    def _erc20(self, token_address: str):
        return self.web3.eth.contract(
            address=to_checksum_address(token_address), abi=ERC20_ABI
        )

    # -- reads ---------------------------------------------------------------

    async def latest_block(self) -> int:
        return int(await self.web3.eth.block_number)

    async def fetch_events(self, from_block: int, to_block: int) -> list[tuple[str, Any]]:
        """``Staked``/``Unstaked`` logs in block order as ``(event_name, log)``."""
        staked, unstaked = await asyncio.gather(
            self.router.events.Staked().get_logs(
                from_block=int(from_block), to_block=int(to_block)
            ),
            self.router.events.Unstaked().get_logs(
                from_block=int(from_block), to_block=int(to_block)
            ),
        )
        events = [(STAKED_EVENT, log) for log in staked] + [
            (UNSTAKED_EVENT, log) for log in unstaked
        ]
        events.sort(
            key=lambda item: (
                int(item[1].get("blockNumber") or 0),
                int(item[1].get("logIndex") or 0),
            )
        )
        return events

    async def fee_basis_points(self) -> int:
        try:
            return int(await self.router.functions.feeBasisPoints().call())
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                f"feeBasisPoints() read failed, using {DEFAULT_FEE_BASIS_POINTS} bps: {exc}"
            )
            return DEFAULT_FEE_BASIS_POINTS

    async def is_adapter_supported(self, adapter_address: str) -> bool:
        return bool(
            await self.router.functions.supportedAdapters(
                to_checksum_address(adapter_address)
            ).call()
        )

    async def allowance(self, token_address: str, owner: str) -> int:
        return int(
            await self._erc20(token_address)
            .functions.allowance(
                to_checksum_address(owner), self.router_address
            )
            .call()
        )

    async def token_decimals(self, token_address: str) -> int:
        if is_native_token(token_address):
            return 18
        return int(await self._erc20(token_address).functions.decimals().call())

    # -- writes --------------------------------------------------------------

    def _require_signer(self) -> tuple[SignCallback, str]:
        if self.sign_callback is None or self.from_address is None:
            raise ConfigurationError("Router client has no signing key configured")
        return self.sign_callback, self.from_address

    async def _send(
        self,
        *,
        target: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        args: list[Any],
        value: int = 0,
    ) -> str:
        sign_callback, from_address = self._require_signer()
        tx = encode_call(
            self.web3,
            target=target,
            abi=abi,
            fn_name=fn_name,
            args=args,
            from_address=from_address,
            chain_id=self.chain_id,
            value=value,
        )
        return await send_transaction(self.web3, tx, sign_callback)

    async def approve(self, token_address: str, amount: int) -> str:
        return await self._send(
            target=token_address,
            abi=ERC20_ABI,
            fn_name="approve",
            args=[self.router_address, int(amount)],
        )

    async def stake(self, token_address: str, amount: int, adapter_address: str) -> str:
        """Native stakes attach ``amount`` as value; ERC-20 stakes need an allowance."""
        return await self._send(
            target=self.router_address,
            abi=STAKING_ROUTER_ABI,
            fn_name="stake",
            args=[_router_token(token_address), int(amount), to_checksum_address(adapter_address)],
            value=int(amount) if is_native_token(token_address) else 0,
        )

    async def unstake(
        self, token_address: str, amount: int, adapter_address: str
    ) -> str:
        return await self._send(
            target=self.router_address,
            abi=STAKING_ROUTER_ABI,
            fn_name="unstake",
            args=[_router_token(token_address), int(amount), to_checksum_address(adapter_address)],
        )

    async def wait_for_receipt(self, txn_hash: str, *, timeout: float) -> dict:
        return await wait_for_transaction_receipt(
            self.web3,
            txn_hash,
            timeout=timeout,
            poll_interval=self.receipt_poll_interval_s,
        )
