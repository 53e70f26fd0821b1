import math
from collections.abc import Awaitable, Callable
from typing import Any

from eth_account import Account
from hexbytes import HexBytes
from loguru import logger
from web3 import AsyncWeb3

from staking_relayer.core.constants.base import (
    DEFAULT_RECEIPT_POLL_INTERVAL,
    GAS_BUFFER_MULTIPLIER,
    MAX_BASE_FEE_GROWTH_MULTIPLIER,
    SUGGESTED_GAS_PRICE_MULTIPLIER,
    SUGGESTED_PRIORITY_FEE_MULTIPLIER,
)
from staking_relayer.core.constants.chains import PRE_EIP_1559_CHAIN_IDS
from staking_relayer.core.utils.web3 import get_transaction_chain_id

SignCallback = Callable[[dict], Awaitable[bytes]]


class TransactionRevertedError(RuntimeError):
    def __init__(
        self,
        txn_hash: str,
        receipt: dict[str, Any] | None = None,
        message: str | None = None,
    ):
        self.txn_hash = txn_hash
        self.receipt = receipt or {}
        super().__init__(message or f"Transaction reverted: {txn_hash}")


def to_hex_hash(value: Any) -> str:
    """Normalise a tx hash (bytes, HexBytes or str) to lowercase 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).strip().lower()
    return text if text.startswith("0x") else f"0x{text}"


def _revert_message(txn_hash: str, receipt: dict[str, Any], transaction: dict) -> str:
    gas_used = int(receipt.get("gasUsed") or 0)
    gas_limit = int(transaction.get("gas") or 0)
    oogs = bool(gas_used and gas_limit and gas_used >= gas_limit)
    suffix = (
        f" gasUsed={gas_used} gasLimit={gas_limit}"
        + (" (likely out of gas)" if oogs else "")
        if gas_used or gas_limit
        else ""
    )
    return f"Transaction reverted (status=0): {txn_hash}{suffix}"


def _get_transaction_from_address(transaction: dict) -> str:
    if "from" not in transaction:
        raise ValueError("Transaction does not contain from address")
    return AsyncWeb3.to_checksum_address(transaction["from"])


async def nonce_transaction(web3: AsyncWeb3, transaction: dict) -> dict:
    transaction = transaction.copy()
    from_address = _get_transaction_from_address(transaction)
    transaction["nonce"] = await web3.eth.get_transaction_count(
        from_address, block_identifier="pending"
    )
    return transaction


async def gas_price_transaction(web3: AsyncWeb3, transaction: dict) -> dict:
    transaction = transaction.copy()
    chain_id = get_transaction_chain_id(transaction)

    if chain_id in PRE_EIP_1559_CHAIN_IDS:
        gas_price = await web3.eth.gas_price
        transaction["gasPrice"] = int(gas_price * SUGGESTED_GAS_PRICE_MULTIPLIER)
        return transaction

    latest_block = await web3.eth.get_block("latest")
    base_fee = latest_block["baseFeePerGas"]

    lookback_blocks = 10
    percentile = 80
    fee_history = await web3.eth.fee_history(lookback_blocks, "latest", [percentile])
    rewards = [r[0] for r in (fee_history["reward"] or [])]
    priority_fee = sum(rewards) // len(rewards) if rewards else 0

    transaction["maxFeePerGas"] = int(
        base_fee * MAX_BASE_FEE_GROWTH_MULTIPLIER
        + priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
    )
    transaction["maxPriorityFeePerGas"] = int(
        priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
    )
    return transaction


async def gas_limit_transaction(web3: AsyncWeb3, transaction: dict) -> dict:
    transaction = transaction.copy()

    # prevents RPCs from taking this as a serious limit
    transaction.pop("gas", None)

    gas_limit = await web3.eth.estimate_gas(transaction, block_identifier="latest")
    transaction["gas"] = int(math.ceil(gas_limit * GAS_BUFFER_MULTIPLIER))
    return transaction


async def send_transaction(
    web3: AsyncWeb3, transaction: dict, sign_callback: SignCallback
) -> str:
    """Fill gas/nonce/fees, sign and broadcast. Returns the tx hash without waiting."""
    if sign_callback is None:
        raise ValueError("sign_callback must be provided to send transaction")

    logger.info(
        f"Broadcasting transaction to={transaction.get('to')} value={transaction.get('value', 0)}"
    )
    transaction = await gas_limit_transaction(web3, transaction)
    transaction = await nonce_transaction(web3, transaction)
    transaction = await gas_price_transaction(web3, transaction)
    signed_transaction = await sign_callback(transaction)
    txn_hash = to_hex_hash(await web3.eth.send_raw_transaction(signed_transaction))
    logger.info(f"Transaction broadcasted: {txn_hash}")
    return txn_hash


async def wait_for_transaction_receipt(
    web3: AsyncWeb3,
    txn_hash: str,
    *,
    timeout: float,
    poll_interval: float = DEFAULT_RECEIPT_POLL_INTERVAL,
    transaction: dict | None = None,
) -> dict:
    """Wait for a receipt; raises ``web3.exceptions.TimeExhausted`` on timeout."""
    receipt = await web3.eth.wait_for_transaction_receipt(
        HexBytes(txn_hash), timeout=timeout, poll_latency=poll_interval
    )
    receipt = dict(receipt)
    if int(receipt.get("status", 1)) == 0:
        raise TransactionRevertedError(
            txn_hash,
            receipt,
            message=_revert_message(txn_hash, receipt, transaction or {}),
        )
    return receipt


def local_sign_callback(private_key: str) -> SignCallback:
    account = Account.from_key(private_key)

    async def sign_callback(tx: dict) -> bytes:
        signed = account.sign_transaction(tx)
        return signed.raw_transaction

    return sign_callback


def encode_call(
    web3: AsyncWeb3,
    *,
    target: str,
    abi: list[dict[str, Any]],
    fn_name: str,
    args: list[Any],
    from_address: str,
    chain_id: int,
    value: int = 0,
) -> dict[str, Any]:
    try:
        contract = web3.eth.contract(
            address=web3.to_checksum_address(target),
            abi=abi,
        )
        data = contract.encode_abi(fn_name, args)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Failed to encode {fn_name}: {exc}") from exc

    return {
        "chainId": int(chain_id),
        "from": AsyncWeb3.to_checksum_address(from_address),
        "to": AsyncWeb3.to_checksum_address(target),
        "data": data,
        "value": int(value),
    }
