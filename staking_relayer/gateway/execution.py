from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from eth_utils import is_address
from loguru import logger
from web3.exceptions import TimeExhausted

from staking_relayer.chain.router import RouterClient
from staking_relayer.core.config import RelayerConfig
from staking_relayer.core.constants.base import (
    BASIS_POINTS_DENOMINATOR,
    DEFAULT_CONFIRMATION_TIMEOUTS,
    ZERO_ADDRESS,
)
from staking_relayer.core.constants.tokens import WRAPPED_NATIVE_SYMBOL
from staking_relayer.core.errors import (
    ChainReadError,
    ConfigurationError,
    ConfirmationTimeoutError,
    OptionNotFoundError,
    RelayerError,
    SubmissionError,
    UnsupportedAdapterError,
    ValidationError,
)
from staking_relayer.core.utils.retry import escalating_timeouts_s, retry_async
from staking_relayer.core.utils.tokens import TokenTable, is_native_symbol
from staking_relayer.core.utils.transaction import TransactionRevertedError
from staking_relayer.core.utils.units import format_units, parse_base_units
from staking_relayer.ledger.constants import TxStatus, UnstakeOutcome
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingOption, StakingTransaction


@dataclass(frozen=True)
class ConfirmationPolicy:
    attempts: int = len(DEFAULT_CONFIRMATION_TIMEOUTS)
    base_timeout_s: float = float(DEFAULT_CONFIRMATION_TIMEOUTS[0])
    factor: float = 2.0

    def timeouts(self) -> tuple[float, ...]:
        return escalating_timeouts_s(
            self.base_timeout_s, self.attempts, factor=self.factor
        )


@dataclass(frozen=True)
class StakeQuote:
    option_id: str
    protocol: str
    token: str
    amount: str
    fee: str
    amount_after_fee: str
    fee_percentage: float
    apy: float
    tvl: str
    risk: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StakeResult:
    tx_hash: str
    status: TxStatus
    option_id: str
    protocol: str
    token: str
    amount: str
    fee: str
    approval_tx_hash: str | None = None
    block_number: int | None = None
    transaction: StakingTransaction | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = str(self.status)
        return out


@dataclass(frozen=True)
class _StakeRequest:
    user_address: str
    token: str
    amount: int
    option_id: str


def _require(value: Any, name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"Missing required field: {name}")
    return text


class ExecutionGateway:
    """Synchronous stake path: the only component that surfaces errors to a caller.

    Amounts are integers in the token's smallest unit. The ledger row is
    written as ``pending`` right after a successful broadcast and promoted
    through the same idempotent call the reconciler uses.
    """

    def __init__(
        self,
        ledger: LedgerDB,
        router: RouterClient,
        config: RelayerConfig,
        *,
        token_table: TokenTable | None = None,
        confirmation: ConfirmationPolicy | None = None,
    ) -> None:
        if router.sign_callback is None or router.from_address is None:
            raise ConfigurationError("Execution gateway requires a relayer signing key")
        self.ledger = ledger
        self.router = router
        self.config = config
        self.network = config.network
        self.token_table = token_table or TokenTable(config.network, config.tokens)
        self.confirmation = confirmation or ConfirmationPolicy()
        self.logger = logger.bind(component="ExecutionGateway")

    # -- validation ----------------------------------------------------------

    def _parse_amount(self, amount: Any) -> int:
        try:
            raw = parse_base_units(_require(amount, "amount"))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if raw <= 0:
            raise ValidationError("Amount must be positive")
        return raw

    def _validate(
        self, user_address: Any, token: Any, amount: Any, option_id: Any
    ) -> _StakeRequest:
        user = _require(user_address, "user_address")
        symbol = _require(token, "token").upper()
        oid = _require(option_id, "option_id")
        raw = self._parse_amount(amount)
        if not is_address(user):
            raise ValidationError(f"Invalid user address: {user}")
        return _StakeRequest(
            user_address=user.lower(), token=symbol, amount=raw, option_id=oid
        )

    def _option(self, option_id: str, token: str, *, active_only: bool = True) -> StakingOption:
        option = self.ledger.get_option(option_id)
        if option is None or (active_only and not option.is_active):
            raise OptionNotFoundError(option_id)
        if option.network != self.network:
            raise OptionNotFoundError(option_id)
        matches = option.token == token or (
            is_native_symbol(token) and option.token == WRAPPED_NATIVE_SYMBOL
        )
        if not matches:
            raise ValidationError(
                f"Option {option_id} stakes {option.token}, not {token}"
            )
        return option

    def _token_address(self, token: str) -> str:
        if is_native_symbol(token):
            return ZERO_ADDRESS
        address = self.config.token_address(token)
        if address is None:
            raise ConfigurationError(
                f"Token address not configured for {token} "
                f"(set {self.network.upper()}_{token}_TOKEN)"
            )
        return address

    async def _decimals(self, token_address: str) -> int:
        known = self.token_table.decimals_for(token_address)
        if known is not None:
            return known
        return await self._read(
            "token decimals", self.router.token_decimals(token_address)
        )

    async def _fee(self, amount: int) -> tuple[int, int]:
        bps = await self._read("fee basis points", self.router.fee_basis_points())
        return bps, amount * bps // BASIS_POINTS_DENOMINATOR

    # -- chain helpers -------------------------------------------------------

    async def _read(self, what: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except RelayerError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ChainReadError(f"Failed to read {what}: {exc}") from exc

    async def _submit(self, what: str, send: Awaitable[str]) -> str:
        try:
            return await send
        except RelayerError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SubmissionError(f"Failed to submit {what}: {exc}") from exc

    async def _confirm(self, txn_hash: str) -> dict:
        """Wait with escalating timeouts; a revert is never retried."""
        timeouts = self.confirmation.timeouts()

        async def _wait(attempt: int) -> dict:
            return await self.router.wait_for_receipt(txn_hash, timeout=timeouts[attempt])

        def _on_retry(attempt: int, exc: Exception, _delay: float) -> None:
            self.logger.warning(
                f"Receipt for {txn_hash} not seen after {timeouts[attempt]:.0f}s "
                f"(attempt {attempt + 1}/{len(timeouts)})"
            )

        try:
            return await retry_async(
                _wait,
                max_retries=len(timeouts),
                should_retry=lambda exc: isinstance(exc, TimeExhausted),
                get_delay_s=lambda _attempt, _exc: 0.0,
                on_retry=_on_retry,
            )
        except TimeExhausted as exc:
            raise ConfirmationTimeoutError(txn_hash, sum(timeouts)) from exc
        except (RelayerError, TransactionRevertedError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise ChainReadError(f"Failed to read receipt for {txn_hash}: {exc}") from exc

    # -- operations ----------------------------------------------------------

    async def quote(self, token: Any, amount: Any, option_id: Any) -> StakeQuote:
        symbol = _require(token, "token").upper()
        oid = _require(option_id, "option_id")
        raw = self._parse_amount(amount)
        option = self._option(oid, symbol)
        bps, fee = await self._fee(raw)
        return StakeQuote(
            option_id=option.id,
            protocol=option.protocol,
            token=symbol,
            amount=str(raw),
            fee=str(fee),
            amount_after_fee=str(raw - fee),
            fee_percentage=bps / 100,
            apy=option.apy,
            tvl=option.tvl,
            risk=str(option.risk),
        )

    async def execute_stake(
        self, user_address: Any, token: Any, amount: Any, option_id: Any
    ) -> StakeResult:
        req = self._validate(user_address, token, amount, option_id)
        option = self._option(req.option_id, req.token)
        token_address = self._token_address(req.token)

        supported = await self._read(
            "adapter support", self.router.is_adapter_supported(option.adapter_address)
        )
        if not supported:
            raise UnsupportedAdapterError(option.adapter_address)

        _, fee = await self._fee(req.amount)
        decimals = await self._decimals(token_address)
        self.logger.info(
            f"Staking {req.amount} {req.token} for {req.user_address} via {option.protocol}"
        )

        approval_hash: str | None = None
        if token_address != ZERO_ADDRESS:
            allowance = await self._read(
                "allowance", self.router.allowance(token_address, self.router.from_address)
            )
            if allowance < req.amount:
                self.logger.info(
                    f"Allowance {allowance} < {req.amount}; approving router for {req.token}"
                )
                approval_hash = await self._submit(
                    "approval", self.router.approve(token_address, req.amount)
                )
                await self._confirm(approval_hash)

        stake_hash = await self._submit(
            "stake",
            self.router.stake(token_address, req.amount, option.adapter_address),
        )

        pending = StakingTransaction(
            tx_hash=stake_hash,
            user_address=req.user_address,
            token=req.token,
            token_address=token_address,
            amount=format_units(req.amount, decimals),
            protocol=option.protocol,
            adapter_address=option.adapter_address,
            status=TxStatus.PENDING,
            fee=format_units(fee, decimals),
            network=self.network,
        )
        self.ledger.record_pending_stake(pending)
        self.ledger.touch_user(req.user_address)

        try:
            receipt = await self._confirm(stake_hash)
        except TransactionRevertedError:
            self.ledger.mark_failed(stake_hash)
            self.logger.error(f"Stake {stake_hash} reverted; marked failed")
            raise
        except ConfirmationTimeoutError:
            self.logger.warning(
                f"Stake {stake_hash} unconfirmed within budget; left pending"
            )
            raise

        block_number = receipt.get("blockNumber")
        confirmed = replace(
            pending,
            status=TxStatus.CONFIRMED,
            block_number=int(block_number) if block_number is not None else None,
        )
        outcome = self.ledger.confirm_stake(confirmed)
        self.logger.info(f"Stake {stake_hash} confirmed ({outcome})")
        return StakeResult(
            tx_hash=stake_hash,
            status=TxStatus.CONFIRMED,
            option_id=option.id,
            protocol=option.protocol,
            token=req.token,
            amount=str(req.amount),
            fee=str(fee),
            approval_tx_hash=approval_hash,
            block_number=confirmed.block_number,
            transaction=self.ledger.get_transaction(stake_hash),
        )

    async def execute_unstake(
        self, user_address: Any, token: Any, amount: Any, option_id: Any
    ) -> dict[str, Any]:
        """Submit ``unstake`` and close the user's stake row by the unstake hash.

        The router emits ``Unstaked`` with the relayer as ``user``, so the
        reconciler cannot attribute it; once this write lands its event is a
        no-op there.
        """
        req = self._validate(user_address, token, amount, option_id)
        option = self._option(req.option_id, req.token, active_only=False)
        token_address = self._token_address(req.token)

        unstake_hash = await self._submit(
            "unstake",
            self.router.unstake(token_address, req.amount, option.adapter_address),
        )
        self.ledger.touch_user(req.user_address)
        receipt = await self._confirm(unstake_hash)

        outcome, row = self.ledger.mark_unstaked(
            user_address=req.user_address,
            token=req.token,
            unstake_tx_hash=unstake_hash,
            protocol=option.protocol,
        )
        if outcome == UnstakeOutcome.NO_MATCH:
            self.logger.warning(
                f"Unstake {unstake_hash} confirmed but no confirmed {req.token} "
                f"stake on {option.protocol} for {req.user_address}"
            )
        else:
            self.logger.info(
                f"Unstake {unstake_hash} confirmed for {req.user_address} ({outcome})"
            )
        block_number = receipt.get("blockNumber")
        return {
            "tx_hash": unstake_hash,
            "status": "confirmed",
            "option_id": option.id,
            "protocol": option.protocol,
            "token": req.token,
            "amount": str(req.amount),
            "block_number": int(block_number) if block_number is not None else None,
            "outcome": str(outcome),
            "stake_tx_hash": row.tx_hash if row is not None else None,
        }
