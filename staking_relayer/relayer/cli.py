from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
from loguru import logger

from staking_relayer.chain.router import RouterClient
from staking_relayer.core.clients.YieldsClient import YieldsClient
from staking_relayer.core.config import RelayerConfig, load_relayer_config, normalize_address
from staking_relayer.core.errors import RelayerError
from staking_relayer.core.utils.transaction import TransactionRevertedError
from staking_relayer.core.utils.units import format_tvl
from staking_relayer.core.utils.web3 import web3_from_rpc
from staking_relayer.gateway.execution import ExecutionGateway
from staking_relayer.jobqueue.constants import JOB_MANUAL_UPDATE, OPTIONS_QUEUE
from staking_relayer.jobqueue.db import JobQueueDB
from staking_relayer.jobs.options_sync import OptionsSynchronizer
from staking_relayer.ledger.constants import RiskTier
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingOption, option_id
from staking_relayer.market_data.fetcher import MarketDataFetcher
from staking_relayer.registry.adapter_registry import AdapterRegistry
from staking_relayer.relayer.daemon import RelayerDaemon

_HANDLED = (RelayerError, TransactionRevertedError, ValueError, KeyError)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _error_text(exc: Exception) -> str:
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc)


def _fail(exc: Exception) -> None:
    _echo_json({"ok": False, "error": type(exc).__name__, "details": _error_text(exc)})
    sys.exit(1)


def _config(ctx: click.Context) -> RelayerConfig:
    return ctx.obj["config"]


@contextmanager
def _ledger(config: RelayerConfig) -> Iterator[LedgerDB]:
    ledger = LedgerDB(config.ledger_db_path)
    try:
        yield ledger
    finally:
        ledger.close()


@contextmanager
def _queue(config: RelayerConfig) -> Iterator[JobQueueDB]:
    queue_db = JobQueueDB(config.queue_db_path)
    try:
        yield queue_db
    finally:
        queue_db.close()


def _run_with_gateway(
    config: RelayerConfig, fn: Callable[[ExecutionGateway], Awaitable[Any]]
) -> Any:
    async def _main() -> Any:
        async with web3_from_rpc(config.require_rpc_url()) as web3:
            router = RouterClient.with_private_key(
                web3,
                config.require_router_address(),
                chain_id=config.chain_id,
                private_key=config.require_private_key(),
            )
            with _ledger(config) as ledger:
                return await fn(ExecutionGateway(ledger, router, config))

    return asyncio.run(_main())


@click.group(name="relayer", help="Custodial staking relayer.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.json (defaults to STAKING_RELAYER_CONFIG_PATH or the project root).",
)
@click.pass_context
def relayer_cli(ctx: click.Context, config_path: Path | None) -> None:
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_relayer_config(
            config_path, require_exists=config_path is not None
        )
    except (RelayerError, FileNotFoundError) as exc:
        _fail(exc)


@relayer_cli.command(name="start", help="Run the relayer daemon in the foreground.")
@click.option("--tick-seconds", type=float, default=1.0, show_default=True)
@click.option("--tx-concurrency", type=int, default=4, show_default=True)
@click.option("--sync-interval-seconds", type=float, default=300.0, show_default=True)
@click.option("--start-block", type=int, default=None, help="Replay router events from this block.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def start_cmd(
    ctx: click.Context,
    tick_seconds: float,
    tx_concurrency: int,
    sync_interval_seconds: float,
    start_block: int | None,
    log_level: str,
) -> None:
    logger.remove()
    logger.add(sys.stderr, level=str(log_level).upper())

    daemon = RelayerDaemon(
        _config(ctx),
        log_level=log_level,
        tick_seconds=tick_seconds,
        sync_interval_s=sync_interval_seconds,
        tx_concurrency=tx_concurrency,
        start_block=start_block,
    )
    try:
        asyncio.run(daemon.run())
    except RelayerError as exc:
        _fail(exc)


@relayer_cli.command(
    name="sync-options", help="Enqueue an ad hoc options update (or run it inline)."
)
@click.option("--inline", is_flag=True, help="Run the sync now instead of enqueueing it.")
@click.pass_context
def sync_options_cmd(ctx: click.Context, inline: bool) -> None:
    config = _config(ctx)
    if not inline:
        with _queue(config) as queue_db:
            job_id = queue_db.enqueue(OPTIONS_QUEUE, JOB_MANUAL_UPDATE, {})
        _echo_json({"ok": True, "result": {"job_id": job_id, "queue": OPTIONS_QUEUE}})
        return

    async def _main() -> dict[str, Any]:
        client = YieldsClient(base_url=config.yields_api_url)
        try:
            with _ledger(config) as ledger:
                registry = AdapterRegistry.from_config(config)
                sync = OptionsSynchronizer(
                    ledger,
                    registry,
                    MarketDataFetcher(client, registry),
                    network=config.network,
                )
                return await sync.run()
        finally:
            await client.close()

    _echo_json({"ok": True, "result": asyncio.run(_main())})


@relayer_cli.command(name="jobs", help="List queued jobs.")
@click.option("--queue", "queue_name", default=None)
@click.option("--status", default=None, help="WAITING, ACTIVE, COMPLETED or FAILED")
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def jobs_cmd(
    ctx: click.Context, queue_name: str | None, status: str | None, limit: int
) -> None:
    try:
        with _queue(_config(ctx)) as queue_db:
            jobs = queue_db.list_jobs(queue=queue_name, status=status, limit=limit)
            counts = queue_db.counts()
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json(
        {"ok": True, "result": {"counts": counts, "jobs": [j.to_dict() for j in jobs]}}
    )


@relayer_cli.command(name="retry-job", help="Put a FAILED job back on its queue.")
@click.argument("job_id", type=int)
@click.pass_context
def retry_job_cmd(ctx: click.Context, job_id: int) -> None:
    try:
        with _queue(_config(ctx)) as queue_db:
            job = queue_db.retry_job(job_id)
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": job.to_dict()})


@relayer_cli.command(name="options", help="List staking options for the active network.")
@click.option("--token", default=None)
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive options.")
@click.pass_context
def options_cmd(ctx: click.Context, token: str | None, include_inactive: bool) -> None:
    config = _config(ctx)
    with _ledger(config) as ledger:
        options = ledger.list_options(
            network=config.network, token=token, active_only=not include_inactive
        )
    _echo_json({"ok": True, "result": [o.to_dict() for o in options]})


@relayer_cli.command(name="option-create", help="Create a staking option by hand.")
@click.option("--protocol", required=True)
@click.option("--token", required=True)
@click.option("--apy", type=float, required=True)
@click.option("--tvl-usd", type=float, required=True)
@click.option(
    "--risk",
    type=click.Choice([t.value for t in RiskTier], case_sensitive=False),
    default=RiskTier.MEDIUM.value,
    show_default=True,
)
@click.option("--adapter", "adapter_address", required=True)
@click.pass_context
def option_create_cmd(
    ctx: click.Context,
    protocol: str,
    token: str,
    apy: float,
    tvl_usd: float,
    risk: str,
    adapter_address: str,
) -> None:
    config = _config(ctx)
    adapter = normalize_address(adapter_address)
    if adapter is None:
        _fail(ValueError(f"Invalid adapter address: {adapter_address}"))
        return
    option = StakingOption(
        id=option_id(protocol, token, config.network),
        protocol=protocol,
        token=token.upper(),
        apy=apy,
        tvl=format_tvl(tvl_usd),
        tvl_usd=tvl_usd,
        risk=RiskTier(risk),
        adapter_address=adapter,
        network=config.network,
    )
    try:
        with _ledger(config) as ledger:
            created = ledger.create_option(option)
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": created.to_dict()})


@relayer_cli.command(name="option-set-active", help="Activate or deactivate an option.")
@click.argument("option_id_arg", metavar="OPTION_ID")
@click.option("--active/--inactive", default=True, show_default=True)
@click.pass_context
def option_set_active_cmd(ctx: click.Context, option_id_arg: str, active: bool) -> None:
    try:
        with _ledger(_config(ctx)) as ledger:
            option = ledger.set_option_active(option_id_arg, active)
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": option.to_dict()})


@relayer_cli.command(name="transactions", help="List a user's staking transactions.")
@click.argument("user_address")
@click.pass_context
def transactions_cmd(ctx: click.Context, user_address: str) -> None:
    config = _config(ctx)
    with _ledger(config) as ledger:
        txs = ledger.transactions_for_user(user_address, network=config.network)
    _echo_json({"ok": True, "result": [t.to_dict() for t in txs]})


@relayer_cli.command(name="tx-status", help="Override a transaction's status.")
@click.argument("tx_hash")
@click.argument("status")
@click.pass_context
def tx_status_cmd(ctx: click.Context, tx_hash: str, status: str) -> None:
    try:
        with _ledger(_config(ctx)) as ledger:
            tx = ledger.update_transaction_status(tx_hash, status)
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": tx.to_dict()})


@relayer_cli.command(name="login", help="Record a user login (creates the profile).")
@click.argument("address")
@click.pass_context
def login_cmd(ctx: click.Context, address: str) -> None:
    if normalize_address(address) is None:
        _fail(ValueError(f"Invalid address: {address}"))
        return
    with _ledger(_config(ctx)) as ledger:
        user = ledger.touch_user(address)
    _echo_json({"ok": True, "result": user.to_dict()})


@relayer_cli.command(name="user", help="Show a user profile.")
@click.argument("address")
@click.pass_context
def user_cmd(ctx: click.Context, address: str) -> None:
    with _ledger(_config(ctx)) as ledger:
        user = ledger.get_user(address)
    if user is None:
        _fail(KeyError(f"User not found: {address}"))
        return
    _echo_json({"ok": True, "result": user.to_dict()})


@relayer_cli.command(name="quote", help="Quote the router fee for a stake.")
@click.argument("token")
@click.argument("amount")
@click.argument("option_id_arg", metavar="OPTION_ID")
@click.pass_context
def quote_cmd(ctx: click.Context, token: str, amount: str, option_id_arg: str) -> None:
    try:
        quote = _run_with_gateway(
            _config(ctx), lambda gw: gw.quote(token, amount, option_id_arg)
        )
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": quote.to_dict()})


@relayer_cli.command(name="stake", help="Stake AMOUNT (smallest unit) of TOKEN for USER.")
@click.argument("user_address")
@click.argument("token")
@click.argument("amount")
@click.argument("option_id_arg", metavar="OPTION_ID")
@click.pass_context
def stake_cmd(
    ctx: click.Context, user_address: str, token: str, amount: str, option_id_arg: str
) -> None:
    try:
        result = _run_with_gateway(
            _config(ctx),
            lambda gw: gw.execute_stake(user_address, token, amount, option_id_arg),
        )
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": result.to_dict()})


@relayer_cli.command(name="unstake", help="Unstake AMOUNT (smallest unit) of TOKEN for USER.")
@click.argument("user_address")
@click.argument("token")
@click.argument("amount")
@click.argument("option_id_arg", metavar="OPTION_ID")
@click.pass_context
def unstake_cmd(
    ctx: click.Context, user_address: str, token: str, amount: str, option_id_arg: str
) -> None:
    try:
        result = _run_with_gateway(
            _config(ctx),
            lambda gw: gw.execute_unstake(user_address, token, amount, option_id_arg),
        )
    except _HANDLED as exc:
        _fail(exc)
        return
    _echo_json({"ok": True, "result": result})
