from __future__ import annotations

import asyncio
import signal
import time

from loguru import logger

from staking_relayer import __version__
from staking_relayer.chain.router import RouterClient
from staking_relayer.core.clients.YieldsClient import YieldsClient
from staking_relayer.core.config import RelayerConfig
from staking_relayer.core.constants.base import OPTIONS_SYNC_INTERVAL_S
from staking_relayer.core.utils.tokens import TokenTable
from staking_relayer.core.utils.web3 import close_web3, get_web3
from staking_relayer.jobqueue.constants import (
    JOB_INITIAL_UPDATE,
    JOB_UPDATE_OPTIONS,
    OPTIONS_QUEUE,
    TRANSACTION_QUEUE,
)
from staking_relayer.jobqueue.db import JobQueueDB
from staking_relayer.jobqueue.worker import QueueWorker
from staking_relayer.jobs.options_sync import OptionsSynchronizer
from staking_relayer.jobs.reconciler import TransactionReconciler
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.listener.watcher import ChainEventWatcher, RouterEventSource
from staking_relayer.market_data.fetcher import MarketDataFetcher
from staking_relayer.registry.adapter_registry import AdapterRegistry


class RelayerDaemon:
    """One asyncio process: chain watcher, two queue workers and the scheduler."""

    def __init__(
        self,
        config: RelayerConfig,
        *,
        log_level: str = "INFO",
        tick_seconds: float = 1.0,
        sync_interval_s: float = OPTIONS_SYNC_INTERVAL_S,
        tx_concurrency: int = 4,
        status_every_s: float = 60.0,
        start_block: int | None = None,
        router: RouterEventSource | None = None,
        yields_client: YieldsClient | None = None,
        watcher_poll_interval_s: float | None = None,
    ) -> None:
        self.config = config
        self._log_level = str(log_level).upper()
        self._tick_seconds = float(tick_seconds)
        self._sync_interval_s = float(sync_interval_s)
        self._tx_concurrency = int(tx_concurrency)
        self._status_every_s = float(status_every_s)
        self._start_block = start_block
        self._router = router
        self._yields_client = yields_client
        self._watcher_poll_interval_s = watcher_poll_interval_s

        self._stop = asyncio.Event()
        self._log_sink_id: int | None = None
        self.watcher: ChainEventWatcher | None = None

    def stop(self) -> None:
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                continue

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                continue

    def _on_signal(self, sig: int) -> None:
        logger.info(f"Received signal {sig}; shutting down")
        self.stop()

    def _add_log_sink(self) -> None:
        logs_dir = self.config.logs_dir
        log_path = logs_dir / "relayer-daemon.log"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            self._log_sink_id = logger.add(
                str(log_path),
                level=self._log_level,
                rotation="10 MB",
                retention="7 days",
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Failed to configure daemon log file {log_path}: {exc}")

    async def run(self) -> None:
        rpc_url = self.config.require_rpc_url()
        router_address = self.config.require_router_address()
        self._add_log_sink()

        ledger = LedgerDB(self.config.ledger_db_path)
        queue_db = JobQueueDB(self.config.queue_db_path)
        web3 = None
        router = self._router
        if router is None:
            web3 = get_web3(rpc_url)
            router = RouterClient(web3, router_address, chain_id=self.config.chain_id)
        yields_client = self._yields_client or YieldsClient(
            base_url=self.config.yields_api_url
        )

        try:
            requeued = queue_db.requeue_stale_active()
            if requeued:
                logger.warning(f"Requeued {requeued} jobs left ACTIVE by a previous run")

            _, cleared = queue_db.schedule_repeating(
                OPTIONS_QUEUE, JOB_UPDATE_OPTIONS, every_seconds=self._sync_interval_s
            )
            if cleared:
                logger.info(f"Cleared {cleared} previous options schedule(s)")
            queue_db.enqueue(OPTIONS_QUEUE, JOB_INITIAL_UPDATE, {})

            registry = AdapterRegistry.from_config(self.config)
            synchronizer = OptionsSynchronizer(
                ledger,
                registry,
                MarketDataFetcher(yields_client, registry),
                network=self.config.network,
            )
            reconciler = TransactionReconciler(
                ledger, registry, network=self.config.network
            )
            watcher_kwargs = {}
            if self._watcher_poll_interval_s is not None:
                watcher_kwargs["poll_interval_s"] = self._watcher_poll_interval_s
            self.watcher = ChainEventWatcher(
                router,
                queue_db,
                TokenTable(self.config.network, self.config.tokens),
                network=self.config.network,
                start_block=self._start_block,
                **watcher_kwargs,
            )
            workers = [
                QueueWorker(
                    queue_db,
                    TRANSACTION_QUEUE,
                    reconciler.handle,
                    concurrency=self._tx_concurrency,
                ),
                QueueWorker(queue_db, OPTIONS_QUEUE, synchronizer.handle),
            ]

            self._install_signal_handlers()
            logger.info(
                f"Relayer daemon v{__version__} on {self.config.network} "
                f"(router {router_address})"
            )
            await asyncio.gather(
                self.watcher.run(self._stop),
                *(w.run(self._stop) for w in workers),
                self._scheduler(queue_db),
            )
        finally:
            self._remove_signal_handlers()
            await yields_client.close()
            if web3 is not None:
                await close_web3(web3)
            queue_db.close()
            ledger.close()
            logger.info("Relayer daemon stopped")
            if self._log_sink_id is not None:
                try:
                    logger.remove(self._log_sink_id)
                except ValueError:
                    pass
                self._log_sink_id = None

    async def _scheduler(self, queue_db: JobQueueDB) -> None:
        last_status = time.monotonic()
        while not self._stop.is_set():
            try:
                for job_id in queue_db.enqueue_due_schedules():
                    logger.debug(f"Scheduled options update enqueued as job {job_id}")
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Scheduler tick error: {exc}")

            if time.monotonic() - last_status >= self._status_every_s:
                last_status = time.monotonic()
                if self.watcher is not None:
                    logger.info(f"Watcher status: {self.watcher.status()}")
                logger.info(f"Queue counts: {queue_db.counts()}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._tick_seconds)
            except TimeoutError:
                pass
