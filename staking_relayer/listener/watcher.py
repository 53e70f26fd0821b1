from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from staking_relayer.core.constants.base import (
    WATCHER_LOG_CONCURRENCY,
    WATCHER_MAX_BLOCK_RANGE,
    WATCHER_POLL_INTERVAL_S,
    WATCHER_RECONNECT_DELAY_S,
    ZERO_ADDRESS,
)
from staking_relayer.core.constants.router_abi import STAKED_EVENT, UNSTAKED_EVENT
from staking_relayer.core.utils.tokens import TokenTable
from staking_relayer.core.utils.transaction import to_hex_hash
from staking_relayer.core.utils.units import format_units
from staking_relayer.jobqueue.constants import (
    JOB_PROCESS_STAKE,
    JOB_PROCESS_UNSTAKE,
    TRANSACTION_QUEUE,
)
from staking_relayer.jobqueue.db import JobQueueDB
from staking_relayer.jobs.payloads import StakeEventJob, UnstakeEventJob


class WatcherState(StrEnum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    BACKOFF = "BACKOFF"


class RouterEventSource(Protocol):
    async def latest_block(self) -> int: ...

    async def fetch_events(
        self, from_block: int, to_block: int
    ) -> list[tuple[str, Any]]: ...


_JOB_FOR_EVENT = {
    STAKED_EVENT: JOB_PROCESS_STAKE,
    UNSTAKED_EVENT: JOB_PROCESS_UNSTAKE,
}


class ChainEventWatcher:
    """Follow router ``Staked``/``Unstaked`` logs and enqueue one job per log.

    The block cursor survives reconnects, so an RPC outage delays events but
    never skips them. Durability starts at ``enqueue``; the watcher keeps no
    record of what it has seen beyond the cursor.
    """

    def __init__(
        self,
        source: RouterEventSource,
        queue_db: JobQueueDB,
        token_table: TokenTable,
        *,
        network: str,
        reconnect_delay_s: float = WATCHER_RECONNECT_DELAY_S,
        poll_interval_s: float = WATCHER_POLL_INTERVAL_S,
        max_block_range: int = WATCHER_MAX_BLOCK_RANGE,
        concurrency: int = WATCHER_LOG_CONCURRENCY,
        start_block: int | None = None,
    ) -> None:
        self.source = source
        self.queue_db = queue_db
        self.token_table = token_table
        self.network = network
        self.reconnect_delay_s = float(reconnect_delay_s)
        self.poll_interval_s = float(poll_interval_s)
        self.max_block_range = max(1, int(max_block_range))
        self.concurrency = max(1, int(concurrency))

        self._state = WatcherState.DISCONNECTED
        self._cursor: int | None = (
            int(start_block) - 1 if start_block is not None else None
        )
        self.reconnects = 0
        self.last_error: str | None = None
        self.last_poll_at: int | None = None
        self.enqueued = 0
        self.dropped = 0
        self.logger = logger.bind(component="ChainEventWatcher")

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def cursor(self) -> int | None:
        return self._cursor

    def status(self) -> dict[str, Any]:
        return {
            "state": str(self._state),
            "last_block": self._cursor,
            "reconnects": self.reconnects,
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at,
            "enqueued": self.enqueued,
            "dropped": self.dropped,
        }

    async def connect(self) -> None:
        self._state = WatcherState.CONNECTING
        head = await self.source.latest_block()
        if self._cursor is None:
            self._cursor = int(head)
        self._state = WatcherState.CONNECTED
        self.logger.info(f"Watching router events from block {self._cursor + 1}")

    async def poll_once(self) -> int:
        """Fetch the next block range and enqueue its events. Returns jobs enqueued."""
        head = int(await self.source.latest_block())
        self.last_poll_at = int(time.time())
        if self._cursor is None:
            self._cursor = head
            return 0
        if head <= self._cursor:
            return 0

        from_block = self._cursor + 1
        to_block = min(head, self._cursor + self.max_block_range)
        events = await self.source.fetch_events(from_block, to_block)
        enqueued = await self.handle_events(events)
        self._cursor = to_block
        if events:
            self.logger.debug(
                f"Blocks {from_block}-{to_block}: {len(events)} events, {enqueued} enqueued"
            )
        return enqueued

    async def handle_events(self, events: list[tuple[str, Any]]) -> int:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(event_name: str, log: Any) -> bool:
            async with semaphore:
                try:
                    return self._enqueue_event(event_name, log)
                except Exception as exc:  # noqa: BLE001
                    self.logger.error(f"Failed to enqueue {event_name} log: {exc}")
                    return False

        results = await asyncio.gather(
            *(_guarded(name, log) for name, log in events)
        )
        count = sum(1 for ok in results if ok)
        self.enqueued += count
        return count

    def _enqueue_event(self, event_name: str, log: Any) -> bool:
        job_name = _JOB_FOR_EVENT.get(event_name)
        if job_name is None:
            return False

        args: Mapping[str, Any] = log.get("args") or {}
        user = args.get("user")
        token = args.get("token")
        amount = args.get("amount")
        raw_hash = log.get("transactionHash")
        if user is None or token is None or amount is None or raw_hash is None:
            self.dropped += 1
            self.logger.warning(
                f"Dropping {event_name} log missing user/token/amount: {dict(args)}"
            )
            return False

        tx_hash = to_hex_hash(raw_hash)
        meta = self.token_table.resolve(token)
        block_number = log.get("blockNumber")
        fields = {
            "tx_hash": tx_hash,
            "user_address": str(user).lower(),
            "token": meta.symbol,
            "token_address": str(token).lower(),
            "adapter_address": str(args.get("adapter") or ZERO_ADDRESS).lower(),
            "amount": format_units(int(amount), meta.decimals),
            "block_number": int(block_number) if block_number is not None else None,
            "network": self.network,
        }
        if job_name == JOB_PROCESS_STAKE:
            fee = format_units(int(args.get("fee") or 0), meta.decimals)
            payload = StakeEventJob(**fields, fee=fee).model_dump()
        else:
            payload = UnstakeEventJob(**fields).model_dump()

        job_id = self.queue_db.enqueue(
            TRANSACTION_QUEUE, job_name, payload, job_key=f"{job_name}:{tx_hash}"
        )
        self.logger.info(
            f"{event_name} {fields['amount']} {meta.symbol} by {fields['user_address']} "
            f"(tx {tx_hash}) -> job {job_id}"
        )
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set, reconnecting forever on errors."""
        while not stop_event.is_set():
            try:
                if self._state != WatcherState.CONNECTED:
                    await self.connect()
                await self.poll_once()
                wait_s = self.poll_interval_s
            except Exception as exc:  # noqa: BLE001
                self._state = WatcherState.BACKOFF
                self.reconnects += 1
                self.last_error = str(exc)
                self.logger.warning(
                    f"Watcher error, reconnecting in {self.reconnect_delay_s:.0f}s: {exc}"
                )
                wait_s = self.reconnect_delay_s

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait_s)
            except TimeoutError:
                pass
            if self._state == WatcherState.BACKOFF:
                self._state = WatcherState.DISCONNECTED

        self._state = WatcherState.DISCONNECTED
        self.logger.info("Watcher stopped")
