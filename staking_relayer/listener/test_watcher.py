import asyncio

import pytest
from hexbytes import HexBytes

from staking_relayer.core.utils.tokens import TokenTable
from staking_relayer.jobqueue.constants import TRANSACTION_QUEUE, JobStatus
from staking_relayer.jobqueue.db import JobQueueDB
from staking_relayer.listener.watcher import ChainEventWatcher, WatcherState

USER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
WETH = "0x0fe44892c3279c09654f3590cf6cedac3fc3ccdc"
WBTC = "0x8762c93f84dcb6f9782602d842a587409b7cf6cd"
ADAPTER = "0x1111111111111111111111111111111111111111"


def _log(tx_byte: str, *, block=101, **args):
    base = {"user": USER, "token": WETH, "amount": 1_500_000_000_000_000_000, "adapter": ADAPTER}
    base.update(args)
    return {
        "args": {k: v for k, v in base.items() if v is not None},
        "transactionHash": HexBytes("0x" + tx_byte * 32),
        "blockNumber": block,
        "logIndex": 0,
    }


class FakeRouter:
    def __init__(self, head=100):
        self.head = head
        self.events: dict[int, list] = {}
        self.calls: list[tuple[int, int]] = []
        self.fail_next = 0
        self.fail_connect = 0

    async def latest_block(self):
        if self.fail_connect:
            self.fail_connect -= 1
            raise ConnectionError("rpc unreachable")
        return self.head

    async def fetch_events(self, from_block, to_block):
        self.calls.append((from_block, to_block))
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("rpc dropped")
        out = []
        for block in range(from_block, to_block + 1):
            out.extend(self.events.get(block, []))
        return out


@pytest.fixture
def queue_db(tmp_path):
    db = JobQueueDB(tmp_path / "queue.db")
    yield db
    db.close()


def _watcher(router, queue_db, **kw):
    kw.setdefault("reconnect_delay_s", 0.01)
    kw.setdefault("poll_interval_s", 0.01)
    return ChainEventWatcher(router, queue_db, TokenTable("sepolia"), network="sepolia", **kw)


def _jobs(queue_db):
    return sorted(queue_db.list_jobs(queue=TRANSACTION_QUEUE), key=lambda j: j.id)


@pytest.mark.asyncio
async def test_stake_log_becomes_job(queue_db):
    router = FakeRouter()
    router.events[101] = [("Staked", _log("aa", fee=7_500_000_000_000_000))]
    watcher = _watcher(router, queue_db)
    await watcher.connect()
    router.head = 101

    assert await watcher.poll_once() == 1
    (job,) = _jobs(queue_db)
    assert job.name == "process-stake"
    assert job.status == JobStatus.WAITING
    assert job.payload["tx_hash"] == "0x" + "aa" * 32
    assert job.payload["user_address"] == USER.lower()
    assert job.payload["token"] == "WETH"
    assert job.payload["amount"] == "1.5"
    assert job.payload["fee"] == "0.0075"
    assert job.payload["adapter_address"] == ADAPTER
    assert job.payload["block_number"] == 101
    assert watcher.cursor == 101


@pytest.mark.asyncio
async def test_unstake_and_decimals_per_token(queue_db):
    router = FakeRouter()
    router.events[101] = [("Unstaked", _log("bb", token=WBTC, amount=250_000_000))]
    watcher = _watcher(router, queue_db)
    await watcher.connect()
    router.head = 101
    await watcher.poll_once()

    (job,) = _jobs(queue_db)
    assert job.name == "process-unstake"
    assert job.payload["token"] == "WBTC"
    assert job.payload["amount"] == "2.5"
    assert "fee" not in job.payload


@pytest.mark.asyncio
async def test_unknown_token_is_recorded(queue_db):
    router = FakeRouter()
    other = "0x9999999999999999999999999999999999999999"
    router.events[101] = [("Staked", _log("cc", token=other, amount=2 * 10**18))]
    watcher = _watcher(router, queue_db)
    await watcher.connect()
    router.head = 101
    await watcher.poll_once()

    (job,) = _jobs(queue_db)
    assert job.payload["token"] == "UNKNOWN"
    assert job.payload["amount"] == "2"


@pytest.mark.asyncio
async def test_incomplete_log_dropped_siblings_kept(queue_db):
    router = FakeRouter()
    router.events[101] = [
        ("Staked", _log("01", user=None)),
        ("Staked", _log("02", amount="not-a-number")),
        ("Staked", _log("03")),
    ]
    watcher = _watcher(router, queue_db)
    await watcher.connect()
    router.head = 101

    assert await watcher.poll_once() == 1
    (job,) = _jobs(queue_db)
    assert job.payload["tx_hash"] == "0x" + "03" * 32
    assert watcher.dropped == 1


@pytest.mark.asyncio
async def test_repolled_log_does_not_duplicate_waiting_job(queue_db):
    watcher = _watcher(FakeRouter(), queue_db)
    log = _log("dd")
    await watcher.handle_events([("Staked", log)])
    await watcher.handle_events([("Staked", log)])
    assert len(_jobs(queue_db)) == 1


@pytest.mark.asyncio
async def test_block_range_is_bounded(queue_db):
    router = FakeRouter(head=100)
    watcher = _watcher(router, queue_db, max_block_range=10)
    await watcher.connect()
    router.head = 125
    await watcher.poll_once()
    await watcher.poll_once()
    await watcher.poll_once()
    assert router.calls == [(101, 110), (111, 120), (121, 125)]


@pytest.mark.asyncio
async def test_start_block_overrides_head(queue_db):
    router = FakeRouter(head=100)
    watcher = _watcher(router, queue_db, start_block=90)
    await watcher.connect()
    await watcher.poll_once()
    assert router.calls == [(90, 100)]


@pytest.mark.asyncio
async def test_start_block_zero_replays_from_genesis(queue_db):
    router = FakeRouter(head=3)
    watcher = _watcher(router, queue_db, start_block=0)
    await watcher.connect()
    assert watcher.cursor == -1
    await watcher.poll_once()
    assert router.calls == [(0, 3)]


@pytest.mark.asyncio
async def test_reconnects_without_losing_cursor(queue_db):
    router = FakeRouter(head=100)
    router.fail_connect = 1
    router.fail_next = 1
    router.events[103] = [("Staked", _log("ee", block=103))]
    watcher = _watcher(router, queue_db)
    stop = asyncio.Event()

    async def _advance():
        while watcher.cursor is None:
            await asyncio.sleep(0.005)
        router.head = 105
        while not _jobs(queue_db):
            await asyncio.sleep(0.005)
        stop.set()

    await asyncio.wait_for(asyncio.gather(watcher.run(stop), _advance()), timeout=5)

    assert watcher.reconnects == 2
    assert watcher.last_error == "rpc dropped"
    # the failed range is retried from the same cursor
    assert router.calls[0] == (101, 105)
    assert router.calls[1] == (101, 105)
    assert len(_jobs(queue_db)) == 1
    assert watcher.state == WatcherState.DISCONNECTED


def test_status_snapshot(queue_db):
    watcher = _watcher(FakeRouter(), queue_db)
    status = watcher.status()
    assert status["state"] == "DISCONNECTED"
    assert status["reconnects"] == 0
    assert status["last_block"] is None
