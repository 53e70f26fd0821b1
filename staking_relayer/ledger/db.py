from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Iterable
from pathlib import Path

from staking_relayer.ledger.constants import (
    RiskTier,
    StakeOutcome,
    TxStatus,
    UnstakeOutcome,
)
from staking_relayer.ledger.models import StakingOption, StakingTransaction, User


def _utc_epoch_s() -> int:
    return int(time.time())


def _option_from_row(row: sqlite3.Row) -> StakingOption:
    return StakingOption(
        id=str(row["id"]),
        protocol=str(row["protocol"]),
        token=str(row["token"]),
        apy=float(row["apy"]),
        tvl=str(row["tvl"]),
        tvl_usd=float(row["tvl_usd"]),
        risk=RiskTier(row["risk"]),
        adapter_address=str(row["adapter_address"]),
        network=str(row["network"]),
        is_active=bool(row["is_active"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def _transaction_from_row(row: sqlite3.Row) -> StakingTransaction:
    return StakingTransaction(
        tx_hash=str(row["tx_hash"]),
        user_address=str(row["user_address"]),
        token=str(row["token"]),
        token_address=str(row["token_address"]),
        amount=str(row["amount"]),
        protocol=str(row["protocol"]),
        adapter_address=str(row["adapter_address"]),
        status=TxStatus(row["status"]),
        fee=str(row["fee"]),
        network=str(row["network"]),
        block_number=int(row["block_number"])
        if row["block_number"] is not None
        else None,
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
        unstake_tx_hash=str(row["unstake_tx_hash"])
        if row["unstake_tx_hash"] is not None
        else None,
        unstaked_at=int(row["unstaked_at"]) if row["unstaked_at"] is not None else None,
    )


class LedgerDB:
    """Options catalog, transaction ledger and user profiles.

    Every mutation that can race between the execution gateway and the
    reconciler is a single conditional statement (or guarded by a unique
    constraint), so concurrent or repeated application converges on one row
    per tx hash even across processes sharing the file.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # autocommit
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              address TEXT PRIMARY KEY,
              created_at INTEGER NOT NULL,
              last_login_at INTEGER
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS options (
              id TEXT PRIMARY KEY,
              protocol TEXT NOT NULL,
              token TEXT NOT NULL,
              apy REAL NOT NULL,
              tvl TEXT NOT NULL,
              tvl_usd REAL NOT NULL,
              risk TEXT NOT NULL,
              adapter_address TEXT NOT NULL,
              network TEXT NOT NULL,
              is_active INTEGER NOT NULL DEFAULT 1,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              tx_hash TEXT NOT NULL UNIQUE,
              user_address TEXT NOT NULL,
              token TEXT NOT NULL,
              token_address TEXT NOT NULL,
              amount TEXT NOT NULL,
              protocol TEXT NOT NULL,
              adapter_address TEXT NOT NULL,
              status TEXT NOT NULL,
              fee TEXT NOT NULL,
              network TEXT NOT NULL,
              block_number INTEGER,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              unstake_tx_hash TEXT UNIQUE,
              unstaked_at INTEGER,
              FOREIGN KEY(user_address) REFERENCES users(address)
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_options_network_active ON options(network, is_active);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_tx_open_positions ON transactions(user_address, token, status);"
        )

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _ensure_user(cur: sqlite3.Cursor, address: str, now: int) -> None:
        cur.execute(
            "INSERT OR IGNORE INTO users(address, created_at, last_login_at) VALUES (?, ?, NULL)",
            (address, now),
        )

    def touch_user(self, address: str) -> User:
        """Login upsert keyed by lowercase address."""
        addr = str(address).strip().lower()
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO users(address, created_at, last_login_at) VALUES (?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET last_login_at = excluded.last_login_at
                """,
                (addr, now, now),
            )
            cur.execute("SELECT * FROM users WHERE address = ?", (addr,))
            row = cur.fetchone()
        return User(
            address=str(row["address"]),
            created_at=int(row["created_at"]),
            last_login_at=int(row["last_login_at"]),
        )

    def get_user(self, address: str) -> User | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT * FROM users WHERE address = ?", (str(address).strip().lower(),)
            )
            row = cur.fetchone()
        if row is None:
            return None
        return User(
            address=str(row["address"]),
            created_at=int(row["created_at"]),
            last_login_at=int(row["last_login_at"])
            if row["last_login_at"] is not None
            else None,
        )

    # -- options -------------------------------------------------------------

    def upsert_option(self, option: StakingOption) -> bool:
        """Insert or refresh an option and mark it active. Returns True if created."""
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE options
                SET apy = ?, tvl = ?, tvl_usd = ?, risk = ?, adapter_address = ?,
                    is_active = 1, updated_at = ?
                WHERE id = ?
                """,
                (
                    float(option.apy),
                    option.tvl,
                    float(option.tvl_usd),
                    str(option.risk),
                    option.adapter_address,
                    now,
                    option.id,
                ),
            )
            if cur.rowcount:
                return False
            self._insert_option(cur, option, now)
            return True

    def create_option(self, option: StakingOption) -> StakingOption:
        """Administrative insert; refuses to overwrite an existing id."""
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            try:
                self._insert_option(cur, option, now)
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Option already exists: {option.id}") from exc
        created = self.get_option(option.id)
        assert created is not None
        return created

    @staticmethod
    def _insert_option(cur: sqlite3.Cursor, option: StakingOption, now: int) -> None:
        cur.execute(
            """
            INSERT INTO options(id, protocol, token, apy, tvl, tvl_usd, risk,
                                adapter_address, network, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                option.id,
                option.protocol,
                option.token.upper(),
                float(option.apy),
                option.tvl,
                float(option.tvl_usd),
                str(option.risk),
                option.adapter_address,
                option.network,
                1 if option.is_active else 0,
                now,
                now,
            ),
        )

    def get_option(self, option_id: str) -> StakingOption | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT * FROM options WHERE id = ?", (str(option_id),))
            row = cur.fetchone()
        return _option_from_row(row) if row is not None else None

    def list_options(
        self,
        *,
        network: str | None = None,
        token: str | None = None,
        active_only: bool = False,
    ) -> list[StakingOption]:
        clauses: list[str] = []
        params: list[object] = []
        if network is not None:
            clauses.append("network = ?")
            params.append(network)
        if token is not None:
            clauses.append("token = ?")
            params.append(str(token).strip().upper())
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"SELECT * FROM options {where} ORDER BY apy DESC, id ASC", params
            )
            rows = cur.fetchall()
        return [_option_from_row(r) for r in rows]

    def active_options(
        self, *, token: str | None = None, network: str | None = None
    ) -> list[StakingOption]:
        return self.list_options(network=network, token=token, active_only=True)

    def deactivate_options_except(self, *, network: str, keep_ids: Iterable[str]) -> int:
        keep = sorted(set(keep_ids))
        now = _utc_epoch_s()
        placeholders = ", ".join("?" for _ in keep)
        not_in = f"AND id NOT IN ({placeholders})" if keep else ""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"""
                UPDATE options SET is_active = 0, updated_at = ?
                WHERE network = ? AND is_active = 1 {not_in}
                """,
                (now, network, *keep),
            )
            return int(cur.rowcount or 0)

    def set_option_active(self, option_id: str, active: bool) -> StakingOption:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE options SET is_active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, _utc_epoch_s(), str(option_id)),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Option not found: {option_id}")
        option = self.get_option(option_id)
        assert option is not None
        return option

    # -- transactions --------------------------------------------------------

    def _insert_transaction(
        self, cur: sqlite3.Cursor, tx: StakingTransaction, status: TxStatus, now: int
    ) -> bool:
        user = tx.user_address.lower()
        self._ensure_user(cur, user, now)
        cur.execute(
            """
            INSERT INTO transactions(tx_hash, user_address, token, token_address, amount,
                                     protocol, adapter_address, status, fee, network,
                                     block_number, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash) DO NOTHING
            """,
            (
                tx.tx_hash.lower(),
                user,
                tx.token.upper(),
                tx.token_address.lower(),
                tx.amount,
                tx.protocol,
                tx.adapter_address.lower(),
                str(status),
                tx.fee,
                tx.network,
                tx.block_number,
                int(tx.created_at or now),
                now,
            ),
        )
        return bool(cur.rowcount)

    def record_pending_stake(self, tx: StakingTransaction) -> bool:
        """Optimistic write after broadcast. A row that already exists wins."""
        with self._lock:
            return self._insert_transaction(
                self._conn.cursor(), tx, TxStatus.PENDING, _utc_epoch_s()
            )

    def confirm_stake(self, tx: StakingTransaction) -> StakeOutcome:
        """Create-or-confirm by tx hash.

        Only ``pending`` is promoted; ``confirmed`` is a no-op and a row that
        already moved on (``unstaked``/``failed``) is left untouched.
        """
        tx_hash = tx.tx_hash.lower()
        now = _utc_epoch_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE transactions
                SET status = ?, block_number = COALESCE(?, block_number), updated_at = ?
                WHERE tx_hash = ? AND status = ?
                """,
                (TxStatus.CONFIRMED, tx.block_number, now, tx_hash, TxStatus.PENDING),
            )
            if cur.rowcount:
                return StakeOutcome.CONFIRMED
            if self._insert_transaction(cur, tx, TxStatus.CONFIRMED, now):
                return StakeOutcome.CREATED
            cur.execute("SELECT status FROM transactions WHERE tx_hash = ?", (tx_hash,))
            row = cur.fetchone()
        if row is not None and row["status"] == TxStatus.CONFIRMED:
            return StakeOutcome.ALREADY_CONFIRMED
        return StakeOutcome.UNCHANGED

    def mark_failed(self, tx_hash: str) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE tx_hash = ? AND status = ?",
                (TxStatus.FAILED, _utc_epoch_s(), tx_hash.lower(), TxStatus.PENDING),
            )
            return bool(cur.rowcount)

    def mark_unstaked(
        self,
        *,
        user_address: str,
        token: str,
        unstake_tx_hash: str,
        unstaked_at: int | None = None,
        protocol: str | None = None,
    ) -> tuple[UnstakeOutcome, StakingTransaction | None]:
        """Close the most recent confirmed stake for (user, token[, protocol])."""
        unstake_hash = unstake_tx_hash.lower()
        now = _utc_epoch_s()
        params: list[object] = [
            TxStatus.UNSTAKED,
            unstake_hash,
            int(unstaked_at or now),
            now,
            user_address.lower(),
            token.upper(),
            TxStatus.CONFIRMED,
        ]
        protocol_clause = ""
        if protocol is not None:
            protocol_clause = "AND protocol = ?"
            params.append(protocol)

        with self._lock:
            cur = self._conn.cursor()
            existing = self._by_unstake_hash(cur, unstake_hash)
            if existing is not None:
                return UnstakeOutcome.ALREADY_APPLIED, existing
            try:
                cur.execute(
                    f"""
                    UPDATE transactions
                    SET status = ?, unstake_tx_hash = ?, unstaked_at = ?, updated_at = ?
                    WHERE id = (
                      SELECT id FROM transactions
                      WHERE user_address = ? AND token = ? AND status = ? {protocol_clause}
                      ORDER BY created_at DESC, id DESC
                      LIMIT 1
                    )
                    """,
                    params,
                )
            except sqlite3.IntegrityError:
                # another writer attached this unstake hash first
                return UnstakeOutcome.ALREADY_APPLIED, self._by_unstake_hash(
                    cur, unstake_hash
                )
            if not cur.rowcount:
                return UnstakeOutcome.NO_MATCH, None
            return UnstakeOutcome.APPLIED, self._by_unstake_hash(cur, unstake_hash)

    @staticmethod
    def _by_unstake_hash(
        cur: sqlite3.Cursor, unstake_hash: str
    ) -> StakingTransaction | None:
        cur.execute(
            "SELECT * FROM transactions WHERE unstake_tx_hash = ?", (unstake_hash,)
        )
        row = cur.fetchone()
        return _transaction_from_row(row) if row is not None else None

    def update_transaction_status(
        self, tx_hash: str, status: str
    ) -> StakingTransaction:
        """Administrative status override."""
        try:
            new_status = TxStatus(str(status).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Invalid transaction status: {status}") from exc
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE tx_hash = ?",
                (new_status, _utc_epoch_s(), tx_hash.lower()),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Transaction not found: {tx_hash}")
        tx = self.get_transaction(tx_hash)
        assert tx is not None
        return tx

    def get_transaction(self, tx_hash: str) -> StakingTransaction | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT * FROM transactions WHERE tx_hash = ?", (tx_hash.lower(),)
            )
            row = cur.fetchone()
        return _transaction_from_row(row) if row is not None else None

    def transactions_for_user(
        self, user_address: str, *, network: str | None = None
    ) -> list[StakingTransaction]:
        params: list[object] = [user_address.lower()]
        network_clause = ""
        if network is not None:
            network_clause = "AND network = ?"
            params.append(network)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"""
                SELECT * FROM transactions
                WHERE user_address = ? {network_clause}
                ORDER BY created_at DESC, id DESC
                """,
                params,
            )
            rows = cur.fetchall()
        return [_transaction_from_row(r) for r in rows]

    def count_transactions(self) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT COUNT(*) AS n FROM transactions")
            return int(cur.fetchone()["n"])
