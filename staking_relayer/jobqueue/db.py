from __future__ import annotations

import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from staking_relayer.core.utils.retry import exponential_backoff_s
from staking_relayer.jobqueue.constants import QUEUE_POLICIES, JobStatus, QueuePolicy

_DEFAULT_POLICY = QueuePolicy(
    attempts=3, backoff_base_s=1.0, keep_completed=100, keep_failed=100
)


def _now_s() -> float:
    return time.time()


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def _json_loads(text: str | None) -> Any:
    return json.loads(text) if text else None


def policy_for(queue: str) -> QueuePolicy:
    return QUEUE_POLICIES.get(queue, _DEFAULT_POLICY)


@dataclass(frozen=True)
class JobRecord:
    id: int
    queue: str
    name: str
    job_key: str | None
    payload: dict[str, Any]
    status: JobStatus
    attempts_made: int
    max_attempts: int
    backoff_base_s: float
    available_at: float
    last_error: str | None
    result: Any
    created_at: float
    updated_at: float
    finished_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "job_key": self.job_key,
            "payload": self.payload,
            "status": str(self.status),
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "available_at": self.available_at,
            "last_error": self.last_error,
            "result": self.result,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class ScheduleRow:
    id: int
    queue: str
    name: str
    payload: dict[str, Any]
    every_seconds: float
    next_run_at: float


def _job_from_row(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        id=int(row["id"]),
        queue=str(row["queue"]),
        name=str(row["name"]),
        job_key=str(row["job_key"]) if row["job_key"] is not None else None,
        payload=_json_loads(row["payload_json"]) or {},
        status=JobStatus(row["status"]),
        attempts_made=int(row["attempts_made"]),
        max_attempts=int(row["max_attempts"]),
        backoff_base_s=float(row["backoff_base_s"]),
        available_at=float(row["available_at"]),
        last_error=str(row["last_error"]) if row["last_error"] is not None else None,
        result=_json_loads(row["result_json"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        finished_at=float(row["finished_at"])
        if row["finished_at"] is not None
        else None,
    )


class JobQueueDB:
    """Durable at-least-once job queue on SQLite.

    A job is claimed by flipping WAITING -> ACTIVE in one statement; failures
    go back to WAITING with exponential backoff until ``max_attempts`` is
    reached, then stay FAILED until an operator retries them.
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
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              queue TEXT NOT NULL,
              name TEXT NOT NULL,
              job_key TEXT,
              payload_json TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts_made INTEGER NOT NULL DEFAULT 0,
              max_attempts INTEGER NOT NULL,
              backoff_base_s REAL NOT NULL,
              available_at REAL NOT NULL,
              last_error TEXT,
              result_json TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              finished_at REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schedules (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              queue TEXT NOT NULL,
              name TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              every_seconds REAL NOT NULL,
              next_run_at REAL NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue, status, available_at);"
        )
        # one open (waiting or active) job per key
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_open_key ON jobs(queue, job_key)
            WHERE job_key IS NOT NULL AND status IN ('WAITING', 'ACTIVE');
            """
        )

    # -- producers -----------------------------------------------------------

    def enqueue(
        self,
        queue: str,
        name: str,
        payload: dict[str, Any] | None = None,
        *,
        job_key: str | None = None,
        policy: QueuePolicy | None = None,
        delay_s: float = 0.0,
        now: float | None = None,
    ) -> int:
        """Add a job; returns the id of the open job already holding ``job_key`` if any."""
        policy = policy or policy_for(queue)
        ts = _now_s() if now is None else float(now)
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    """
                    INSERT INTO jobs(queue, name, job_key, payload_json, status, attempts_made,
                                     max_attempts, backoff_base_s, available_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        queue,
                        name,
                        job_key,
                        _json_dumps(payload or {}),
                        JobStatus.WAITING,
                        int(policy.attempts),
                        float(policy.backoff_base_s),
                        ts + max(0.0, float(delay_s)),
                        ts,
                        ts,
                    ),
                )
                return int(cur.lastrowid)
            except sqlite3.IntegrityError:
                cur.execute(
                    """
                    SELECT id FROM jobs
                    WHERE queue = ? AND job_key = ? AND status IN (?, ?)
                    """,
                    (queue, job_key, JobStatus.WAITING, JobStatus.ACTIVE),
                )
                row = cur.fetchone()
                if row is None:
                    raise
                return int(row["id"])

    # -- consumers -----------------------------------------------------------

    def claim_next(self, queue: str, *, now: float | None = None) -> JobRecord | None:
        ts = _now_s() if now is None else float(now)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE jobs
                SET status = ?, attempts_made = attempts_made + 1, updated_at = ?
                WHERE id = (
                  SELECT id FROM jobs
                  WHERE queue = ? AND status = ? AND available_at <= ?
                  ORDER BY available_at ASC, id ASC
                  LIMIT 1
                )
                RETURNING *
                """,
                (JobStatus.ACTIVE, ts, queue, JobStatus.WAITING, ts),
            )
            row = cur.fetchone()
        return _job_from_row(row) if row is not None else None

    def complete(self, job_id: int, result: Any = None) -> None:
        ts = _now_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE jobs
                SET status = ?, result_json = ?, last_error = NULL, updated_at = ?, finished_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus.COMPLETED,
                    _json_dumps(result) if result is not None else None,
                    ts,
                    ts,
                    int(job_id),
                ),
            )

    def fail(
        self, job_id: int, error_text: str, *, now: float | None = None
    ) -> tuple[JobStatus, float | None]:
        """Record a failed attempt.

        Returns the new status and, when the job will be retried, the backoff
        delay in seconds.
        """
        ts = _now_s() if now is None else float(now)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT attempts_made, max_attempts, backoff_base_s FROM jobs WHERE id = ?",
                (int(job_id),),
            )
            row = cur.fetchone()
            if row is None:
                raise KeyError(f"Job not found: {job_id}")
            attempts = int(row["attempts_made"])
            if attempts >= int(row["max_attempts"]):
                cur.execute(
                    """
                    UPDATE jobs SET status = ?, last_error = ?, updated_at = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (JobStatus.FAILED, str(error_text), ts, ts, int(job_id)),
                )
                return JobStatus.FAILED, None
            delay_s = exponential_backoff_s(
                attempts - 1, base_delay_s=float(row["backoff_base_s"])
            )
            cur.execute(
                """
                UPDATE jobs SET status = ?, last_error = ?, available_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.WAITING, str(error_text), ts + delay_s, ts, int(job_id)),
            )
            return JobStatus.WAITING, delay_s

    def prune(self, queue: str, *, keep_completed: int, keep_failed: int) -> int:
        removed = 0
        with self._lock:
            cur = self._conn.cursor()
            for status, keep in (
                (JobStatus.COMPLETED, keep_completed),
                (JobStatus.FAILED, keep_failed),
            ):
                cur.execute(
                    """
                    DELETE FROM jobs
                    WHERE queue = ? AND status = ? AND id NOT IN (
                      SELECT id FROM jobs WHERE queue = ? AND status = ?
                      ORDER BY finished_at DESC, id DESC
                      LIMIT ?
                    )
                    """,
                    (queue, status, queue, status, max(0, int(keep))),
                )
                removed += int(cur.rowcount or 0)
        return removed

    def requeue_stale_active(self) -> int:
        """Return jobs left ACTIVE by a crashed process to the waiting set."""
        ts = _now_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                UPDATE jobs
                SET status = ?, attempts_made = MAX(attempts_made - 1, 0),
                    available_at = ?, updated_at = ?
                WHERE status = ?
                """,
                (JobStatus.WAITING, ts, ts, JobStatus.ACTIVE),
            )
            return int(cur.rowcount or 0)

    def retry_job(self, job_id: int) -> JobRecord:
        """Manual remediation: put a FAILED job back with a fresh attempt budget."""
        ts = _now_s()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT status FROM jobs WHERE id = ?", (int(job_id),))
            row = cur.fetchone()
            if row is None:
                raise KeyError(f"Job not found: {job_id}")
            if row["status"] != JobStatus.FAILED:
                raise ValueError(f"Job {job_id} is {row['status']}, not FAILED")
            cur.execute(
                """
                UPDATE jobs
                SET status = ?, attempts_made = 0, available_at = ?, updated_at = ?,
                    finished_at = NULL
                WHERE id = ?
                """,
                (JobStatus.WAITING, ts, ts, int(job_id)),
            )
        job = self.get_job(job_id)
        assert job is not None
        return job

    # -- reads ---------------------------------------------------------------

    def get_job(self, job_id: int) -> JobRecord | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT * FROM jobs WHERE id = ?", (int(job_id),))
            row = cur.fetchone()
        return _job_from_row(row) if row is not None else None

    def list_jobs(
        self,
        *,
        queue: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if queue is not None:
            clauses.append("queue = ?")
            params.append(queue)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(JobStatus(str(status).upper())))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(f"SELECT * FROM jobs {where} ORDER BY id DESC LIMIT ?", params)
            rows = cur.fetchall()
        return [_job_from_row(r) for r in rows]

    def counts(self) -> dict[str, dict[str, int]]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT queue, status, COUNT(*) AS n FROM jobs GROUP BY queue, status"
            )
            rows = cur.fetchall()
        out: dict[str, dict[str, int]] = {}
        for r in rows:
            out.setdefault(str(r["queue"]), {})[str(r["status"])] = int(r["n"])
        return out

    # -- repeating schedules -------------------------------------------------

    def schedule_repeating(
        self,
        queue: str,
        name: str,
        *,
        every_seconds: float,
        payload: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> tuple[int, int]:
        """Replace every schedule on ``queue`` with a single repeating one.

        Returns ``(schedule_id, cleared)``; the first run is one interval out.
        """
        if every_seconds <= 0:
            raise ValueError("every_seconds must be positive")
        ts = _now_s() if now is None else float(now)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("DELETE FROM schedules WHERE queue = ?", (queue,))
            cleared = int(cur.rowcount or 0)
            cur.execute(
                """
                INSERT INTO schedules(queue, name, payload_json, every_seconds, next_run_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    queue,
                    name,
                    _json_dumps(payload or {}),
                    float(every_seconds),
                    ts + float(every_seconds),
                    ts,
                ),
            )
            return int(cur.lastrowid), cleared

    def list_schedules(self) -> list[ScheduleRow]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT * FROM schedules ORDER BY id ASC")
            rows = cur.fetchall()
        return [
            ScheduleRow(
                id=int(r["id"]),
                queue=str(r["queue"]),
                name=str(r["name"]),
                payload=_json_loads(r["payload_json"]) or {},
                every_seconds=float(r["every_seconds"]),
                next_run_at=float(r["next_run_at"]),
            )
            for r in rows
        ]

    def enqueue_due_schedules(self, *, now: float | None = None) -> list[int]:
        """Enqueue one job per due schedule and move each to its next slot."""
        ts = _now_s() if now is None else float(now)
        due = [s for s in self.list_schedules() if s.next_run_at <= ts]
        job_ids: list[int] = []
        for schedule in due:
            job_ids.append(
                self.enqueue(schedule.queue, schedule.name, schedule.payload, now=ts)
            )
            # skip missed slots rather than bursting after downtime
            next_run_at = schedule.next_run_at + schedule.every_seconds
            if next_run_at <= ts:
                next_run_at = ts + schedule.every_seconds
            with self._lock:
                self._conn.execute(
                    "UPDATE schedules SET next_run_at = ? WHERE id = ?",
                    (next_run_at, schedule.id),
                )
        return job_ids
