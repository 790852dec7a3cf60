import os
import sqlite3
import threading
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .errors import StoreError
from .models import (
    CANCELLED,
    COMPLETED,
    DEFAULTS,
    FAILED,
    IN_FLIGHT,
    PENDING,
    PROCESSING,
    STATUSES,
    TERMINAL,
    Job,
)
from .utils import dumps, to_iso

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs(
  id TEXT PRIMARY KEY,
  queue TEXT NOT NULL DEFAULT 'default',
  type TEXT NOT NULL,
  payload TEXT,
  priority INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 3,
  error TEXT,
  result TEXT,
  scheduled_at TEXT NOT NULL,
  started_at TEXT,
  completed_at TEXT,
  failed_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs(queue, status);
CREATE INDEX IF NOT EXISTS idx_jobs_scheduled ON jobs(scheduled_at);
CREATE INDEX IF NOT EXISTS idx_jobs_priority ON jobs(priority DESC);
CREATE TABLE IF NOT EXISTS config(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""

_INSERT = """
INSERT INTO jobs(id,queue,type,payload,priority,status,attempts,max_attempts,error,result,
                 scheduled_at,started_at,completed_at,failed_at,created_at,updated_at)
VALUES(:id,:queue,:type,:payload,:priority,:status,:attempts,:max_attempts,:error,:result,
       :scheduled_at,:started_at,:completed_at,:failed_at,:created_at,:updated_at)
"""


def default_db_path() -> Path:
    home = Path(os.environ.get("JOBQUEUE_HOME", Path.home() / ".jobqueue"))
    home.mkdir(parents=True, exist_ok=True)
    return home / "jobs.db"


def with_conn(fn):
    """Run a store method on this thread's connection, surfacing sqlite errors as StoreError."""
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, self.get_conn(), *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreError(f"{fn.__name__} failed: {e}") from e
    return wrapper


def _job_params(job: Job) -> Dict[str, object]:
    return {
        "id": job.id,
        "queue": job.queue,
        "type": job.type,
        "payload": dumps(job.payload),
        "priority": int(job.priority),
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "error": job.error,
        "result": dumps(job.result) if job.result is not None else None,
        "scheduled_at": to_iso(job.scheduled_at),
        "started_at": to_iso(job.started_at),
        "completed_at": to_iso(job.completed_at),
        "failed_at": to_iso(job.failed_at),
        "created_at": to_iso(job.created_at),
        "updated_at": to_iso(job.updated_at),
    }


def _in(values: Iterable[str]) -> str:
    return ",".join(f"'{v}'" for v in values)


class JobStore:
    """SQLite-backed job table. One connection per thread, WAL journal."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path) if path is not None else default_db_path()
        self._local = threading.local()

    def get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.path, timeout=30)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self.init_db(conn)
        return conn

    def close_thread_conn(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def init_db(self, conn: sqlite3.Connection):
        conn.executescript(SCHEMA)
        for k, v in DEFAULTS.items():
            conn.execute(
                "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
                (k, str(v)),
            )
        conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")
        conn.commit()

    # ---------- Jobs: insert / read ----------
    @with_conn
    def insert_job(self, conn, job: Job) -> None:
        conn.execute(_INSERT, _job_params(job))
        conn.commit()

    @with_conn
    def insert_unique(self, conn, job: Job) -> Tuple[str, bool]:
        """Insert a deduplicated job; returns (id, inserted).

        A row with the same id that is still pending/processing wins. A
        terminal row is replaced in place by the new submission.
        """
        conn.execute("BEGIN IMMEDIATE")
        try:
            existing = conn.execute(
                f"SELECT id FROM jobs WHERE id=? AND status IN ({_in(IN_FLIGHT)})",
                (job.id,),
            ).fetchone()
            if existing:
                conn.execute("COMMIT")
                return existing["id"], False
            cur = conn.execute(
                _INSERT
                + f"""ON CONFLICT(id) DO UPDATE SET
                        queue=excluded.queue, type=excluded.type, payload=excluded.payload,
                        priority=excluded.priority, status=excluded.status,
                        attempts=excluded.attempts, max_attempts=excluded.max_attempts,
                        error=NULL, result=NULL, scheduled_at=excluded.scheduled_at,
                        started_at=NULL, completed_at=NULL, failed_at=NULL,
                        created_at=excluded.created_at, updated_at=excluded.updated_at
                      WHERE jobs.status IN ({_in(TERMINAL)})""",
                _job_params(job),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.rollback()
            raise
        return job.id, cur.rowcount == 1

    @with_conn
    def get_job(self, conn, job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    @with_conn
    def list_jobs(self, conn, queue: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> List[Job]:
        clauses, params = [], []
        if queue:
            clauses.append("queue=?")
            params.append(queue)
        if status:
            if status not in STATUSES:
                raise ValueError(f"Unknown status {status!r}; expected one of {', '.join(STATUSES)}")
            clauses.append("status=?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (*params, int(limit)),
        ).fetchall()
        return [Job.from_row(r) for r in rows]

    @with_conn
    def list_eligible(self, conn, queue: str, limit: int, now: datetime) -> List[Job]:
        """Pending jobs due at `now`, highest priority first, FIFO within a priority."""
        if limit <= 0:
            return []
        rows = conn.execute(
            """
            SELECT * FROM jobs
             WHERE queue=? AND status=? AND scheduled_at <= ?
             ORDER BY priority DESC, created_at ASC, rowid ASC
             LIMIT ?
            """,
            (queue, PENDING, to_iso(now), int(limit)),
        ).fetchall()
        return [Job.from_row(r) for r in rows]

    # ---------- Jobs: state transitions ----------
    @with_conn
    def claim(self, conn, job_id: str, now: datetime) -> Optional[Job]:
        """pending -> processing, counting the attempt. None if the job is no longer pending."""
        ts = to_iso(now)
        cur = conn.execute(
            """UPDATE jobs
                  SET status=?, started_at=?, attempts=attempts+1, updated_at=?
                WHERE id=? AND status=? AND attempts < max_attempts""",
            (PROCESSING, ts, ts, job_id, PENDING),
        )
        conn.commit()
        if cur.rowcount != 1:
            return None
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row)

    @with_conn
    def mark_completed(self, conn, job_id: str, result: Optional[str], now: datetime) -> bool:
        ts = to_iso(now)
        cur = conn.execute(
            "UPDATE jobs SET status=?, completed_at=?, result=?, updated_at=? WHERE id=? AND status=?",
            (COMPLETED, ts, result, ts, job_id, PROCESSING),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def mark_retry(self, conn, job_id: str, error: str, next_run: datetime, now: datetime) -> bool:
        # MAX() keeps scheduled_at from moving backwards across retries
        cur = conn.execute(
            """UPDATE jobs
                  SET status=?, scheduled_at=MAX(scheduled_at, ?), error=?, updated_at=?
                WHERE id=? AND status=?""",
            (PENDING, to_iso(next_run), error, to_iso(now), job_id, PROCESSING),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def mark_failed(self, conn, job_id: str, error: str, now: datetime) -> bool:
        ts = to_iso(now)
        cur = conn.execute(
            "UPDATE jobs SET status=?, failed_at=?, error=?, updated_at=? WHERE id=? AND status=?",
            (FAILED, ts, error, ts, job_id, PROCESSING),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def cancel(self, conn, job_id: str, now: datetime) -> bool:
        cur = conn.execute(
            "UPDATE jobs SET status=?, updated_at=? WHERE id=? AND status=?",
            (CANCELLED, to_iso(now), job_id, PENDING),
        )
        conn.commit()
        return cur.rowcount == 1

    @with_conn
    def recover_processing(self, conn, started_before: datetime, now: datetime, exclude: Iterable[str] = ()) -> Tuple[int, int]:
        """Return orphaned 'processing' rows to the queue; returns (requeued, failed)."""
        skip = set(exclude)
        rows = conn.execute(
            "SELECT id, attempts, max_attempts FROM jobs WHERE status=? AND started_at < ?",
            (PROCESSING, to_iso(started_before)),
        ).fetchall()
        ts = to_iso(now)
        requeued = failed = 0
        for row in rows:
            if row["id"] in skip:
                continue
            if row["attempts"] < row["max_attempts"]:
                cur = conn.execute(
                    """UPDATE jobs SET status=?, scheduled_at=MAX(scheduled_at, ?), error=?, updated_at=?
                        WHERE id=? AND status=?""",
                    (PENDING, ts, "Recovered from interrupted run", ts, row["id"], PROCESSING),
                )
                requeued += cur.rowcount
            else:
                cur = conn.execute(
                    "UPDATE jobs SET status=?, failed_at=?, error=?, updated_at=? WHERE id=? AND status=?",
                    (FAILED, ts, "Interrupted on final attempt", ts, row["id"], PROCESSING),
                )
                failed += cur.rowcount
        conn.commit()
        return requeued, failed

    # ---------- Admin ----------
    @with_conn
    def queue_names(self, conn) -> List[str]:
        """Every queue that has at least one stored job."""
        return [r[0] for r in conn.execute("SELECT DISTINCT queue FROM jobs ORDER BY queue").fetchall()]

    @with_conn
    def counts_by_status(self, conn, since: datetime, queue: Optional[str] = None) -> Dict[str, int]:
        sql = "SELECT status, COUNT(*) FROM jobs WHERE created_at > ?"
        params: list = [to_iso(since)]
        if queue is not None:
            sql += " AND queue=?"
            params.append(queue)
        counts = {s: 0 for s in STATUSES}
        for status, count in conn.execute(sql + " GROUP BY status", params).fetchall():
            counts[status] = count
        return counts

    @with_conn
    def avg_processing_ms(self, conn, queue: str, since: datetime) -> Optional[float]:
        rows = conn.execute(
            """SELECT started_at, completed_at FROM jobs
                WHERE queue=? AND status=? AND created_at > ?
                  AND started_at IS NOT NULL AND completed_at IS NOT NULL""",
            (queue, COMPLETED, to_iso(since)),
        ).fetchall()
        if not rows:
            return None
        total = timedelta()
        for r in rows:
            total += datetime.fromisoformat(r[1].replace("Z", "+00:00")) - datetime.fromisoformat(r[0].replace("Z", "+00:00"))
        return total.total_seconds() * 1000 / len(rows)

    @with_conn
    def delete_terminal_older_than(self, conn, days: float, now: datetime) -> int:
        cutoff = now - timedelta(days=days)
        cur = conn.execute(
            "DELETE FROM jobs WHERE status IN (?, ?) AND created_at < ?",
            (COMPLETED, FAILED, to_iso(cutoff)),
        )
        conn.commit()
        return cur.rowcount

    # ---------- Config ----------
    @with_conn
    def config_get(self, conn, key: str, default: Optional[str] = None) -> Optional[str]:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    @with_conn
    def config_set(self, conn, key: str, value: str) -> None:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )
        conn.commit()

    @with_conn
    def config_all(self, conn) -> Dict[str, str]:
        return {r["key"]: r["value"] for r in conn.execute("SELECT key, value FROM config ORDER BY key")}
