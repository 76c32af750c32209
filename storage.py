# storage.py
import logging
import os
import sqlite3
from contextlib import contextmanager

from models import Job, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "queue.db"

JOB_COLUMNS = (
    "id", "command", "state", "priority", "run_at", "attempts", "max_retries",
    "job_timeout", "output", "worker_id", "created_at", "updated_at",
    "processing_at", "completed_at",
)


class StorageError(Exception):
    """The job store is unreachable or rejected an operation."""


class DuplicateJobError(StorageError):
    def __init__(self, job_id):
        super().__init__(f"A job with id '{job_id}' already exists")
        self.job_id = job_id


class SQL(str):
    """A raw SQL expression used verbatim as a SET value, e.g. ``attempts + 1``."""


def normalize_key(key):
    return key.strip().replace("-", "_")


class Storage:
    def __init__(self, db_path=None):
        self.db_path = db_path or os.environ.get("QUEUECTL_DB", DEFAULT_DB_PATH)
        try:
            self.conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row

            # Better concurrency for multiple workers
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")

            self._init_schema()
        except sqlite3.Error as e:
            raise StorageError(f"cannot open job store at {self.db_path}: {e}") from e

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            command TEXT NOT NULL,
            state TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            run_at TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            job_timeout INTEGER NOT NULL DEFAULT 30000,
            output TEXT,
            worker_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            processing_at TEXT,
            completed_at TEXT
        )
        """)
        self.conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON jobs (state, priority DESC, created_at ASC)
        """)

        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.commit()

    def close(self):
        self.conn.close()

    @contextmanager
    def _write(self):
        """Run a block under SQLite's write lock, committing on success."""
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"job store unavailable: {e}") from e
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    def _read(self, query, params=()):
        try:
            return self.conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"job store read failed: {e}") from e

    # ---------------- Job writes ----------------
    def insert_job(self, job):
        row = job.as_dict()
        cols = ", ".join(JOB_COLUMNS)
        marks = ", ".join("?" for _ in JOB_COLUMNS)
        try:
            with self._write() as conn:
                conn.execute(f"INSERT INTO jobs ({cols}) VALUES ({marks})",
                             tuple(row[c] for c in JOB_COLUMNS))
        except sqlite3.IntegrityError as e:
            if "jobs.id" in str(e):
                raise DuplicateJobError(job.id) from e
            raise StorageError(f"cannot insert job '{job.id}': {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"cannot insert job '{job.id}': {e}") from e
        return job

    def find_one_and_update(self, where, params, updates, order_by="rowid"):
        """Atomically pick the first job matching ``where`` and apply ``updates``.

        Selection and update are a single statement executed under the
        database write lock, so concurrent callers can never both match the
        same row: the loser's subquery sees the winner's update and either
        picks the next job or nothing. Returns the updated Job, or None.
        """
        assignments = []
        values = []
        for column, value in updates.items():
            if column not in JOB_COLUMNS:
                raise ValueError(f"unknown job column: {column}")
            if isinstance(value, SQL):
                assignments.append(f"{column} = {value}")
            else:
                assignments.append(f"{column} = ?")
                values.append(value)

        query = f"""
            UPDATE jobs SET {", ".join(assignments)}
            WHERE rowid = (
                SELECT rowid FROM jobs WHERE {where}
                ORDER BY {order_by}
                LIMIT 1
            )
            RETURNING *
        """
        try:
            with self._write() as conn:
                rows = conn.execute(query, (*values, *params)).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"job store update failed: {e}") from e
        return Job.from_row(rows[0]) if rows else None

    def update_job(self, job_id, updates, expected_state=None):
        """Update one job by id, optionally only if it is still in ``expected_state``."""
        if expected_state is None:
            return self.find_one_and_update("id = ?", (job_id,), updates)
        return self.find_one_and_update("id = ? AND state = ?", (job_id, expected_state), updates)

    # ---------------- Job reads ----------------
    def get_job(self, job_id):
        rows = self._read("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return Job.from_row(rows[0]) if rows else None

    def list_jobs(self, state=None):
        if state:
            rows = self._read("SELECT * FROM jobs WHERE state = ? ORDER BY created_at, rowid", (state,))
        else:
            rows = self._read("SELECT * FROM jobs ORDER BY created_at, rowid")
        return [Job.from_row(r) for r in rows]

    def count_by_state(self):
        rows = self._read("SELECT state, COUNT(*) AS count FROM jobs GROUP BY state ORDER BY state")
        return {r["state"]: r["count"] for r in rows}

    def duration_stats(self):
        """Min/avg/max of completed_at - processing_at over completed jobs, in ms."""
        rows = self._read("""
            SELECT processing_at, completed_at FROM jobs
            WHERE state = 'completed' AND processing_at IS NOT NULL AND completed_at IS NOT NULL
        """)
        durations = [
            (parse_iso(r["completed_at"]) - parse_iso(r["processing_at"])).total_seconds() * 1000.0
            for r in rows
        ]
        if not durations:
            return {"count": 0, "min_ms": None, "avg_ms": None, "max_ms": None}
        return {
            "count": len(durations),
            "min_ms": min(durations),
            "avg_ms": sum(durations) / len(durations),
            "max_ms": max(durations),
        }

    def recent_jobs(self, limit=10):
        rows = self._read("SELECT * FROM jobs ORDER BY updated_at DESC, rowid DESC LIMIT ?", (limit,))
        return [Job.from_row(r) for r in rows]

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        rows = self._read("SELECT value FROM config WHERE key = ?", (normalize_key(key),))
        return rows[0]["value"] if rows else default

    def set_config(self, key, value):
        key = normalize_key(key)
        now = to_iso(utcnow())
        try:
            with self._write() as conn:
                conn.execute("""
                    INSERT INTO config (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """, (key, str(value), now))
        except sqlite3.Error as e:
            raise StorageError(f"cannot write config '{key}': {e}") from e
        logger.debug("Config %s set to %r", key, value)
        return key

    def list_config(self):
        rows = self._read("SELECT key, value, updated_at FROM config ORDER BY key")
        return [(r["key"], r["value"], r["updated_at"]) for r in rows]
