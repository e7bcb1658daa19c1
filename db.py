import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime

from errors import DuplicateJob, JobNotFound
from models import PAYLOAD_TYPES, TERMINAL_STATES, Job, JobState, JobType, parse_job_type, utcnow

logger = logging.getLogger(__name__)

DB_FILE = "queue.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    retry_at TEXT,
    result TEXT,
    error TEXT
);

-- Workers look jobs up by state on every poll
CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs (state);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS metrics (
    stat_key TEXT PRIMARY KEY,
    stat_value INTEGER NOT NULL DEFAULT 0
);

INSERT INTO metrics (stat_key, stat_value) VALUES ('jobs_succeeded', 0)
    ON CONFLICT(stat_key) DO NOTHING;
INSERT INTO metrics (stat_key, stat_value) VALUES ('jobs_failed', 0)
    ON CONFLICT(stat_key) DO NOTHING;
"""

JOB_COLUMNS = (
    "id, type, payload, state, attempts, max_retries, priority, "
    "created_at, updated_at, retry_at, result, error"
)


def _ts(value: datetime):
    # fixed-width so timestamps compare correctly as text
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str):
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_job(row) -> Job:
    job_type = JobType(row["type"])
    return Job(
        id=row["id"],
        type=job_type,
        payload=PAYLOAD_TYPES[job_type].model_validate_json(row["payload"]),
        state=JobState(row["state"]),
        attempts=row["attempts"],
        max_retries=row["max_retries"],
        priority=row["priority"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        retry_at=_parse_ts(row["retry_at"]),
        result=json.loads(row["result"]) if row["result"] is not None else None,
        error=row["error"],
    )


class SqliteJobStore:
    """
    Job store backed by a SQLite file. Safe to share between threads and
    worker processes: every call opens its own connection, and claiming a
    job is a single UPDATE statement.
    """

    def __init__(self, path: str = DB_FILE, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout

    def get_db_connection(self):
        """Establishes a connection to the SQLite database."""
        # IMMEDIATE takes the write lock up front, so concurrent claimers
        # wait on the busy timeout instead of failing with "database is locked"
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level="IMMEDIATE")
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self):
        """Creates the 'jobs', 'config' and 'metrics' tables."""
        with closing(self.get_db_connection()) as conn:
            with conn:
                conn.executescript(SCHEMA)
        logger.debug("Database %s initialized", self.path)

    def save(self, job):
        sql = f"INSERT INTO jobs ({JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
        try:
            with closing(self.get_db_connection()) as conn:
                with conn:
                    conn.execute(sql, [
                        job.id,
                        job.type.value,
                        job.payload.model_dump_json(),
                        job.state.value,
                        job.attempts,
                        job.max_retries,
                        job.priority,
                        _ts(job.created_at),
                        _ts(job.updated_at),
                        _ts(job.retry_at),
                        json.dumps(job.result, default=str) if job.result is not None else None,
                        job.error,
                    ])
        except sqlite3.IntegrityError:
            raise DuplicateJob(job.id) from None

    def load_pending(self):
        sql = f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE state = ?
        ORDER BY priority DESC, rowid ASC
        """
        with closing(self.get_db_connection()) as conn:
            rows = conn.execute(sql, [JobState.PENDING.value]).fetchall()
        return [_row_to_job(row) for row in rows]

    def update(self, job, expected=None):
        """
        Writes the mutable fields of 'job'. With 'expected', the write only
        happens if the stored state still equals it; returns False otherwise.
        """
        sql = """
        UPDATE jobs
        SET state = ?, attempts = ?, priority = ?, updated_at = ?, retry_at = ?, result = ?, error = ?
        WHERE id = ?
        """
        params = [
            job.state.value,
            job.attempts,
            job.priority,
            _ts(job.updated_at),
            _ts(job.retry_at),
            json.dumps(job.result, default=str) if job.result is not None else None,
            job.error,
            job.id,
        ]
        if expected is not None:
            sql += " AND state = ?"
            params.append(expected.value)

        with closing(self.get_db_connection()) as conn:
            with conn:
                cursor = conn.execute(sql, params)
                if cursor.rowcount > 0:
                    return True
                exists = conn.execute("SELECT 1 FROM jobs WHERE id = ?", [job.id]).fetchone()
        if not exists:
            raise JobNotFound(job.id)
        return False

    def get(self, job_id):
        with closing(self.get_db_connection()) as conn:
            row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", [job_id]).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return _row_to_job(row)

    def claim_next(self, now, types=None):
        """
        Finds the next ready job, respecting priority, and marks it running
        in the same statement so no other worker can take it.
        """
        type_filter = ""
        params = [JobState.RUNNING.value, _ts(now), JobState.PENDING.value, _ts(now)]
        if types:
            type_values = [parse_job_type(t).value for t in types]
            type_filter = f"AND type IN ({', '.join('?' for _ in type_values)})"
            params.extend(type_values)

        sql = f"""
        UPDATE jobs
        SET state = ?, updated_at = ?, retry_at = NULL
        WHERE id = (
            SELECT id
            FROM jobs
            WHERE state = ?
              AND (retry_at IS NULL OR retry_at <= ?)
              {type_filter}
            -- Highest priority first, then first enqueued (rowid is insert order)
            ORDER BY priority DESC, rowid ASC
            LIMIT 1
        )
        RETURNING {JOB_COLUMNS};
        """
        with closing(self.get_db_connection()) as conn:
            with conn:
                rows = conn.execute(sql, params).fetchall()
        return _row_to_job(rows[0]) if rows else None

    def list_jobs(self, state=None, limit=None):
        sql = f"SELECT {JOB_COLUMNS} FROM jobs"
        params = []
        if state is not None:
            sql += " WHERE state = ?"
            params.append(state.value)
        sql += " ORDER BY rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with closing(self.get_db_connection()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def summary(self):
        """Returns a count of jobs in each state."""
        sql = "SELECT state, COUNT(*) AS count FROM jobs GROUP BY state"
        with closing(self.get_db_connection()) as conn:
            return {row["state"]: row["count"] for row in conn.execute(sql).fetchall()}

    def recover_running(self):
        """Puts jobs left 'running' by a worker that died back to 'pending'."""
        sql = "UPDATE jobs SET state = ?, updated_at = ? WHERE state = ?"
        with closing(self.get_db_connection()) as conn:
            with conn:
                cursor = conn.execute(sql, [
                    JobState.PENDING.value,
                    _ts(utcnow()),
                    JobState.RUNNING.value,
                ])
                return cursor.rowcount

    def purge(self, before):
        """Deletes terminal jobs last updated before 'before'."""
        states = [s.value for s in TERMINAL_STATES]
        sql = f"""
        DELETE FROM jobs
        WHERE state IN ({', '.join('?' for _ in states)}) AND updated_at < ?
        """
        with closing(self.get_db_connection()) as conn:
            with conn:
                return conn.execute(sql, states + [_ts(before)]).rowcount

    def increment_metric(self, key):
        sql = """
        INSERT INTO metrics (stat_key, stat_value) VALUES (?, 1)
            ON CONFLICT(stat_key) DO UPDATE SET stat_value = stat_value + 1
        """
        with closing(self.get_db_connection()) as conn:
            with conn:
                conn.execute(sql, [key])

    def metrics(self):
        """Returns all metrics as a dictionary."""
        with closing(self.get_db_connection()) as conn:
            rows = conn.execute("SELECT stat_key, stat_value FROM metrics").fetchall()
        return {row["stat_key"]: row["stat_value"] for row in rows}

    def set_config(self, key, value):
        """Sets a configuration key-value pair."""
        with closing(self.get_db_connection()) as conn:
            with conn:
                conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", [key, str(value)])

    def get_config(self, key, default=None):
        """Gets a configuration value by key."""
        with closing(self.get_db_connection()) as conn:
            row = conn.execute("SELECT value FROM config WHERE key = ?", [key]).fetchone()
        return row["value"] if row else default
