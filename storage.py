# storage.py
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta

from errors import InvalidStateError, NotFoundError, StorageError
from models import Job, JobKind, JobState, to_iso, utc_now

logger = logging.getLogger(__name__)

MEMORY_URLS = ("sqlite::memory:", "sqlite://:memory:", ":memory:", "")

# Columns added after the first release; older databases get them on open.
UPGRADE_COLUMNS = {
    "error": "TEXT",
    "worker_id": "TEXT",
    "lease_until": "TEXT",
    "started_at": "TEXT",
    "finished_at": "TEXT",
    "duration_seconds": "REAL",
}


def resolve_database_path(database_url):
    """Map a `database_url` (sqlite::memory:, sqlite://path, bare path) to a sqlite3 path."""
    url = (database_url or "").strip()
    if url in MEMORY_URLS:
        return ":memory:"
    for prefix in ("sqlite://", "sqlite:"):
        if url.startswith(prefix):
            url = url[len(prefix):]
            break
    url = url.split("?", 1)[0]
    if url.startswith("//"):
        url = url[1:]
    return url or ":memory:"


class Storage:
    def __init__(self, database_url=":memory:", clock=utc_now, default_max_attempts=3):
        self.path = resolve_database_path(database_url)
        self.clock = clock
        self.default_max_attempts = default_max_attempts
        # One connection shared by all slots; the lock makes each operation atomic in-process.
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            if self.path != ":memory:":
                # Better concurrency when several processes share the file
                self.conn.execute("PRAGMA journal_mode=WAL;")
                self.conn.execute("PRAGMA synchronous=NORMAL;")
                self.conn.execute("PRAGMA busy_timeout=5000;")
            self._init_schema()
        except sqlite3.Error as e:
            raise StorageError(f"cannot open job store at {self.path}: {e}") from e

    def _init_schema(self):
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                state TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                scheduled_for TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            existing = {r["name"] for r in conn.execute("PRAGMA table_info(jobs)")}
            for column, ddl in UPGRADE_COLUMNS.items():
                if column not in existing:
                    conn.execute(f"ALTER TABLE jobs ADD COLUMN {column} {ddl}")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs (state, kind, scheduled_for)
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Transactions ----------------
    @contextmanager
    def _transaction(self):
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"cannot begin transaction: {e}") from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                self._rollback()
                raise
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(f"commit failed: {e}") from e

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.debug("rollback after failed transaction also failed", exc_info=True)

    @contextmanager
    def _read(self):
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _fetch(self, conn, job_id):
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(job_id)
        return Job.from_row(row)

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s -> %s %s", job_id, old_state.value, new_state.value, extra)

    # ---------------- Job lifecycle ----------------
    def enqueue(self, kind, payload=None, scheduled_for=None, max_attempts=None):
        kind = JobKind.parse(kind)
        now = self.clock()
        job_id = uuid.uuid4().hex
        max_attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO jobs (id, kind, payload, state, attempts, max_attempts, scheduled_for, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
            """, (job_id, kind.value, json.dumps(payload or {}), JobState.PENDING.value, max_attempts,
                  to_iso(scheduled_for or now), to_iso(now), to_iso(now)))
        logger.info("Job %s enqueued (kind=%s, scheduled_for=%s)", job_id, kind.value, to_iso(scheduled_for or now))
        return job_id

    def claim_next(self, kinds, now=None, worker_id=None, lease_seconds=None, admit=None):
        """
        Atomically claim the next ready job among `kinds`:
        - state = Pending and scheduled_for <= now
        - earliest scheduled_for first, then oldest created_at, then insertion order
        - `admit(kind, now)`, if given, is asked inside the claim; a refused kind is
          skipped and its jobs stay Pending where they are
        Returns None when nothing is eligible.
        """
        kinds = [JobKind.parse(k).value for k in kinds]
        if not kinds:
            return None
        now = now or self.clock()
        now_iso = to_iso(now)
        lease_until = to_iso(now + timedelta(seconds=lease_seconds)) if lease_seconds else None

        with self._transaction() as conn:
            row = None
            while kinds:
                placeholders = ",".join("?" for _ in kinds)
                row = conn.execute(f"""
                    SELECT id, kind FROM jobs
                    WHERE state=? AND scheduled_for <= ? AND kind IN ({placeholders})
                    ORDER BY scheduled_for ASC, created_at ASC, rowid ASC
                    LIMIT 1
                """, (JobState.PENDING.value, now_iso, *kinds)).fetchone()
                if row is None or admit is None or admit(JobKind(row["kind"]), now):
                    break
                logger.debug("Kind %s refused at %s, skipping its jobs", row["kind"], now_iso)
                kinds.remove(row["kind"])
                row = None
            if row is None:
                return None

            updated = conn.execute("""
                UPDATE jobs
                SET state=?, attempts=attempts+1, worker_id=?, lease_until=?, started_at=?,
                    finished_at=NULL, duration_seconds=NULL, updated_at=?
                WHERE id=? AND state=?
            """, (JobState.RUNNING.value, worker_id, lease_until, now_iso, now_iso,
                  row["id"], JobState.PENDING.value)).rowcount
            if updated != 1:
                return None  # lost the race to another process
            job = self._fetch(conn, row["id"])

        self._log_transition(job.id, JobState.PENDING, JobState.RUNNING,
                             f"(claimed by {worker_id or '-'}, attempt {job.attempts}/{job.max_attempts})")
        return job

    def _fetch_running(self, conn, job_id, worker_id, action):
        job = self._fetch(conn, job_id)
        if job.state != JobState.RUNNING:
            raise InvalidStateError(job_id, job.state.value, action)
        if worker_id is not None and job.worker_id != worker_id:
            # The claim was taken back and the job has been claimed again since
            raise InvalidStateError(job_id, f"{job.state.value} (claimed by {job.worker_id or '-'})", action)
        return job

    def complete(self, job_id, now=None, worker_id=None):
        """Running -> Completed. With `worker_id`, only that claim holder may complete the job."""
        now = now or self.clock()
        with self._transaction() as conn:
            job = self._fetch_running(conn, job_id, worker_id, "complete")
            duration = (now - job.started_at).total_seconds() if job.started_at else None
            conn.execute("""
                UPDATE jobs
                SET state=?, error=NULL, lease_until=NULL, finished_at=?, duration_seconds=?, updated_at=?
                WHERE id=?
            """, (JobState.COMPLETED.value, to_iso(now), duration, to_iso(now), job_id))
        self._log_transition(job_id, JobState.RUNNING, JobState.COMPLETED,
                             f"(duration={duration:.3f}s)" if duration is not None else "")
        return JobState.COMPLETED

    def fail(self, job_id, retry, error=None, retry_at=None, now=None, worker_id=None):
        """Record a failed run: back to Pending if retry is allowed and attempts remain, else Failed."""
        now = now or self.clock()
        with self._transaction() as conn:
            job = self._fetch_running(conn, job_id, worker_id, "fail")
            duration = (now - job.started_at).total_seconds() if job.started_at else None

            if retry and job.attempts < job.max_attempts:
                new_state = JobState.PENDING
                conn.execute("""
                    UPDATE jobs
                    SET state=?, error=?, scheduled_for=?, worker_id=NULL, lease_until=NULL,
                        duration_seconds=?, updated_at=?
                    WHERE id=?
                """, (new_state.value, error, to_iso(retry_at or now), duration, to_iso(now), job_id))
                extra = f"(attempts={job.attempts}/{job.max_attempts}, retry_at={to_iso(retry_at or now)}, error={error})"
            else:
                new_state = JobState.FAILED
                conn.execute("""
                    UPDATE jobs
                    SET state=?, error=?, lease_until=NULL, finished_at=?, duration_seconds=?, updated_at=?
                    WHERE id=?
                """, (new_state.value, error, to_iso(now), duration, to_iso(now), job_id))
                extra = f"(attempts={job.attempts}/{job.max_attempts}, error={error})"
        self._log_transition(job_id, JobState.RUNNING, new_state, extra)
        return new_state

    def cancel(self, job_id, now=None):
        now = now or self.clock()
        with self._transaction() as conn:
            job = self._fetch(conn, job_id)
            if job.state != JobState.PENDING:
                raise InvalidStateError(job_id, job.state.value, "cancel")
            conn.execute("UPDATE jobs SET state=?, finished_at=?, updated_at=? WHERE id=?",
                         (JobState.CANCELLED.value, to_iso(now), to_iso(now), job_id))
        self._log_transition(job_id, JobState.PENDING, JobState.CANCELLED)
        return JobState.CANCELLED

    def recover_expired_leases(self, now=None, expired_before=None):
        """Fail (with retry) Running jobs whose lease ran out, e.g. after a crash."""
        now = now or self.clock()
        cutoff = expired_before or now
        with self._read() as conn:
            rows = conn.execute("""
                SELECT id FROM jobs
                WHERE state=? AND lease_until IS NOT NULL AND lease_until <= ?
            """, (JobState.RUNNING.value, to_iso(cutoff))).fetchall()

        recovered = []
        for row in rows:
            try:
                self.fail(row["id"], retry=True, error="lease expired", now=now)
            except InvalidStateError:
                continue  # finished between the scan and the update
            recovered.append(row["id"])
        return recovered

    # ---------------- Queries ----------------
    def get(self, job_id):
        with self._read() as conn:
            return self._fetch(conn, job_id)

    def snapshot(self, job_id):
        return self.get(job_id).snapshot()

    def list_jobs(self, state=None, kind=None, limit=None, newest_first=False):
        clauses, params = [], []
        if state:
            clauses.append("state=?")
            params.append(JobState(state).value)
        if kind:
            clauses.append("kind=?")
            params.append(JobKind.parse(kind).value)
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC" if newest_first else " ORDER BY created_at ASC, rowid ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._read() as conn:
            return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]

    def running_jobs(self, worker_ids=None):
        jobs = self.list_jobs(state=JobState.RUNNING)
        if worker_ids is not None:
            wanted = set(worker_ids)
            jobs = [j for j in jobs if j.worker_id in wanted]
        return jobs

    def count_by_state(self):
        with self._read() as conn:
            rows = conn.execute("SELECT state, COUNT(*) AS c FROM jobs GROUP BY state").fetchall()
        counts = {s.value: 0 for s in JobState}
        counts.update({r["state"]: r["c"] for r in rows})
        return counts

    def metrics(self):
        counts = self.count_by_state()
        with self._read() as conn:
            avg = conn.execute("""
                SELECT AVG(duration_seconds) AS avg_dur FROM jobs
                WHERE state=? AND duration_seconds IS NOT NULL
            """, (JobState.COMPLETED.value,)).fetchone()["avg_dur"]
            per_day = conn.execute("""
                SELECT substr(finished_at, 1, 10) AS day, AVG(duration_seconds) AS avg_dur
                FROM jobs
                WHERE state=? AND duration_seconds IS NOT NULL
                GROUP BY day ORDER BY day
            """, (JobState.COMPLETED.value,)).fetchall()
        return {
            "counts": counts,
            "avg_duration": avg,
            "durations": {r["day"]: round(r["avg_dur"], 3) for r in per_day},
        }

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._read() as conn:
            row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(self.clock())
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        with self._read() as conn:
            rows = conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [(r["key"], r["value"], r["updated_at"]) for r in rows]
