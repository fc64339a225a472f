"""Job ledger and lock manager backed by SQLite.

One row per unit of work bound to (run, step, service).  All
coordination goes through this table: ``acquire_job`` either hands out a
lock token or reports that someone else is already handling the work,
and every read-then-write runs inside one ``BEGIN IMMEDIATE``
transaction so concurrent callers serialize on the database.

Two guards are kept separate:
- the idempotency key refuses duplicate *creation* of the same job
- the running lock refuses concurrent *execution* of the same work

A crashed worker never releases; its lock simply expires after the TTL
and the next caller reclaims the row with an incremented attempt count.
A row whose attempts are already spent is blocked for a human instead.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from retour.core.sqlite import iso, parse_ts, reading, transaction
from retour.models.jobs import (
    RELEASE_STATUSES,
    AlreadyRunning,
    AttemptRecord,
    ContentionReason,
    HumanDecision,
    Job,
    JobStatus,
    LockToken,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 300
EXHAUSTED_AFTER_EXPIRY = "retry budget exhausted after lock expiry"


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id            TEXT PRIMARY KEY,
    run_id            TEXT NOT NULL,
    step_id           INTEGER NOT NULL,
    service           TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'pending'
                      CHECK (status IN ('pending', 'running', 'completed', 'failed', 'blocked')),
    attempts          INTEGER NOT NULL DEFAULT 0,
    max_attempts      INTEGER NOT NULL DEFAULT 3,
    idempotency_key   TEXT NOT NULL UNIQUE,
    lock_holder       TEXT,
    lock_expires_at   TEXT,
    payload_ref_json  TEXT NOT NULL DEFAULT '[]',
    result_ref_json   TEXT NOT NULL DEFAULT '[]',
    last_error        TEXT,
    last_error_trace  TEXT,
    resolution        TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    completed_at      TEXT
);
"""

_CREATE_ATTEMPTS = """
CREATE TABLE IF NOT EXISTS job_attempts (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id         TEXT NOT NULL REFERENCES jobs(job_id),
    attempt_index  INTEGER NOT NULL,
    artifact_id    TEXT,
    verdict_id     TEXT,
    accepted       INTEGER NOT NULL DEFAULT 0,
    created_at     TEXT NOT NULL,
    UNIQUE (job_id, attempt_index)
);
"""

_CREATE_IDX_UNIT = """
CREATE INDEX IF NOT EXISTS idx_jobs_unit ON jobs(run_id, step_id, service, status);
"""

_OPEN_STATUSES = ("pending", "running", "failed")


class JobLedgerError(RuntimeError):
    """Base class for job ledger failures."""


class JobNotFoundError(JobLedgerError):
    """Raised when a job id does not exist."""


class LockLostError(JobLedgerError):
    """Raised when a release is attempted with a token that no longer holds the lock."""


class RetryBudgetExhaustedError(JobLedgerError):
    """Raised when reclaiming a job that has already spent its attempts."""


class InvalidResolutionError(JobLedgerError):
    """Raised when a human decision is recorded on a job that cannot take one."""


class JobLedger:
    """Persistent job ledger with atomic acquire-or-refuse locking.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    lock_ttl_seconds:
        Lifetime of a lock before another caller may reclaim it.
    default_max_attempts:
        Attempt budget for jobs created without an explicit budget.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        default_max_attempts: int = 3,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ttl = timedelta(seconds=lock_ttl_seconds)
        self._default_max_attempts = default_max_attempts
        self._init_schema()

    def _init_schema(self) -> None:
        with transaction(self._db_path) as conn:
            conn.execute(_CREATE_JOBS)
            conn.execute(_CREATE_ATTEMPTS)
            conn.execute(_CREATE_IDX_UNIT)

    @property
    def lock_ttl(self) -> timedelta:
        return self._ttl

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    def acquire_job(
        self,
        run_id: str,
        step_id: int,
        service: str,
        idempotency_key: str,
        *,
        holder: str,
        payload_ref: list[str] | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> LockToken | AlreadyRunning:
        """Acquire the lock for a unit of work, or learn that it is taken.

        Returns
        -------
        LockToken
            The caller now holds the job and must release it.
        AlreadyRunning
            Another holder has a live lock, or the same idempotency key
            already finished.  Treat as success-equivalent.

        Raises
        ------
        RetryBudgetExhaustedError
            If the only reclaimable row has spent its attempt budget.  The
            row is committed as ``blocked`` before this is raised.
        """
        now = now or datetime.now(timezone.utc)
        with transaction(self._db_path) as conn:
            by_key = conn.execute(
                "SELECT * FROM jobs WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            if by_key is not None:
                existing: Job | None = self._row_to_job(by_key)
                if existing.is_terminal:
                    logger.info(
                        "Duplicate request for job %s (%s); already %s",
                        existing.job_id, idempotency_key[:12], existing.status.value,
                    )
                    return self._contention(existing, ContentionReason.DUPLICATE)
            else:
                open_row = conn.execute(
                    f"""
                    SELECT * FROM jobs
                     WHERE run_id = ? AND step_id = ? AND service = ?
                       AND status IN ({",".join("?" * len(_OPEN_STATUSES))})
                     ORDER BY created_at DESC LIMIT 1
                    """,
                    (run_id, step_id, service, *_OPEN_STATUSES),
                ).fetchone()
                existing = self._row_to_job(open_row) if open_row is not None else None

            if existing is not None:
                if existing.lock_is_live(now):
                    return self._contention(existing, ContentionReason.LOCK_HELD)
                if existing.attempts < existing.max_attempts:
                    return self._reclaim(conn, existing, holder, now)
                self._block_exhausted(conn, existing, now)
            else:
                job = Job(
                    run_id=run_id,
                    step_id=step_id,
                    service=service,
                    status=JobStatus.RUNNING,
                    attempts=1,
                    max_attempts=max_attempts or self._default_max_attempts,
                    idempotency_key=idempotency_key,
                    lock_holder=holder,
                    lock_expires_at=now + self._ttl,
                    payload_ref=payload_ref or [],
                    created_at=now,
                    updated_at=now,
                )
                self._insert(conn, job)

        if existing is not None:
            # committed as blocked above
            raise RetryBudgetExhaustedError(
                f"Job {existing.job_id} has used {existing.attempts}/"
                f"{existing.max_attempts} attempts; blocked for human review"
            )

        logger.info(
            "Acquired new job %s for %s/%d/%s (holder=%s)",
            job.job_id, run_id, step_id, service, holder,
        )
        return self._token(job, reclaimed=False)

    def _reclaim(
        self, conn: sqlite3.Connection, job: Job, holder: str, now: datetime
    ) -> LockToken:
        stolen = job.status == JobStatus.RUNNING
        attempts = job.attempts + 1
        expires = now + self._ttl
        conn.execute(
            """
            UPDATE jobs
               SET status = 'running', lock_holder = ?, lock_expires_at = ?,
                   attempts = ?, updated_at = ?
             WHERE job_id = ?
            """,
            (holder, iso(expires), attempts, iso(now), job.job_id),
        )
        if stolen:
            logger.warning(
                "Reclaimed expired lock on job %s from %s (attempt %d)",
                job.job_id, job.lock_holder, attempts,
            )
        else:
            logger.info(
                "Re-acquired job %s for attempt %d/%d (holder=%s)",
                job.job_id, attempts, job.max_attempts, holder,
            )
        updated = job.model_copy(
            update={
                "status": JobStatus.RUNNING,
                "lock_holder": holder,
                "lock_expires_at": expires,
                "attempts": attempts,
                "updated_at": now,
            }
        )
        return self._token(updated, reclaimed=stolen)

    @staticmethod
    def _block_exhausted(conn: sqlite3.Connection, job: Job, now: datetime) -> None:
        crashed = job.status == JobStatus.RUNNING
        error = (
            EXHAUSTED_AFTER_EXPIRY
            if crashed
            else f"retry budget exhausted: {job.last_error or 'no error recorded'}"
        )
        conn.execute(
            """
            UPDATE jobs
               SET status = 'blocked', lock_holder = NULL, lock_expires_at = NULL,
                   last_error = ?, completed_at = ?, updated_at = ?
             WHERE job_id = ?
            """,
            (error[:2000], iso(now), iso(now), job.job_id),
        )
        logger.warning(
            "Job %s spent %d/%d attempts%s; blocked for human review",
            job.job_id, job.attempts, job.max_attempts,
            " (lock expired)" if crashed else "",
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_job(
        self,
        token: LockToken,
        final_status: JobStatus,
        *,
        result_ref: list[str] | None = None,
        error: str | None = None,
        trace: str | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Clear the lock and record the outcome in one atomic update.

        Raises
        ------
        ValueError
            If ``final_status`` is not completed, failed or blocked.
        LockLostError
            If the token no longer holds the lock (it expired and was
            reclaimed by another caller).
        """
        if final_status not in RELEASE_STATUSES:
            raise ValueError(
                f"Cannot release into {final_status.value}; "
                f"expected one of {sorted(s.value for s in RELEASE_STATUSES)}"
            )
        now = now or datetime.now(timezone.utc)
        terminal = final_status in (JobStatus.COMPLETED, JobStatus.BLOCKED)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                   SET status = ?, lock_holder = NULL, lock_expires_at = NULL,
                       result_ref_json = COALESCE(?, result_ref_json),
                       last_error = COALESCE(?, last_error),
                       last_error_trace = COALESCE(?, last_error_trace),
                       completed_at = ?, updated_at = ?
                 WHERE job_id = ? AND lock_holder = ? AND attempts = ?
                   AND status = 'running'
                """,
                (
                    final_status.value,
                    json.dumps(result_ref) if result_ref is not None else None,
                    error,
                    trace,
                    iso(now) if terminal else None,
                    iso(now),
                    token.job_id,
                    token.holder,
                    token.attempt,
                ),
            )
            if cursor.rowcount != 1:
                raise LockLostError(
                    f"Job {token.job_id}: holder {token.holder} (attempt "
                    f"{token.attempt}) no longer holds the lock"
                )
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?", (token.job_id,)
            ).fetchone()

        logger.info(
            "Released job %s as %s (attempt %d/%d)",
            token.job_id, final_status.value, token.attempt, token.max_attempts,
        )
        return self._row_to_job(row)

    def record_failure_context(self, token: LockToken, error: str, trace: str | None = None) -> None:
        """Write error context onto the job row while the lock is still held."""
        with transaction(self._db_path) as conn:
            conn.execute(
                """
                UPDATE jobs SET last_error = ?, last_error_trace = ?, updated_at = ?
                 WHERE job_id = ? AND lock_holder = ?
                """,
                (error, trace, iso(datetime.now(timezone.utc)), token.job_id, token.holder),
            )

    def reap_expired(self, now: datetime | None = None) -> list[str]:
        """Mark running jobs whose lock expired as failed; returns their ids."""
        now = now or datetime.now(timezone.utc)
        with transaction(self._db_path) as conn:
            rows = conn.execute(
                "SELECT job_id, lock_expires_at FROM jobs WHERE status = 'running'"
            ).fetchall()
            expired = [
                row["job_id"]
                for row in rows
                if row["lock_expires_at"] is None
                or parse_ts(row["lock_expires_at"]) <= now
            ]
            for job_id in expired:
                conn.execute(
                    """
                    UPDATE jobs
                       SET status = 'failed', lock_holder = NULL, lock_expires_at = NULL,
                           last_error = 'lock expired before release', updated_at = ?
                     WHERE job_id = ?
                    """,
                    (iso(now), job_id),
                )
        if expired:
            logger.warning("Reaped %d job(s) with expired locks", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Attempts and human decisions
    # ------------------------------------------------------------------

    def record_attempt(self, record: AttemptRecord) -> AttemptRecord:
        """Persist one attempt.  Recording the same attempt twice is a no-op."""
        with transaction(self._db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO job_attempts
                    (job_id, attempt_index, artifact_id, verdict_id, accepted, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.job_id,
                    record.attempt_index,
                    record.artifact_id,
                    record.verdict_id,
                    int(record.accepted),
                    iso(record.created_at),
                ),
            )
        return record

    def get_attempts(self, job_id: str) -> list[AttemptRecord]:
        with reading(self._db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM job_attempts WHERE job_id = ? ORDER BY attempt_index ASC",
                (job_id,),
            ).fetchall()
        return [
            AttemptRecord(
                job_id=row["job_id"],
                attempt_index=row["attempt_index"],
                artifact_id=row["artifact_id"],
                verdict_id=row["verdict_id"],
                accepted=bool(row["accepted"]),
                created_at=parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    def resolve_blocked(
        self,
        job_id: str,
        decision: HumanDecision,
        actor: str = "human",
        *,
        within: Callable[[sqlite3.Connection, Job], None] | None = None,
    ) -> Job:
        """Record a human decision on a blocked job.  Terminal; only once.

        ``within`` runs on the same connection before the commit, so an
        audit write that fails leaves the job unresolved.
        """
        with transaction(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} does not exist")
            job = self._row_to_job(row)
            if job.status != JobStatus.BLOCKED:
                raise InvalidResolutionError(
                    f"Job {job_id} is {job.status.value}; only blocked jobs take a human decision"
                )
            if job.resolution is not None:
                raise InvalidResolutionError(
                    f"Job {job_id} was already {job.resolution.value}"
                )
            now = datetime.now(timezone.utc)
            conn.execute(
                "UPDATE jobs SET resolution = ?, updated_at = ? WHERE job_id = ?",
                (decision.value, iso(now), job_id),
            )
            if within is not None:
                within(conn, job)
        logger.info("Job %s resolved by %s: %s", job_id, actor, decision.value)
        return job.model_copy(update={"resolution": decision, "updated_at": now})

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job {job_id} does not exist")
        return self._row_to_job(row)

    def find_by_key(self, idempotency_key: str) -> Job | None:
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, run_id: str, step_id: int | None = None) -> list[Job]:
        query = "SELECT * FROM jobs WHERE run_id = ?"
        params: tuple[object, ...] = (run_id,)
        if step_id is not None:
            query += " AND step_id = ?"
            params = (run_id, step_id)
        with reading(self._db_path) as conn:
            rows = conn.execute(query + " ORDER BY created_at ASC", params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def total_attempts(self, run_id: str) -> int:
        """Sum of attempts across every job of a run."""
        with reading(self._db_path) as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(attempts), 0) FROM jobs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        return int(row[0])

    def is_job_running(
        self, run_id: str, step_id: int, service: str, now: datetime | None = None
    ) -> bool:
        """Whether a live lock exists for (run, step, service)."""
        now = now or datetime.now(timezone.utc)
        with reading(self._db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                 WHERE run_id = ? AND step_id = ? AND service = ? AND status = 'running'
                """,
                (run_id, step_id, service),
            ).fetchall()
        return any(self._row_to_job(row).lock_is_live(now) for row in rows)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _insert(conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """
            INSERT INTO jobs
                (job_id, run_id, step_id, service, status, attempts, max_attempts,
                 idempotency_key, lock_holder, lock_expires_at, payload_ref_json,
                 result_ref_json, last_error, last_error_trace, resolution,
                 created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_id,
                job.run_id,
                job.step_id,
                job.service,
                job.status.value,
                job.attempts,
                job.max_attempts,
                job.idempotency_key,
                job.lock_holder,
                iso(job.lock_expires_at),
                json.dumps(job.payload_ref),
                json.dumps(job.result_ref),
                job.last_error,
                job.last_error_trace,
                job.resolution.value if job.resolution else None,
                iso(job.created_at),
                iso(job.updated_at),
                iso(job.completed_at),
            ),
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            service=row["service"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            idempotency_key=row["idempotency_key"],
            lock_holder=row["lock_holder"],
            lock_expires_at=parse_ts(row["lock_expires_at"]),
            payload_ref=json.loads(row["payload_ref_json"]),
            result_ref=json.loads(row["result_ref_json"]),
            last_error=row["last_error"],
            last_error_trace=row["last_error_trace"],
            resolution=HumanDecision(row["resolution"]) if row["resolution"] else None,
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            completed_at=parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _token(job: Job, *, reclaimed: bool) -> LockToken:
        assert job.lock_holder is not None and job.lock_expires_at is not None
        return LockToken(
            job_id=job.job_id,
            run_id=job.run_id,
            step_id=job.step_id,
            service=job.service,
            holder=job.lock_holder,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            expires_at=job.lock_expires_at,
            reclaimed=reclaimed,
        )

    @staticmethod
    def _contention(job: Job, reason: ContentionReason) -> AlreadyRunning:
        if reason == ContentionReason.LOCK_HELD:
            logger.warning(
                "Job %s already running under %s until %s",
                job.job_id, job.lock_holder, job.lock_expires_at,
            )
        return AlreadyRunning(
            job_id=job.job_id,
            status=job.status,
            reason=reason,
            lock_holder=job.lock_holder,
            lock_expires_at=job.lock_expires_at,
        )
