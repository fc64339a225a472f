"""Job ledger models — jobs, lock tokens, contention signals, attempts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


# No further execution once a job reaches one of these.
TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.BLOCKED}
)

# Statuses a lock holder may release into.
RELEASE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.BLOCKED}
)


class JobService(str, Enum):
    """Well-known services.  Sub-units append ``:<unit>`` to the name."""

    IMAGE_IO = "image_io"
    INFO_WORKER = "info_worker"
    COMPARISON = "comparison"
    SUPERVISOR = "supervisor"
    GENERATION = "generation"


class HumanDecision(str, Enum):
    APPROVE = "approved"
    REJECT = "rejected"


class Job(BaseModel):
    """One attempted unit of work bound to (run, step, service)."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: f"job-{uuid.uuid4().hex}")
    run_id: str
    step_id: int
    service: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    idempotency_key: str
    lock_holder: str | None = None
    lock_expires_at: datetime | None = None
    payload_ref: list[str] = []   # artifact ids only, never raw bytes
    result_ref: list[str] = []
    last_error: str | None = None
    last_error_trace: str | None = None
    resolution: HumanDecision | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def lock_is_live(self, now: datetime) -> bool:
        """Whether the job is running under a lock that has not expired."""
        return (
            self.status == JobStatus.RUNNING
            and self.lock_expires_at is not None
            and self.lock_expires_at > now
        )


class LockToken(BaseModel):
    """Proof of lock ownership returned by ``acquire_job``.

    ``attempt`` pins the token to one attempt: a token from before a
    steal can no longer release the job.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    run_id: str
    step_id: int
    service: str
    holder: str
    attempt: int
    max_attempts: int
    expires_at: datetime
    reclaimed: bool = False


class ContentionReason(str, Enum):
    LOCK_HELD = "lock_held"       # another holder is running it now
    DUPLICATE = "duplicate"       # same idempotency key already finished


class AlreadyRunning(BaseModel):
    """Control-flow signal: someone else is handling this work.

    Not an error; callers treat it as success-equivalent.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    status: JobStatus
    reason: ContentionReason
    lock_holder: str | None = None
    lock_expires_at: datetime | None = None


class AttemptRecord(BaseModel):
    """One generation attempt of a job; rejected attempts are kept."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    attempt_index: int
    artifact_id: str | None = None
    verdict_id: str | None = None
    accepted: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
