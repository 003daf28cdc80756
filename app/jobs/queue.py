"""Database-backed task queue.

Jobs are rows in ``queued_jobs``. A worker claims the oldest due row, runs the
registered handler and either marks it ``SUCCESS`` or reschedules it with the
job's backoff until ``max_attempts`` is reached, after which it stays
``FAILED`` for an operator to look at.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ChatConfig, get_chat_config
from app.database import supports_skip_locked
from app.models.enums import JobStatus
from app.models.job import QueuedJob
from app.services.storage_service import ChatStorageService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
STALE_LOCK_SECONDS = 15 * 60
MAX_ERROR_LENGTH = 4000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff: tuple[int, ...] = ()

    def delay_for(self, attempt: int) -> int:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if not self.backoff:
            return 0
        index = min(max(attempt - 1, 0), len(self.backoff) - 1)
        return self.backoff[index]


@dataclass
class JobContext:
    storage: ChatStorageService
    config_provider: Callable[[], ChatConfig] = get_chat_config
    clock: Clock = field(default=utcnow)


class Job:
    job_type: ClassVar[str]
    queue: ClassVar[str] = "default"
    retry_policy: ClassVar[RetryPolicy] = RetryPolicy()

    def to_payload(self) -> dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Job":
        raise NotImplementedError

    async def handle(self, db: AsyncSession, context: JobContext) -> None:
        raise NotImplementedError


JOB_REGISTRY: dict[str, type[Job]] = {}


def register_job(job_cls: type[Job]) -> type[Job]:
    JOB_REGISTRY[job_cls.job_type] = job_cls
    return job_cls


async def enqueue_job(
    db: AsyncSession,
    job: Job,
    *,
    clock: Clock = utcnow,
    delay_seconds: int = 0,
    commit: bool = True,
) -> QueuedJob:
    record = QueuedJob(
        job_type=job.job_type,
        queue=job.queue,
        payload_json=job.to_payload(),
        status=JobStatus.QUEUED,
        attempts=0,
        max_attempts=job.retry_policy.max_attempts,
        next_run_at=clock() + timedelta(seconds=delay_seconds),
    )
    db.add(record)
    if commit:
        await db.commit()
        await db.refresh(record)
    else:
        await db.flush()
    logger.info("Job enqueued", extra={"job_id": record.id, "job_type": record.job_type})
    return record


async def claim_next_job(db: AsyncSession, worker_id: str, *, clock: Clock = utcnow) -> QueuedJob | None:
    now = clock()
    stmt = (
        select(QueuedJob)
        .where(QueuedJob.status == JobStatus.QUEUED, QueuedJob.next_run_at <= now)
        .order_by(QueuedJob.next_run_at.asc(), QueuedJob.id.asc())
        .limit(1)
    )
    if supports_skip_locked(db):
        stmt = stmt.with_for_update(skip_locked=True)
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        await db.rollback()
        return None
    job.status = JobStatus.RUNNING
    job.attempts += 1
    job.locked_by = worker_id
    job.locked_at = now
    await db.commit()
    await db.refresh(job)
    return job


async def mark_success(db: AsyncSession, job: QueuedJob, *, clock: Clock = utcnow) -> QueuedJob:
    job.status = JobStatus.SUCCESS
    job.finished_at = clock()
    job.locked_by = None
    job.locked_at = None
    job.last_error = None
    await db.commit()
    await db.refresh(job)
    return job


async def mark_failed(
    db: AsyncSession,
    job: QueuedJob,
    error: str,
    *,
    retry_policy: RetryPolicy | None = None,
    retryable: bool = True,
    clock: Clock = utcnow,
) -> QueuedJob:
    now = clock()
    policy = retry_policy or RetryPolicy(max_attempts=job.max_attempts)
    job.last_error = error[:MAX_ERROR_LENGTH]
    job.locked_by = None
    job.locked_at = None

    if retryable and job.attempts < job.max_attempts:
        delay_seconds = policy.delay_for(job.attempts)
        job.status = JobStatus.QUEUED
        job.next_run_at = now + timedelta(seconds=delay_seconds)
        logger.warning(
            "Job attempt %s/%s failed; retrying in %ss",
            job.attempts,
            job.max_attempts,
            delay_seconds,
            extra={"job_id": job.id, "job_type": job.job_type, "attempt": job.attempts},
        )
    else:
        job.status = JobStatus.FAILED
        job.finished_at = now
        logger.error(
            "Job permanently failed after %s attempts: %s",
            job.attempts,
            job.last_error,
            extra={"job_id": job.id, "job_type": job.job_type, "attempt": job.attempts},
        )

    await db.commit()
    await db.refresh(job)
    return job


async def requeue_stale_jobs(
    db: AsyncSession,
    *,
    lease_seconds: int = STALE_LOCK_SECONDS,
    clock: Clock = utcnow,
) -> int:
    """Put RUNNING jobs whose worker vanished back in the queue."""
    now = clock()
    cutoff = now - timedelta(seconds=lease_seconds)
    result = await db.execute(
        select(QueuedJob).where(
            and_(QueuedJob.status == JobStatus.RUNNING, QueuedJob.locked_at < cutoff)
        )
    )
    stale = result.scalars().all()
    for job in stale:
        logger.warning("Requeueing stale job locked by %s", job.locked_by, extra={"job_id": job.id, "job_type": job.job_type})
        job.locked_by = None
        job.locked_at = None
        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.finished_at = now
            job.last_error = "Worker lease expired"
        else:
            job.status = JobStatus.QUEUED
            job.next_run_at = now
    if stale:
        await db.commit()
    return len(stale)


async def run_job(db: AsyncSession, queued_job: QueuedJob, context: JobContext) -> bool:
    """Execute one claimed job. Returns True when it succeeded."""
    job_id = queued_job.id
    job_cls = JOB_REGISTRY.get(queued_job.job_type)
    if job_cls is None:
        await mark_failed(db, queued_job, f"Unknown job type: {queued_job.job_type}", retryable=False, clock=context.clock)
        return False

    log_extra = {"job_id": job_id, "job_type": queued_job.job_type, "attempt": queued_job.attempts}
    logger.info("Job started", extra=log_extra)
    try:
        job = job_cls.from_payload(queued_job.payload_json or {})
        await job.handle(db, context)
        # Commit errors count as job failures and take the retry path.
        await db.commit()
    except Exception as exc:
        logger.exception("Job failed: %s", exc, extra=log_extra)
        await db.rollback()
        queued_job = await db.get(QueuedJob, job_id, populate_existing=True)
        await mark_failed(
            db,
            queued_job,
            f"{type(exc).__name__}: {exc}",
            retry_policy=job_cls.retry_policy,
            clock=context.clock,
        )
        return False

    await mark_success(db, queued_job, clock=context.clock)
    logger.info("Job completed", extra=log_extra)
    return True
