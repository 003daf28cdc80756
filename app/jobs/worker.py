import asyncio
import logging
import socket
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.jobs.queue import JobContext, claim_next_job, requeue_stale_jobs, run_job
from app.services.storage_service import get_chat_storage

logger = logging.getLogger(__name__)


def make_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}-{index}"


def default_job_context() -> JobContext:
    return JobContext(storage=get_chat_storage())


async def run_once(
    session_factory: async_sessionmaker[AsyncSession],
    worker_id: str,
    context: JobContext,
) -> bool:
    """Claim and run a single due job. Returns False when the queue was idle."""
    async with session_factory() as db:
        await requeue_stale_jobs(db, clock=context.clock)
        job = await claim_next_job(db, worker_id, clock=context.clock)
        if job is None:
            return False
        await run_job(db, job, context)
        return True


async def drain(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
    worker_id: str | None = None,
    max_jobs: int | None = None,
) -> int:
    """Run due jobs until none are left. Returns how many ran."""
    worker_id = worker_id or make_worker_id()
    processed = 0
    while max_jobs is None or processed < max_jobs:
        if not await run_once(session_factory, worker_id, context):
            break
        processed += 1
    return processed


async def worker_loop(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
    worker_id: str | None = None,
    poll_interval: float | None = None,
) -> None:
    worker_id = worker_id or make_worker_id()
    interval = settings.JOB_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
    logger.info("Job worker started", extra={"worker_id": worker_id})
    while True:
        try:
            ran = await run_once(session_factory, worker_id, context)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Job worker iteration failed", extra={"worker_id": worker_id})
            ran = False
        if not ran:
            await asyncio.sleep(interval)


def start_workers(
    session_factory: async_sessionmaker[AsyncSession],
    context: JobContext,
    concurrency: int | None = None,
) -> list[asyncio.Task]:
    count = max(1, concurrency if concurrency is not None else settings.JOB_WORKER_CONCURRENCY)
    return [
        asyncio.create_task(worker_loop(session_factory, context, worker_id=make_worker_id(index)))
        for index in range(count)
    ]


async def stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
