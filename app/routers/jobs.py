from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import dependencies
from app.database import get_db
from app.jobs.queue import utcnow
from app.models.enums import JobStatus
from app.models.job import QueuedJob
from app.models.user import User
from app.core.responses import StandardResponse

router = APIRouter()


class JobResponse(BaseModel):
    id: int
    job_type: str
    queue: str
    payload_json: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    next_run_at: datetime
    last_error: str | None = None
    created_at: datetime
    finished_at: datetime | None = None

    class Config:
        from_attributes = True


@router.get("", response_model=StandardResponse[list[JobResponse]])
async def list_jobs(
    current_user: Annotated[User, Depends(dependencies.get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    status: JobStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    """Failed jobs are kept here for inspection after their retries run out."""
    stmt = select(QueuedJob).order_by(QueuedJob.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(QueuedJob.status == status)
    result = await db.execute(stmt)
    return StandardResponse(data=[JobResponse.model_validate(job) for job in result.scalars().all()])


@router.post("/{job_id}/retry", response_model=StandardResponse[JobResponse])
async def retry_job(
    job_id: int,
    current_user: Annotated[User, Depends(dependencies.get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    job = await db.get(QueuedJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.FAILED:
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")

    job.status = JobStatus.QUEUED
    job.attempts = 0
    job.next_run_at = utcnow()
    job.finished_at = None
    await db.commit()
    await db.refresh(job)
    return StandardResponse(data=JobResponse.model_validate(job), message="Job requeued")
