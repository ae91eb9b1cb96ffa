from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Job
from jobscheduler.domain.errors import JobNotFoundError, ValidationError
from jobscheduler.domain.states import JobType, JobStatus

async def get_job(session: AsyncSession, job_id: UUID) -> Job:
    job = await session.get(Job, job_id, populate_existing=True)
    if not job:
        raise JobNotFoundError(job_id)
    return job

async def find_job(session: AsyncSession, job_id: UUID) -> Optional[Job]:
    """Like get_job, but a missing job is a normal outcome."""
    return await session.get(Job, job_id, populate_existing=True)

async def list_jobs(
    session: AsyncSession,
    job_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100
) -> list[Job]:
    """
    Newest-created first, optional equality filters on type and status.
    """
    if limit < 1:
        raise ValidationError("limit must be a positive integer")

    stmt = select(Job)
    if job_type:
        try:
            stmt = stmt.where(Job.type == JobType(job_type))
        except ValueError:
            raise ValidationError(f"Invalid job type filter '{job_type}'")
    if status:
        try:
            stmt = stmt.where(Job.status == JobStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid job status filter '{status}'")

    stmt = stmt.order_by(Job.created_at.desc(), Job.id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
