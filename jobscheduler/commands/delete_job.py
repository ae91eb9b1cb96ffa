import logging
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Job
from jobscheduler.domain.errors import JobNotFoundError
from jobscheduler.domain.states import JobType
from jobscheduler.commands.query_jobs import get_job
from jobscheduler.scheduler.rules import unregister
from jobscheduler.api.v1.metrics import JOBS_DELETED_TOTAL

logger = logging.getLogger(__name__)

async def delete_job(session: AsyncSession, job_id: UUID) -> Job:
    """
    Removes the job's rule (best-effort) and then the job itself.
    Invocation history is kept.
    Raises JobNotFoundError without touching anything if the job does not exist.
    """
    job = await get_job(session, job_id)
    # Detached copy stays readable after the rollback/delete below
    session.expunge(job)
    job_type = job.type
    rule_id = job.rule_id
    logger.info(f"Deleting job {job_id} ({job.name}, type {job_type})")

    if rule_id and job_type in (JobType.ONCE, JobType.CRON):
        try:
            await unregister(session, rule_id)
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Error deleting rule {rule_id} for job {job_id}, continuing: {e}")

    result = await session.execute(
        delete(Job).where(Job.id == job_id).execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) == 0:
        # Deleted concurrently between the read and here
        raise JobNotFoundError(job_id)

    await session.commit()
    JOBS_DELETED_TOTAL.labels(type=job_type).inc()
    logger.info(f"Job {job_id} deleted")
    return job
