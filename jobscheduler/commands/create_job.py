import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Job, DispatchSignal
from jobscheduler.domain.errors import ValidationError, SchedulingError
from jobscheduler.domain.models import JobSpec
from jobscheduler.domain.schedule import parse_execute_at, parse_schedule_expression
from jobscheduler.domain.states import JobType, SignalStatus, initial_status
from jobscheduler.scheduler.rules import register_one_shot, register_recurring
from jobscheduler.api.v1.metrics import JOBS_CREATED_TOTAL, SIGNALS_PENDING
from jobscheduler.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

def validate_job_spec(spec: JobSpec, now: Optional[datetime] = None) -> tuple[JobType, Optional[datetime]]:
    """
    Checks a submission before anything is persisted.
    Returns the parsed job type and, for once jobs, the UTC execute_at.
    """
    if not spec.name or not spec.type:
        raise ValidationError("name and type are required fields")

    try:
        job_type = JobType(spec.type)
    except ValueError:
        raise ValidationError("Invalid job type. Must be: immediate, once, or cron")

    execute_at = None
    if job_type == JobType.ONCE:
        execute_at = parse_execute_at(spec.execute_at, now)
    elif job_type == JobType.CRON:
        parse_schedule_expression(spec.schedule_expression)

    return job_type, execute_at

async def create_job(session: AsyncSession, spec: JobSpec) -> Job:
    """
    Validates, persists and schedules a job.

    The job row is committed before its rule is registered. If registration
    fails the job stays behind as scheduled without a rule_id and
    SchedulingError is raised.
    Immediate jobs get a dispatch signal in the same transaction as the job row.
    """
    now = utcnow()
    job_type, execute_at = validate_job_spec(spec, now)

    job = Job(
        name=spec.name,
        description=spec.description or "",
        type=job_type,
        schedule_expression=spec.schedule_expression.strip() if job_type == JobType.CRON else None,
        execute_at=execute_at,
        payload=spec.payload or {},
        status=initial_status(job_type),
        created_at=now,
        updated_at=now,
        invocation_count=0
    )
    session.add(job)
    await session.flush()

    if job_type == JobType.IMMEDIATE:
        session.add(DispatchSignal(
            job_id=job.id,
            payload=job.payload,
            status=SignalStatus.PENDING,
            created_at=now
        ))
        SIGNALS_PENDING.inc()

    await session.commit()
    JOBS_CREATED_TOTAL.labels(type=job_type).inc()
    logger.info(f"Job {job.id} ({job.name}) created with type {job_type}")

    if job_type == JobType.IMMEDIATE:
        return job

    job_id = job.id
    try:
        if job_type == JobType.ONCE:
            rule_id = await register_one_shot(session, job_id, execute_at, payload=job.payload)
        else:
            rule_id = await register_recurring(session, job_id, job.schedule_expression, payload=job.payload)

        job.rule_id = rule_id
        await session.commit()
    except SchedulingError:
        await session.rollback()
        logger.error(f"Rule registration failed for job {job_id}; job left without a rule")
        raise
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Rule registration failed for job {job_id}: {e}")
        raise SchedulingError(f"Failed to register schedule for job {job_id}: {e}") from e

    return job
