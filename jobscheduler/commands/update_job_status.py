from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Job
from jobscheduler.domain.errors import JobNotFoundError
from jobscheduler.domain.states import JobStatus
from jobscheduler.utils.timeutils import utcnow

# Columns callers may set alongside the status
UPDATABLE_FIELDS = {"last_executed_at", "rule_id", "updated_at"}

async def update_job_status(
    session: AsyncSession,
    job_id: UUID,
    status: JobStatus,
    increment_invocations: bool = False,
    **fields: Any
) -> None:
    """
    Single UPDATE statement for status + bookkeeping fields.
    The invocation counter is incremented in the database (count = count + 1),
    so concurrent dispatches of the same job never lose an increment.
    Raises JobNotFoundError if the row no longer exists.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

    values: dict[str, Any] = {"status": status, "updated_at": utcnow(), **fields}
    if increment_invocations:
        values["invocation_count"] = Job.invocation_count + 1

    stmt = (
        update(Job)
        .where(Job.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)

    if (result.rowcount or 0) == 0:
        raise JobNotFoundError(job_id)

async def record_run(
    session: AsyncSession,
    job_id: UUID,
    status: JobStatus,
    executed_at: datetime,
    clear_rule: bool = False
) -> None:
    """Bookkeeping after a finalized invocation."""
    fields: dict[str, Optional[Any]] = {
        "last_executed_at": executed_at,
        "updated_at": executed_at,
    }
    if clear_rule:
        fields["rule_id"] = None
    await update_job_status(session, job_id, status, increment_invocations=True, **fields)
