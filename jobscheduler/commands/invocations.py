from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Invocation
from jobscheduler.domain.errors import InvalidInvocationStateError, ValidationError
from jobscheduler.domain.models import JobStatistics
from jobscheduler.domain.states import InvocationStatus, ErrorKind
from jobscheduler.utils.timeutils import duration_ms, utcnow

FINAL_FIELDS = {"status", "completed_at", "duration_ms", "output", "error", "error_kind", "error_trace"}

def round_half_up(value: float, places: int = 0) -> float:
    # Ties round away from zero, not to even
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))

async def record_invocation(session: AsyncSession, invocation: Invocation) -> Invocation:
    session.add(invocation)
    await session.flush()
    return invocation

async def start_invocation(
    session: AsyncSession,
    job_id: UUID,
    payload: dict[str, Any],
    started_at: Optional[datetime] = None
) -> Invocation:
    return await record_invocation(session, Invocation(
        job_id=job_id,
        status=InvocationStatus.RUNNING,
        started_at=started_at or utcnow(),
        input=payload or {}
    ))

async def update_invocation(session: AsyncSession, invocation_id: UUID, **fields: Any) -> None:
    """
    Sets completion fields on a running invocation.
    Only one update can win: the row must still be RUNNING, otherwise
    InvalidInvocationStateError is raised.
    """
    unknown = set(fields) - FINAL_FIELDS
    if unknown:
        raise ValueError(f"Cannot update invocation fields: {sorted(unknown)}")

    stmt = (
        update(Invocation)
        .where(
            Invocation.id == invocation_id,
            Invocation.status == InvocationStatus.RUNNING
        )
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if (result.rowcount or 0) == 0:
        raise InvalidInvocationStateError(invocation_id)

async def finalize_invocation(
    session: AsyncSession,
    invocation_id: UUID,
    started_at: datetime,
    completed_at: datetime,
    output: Optional[Any] = None,
    error: Optional[str] = None,
    error_kind: Optional[ErrorKind] = None,
    error_trace: Optional[str] = None
) -> int:
    """Marks the invocation completed (no error) or failed. Returns the duration in ms."""
    elapsed = duration_ms(started_at, completed_at)
    if error is None:
        await update_invocation(
            session, invocation_id,
            status=InvocationStatus.COMPLETED,
            completed_at=completed_at,
            duration_ms=elapsed,
            output=output
        )
    else:
        await update_invocation(
            session, invocation_id,
            status=InvocationStatus.FAILED,
            completed_at=completed_at,
            duration_ms=elapsed,
            error=error,
            error_kind=error_kind or ErrorKind.EXECUTION,
            error_trace=error_trace
        )
    return elapsed

async def query_by_job(
    session: AsyncSession,
    job_id: UUID,
    status: Optional[str] = None,
    limit: int = 50,
    newest_first: bool = True
) -> list[Invocation]:
    if limit < 1:
        raise ValidationError("invocation limit must be a positive integer")

    stmt = select(Invocation).where(Invocation.job_id == job_id)
    if status:
        try:
            stmt = stmt.where(Invocation.status == InvocationStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid invocation status filter '{status}'")

    if newest_first:
        stmt = stmt.order_by(Invocation.started_at.desc(), Invocation.id.desc())
    else:
        stmt = stmt.order_by(Invocation.started_at.asc(), Invocation.id.asc())

    result = await session.execute(stmt.limit(limit).execution_options(populate_existing=True))
    return list(result.scalars().all())

def compute_statistics(invocations: Iterable[Invocation]) -> JobStatistics:
    """
    Reduces a window of invocations.
    success rate = completed / total * 100 (2 decimals), 0 for an empty window.
    average duration = mean duration of completed runs (whole ms), 0 if none completed.
    Both round half up.
    """
    invocations = list(invocations)
    completed = [inv for inv in invocations if inv.status == InvocationStatus.COMPLETED]
    failed = [inv for inv in invocations if inv.status == InvocationStatus.FAILED]
    running = [inv for inv in invocations if inv.status == InvocationStatus.RUNNING]

    total = len(invocations)
    average = 0
    if completed:
        average = int(round_half_up(sum(inv.duration_ms or 0 for inv in completed) / len(completed)))

    return JobStatistics(
        total=total,
        completed=len(completed),
        failed=len(failed),
        running=len(running),
        average_duration_ms=average,
        success_rate_percent=round_half_up(len(completed) / total * 100, 2) if total else 0.0
    )

async def job_statistics(session: AsyncSession, job_id: UUID, limit: int = 50) -> JobStatistics:
    """
    Statistics over the most recent `limit` invocations only, not the full history.
    """
    return compute_statistics(await query_by_job(session, job_id, limit=limit))
