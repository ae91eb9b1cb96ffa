import asyncio
import logging
import traceback
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobscheduler.db.models import Invocation
from jobscheduler.commands.query_jobs import find_job
from jobscheduler.commands.invocations import start_invocation, finalize_invocation, record_invocation
from jobscheduler.commands.update_job_status import record_run
from jobscheduler.domain.errors import (
    ExecutionTimeoutError, InvalidInvocationStateError, JobNotFoundError, TransientStoreError
)
from jobscheduler.domain.models import DispatchOutcome, JobContext
from jobscheduler.domain.states import (
    ErrorKind, InvocationStatus, JobType, status_after_run
)
from jobscheduler.job_logic.registry import JobExecutor
from jobscheduler.scheduler.rules import unregister
from jobscheduler.api.v1.metrics import INVOCATIONS_TOTAL, INVOCATION_DURATION
from jobscheduler.utils.timeutils import duration_ms, utcnow

logger = logging.getLogger(__name__)

class Dispatcher:
    """
    Turns one fire (timer or immediate) into one execution attempt.

    Steps:
    1. Load the job; a missing job means it was deleted while scheduled -> no-op.
    2. Record a RUNNING invocation.
    3. Call the executor, bounded by the execution timeout. Errors and
       timeouts become a FAILED invocation, they never escape.
    4. Finalize the invocation.
    5. Update job status/counters (atomic increment).
    6. Once jobs: remove the rule (best-effort).

    No session is held open while the executor runs.
    Duplicate fires for the same job are possible and are simply recorded twice.
    """
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: JobExecutor,
        execution_timeout: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.execution_timeout = execution_timeout

    async def dispatch(self, job_id: UUID, payload: Optional[dict[str, Any]] = None) -> Optional[DispatchOutcome]:
        invocation_id: Optional[UUID] = None
        started_at = utcnow()
        payload = payload or {}

        try:
            # 1 + 2
            async with self.session_factory() as session:
                job = await find_job(session, job_id)
                if not job:
                    logger.warning(f"Job {job_id} not found, skipping dispatch (deleted while scheduled?)")
                    return None

                context = JobContext(
                    id=job.id,
                    name=job.name,
                    description=job.description or "",
                    type=JobType(job.type),
                    payload=payload
                )
                rule_id = job.rule_id

                invocation = await start_invocation(session, job_id, payload, started_at=started_at)
                invocation_id = invocation.id
                await session.commit()

            logger.info(f"Invocation {invocation_id} started for job {job_id} ({context.name}, type {context.type})")

            # 3
            output, error, error_kind, error_trace = await self._execute(context)
            completed_at = utcnow()

            async with self.session_factory() as session:
                # 4
                elapsed = await finalize_invocation(
                    session, invocation_id,
                    started_at=started_at,
                    completed_at=completed_at,
                    output=output,
                    error=error,
                    error_kind=error_kind,
                    error_trace=error_trace
                )
                await session.commit()

                # 5
                succeeded = error is None
                new_status = status_after_run(context.type, succeeded)
                try:
                    await record_run(
                        session, job_id, new_status,
                        executed_at=completed_at,
                        clear_rule=context.type == JobType.ONCE
                    )
                    await session.commit()
                    logger.info(f"Job {job_id} updated. New status: {new_status}")
                except JobNotFoundError:
                    await session.rollback()
                    logger.warning(f"Job {job_id} was deleted during execution; status not updated")

                # 6
                if context.type == JobType.ONCE and rule_id:
                    await self._cleanup_rule(session, job_id, rule_id)

            status = InvocationStatus.COMPLETED if succeeded else InvocationStatus.FAILED
            INVOCATIONS_TOTAL.labels(status=status, error_kind=error_kind or "").inc()
            INVOCATION_DURATION.observe(elapsed / 1000)

            return DispatchOutcome(
                invocation_id=invocation_id,
                job_id=job_id,
                status=status,
                duration_ms=elapsed,
                output=output,
                error=error,
                error_kind=error_kind,
                completed_at=completed_at
            )

        except Exception as e:
            logger.error(f"Critical error dispatching job {job_id}: {e}", exc_info=True)
            await self._record_internal_failure(job_id, invocation_id, started_at, payload, e)
            if isinstance(e, OperationalError):
                raise TransientStoreError(f"Store unavailable while dispatching job {job_id}") from e
            raise

    async def _execute(self, context: JobContext):
        """Returns (output, error, error_kind, error_trace)."""
        try:
            if self.execution_timeout:
                output = await asyncio.wait_for(self.executor.execute(context), timeout=self.execution_timeout)
            else:
                output = await self.executor.execute(context)
            logger.info(f"Job logic for {context.id} executed successfully")
            return output, None, None, None
        except asyncio.TimeoutError:
            err = ExecutionTimeoutError(context.id, self.execution_timeout)
            logger.error(str(err))
            return None, str(err), ErrorKind.TIMEOUT, None
        except Exception as e:
            logger.error(f"Error in job logic execution for {context.id}: {e}")
            return None, str(e) or type(e).__name__, ErrorKind.EXECUTION, traceback.format_exc()

    async def _cleanup_rule(self, session: AsyncSession, job_id: UUID, rule_id: UUID):
        try:
            await unregister(session, rule_id)
            await session.commit()
            logger.info(f"Cleaned up one-time rule {rule_id} for job {job_id}")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Error cleaning up rule {rule_id} for job {job_id}: {e}")

    async def _record_internal_failure(
        self,
        job_id: UUID,
        invocation_id: Optional[UUID],
        started_at,
        payload: dict[str, Any],
        error: Exception
    ):
        completed_at = utcnow()
        try:
            async with self.session_factory() as session:
                if invocation_id:
                    await finalize_invocation(
                        session, invocation_id,
                        started_at=started_at,
                        completed_at=completed_at,
                        error=str(error) or type(error).__name__,
                        error_kind=ErrorKind.INTERNAL,
                        error_trace=traceback.format_exc()
                    )
                else:
                    await record_invocation(session, Invocation(
                        job_id=job_id,
                        status=InvocationStatus.FAILED,
                        started_at=started_at,
                        completed_at=completed_at,
                        duration_ms=duration_ms(started_at, completed_at),
                        input=payload,
                        error=str(error) or type(error).__name__,
                        error_kind=ErrorKind.INTERNAL,
                        error_trace=traceback.format_exc()
                    ))
                await session.commit()
            INVOCATIONS_TOTAL.labels(status=InvocationStatus.FAILED, error_kind=ErrorKind.INTERNAL).inc()
        except (SQLAlchemyError, InvalidInvocationStateError) as db_error:
            logger.error(f"Error recording failed invocation for job {job_id}: {db_error}")
