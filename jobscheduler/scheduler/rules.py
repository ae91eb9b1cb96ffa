import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Rule
from jobscheduler.domain.errors import SchedulingError
from jobscheduler.domain.schedule import next_fire_time, parse_schedule_expression
from jobscheduler.domain.states import RuleKind
from jobscheduler.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

async def register_one_shot(
    session: AsyncSession,
    job_id: UUID,
    at: datetime,
    payload: Optional[dict[str, Any]] = None
) -> UUID:
    """
    Registers a rule that fires once at `at`.
    Raises SchedulingError if `at` is not strictly in the future.
    """
    now = utcnow()
    at = ensure_utc(at)
    if at <= now:
        raise SchedulingError(f"Cannot schedule job {job_id} at {at.isoformat()}: not in the future")

    rule = Rule(
        job_id=job_id,
        kind=RuleKind.ONE_SHOT,
        run_at=at,
        next_fire_at=at,
        enabled=True,
        payload=payload or {},
        created_at=now
    )
    session.add(rule)
    await session.flush()

    logger.info(f"Registered one-shot rule {rule.id} for job {job_id} at {at.isoformat()}")
    return rule.id

async def register_recurring(
    session: AsyncSession,
    job_id: UUID,
    expression: str,
    payload: Optional[dict[str, Any]] = None
) -> UUID:
    """
    Registers a rule that fires on every match of `expression`.
    Raises ValidationError on a malformed expression.
    """
    schedule = parse_schedule_expression(expression)
    now = utcnow()

    rule = Rule(
        job_id=job_id,
        kind=RuleKind.RECURRING,
        schedule_expression=schedule.source,
        next_fire_at=next_fire_time(schedule, now, anchor=now),
        enabled=True,
        payload=payload or {},
        created_at=now
    )
    session.add(rule)
    await session.flush()

    logger.info(f"Registered recurring rule {rule.id} for job {job_id} ({schedule.source}), first fire {rule.next_fire_at.isoformat()}")
    return rule.id

async def unregister(session: AsyncSession, rule_id: UUID) -> bool:
    """
    Removes a rule. Removing a rule that is already gone is not an error.
    Returns True if a row was deleted.
    """
    result = await session.execute(delete(Rule).where(Rule.id == rule_id))
    removed = (result.rowcount or 0) > 0
    if removed:
        logger.info(f"Unregistered rule {rule_id}")
    else:
        logger.debug(f"Rule {rule_id} already absent, nothing to unregister")
    return removed

async def get_rule(session: AsyncSession, rule_id: UUID) -> Optional[Rule]:
    return await session.get(Rule, rule_id, populate_existing=True)

async def count_active_rules(session: AsyncSession) -> int:
    stmt = select(func.count()).select_from(Rule).where(Rule.enabled.is_(True))
    return (await session.execute(stmt)).scalar() or 0
