import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import Rule, DispatchSignal
from jobscheduler.domain.errors import ValidationError
from jobscheduler.domain.schedule import next_fire_time, parse_schedule_expression
from jobscheduler.domain.states import RuleKind, SignalStatus
from jobscheduler.commands.requeue_stale_signals import requeue_stale_signals
from jobscheduler.api.v1.metrics import RULE_FIRES_TOTAL, RULES_ACTIVE, SIGNALS_PENDING
from jobscheduler.scheduler.rules import count_active_rules
from jobscheduler.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

async def fire_due_rules(session: AsyncSession, now: Optional[datetime] = None, limit: int = 100) -> int:
    """
    Emits one dispatch signal per rule due at or before `now`.

    In the same transaction:
    - one-shot rules are deleted (consumed), so one registration fires once;
    - recurring rules move to their next fire time strictly after `now`
      (missed fires collapse into this one).
    Returns the number of signals written. Caller commits.
    """
    now = now or utcnow()

    stmt = (
        select(Rule)
        .where(
            Rule.enabled.is_(True),
            Rule.next_fire_at <= now
        )
        .order_by(Rule.next_fire_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    due = (await session.execute(stmt)).scalars().all()

    emitted = 0
    for rule in due:
        if rule.kind == RuleKind.RECURRING:
            try:
                schedule = parse_schedule_expression(rule.schedule_expression)
            except ValidationError as e:
                # Should not happen, expressions are validated on registration
                logger.error(f"Disabling rule {rule.id}: {e}")
                rule.enabled = False
                continue
            fired_for = rule.next_fire_at
            rule.last_fired_at = now
            rule.next_fire_at = next_fire_time(schedule, now, anchor=rule.created_at)
            logger.info(f"Recurring rule {rule.id} fired for {fired_for.isoformat()}, next at {rule.next_fire_at.isoformat()}")
        else:
            logger.info(f"One-shot rule {rule.id} fired for job {rule.job_id}, consuming it")
            await session.delete(rule)

        session.add(DispatchSignal(
            job_id=rule.job_id,
            rule_id=rule.id,
            payload=rule.payload or {},
            status=SignalStatus.PENDING,
            created_at=now
        ))
        RULE_FIRES_TOTAL.labels(kind=rule.kind).inc()
        emitted += 1

    await session.flush()
    return emitted

async def run_leader_tasks(session: AsyncSession, batch_size: int = 100, claim_timeout: int = 300) -> int:
    """
    Periodic maintenance run by the leader:
    1. Requeue dispatch signals whose claim timed out (processor crash?)
    2. Fire due rules
    """
    await requeue_stale_signals(session, claim_timeout_seconds=claim_timeout)
    emitted = await fire_due_rules(session, limit=batch_size)
    await session.commit()
    return emitted

async def run_metrics_tasks(session: AsyncSession):
    """Gauges refreshed on every instance so /metrics is current everywhere."""
    RULES_ACTIVE.set(await count_active_rules(session))

    q_pending = select(func.count()).select_from(DispatchSignal).where(DispatchSignal.status == SignalStatus.PENDING)
    SIGNALS_PENDING.set((await session.execute(q_pending)).scalar() or 0)
    await session.commit()
