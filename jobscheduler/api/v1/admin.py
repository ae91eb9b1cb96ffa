from fastapi import APIRouter

from jobscheduler.api.deps import AppSettings, DbSession
from jobscheduler.commands.requeue_stale_signals import requeue_stale_signals
from jobscheduler.scheduler.ticker import fire_due_rules

router = APIRouter()

@router.post("/tick")
async def trigger_tick(session: DbSession, settings: AppSettings):
    """Fires due rules now instead of waiting for the next ticker iteration."""
    emitted = await fire_due_rules(session, limit=settings.TICK_BATCH_SIZE)
    await session.commit()
    return {"signalsEmitted": emitted}

@router.post("/requeue-signals")
async def trigger_requeue_signals(session: DbSession, settings: AppSettings):
    count = await requeue_stale_signals(session, claim_timeout_seconds=settings.SIGNAL_CLAIM_TIMEOUT_SECONDS)
    await session.commit()
    return {"requeuedCount": count}
