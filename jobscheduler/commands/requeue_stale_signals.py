import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.models import DispatchSignal
from jobscheduler.domain.states import SignalStatus
from jobscheduler.api.v1.metrics import SIGNALS_REQUEUED_TOTAL
from jobscheduler.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

async def requeue_stale_signals(
    session: AsyncSession,
    claim_timeout_seconds: int = 300,
    limit: int = 100
) -> int:
    """
    Finds signals that were claimed but never acknowledged and puts them back
    to PENDING so they are delivered again.
    Returns number of signals recovered. Caller commits.
    """
    now = utcnow()
    cutoff = now - timedelta(seconds=claim_timeout_seconds)

    stmt = select(DispatchSignal).where(
        DispatchSignal.status == SignalStatus.CLAIMED,
        DispatchSignal.claimed_at < cutoff
    ).limit(limit).with_for_update(skip_locked=True)

    result = await session.execute(stmt)
    stale = result.scalars().all()

    if not stale:
        return 0

    for signal in stale:
        signal.status = SignalStatus.PENDING
        signal.claimed_at = None
        signal.last_error = "Claim expired (processor crash?)"
        logger.warning(f"Requeued dispatch signal {signal.id} for job {signal.job_id} after claim timeout")

    SIGNALS_REQUEUED_TOTAL.inc(len(stale))
    await session.flush()
    return len(stale)
