import asyncio
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobscheduler.db.models import DispatchSignal
from jobscheduler.domain.states import SignalStatus
from jobscheduler.api.v1.metrics import SIGNALS_PENDING
from jobscheduler.scheduler.dispatcher import Dispatcher
from jobscheduler.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class SignalProcessor:
    """
    Delivers dispatch signals to the dispatcher, at least once.

    A batch is claimed in one short transaction, then dispatched concurrently
    (bounded by `concurrency`) with no transaction open. A signal is marked
    DONE only after dispatch returns; failures leave it CLAIMED, and the ticker
    requeues it once the claim times out.
    """
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        interval: float = 0.5,
        batch_size: int = 50,
        concurrency: int = 10,
        max_attempts: int = 5
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.interval = interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._semaphore = asyncio.Semaphore(concurrency)

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("SignalProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("SignalProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in SignalProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self) -> int:
        signals = await self._claim_batch()
        if not signals:
            return 0

        await asyncio.gather(*(self._deliver(signal) for signal in signals))
        return len(signals)

    async def _claim_batch(self) -> list[DispatchSignal]:
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(DispatchSignal)
                    .where(DispatchSignal.status == SignalStatus.PENDING)
                    .order_by(DispatchSignal.created_at.asc(), DispatchSignal.id.asc())
                    .with_for_update(skip_locked=True)
                    .limit(self.batch_size)
                )
                signals = list((await session.execute(stmt)).scalars().all())

                now = utcnow()
                for signal in signals:
                    signal.status = SignalStatus.CLAIMED
                    signal.claimed_at = now
                    signal.attempts += 1

            for signal in signals:
                session.expunge(signal)

        if signals:
            SIGNALS_PENDING.dec(len(signals))
        return signals

    async def _deliver(self, signal: DispatchSignal):
        async with self._semaphore:
            try:
                await self.dispatcher.dispatch(signal.job_id, signal.payload)
            except Exception as e:
                logger.error(f"Failed to dispatch signal {signal.id} for job {signal.job_id} (attempt {signal.attempts}): {e}")
                await self._mark_failed(signal, str(e))
                return

            await self._set_status(signal.id, SignalStatus.DONE, processed_at=utcnow())

    async def _mark_failed(self, signal: DispatchSignal, error: str):
        if signal.attempts >= self.max_attempts:
            logger.error(f"Giving up on signal {signal.id} for job {signal.job_id} after {signal.attempts} attempts")
            await self._set_status(signal.id, SignalStatus.DEAD, last_error=error, processed_at=utcnow())
        else:
            # Stays CLAIMED until the claim times out and the ticker requeues it
            await self._set_status(signal.id, SignalStatus.CLAIMED, last_error=error)

    async def _set_status(self, signal_id: int, status: SignalStatus, **values):
        async with self.session_factory() as session:
            await session.execute(
                update(DispatchSignal)
                .where(DispatchSignal.id == signal_id)
                .values(status=status, **values)
            )
            await session.commit()
