import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobscheduler.api.v1.metrics import LEADER_STATUS
from jobscheduler.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from jobscheduler.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Background ticker. Only the leader fires rules; every instance refreshes gauges.
    """
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 1.0,
        batch_size: int = 100,
        claim_timeout: int = 300
    ):
        self.session_factory = session_factory
        self.interval = interval
        self.batch_size = batch_size
        self.claim_timeout = claim_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._is_leader = False

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def tick(self, session: AsyncSession) -> int:
        """One iteration. Returns the number of dispatch signals emitted."""
        emitted = 0
        is_leader = await try_advisory_lock(session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting scheduler.")
                self._is_leader = True
                LEADER_STATUS.set(1)

            emitted = await run_leader_tasks(session, batch_size=self.batch_size, claim_timeout=self.claim_timeout)
            if emitted:
                logger.info(f"Ticker emitted {emitted} dispatch signal(s)")
        else:
            if self._is_leader:
                logger.info("Lost leadership. Stopping scheduler.")
                self._is_leader = False
                LEADER_STATUS.set(0)

        await run_metrics_tasks(session)
        return emitted

    async def _loop(self):
        # One dedicated connection across ticks: the advisory lock belongs to it
        engine = self.session_factory.kw["bind"]
        connection = None
        session = None
        while self._running:
            try:
                if not session:
                    connection = await engine.connect()
                    session = self.session_factory(bind=connection)
                await self.tick(session)

            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # If DB error, close session and retry to reconnect
                if session:
                    await session.close()
                    session = None
                if connection:
                    await connection.close()
                    connection = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
        if connection:
            await connection.close()
