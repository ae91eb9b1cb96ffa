"""Ticker, dispatch signals and the end-to-end fire -> dispatch path."""
import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select, update

from conftest import cron_spec, once_spec
from jobscheduler.commands.create_job import create_job
from jobscheduler.commands.invocations import query_by_job
from jobscheduler.commands.query_jobs import get_job
from jobscheduler.commands.requeue_stale_signals import requeue_stale_signals
from jobscheduler.db.models import DispatchSignal, Rule
from jobscheduler.domain.errors import TransientStoreError
from jobscheduler.domain.models import JobSpec
from jobscheduler.domain.states import InvocationStatus, JobStatus, SignalStatus
from jobscheduler.scheduler.rules import get_rule
from jobscheduler.scheduler.service import SchedulerService
from jobscheduler.scheduler.ticker import fire_due_rules
from jobscheduler.services.signals import SignalProcessor
from jobscheduler.utils.timeutils import utcnow


class FailingDispatcher:
    def __init__(self):
        self.calls = 0

    async def dispatch(self, job_id, payload):
        self.calls += 1
        raise TransientStoreError("store down")


async def signals(session_factory) -> list[DispatchSignal]:
    async with session_factory() as s:
        return list((await s.execute(select(DispatchSignal).order_by(DispatchSignal.id))).scalars().all())


async def fire_at(session_factory, when) -> int:
    async with session_factory() as s:
        emitted = await fire_due_rules(s, now=when)
        await s.commit()
        return emitted


# ============================================================================
# fire_due_rules
# ============================================================================


class TestFireDueRules:
    async def test_nothing_due(self, session, session_factory) -> None:
        await create_job(session, once_spec(in_seconds=3600))
        assert await fire_at(session_factory, utcnow()) == 0
        assert await signals(session_factory) == []

    async def test_one_shot_rule_is_consumed(self, session, session_factory) -> None:
        job = await create_job(session, once_spec(payload={"action": "cleanup"}))
        rule_id = job.rule_id

        assert await fire_at(session_factory, job.execute_at + timedelta(seconds=1)) == 1
        # Consumed: a second pass finds nothing
        assert await fire_at(session_factory, job.execute_at + timedelta(seconds=2)) == 0

        async with session_factory() as s:
            assert await s.get(Rule, rule_id) is None

        [signal] = await signals(session_factory)
        assert signal.job_id == job.id
        assert signal.rule_id == rule_id
        assert signal.payload == {"action": "cleanup"}
        assert signal.status == SignalStatus.PENDING

    async def test_recurring_rule_advances(self, session, session_factory) -> None:
        job = await create_job(session, cron_spec(expression="rate(15 minutes)"))
        async with session_factory() as s:
            first = (await get_rule(s, job.rule_id)).next_fire_at

        assert await fire_at(session_factory, first) == 1

        async with session_factory() as s:
            rule = await get_rule(s, job.rule_id)
            assert rule.last_fired_at == first
            assert rule.next_fire_at == first + timedelta(minutes=15)

    async def test_missed_fires_collapse(self, session, session_factory) -> None:
        job = await create_job(session, cron_spec(expression="rate(15 minutes)"))
        async with session_factory() as s:
            first = (await get_rule(s, job.rule_id)).next_fire_at

        # An hour late: one signal, next fire lands on the schedule grid
        assert await fire_at(session_factory, first + timedelta(minutes=61)) == 1

        async with session_factory() as s:
            rule = await get_rule(s, job.rule_id)
            assert rule.next_fire_at == first + timedelta(minutes=75)

    async def test_disabled_rules_are_skipped(self, session, session_factory) -> None:
        job = await create_job(session, once_spec())
        async with session_factory() as s:
            await s.execute(update(Rule).where(Rule.id == job.rule_id).values(enabled=False))
            await s.commit()

        assert await fire_at(session_factory, job.execute_at + timedelta(seconds=1)) == 0


# ============================================================================
# SignalProcessor
# ============================================================================


class TestSignalProcessor:
    async def test_immediate_job_runs(self, session, session_factory, processor) -> None:
        job = await create_job(session, JobSpec(name="now", type="immediate", payload={"x": 1}))

        assert await processor.process_batch() == 1
        assert await processor.process_batch() == 0

        [signal] = await signals(session_factory)
        assert signal.status == SignalStatus.DONE
        assert signal.attempts == 1
        assert signal.processed_at is not None

        async with session_factory() as s:
            job = await get_job(s, job.id)
            assert job.status == JobStatus.COMPLETED
            assert job.invocation_count == 1

    async def test_once_job_end_to_end(self, session, session_factory, processor) -> None:
        job = await create_job(session, once_spec())

        await fire_at(session_factory, job.execute_at)
        assert await processor.process_batch() == 1

        async with session_factory() as s:
            job = await get_job(s, job.id)
            assert job.status == JobStatus.COMPLETED
            assert job.rule_id is None
            assert job.invocation_count == 1

    async def test_rate_job_fired_three_times(self, session, session_factory, processor) -> None:
        job = await create_job(session, cron_spec(expression="rate(15 minutes)"))

        for _ in range(3):
            async with session_factory() as s:
                due = (await get_rule(s, job.rule_id)).next_fire_at
            assert await fire_at(session_factory, due) == 1
            assert await processor.process_batch() == 1

        async with session_factory() as s:
            job = await get_job(s, job.id)
            invocations = await query_by_job(s, job.id)

        assert job.status == JobStatus.SCHEDULED
        assert job.invocation_count == 3
        assert len(invocations) == 3
        assert all(inv.status == InvocationStatus.COMPLETED for inv in invocations)
        started = [inv.started_at for inv in invocations]
        assert started == sorted(started, reverse=True)

    async def test_failed_delivery_is_retried_then_dead(self, session, session_factory) -> None:
        dispatcher = FailingDispatcher()
        processor = SignalProcessor(session_factory, dispatcher, concurrency=1, max_attempts=2)
        await create_job(session, JobSpec(name="now", type="immediate"))

        assert await processor.process_batch() == 1
        [signal] = await signals(session_factory)
        assert signal.status == SignalStatus.CLAIMED
        assert signal.attempts == 1
        assert signal.last_error == "store down"

        # Still claimed, so not picked up again until requeued
        assert await processor.process_batch() == 0

        async with session_factory() as s:
            assert await requeue_stale_signals(s, claim_timeout_seconds=0) == 1
            await s.commit()

        assert await processor.process_batch() == 1
        [signal] = await signals(session_factory)
        assert signal.status == SignalStatus.DEAD
        assert signal.attempts == 2
        assert signal.processed_at is not None
        assert dispatcher.calls == 2

    async def test_background_loop(self, session, session_factory, dispatcher) -> None:
        processor = SignalProcessor(session_factory, dispatcher, interval=0.05, concurrency=1)
        job = await create_job(session, JobSpec(name="bg", type="immediate"))

        await processor.start()
        try:
            for _ in range(100):
                async with session_factory() as s:
                    status = (await get_job(s, job.id)).status
                if status == JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.05)
        finally:
            await processor.stop()

        assert status == JobStatus.COMPLETED


# ============================================================================
# Stale claims + ticker service
# ============================================================================


class TestRequeueStaleSignals:
    async def test_only_expired_claims(self, session) -> None:
        now = utcnow()
        stale = DispatchSignal(job_id=uuid4(), status=SignalStatus.CLAIMED, claimed_at=now - timedelta(minutes=10), attempts=1)
        fresh = DispatchSignal(job_id=uuid4(), status=SignalStatus.CLAIMED, claimed_at=now, attempts=1)
        done = DispatchSignal(job_id=uuid4(), status=SignalStatus.DONE, claimed_at=now - timedelta(hours=1), attempts=1)
        session.add_all([stale, fresh, done])
        await session.commit()

        assert await requeue_stale_signals(session, claim_timeout_seconds=300) == 1
        await session.commit()

        assert stale.status == SignalStatus.PENDING
        assert stale.claimed_at is None
        assert "Claim expired" in stale.last_error
        assert fresh.status == SignalStatus.CLAIMED
        assert done.status == SignalStatus.DONE


class TestSchedulerService:
    async def test_tick_fires_due_rules(self, session, session_factory) -> None:
        job = await create_job(session, once_spec())
        async with session_factory() as s:
            await s.execute(
                update(Rule).where(Rule.id == job.rule_id).values(next_fire_at=utcnow() - timedelta(seconds=1))
            )
            await s.commit()

        service = SchedulerService(session_factory)
        async with session_factory() as s:
            assert await service.tick(s) == 1
            assert await service.tick(s) == 0

        [signal] = await signals(session_factory)
        assert signal.job_id == job.id
