"""SchedulerClient against the in-process app."""
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from jobscheduler.utils.timeutils import utcnow
from jobscheduler_client import SchedulerAPIError, SchedulerClient


@pytest.fixture
async def scheduler_client(app):
    async with SchedulerClient("http://test", transport=httpx.ASGITransport(app=app)) as client:
        yield client


class TestSchedulerClient:
    async def test_lifecycle(self, app, scheduler_client) -> None:
        job = await scheduler_client.create_job("now", "immediate", payload={"action": "cleanup", "target": "tmp"})
        assert job["status"] == "executing"

        await app.state.signal_processor.process_batch()

        detail = await scheduler_client.get_job(job["id"], invocation_limit=10)
        assert detail["job"]["status"] == "completed"
        assert detail["invocations"][0]["output"]["target"] == "tmp"

        deleted = await scheduler_client.delete_job(job["id"])
        assert deleted["jobName"] == "now"

    async def test_list_with_filters(self, scheduler_client) -> None:
        execute_at = (utcnow() + timedelta(hours=1)).isoformat()
        await scheduler_client.create_job("later", "once", execute_at=execute_at)
        await scheduler_client.create_job("every-5", "cron", schedule_expression="rate(5 minutes)")

        jobs = await scheduler_client.list_jobs(job_type="once")
        assert [j["name"] for j in jobs] == ["later"]
        assert len(await scheduler_client.list_jobs(limit=1)) == 1

    async def test_validation_error(self, scheduler_client) -> None:
        with pytest.raises(SchedulerAPIError) as exc_info:
            await scheduler_client.create_job("x", "sometimes")
        assert exc_info.value.status_code == 400
        assert "Invalid job type" in exc_info.value.detail

    async def test_not_found(self, scheduler_client) -> None:
        with pytest.raises(SchedulerAPIError) as exc_info:
            await scheduler_client.get_job(uuid4())
        assert exc_info.value.status_code == 404
