"""Action registry and built-in handlers."""
from uuid import uuid4

import httpx
import pytest

from jobscheduler.domain.errors import ExecutionError
from jobscheduler.domain.models import JobContext
from jobscheduler.domain.states import JobType
from jobscheduler.job_logic.handlers import (
    build_default_registry,
    generate_report,
    make_api_call_handler,
    perform_cleanup,
    process_data,
    send_notification,
)
from jobscheduler.job_logic.registry import ActionRegistry


def context(**payload) -> JobContext:
    return JobContext(id=uuid4(), name="test-job", description="", type=JobType.IMMEDIATE, payload=payload)


# ============================================================================
# ActionRegistry
# ============================================================================


class TestActionRegistry:
    async def test_routes_by_action(self) -> None:
        async def fallback(job):
            return {"handler": "fallback"}

        async def special(job):
            return {"handler": "special"}

        registry = ActionRegistry(fallback=fallback)
        registry.register("special", special)

        assert await registry.execute(context(action="special")) == {"handler": "special"}
        assert await registry.execute(context(action="unknown")) == {"handler": "fallback"}
        assert await registry.execute(context()) == {"handler": "fallback"}

    async def test_middleware_wraps_in_order(self) -> None:
        seen = []

        async def handler(job):
            seen.append("handler")
            return {"ok": True}

        def tag(name):
            async def middleware(job, call_next):
                seen.append(f"{name}:before")
                result = await call_next(job)
                seen.append(f"{name}:after")
                return result
            return middleware

        registry = ActionRegistry(fallback=handler)
        registry.add_middleware(tag("outer"))
        registry.add_middleware(tag("inner"))

        assert await registry.execute(context()) == {"ok": True}
        assert seen == ["outer:before", "inner:before", "handler", "inner:after", "outer:after"]


# ============================================================================
# Built-in handlers
# ============================================================================


class TestHandlers:
    async def test_process_data(self) -> None:
        job = context(data=[{"id": 1}, {"id": 2}, "skipped"])
        result = await process_data(job)

        assert result["itemsProcessed"] == 2
        assert all(item["processed"] for item in result["data"])
        assert result["data"][0]["processedBy"] == str(job.id)

    async def test_process_data_rejects_non_list(self) -> None:
        with pytest.raises(ExecutionError):
            await process_data(context(data="nope"))

    async def test_send_notification(self) -> None:
        result = await send_notification(context(recipient="ops@example.com", message="hi"))
        assert result["recipient"] == "ops@example.com"

    async def test_send_notification_requires_recipient(self) -> None:
        with pytest.raises(ExecutionError, match="recipient"):
            await send_notification(context())

    async def test_cleanup_defaults(self) -> None:
        result = await perform_cleanup(context(records=[1, 2, 3]))
        assert result["target"] == "unknown"
        assert result["olderThan"] == "30days"
        assert result["recordsDeleted"] == 3

    async def test_generate_report(self) -> None:
        job = context(reportType="weekly", reportBaseUrl="https://reports.local/")
        result = await generate_report(job)
        assert result["reportType"] == "weekly"
        assert result["reportUrl"] == f"https://reports.local/{job.id}.pdf"

    async def test_default_registry_falls_back(self) -> None:
        registry = build_default_registry()
        result = await registry.execute(context(action="api-call", endpoint="http://x"))
        # No HTTP client given, so api-call is not registered
        assert result["message"] == "Job completed successfully"
        assert result["jobName"] == "test-job"


class TestApiCall:
    async def test_success(self) -> None:
        requests = []

        def respond(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202, json={"accepted": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(respond)) as client:
            handler = make_api_call_handler(client)
            result = await handler(context(endpoint="https://api.local/hook", method="post", body={"k": "v"}))

        assert result["status"] == 202
        assert result["method"] == "POST"
        assert result["responseTimeMs"] >= 0
        assert requests[0].method == "POST"
        assert requests[0].url == "https://api.local/hook"

    async def test_error_status_fails_the_run(self) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            handler = make_api_call_handler(client)
            with pytest.raises(ExecutionError, match="500"):
                await handler(context(endpoint="https://api.local/hook"))

    async def test_requires_endpoint(self) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
            with pytest.raises(ExecutionError, match="endpoint"):
                await make_api_call_handler(client)(context())
