"""
Built-in job logic, selected by payload["action"].

Handlers receive the JobContext and return a JSON-serializable dict that is
stored as the invocation output. Raising fails the invocation.
"""
import logging
import time
from typing import Optional

import httpx

from jobscheduler.domain.errors import ExecutionError
from jobscheduler.domain.models import JobContext
from jobscheduler.job_logic.registry import ActionRegistry
from jobscheduler.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

async def process_data(job: JobContext) -> dict:
    data = job.payload.get("data") or []
    if not isinstance(data, list):
        raise ExecutionError("payload.data must be a list")

    processed_at = utcnow().isoformat()
    processed = [
        {**item, "processed": True, "processedAt": processed_at, "processedBy": str(job.id)}
        for item in data
        if isinstance(item, dict)
    ]
    return {
        "message": "Data processed successfully",
        "itemsProcessed": len(processed),
        "data": processed,
    }

async def send_notification(job: JobContext) -> dict:
    recipient = job.payload.get("recipient")
    if not recipient:
        raise ExecutionError("payload.recipient is required for send-notification")

    # Delivery channel is deployment specific; the notification is logged here.
    logger.info(f"Notification for {recipient}: {job.payload.get('message')}")
    return {
        "message": "Notification sent successfully",
        "recipient": recipient,
        "sentAt": utcnow().isoformat(),
    }

async def perform_cleanup(job: JobContext) -> dict:
    target = job.payload.get("target", "unknown")
    older_than = job.payload.get("olderThan", "30days")
    records = job.payload.get("records") or []

    logger.info(f"Cleaning up {target} older than {older_than}")
    return {
        "message": "Cleanup completed successfully",
        "target": target,
        "olderThan": older_than,
        "recordsDeleted": len(records),
        "cleanupDate": utcnow().isoformat(),
    }

async def generate_report(job: JobContext) -> dict:
    report_type = job.payload.get("reportType", "general")
    base_url = job.payload.get("reportBaseUrl", "https://example.com/reports").rstrip("/")
    rows = job.payload.get("data") or []

    logger.info(f"Generating {report_type} report for job {job.id}")
    return {
        "message": "Report generated successfully",
        "reportType": report_type,
        "generatedAt": utcnow().isoformat(),
        "reportUrl": f"{base_url}/{job.id}.pdf",
        "recordsIncluded": len(rows),
    }

def make_api_call_handler(client: httpx.AsyncClient):
    async def call_external_api(job: JobContext) -> dict:
        endpoint = job.payload.get("endpoint")
        if not endpoint:
            raise ExecutionError("payload.endpoint is required for api-call")
        method = str(job.payload.get("method", "GET")).upper()

        headers = dict(job.payload.get("headers") or {})
        body = job.payload.get("body") if method != "GET" else None

        logger.info(f"{method} {endpoint}")
        started = time.monotonic()
        try:
            resp = await client.request(method, endpoint, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExecutionError(f"{method} {endpoint} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ExecutionError(f"{method} {endpoint} failed: {e}") from e

        return {
            "message": "API call completed successfully",
            "endpoint": endpoint,
            "method": method,
            "status": resp.status_code,
            "responseTimeMs": round((time.monotonic() - started) * 1000),
        }
    return call_external_api

async def default_job_execution(job: JobContext) -> dict:
    return {
        "message": "Job completed successfully",
        "executedAt": utcnow().isoformat(),
        "jobName": job.name,
        "payload": job.payload,
    }

def build_default_registry(http_client: Optional[httpx.AsyncClient] = None) -> ActionRegistry:
    registry = ActionRegistry(fallback=default_job_execution)
    registry.register("process-data", process_data)
    registry.register("send-notification", send_notification)
    registry.register("cleanup", perform_cleanup)
    registry.register("generate-report", generate_report)
    if http_client is not None:
        registry.register("api-call", make_api_call_handler(http_client))
    return registry
