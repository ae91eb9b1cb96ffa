import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

class SchedulerAPIError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")

class SchedulerClient:
    """Async client for the job scheduler HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise

        if resp.is_error:
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            log_fn = logger.info if resp.status_code in (400, 404) else logger.warning
            log_fn("%s %s rejected with status=%s: %s", method, path, resp.status_code, detail)
            raise SchedulerAPIError(resp.status_code, detail)

        return resp.json()

    async def create_job(
        self,
        name: str,
        job_type: str,
        description: str = "",
        schedule_expression: Optional[str] = None,
        execute_at: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Creates a job. Returns the created job document.
        """
        body: Dict[str, Any] = {"name": name, "type": job_type, "description": description}
        if schedule_expression:
            body["scheduleExpression"] = schedule_expression
        if execute_at:
            body["executeAt"] = execute_at
        if payload is not None:
            body["payload"] = payload

        data = await self._request("POST", "/jobs", json=body)
        return data["job"]

    async def list_jobs(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> list[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if job_type:
            params["type"] = job_type
        if status:
            params["status"] = status
        if limit:
            params["limit"] = limit

        data = await self._request("GET", "/jobs", params=params)
        return data["jobs"]

    async def get_job(
        self,
        job_id: UUID,
        invocation_limit: Optional[int] = None,
        invocation_status: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Returns {"job", "invocations", "statistics"}.
        """
        params: Dict[str, Any] = {}
        if invocation_limit:
            params["invocationLimit"] = invocation_limit
        if invocation_status:
            params["invocationStatus"] = invocation_status

        return await self._request("GET", f"/jobs/{job_id}", params=params)

    async def delete_job(self, job_id: UUID) -> Dict[str, Any]:
        return await self._request("DELETE", f"/jobs/{job_id}")

    async def close(self):
        await self.client.aclose()
