#!/usr/bin/env python3
import asyncio
import sys
import os
from datetime import datetime, timedelta, timezone

sys.path.append(os.getcwd())

import httpx
from jobscheduler_client import SchedulerClient

API_URL = os.environ.get("SCHEDULER_API_URL", "http://localhost:8000")

async def wait_for_status(client: SchedulerClient, job_id, expected: str, timeout: float = 30.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        detail = await client.get_job(job_id)
        if detail["job"]["status"] == expected:
            return detail
        await asyncio.sleep(1)
    return await client.get_job(job_id)

async def verify():
    # 0. Wait for API Readiness
    print("Waiting for API to be ready...")
    async with httpx.AsyncClient(base_url=API_URL, timeout=5.0) as check_client:
        for i in range(30):
            try:
                resp = await check_client.get("/health")
                if resp.status_code == 200:
                    print("API is ready!")
                    break
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
        else:
            print("API failed to become ready.")
            return False

    ok = True
    async with SchedulerClient(API_URL, timeout=30.0) as client:
        # 1. Immediate job
        print("Submitting immediate job...")
        job = await client.create_job(
            "e2e-immediate", "immediate",
            payload={"action": "process-data", "data": [1, 2, 3]}
        )
        detail = await wait_for_status(client, job["id"], "completed")
        print(f"Immediate job status: {detail['job']['status']}, invocations: {detail['statistics']['total']}")
        if detail["job"]["status"] != "completed":
            print("FAILURE: immediate job did not complete.")
            ok = False

        # 2. Once job a few seconds out
        execute_at = (datetime.now(timezone.utc) + timedelta(seconds=3)).isoformat()
        print(f"Submitting once job for {execute_at}...")
        job = await client.create_job(
            "e2e-once", "once",
            execute_at=execute_at,
            payload={"action": "generate-report"}
        )
        detail = await wait_for_status(client, job["id"], "completed")
        print(f"Once job status: {detail['job']['status']}, ruleId: {detail['job']['ruleId']}")
        if detail["job"]["status"] != "completed" or detail["job"]["ruleId"] is not None:
            print("FAILURE: once job did not complete or kept its rule.")
            ok = False

        # 3. Cleanup
        deleted = await client.delete_job(job["id"])
        print(f"Deleted: {deleted['jobName']}")

    print("SUCCESS: end-to-end flow verified." if ok else "FAILURE: see above.")
    return ok

if __name__ == "__main__":
    sys.exit(0 if asyncio.run(verify()) else 1)
