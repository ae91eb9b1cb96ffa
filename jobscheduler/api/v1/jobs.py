import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from jobscheduler.api.deps import AppSettings, DbSession
from jobscheduler.commands.create_job import create_job
from jobscheduler.commands.delete_job import delete_job
from jobscheduler.commands.invocations import compute_statistics, query_by_job
from jobscheduler.commands.query_jobs import get_job, list_jobs
from jobscheduler.domain.errors import JobNotFoundError, SchedulingError, ValidationError
from jobscheduler.domain.models import JobSpec

logger = logging.getLogger(__name__)

router = APIRouter()

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

class JobCreate(ApiModel):
    # Presence and values are checked by create_job so all callers get the same errors
    name: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    schedule_expression: Optional[str] = None
    execute_at: Optional[str] = None
    payload: Optional[dict[str, Any]] = None

class JobResponse(ApiModel):
    id: UUID
    name: str
    description: str
    type: str
    schedule_expression: Optional[str] = None
    execute_at: Optional[datetime] = None
    payload: dict[str, Any]
    status: str
    rule_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    last_executed_at: Optional[datetime] = None
    invocation_count: int

class InvocationResponse(ApiModel):
    id: UUID
    job_id: UUID
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input: dict[str, Any]
    output: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_trace: Optional[str] = None

class StatisticsResponse(ApiModel):
    total: int
    completed: int
    failed: int
    running: int
    average_duration_ms: int
    success_rate_percent: float

class JobCreatedResponse(ApiModel):
    message: str
    job: JobResponse

class JobListResponse(ApiModel):
    count: int
    jobs: list[JobResponse]

class JobDetailResponse(ApiModel):
    job: JobResponse
    invocations: list[InvocationResponse]
    statistics: StatisticsResponse

class JobDeletedResponse(ApiModel):
    message: str
    job_id: UUID
    job_name: str

def parse_job_id(job_id: str) -> UUID:
    # Ids are opaque to callers; one that does not parse cannot exist
    try:
        return UUID(job_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Job not found")

@router.post("", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_job_endpoint(body: JobCreate, session: DbSession):
    spec = JobSpec(
        name=body.name,
        type=body.type,
        description=body.description,
        schedule_expression=body.schedule_expression,
        execute_at=body.execute_at,
        payload=body.payload
    )
    try:
        job = await create_job(session, spec)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SchedulingError as e:
        logger.error(f"Error creating job: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create job: {e}")

    return JobCreatedResponse(message="Job created successfully", job=JobResponse.model_validate(job))

@router.get("", response_model=JobListResponse)
async def list_jobs_endpoint(
    session: DbSession,
    settings: AppSettings,
    job_type: Optional[str] = Query(None, alias="type"),
    job_status: Optional[str] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1)
):
    try:
        jobs = await list_jobs(
            session,
            job_type=job_type,
            status=job_status,
            limit=limit or settings.DEFAULT_LIST_LIMIT
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JobListResponse(count=len(jobs), jobs=[JobResponse.model_validate(j) for j in jobs])

@router.get("/{job_id}", response_model=JobDetailResponse)
async def get_job_endpoint(
    job_id: str,
    session: DbSession,
    settings: AppSettings,
    invocation_limit: Optional[int] = Query(None, alias="invocationLimit", ge=1),
    invocation_status: Optional[str] = Query(None, alias="invocationStatus")
):
    job_uuid = parse_job_id(job_id)
    try:
        job = await get_job(session, job_uuid)
        invocations = await query_by_job(
            session, job_uuid,
            status=invocation_status,
            limit=invocation_limit or settings.DEFAULT_INVOCATION_LIMIT
        )
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JobDetailResponse(
        job=JobResponse.model_validate(job),
        invocations=[InvocationResponse.model_validate(inv) for inv in invocations],
        statistics=StatisticsResponse.model_validate(compute_statistics(invocations))
    )

@router.delete("/{job_id}", response_model=JobDeletedResponse)
async def delete_job_endpoint(job_id: str, session: DbSession):
    job_uuid = parse_job_id(job_id)
    try:
        job = await delete_job(session, job_uuid)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobDeletedResponse(message="Job deleted successfully", job_id=job.id, job_name=job.name)
