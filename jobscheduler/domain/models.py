from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from jobscheduler.domain.states import JobType, InvocationStatus, ErrorKind

@dataclass
class JobSpec:
    """Unvalidated job submission. Types are checked by create_job."""
    name: str
    type: str
    description: str = ""
    schedule_expression: Optional[str] = None
    execute_at: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class JobContext:
    """What the executor gets to see of a job."""
    id: UUID
    name: str
    description: str
    type: JobType
    payload: dict[str, Any]

@dataclass
class JobStatistics:
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    average_duration_ms: int = 0
    success_rate_percent: float = 0.0

@dataclass
class DispatchOutcome:
    invocation_id: UUID
    job_id: UUID
    status: InvocationStatus
    duration_ms: int
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    completed_at: Optional[datetime] = None
