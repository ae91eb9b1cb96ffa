from enum import StrEnum, auto

class JobType(StrEnum):
    IMMEDIATE = auto()        # Dispatched once, right after creation
    ONCE = auto()             # Dispatched once at execute_at
    CRON = auto()             # Dispatched on every schedule fire

class JobStatus(StrEnum):
    SCHEDULED = auto()        # Waiting for its rule to fire
    EXECUTING = auto()        # Immediate job waiting for / in dispatch
    COMPLETED = auto()        # Terminal (immediate/once)
    FAILED = auto()           # Terminal (immediate/once)

class RuleKind(StrEnum):
    ONE_SHOT = auto()
    RECURRING = auto()

class InvocationStatus(StrEnum):
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()

class ErrorKind(StrEnum):
    EXECUTION = auto()        # Job logic raised
    TIMEOUT = auto()          # Job logic exceeded the execution timeout
    INTERNAL = auto()         # Scheduler-side failure during dispatch

class SignalStatus(StrEnum):
    PENDING = auto()
    CLAIMED = auto()
    DONE = auto()
    DEAD = auto()             # Gave up after max attempts


def status_after_run(job_type: JobType, succeeded: bool) -> JobStatus:
    """
    Status a job lands in once an invocation has been finalized.
    Cron jobs never reach a terminal state on their own.
    """
    if job_type == JobType.CRON:
        return JobStatus.SCHEDULED
    return JobStatus.COMPLETED if succeeded else JobStatus.FAILED


def initial_status(job_type: JobType) -> JobStatus:
    if job_type == JobType.IMMEDIATE:
        return JobStatus.EXECUTING
    return JobStatus.SCHEDULED
