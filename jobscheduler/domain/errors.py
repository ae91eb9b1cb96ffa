class SchedulerError(Exception):
    """Base exception for job scheduler errors."""
    pass

class ValidationError(SchedulerError):
    """Malformed or missing input. Never retried."""
    pass

class JobNotFoundError(SchedulerError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class SchedulingError(SchedulerError):
    """Rule registration or removal failed."""
    pass

class ExecutionError(SchedulerError):
    """Job logic failed. Always recorded as a failed invocation."""
    pass

class ExecutionTimeoutError(ExecutionError):
    def __init__(self, job_id, timeout: float):
        self.timeout = timeout
        super().__init__(f"Job {job_id} exceeded execution timeout of {timeout}s")

class InvalidInvocationStateError(SchedulerError):
    def __init__(self, invocation_id):
        super().__init__(f"Invocation {invocation_id} is not running (already finalized or missing)")

class TransientStoreError(SchedulerError):
    """Store unavailable. Callers should retry."""
    pass
