from .client import SchedulerAPIError, SchedulerClient

__all__ = [
    "SchedulerAPIError",
    "SchedulerClient",
]
