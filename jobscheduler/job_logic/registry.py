import logging
from typing import Any, Callable, Coroutine, Optional, Protocol, List

from jobscheduler.domain.models import JobContext

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext], Coroutine[Any, Any, dict]]
Middleware = Callable[[JobContext, Handler], Coroutine[Any, Any, dict]]

class JobExecutor(Protocol):
    """The only contract the dispatcher relies on. Raise to fail the run."""
    async def execute(self, job: JobContext) -> dict: ...

class ActionRegistry:
    """
    Routes a job to a handler by payload["action"].
    Unknown or missing actions go to the fallback handler.
    """
    def __init__(self, fallback: Handler):
        self.fallback = fallback
        self.handlers: dict[str, Handler] = {}
        self.middlewares: List[Middleware] = []

    def register(self, action: str, handler: Handler):
        if action in self.handlers:
            logger.warning(f"Replacing handler for action '{action}'")
        self.handlers[action] = handler

    def add_middleware(self, middleware: Middleware):
        self.middlewares.append(middleware)

    def resolve(self, action: Optional[str]) -> Handler:
        if action and action in self.handlers:
            return self.handlers[action]
        return self.fallback

    async def execute(self, job: JobContext) -> dict:
        action = job.payload.get("action") if isinstance(job.payload, dict) else None
        handler = self.resolve(action)
        logger.info(f"Executing job {job.id} ({job.name}, type {job.type}) with action '{action or 'default'}'")

        chain = handler
        # Apply middleware in reverse order (onion)
        for mw in reversed(self.middlewares):
            def make_wrapper(current_mw, current_chain):
                async def wrapper(ctx):
                    return await current_mw(ctx, current_chain)
                return wrapper
            chain = make_wrapper(mw, chain)

        return await chain(job)
