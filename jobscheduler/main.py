import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from jobscheduler.settings import Settings, settings as default_settings
from jobscheduler.api.v1.jobs import router as jobs_router
from jobscheduler.api.v1.admin import router as admin_router
from jobscheduler.api.v1.metrics import router as metrics_router
from jobscheduler.domain.errors import TransientStoreError
from jobscheduler.db.session import build_engine, build_session_factory, create_tables
from jobscheduler.job_logic.handlers import build_default_registry
from jobscheduler.job_logic.registry import JobExecutor
from jobscheduler.scheduler.dispatcher import Dispatcher
from jobscheduler.scheduler.service import SchedulerService
from jobscheduler.services.signals import SignalProcessor

logger = logging.getLogger(__name__)

def configure_logging(level: str):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

def format_validation_errors(errors) -> str:
    """
    Flattens pydantic errors into one message, e.g.
    "body.name: Input should be a valid string; query.limit: Input should be greater than or equal to 1"
    """
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"

def create_app(app_settings: Optional[Settings] = None, executor: Optional[JobExecutor] = None) -> FastAPI:
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(app_settings.LOG_LEVEL)

        engine = build_engine(app_settings.SQLALCHEMY_DATABASE_URI)
        session_factory = build_session_factory(engine)

        # 1. Bootstrap schema (retry while the database is still coming up)
        if app_settings.AUTO_CREATE_TABLES:
            for i in range(10):
                try:
                    await create_tables(engine)
                    break
                except OperationalError as e:
                    logger.warning(f"Bootstrap: database not ready, retrying in 2s... ({i+1}/10): {e}")
                    await asyncio.sleep(2)
            else:
                logger.error("Bootstrap: giving up on table creation, continuing without it")

        # 2. Wire collaborators
        http_client = httpx.AsyncClient(timeout=30.0)
        job_executor = executor or build_default_registry(http_client)
        dispatcher = Dispatcher(
            session_factory,
            job_executor,
            execution_timeout=app_settings.EXECUTION_TIMEOUT_SECONDS
        )
        scheduler = SchedulerService(
            session_factory,
            interval=app_settings.TICK_INTERVAL_SECONDS,
            batch_size=app_settings.TICK_BATCH_SIZE,
            claim_timeout=app_settings.SIGNAL_CLAIM_TIMEOUT_SECONDS
        )
        signal_processor = SignalProcessor(
            session_factory,
            dispatcher,
            interval=app_settings.SIGNAL_POLL_INTERVAL_SECONDS,
            batch_size=app_settings.SIGNAL_BATCH_SIZE,
            concurrency=app_settings.DISPATCH_CONCURRENCY,
            max_attempts=app_settings.SIGNAL_MAX_ATTEMPTS
        )

        app.state.settings = app_settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.dispatcher = dispatcher
        app.state.scheduler = scheduler
        app.state.signal_processor = signal_processor

        # 3. Start Ticker + Signal Processor
        if app_settings.SCHEDULER_ENABLED:
            await scheduler.start()
            await signal_processor.start()

        yield

        # Shutdown
        if app_settings.SCHEDULER_ENABLED:
            await scheduler.stop()
            await signal_processor.stop()
        await http_client.aclose()
        await engine.dispose()

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Amz-Date", "Authorization", "X-Api-Key"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": format_validation_errors(exc.errors())})

    @app.exception_handler(TransientStoreError)
    @app.exception_handler(OperationalError)
    async def store_unavailable_handler(request: Request, exc: Exception):
        logger.error(f"Store unavailable during {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Store unavailable, retry later"})

    app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
    app.include_router(admin_router, prefix="/admin", tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

app = create_app()
