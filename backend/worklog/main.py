import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from worklog.core.audit.service import AuditMiddleware
from worklog.core.enforcement.router import router as enforcement_router
from worklog.core.enforcement.service import run_sweeper
from worklog.core.locks.router import router as locks_router
from worklog.core.notifications.outbox import OutboxDispatcher, run_dispatcher
from worklog.core.notifications.router import router as notifications_router
from worklog.core.timer.router import router as timer_router
from worklog.core.timesheets.router import router as timesheets_router
from worklog.db.session import AsyncSessionLocal
from worklog.logging_config import configure_logging
from worklog.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    tasks: list[asyncio.Task] = []
    if settings.BACKGROUND_WORKERS_ENABLED:
        tasks.append(asyncio.create_task(
            run_sweeper(AsyncSessionLocal, settings.ENFORCEMENT_SWEEP_SECONDS), name="enforcement-sweeper",
        ))
        tasks.append(asyncio.create_task(
            run_dispatcher(OutboxDispatcher(AsyncSessionLocal), settings.OUTBOX_POLL_SECONDS), name="outbox-dispatcher",
        ))
        logger.info("background workers started")
    yield
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("background workers stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Worklog Engine API",
        version="0.1.0",
        docs_url="/docs" if settings.APP_DEBUG else None,
        redoc_url="/redoc" if settings.APP_DEBUG else None,
        lifespan=lifespan,
    )

    app.add_middleware(AuditMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.APP_DEBUG else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(timesheets_router)
    app.include_router(timer_router)
    app.include_router(locks_router)
    app.include_router(enforcement_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
