"""HTTP entry point: builds the FastAPI app around the editor services.

Run locally with:
    uvicorn main:app --reload --app-dir backend
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import API_VERSION, router, set_services
from config import configure_logging, settings
from models.database import EditorStore
from services import build_services, register_workspace_folders

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def _stop_task(task: asyncio.Task[None] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the store, services and reaper task for the life of the process.

    Startup creates the schema, registers workspace folders, wires the
    services, re-schedules sessions a previous process never started and
    launches the reaper loop. Shutdown stops the loop and cancels session
    tasks.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
        database_path=settings.database_path,
    )

    store = EditorStore(settings.database_path)
    await store.init()
    await register_workspace_folders(store, settings.workspace_root)

    services = build_services(store)
    set_services(services)
    app.state.services = services

    await services.session_manager.resume_unstarted()

    reaper_task = None
    if settings.reaper_enabled:
        reaper_task = services.reaper.start_reaper_loop(
            interval_seconds=settings.reaper_interval_seconds
        )
    app.state.reaper_task = reaper_task

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")

    await _stop_task(app.state.reaper_task)

    await services.session_manager.cleanup_all()

    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Workspace Editor Engine",
    description="Runs natural-language edit instructions against workspaces "
    "and streams their progress through resumable, cursor-based polling.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["editor"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Workspace Editor Engine API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
