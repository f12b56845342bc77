from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from copychu import __version__
from copychu.api.v1.events import router as events_router
from copychu.api.v1.quota import router as quota_router
from copychu.api.v1.runs import router as runs_router
from copychu.api.v1.schedules import router as schedules_router
from copychu.api.v1.stats import router as stats_router
from copychu.config.config import AppSettings
from copychu.config.runtime import get_settings
from copychu.core.runtime.runtime_services import install_services
from copychu.services.container.default_container import build_default_container

logger = logging.getLogger("copychu.server")


def create_app(
    *,
    workspace: Optional[str] = None,
    cfg: Optional[AppSettings] = None,
    log_level: Optional[str] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Builds the FastAPI app, registers routers, and installs all services
    into app.state.container (and globally via install_services()).
    """

    # Resolve settings and container up front so lifespan can capture them
    settings = cfg or get_settings()
    if log_level:
        settings.logging.level = log_level.upper()

    container = build_default_container(root=workspace, cfg=settings, configure_logging=configure_logging)
    settings = container.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- Startup: quota watcher and scheduler ---
        app.state.settings = settings
        app.state.container = container

        await container.quota_monitor.start()
        if settings.scheduler.enabled:
            await container.scheduler.start()
        logger.info("Orchestrator ready (workspace=%s)", container.root)

        try:
            # Hand control back to FastAPI / TestClient
            yield
        finally:
            # --- Shutdown: no new runs, then take down active stages ---
            await container.scheduler.stop()
            await container.run_manager.shutdown()
            await container.supervisor.shutdown()
            await container.quota_monitor.stop()
            logger.info("Orchestrator stopped")
            if container.logger_factory is not None:
                container.logger_factory.close()

    # Create app with lifespan
    app = FastAPI(
        title="Copychu Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(router=runs_router, prefix="/api/v1")
    app.include_router(router=quota_router, prefix="/api/v1")
    app.include_router(router=schedules_router, prefix="/api/v1")
    app.include_router(router=stats_router, prefix="/api/v1")
    app.include_router(router=events_router, prefix="/api/v1")

    # Install services globally so routes and tools see the same container
    install_services(container)

    # Optional: keep these for immediate access before lifespan runs
    app.state.settings = settings
    app.state.container = container

    return app
