import os

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .services.cache import StageCountsCache
from .routes.projects import router as projects_router
from .routes.project_types import router as project_types_router
from .routes.client_tasks import router as client_tasks_router
from .routes.scheduling import router as scheduling_router


logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Per-process kanban counts; invalidated after every committed stage change
    app.state.stage_counts_cache = StageCountsCache()

    # Routers
    app.include_router(projects_router)
    app.include_router(project_types_router)
    app.include_router(client_tasks_router)
    app.include_router(scheduling_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        logger.info("startup_begin", app=settings.app_name)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            from .models import models as _models  # noqa: F401

            Base.metadata.create_all(bind=engine)
            logger.info("startup_tables_ready", tables=len(Base.metadata.tables))
        if settings.scheduler_catchup_on_startup:
            from .services.errors import RunFatalError
            from .services.scheduling_run import run_startup_catchup

            try:
                results = run_startup_catchup(cache=app.state.stage_counts_cache)
            except RunFatalError as e:
                # The failed run is recorded; the API still comes up
                logger.error("startup_catchup_failed", error=str(e))
            else:
                logger.info("startup_catchup_done", runs=len(results))

    return app


app = create_app()
