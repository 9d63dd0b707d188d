"""FastAPI application bootstrap."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from job_engine.api.routers import health, jobs
from job_engine.core.config import get_settings
from job_engine.core.container import Container, build_container
from job_engine.core.exceptions import InvalidTransitionError, JobNotFoundError
from job_engine.core.logging import configure_logging
from job_engine.db.session import init_db

logger = logging.getLogger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """Instantiate the FastAPI app.

    Without an explicit ``container`` one is built from settings when the
    application starts. The embedded worker pool, if configured, runs for
    the lifetime of the application.
    """
    settings = container.settings if container else get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine_container = container or build_container(settings)
        app.state.container = engine_container
        init_db(engine_container.engine)
        pool = engine_container.pool
        if pool is not None:
            pool.start(recover=engine_container.settings.recover_on_startup)
        try:
            yield
        finally:
            if pool is not None:
                pool.stop(wait=False)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    if container is not None:
        app.state.container = container

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def store_unavailable(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(f"Job store error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=503, content={"detail": "Job store unavailable, retry later"})

    app.include_router(health.router)
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

    return app


app = create_app()
