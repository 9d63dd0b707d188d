"""Process-wide wiring of the engine's collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from redis import Redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from job_engine.core.config import Settings, get_settings
from job_engine.db.session import build_engine, build_session_factory
from job_engine.handlers.registry import HandlerRegistry
from job_engine.services.job_store import JobStore
from job_engine.services.progress_publisher import InMemoryBroker, ProgressPublisher, RedisBroker
from job_engine.utils.redis_client import create_redis_client
from job_engine.workers.dispatch import CeleryDispatcher, Dispatcher, PoolDispatcher
from job_engine.workers.pool import WorkerPool
from job_engine.workers.runner import JobRunner

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    store: JobStore
    publisher: ProgressPublisher
    registry: HandlerRegistry
    runner: JobRunner
    dispatcher: Dispatcher
    pool: WorkerPool | None = None
    redis: Redis | None = None


def build_container(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    registry: HandlerRegistry | None = None,
) -> Container:
    """Assemble store, publisher, handlers, runner and dispatcher from settings.

    The embedded pool is created but not started; ``create_app`` starts it
    in the application lifespan.
    """
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    store = JobStore(session_factory)

    redis_client = None
    if settings.progress_backend == "redis":
        redis_client = create_redis_client(settings.redis_url, decode_responses=True)
        broker = RedisBroker(redis_client, ttl_seconds=settings.progress_ttl_seconds)
    else:
        broker = InMemoryBroker(buffer_size=settings.subscriber_buffer)
    publisher = ProgressPublisher(
        broker,
        result_preview=settings.stream_result_preview,
        poll_interval=settings.stream_poll_interval,
    )

    if registry is None:
        from job_engine.handlers import build_registry

        registry = build_registry(settings, session_factory)

    runner = JobRunner(
        store,
        registry,
        publisher,
        max_unit_attempts=settings.max_unit_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        per_job_concurrency=settings.per_job_concurrency,
    )

    pool = None
    if settings.dispatch_mode == "embedded":
        pool = WorkerPool(
            store,
            runner,
            publisher,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.worker_poll_interval,
            retention_days=settings.retention_days,
            retention_sweep_interval=settings.retention_sweep_interval,
        )
        dispatcher: Dispatcher = PoolDispatcher(pool)
    else:
        from job_engine.workers.celery_app import celery_app

        dispatcher = CeleryDispatcher(celery_app)

    logger.info(
        f"Engine wired: dispatch={settings.dispatch_mode}, progress={settings.progress_backend}, "
        f"handlers={registry.types()}"
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        publisher=publisher,
        registry=registry,
        runner=runner,
        dispatcher=dispatcher,
        pool=pool,
        redis=redis_client,
    )


@lru_cache
def get_container() -> Container:
    """Default container for worker processes and scripts."""
    return build_container()
