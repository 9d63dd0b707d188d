"""Pytest configuration and fixtures."""

import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from job_engine.core.config import Settings
from job_engine.core.container import build_container
from job_engine.db.session import build_engine, build_session_factory, init_db
from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult
from job_engine.handlers.cache import RefreshingCache
from job_engine.handlers.generate import GenerateHandler, fallback_name_pools
from job_engine.handlers.registry import HandlerRegistry
from job_engine.main import create_app
from job_engine.services.job_store import JobStore
from job_engine.services.progress_publisher import InMemoryBroker, ProgressPublisher
from job_engine.workers.runner import JobRunner


class WorkerCrash(BaseException):
    """Simulates the worker process dying; the runner does not catch it."""


class CountingHandler(TaskHandler):
    """Emits the integers ``0..total-1``, ``batch`` per unit.

    ``before_unit(index)`` runs at the start of every unit, while the unit is
    in flight. ``fail_times[index]`` makes unit ``index`` raise that many times.
    """

    def __init__(self, total: int = 100, batch: int = 10):
        self.total = total
        self.batch = batch
        self.checkpoints: list[Any] = []
        self.before_unit = None
        self.fail_times: dict[int, int] = {}
        self.fatal_at: int | None = None

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        self.checkpoints.append(checkpoint)
        start = checkpoint or 0
        index = start // self.batch
        if self.before_unit is not None:
            self.before_unit(index)
        if self.fatal_at == index:
            raise HandlerFatalError(f"bad input in unit {index}")
        if self.fail_times.get(index, 0) > 0:
            self.fail_times[index] -= 1
            raise ConnectionError(f"upstream timeout in unit {index}")
        end = min(start + self.batch, self.total)
        return UnitResult(
            checkpoint=end,
            progress_delta=(end - start) * 100.0 / self.total,
            items=list(range(start, end)),
            done=end >= self.total,
            metadata={"processed_items": end, "total_items": self.total},
        )


class CrashingHandler(TaskHandler):
    """Delegates to ``inner`` but dies when asked for unit ``crash_on_call``."""

    def __init__(self, inner: TaskHandler, crash_on_call: int):
        self.inner = inner
        self.crash_on_call = crash_on_call
        self.calls = 0

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        self.calls += 1
        if self.calls == self.crash_on_call:
            raise WorkerCrash()
        return self.inner.execute_unit(job, checkpoint)

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        return self.inner.finalize(job, items)


class RecordingDispatcher:
    def __init__(self, error: Exception | None = None):
        self.dispatched: list[tuple[str, bool]] = []
        self.error = error

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        if self.error is not None:
            raise self.error
        self.dispatched.append((job_id, resume))


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Poll ``predicate`` until it returns something truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met in time")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        dispatch_mode="embedded",
        progress_backend="memory",
        worker_concurrency=2,
        worker_poll_interval=0.05,
        recover_on_startup=False,
        retry_backoff_seconds=0,
        stream_poll_interval=0.05,
        stream_heartbeat_interval=0.5,
        stream_result_preview=5,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def publisher():
    return ProgressPublisher(InMemoryBroker(), result_preview=5, poll_interval=0.05)


@pytest.fixture
def counting_handler():
    return CountingHandler()


@pytest.fixture
def registry(counting_handler):
    registry = HandlerRegistry()
    registry.register("generate", GenerateHandler(RefreshingCache(fallback_name_pools, 300)))
    registry.register("count", counting_handler)
    return registry


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def runner(store, registry, publisher, sleeps):
    return JobRunner(
        store,
        registry,
        publisher,
        max_unit_attempts=3,
        retry_backoff_seconds=1.0,
        per_job_concurrency=2,
        sleep=sleeps.append,
    )


@pytest.fixture
def container(settings, engine, registry):
    return build_container(settings, engine=engine, registry=registry)


@pytest.fixture
def api_client(container):
    """API with a recording dispatcher: submitted jobs stay pending."""
    container.pool = None
    container.dispatcher = RecordingDispatcher()
    with TestClient(create_app(container)) as client:
        yield client


@pytest.fixture
def live_client(container):
    """API backed by the embedded worker pool."""
    with TestClient(create_app(container)) as client:
        yield client
        wait_for(lambda: container.pool.status()["in_flight"] == 0)
