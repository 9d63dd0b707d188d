"""Fan-out of job snapshots to stream subscribers.

Workers and the API call :meth:`ProgressPublisher.publish` after every
committed mutation. Publishing never blocks and never raises: a missing
broker or a slow subscriber only costs that subscriber updates, which the
subscription repairs by re-reading the store.

Each subscriber consumes a :class:`Subscription` through ``receive()``::

    connecting  ->  streaming  ->  completing  ->  closed
    (connected)     (progress*)    (complete)

or ends early with an ``error`` event when the job disappears.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import RedisError

from job_engine.core.status import STATUS_RANK, JobStatus, is_terminal
from job_engine.services.job_store import JobRecord

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "jobs:progress:"
SNAPSHOT_PREFIX = "jobs:snapshot:"


def job_snapshot(job: JobRecord, result_preview: int | None = None) -> dict[str, Any]:
    """Render a job as a JSON-safe ``progress`` message.

    Result items beyond ``result_preview`` are cut off and the result is
    marked ``truncated``; the full document stays available from the API.
    """
    result = job.result_data
    if result_preview is not None and isinstance(result, dict):
        items = result.get("items")
        if isinstance(items, list) and len(items) > result_preview:
            result = {**result, "items": items[:result_preview], "truncated": True}

    def _iso(value):
        return value.isoformat() if value is not None else None

    return {
        "type": "progress",
        "job_id": job.id,
        "job_type": job.type,
        "status": job.status,
        "progress": job.progress,
        "metadata": job.metadata,
        "result_data": result,
        "error_message": job.error_message,
        "owner_id": job.owner_id,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "completed_at": _iso(job.completed_at),
    }


# --------------------------------------------------------------------- brokers


class BrokerListener(Protocol):
    def get(self, timeout: float) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


class Broker(Protocol):
    def publish(self, job_id: str, message: dict[str, Any]) -> None: ...

    def listen(self, job_id: str) -> BrokerListener: ...

    def latest(self, job_id: str) -> dict[str, Any] | None: ...


class _Mailbox:
    """Bounded per-subscriber queue that discards the oldest message when full."""

    def __init__(self, maxsize: int):
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, message: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(message)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: float) -> dict[str, Any] | None:
        try:
            if timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class _InMemoryListener:
    def __init__(self, broker: "InMemoryBroker", job_id: str, mailbox: _Mailbox):
        self._broker = broker
        self._job_id = job_id
        self._mailbox = mailbox

    def get(self, timeout: float) -> dict[str, Any] | None:
        return self._mailbox.get(timeout)

    def close(self) -> None:
        self._broker._remove(self._job_id, self._mailbox)


class InMemoryBroker:
    """Process-local broker for the embedded worker pool and tests."""

    def __init__(self, buffer_size: int = 256):
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._mailboxes: dict[str, list[_Mailbox]] = {}
        self._latest: dict[str, dict[str, Any]] = {}

    def publish(self, job_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            if message.get("type") == "deleted":
                self._latest.pop(job_id, None)
            else:
                self._latest[job_id] = message
            mailboxes = list(self._mailboxes.get(job_id, ()))
        for mailbox in mailboxes:
            mailbox.put(message)

    def listen(self, job_id: str) -> _InMemoryListener:
        mailbox = _Mailbox(self._buffer_size)
        with self._lock:
            self._mailboxes.setdefault(job_id, []).append(mailbox)
        return _InMemoryListener(self, job_id, mailbox)

    def latest(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._latest.get(job_id)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._mailboxes.get(job_id, ()))

    def _remove(self, job_id: str, mailbox: _Mailbox) -> None:
        with self._lock:
            mailboxes = self._mailboxes.get(job_id, [])
            if mailbox in mailboxes:
                mailboxes.remove(mailbox)
            if not mailboxes:
                self._mailboxes.pop(job_id, None)


class _RedisListener:
    def __init__(self, client: Redis, channel: str):
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel)

    def get(self, timeout: float) -> dict[str, Any] | None:
        try:
            message = self._pubsub.get_message(timeout=max(timeout, 0.0))
        except RedisError as e:
            # The subscription falls back to polling the store
            logger.warning(f"Redis pub/sub read failed: {e}")
            time.sleep(max(timeout, 0.0))
            return None
        if not message or message.get("type") != "message":
            return None
        try:
            return json.loads(message["data"])
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarding undecodable progress message", exc_info=True)
            return None

    def close(self) -> None:
        try:
            self._pubsub.close()
        except RedisError:
            logger.debug("Error closing pub/sub connection", exc_info=True)


class RedisBroker:
    """Pub/sub channel per job plus a short-lived snapshot key.

    Lets API processes stream jobs executed by Celery workers elsewhere.
    """

    def __init__(self, client: Redis, ttl_seconds: int = 86400):
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def channel(job_id: str) -> str:
        return f"{PROGRESS_PREFIX}{job_id}"

    def publish(self, job_id: str, message: dict[str, Any]) -> None:
        payload = json.dumps(message)
        pipe = self._client.pipeline()
        if message.get("type") == "deleted":
            pipe.delete(f"{SNAPSHOT_PREFIX}{job_id}")
        else:
            pipe.set(f"{SNAPSHOT_PREFIX}{job_id}", payload, ex=self._ttl)
        pipe.publish(self.channel(job_id), payload)
        pipe.execute()

    def listen(self, job_id: str) -> _RedisListener:
        return _RedisListener(self._client, self.channel(job_id))

    def latest(self, job_id: str) -> dict[str, Any] | None:
        try:
            raw = self._client.get(f"{SNAPSHOT_PREFIX}{job_id}")
        except RedisError:
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None


# ---------------------------------------------------------------- subscription


class StreamState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETING = "completing"
    CLOSED = "closed"


@dataclass(frozen=True)
class StreamEvent:
    type: str
    data: dict[str, Any]

    def as_message(self) -> dict[str, Any]:
        return {**self.data, "type": self.type}


def encode_event(event: StreamEvent) -> str | None:
    """Render an event as one SSE frame; None if it cannot be serialized."""
    try:
        return f"data: {json.dumps(event.as_message())}\n\n"
    except (TypeError, ValueError):
        logger.error(f"Skipping unserializable {event.type} event", exc_info=True)
        return None


Fetch = Callable[[str], "JobRecord | None"]


class Subscription:
    """Ordered, regression-free view of one job's snapshots."""

    def __init__(
        self,
        job_id: str,
        listener: BrokerListener,
        snapshot: dict[str, Any] | None,
        fetch: Callable[[], dict[str, Any] | None] | None,
        poll_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.state = StreamState.CONNECTING
        self._listener = listener
        self._initial = snapshot
        self._fetch = fetch
        self._poll_interval = poll_interval
        self._clock = clock
        self._last: dict[str, Any] | None = None
        self._last_reconcile = clock()

    @property
    def last_snapshot(self) -> dict[str, Any] | None:
        return self._last

    def receive(self, timeout: float | None = None) -> StreamEvent | None:
        """Return the next event, or None if nothing arrived within ``timeout``.

        ``timeout=None`` waits until an event is available. Once the
        subscription is closed every call returns None.
        """
        if self.state is StreamState.CLOSED:
            return None
        if self.state is StreamState.CONNECTING:
            return self._connect()
        if self.state is StreamState.COMPLETING:
            self.close()
            return StreamEvent("complete", dict(self._last or {"job_id": self.job_id}))

        deadline = None if timeout is None else self._clock() + timeout
        while True:
            wait = self._poll_interval if self._fetch else 1.0
            if deadline is not None:
                wait = min(wait, max(deadline - self._clock(), 0.0))
            message = self._listener.get(wait)

            if message is None and self._reconcile_due():
                message = self._fetch_snapshot()
                if message is None:
                    return self._error("Job not found")

            if message is not None:
                if message.get("type") == "deleted":
                    return self._error("Job was deleted")
                if self._accept(message):
                    self._last = message
                    if is_terminal(message["status"]):
                        self.state = StreamState.COMPLETING
                    return StreamEvent("progress", message)

            if deadline is not None and self._clock() >= deadline:
                return None

    def close(self) -> None:
        if self.state is not StreamState.CLOSED:
            self.state = StreamState.CLOSED
            self._listener.close()

    def _connect(self) -> StreamEvent:
        snapshot = self._initial if self._initial is not None else self._fetch_snapshot()
        if snapshot is None:
            return self._error("Job not found")
        self._last = snapshot
        self.state = StreamState.STREAMING
        if is_terminal(snapshot["status"]):
            self.state = StreamState.COMPLETING
        return StreamEvent("connected", {**snapshot})

    def _reconcile_due(self) -> bool:
        return self._fetch is not None and self._clock() - self._last_reconcile >= self._poll_interval

    def _fetch_snapshot(self) -> dict[str, Any] | None:
        self._last_reconcile = self._clock()
        return self._fetch() if self._fetch else None

    def _accept(self, message: dict[str, Any]) -> bool:
        last = self._last
        if last is None:
            return True
        rank, last_rank = STATUS_RANK[JobStatus(message["status"])], STATUS_RANK[JobStatus(last["status"])]
        if rank != last_rank:
            return rank > last_rank
        if message["progress"] != last["progress"]:
            return message["progress"] > last["progress"]
        # Same status and progress: only a newer write is news
        return (message.get("updated_at") or "") > (last.get("updated_at") or "")

    def _error(self, message: str) -> StreamEvent:
        self.close()
        return StreamEvent("error", {"job_id": self.job_id, "message": message})


class ProgressPublisher:
    def __init__(
        self,
        broker: Broker,
        result_preview: int | None = 100,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self._result_preview = result_preview
        self._poll_interval = poll_interval
        self._clock = clock

    def snapshot(self, job: JobRecord) -> dict[str, Any]:
        return job_snapshot(job, self._result_preview)

    def publish(self, job: JobRecord) -> None:
        """Broadcast the job's current state; failures are logged, never raised."""
        self._send(job.id, self.snapshot(job))

    def publish_deleted(self, job_id: str) -> None:
        self._send(job_id, {"type": "deleted", "job_id": job_id})

    def _send(self, job_id: str, message: dict[str, Any]) -> None:
        try:
            self.broker.publish(job_id, message)
        except Exception:
            logger.warning(f"Failed to publish update for job {job_id}", exc_info=True)

    def subscribe(
        self,
        job_id: str,
        snapshot: JobRecord | None = None,
        fetch: Fetch | None = None,
    ) -> Subscription:
        """Start listening for ``job_id``.

        The listener is registered before the initial snapshot is taken, so
        no update committed afterwards can be missed. With ``fetch`` the
        subscription also re-reads the store whenever the broker is quiet
        for ``poll_interval`` seconds.
        """
        listener = self.broker.listen(job_id)
        fetch_snapshot = None
        if fetch is not None:
            def fetch_snapshot() -> dict[str, Any] | None:
                record = fetch(job_id)
                return self.snapshot(record) if record is not None else None

        initial = self.snapshot(snapshot) if snapshot is not None else None
        return Subscription(
            job_id,
            listener,
            initial,
            fetch_snapshot,
            self._poll_interval,
            clock=self._clock,
        )
