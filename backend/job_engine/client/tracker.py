"""Consumer-side job tracking that survives process restarts.

The tracked job id is persisted in a :class:`JsonFileStore`. On restart
``reattach()`` fetches the job before subscribing, so a job that finished,
was deleted or now belongs to someone else is never silently resumed::

    idle --track--> streaming --complete--> terminal
    idle --reattach--> reattaching --> streaming | terminal | cleared
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

import httpx

from job_engine.core.status import STATUS_RANK, JobStatus, is_terminal

logger = logging.getLogger(__name__)

STORAGE_KEY = "active_job_id"

Snapshot = dict[str, Any]


class TrackerState(str, Enum):
    IDLE = "idle"
    REATTACHING = "reattaching"
    STREAMING = "streaming"
    TERMINAL = "terminal"
    CLEARED = "cleared"


class Stream(Protocol):
    closed: bool

    def receive(self) -> Snapshot | None: ...

    def close(self) -> None: ...


class JobApi(Protocol):
    def fetch_status(self, job_id: str) -> Snapshot | None: ...

    def cancel(self, job_id: str) -> Snapshot | None: ...

    def delete(self, job_id: str) -> bool: ...

    def open_stream(self, job_id: str) -> Stream: ...


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


def _normalize(message: Snapshot) -> Snapshot:
    """Stream messages name the id ``job_id``; status records name it ``id``."""
    snapshot = {key: value for key, value in message.items() if key != "type"}
    if "id" not in snapshot and "job_id" in snapshot:
        snapshot["id"] = snapshot["job_id"]
    return snapshot


class JobTracker:
    def __init__(
        self,
        api: JobApi,
        storage: KeyValueStore,
        *,
        on_progress: Callable[[Snapshot], None] | None = None,
        on_complete: Callable[[Snapshot], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        storage_key: str = STORAGE_KEY,
    ):
        self._api = api
        self._storage = storage
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error
        self._storage_key = storage_key

        self.state = TrackerState.IDLE
        self.job_id: str | None = None
        self.snapshot: Snapshot | None = None
        self._stream: Stream | None = None

    # ---------------------------------------------------------------- attach

    def track(self, job_id: str) -> TrackerState:
        """Follow a job the caller just submitted."""
        self._close_stream()
        self.job_id = job_id
        self.snapshot = None
        self._storage.set(self._storage_key, job_id)
        return self._subscribe()

    def reattach(self) -> TrackerState:
        """Resume tracking the persisted job, if any, after a restart."""
        job_id = self._storage.get(self._storage_key)
        if not job_id:
            return self.state
        self.state = TrackerState.REATTACHING
        self.job_id = job_id
        self.snapshot = None
        try:
            job = self._api.fetch_status(job_id)
        except httpx.HTTPError as e:
            # Unreachable is not inaccessible; keep the reference for next time
            logger.warning(f"Could not reattach to job {job_id}: {e}")
            self._notify_error(f"Could not reach the job service: {e}")
            self.state = TrackerState.IDLE
            return self.state
        if job is None:
            logger.info(f"Job {job_id} is gone or not accessible, forgetting it")
            self._clear()
            return self.state
        self._apply(job)
        if is_terminal(job["status"]):
            self._finish()
            return self.state
        return self._subscribe()

    # ---------------------------------------------------------------- events

    def pump(self) -> Snapshot | None:
        """Process the next stream frame and return the current snapshot.

        Returns None once the tracker is no longer streaming.
        """
        if self.state is not TrackerState.STREAMING or self._stream is None:
            return None
        message = self._stream.receive()
        if message is None:
            if self._stream.closed:
                self._reconcile("Stream ended before the job finished")
            return self.snapshot

        kind = message.get("type")
        if kind in ("connected", "progress"):
            self._apply(message)
            if is_terminal(self.snapshot["status"]):
                self._finish()
        elif kind == "complete":
            self._apply(message)
            self._finish()
        elif kind == "error":
            self._reconcile(message.get("message") or "Stream error")
        return self.snapshot

    def run_until_terminal(self, max_frames: int | None = None) -> Snapshot | None:
        frames = 0
        while self.state is TrackerState.STREAMING:
            if max_frames is not None and frames >= max_frames:
                break
            self.pump()
            frames += 1
        return self.snapshot

    # --------------------------------------------------------------- actions

    def cancel(self) -> Snapshot | None:
        if self.job_id is None:
            return None
        job = self._api.cancel(self.job_id)
        self._close_stream()
        if job is None:
            self._clear()
            return None
        self._apply(job)
        self._storage.delete(self._storage_key)
        self.state = TrackerState.TERMINAL
        return self.snapshot

    def delete(self) -> bool:
        if self.job_id is None:
            return False
        deleted = self._api.delete(self.job_id)
        self._close_stream()
        self._clear()
        return deleted

    def close(self) -> None:
        """Stop listening; the persisted job id is kept for ``reattach()``."""
        self._close_stream()
        if self.state is TrackerState.STREAMING:
            self.state = TrackerState.IDLE

    # ------------------------------------------------------------- internals

    def _subscribe(self) -> TrackerState:
        try:
            self._stream = self._api.open_stream(self.job_id)
        except httpx.HTTPError as e:
            self._stream = None
            self.state = TrackerState.STREAMING
            self._reconcile(f"Could not open stream: {e}")
            return self.state
        self.state = TrackerState.STREAMING
        return self.state

    def _reconcile(self, reason: str) -> None:
        """After a stream failure, fetch the job once and settle the state."""
        logger.info(f"Reconciling job {self.job_id}: {reason}")
        self._close_stream()
        try:
            job = self._api.fetch_status(self.job_id)
        except httpx.HTTPError as e:
            self._notify_error(f"{reason}; status check failed: {e}")
            self.state = TrackerState.IDLE
            return
        if job is None:
            self._notify_error(reason)
            self._clear()
            return
        self._apply(job)
        if is_terminal(job["status"]):
            self._finish()
            return
        self._notify_error(reason)
        try:
            self._stream = self._api.open_stream(self.job_id)
        except httpx.HTTPError as e:
            self._notify_error(f"Could not reopen stream: {e}")
            self.state = TrackerState.IDLE

    def _apply(self, message: Snapshot) -> None:
        snapshot = _normalize(message)
        current = self.snapshot
        if snapshot == current:
            return
        if current is not None:
            rank = STATUS_RANK[JobStatus(snapshot["status"])]
            current_rank = STATUS_RANK[JobStatus(current["status"])]
            if rank < current_rank or (rank == current_rank and snapshot["progress"] < current["progress"]):
                return
        self.snapshot = snapshot
        if self._on_progress:
            self._on_progress(snapshot)

    def _finish(self) -> None:
        self._close_stream()
        self.state = TrackerState.TERMINAL
        self._storage.delete(self._storage_key)
        if self._on_complete and self.snapshot is not None:
            self._on_complete(self.snapshot)

    def _clear(self) -> None:
        self._storage.delete(self._storage_key)
        self.state = TrackerState.CLEARED
        self.snapshot = None

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _notify_error(self, message: str) -> None:
        if self._on_error:
            self._on_error(message)
