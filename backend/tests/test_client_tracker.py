"""Tests for the client-side tracker and its persisted job reference."""

import httpx
import pytest

from job_engine.client.api import JobApiClient
from job_engine.client.storage import JsonFileStore
from job_engine.client.tracker import STORAGE_KEY, JobTracker, TrackerState


def _job(status="running", progress=0, job_id="job-1", **extra):
    return {"id": job_id, "status": status, "progress": progress, **extra}


def _event(kind, status="running", progress=0, job_id="job-1"):
    return {"type": kind, "job_id": job_id, "status": status, "progress": progress}


class FakeStream:
    def __init__(self, messages):
        self.messages = list(messages)
        self.closed = False

    def receive(self):
        if not self.messages:
            self.closed = True
            return None
        return self.messages.pop(0)

    def close(self):
        self.closed = True


class FakeApi:
    def __init__(self, statuses=None, streams=None):
        self.statuses = list(statuses or [])
        self.streams = list(streams or [])
        self.calls = []

    def fetch_status(self, job_id):
        self.calls.append(("fetch_status", job_id))
        return self.statuses.pop(0)

    def cancel(self, job_id):
        self.calls.append(("cancel", job_id))
        return _job(status="cancelled", progress=20, job_id=job_id)

    def delete(self, job_id):
        self.calls.append(("delete", job_id))
        return True

    def open_stream(self, job_id):
        self.calls.append(("open_stream", job_id))
        return self.streams.pop(0)


@pytest.fixture
def storage(tmp_path):
    return JsonFileStore(tmp_path / "client" / "state.json")


def test_storage_survives_restart(tmp_path):
    path = tmp_path / "state.json"
    JsonFileStore(path).set(STORAGE_KEY, "job-9")

    reopened = JsonFileStore(path)
    assert reopened.get(STORAGE_KEY) == "job-9"
    reopened.delete(STORAGE_KEY)
    assert JsonFileStore(path).get(STORAGE_KEY) is None


def test_corrupt_storage_reads_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    assert JsonFileStore(path).get(STORAGE_KEY) is None


def test_track_streams_until_complete(storage):
    stream = FakeStream([
        _event("connected", progress=0),
        _event("progress", progress=50),
        _event("progress", status="completed", progress=100),
        _event("complete", status="completed", progress=100),
    ])
    api = FakeApi(streams=[stream])
    seen, done = [], []
    tracker = JobTracker(api, storage, on_progress=lambda s: seen.append(s["progress"]), on_complete=done.append)

    assert tracker.track("job-1") is TrackerState.STREAMING
    assert storage.get(STORAGE_KEY) == "job-1"

    final = tracker.run_until_terminal()

    assert tracker.state is TrackerState.TERMINAL
    assert final["status"] == "completed"
    assert final["id"] == "job-1"
    assert seen == [0, 50, 100]
    assert len(done) == 1
    assert stream.closed
    assert storage.get(STORAGE_KEY) is None


def test_regressing_snapshots_are_ignored(storage):
    stream = FakeStream([
        _event("connected", progress=40),
        _event("progress", progress=30),
        _event("progress", status="pending", progress=50),
    ])
    tracker = JobTracker(FakeApi(streams=[stream]), storage)
    tracker.track("job-1")

    for _ in range(3):
        tracker.pump()

    assert tracker.snapshot["progress"] == 40
    assert tracker.snapshot["status"] == "running"


def test_reattach_fetches_before_subscribing(storage):
    storage.set(STORAGE_KEY, "job-1")
    api = FakeApi(statuses=[_job(progress=30)], streams=[FakeStream([_event("connected", progress=30)])])
    tracker = JobTracker(api, storage)

    assert tracker.reattach() is TrackerState.STREAMING
    assert api.calls == [("fetch_status", "job-1"), ("open_stream", "job-1")]
    assert tracker.snapshot["progress"] == 30


def test_reattach_to_finished_job_does_not_subscribe(storage):
    storage.set(STORAGE_KEY, "job-1")
    api = FakeApi(statuses=[_job(status="completed", progress=100)])
    done = []
    tracker = JobTracker(api, storage, on_complete=done.append)

    assert tracker.reattach() is TrackerState.TERMINAL
    assert ("open_stream", "job-1") not in api.calls
    assert done[0]["status"] == "completed"
    assert storage.get(STORAGE_KEY) is None


def test_reattach_to_inaccessible_job_clears_reference(storage):
    storage.set(STORAGE_KEY, "job-1")
    api = FakeApi(statuses=[None])
    tracker = JobTracker(api, storage)

    assert tracker.reattach() is TrackerState.CLEARED
    assert storage.get(STORAGE_KEY) is None
    assert api.calls == [("fetch_status", "job-1")]


def test_reattach_without_reference_stays_idle(storage):
    api = FakeApi()
    assert JobTracker(api, storage).reattach() is TrackerState.IDLE
    assert api.calls == []


def test_reattach_keeps_reference_when_service_unreachable(storage):
    class DownApi(FakeApi):
        def fetch_status(self, job_id):
            raise httpx.ConnectError("connection refused")

    storage.set(STORAGE_KEY, "job-1")
    errors = []
    tracker = JobTracker(DownApi(), storage, on_error=errors.append)

    assert tracker.reattach() is TrackerState.IDLE
    assert storage.get(STORAGE_KEY) == "job-1"
    assert errors


def test_stream_error_reconciles_with_one_fetch(storage):
    stream = FakeStream([_event("connected", progress=10), {"type": "error", "message": "boom"}])
    api = FakeApi(statuses=[_job(status="failed", progress=40, error_message="bad row")], streams=[stream])
    tracker = JobTracker(api, storage)
    tracker.track("job-1")

    final = tracker.run_until_terminal()

    assert tracker.state is TrackerState.TERMINAL
    assert final["status"] == "failed"
    assert [call for call in api.calls if call[0] == "fetch_status"] == [("fetch_status", "job-1")]


def test_stream_error_for_deleted_job_clears(storage):
    stream = FakeStream([_event("connected"), {"type": "error", "message": "Job was deleted"}])
    errors = []
    tracker = JobTracker(FakeApi(statuses=[None], streams=[stream]), storage, on_error=errors.append)
    tracker.track("job-1")

    tracker.run_until_terminal()

    assert tracker.state is TrackerState.CLEARED
    assert errors == ["Job was deleted"]
    assert storage.get(STORAGE_KEY) is None


def test_dropped_stream_resubscribes_while_running(storage):
    first = FakeStream([_event("connected", progress=10)])
    second = FakeStream([_event("connected", progress=60), _event("complete", status="completed", progress=100)])
    api = FakeApi(statuses=[_job(progress=50)], streams=[first, second])
    tracker = JobTracker(api, storage)
    tracker.track("job-1")

    final = tracker.run_until_terminal()

    assert final["status"] == "completed"
    assert [c[0] for c in api.calls] == ["open_stream", "fetch_status", "open_stream"]


def test_cancel_tears_down_subscription(storage):
    stream = FakeStream([_event("connected", progress=20)])
    api = FakeApi(streams=[stream])
    tracker = JobTracker(api, storage)
    tracker.track("job-1")
    tracker.pump()

    snapshot = tracker.cancel()

    assert snapshot["status"] == "cancelled"
    assert tracker.state is TrackerState.TERMINAL
    assert stream.closed
    assert storage.get(STORAGE_KEY) is None


def test_delete_clears_tracker(storage):
    stream = FakeStream([])
    api = FakeApi(streams=[stream])
    tracker = JobTracker(api, storage)
    tracker.track("job-1")

    assert tracker.delete() is True
    assert tracker.state is TrackerState.CLEARED
    assert tracker.snapshot is None
    assert stream.closed


def test_close_keeps_reference_for_reattach(storage):
    tracker = JobTracker(FakeApi(streams=[FakeStream([])]), storage)
    tracker.track("job-1")

    tracker.close()

    assert tracker.state is TrackerState.IDLE
    assert storage.get(STORAGE_KEY) == "job-1"


def test_tracker_against_live_api(live_client, container, tmp_path):
    """Submit, reattach after a simulated restart and follow to completion."""
    api = JobApiClient(owner_id="alice", client=live_client)
    storage = JsonFileStore(tmp_path / "state.json")

    created = api.create_job("count")
    first = JobTracker(api, storage)
    first.track(created["job_id"])
    first.close()

    restarted = JobTracker(api, storage)
    assert restarted.reattach() in (TrackerState.STREAMING, TrackerState.TERMINAL)
    final = restarted.run_until_terminal()

    assert final["status"] == "completed"
    assert final["progress"] == 100
    assert restarted.state is TrackerState.TERMINAL
    assert storage.get(STORAGE_KEY) is None
    assert JobApiClient(owner_id="mallory", client=live_client).fetch_status(created["job_id"]) is None
