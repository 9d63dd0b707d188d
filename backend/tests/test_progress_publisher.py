"""Tests for snapshot fan-out and the subscription state machine."""

import json

from job_engine.core.status import JobStatus
from job_engine.services.progress_publisher import (
    InMemoryBroker,
    ProgressPublisher,
    StreamEvent,
    StreamState,
    encode_event,
    job_snapshot,
)


def test_subscription_lifecycle(store, publisher):
    """connected, then progress snapshots, then complete exactly once."""
    job = store.create("count")
    subscription = publisher.subscribe(job.id, fetch=store.find)

    connected = subscription.receive(timeout=0)
    assert connected.type == "connected"
    assert connected.data["status"] == "pending"
    assert subscription.state is StreamState.STREAMING

    publisher.publish(store.claim(job.id))
    publisher.publish(store.update_progress(job.id, 40))
    publisher.publish(store.set_status(job.id, JobStatus.COMPLETED))

    events = [subscription.receive(timeout=1) for _ in range(4)]

    assert [e.type for e in events] == ["progress", "progress", "progress", "complete"]
    assert [e.data["progress"] for e in events[:3]] == [0, 40, 100]
    assert events[3].data["status"] == "completed"
    assert subscription.state is StreamState.CLOSED
    assert subscription.receive(timeout=0) is None


def test_regressions_are_dropped(store, publisher):
    job = store.create("count")
    store.claim(job.id)
    current = store.update_progress(job.id, 50)
    subscription = publisher.subscribe(job.id, snapshot=current)
    assert subscription.receive(timeout=0).data["progress"] == 50

    stale = publisher.snapshot(current)
    publisher.broker.publish(job.id, {**stale, "progress": 30})
    publisher.broker.publish(job.id, {**stale, "status": "pending", "progress": 60})
    publisher.publish(store.update_progress(job.id, 70))

    event = subscription.receive(timeout=1)
    assert event.data["progress"] == 70
    assert subscription.receive(timeout=0.1) is None


def test_terminal_job_completes_immediately(store, publisher):
    job = store.create("count")
    store.set_status(job.id, JobStatus.CANCELLED)

    subscription = publisher.subscribe(job.id, fetch=store.find)

    assert subscription.receive(timeout=0).type == "connected"
    assert subscription.state is StreamState.COMPLETING
    complete = subscription.receive(timeout=0)
    assert complete.type == "complete"
    assert complete.data["status"] == "cancelled"
    assert subscription.state is StreamState.CLOSED


def test_missing_job_yields_error(store, publisher):
    subscription = publisher.subscribe("missing", fetch=store.find)

    event = subscription.receive(timeout=0)

    assert event.type == "error"
    assert event.data["message"] == "Job not found"
    assert subscription.state is StreamState.CLOSED


def test_deleted_job_yields_error(store, publisher):
    job = store.create("count")
    subscription = publisher.subscribe(job.id, fetch=store.find)
    subscription.receive(timeout=0)

    publisher.publish_deleted(job.id)

    event = subscription.receive(timeout=1)
    assert event.type == "error"
    assert event.data["message"] == "Job was deleted"


def test_quiet_broker_falls_back_to_store(store, publisher):
    """Mutations nobody published are picked up by polling the store."""
    job = store.create("count")
    subscription = publisher.subscribe(job.id, fetch=store.find)
    subscription.receive(timeout=0)

    store.claim(job.id)
    store.update_progress(job.id, 25)

    event = subscription.receive(timeout=2)
    assert event.type == "progress"
    assert event.data["status"] == "running"
    assert event.data["progress"] == 25


def test_store_poll_notices_deletion(store, publisher):
    job = store.create("count")
    subscription = publisher.subscribe(job.id, fetch=store.find)
    subscription.receive(timeout=0)

    store.delete(job.id)

    assert subscription.receive(timeout=2).type == "error"


def test_closing_unregisters_listener(store):
    broker = InMemoryBroker()
    publisher = ProgressPublisher(broker)
    job = store.create("count")
    subscription = publisher.subscribe(job.id, snapshot=job)
    assert broker.subscriber_count(job.id) == 1

    subscription.close()

    assert broker.subscriber_count(job.id) == 0


def test_full_mailbox_drops_oldest():
    """A slow subscriber loses old snapshots; the publisher never blocks."""
    broker = InMemoryBroker(buffer_size=2)
    listener = broker.listen("job")

    for progress in (10, 20, 30):
        broker.publish("job", {"type": "progress", "progress": progress})

    assert listener.get(0)["progress"] == 20
    assert listener.get(0)["progress"] == 30
    assert listener.get(0) is None


def test_publish_swallows_broker_errors(store):
    class BrokenBroker(InMemoryBroker):
        def publish(self, job_id, message):
            raise ConnectionError("redis down")

    publisher = ProgressPublisher(BrokenBroker())
    publisher.publish(store.create("count"))
    publisher.publish_deleted("anything")


def test_snapshot_truncates_large_results(store):
    job = store.create("count")
    store.claim(job.id)
    done = store.set_status(job.id, "completed", result_data={"items": list(range(20)), "count": 20})

    snapshot = job_snapshot(done, result_preview=5)

    assert snapshot["result_data"]["items"] == [0, 1, 2, 3, 4]
    assert snapshot["result_data"]["truncated"] is True
    assert snapshot["result_data"]["count"] == 20
    assert done.result_data["items"] == list(range(20))
    json.dumps(snapshot)


def test_encode_event():
    frame = encode_event(StreamEvent("progress", {"job_id": "j1", "progress": 10}))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"job_id": "j1", "progress": 10, "type": "progress"}


def test_encode_event_skips_unserializable():
    assert encode_event(StreamEvent("progress", {"value": object()})) is None
