"""Tests for unit-by-unit job execution."""

import threading

import pytest
from conftest import CrashingHandler, WorkerCrash

from job_engine.core.status import JobStatus
from job_engine.handlers.cache import RefreshingCache
from job_engine.handlers.generate import GenerateHandler, fallback_name_pools
from job_engine.services.progress_publisher import InMemoryBroker, ProgressPublisher
from job_engine.workers.runner import JobRunner
from job_engine.workers.sweeps import NO_CHECKPOINT_MESSAGE, recovery_sweep


def _drain(listener):
    messages = []
    while (message := listener.get(0)) is not None:
        messages.append(message)
    return messages


def test_generate_reports_progress_in_tenths(store, runner, publisher):
    """1000 items in units of 100 report 10, 20, ..., 100 and no duplicates."""
    job = store.create("generate", {"total_items": 1000})
    listener = publisher.broker.listen(job.id)

    final = runner.run(job.id)

    progress = [m["progress"] for m in _drain(listener) if m["status"] != "pending"]
    assert progress == [0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
    assert final.status == "completed"
    assert final.progress == 100
    items = final.result_data["items"]
    assert len(items) == 1000
    assert len(set(items)) == 1000
    assert final.metadata["processed_items"] == 1000


def test_progress_100_only_with_completed(store, runner, publisher):
    job = store.create("count")
    listener = publisher.broker.listen(job.id)

    runner.run(job.id)

    for message in _drain(listener):
        assert (message["progress"] == 100) == (message["status"] == "completed")


def test_cancel_after_first_unit(store, registry, sleeps):
    """Cancelling between units stops before the next one starts."""

    class CancellingPublisher(ProgressPublisher):
        def publish(self, job):
            super().publish(job)
            if job.status == "running" and job.progress == 10:
                store.set_status(job.id, JobStatus.CANCELLED)

    runner = JobRunner(store, registry, CancellingPublisher(InMemoryBroker()), sleep=sleeps.append)
    job = store.create("count")

    final = runner.run(job.id)

    assert final.status == "cancelled"
    assert final.progress < 100
    assert final.error_message is None
    assert final.result_data["items"] == list(range(10))
    assert final.result_data["partial"] is True
    assert final.checkpoint == 10
    assert registry.get("count").checkpoints == [None]


def test_cancel_lets_in_flight_unit_finish(store, runner, counting_handler):
    """A cancel arriving mid-unit takes effect at the next unit boundary."""
    job = store.create("count")

    def cancel_during_second_unit(index):
        if index == 1:
            store.set_status(job.id, JobStatus.CANCELLED)

    counting_handler.before_unit = cancel_during_second_unit
    final = runner.run(job.id)

    assert final.status == "cancelled"
    assert final.progress == 10
    assert final.result_data["items"] == list(range(20))
    assert final.checkpoint == 20
    assert counting_handler.checkpoints == [None, 10]


def test_cancelled_pending_job_never_runs(store, runner, counting_handler):
    job = store.create("count")
    store.set_status(job.id, JobStatus.CANCELLED)

    final = runner.run(job.id)

    assert final.status == "cancelled"
    assert counting_handler.checkpoints == []
    assert final.result_data is None


def test_crash_after_third_checkpoint_resumes_to_same_output(store, runner, registry, publisher):
    """Recovery resumes from checkpoint 3 of 10 and matches an uninterrupted run."""
    params = {"params": {"count": 100, "batch_size": 10, "seed": 42}}
    generator = GenerateHandler(RefreshingCache(fallback_name_pools, 300))
    crashing = CrashingHandler(generator, crash_on_call=4)
    registry.register("generate", crashing)

    crashed = store.create("generate", params)
    with pytest.raises(WorkerCrash):
        runner.run(crashed.id)

    stalled = store.get(crashed.id)
    assert stalled.status == "running"
    assert stalled.checkpoint == {"next_index": 30}
    assert stalled.progress == 30

    recovery_sweep(
        store,
        publisher,
        resume=lambda job_id: runner.run(job_id, resume=True),
        redispatch=runner.run,
    )
    resumed = store.get(crashed.id)

    reference = runner.run(store.create("generate", params).id)

    assert resumed.status == "completed"
    assert resumed.result_data == reference.result_data
    assert len(resumed.result_data["items"]) == 100
    assert crashing.calls == 4 + 7 + 10


def test_recovery_fails_running_job_without_checkpoint(store, runner, publisher):
    job = store.create("count")
    store.claim(job.id)

    report = recovery_sweep(store, publisher, resume=runner.run, redispatch=runner.run)

    failed = store.get(job.id)
    assert report.failed == [job.id]
    assert failed.status == "failed"
    assert failed.error_message == NO_CHECKPOINT_MESSAGE


def test_transient_errors_retry_with_backoff(store, runner, counting_handler, sleeps):
    counting_handler.fail_times = {2: 2}
    job = store.create("count")

    final = runner.run(job.id)

    assert final.status == "completed"
    assert sleeps == [1.0, 2.0]
    assert final.result_data["items"] == list(range(100))


def test_exhausted_retries_fail_with_partial_result(store, runner, counting_handler, sleeps):
    counting_handler.fail_times = {3: 5}
    job = store.create("count")

    final = runner.run(job.id)

    assert final.status == "failed"
    assert final.error_message == "upstream timeout in unit 3"
    assert final.result_data["items"] == list(range(30))
    assert final.result_data["partial"] is True
    assert final.progress == 30
    assert len(sleeps) == 2


def test_fatal_error_fails_without_retry(store, runner, counting_handler, sleeps):
    counting_handler.fatal_at = 1
    job = store.create("count")

    final = runner.run(job.id)

    assert final.status == "failed"
    assert final.error_message == "bad input in unit 1"
    assert sleeps == []
    assert final.result_data["items"] == list(range(10))


def test_unknown_type_fails_job(store, runner):
    job = store.create("no-such-handler")

    final = runner.run(job.id)

    assert final.status == "failed"
    assert "no-such-handler" in final.error_message


def test_resume_skips_jobs_that_are_not_running(store, runner, counting_handler):
    job = store.create("count")
    assert runner.run(job.id, resume=True).status == "pending"
    assert counting_handler.checkpoints == []


def test_job_deleted_mid_run_stops_quietly(store, runner, counting_handler):
    job = store.create("count")

    def delete_job(index):
        if index == 2:
            store.delete(job.id)

    counting_handler.before_unit = delete_job
    assert runner.run(job.id) is None


def test_overlapping_recovery_sweeps_resume_once(store, runner, publisher, counting_handler):
    """Two sweeps and two resume workers still run each remaining unit once."""
    job = store.create("count")
    store.claim(job.id)
    store.commit_unit(
        job.id,
        progress=30,
        metadata_patch={"checkpoint": 30, "progress_exact": 30.0},
        items=list(range(30)),
    )
    sent = []
    for _ in range(2):
        recovery_sweep(store, publisher, resume=sent.append, redispatch=sent.append)
    assert sent == [job.id, job.id]

    barrier = threading.Barrier(2)

    def resume_worker():
        barrier.wait()
        runner.run(job.id, resume=True)

    workers = [threading.Thread(target=resume_worker) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    final = store.get(job.id)
    assert final.status == "completed"
    assert final.result_data["items"] == list(range(100))
    assert counting_handler.checkpoints.count(30) == 1
    assert len(counting_handler.checkpoints) == 7


def test_released_worker_stops_at_next_write(store, runner, counting_handler):
    """A worker whose job was released by recovery discards its unit and stops."""
    job = store.create("count")

    def release_during_third_unit(index):
        if index == 2:
            store.release(job.id, store.get_state(job.id).lease)

    counting_handler.before_unit = release_during_third_unit
    stopped = runner.run(job.id)

    assert stopped.status == "running"
    assert stopped.checkpoint == 20
    assert stopped.lease is None
    assert store.result_items(job.id) == list(range(20))

    counting_handler.before_unit = None
    final = runner.run(job.id, resume=True)
    assert final.status == "completed"
    assert final.result_data["items"] == list(range(100))


def test_units_are_stored_as_chunks_until_completion(store, runner, counting_handler):
    job = store.create("count")
    seen = {}

    def inspect(index):
        if index == 5:
            seen["result_data"] = store.get(job.id).result_data
            seen["items"] = store.result_items(job.id)

    counting_handler.before_unit = inspect
    final = runner.run(job.id)

    assert seen["result_data"] is None
    assert seen["items"] == list(range(50))
    assert final.result_data["items"] == list(range(100))
    assert store.result_items(job.id) == []


def test_generate_accepts_camel_case_total(store, runner):
    job = store.create("generate", {"totalItems": 1000})

    final = runner.run(job.id)

    assert final.status == "completed"
    assert len(set(final.result_data["items"])) == 1000
    assert final.metadata["total_items"] == 1000
