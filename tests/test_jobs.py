"""Tests for the merge job manager and its worker pool.

WHY: Jobs are the contract between the HTTP API and the merge engine.
Clients poll them, so every transition, progress value, and outcome has
to be exactly what the lifecycle promises, including when things go
wrong mid-merge.

HOW: Tests are organized by concern:
  - TestJobStatus: enum values
  - TestSubmitValidation: synchronous rejections from submit()
  - TestLifecycle: happy path, input order, duration totals
  - TestFailures: missing inputs and engine errors
  - TestProgress: clamping and monotonicity
  - TestCancellation: queued, running, terminal, and shutdown
  - TestPinning: inputs cannot be deleted while a job uses them
  - TestEventLoop: blocking work stays off the loop
  - TestReads: get/list semantics

Async scenarios run through asyncio.run() with StubExecutor from
conftest, so no ffmpeg is involved.

RULES:
- Every scenario starts and stops its own manager
- Waiting on a state is bounded (wait_for_status gives up after ~5s)
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from conftest import StubExecutor, fake_probe, upload

from mixmerge.errors import (
    AssetInUseError,
    ExecutionTimeoutError,
    NotFoundError,
    QueueFullError,
    ValidationError,
)
from mixmerge.server.jobs import JobStatus, MergeJobManager, TERMINAL_STATUSES
from mixmerge.storage.assets import AssetStore


async def wait_for_status(manager, job_id, status, attempts=500):
    for _ in range(attempts):
        if manager.get_job(job_id).status == status:
            return manager.get_job(job_id)
        await asyncio.sleep(0.01)
    raise AssertionError(
        "job {} never reached {} (is {})".format(job_id, status, manager.get_job(job_id).status)
    )


def _merged_files(store):
    return sorted(p.name for p in store.root.iterdir() if p.name.startswith("merged_"))


# ---------------------------------------------------------------------------
# TestJobStatus
# ---------------------------------------------------------------------------


class TestJobStatus:

    def test_values(self):
        assert [s.value for s in JobStatus] == [
            "pending", "processing", "completed", "failed", "cancelled",
        ]

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

    def test_is_str(self):
        assert JobStatus.COMPLETED == "completed"


# ---------------------------------------------------------------------------
# TestSubmitValidation
# ---------------------------------------------------------------------------


class TestSubmitValidation:

    @pytest.mark.parametrize("count", [0, 1])
    @pytest.mark.parametrize("remove_silence", [False, True])
    def test_too_few_inputs(self, asset_store, stub_executor, count, remove_silence):
        manager = MergeJobManager(asset_store, executor=stub_executor)
        ids = [upload(asset_store, 1.0).id for _ in range(count)]
        with pytest.raises(ValidationError, match="at least 2"):
            manager.submit("user-1", ids, remove_silence)
        assert manager.list_jobs() == []

    def test_too_many_inputs(self, asset_store, stub_executor):
        manager = MergeJobManager(asset_store, executor=stub_executor, max_inputs=3)
        with pytest.raises(ValidationError, match="at most 3"):
            manager.submit("user-1", ["a", "b", "c", "d"], False)

    def test_submit_before_start(self, asset_store, stub_executor):
        manager = MergeJobManager(asset_store, executor=stub_executor)
        with pytest.raises(RuntimeError):
            manager.submit("user-1", ["a", "b"], False)

    def test_workers_must_be_positive(self, asset_store, stub_executor):
        with pytest.raises(ValueError):
            MergeJobManager(asset_store, executor=stub_executor, workers=0)

    def test_queue_full(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor, workers=1, queue_size=1)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            # Workers have not run yet, so the first job still occupies the queue
            manager.submit("user-1", [a.id, b.id], False)
            with pytest.raises(QueueFullError):
                manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager

        manager = asyncio.run(scenario())
        assert len(manager.list_jobs()) == 1


# ---------------------------------------------------------------------------
# TestLifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:

    def test_round_trip(self, asset_store, stub_executor):
        updates = []

        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor, on_update=updates.append)
            await manager.start()
            a = upload(asset_store, 10.0, name="a.mp3", user="alice")
            b = upload(asset_store, 15.0, name="b.mp3", user="alice")
            job = manager.submit("alice", [a.id, b.id], False)
            assert job.status == JobStatus.PENDING
            assert job.progress == 0.0
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100.0
        assert job.error is None
        assert job.started_at is not None and job.completed_at >= job.started_at

        statuses = []
        for snapshot in updates:
            if not statuses or statuses[-1] != snapshot.status:
                statuses.append(snapshot.status)
        assert statuses == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]

        output = asset_store.get_asset(job.output_asset_id)
        assert output.duration_s == pytest.approx(25.0)
        assert output.uploader_id == "alice"
        assert output.storage_name.startswith("merged_")
        assert output.mime_type == "audio/mpeg"

    def test_inputs_passed_in_submitted_order(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a, b, c = (upload(asset_store, d) for d in (1.0, 2.0, 3.0))
            manager.submit("user-1", [c.id, a.id, b.id], True)
            await manager.wait_idle()
            await manager.stop()
            return [asset_store.resolve_path(x) for x in (c, a, b)]

        expected = asyncio.run(scenario())
        call = stub_executor.calls[0]
        assert call["inputs"] == expected
        assert call["remove_silence"] is True
        assert call["total_duration_s"] == pytest.approx(6.0)

    def test_unknown_duration_disables_progress_total(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a = upload(asset_store, 10.0)
            b = asset_store.register_upload(b"no duration", "b.mp3", "audio/mpeg", "user-1")
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.COMPLETED
        assert stub_executor.calls[0]["total_duration_s"] is None

    def test_listener_errors_do_not_break_jobs(self, asset_store, stub_executor):
        def broken_listener(job):
            raise RuntimeError("listener bug")

        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor, on_update=broken_listener)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        assert asyncio.run(scenario()).status == JobStatus.COMPLETED


# ---------------------------------------------------------------------------
# TestFailures
# ---------------------------------------------------------------------------


class TestFailures:

    def test_missing_asset_fails_without_processing(self, asset_store, stub_executor):
        updates = []

        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor, on_update=updates.append)
            await manager.start()
            a = upload(asset_store, 1.0)
            job = manager.submit("user-1", [a.id, "ghost"], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert "ghost" in job.error
        assert job.output_asset_id is None
        assert job.started_at is None
        assert JobStatus.PROCESSING not in {u.status for u in updates}
        assert stub_executor.calls == []

    def test_input_file_removed_from_disk(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            asset_store.resolve_path(b).unlink()
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert "missing" in job.error

    def test_engine_failure(self, asset_store):
        executor = StubExecutor(fail=True)

        async def scenario():
            manager = MergeJobManager(asset_store, executor=executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert job.output_asset_id is None
        assert job.progress == 80.0
        assert "status 1" in job.error
        assert "Invalid data found" in job.error
        assert _merged_files(asset_store) == []

    def test_deadline_marks_job_failed(self, asset_store):
        class SlowExecutor(StubExecutor):
            async def execute(self, input_paths, output_path, remove_silence, **kwargs):
                output_path.write_text("partial")
                kwargs["on_progress"](40.0)
                raise ExecutionTimeoutError("ffmpeg exceeded the 1800s deadline")

        async def scenario():
            manager = MergeJobManager(asset_store, executor=SlowExecutor())
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert "deadline" in job.error
        assert job.progress == 40.0
        assert _merged_files(asset_store) == []

    def test_failed_job_releases_inputs(self, asset_store):
        executor = StubExecutor(fail=True)

        async def scenario():
            manager = MergeJobManager(asset_store, executor=executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return a, b

        a, b = asyncio.run(scenario())
        assert asset_store.delete(a.id) is True
        assert asset_store.delete(b.id) is True


# ---------------------------------------------------------------------------
# TestProgress
# ---------------------------------------------------------------------------


class TestProgress:

    def test_persisted_progress_never_decreases(self, asset_store, stub_executor):
        updates = []

        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor, on_update=updates.append)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()

        asyncio.run(scenario())
        values = [u.progress for u in updates]
        assert values == sorted(values)
        assert 30.0 not in values
        assert values[-1] == 100.0

    def test_out_of_range_values_clamped(self, asset_store):
        executor = StubExecutor(progress=(-20.0, 140.0), fail=True)
        updates = []

        async def scenario():
            manager = MergeJobManager(asset_store, executor=executor, on_update=updates.append)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert all(0.0 <= u.progress <= 100.0 for u in updates)
        assert job.progress == 100.0
        assert job.status == JobStatus.FAILED


# ---------------------------------------------------------------------------
# TestCancellation
# ---------------------------------------------------------------------------


class TestCancellation:

    def test_cancel_running_job(self, asset_store):
        async def scenario():
            executor = StubExecutor(gate=asyncio.Event())
            manager = MergeJobManager(asset_store, executor=executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await wait_for_status(manager, job.id, JobStatus.PROCESSING)
            manager.cancel(job.id)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id), a

        job, a = asyncio.run(scenario())
        assert job.status == JobStatus.CANCELLED
        assert job.output_asset_id is None
        assert job.completed_at is not None
        assert _merged_files(asset_store) == []
        assert asset_store.delete(a.id) is True

    def test_cancel_queued_job(self, asset_store):
        async def scenario():
            executor = StubExecutor(gate=asyncio.Event())
            manager = MergeJobManager(asset_store, executor=executor, workers=1)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            first = manager.submit("user-1", [a.id, b.id], False)
            second = manager.submit("user-1", [b.id, a.id], False)
            await wait_for_status(manager, first.id, JobStatus.PROCESSING)

            snapshot = manager.cancel(second.id)
            assert snapshot.status == JobStatus.PENDING

            executor.gate.set()
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(first.id), manager.get_job(second.id), executor

        first, second, executor = asyncio.run(scenario())
        assert first.status == JobStatus.COMPLETED
        assert second.status == JobStatus.CANCELLED
        assert second.started_at is None
        assert len(executor.calls) == 1

    def test_cancel_terminal_job_is_a_no_op(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            done = manager.get_job(job.id)
            again = manager.cancel(job.id)
            await manager.stop()
            return done, again

        done, again = asyncio.run(scenario())
        assert done.status == JobStatus.COMPLETED
        assert again == done

    def test_cancel_unknown_job(self, asset_store, stub_executor):
        manager = MergeJobManager(asset_store, executor=stub_executor)
        with pytest.raises(NotFoundError):
            manager.cancel("nope")

    def test_stop_cancels_in_flight_job(self, asset_store):
        async def scenario():
            executor = StubExecutor(gate=asyncio.Event())
            manager = MergeJobManager(asset_store, executor=executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await wait_for_status(manager, job.id, JobStatus.PROCESSING)
            await manager.stop()
            assert not manager.running
            return manager.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.CANCELLED
        assert job.error == "Service shut down"
        assert _merged_files(asset_store) == []

    def test_stop_cancels_queued_jobs(self, asset_store):
        async def scenario():
            executor = StubExecutor(gate=asyncio.Event())
            manager = MergeJobManager(asset_store, executor=executor, workers=1)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            running = manager.submit("user-1", [a.id, b.id], False)
            queued = manager.submit("user-1", [b.id, a.id], False)
            await wait_for_status(manager, running.id, JobStatus.PROCESSING)
            await manager.stop()
            return manager.get_job(running.id), manager.get_job(queued.id), a, b, executor

        running, queued, a, b, executor = asyncio.run(scenario())
        assert running.status == JobStatus.CANCELLED
        assert queued.status == JobStatus.CANCELLED
        assert queued.error == "Service shut down"
        assert queued.started_at is None
        assert len(executor.calls) == 1
        assert not asset_store.is_pinned(a.id)
        assert asset_store.delete(a.id) is True
        assert asset_store.delete(b.id) is True

    def test_restart_after_stop_accepts_new_jobs(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            await manager.stop()
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id)

        assert asyncio.run(scenario()).status == JobStatus.COMPLETED


# ---------------------------------------------------------------------------
# TestEventLoop
# ---------------------------------------------------------------------------


class TestEventLoop:

    def test_output_probe_does_not_stall_loop(self, tmp_path, stub_executor):
        def slow_probe(path):
            if Path(path).name.startswith("merged_"):
                time.sleep(0.6)
            return fake_probe(path)

        store = AssetStore(root=tmp_path / "uploads", probe=slow_probe)

        async def scenario():
            manager = MergeJobManager(store, executor=stub_executor)
            await manager.start()
            a, b = upload(store, 10.0), upload(store, 15.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            lags = []
            while not manager.get_job(job.id).is_terminal:
                before = time.monotonic()
                await asyncio.sleep(0.01)
                lags.append(time.monotonic() - before)
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id), max(lags)

        job, worst_lag = asyncio.run(scenario())
        assert job.status == JobStatus.COMPLETED
        assert store.get_asset(job.output_asset_id).duration_s == pytest.approx(25.0)
        assert worst_lag < 0.4


# ---------------------------------------------------------------------------
# TestPinning
# ---------------------------------------------------------------------------


class TestPinning:

    def test_inputs_cannot_be_deleted_mid_merge(self, asset_store):
        async def scenario():
            executor = StubExecutor(gate=asyncio.Event())
            manager = MergeJobManager(asset_store, executor=executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await wait_for_status(manager, job.id, JobStatus.PROCESSING)

            with pytest.raises(AssetInUseError):
                asset_store.delete(a.id)

            executor.gate.set()
            await manager.wait_idle()
            await manager.stop()
            return manager.get_job(job.id), a

        job, a = asyncio.run(scenario())
        assert job.status == JobStatus.COMPLETED
        assert asset_store.delete(a.id) is True


# ---------------------------------------------------------------------------
# TestReads
# ---------------------------------------------------------------------------


class TestReads:

    def test_get_unknown_job(self, asset_store, stub_executor):
        manager = MergeJobManager(asset_store, executor=stub_executor)
        with pytest.raises(NotFoundError):
            manager.get_job("nope")
        assert manager.find_job("nope") is None

    def test_list_newest_first_and_filtered(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            first = manager.submit("alice", [a.id, b.id], False)
            other = manager.submit("bob", [a.id, b.id], False)
            second = manager.submit("alice", [b.id, a.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager, first, other, second

        manager, first, other, second = asyncio.run(scenario())
        assert [j.id for j in manager.list_jobs("alice")] == [second.id, first.id]
        assert [j.id for j in manager.list_jobs()] == [second.id, other.id, first.id]

    def test_jobs_retained_after_completion(self, asset_store, stub_executor):
        async def scenario():
            manager = MergeJobManager(asset_store, executor=stub_executor)
            await manager.start()
            a, b = upload(asset_store, 1.0), upload(asset_store, 2.0)
            job = manager.submit("user-1", [a.id, b.id], False)
            await manager.wait_idle()
            await manager.stop()
            return manager, job

        manager, job = asyncio.run(scenario())
        assert manager.get_job(job.id).status == JobStatus.COMPLETED
        assert len(manager.list_jobs()) == 1
