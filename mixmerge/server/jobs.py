"""Merge job state machine with a bounded async worker pool.

WHY: The HTTP API needs to track merge jobs through their lifecycle
(pending → processing → completed | failed | cancelled). A merge runs
ffmpeg for seconds to minutes, so the API returns a job immediately and
the work happens in the background. Without a cap, every submission
would spawn its own ffmpeg; the pool keeps concurrent transcodes bounded
while submission stays instant.

HOW: Three components work together:
  JobStatus       — enum of valid job states
  MergeJob        — frozen dataclass snapshot of one job
  MergeJobManager — job index, submission queue, and N worker tasks that
                    resolve inputs, drive MergeExecutor, and record outcomes

RULES:
- submit() validates, creates a PENDING job, enqueues it, and returns;
  it never waits for or surfaces execution failures
- After creation only the owning worker writes a job; every write replaces
  the stored snapshot, so readers only ever see immutable MergeJob objects
- Unknown input assets fail the job without it ever reaching PROCESSING
- Progress is clamped to [0, 100] and never decreases
- output_asset_id is set iff status is COMPLETED
- Terminal states (COMPLETED, FAILED, CANCELLED) accept no further writes
- Jobs are never deleted, so results stay retrievable
- Inputs are pinned in the AssetStore until the job is terminal
- stop() leaves no job pending: queued and in-flight jobs end as CANCELLED
- Output registration (which probes the file) runs off the event loop
- The job index is guarded by threading.Lock; queue and events belong to
  the event loop that called start()
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from mixmerge.config import (
    MAX_MERGE_INPUTS,
    MERGE_QUEUE_SIZE,
    MERGE_WORKERS,
    MIN_MERGE_INPUTS,
    OUTPUT_EXTENSION,
    OUTPUT_MIME_TYPE,
)
from mixmerge.engine.executor import MergeExecutor
from mixmerge.engine.progress import clamp_percent
from mixmerge.errors import (
    ExecutionError,
    FilesystemError,
    MergeCancelledError,
    NotFoundError,
    QueueFullError,
    ValidationError,
)
from mixmerge.storage.assets import AssetStore

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    """Valid states for a merge job.

    HOW: Inherits from str so values serialize cleanly to JSON.

    RULES:
    - pending: created and queued, no worker has started it
    - processing: inputs resolved, ffmpeg running
    - completed: output asset registered
    - failed: missing input, engine error, or deadline exceeded
    - cancelled: stopped on request (or by shutdown)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


@dataclass(frozen=True)
class MergeJob:
    """Immutable snapshot of one merge job.

    RULES:
    - id: uuid4 hex, unique and immutable
    - input_asset_ids: ordered; order is the concatenation order
    - progress: float percent in [0, 100]
    - output_asset_id: only when status is COMPLETED
    - error: human-readable reason when FAILED or CANCELLED
    - started_at: set on entering PROCESSING
    - completed_at: set on entering any terminal state
    """

    id: str
    creator_id: str
    input_asset_ids: Tuple[str, ...]
    remove_silence: bool
    status: JobStatus
    created_at: float
    progress: float = 0.0
    output_asset_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


JobListener = Callable[[MergeJob], None]


class MergeJobManager:
    """Owns merge jobs and the workers that execute them.

    WHY: Request handlers, polling clients, and workers all touch job
    state. Centralizing it here, with a single writer per job, rules out
    races on any one job's fields.

    HOW: submit() puts job ids on an asyncio.Queue. start() spawns
    ``workers`` tasks that pull ids, run the merge through MergeExecutor,
    and write the outcome. Cancellation is requested through a per-job
    asyncio.Event the worker (and the executor) watches; the worker is the
    one that writes the CANCELLED state.

    RULES:
    - start() must run inside the event loop that will call submit()
    - submit() raises ValidationError / QueueFullError synchronously
    - get_job() raises NotFoundError; find_job() returns None
    - list_jobs() is newest first
    - on_update, if given, is called with every new snapshot
    """

    def __init__(
        self,
        assets: AssetStore,
        executor: Optional[MergeExecutor] = None,
        workers: int = MERGE_WORKERS,
        queue_size: int = MERGE_QUEUE_SIZE,
        min_inputs: int = MIN_MERGE_INPUTS,
        max_inputs: int = MAX_MERGE_INPUTS,
        on_update: Optional[JobListener] = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.assets = assets
        self.executor = executor or MergeExecutor()
        self.workers = workers
        self.queue_size = queue_size
        self.min_inputs = min_inputs
        self.max_inputs = max_inputs
        self._on_update = on_update
        self._jobs: Dict[str, MergeJob] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Create the queue and spawn the worker tasks."""
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.ensure_future(self._worker(index))
            for index in range(self.workers)
        ]
        logger.info("Started %d merge workers", self.workers)

    async def stop(self) -> None:
        """Cancel the workers; in-flight jobs end as CANCELLED.

        Jobs still waiting in the queue are drained and end as CANCELLED
        too, releasing their input pins.
        """
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._queue is not None:
            while True:
                try:
                    job_id = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self._finish(job_id, JobStatus.CANCELLED, error="Service shut down")
                self._queue.task_done()
        if tasks:
            logger.info("Stopped %d merge workers", len(tasks))

    async def wait_idle(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Submission and reads
    # ------------------------------------------------------------------

    def submit(
        self,
        creator_id: str,
        input_asset_ids: Sequence[str],
        remove_silence: bool,
    ) -> MergeJob:
        """Create a PENDING job and queue it; return without waiting.

        RULES:
        - Fewer than min_inputs or more than max_inputs → ValidationError
          (a single input is rejected even with remove_silence)
        - Full queue → QueueFullError
        - Asset ids are not resolved here; unknown ids fail the job later
        """
        ids = tuple(input_asset_ids)
        if len(ids) < self.min_inputs:
            raise ValidationError(
                "A merge needs at least {} input files (got {})".format(
                    self.min_inputs, len(ids)
                )
            )
        if len(ids) > self.max_inputs:
            raise ValidationError(
                "A merge accepts at most {} input files (got {})".format(
                    self.max_inputs, len(ids)
                )
            )
        if self._queue is None:
            raise RuntimeError("MergeJobManager.start() has not been called")
        if self._queue.full():
            raise QueueFullError(
                "Merge queue is full ({} jobs waiting)".format(self.queue_size)
            )

        job = MergeJob(
            id=uuid.uuid4().hex,
            creator_id=creator_id,
            input_asset_ids=ids,
            remove_silence=bool(remove_silence),
            status=JobStatus.PENDING,
            created_at=time.time(),
        )
        with self._lock:
            self._jobs[job.id] = job
            self._cancel_events[job.id] = asyncio.Event()
        self.assets.pin(ids)
        self._queue.put_nowait(job.id)

        logger.info(
            "Queued merge job %s (%d inputs, remove_silence=%s)",
            job.id, len(ids), job.remove_silence,
        )
        self._notify(job)
        return job

    def find_job(self, job_id: str) -> Optional[MergeJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_job(self, job_id: str) -> MergeJob:
        """Return the current snapshot or raise NotFoundError."""
        job = self.find_job(job_id)
        if job is None:
            raise NotFoundError("Job not found: {}".format(job_id))
        return job

    def list_jobs(self, creator_id: Optional[str] = None) -> List[MergeJob]:
        """Return jobs (optionally one creator's), newest first."""
        with self._lock:
            jobs = [
                j for j in self._jobs.values()
                if creator_id is None or j.creator_id == creator_id
            ]
        # Reverse insertion order so ties on created_at still put newer first
        jobs.reverse()
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def cancel(self, job_id: str) -> MergeJob:
        """Request cancellation; the owning worker records the outcome.

        RULES:
        - Unknown id → NotFoundError
        - Terminal jobs are returned unchanged
        - A queued job is cancelled when a worker picks it up; a running
          job's ffmpeg process is terminated
        """
        job = self.get_job(job_id)
        if job.is_terminal:
            return job
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
            logger.info("Cancellation requested for job %s", job_id)
        return self.get_job(job_id)

    # ------------------------------------------------------------------
    # Worker side (single writer)
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job_id = await self._queue.get()
            try:
                await self._run_job(job_id)
            except asyncio.CancelledError:
                self._finish(job_id, JobStatus.CANCELLED, error="Service shut down")
                raise
            except Exception as exc:
                logger.exception("Merge worker %d crashed on job %s", index, job_id)
                self._finish(job_id, JobStatus.FAILED, error=str(exc) or type(exc).__name__)
            finally:
                self._queue.task_done()

    async def _run_job(self, job_id: str) -> None:
        job = self.find_job(job_id)
        if job is None or job.is_terminal:
            return
        with self._lock:
            cancel_event = self._cancel_events.get(job_id)

        if cancel_event is not None and cancel_event.is_set():
            self._finish(job_id, JobStatus.CANCELLED, error="Cancelled before start")
            return

        try:
            paths, total_duration = self._resolve_inputs(job)
        except (NotFoundError, FilesystemError) as exc:
            logger.warning("Job %s failed input resolution: %s", job_id, exc)
            self._finish(job_id, JobStatus.FAILED, error=str(exc))
            return

        self._write(job_id, status=JobStatus.PROCESSING, started_at=time.time())
        output_path = self.assets.new_output_path(OUTPUT_EXTENSION)

        try:
            await self.executor.execute(
                paths,
                output_path,
                job.remove_silence,
                on_progress=lambda pct: self._record_progress(job_id, pct),
                total_duration_s=total_duration,
                cancel_event=cancel_event,
            )
            # Probing the output runs ffprobe; keep it off the event loop
            output = await asyncio.get_running_loop().run_in_executor(
                None,
                functools.partial(
                    self.assets.register_output,
                    output_path,
                    original_name="merged_{}.{}".format(job_id[:8], OUTPUT_EXTENSION),
                    mime_type=OUTPUT_MIME_TYPE,
                    owner_id=job.creator_id,
                ),
            )
        except MergeCancelledError as exc:
            self.assets.remove_file(output_path)
            self._finish(job_id, JobStatus.CANCELLED, error=exc.message)
        except (ExecutionError, FilesystemError) as exc:
            logger.warning("Merge job %s failed: %s", job_id, exc)
            self.assets.remove_file(output_path)
            self._finish(job_id, JobStatus.FAILED, error=str(exc))
        except asyncio.CancelledError:
            self.assets.remove_file(output_path)
            raise
        else:
            self._finish(
                job_id,
                JobStatus.COMPLETED,
                output_asset_id=output.id,
                progress=100.0,
            )

    def _resolve_inputs(self, job: MergeJob) -> Tuple[List[Path], Optional[float]]:
        """Map input ids to paths; return the paths and summed duration.

        RULES:
        - Any unknown id raises NotFoundError
        - A known asset whose file is gone raises FilesystemError
        - The total is None when any input's duration is unknown
        """
        paths = []
        total = 0.0
        known = True
        for asset_id in job.input_asset_ids:
            asset = self.assets.find_asset(asset_id)
            if asset is None:
                raise NotFoundError("Input asset not found: {}".format(asset_id))
            path = self.assets.resolve_path(asset)
            if not path.is_file():
                raise FilesystemError("Input file for asset {} is missing".format(asset_id))
            paths.append(path)
            if asset.duration_s > 0:
                total += asset.duration_s
            else:
                known = False
        return paths, (total if known and total > 0 else None)

    def _record_progress(self, job_id: str, pct: float) -> None:
        """Persist a progress value, keeping the stored value non-decreasing."""
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None or current.status != JobStatus.PROCESSING:
                return
            value = max(current.progress, clamp_percent(pct))
            if value == current.progress:
                return
            updated = replace(current, progress=value)
            self._jobs[job_id] = updated
        self._notify(updated)

    def _write(self, job_id: str, **changes) -> Optional[MergeJob]:
        """Replace a non-terminal job's snapshot with ``changes`` applied."""
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None or current.is_terminal:
                return current
            updated = replace(current, **changes)
            self._jobs[job_id] = updated
        if updated.status != current.status:
            logger.info("Job %s: %s → %s", job_id, current.status.value, updated.status.value)
        self._notify(updated)
        return updated

    def _finish(self, job_id: str, status: JobStatus, **changes) -> Optional[MergeJob]:
        """Move a job into a terminal state and release its input pins."""
        if status != JobStatus.COMPLETED:
            changes["output_asset_id"] = None
        job = self.find_job(job_id)
        if job is None or job.is_terminal:
            return job
        updated = self._write(job_id, status=status, completed_at=time.time(), **changes)
        with self._lock:
            self._cancel_events.pop(job_id, None)
        self.assets.unpin(job.input_asset_ids)
        return updated

    def _notify(self, job: MergeJob) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(job)
        except Exception:
            logger.warning("Job update listener raised for job %s", job.id, exc_info=True)
