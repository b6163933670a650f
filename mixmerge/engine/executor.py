"""Async driver for the ffmpeg merge subprocess.

WHY: A merge can take minutes. The job workers need to start ffmpeg,
stream its progress back as it goes, stop it on request or when it hangs,
and turn its exit into either a result or an error with ffmpeg's own
diagnostics. None of that may block the event loop that also serves the
HTTP API.

HOW: MergeExecutor.execute() validates paths, renders the command from
the typed filter graph, and spawns ffmpeg with
asyncio.create_subprocess_exec. Two readers run concurrently: one parses
the ``-progress pipe:1`` stream on stdout, the other keeps the tail of
stderr. The process wait races against an optional cancel event and the
deadline.

RULES:
- Missing inputs fail fast with FilesystemError before ffmpeg is started
- Progress values are clamped to [0, 100] before reaching on_progress
- Exit 0 with the output present → MergeResult; anything else raises
- Non-zero exit → ExecutionError carrying the stderr tail and return code
- Deadline expiry → process killed, ExecutionTimeoutError
- Cancel event set → process terminated, MergeCancelledError
- A partially written output file is left in place for the caller
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Optional, Sequence, Union

from mixmerge.config import (
    FFMPEG_PATH,
    MERGE_TIMEOUT_SECONDS,
    OUTPUT_BITRATE,
    OUTPUT_CODEC,
)
from mixmerge.core.filtergraph import build_engine_spec
from mixmerge.engine.progress import ProgressTracker, clamp_percent
from mixmerge.errors import (
    ExecutionError,
    ExecutionTimeoutError,
    FilesystemError,
    MergeCancelledError,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 40
_KILL_GRACE_S = 5.0

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a successful merge."""

    output_path: Path
    returncode: int
    elapsed_s: float


class MergeExecutor:
    """Runs ffmpeg to concatenate audio files into one output.

    RULES:
    - ffmpeg_path defaults to FFMPEG_PATH from config
    - timeout_s defaults to MERGE_TIMEOUT_SECONDS; 0 or None disables it
    - One executor can run any number of merges concurrently; it holds
      no per-merge state
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        timeout_s: Optional[float] = MERGE_TIMEOUT_SECONDS,
        codec: str = OUTPUT_CODEC,
        bitrate: str = OUTPUT_BITRATE,
        kill_grace_s: float = _KILL_GRACE_S,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path or FFMPEG_PATH
        self.timeout_s = timeout_s or None
        self.codec = codec
        self.bitrate = bitrate
        self.kill_grace_s = kill_grace_s

    async def execute(
        self,
        input_paths: Sequence[Union[str, Path]],
        output_path: Union[str, Path],
        remove_silence: bool,
        on_progress: Optional[ProgressCallback] = None,
        total_duration_s: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MergeResult:
        """Merge ``input_paths`` in order into ``output_path``.

        Args:
            input_paths: Ordered input files; each must exist.
            output_path: Where ffmpeg writes the merged file.
            remove_silence: Strip silences of 5s or more from each input.
            on_progress: Called with each percent-complete value.
            total_duration_s: Expected output duration, used to turn
                ffmpeg's output timestamp into a percentage.
            cancel_event: When set, the running process is terminated.

        Returns:
            MergeResult describing the finished output.
        """
        inputs = [Path(p) for p in input_paths]
        for path in inputs:
            if not path.is_file():
                raise FilesystemError("Input file does not exist: {}".format(path))

        output_path = Path(output_path)
        if not output_path.parent.is_dir():
            raise FilesystemError(
                "Output directory does not exist: {}".format(output_path.parent)
            )

        spec = build_engine_spec(inputs, remove_silence)
        args = spec.to_args(
            output_path,
            ffmpeg_path=self.ffmpeg_path,
            codec=self.codec,
            bitrate=self.bitrate,
        )
        logger.debug("ffmpeg command: %s", " ".join(shlex.quote(a) for a in args))

        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutionError("Could not start ffmpeg ({})".format(exc))

        tracker = ProgressTracker(total_duration_s)
        stderr_tail = deque(maxlen=_STDERR_TAIL_LINES)  # type: Deque[str]

        async def read_progress() -> None:
            async for raw in proc.stdout:
                pct = tracker.feed(raw.decode("utf-8", errors="replace"))
                if pct is not None and on_progress is not None:
                    on_progress(clamp_percent(pct))

        async def read_stderr() -> None:
            async for raw in proc.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    stderr_tail.append(line)

        async def run() -> int:
            await asyncio.gather(read_progress(), read_stderr())
            return await proc.wait()

        run_task = asyncio.ensure_future(run())
        waiters = {run_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The worker itself is being shut down
            await self._stop_process(proc)
            await asyncio.gather(run_task, return_exceptions=True)
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if run_task not in done:
            await self._stop_process(proc)
            await asyncio.gather(run_task, return_exceptions=True)
            diagnostics = "\n".join(stderr_tail)
            if cancel_task is not None and cancel_task in done:
                raise MergeCancelledError("Merge cancelled", diagnostics)
            raise ExecutionTimeoutError(
                "ffmpeg exceeded the {:.0f}s deadline".format(self.timeout_s),
                diagnostics,
            )

        try:
            returncode = run_task.result()
        except Exception as exc:
            await self._stop_process(proc)
            raise ExecutionError(
                "Error reading ffmpeg output streams ({})".format(exc),
                "\n".join(stderr_tail),
            )

        elapsed = time.monotonic() - started
        diagnostics = "\n".join(stderr_tail)

        if returncode != 0:
            logger.warning("ffmpeg exited with status %d after %.1fs", returncode, elapsed)
            raise ExecutionError(
                "ffmpeg exited with status {}".format(returncode),
                diagnostics,
                returncode,
            )

        if not output_path.is_file():
            raise ExecutionError(
                "ffmpeg exited cleanly but produced no output at {}".format(output_path),
                diagnostics,
                returncode,
            )

        logger.info("Merged %d inputs into %s in %.1fs", len(inputs), output_path.name, elapsed)
        return MergeResult(output_path=output_path, returncode=returncode, elapsed_s=elapsed)

    async def _stop_process(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate ``proc``, escalating to kill after the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_s)
        except asyncio.TimeoutError:
            logger.warning("ffmpeg (pid %s) ignored SIGTERM; killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
