"""Shared test fixtures for the mixmerge test suite.

WHY: Most tests need an asset store on a temp directory, audio "files"
with known durations, and an executor that behaves like ffmpeg without
needing the binary. Centralizing them keeps each test module focused on
its own behaviour.

HOW: Test audio files contain their duration as text (b"10.0"), and
fake_probe reads it back, so durations survive a round trip through the
store without ffprobe. StubExecutor mimics MergeExecutor's contract: it
writes an output whose "duration" is the sum of its inputs. FAKE_FFMPEG
is a small Python script standing in for the real binary when testing
the subprocess path.

RULES:
- Every fixture is function-scoped (no shared mutable state)
- StubExecutor never spawns processes
- The fake ffmpeg script's behaviour is selected via FAKE_FFMPEG_MODE
"""

from __future__ import annotations

import asyncio
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from mixmerge.core.models import AudioMetadata
from mixmerge.engine.executor import MergeResult
from mixmerge.errors import ExecutionError, MergeCancelledError
from mixmerge.storage.assets import AssetStore


# ---------------------------------------------------------------------------
# Probe and store
# ---------------------------------------------------------------------------


def fake_probe(path: Path) -> AudioMetadata:
    """Read a test file's duration from its text content."""
    try:
        duration = float(Path(path).read_text().strip())
    except (OSError, ValueError):
        return AudioMetadata.unknown()
    return AudioMetadata(duration_s=duration, bitrate=192000, sample_rate=44100, codec="mp3")


@pytest.fixture
def asset_store(tmp_path):
    """AssetStore rooted in a temp dir, probing durations from file content."""
    return AssetStore(root=tmp_path / "uploads", probe=fake_probe)


def upload(store: AssetStore, duration: float, name: str = "clip.mp3", user: str = "user-1"):
    """Register an upload whose probed duration is ``duration`` seconds."""
    return store.register_upload(
        str(duration).encode("utf-8"),
        name,
        "audio/mpeg",
        user,
    )


# ---------------------------------------------------------------------------
# Stub executor
# ---------------------------------------------------------------------------


class StubExecutor:
    """Stands in for MergeExecutor without running ffmpeg.

    RULES:
    - Writes a partial output before reporting progress, like ffmpeg does
    - progress values are passed to on_progress as given (unclamped)
    - gate: any Event-like object (asyncio or threading); polls is_set()
      until it is set, honouring cancel_event
    - fail: raises ExecutionError after reporting progress
    - On success the output contains the summed input durations
    """

    def __init__(
        self,
        progress: Sequence[float] = (10.0, 35.0, 30.0, 80.0),
        fail: bool = False,
        gate: Optional[Any] = None,
    ) -> None:
        self.progress = list(progress)
        self.fail = fail
        self.gate = gate
        self.calls: List[Dict[str, Any]] = []

    async def execute(
        self,
        input_paths,
        output_path,
        remove_silence,
        on_progress=None,
        total_duration_s=None,
        cancel_event=None,
    ) -> MergeResult:
        output_path = Path(output_path)
        self.calls.append({
            "inputs": [Path(p) for p in input_paths],
            "output": output_path,
            "remove_silence": remove_silence,
            "total_duration_s": total_duration_s,
        })
        output_path.write_text("partial")

        for pct in self.progress:
            if on_progress is not None:
                on_progress(pct)
            await asyncio.sleep(0)

        if self.gate is not None:
            while not self.gate.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    raise MergeCancelledError("Merge cancelled")
                await asyncio.sleep(0.01)

        if self.fail:
            raise ExecutionError(
                "ffmpeg exited with status 1",
                "Invalid data found when processing input",
                1,
            )

        total = sum(fake_probe(p).duration_s for p in input_paths)
        output_path.write_text(str(total))
        return MergeResult(output_path=output_path, returncode=0, elapsed_s=0.0)


@pytest.fixture
def stub_executor():
    return StubExecutor()


# ---------------------------------------------------------------------------
# Fake ffmpeg / ffprobe binaries
# ---------------------------------------------------------------------------

FAKE_FFMPEG = '''#!{python}
import json
import os
import sys
import time

mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
args_file = os.environ.get("FAKE_FFMPEG_ARGS")
if args_file:
    with open(args_file, "w") as f:
        json.dump(sys.argv[1:], f)

output = sys.argv[-1]

if mode == "fail":
    sys.stderr.write("[mp3 @ 0x1] Header missing\\n")
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.stderr.flush()
    sys.exit(1)

if mode == "hang":
    with open(output, "wb") as f:
        f.write(b"partial")
    sys.stdout.write("out_time_us=1000000\\nprogress=continue\\n")
    sys.stdout.flush()
    time.sleep(60)
    sys.exit(0)

for us in (2500000, 5000000, 20000000):
    sys.stdout.write("bitrate=192.0kbits/s\\n")
    sys.stdout.write("out_time_us={{}}\\n".format(us))
    sys.stdout.write("progress=continue\\n")
    sys.stdout.flush()

if mode != "noout":
    with open(output, "wb") as f:
        f.write(b"merged audio")

sys.stdout.write("out_time_us=25000000\\nprogress=end\\n")
sys.stdout.flush()
sys.exit(0)
'''

FAKE_FFPROBE = '''#!{python}
import json
import os
import sys

if os.environ.get("FAKE_FFPROBE_MODE") == "fail":
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)

print(json.dumps({{
    "streams": [{{"codec_type": "audio", "codec_name": "mp3", "sample_rate": "44100"}}],
    "format": {{"duration": "12.5", "bit_rate": "192000"}},
}}))
'''


def _write_script(path: Path, template: str) -> Path:
    path.write_text(template.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


needs_posix = pytest.mark.skipif(
    sys.platform.startswith("win"),
    reason="fake engine scripts rely on POSIX shebang execution",
)


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Path to an executable that mimics ffmpeg's CLI contract."""
    return _write_script(tmp_path / "ffmpeg", FAKE_FFMPEG)


@pytest.fixture
def fake_ffprobe(tmp_path):
    """Path to an executable that prints a fixed ffprobe JSON report."""
    return _write_script(tmp_path / "ffprobe", FAKE_FFPROBE)
