"""External engine package — ffmpeg and ffprobe subprocess drivers.

WHY: Everything that talks to a media binary lives here, so the rest of
the service deals only in paths, metadata, and progress numbers.

RULES:
- All ffmpeg invocations go through MergeExecutor
- All ffprobe invocations go through probe_audio
"""

from mixmerge.engine.executor import MergeExecutor, MergeResult
from mixmerge.engine.probe import probe_audio

__all__ = ["MergeExecutor", "MergeResult", "probe_audio"]
