"""MixMerge — asynchronous audio merge service.

WHY: The team dashboard lets users upload audio snippets and stitch them
into one file, optionally trimming long silences. Transcoding takes
seconds to minutes, so the service accepts a merge request, returns a job
immediately, and lets clients poll for progress and the finished output.

HOW: Four layers, leaves first — storage (uploaded assets on disk),
core (typed filter-graph description and its serializer), engine (ffmpeg
and ffprobe subprocess drivers), server (job manager, worker pool and
FastAPI routes).

RULES:
- Filesystem paths are built only from generated storage names
- The filter graph is pure data; rendering is separate and deterministic
- Execution failures surface only through the job record, never the submitter
"""

__version__ = "0.1.0"
