"""Configuration constants, encoding policy, and .env loading.

WHY: Centralizes every tunable value — storage location, upload ceiling,
engine binaries, worker pool size, deadlines — so operators can override
them without touching code. Fixed encoding policy lives here too, as
plain data next to the knobs.

HOW: python-dotenv loads the .env file on import. Constants are
module-level values read from os.environ with sensible defaults. The
_env_int() helper gives a clear error for malformed numbers.

RULES:
- Every runtime knob can be overridden via an environment variable
- Output codec, bitrate and silence parameters are fixed policy (not per job)
- MIN_MERGE_INPUTS is 2: a single input is rejected regardless of flags
- Upload ceiling defaults to 100 MiB
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root (where the service is started from)
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back to a default.

    RULES:
    - Unset or blank values return the default
    - Non-numeric values raise ValueError naming the variable
    """
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(
            "Environment variable {} must be an integer, got '{}'".format(name, raw)
        )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

UPLOADS_DIR = Path(os.getenv("MIXMERGE_UPLOADS_DIR", "uploads")).resolve()
"""Managed root for uploaded originals and generated merge outputs."""

MAX_UPLOAD_BYTES = _env_int("MIXMERGE_MAX_UPLOAD_BYTES", 100 * 1024 * 1024)

UPLOAD_URL_PREFIX = "/uploads"

# ---------------------------------------------------------------------------
# External engine
# ---------------------------------------------------------------------------

FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("FFPROBE_PATH", "ffprobe")
PROBE_TIMEOUT_SECONDS = _env_int("MIXMERGE_PROBE_TIMEOUT_SECONDS", 30)

# ---------------------------------------------------------------------------
# Output encoding policy (fixed, not negotiable per job)
# ---------------------------------------------------------------------------

OUTPUT_CODEC = "libmp3lame"
OUTPUT_BITRATE = "192k"
OUTPUT_EXTENSION = "mp3"
OUTPUT_MIME_TYPE = "audio/mpeg"

SILENCE_STOP_DURATION_S = 5
SILENCE_STOP_THRESHOLD = "-50dB"

# ---------------------------------------------------------------------------
# Merge jobs
# ---------------------------------------------------------------------------

MIN_MERGE_INPUTS = 2
MAX_MERGE_INPUTS = _env_int("MIXMERGE_MAX_INPUTS", 20)
MERGE_WORKERS = _env_int("MIXMERGE_WORKERS", 2)
MERGE_QUEUE_SIZE = _env_int("MIXMERGE_QUEUE_SIZE", 100)
MERGE_TIMEOUT_SECONDS = _env_int("MIXMERGE_TIMEOUT_SECONDS", 30 * 60)

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

HOST = os.getenv("MIXMERGE_HOST", "0.0.0.0")
PORT = _env_int("MIXMERGE_PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
