"""Best-effort audio metadata extraction via ffprobe.

WHY: The dashboard shows duration, bitrate, and codec for every asset,
and the job manager uses input durations as the denominator for progress
percentages. None of that is load-bearing: an unreadable file must still
upload fine, just with unknown metadata.

HOW: Runs ``ffprobe -print_format json -show_format -show_streams`` and
parses the report. parse_probe_report() is split out so the parsing rules
are testable without a binary.

RULES:
- probe_audio() never raises; any failure returns AudioMetadata.unknown()
- Duration comes from the container (format.duration), falling back to
  the first audio stream's duration
- Bitrate prefers the container's bit_rate, then the stream's
- codec / sample_rate come from the first audio stream
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional, Union

from mixmerge.config import FFPROBE_PATH, PROBE_TIMEOUT_SECONDS
from mixmerge.core.models import AudioMetadata

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def parse_probe_report(report: Dict[str, Any]) -> AudioMetadata:
    """Turn ffprobe's JSON report into AudioMetadata.

    RULES:
    - Missing or malformed numbers become 0
    - A report with no audio stream yields codec "unknown"
    """
    fmt = report.get("format") or {}
    streams = report.get("streams") or []
    audio = next(
        (s for s in streams if s.get("codec_type") == "audio"),
        {},
    )

    duration = _as_float(fmt.get("duration"))
    if duration <= 0:
        duration = _as_float(audio.get("duration"))

    bitrate = _as_int(fmt.get("bit_rate")) or _as_int(audio.get("bit_rate"))

    return AudioMetadata(
        duration_s=duration,
        bitrate=bitrate,
        sample_rate=_as_int(audio.get("sample_rate")),
        codec=audio.get("codec_name") or "unknown",
    )


def probe_audio(
    path: Union[str, Path],
    ffprobe_path: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> AudioMetadata:
    """Read metadata for ``path``; return zeroed metadata on any failure."""
    command = [
        ffprobe_path or FFPROBE_PATH,
        "-hide_banner",
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout_s or PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("ffprobe could not run for %s: %s", path, exc)
        return AudioMetadata.unknown()

    if result.returncode != 0:
        logger.warning(
            "ffprobe failed for %s (exit %d): %s",
            path, result.returncode, result.stderr.strip(),
        )
        return AudioMetadata.unknown()

    try:
        report = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        logger.warning("ffprobe returned unparseable output for %s", path)
        return AudioMetadata.unknown()

    return parse_probe_report(report)
