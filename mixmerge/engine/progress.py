"""Parser for ffmpeg's ``-progress`` side channel.

WHY: ffmpeg reports progress as blocks of ``key=value`` lines, each block
terminated by ``progress=continue`` or ``progress=end``. The executor only
cares about one number — how far through the expected output duration
the encoder is — so this module turns the raw lines into percentages.

HOW: ProgressTracker consumes one line at a time. It remembers the latest
output timestamp and, when a block ends, returns a percent computed
against the expected total duration.

RULES:
- out_time_us and out_time_ms are both microseconds (ffmpeg's naming quirk)
- Percentages are clamped to [0, 100]
- With no known total, only ``progress=end`` yields a value (100)
- Malformed lines and values are ignored, never raised
"""

from __future__ import annotations

from typing import Optional

_TIME_KEYS = ("out_time_us", "out_time_ms")


def clamp_percent(value: float) -> float:
    """Clamp ``value`` into [0, 100]."""
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, float(value)))


class ProgressTracker:
    """Accumulates progress lines and emits percent-complete values."""

    def __init__(self, total_duration_s: Optional[float] = None) -> None:
        if total_duration_s is not None and total_duration_s <= 0:
            total_duration_s = None
        self.total_duration_s = total_duration_s
        self.out_time_s = 0.0
        self.finished = False

    def feed(self, line: str) -> Optional[float]:
        """Consume one line; return a percent when a progress block closes."""
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None

        if key in _TIME_KEYS:
            try:
                self.out_time_s = max(0.0, int(value) / 1_000_000)
            except ValueError:
                pass
            return None

        if key != "progress":
            return None

        if value == "end":
            self.finished = True
            return 100.0

        if self.total_duration_s is None:
            return None
        return clamp_percent(self.out_time_s / self.total_duration_s * 100)
