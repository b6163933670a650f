"""Core domain package — asset records and the typed filter graph.

WHY: Everything in here is pure data or pure functions, so it can be
tested without a filesystem, an event loop, or an ffmpeg binary.

RULES:
- No I/O in this package
- The engine and server layers depend on core, never the reverse
"""

from mixmerge.core.filtergraph import (
    EngineSpec,
    PlainConcat,
    SilenceStripConcat,
    build_engine_spec,
    build_filter_graph,
    render_filter_graph,
)
from mixmerge.core.models import Asset, AudioMetadata

__all__ = [
    "Asset",
    "AudioMetadata",
    "EngineSpec",
    "PlainConcat",
    "SilenceStripConcat",
    "build_engine_spec",
    "build_filter_graph",
    "render_filter_graph",
]
