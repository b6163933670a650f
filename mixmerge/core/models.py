"""Domain dataclasses for stored audio assets.

WHY: The asset store, the job manager, and the API all pass around the
same facts about an uploaded file — where it lives, who owns it, how long
it is. A typed, immutable record keeps those facts consistent and safe to
hand to any reader.

HOW: Two frozen dataclasses:
  AudioMetadata — best-effort technical metadata (duration, bitrate, ...)
  Asset         — a stored audio file plus ownership and metadata

RULES:
- Both dataclasses are frozen; updates produce new instances via replace()
- storage_name is generated by the store and is the only name used for paths
- original_name is display-only and never touches the filesystem
- Metadata is advisory: unreadable files yield AudioMetadata.unknown()
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AudioMetadata:
    """Technical metadata extracted from an audio file.

    RULES:
    - duration_s: float seconds, 0.0 when unknown
    - bitrate: bits per second, 0 when unknown
    - sample_rate: Hz, 0 when unknown
    - codec: codec short name, "unknown" when unreadable
    """

    duration_s: float = 0.0
    bitrate: int = 0
    sample_rate: int = 0
    codec: str = "unknown"

    @classmethod
    def unknown(cls) -> AudioMetadata:
        """Zeroed metadata for files the probe could not read."""
        return cls()


@dataclass(frozen=True)
class Asset:
    """A stored audio file addressed by a stable id.

    WHY: Merge jobs reference assets by id; the store resolves ids to
    paths. Keeping the generated storage name separate from the user's
    original filename is what prevents path traversal.

    RULES:
    - id: uuid4 hex, immutable
    - storage_name: "<prefix>_<epoch-ms>_<random>.<ext>", generated
    - original_name: what the uploader called the file (display only)
    - size_bytes: size on disk at registration time
    - uploaded_at: epoch seconds
    """

    id: str
    storage_name: str
    original_name: str
    size_bytes: int
    mime_type: str
    uploader_id: str
    uploaded_at: float
    metadata: AudioMetadata = field(default_factory=AudioMetadata)

    @property
    def duration_s(self) -> float:
        return self.metadata.duration_s
