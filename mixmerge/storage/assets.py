"""Thread-safe asset store over a managed uploads directory.

WHY: Uploaded audio and generated merge outputs live side by side in one
directory that is also served statically. Letting user-supplied names
anywhere near a path join invites traversal bugs, and letting any module
reach into the directory hides who owns what. The store is the single
owner: it names files, writes them, resolves ids to paths, and removes
them.

HOW: Asset records live in a dict keyed by id, guarded by a
threading.Lock. Files live under ``root`` with generated names
(``audio_<epoch-ms>_<random>.<ext>`` for uploads,
``merged_<epoch-ms>_<random>.<ext>`` for outputs). Metadata is read by an
injected probe callable (ffprobe by default). Non-terminal merge jobs pin
the assets they reference; pinned assets cannot be deleted.

RULES:
- Only generated storage names are ever joined onto the root
- register_upload() rejects non-audio/* MIME types and oversized payloads
- Metadata extraction never fails an upload
- delete() is idempotent: a missing asset returns False, never raises
- Unlink failures on delete are logged, not propagated
- Store mutations hold the lock; file I/O happens outside it
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from mixmerge.config import MAX_UPLOAD_BYTES, UPLOAD_URL_PREFIX, UPLOADS_DIR
from mixmerge.core.models import Asset, AudioMetadata
from mixmerge.engine.probe import probe_audio
from mixmerge.errors import (
    AssetInUseError,
    FilesystemError,
    NotFoundError,
    PermissionDeniedError,
    UploadTooLargeError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Probe = Callable[[Path], AudioMetadata]

_EXTENSION_RE = re.compile(r"^[a-z0-9]{1,10}$")


def _safe_extension(original_name: str) -> str:
    """Return the original file's extension if it is plain alphanumerics."""
    suffix = Path(original_name).suffix.lower().lstrip(".")
    if _EXTENSION_RE.match(suffix):
        return suffix
    return ""


def generate_storage_name(prefix: str, extension: str = "") -> str:
    """Build a collision-resistant storage filename.

    RULES:
    - Format: <prefix>_<epoch-ms>_<10 random hex chars>[.<ext>]
    - Never derived from user input beyond a validated extension
    """
    stamp = int(time.time() * 1000)
    suffix = secrets.token_hex(5)
    name = "{}_{}_{}".format(prefix, stamp, suffix)
    if extension:
        name = "{}.{}".format(name, extension)
    return name


class AssetStore:
    """Owns uploaded audio assets and the directory they live in."""

    def __init__(
        self,
        root: Union[str, Path, None] = None,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        probe: Optional[Probe] = None,
    ) -> None:
        self.root = Path(root or UPLOADS_DIR).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_upload_bytes = max_upload_bytes
        self._probe = probe or probe_audio
        self._assets: Dict[str, Asset] = {}
        self._pins: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_upload(
        self,
        data: bytes,
        original_name: str,
        mime_type: str,
        uploader_id: str,
    ) -> Asset:
        """Validate, store, and index an uploaded audio file.

        WHY: This is the only way user bytes enter the uploads directory.

        HOW: Checks MIME type and size, writes the bytes under a generated
        name, probes metadata, and indexes the new Asset.

        RULES:
        - mime_type must start with "audio/" (ValidationError otherwise)
        - Empty payloads are rejected (ValidationError)
        - len(data) > max_upload_bytes raises UploadTooLargeError
        - original_name is kept for display only
        """
        if not (mime_type or "").lower().startswith("audio/"):
            raise ValidationError(
                "Only audio files are allowed (got '{}')".format(mime_type or "unknown")
            )
        if not data:
            raise ValidationError("Uploaded file is empty")
        if len(data) > self.max_upload_bytes:
            raise UploadTooLargeError(
                "File is {:,} bytes; the limit is {:,} bytes".format(
                    len(data), self.max_upload_bytes
                )
            )

        display_name = Path(original_name or "upload").name or "upload"
        storage_name = generate_storage_name("audio", _safe_extension(display_name))
        path = self.root / storage_name
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise FilesystemError("Could not store upload: {}".format(exc))

        asset = self._index(
            storage_name=storage_name,
            original_name=display_name,
            size_bytes=len(data),
            mime_type=mime_type,
            owner_id=uploader_id,
        )
        logger.info(
            "Stored upload %s as %s (%d bytes, %.1fs)",
            display_name, storage_name, asset.size_bytes, asset.duration_s,
        )
        return asset

    def register_output(
        self,
        path: Union[str, Path],
        original_name: str,
        mime_type: str,
        owner_id: str,
    ) -> Asset:
        """Index a file the pipeline wrote into the uploads directory.

        RULES:
        - path must be a direct child of root (FilesystemError otherwise)
        - path must exist
        """
        path = Path(path)
        if path.resolve().parent != self.root:
            raise FilesystemError("Output {} is outside the uploads root".format(path))
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise FilesystemError("Output file is missing: {}".format(exc))

        asset = self._index(
            storage_name=path.name,
            original_name=original_name,
            size_bytes=size,
            mime_type=mime_type,
            owner_id=owner_id,
        )
        logger.info("Registered output %s (%d bytes, %.1fs)", path.name, size, asset.duration_s)
        return asset

    def new_output_path(self, extension: str) -> Path:
        """Return an unused path under root for a pipeline output."""
        return self.root / generate_storage_name("merged", extension)

    def _index(
        self,
        storage_name: str,
        original_name: str,
        size_bytes: int,
        mime_type: str,
        owner_id: str,
    ) -> Asset:
        metadata = self.extract_metadata(self.root / storage_name)
        asset = Asset(
            id=uuid.uuid4().hex,
            storage_name=storage_name,
            original_name=original_name,
            size_bytes=size_bytes,
            mime_type=mime_type,
            uploader_id=owner_id,
            uploaded_at=time.time(),
            metadata=metadata,
        )
        with self._lock:
            self._assets[asset.id] = asset
        return asset

    # ------------------------------------------------------------------
    # Metadata and paths
    # ------------------------------------------------------------------

    def extract_metadata(self, target: Union[Asset, Path]) -> AudioMetadata:
        """Best-effort metadata; any probe failure yields zeroed values."""
        path = self.resolve_path(target) if isinstance(target, Asset) else Path(target)
        try:
            return self._probe(path)
        except Exception:
            logger.warning("Metadata extraction failed for %s", path.name, exc_info=True)
            return AudioMetadata.unknown()

    def resolve_path(self, asset: Asset) -> Path:
        """Map an asset's storage name to its path under root.

        RULES:
        - Deterministic: same asset → same path
        - Raises FilesystemError if the name would escape root
        """
        return self.path_for_name(asset.storage_name)

    def path_for_name(self, storage_name: str) -> Path:
        """Map a storage name (e.g. from a static URL) to a path under root."""
        candidate = (self.root / storage_name).resolve()
        if candidate.parent != self.root:
            raise FilesystemError("Invalid storage name: {!r}".format(storage_name))
        return candidate

    @staticmethod
    def url_for(asset: Asset) -> str:
        return "{}/{}".format(UPLOAD_URL_PREFIX, asset.storage_name)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_asset(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            return self._assets.get(asset_id)

    def get_asset(self, asset_id: str) -> Asset:
        """Return the asset or raise NotFoundError."""
        asset = self.find_asset(asset_id)
        if asset is None:
            raise NotFoundError("Asset not found: {}".format(asset_id))
        return asset

    def list_assets(self, uploader_id: Optional[str] = None) -> List[Asset]:
        """Return assets (optionally one uploader's), newest first."""
        with self._lock:
            assets = [
                a for a in self._assets.values()
                if uploader_id is None or a.uploader_id == uploader_id
            ]
        assets.reverse()
        return sorted(assets, key=lambda a: a.uploaded_at, reverse=True)

    # ------------------------------------------------------------------
    # Pinning
    # ------------------------------------------------------------------

    def pin(self, asset_ids: Iterable[str]) -> None:
        """Mark assets as referenced by a non-terminal job."""
        with self._lock:
            for asset_id in asset_ids:
                self._pins[asset_id] = self._pins.get(asset_id, 0) + 1

    def unpin(self, asset_ids: Iterable[str]) -> None:
        """Release references taken by pin()."""
        with self._lock:
            for asset_id in asset_ids:
                count = self._pins.get(asset_id, 0) - 1
                if count > 0:
                    self._pins[asset_id] = count
                else:
                    self._pins.pop(asset_id, None)

    def is_pinned(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._pins

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, asset_id: str, requester_id: Optional[str] = None) -> bool:
        """Remove an asset record and, best-effort, its file.

        WHY: Users clean up uploads they no longer need. Deletion must be
        safe to retry and must not pull a file out from under a running
        merge.

        RULES:
        - Returns True if the asset existed, False if already absent
        - requester_id, when given, must match the uploader
          (PermissionDeniedError)
        - Pinned assets raise AssetInUseError and are left untouched
        - File removal errors are logged, not raised
        """
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                return False
            if requester_id is not None and asset.uploader_id != requester_id:
                raise PermissionDeniedError(
                    "Asset {} belongs to another user".format(asset_id)
                )
            if asset_id in self._pins:
                raise AssetInUseError(
                    "Asset {} is used by a merge job that has not finished".format(asset_id)
                )
            del self._assets[asset_id]

        self.remove_file(self.root / asset.storage_name)
        logger.info("Deleted asset %s (%s)", asset_id, asset.storage_name)
        return True

    @staticmethod
    def remove_file(path: Path) -> None:
        """Unlink ``path`` if present; log and continue on failure."""
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove file: %s", path, exc_info=True)
