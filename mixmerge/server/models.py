"""Pydantic request/response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for request validation,
response serialization, and automatic OpenAPI documentation. Pydantic
models enforce field types at runtime and generate the JSON Schema shown
in the /docs UI.

HOW: One model per request body or response shape. Internal dataclasses
(Asset, MergeJob) are converted at the edge by the app module, so these
models never leak storage paths.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- MergeRequest accepts the dashboard's camelCase keys (fileIds,
  removeSilence) as well as snake_case
- Responses expose servable URLs, never filesystem paths
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class MergeRequest(BaseModel):
    """Body of POST /api/mixmerge/merge.

    RULES:
    - file_ids order is the concatenation order
    - remove_silence defaults to False
    """

    model_config = ConfigDict(populate_by_name=True)

    file_ids: List[str] = Field(
        alias="fileIds",
        description="Ordered asset ids to concatenate.",
    )
    remove_silence: bool = Field(
        default=False,
        alias="removeSilence",
        description="Strip silences of 5 seconds or longer from each input first.",
    )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AudioMetadataResponse(BaseModel):
    """Best-effort technical metadata; zeros mean unknown."""

    duration: float = Field(description="Duration in seconds.")
    bitrate: int = Field(description="Bitrate in bits per second.")
    sample_rate: int = Field(description="Sample rate in Hz.")
    codec: str = Field(description="Codec short name, or 'unknown'.")


class AssetResponse(BaseModel):
    """A stored audio asset.

    RULES:
    - filename is the generated storage name, also the last URL segment
    - url is servable from this API (GET /uploads/{filename})
    """

    id: str = Field(description="Stable asset identifier.")
    filename: str = Field(description="Generated storage filename.")
    original_name: str = Field(description="Filename supplied by the uploader.")
    size: int = Field(description="File size in bytes.")
    mime_type: str = Field(description="MIME type recorded at upload.")
    uploader_id: str = Field(description="User who uploaded (or owns) the asset.")
    uploaded_at: float = Field(description="Upload timestamp (Unix epoch seconds).")
    url: str = Field(description="URL path serving the file.")
    metadata: AudioMetadataResponse = Field(description="Extracted audio metadata.")

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "9f1c2b7e5a8d4f0c9e6b3a2d1c0f8e7d",
                "filename": "audio_1760860800000_3fa9c01be7.mp3",
                "original_name": "intro.mp3",
                "size": 482113,
                "mime_type": "audio/mpeg",
                "uploader_id": "user-42",
                "uploaded_at": 1760860800.0,
                "url": "/uploads/audio_1760860800000_3fa9c01be7.mp3",
                "metadata": {
                    "duration": 10.03,
                    "bitrate": 192000,
                    "sample_rate": 44100,
                    "codec": "mp3",
                },
            }
        ]
    }}


class DeleteAssetResponse(BaseModel):
    """Result of an idempotent asset deletion."""

    id: str = Field(description="The asset id the request named.")
    deleted: bool = Field(
        description="True if the asset was removed now, False if it was already absent.",
    )


class JobResponse(BaseModel):
    """Merge job status snapshot.

    WHY: Clients poll this to track progress and find the output.

    RULES:
    - progress is a percent in [0, 100] and never decreases
    - output_asset_id / output_url are only set when status is 'completed'
    - error is only set when status is 'failed' or 'cancelled'
    """

    id: str = Field(description="Unique job identifier.")
    status: str = Field(description="pending, processing, completed, failed, or cancelled.")
    progress: float = Field(description="Percent complete, 0-100.")
    input_asset_ids: List[str] = Field(description="Ordered input asset ids.")
    remove_silence: bool = Field(description="Whether silence removal was requested.")
    creator_id: str = Field(description="User who submitted the job.")
    created_at: float = Field(description="Submission timestamp (Unix epoch seconds).")
    started_at: Optional[float] = Field(
        default=None,
        description="When processing started, if it has.",
    )
    completed_at: Optional[float] = Field(
        default=None,
        description="When the job reached a terminal state, if it has.",
    )
    output_asset_id: Optional[str] = Field(
        default=None,
        description="Asset id of the merged file, only when completed.",
    )
    output_url: Optional[str] = Field(
        default=None,
        description="URL path of the merged file, only when completed.",
    )
    error: Optional[str] = Field(
        default=None,
        description="Failure or cancellation reason.",
    )

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "550e8400e29b41d4a716446655440000",
                "status": "processing",
                "progress": 42.5,
                "input_asset_ids": ["a1", "b2"],
                "remove_silence": False,
                "creator_id": "user-42",
                "created_at": 1760860800.0,
                "started_at": 1760860801.2,
                "completed_at": None,
                "output_asset_id": None,
                "output_url": None,
                "error": None,
            }
        ]
    }}


class ErrorResponse(BaseModel):
    """Standard error response body.

    RULES:
    - detail is always a human-readable error message
    """

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    ffmpeg: bool = Field(description="Whether the ffmpeg binary was found on PATH.")
