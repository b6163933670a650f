"""FastAPI application with audio upload, merge, and polling routes.

WHY: The dashboard's MixMerge page needs an HTTP API to upload audio,
list and delete uploads, submit merge jobs, poll their status, and play
back originals and results. FastAPI provides request validation, OpenAPI
docs, and an async runtime the merge workers can share.

HOW: create_app() builds the FastAPI app around an AssetStore and a
MergeJobManager, kept on app.state. The lifespan starts the manager's
worker pool on startup and stops it on shutdown. Route handlers translate
the mixmerge error taxonomy into HTTP status codes.

RULES:
- Every /api/mixmerge route requires the X-User-Id header (set by the
  upstream auth layer); missing → 401
- Uploads: multipart field "audio", audio/* only (400), ≤ size limit (413)
- Asset delete: uploader only (403), refused while in use (409),
  idempotent (deleted=false when already absent)
- Merge submit returns 201 with the pending job immediately
- Jobs are only visible to their creator (404 otherwise)
- /uploads/{filename} serves stored files by generated name; 404 if absent
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import logging
import shutil
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from mixmerge import __version__
from mixmerge.config import FFMPEG_PATH
from mixmerge.core.models import Asset
from mixmerge.errors import (
    AssetInUseError,
    FilesystemError,
    MixMergeError,
    NotFoundError,
    PermissionDeniedError,
    QueueFullError,
    UploadTooLargeError,
    ValidationError,
)
from mixmerge.server.jobs import JobStatus, MergeJob, MergeJobManager
from mixmerge.server.models import (
    AssetResponse,
    AudioMetadataResponse,
    DeleteAssetResponse,
    ErrorResponse,
    HealthResponse,
    JobResponse,
    MergeRequest,
)
from mixmerge.storage.assets import AssetStore

logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (UploadTooLargeError, 413),
    (QueueFullError, 429),
    (ValidationError, 400),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (AssetInUseError, 409),
)


def _http_error(exc: MixMergeError) -> HTTPException:
    """Map a mixmerge error onto an HTTPException with the same message."""
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_user_id(
    x_user_id: Annotated[
        Optional[str],
        Header(description="Authenticated user id, set by the upstream auth layer."),
    ] = None,
) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_assets(request: Request) -> AssetStore:
    return request.app.state.assets


def get_jobs(request: Request) -> MergeJobManager:
    return request.app.state.jobs


UserId = Annotated[str, Depends(get_user_id)]
Assets = Annotated[AssetStore, Depends(get_assets)]
Jobs = Annotated[MergeJobManager, Depends(get_jobs)]


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def _asset_to_response(asset: Asset) -> AssetResponse:
    meta = asset.metadata
    return AssetResponse(
        id=asset.id,
        filename=asset.storage_name,
        original_name=asset.original_name,
        size=asset.size_bytes,
        mime_type=asset.mime_type,
        uploader_id=asset.uploader_id,
        uploaded_at=asset.uploaded_at,
        url=AssetStore.url_for(asset),
        metadata=AudioMetadataResponse(
            duration=meta.duration_s,
            bitrate=meta.bitrate,
            sample_rate=meta.sample_rate,
            codec=meta.codec,
        ),
    )


def _job_to_response(job: MergeJob, assets: AssetStore) -> JobResponse:
    output_url = None
    if job.status == JobStatus.COMPLETED and job.output_asset_id:
        output = assets.find_asset(job.output_asset_id)
        if output is not None:
            output_url = AssetStore.url_for(output)
    return JobResponse(
        id=job.id,
        status=job.status.value,
        progress=job.progress,
        input_asset_ids=list(job.input_asset_ids),
        remove_silence=job.remove_silence,
        creator_id=job.creator_id,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        output_asset_id=job.output_asset_id,
        output_url=output_url,
        error=job.error,
    )


def _owned_job(jobs: MergeJobManager, job_id: str, user_id: str) -> MergeJob:
    job = jobs.find_job(job_id)
    if job is None or job.creator_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return job


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    assets: Optional[AssetStore] = None,
    jobs: Optional[MergeJobManager] = None,
) -> FastAPI:
    """Build the API around an asset store and job manager.

    RULES:
    - Missing collaborators are created at startup from config defaults
    - The job manager's workers live exactly as long as the lifespan
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.assets is None:
            app.state.assets = AssetStore()
        if app.state.jobs is None:
            app.state.jobs = MergeJobManager(app.state.assets)
        await app.state.jobs.start()
        logger.info("Uploads root: %s", app.state.assets.root)
        yield
        await app.state.jobs.stop()

    app = FastAPI(
        lifespan=lifespan,
        title="MixMerge API",
        description=(
            "Upload audio files, merge them into one MP3 (optionally removing "
            "long silences), and poll the merge job until the result is ready."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.assets = assets
    app.state.jobs = jobs

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # -----------------------------------------------------------------------
    # Assets
    # -----------------------------------------------------------------------

    @app.post(
        "/api/mixmerge/upload",
        response_model=AssetResponse,
        status_code=201,
        tags=["assets"],
        summary="Upload an audio file",
        description=(
            "Store one audio file and extract its metadata. Only audio/* "
            "MIME types are accepted."
        ),
        responses={
            400: {"model": ErrorResponse, "description": "Not an audio file, or empty"},
            401: {"model": ErrorResponse, "description": "Missing user id"},
            413: {"model": ErrorResponse, "description": "File too large"},
        },
    )
    async def upload_audio(
        user_id: UserId,
        assets: Assets,
        audio: Annotated[UploadFile, File(description="Audio file to upload")],
    ) -> AssetResponse:
        # Read one byte past the limit so oversized uploads are detectable
        data = await audio.read(assets.max_upload_bytes + 1)
        try:
            asset = await run_in_threadpool(
                assets.register_upload,
                data,
                audio.filename or "upload",
                audio.content_type or "",
                user_id,
            )
        except (ValidationError, FilesystemError) as exc:
            if isinstance(exc, FilesystemError):
                logger.exception("Failed to store upload for user %s", user_id)
            raise _http_error(exc)
        return _asset_to_response(asset)

    @app.get(
        "/api/mixmerge/files",
        response_model=List[AssetResponse],
        tags=["assets"],
        summary="List your audio files",
        description="Returns the requester's assets, newest first.",
        responses={401: {"model": ErrorResponse, "description": "Missing user id"}},
    )
    async def list_files(user_id: UserId, assets: Assets) -> List[AssetResponse]:
        return [_asset_to_response(a) for a in assets.list_assets(uploader_id=user_id)]

    @app.get(
        "/api/mixmerge/files/{asset_id}",
        response_model=AssetResponse,
        tags=["assets"],
        summary="Get one audio file's record",
        responses={404: {"model": ErrorResponse, "description": "Asset not found"}},
    )
    async def get_file(asset_id: str, user_id: UserId, assets: Assets) -> AssetResponse:
        asset = assets.find_asset(asset_id)
        if asset is None or asset.uploader_id != user_id:
            raise HTTPException(status_code=404, detail="Asset not found: {}".format(asset_id))
        return _asset_to_response(asset)

    @app.delete(
        "/api/mixmerge/files/{asset_id}",
        response_model=DeleteAssetResponse,
        tags=["assets"],
        summary="Delete an audio file",
        description=(
            "Delete an asset you uploaded. Deleting an asset that is already "
            "gone succeeds with deleted=false."
        ),
        responses={
            403: {"model": ErrorResponse, "description": "Asset belongs to another user"},
            409: {"model": ErrorResponse, "description": "Asset is used by an unfinished job"},
        },
    )
    async def delete_file(asset_id: str, user_id: UserId, assets: Assets) -> DeleteAssetResponse:
        try:
            deleted = assets.delete(asset_id, requester_id=user_id)
        except (PermissionDeniedError, AssetInUseError) as exc:
            raise _http_error(exc)
        return DeleteAssetResponse(id=asset_id, deleted=deleted)

    # -----------------------------------------------------------------------
    # Merge jobs
    # -----------------------------------------------------------------------

    @app.post(
        "/api/mixmerge/merge",
        response_model=JobResponse,
        status_code=201,
        tags=["jobs"],
        summary="Submit a merge job",
        description=(
            "Queue a merge of the given assets, in order. Returns the pending "
            "job immediately; poll GET /api/mixmerge/jobs/{id} for progress."
        ),
        responses={
            400: {"model": ErrorResponse, "description": "Too few or too many inputs"},
            429: {"model": ErrorResponse, "description": "Merge queue is full"},
        },
    )
    async def submit_merge(
        body: MergeRequest,
        user_id: UserId,
        assets: Assets,
        jobs: Jobs,
    ) -> JobResponse:
        try:
            job = jobs.submit(user_id, body.file_ids, body.remove_silence)
        except ValidationError as exc:
            raise _http_error(exc)
        return _job_to_response(job, assets)

    @app.get(
        "/api/mixmerge/jobs",
        response_model=List[JobResponse],
        tags=["jobs"],
        summary="List your merge jobs",
        description="Returns the requester's jobs, newest first.",
    )
    async def list_merge_jobs(user_id: UserId, assets: Assets, jobs: Jobs) -> List[JobResponse]:
        return [_job_to_response(j, assets) for j in jobs.list_jobs(creator_id=user_id)]

    @app.get(
        "/api/mixmerge/jobs/{job_id}",
        response_model=JobResponse,
        tags=["jobs"],
        summary="Get merge job status",
        description="Poll this to follow a job's status and progress.",
        responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    )
    async def get_merge_job(job_id: str, user_id: UserId, assets: Assets, jobs: Jobs) -> JobResponse:
        return _job_to_response(_owned_job(jobs, job_id, user_id), assets)

    @app.post(
        "/api/mixmerge/jobs/{job_id}/cancel",
        response_model=JobResponse,
        tags=["jobs"],
        summary="Cancel a merge job",
        description=(
            "Request cancellation. A queued job is cancelled when a worker "
            "reaches it; a running job's ffmpeg process is terminated. "
            "Finished jobs are returned unchanged."
        ),
        responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    )
    async def cancel_merge_job(job_id: str, user_id: UserId, assets: Assets, jobs: Jobs) -> JobResponse:
        _owned_job(jobs, job_id, user_id)
        return _job_to_response(jobs.cancel(job_id), assets)

    # -----------------------------------------------------------------------
    # Static files and health
    # -----------------------------------------------------------------------

    @app.get(
        "/uploads/{filename}",
        tags=["files"],
        summary="Serve a stored audio file",
        responses={404: {"model": ErrorResponse, "description": "File not found"}},
    )
    async def serve_upload(filename: str, assets: Assets) -> FileResponse:
        try:
            path = assets.path_for_name(filename)
        except FilesystemError:
            raise HTTPException(status_code=404, detail="File not found")
        if not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="ok",
            version=__version__,
            ffmpeg=shutil.which(FFMPEG_PATH) is not None,
        )


app = create_app()


def run_api(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    from mixmerge.config import HOST, PORT

    uvicorn.run(app, host=host or HOST, port=port or PORT)
