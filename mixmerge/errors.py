"""Exception taxonomy for the merge pipeline.

WHY: Callers need to tell a bad request (reject synchronously) from an
engine failure (record onto the job) from a best-effort filesystem hiccup
(log and move on). One small hierarchy makes that routing explicit and
lets the HTTP layer map each kind to a status code.

HOW: Every error derives from MixMergeError. Subclasses carry whatever
extra context their handler needs (diagnostic text, return code).

RULES:
- ValidationError: rejected input, raised before any work is queued
- NotFoundError: unknown asset or job id
- ExecutionError: engine failed; carries diagnostics and returncode
- FilesystemError: a path needed at execution time is missing or unwritable
"""

from __future__ import annotations

from typing import Optional


class MixMergeError(Exception):
    """Base error for the mixmerge package."""


class ValidationError(MixMergeError):
    """Raised when a request is rejected before any work starts."""


class UploadTooLargeError(ValidationError):
    """Raised when an upload exceeds the configured size ceiling."""


class QueueFullError(ValidationError):
    """Raised when the merge queue has no room for another job."""


class NotFoundError(MixMergeError):
    """Raised when an asset or job id does not resolve."""


class PermissionDeniedError(MixMergeError):
    """Raised when a requester acts on an asset they did not upload."""


class AssetInUseError(MixMergeError):
    """Raised when deleting an asset that a non-terminal job still references."""


class FilesystemError(MixMergeError):
    """Raised when a path needed for execution is missing or unwritable."""


class ExecutionError(MixMergeError):
    """Raised when the transcoding engine fails.

    WHY: The job record needs the engine's own words about what went
    wrong, not just "exit status 1".

    RULES:
    - diagnostics is the tail of the engine's stderr (may be empty)
    - returncode is None when the process never started or was killed
    """

    def __init__(
        self,
        message: str,
        diagnostics: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        self.message = message
        self.diagnostics = diagnostics
        self.returncode = returncode
        super().__init__(message)

    def __str__(self) -> str:
        if self.diagnostics:
            return "{}: {}".format(self.message, self.diagnostics)
        return self.message


class ExecutionTimeoutError(ExecutionError):
    """Raised when the engine runs past its deadline and is killed."""


class MergeCancelledError(ExecutionError):
    """Raised when a running merge is cancelled on request."""
