# util/errors.py
from typing import Any
from fastapi import HTTPException, status
from util.enums import ErrorMessage


class AppError(HTTPException):
    # Flow: raise AppError to short-circuit with a typed status & message.
    def __init__(
        self,
        message: str,
        http_status: int = status.HTTP_400_BAD_REQUEST,
        code: str = "bad_request",
        **extra: Any,
    ) -> None:
        detail = {"ok": False, "error": code, "message": message, **extra}
        super().__init__(status_code=http_status, detail=detail)

    @classmethod
    def of(cls, error: ErrorMessage, **extra: Any) -> "AppError":
        info = error.value
        return cls(info.message, info.http_status, info.code, **extra)


# ---------------- Pipeline errors (never leave the job runner) ----------------


class PipelineError(Exception):
    """Base class for failures inside the upload job pipeline."""

    # Short message safe to show to the job owner.
    public_message: str = "Processing failed"

    def __init__(self, message: str = "", *, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class SourceUnavailable(PipelineError):
    """The origin content itself cannot be fetched (deleted, private, restricted)."""

    public_message = "Video is unavailable"


class StrategyFailed(PipelineError):
    """One extraction backend failed; the chain moves on to the next one."""

    public_message = "Download method failed"

    def __init__(self, message: str = "", *, rate_limited: bool = False, **kw):
        super().__init__(message, **kw)
        self.rate_limited = rate_limited


class ExtractionExhausted(PipelineError):
    public_message = (
        "All download methods failed. YouTube might be blocking requests "
        "or the video is unavailable."
    )


class UploadFailed(PipelineError):
    public_message = "Upload to storage failed"


class JobCanceled(PipelineError):
    public_message = "Canceled"


class StorageAccessDenied(PipelineError):
    public_message = "Access denied: File not in user folder"


class StoredObjectNotFound(PipelineError):
    public_message = "File not found"
