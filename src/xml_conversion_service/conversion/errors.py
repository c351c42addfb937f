"""Error taxonomy for the conversion domain.

Every error carries a stable machine-readable ``code``, the HTTP status the web
layer answers with, and a message that is safe to show to clients (no absolute
paths, no tracebacks).
"""
from __future__ import annotations


class ConversionServiceError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    status_code = 500
    default_message = "internal error"

    # the failed ConversionJob, when the error comes out of a conversion
    job: object | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidFileTypeError(ConversionServiceError):
    code = "invalid_file_type"
    status_code = 415
    default_message = "only .xml files are accepted"


class EmptyUploadError(ConversionServiceError):
    code = "empty_upload"
    status_code = 400
    default_message = "uploaded file is empty"


class PayloadTooLargeError(ConversionServiceError):
    code = "payload_too_large"
    status_code = 413
    default_message = "uploaded file is too large"


class PathEscapeError(ConversionServiceError):
    """Raised when a client-supplied name would resolve outside a managed root."""

    code = "forbidden"
    status_code = 403
    default_message = "access to the requested file is forbidden"


class StorageUnavailableError(ConversionServiceError):
    code = "storage_unavailable"
    status_code = 503
    default_message = "storage is unavailable"


class SpawnError(ConversionServiceError):
    """The converter process could not be started at all."""

    code = "spawn_failed"
    status_code = 500
    default_message = "converter process could not be started"


class ConversionTimeoutError(ConversionServiceError, TimeoutError):
    code = "timeout"
    status_code = 504
    default_message = "conversion timed out"


class NoArtifactsProducedError(ConversionServiceError):
    """The converter exited 0 but left no usable output behind."""

    code = "no_artifacts_produced"
    status_code = 502
    default_message = "converter reported success but produced no files"


class ConversionFailedError(ConversionServiceError):
    code = "conversion_failed"
    status_code = 502
    default_message = "conversion failed"

    def __init__(self, message: str = "", *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class NotFoundError(ConversionServiceError):
    code = "not_found"
    status_code = 404
    default_message = "file not found"


class ConflictError(ConversionServiceError):
    code = "conflict"
    status_code = 409
    default_message = "a conversion for this document is in progress"


ERROR_TYPES: dict[str, type[ConversionServiceError]] = {
    cls.code: cls
    for cls in (
        InvalidFileTypeError,
        EmptyUploadError,
        PayloadTooLargeError,
        PathEscapeError,
        StorageUnavailableError,
        SpawnError,
        ConversionTimeoutError,
        NoArtifactsProducedError,
        ConversionFailedError,
        NotFoundError,
        ConflictError,
    )
}
