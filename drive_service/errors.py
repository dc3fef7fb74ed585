"""Typed failures of the upload pipeline.

Every error carries the HTTP status and stable ``error_code`` the API layer
renders; the pipeline itself only raises and never builds responses.
"""


class UploadError(Exception):
    status_code = 500
    error_code = "upload_error"

    def __init__(self, detail: str, *, upload_id: str | None = None, headers: dict[str, str] | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.upload_id = upload_id
        self.headers = headers


class ChunkPersistFailure(UploadError):
    status_code = 503
    error_code = "chunk_persist_failed"

    def __init__(self, detail: str, *, upload_id: str | None = None) -> None:
        super().__init__(detail, upload_id=upload_id, headers={"Retry-After": "1"})


class UploadNotFound(UploadError):
    status_code = 404
    error_code = "upload_not_found"


class UploadForbidden(UploadError):
    status_code = 403
    error_code = "forbidden"


class InvalidChunk(UploadError):
    status_code = 400
    error_code = "invalid_chunk"


class ChunkTooLarge(UploadError):
    status_code = 413
    error_code = "chunk_too_large"


class FileTooLarge(UploadError):
    status_code = 413
    error_code = "file_too_large"


class IncompleteUpload(UploadError):
    status_code = 409
    error_code = "incomplete_upload"

    def __init__(self, missing_indexes: list[int], *, upload_id: str | None = None) -> None:
        shown = ", ".join(str(index) for index in missing_indexes[:20])
        super().__init__(f"cannot complete upload, missing chunks: {shown}", upload_id=upload_id)
        self.missing_indexes = missing_indexes


class SizeMismatch(UploadError):
    status_code = 400
    error_code = "size_mismatch"


class QuotaExceeded(UploadError):
    status_code = 507
    error_code = "quota_exceeded"


class RemoteStoreFailure(UploadError):
    status_code = 502
    error_code = "upload_failed"


class MissingConfiguration(UploadError):
    status_code = 503
    error_code = "storage_not_configured"

    def __init__(self, detail: str = "storage not configured, contact an administrator", **kwargs) -> None:
        super().__init__(detail, **kwargs)


class StoredFileNotFound(UploadError):
    status_code = 404
    error_code = "file_not_found"
