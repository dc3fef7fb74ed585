from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from drive_service.models import DEFAULT_MIME_TYPE


class ChunkAcceptedResponse(BaseModel):
    success: bool = True
    upload_id: str
    chunk_index: int
    received_chunks: int
    total_chunks: int


class CompleteUploadRequest(BaseModel):
    upload_id: str = Field(min_length=1, max_length=128)
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    mime_type: str | None = None
    folder: str | None = None


class StoredFileView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    original_name: str
    remote_key: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE
    owner_id: str
    folder_id: str | None = None
    created_at: datetime
    last_accessed_at: datetime | None = None


class UploadResultResponse(BaseModel):
    success: bool = True
    file: StoredFileView


class TransferStatusResponse(BaseModel):
    upload_id: str
    file_name: str
    total_chunks: int
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]


class StorageUsageResponse(BaseModel):
    used: int
    reserved: int
    limit: int
    percentage: int


class FileListResponse(BaseModel):
    files: list[StoredFileView]
    current_folder: str | None = None


class RenameFileRequest(BaseModel):
    name: str = Field(min_length=1)


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


class ErrorResponse(BaseModel):
    success: bool = False
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
