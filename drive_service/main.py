import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from drive_service.auth import Principal, require_admin, require_principal
from drive_service.blobstore import build_blob_store
from drive_service.config import settings
from drive_service.db import get_db, init_db
from drive_service.errors import RemoteStoreFailure, UploadError
from drive_service.events import audit_event, log_event, trace_id
from drive_service.limits import (
    PREVIEW_EXTENSIONS,
    PREVIEW_MAX_BYTES,
    PREVIEW_MIME_PREFIXES,
    RECENT_FILES_LIMIT,
    REAPER_INTERVAL_SECONDS,
    STALE_UPLOAD_TTL_SECONDS,
    THUMBNAIL_CACHE_SECONDS,
)
from drive_service.maintenance import reap_stale_uploads
from drive_service.metrics import http_request_duration_seconds, metrics_response
from drive_service.models import StoredFile, utc_now
from drive_service.quota import QuotaLedger
from drive_service.schemas import (
    ChunkAcceptedResponse,
    CompleteUploadRequest,
    ErrorResponse,
    FileListResponse,
    RenameFileRequest,
    SignedUrlResponse,
    StorageUsageResponse,
    StoredFileView,
    TransferStatusResponse,
    UploadResultResponse,
)
from drive_service.scratch import ScratchSpace
from drive_service.tracing import setup_tracing
from drive_service.tracker import UploadTracker
from drive_service.uploads import UploadService

tracker = UploadTracker(tombstone_ttl_seconds=STALE_UPLOAD_TTL_SECONDS)
scratch = ScratchSpace(settings.scratch_dir)
ledger = QuotaLedger(settings.default_storage_limit_bytes)
upload_service = UploadService(tracker, scratch, ledger, build_blob_store())


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_reaper_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(reap_stale_uploads, tracker, scratch)
            except Exception as exc:
                log_event({"event": "reaper_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=REAPER_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass

    if settings.reaper_enabled:
        tasks.append(asyncio.create_task(_periodic_reaper_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id") or getattr(request.state, "upload_id", None)


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "missing_api_key",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        413: "payload_too_large",
        422: "validation_error",
        500: "internal_error",
        503: "service_unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_body(request: Request, detail: str, error_code: str, upload_id: str | None = None) -> dict:
    return {
        "success": False,
        "detail": detail,
        "error_code": error_code,
        "request_id": _request_id(request),
        "upload_id": upload_id or _upload_id(request),
        "trace_id": trace_id(),
    }


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str, upload_id: str | None) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": upload_id or _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Storage not configured"},
}
UPLOAD_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    400: {"model": ErrorResponse, "description": "Validation error"},
    404: {"model": ErrorResponse, "description": "Upload not found"},
    409: {"model": ErrorResponse, "description": "Incomplete upload"},
    413: {"model": ErrorResponse, "description": "Payload too large"},
    502: {"model": ErrorResponse, "description": "Remote store failure"},
    507: {"model": ErrorResponse, "description": "Storage quota exceeded"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Drive-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, exc.detail, exc.upload_id)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.detail, exc.error_code, exc.upload_id),
        headers=exc.headers or {},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail), None)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, str(exc.detail), _error_code_for_status(exc.status_code)),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc), None)
    return JSONResponse(status_code=500, content=_error_body(request, "internal server error", "internal_error"))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": upload_service.blob_store.name if upload_service.blob_store else "none",
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/v1/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(principal: Principal = Depends(require_admin)) -> dict:
    stats = reap_stale_uploads(tracker, scratch)
    return {"status": "ok", "requested_by": principal.user_id, **stats}


@app.post("/v1/admin/owners/{owner_id}/purge", responses={**UPLOAD_ERROR_RESPONSES})
def purge_owner(
    request: Request,
    owner_id: str,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    stats = upload_service.purge_owner(db, owner_id)
    audit_event(
        {
            "action": "owner_purge",
            "request_id": _request_id(request),
            "user_id": principal.user_id,
            "owner_id": owner_id,
            **stats,
        }
    )
    return {"status": "ok", "owner_id": owner_id, **stats}


@app.post(
    "/v1/files/upload-chunk",
    response_model=ChunkAcceptedResponse,
    responses={**UPLOAD_ERROR_RESPONSES},
)
def upload_chunk(
    request: Request,
    chunk: UploadFile = File(...),
    upload_id: str = Form(..., min_length=1, max_length=128),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    file_name: str = Form(..., min_length=1),
    file_size: int = Form(...),
    mime_type: str | None = Form(default=None),
    folder: str | None = Form(default=None),
    principal: Principal = Depends(require_principal),
) -> ChunkAcceptedResponse:
    request.state.upload_id = upload_id
    receipt = upload_service.receive_chunk(
        principal.user_id,
        chunk.file,
        upload_id=upload_id,
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        file_name=file_name,
        file_size=file_size,
        mime_type=mime_type or None,
        folder_id=folder or None,
    )
    return ChunkAcceptedResponse(
        upload_id=receipt.upload_id,
        chunk_index=receipt.chunk_index,
        received_chunks=receipt.received_chunks,
        total_chunks=receipt.total_chunks,
    )


@app.post(
    "/v1/files/upload-complete",
    response_model=UploadResultResponse,
    responses={**UPLOAD_ERROR_RESPONSES},
)
def upload_complete(
    request: Request,
    payload: CompleteUploadRequest,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> UploadResultResponse:
    request.state.upload_id = payload.upload_id
    stored = upload_service.complete_transfer(
        db,
        principal.user_id,
        upload_id=payload.upload_id,
        file_name=payload.file_name,
        file_size=payload.file_size,
        mime_type=payload.mime_type,
        folder_id=payload.folder or None,
    )
    audit_event(
        {
            "action": "upload_complete",
            "request_id": _request_id(request),
            "upload_id": payload.upload_id,
            "user_id": principal.user_id,
            "file_id": stored.id,
            "file_size": stored.size,
        }
    )
    return UploadResultResponse(file=StoredFileView.model_validate(stored))


@app.post("/v1/files/upload", response_model=UploadResultResponse, responses={**UPLOAD_ERROR_RESPONSES})
def upload_file(
    request: Request,
    file: UploadFile = File(...),
    folder: str | None = Form(default=None),
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> UploadResultResponse:
    stored = upload_service.simple_upload(
        db,
        principal.user_id,
        file.file,
        file_name=file.filename or "upload",
        mime_type=file.content_type,
        folder_id=folder or None,
    )
    audit_event(
        {
            "action": "simple_upload",
            "request_id": _request_id(request),
            "user_id": principal.user_id,
            "file_id": stored.id,
            "file_size": stored.size,
        }
    )
    return UploadResultResponse(file=StoredFileView.model_validate(stored))


@app.get(
    "/v1/uploads/{upload_id}/missing-chunks",
    response_model=TransferStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def missing_chunks(upload_id: str, principal: Principal = Depends(require_principal)) -> TransferStatusResponse:
    transfer = tracker.snapshot(upload_id, principal.user_id)
    return TransferStatusResponse(
        upload_id=transfer.upload_id,
        file_name=transfer.file_name,
        total_chunks=transfer.total_chunks,
        received_chunk_indexes=sorted(transfer.chunks),
        missing_chunk_indexes=transfer.missing_indexes(),
    )


@app.get("/v1/storage", response_model=StorageUsageResponse, responses={**COMMON_ERROR_RESPONSES})
def storage_usage(
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> StorageUsageResponse:
    snapshot = ledger.snapshot(db, principal.user_id)
    return StorageUsageResponse(
        used=snapshot.used,
        reserved=snapshot.reserved,
        limit=snapshot.limit,
        percentage=snapshot.percentage,
    )


@app.get("/v1/files", response_model=FileListResponse, responses={**COMMON_ERROR_RESPONSES})
def list_files(
    folder: str | None = Query(default=None),
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> FileListResponse:
    folder_id = folder or None
    files = db.scalars(
        select(StoredFile)
        .where(
            StoredFile.owner_id == principal.user_id,
            StoredFile.folder_id.is_(None) if folder_id is None else StoredFile.folder_id == folder_id,
            StoredFile.is_deleted.is_(False),
        )
        .order_by(StoredFile.created_at.desc())
    ).all()
    return FileListResponse(files=[StoredFileView.model_validate(f) for f in files], current_folder=folder_id)


@app.get("/v1/files/recent", response_model=FileListResponse, responses={**COMMON_ERROR_RESPONSES})
def recent_files(
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> FileListResponse:
    files = db.scalars(
        select(StoredFile)
        .where(
            StoredFile.owner_id == principal.user_id,
            StoredFile.is_deleted.is_(False),
            StoredFile.last_accessed_at.is_not(None),
        )
        .order_by(StoredFile.last_accessed_at.desc())
        .limit(RECENT_FILES_LIMIT)
    ).all()
    return FileListResponse(files=[StoredFileView.model_validate(f) for f in files])


@app.post(
    "/v1/files/{file_id}/access",
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
def record_access(
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> dict:
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    stored.last_accessed_at = utc_now()
    db.commit()
    return {"success": True}


@app.get(
    "/v1/files/{file_id}/download",
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
def download_file(
    request: Request,
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> Response:
    store = upload_service.require_blob_store()
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    try:
        body = store.open_stream(stored.remote_key)
    except Exception as exc:
        raise RemoteStoreFailure(f"download failed: {exc}") from exc
    audit_event(
        {
            "action": "download",
            "request_id": _request_id(request),
            "user_id": principal.user_id,
            "file_id": stored.id,
        }
    )
    return StreamingResponse(
        body,
        media_type=stored.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(stored.original_name)}",
            "Content-Length": str(stored.size),
        },
    )


@app.get("/v1/files/{file_id}/url", response_model=SignedUrlResponse, responses={**COMMON_ERROR_RESPONSES})
def signed_url(
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> SignedUrlResponse:
    store = upload_service.require_blob_store()
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    try:
        url = store.signed_url(stored.remote_key, settings.signed_url_ttl_seconds)
    except Exception as exc:
        raise RemoteStoreFailure(f"failed to generate download url: {exc}") from exc
    return SignedUrlResponse(url=url, expires_in=settings.signed_url_ttl_seconds)


def _is_previewable(stored: StoredFile) -> bool:
    if stored.mime_type and stored.mime_type.startswith(PREVIEW_MIME_PREFIXES):
        return True
    name = stored.name.lower()
    return "." in name and f".{name.rpartition('.')[2]}" in PREVIEW_EXTENSIONS


PREVIEW_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    400: {"model": ErrorResponse, "description": "File type not supported"},
    404: {"model": ErrorResponse, "description": "File not found"},
    502: {"model": ErrorResponse, "description": "Remote store failure"},
}


@app.get("/v1/files/{file_id}/thumbnail", responses={**PREVIEW_ERROR_RESPONSES})
def thumbnail(
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> Response:
    store = upload_service.require_blob_store()
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    if not stored.mime_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="not an image file")
    try:
        body = store.open_stream(stored.remote_key)
    except Exception as exc:
        raise RemoteStoreFailure(f"failed to get thumbnail: {exc}") from exc
    return StreamingResponse(
        body,
        media_type=stored.mime_type,
        headers={"Cache-Control": f"public, max-age={THUMBNAIL_CACHE_SECONDS}", "Content-Disposition": "inline"},
    )


@app.get("/v1/files/{file_id}/content", responses={**PREVIEW_ERROR_RESPONSES})
def file_content(
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> Response:
    store = upload_service.require_blob_store()
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    if stored.size > PREVIEW_MAX_BYTES:
        raise HTTPException(status_code=400, detail="file too large for preview")
    if not _is_previewable(stored):
        raise HTTPException(status_code=400, detail="not a text file")
    try:
        content = b"".join(store.open_stream(stored.remote_key))
    except Exception as exc:
        raise RemoteStoreFailure(f"failed to read file: {exc}") from exc
    return Response(content.decode("utf-8", errors="replace"), media_type="text/plain; charset=utf-8")


@app.patch("/v1/files/{file_id}", response_model=UploadResultResponse, responses={**COMMON_ERROR_RESPONSES})
def rename_file(
    file_id: str,
    payload: RenameFileRequest,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> UploadResultResponse:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    stored = upload_service.get_owned_file(db, principal.user_id, file_id)
    stored.name = name
    db.commit()
    db.refresh(stored)
    return UploadResultResponse(file=StoredFileView.model_validate(stored))


@app.delete("/v1/files/{file_id}", responses={**COMMON_ERROR_RESPONSES})
def delete_file(
    request: Request,
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> dict:
    stored = upload_service.delete_file(db, principal.user_id, file_id)
    audit_event(
        {
            "action": "file_delete",
            "request_id": _request_id(request),
            "user_id": principal.user_id,
            "file_id": stored.id,
            "file_size": stored.size,
        }
    )
    return {"success": True}


@app.post("/v1/files/{file_id}/copy", response_model=UploadResultResponse, responses={**UPLOAD_ERROR_RESPONSES})
def copy_file(
    request: Request,
    file_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> UploadResultResponse:
    stored = upload_service.copy_file(db, principal.user_id, file_id)
    audit_event(
        {
            "action": "file_copy",
            "request_id": _request_id(request),
            "user_id": principal.user_id,
            "source_file_id": file_id,
            "file_id": stored.id,
            "file_size": stored.size,
        }
    )
    return UploadResultResponse(file=StoredFileView.model_validate(stored))
