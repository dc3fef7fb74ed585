"""Chunked and simple upload pipeline.

Both paths end in the same commit sequence::

    reserve quota -> put to blob store -> write record + move reservation into used

A failure at any step deletes every scratch file of the attempt, releases the
reservation and, if the put already happened, deletes the remote object, so no
record or quota change survives a failed upload.
"""

import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from drive_service.blobstore import BlobStore
from drive_service.errors import (
    ChunkTooLarge,
    FileTooLarge,
    IncompleteUpload,
    InvalidChunk,
    MissingConfiguration,
    RemoteStoreFailure,
    SizeMismatch,
    StoredFileNotFound,
    UploadError,
)
from drive_service.events import log_event
from drive_service.limits import CHUNK_SIZE_BYTES, COPY_BUFFER_BYTES, MAX_FILE_SIZE_BYTES, MAX_TOTAL_CHUNKS
from drive_service.metrics import (
    assembled_bytes_total,
    assembly_duration_seconds,
    blob_put_latency_seconds,
    chunk_bytes_received_total,
    chunks_received_total,
    transfers_completed_total,
    upload_failures_total,
)
from drive_service.models import DEFAULT_MIME_TYPE, Owner, StoredFile
from drive_service.quota import QuotaLedger
from drive_service.scratch import ScratchSpace, safe_extension
from drive_service.tracing import tracer
from drive_service.tracker import UploadTracker, UploadTransfer


@dataclass(frozen=True)
class ChunkReceipt:
    upload_id: str
    chunk_index: int
    received_chunks: int
    total_chunks: int


class UploadService:
    def __init__(
        self,
        tracker: UploadTracker,
        scratch: ScratchSpace,
        ledger: QuotaLedger,
        blob_store: BlobStore | None,
        *,
        max_chunk_bytes: int = CHUNK_SIZE_BYTES,
        max_file_bytes: int = MAX_FILE_SIZE_BYTES,
    ) -> None:
        self.tracker = tracker
        self.scratch = scratch
        self.ledger = ledger
        self.blob_store = blob_store
        self.max_chunk_bytes = max_chunk_bytes
        self.max_file_bytes = max_file_bytes

    def require_blob_store(self) -> BlobStore:
        if self.blob_store is None:
            raise MissingConfiguration()
        return self.blob_store

    # -- chunked path --------------------------------------------------------

    def receive_chunk(
        self,
        owner_id: str,
        source: BinaryIO,
        *,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        file_name: str,
        file_size: int,
        mime_type: str | None = None,
        folder_id: str | None = None,
    ) -> ChunkReceipt:
        self.require_blob_store()
        if total_chunks < 1:
            raise InvalidChunk("total_chunks must be at least 1", upload_id=upload_id)
        if total_chunks > MAX_TOTAL_CHUNKS or total_chunks > max(1, file_size):
            raise InvalidChunk(
                f"total_chunks must not exceed {MAX_TOTAL_CHUNKS} or the file size in bytes", upload_id=upload_id
            )
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise InvalidChunk("chunk index out of bounds", upload_id=upload_id)
        if file_size < 0:
            raise InvalidChunk("file_size must not be negative", upload_id=upload_id)
        if file_size > self.max_file_bytes:
            raise FileTooLarge(f"file exceeds the {self.max_file_bytes} byte limit", upload_id=upload_id)

        path, size = self.scratch.write_stream(
            source, suffix=".chunk", max_bytes=self.max_chunk_bytes, upload_id=upload_id
        )
        try:
            transfer, replaced = self.tracker.record_chunk(
                upload_id,
                owner_id,
                chunk_index,
                path,
                file_name=file_name,
                file_size=file_size,
                total_chunks=total_chunks,
                mime_type=mime_type,
                folder_id=folder_id,
            )
        except UploadError:
            self.scratch.discard(path)
            raise
        if replaced is not None and replaced != path:
            self.scratch.discard(replaced)

        chunks_received_total.inc()
        chunk_bytes_received_total.inc(size)
        received = len(transfer.chunks)
        log_event(
            {
                "event": "chunk_received",
                "upload_id": upload_id,
                "owner_id": owner_id,
                "chunk_index": chunk_index,
                "total_chunks": transfer.total_chunks,
                "size_bytes": size,
                "retry": replaced is not None,
            }
        )
        return ChunkReceipt(
            upload_id=upload_id,
            chunk_index=chunk_index,
            received_chunks=received,
            total_chunks=transfer.total_chunks,
        )

    def complete_transfer(
        self,
        db: Session,
        owner_id: str,
        *,
        upload_id: str,
        file_name: str,
        file_size: int,
        mime_type: str | None = None,
        folder_id: str | None = None,
    ) -> StoredFile:
        store = self.require_blob_store()
        transfer = self.tracker.claim(upload_id, owner_id)
        reserved = 0
        try:
            if file_size > self.max_file_bytes:
                raise FileTooLarge(f"file exceeds the {self.max_file_bytes} byte limit", upload_id=upload_id)
            self.ledger.reserve(db, owner_id, file_size, upload_id=upload_id)
            reserved = file_size

            assembled, actual = self._assemble(transfer)
            if actual != file_size:
                raise SizeMismatch(
                    f"received {actual} bytes but {file_size} were declared", upload_id=upload_id
                )
            stored = self._commit(
                db,
                store,
                owner_id,
                assembled,
                size=actual,
                reserved=reserved,
                file_name=file_name,
                mime_type=mime_type or transfer.mime_type or DEFAULT_MIME_TYPE,
                folder_id=folder_id if folder_id is not None else transfer.folder_id,
                upload_id=upload_id,
            )
            reserved = 0
        except Exception as exc:
            self.scratch.discard(*transfer.scratch_paths())
            self._release_quietly(db, owner_id, reserved, upload_id)
            self._record_failure(exc, upload_id, owner_id)
            raise
        finally:
            self.tracker.finish(upload_id)

        transfers_completed_total.labels(path="chunked").inc()
        return stored

    def _assemble(self, transfer: UploadTransfer) -> tuple[Path, int]:
        """Concatenate chunks in index order, deleting each chunk once appended."""
        if len(transfer.chunks) != transfer.total_chunks:
            raise IncompleteUpload(transfer.missing_indexes(), upload_id=transfer.upload_id)

        assembled = self.scratch.new_path(".assembled")
        transfer.assembled_path = assembled
        total = 0
        started = time.perf_counter()
        with tracer.start_as_current_span("assemble_transfer") as span:
            span.set_attribute("upload.id", transfer.upload_id)
            span.set_attribute("upload.total_chunks", transfer.total_chunks)
            try:
                with assembled.open("wb") as out:
                    for index in range(transfer.total_chunks):
                        chunk_path = transfer.chunks[index]
                        with chunk_path.open("rb") as part:
                            while block := part.read(COPY_BUFFER_BYTES):
                                out.write(block)
                                total += len(block)
                        self.scratch.discard(chunk_path)
            except OSError as exc:
                raise UploadError(f"could not assemble chunks: {exc}", upload_id=transfer.upload_id) from exc
        assembly_duration_seconds.observe(time.perf_counter() - started)
        assembled_bytes_total.inc(total)
        log_event(
            {
                "event": "transfer_assembled",
                "upload_id": transfer.upload_id,
                "total_chunks": transfer.total_chunks,
                "size_bytes": total,
            }
        )
        return assembled, total

    # -- simple path ---------------------------------------------------------

    def simple_upload(
        self,
        db: Session,
        owner_id: str,
        source: BinaryIO,
        *,
        file_name: str,
        mime_type: str | None = None,
        folder_id: str | None = None,
    ) -> StoredFile:
        store = self.require_blob_store()
        try:
            path, size = self.scratch.write_stream(source, suffix=safe_extension(file_name), max_bytes=self.max_chunk_bytes)
        except ChunkTooLarge as exc:
            raise FileTooLarge(
                f"file exceeds the {self.max_chunk_bytes} byte single-request limit, use a chunked upload"
            ) from exc

        reserved = 0
        try:
            self.ledger.reserve(db, owner_id, size)
            reserved = size
            stored = self._commit(
                db,
                store,
                owner_id,
                path,
                size=size,
                reserved=reserved,
                file_name=file_name,
                mime_type=mime_type or DEFAULT_MIME_TYPE,
                folder_id=folder_id,
            )
            reserved = 0
        except Exception as exc:
            self.scratch.discard(path)
            self._release_quietly(db, owner_id, reserved, None)
            self._record_failure(exc, None, owner_id)
            raise

        transfers_completed_total.labels(path="simple").inc()
        return stored

    # -- shared commit -------------------------------------------------------

    def _commit(
        self,
        db: Session,
        store: BlobStore,
        owner_id: str,
        scratch_path: Path,
        *,
        size: int,
        reserved: int,
        file_name: str,
        mime_type: str,
        folder_id: str | None,
        upload_id: str | None = None,
    ) -> StoredFile:
        owner = self.ledger.ensure_owner(db, owner_id)
        remote_key = self._new_remote_key(owner, file_name)

        started = time.perf_counter()
        try:
            with tracer.start_as_current_span("blob_put") as span, scratch_path.open("rb") as stream:
                span.set_attribute("blob.key", remote_key)
                span.set_attribute("blob.size", size)
                store.put(remote_key, stream, mime_type)
        except Exception as exc:
            raise RemoteStoreFailure(f"upload failed: {exc}", upload_id=upload_id) from exc
        finally:
            blob_put_latency_seconds.observe(time.perf_counter() - started)
        self.scratch.discard(scratch_path)

        return self._write_record(
            db,
            store,
            owner_id,
            remote_key=remote_key,
            size=size,
            reserved=reserved,
            name=file_name,
            mime_type=mime_type,
            folder_id=folder_id,
        )

    def _write_record(
        self,
        db: Session,
        store: BlobStore,
        owner_id: str,
        *,
        remote_key: str,
        size: int,
        reserved: int,
        name: str,
        mime_type: str,
        folder_id: str | None,
    ) -> StoredFile:
        """Insert the file record and settle quota in one transaction; only called after a confirmed put."""
        stored = StoredFile(
            owner_id=owner_id,
            name=name,
            original_name=name,
            remote_key=remote_key,
            size=size,
            mime_type=mime_type,
            folder_id=folder_id,
        )
        try:
            db.add(stored)
            self.ledger.apply_commit(db, owner_id, reserved=reserved, actual=size)
            db.commit()
        except Exception:
            db.rollback()
            self._delete_remote_quietly(store, remote_key)
            raise
        return stored

    @staticmethod
    def _new_remote_key(owner: Owner, file_name: str) -> str:
        return f"{owner.storage_prefix}/{uuid.uuid4()}{safe_extension(file_name)}"

    # -- stored file operations ---------------------------------------------

    def get_owned_file(self, db: Session, owner_id: str, file_id: str) -> StoredFile:
        stored = db.scalar(
            select(StoredFile).where(
                StoredFile.id == file_id,
                StoredFile.owner_id == owner_id,
                StoredFile.is_deleted.is_(False),
            )
        )
        if stored is None:
            raise StoredFileNotFound("file not found")
        return stored

    def copy_file(self, db: Session, owner_id: str, file_id: str, name: str | None = None) -> StoredFile:
        store = self.require_blob_store()
        source = self.get_owned_file(db, owner_id, file_id)
        self.ledger.reserve(db, owner_id, source.size)
        try:
            owner = self.ledger.ensure_owner(db, owner_id)
            remote_key = self._new_remote_key(owner, source.name)
            try:
                store.copy(source.remote_key, remote_key)
            except Exception as exc:
                raise RemoteStoreFailure(f"copy failed: {exc}") from exc
            return self._write_record(
                db,
                store,
                owner_id,
                remote_key=remote_key,
                size=source.size,
                reserved=source.size,
                name=name or source.name,
                mime_type=source.mime_type,
                folder_id=source.folder_id,
            )
        except Exception as exc:
            self._release_quietly(db, owner_id, source.size, None)
            self._record_failure(exc, None, owner_id)
            raise

    def delete_file(self, db: Session, owner_id: str, file_id: str) -> StoredFile:
        stored = self.get_owned_file(db, owner_id, file_id)
        if self.blob_store is not None:
            self._delete_remote_quietly(self.blob_store, stored.remote_key)
        self.ledger.decrement(db, owner_id, stored.size)
        db.delete(stored)
        db.commit()
        return stored

    def purge_owner(self, db: Session, owner_id: str) -> dict[str, int]:
        store = self.require_blob_store()
        owner = db.get(Owner, owner_id)
        if owner is None:
            return {"remote_objects_deleted": 0, "file_records_deleted": 0}
        try:
            remote_deleted = store.delete_prefix(owner.storage_prefix)
        except Exception as exc:
            raise RemoteStoreFailure(f"purge failed: {exc}") from exc
        records_deleted = db.execute(delete(StoredFile).where(StoredFile.owner_id == owner_id)).rowcount or 0
        db.execute(
            update(Owner)
            .where(Owner.id == owner_id)
            .values(storage_used=0)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return {"remote_objects_deleted": remote_deleted, "file_records_deleted": records_deleted}

    # -- helpers -------------------------------------------------------------

    def _release_quietly(self, db: Session, owner_id: str, reserved: int, upload_id: str | None) -> None:
        if not reserved:
            return
        try:
            db.rollback()
            self.ledger.release(db, owner_id, reserved)
        except Exception as exc:
            log_event(
                {
                    "event": "quota_release_failed",
                    "upload_id": upload_id,
                    "owner_id": owner_id,
                    "reserved": reserved,
                    "detail": str(exc),
                    "error_class": "db_error",
                }
            )

    @staticmethod
    def _delete_remote_quietly(store: BlobStore, remote_key: str) -> None:
        try:
            store.delete(remote_key)
        except Exception as exc:
            log_event(
                {"event": "blob_delete_failed", "remote_key": remote_key, "detail": str(exc), "error_class": "storage_error"}
            )

    @staticmethod
    def _record_failure(exc: Exception, upload_id: str | None, owner_id: str) -> None:
        reason = exc.error_code if isinstance(exc, UploadError) else "internal_error"
        upload_failures_total.labels(reason=reason).inc()
        log_event(
            {
                "event": "upload_failed",
                "upload_id": upload_id,
                "owner_id": owner_id,
                "error_class": reason,
                "detail": str(exc),
            }
        )
