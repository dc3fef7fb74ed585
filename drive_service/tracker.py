import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock

from drive_service.errors import InvalidChunk, UploadForbidden, UploadNotFound
from drive_service.metrics import live_transfers


@dataclass
class UploadTransfer:
    """One in-flight chunked transfer. Declared fields come from its first chunk."""

    upload_id: str
    owner_id: str
    file_name: str
    declared_file_size: int
    total_chunks: int
    mime_type: str | None = None
    folder_id: str | None = None
    created_at: float = field(default_factory=time.time)
    chunks: dict[int, Path] = field(default_factory=dict)
    assembled_path: Path | None = None

    def missing_indexes(self) -> list[int]:
        return [index for index in range(self.total_chunks) if index not in self.chunks]

    def scratch_paths(self) -> list[Path]:
        paths = list(self.chunks.values())
        if self.assembled_path is not None:
            paths.append(self.assembled_path)
        return paths


class UploadTracker:
    """Process-wide table of live transfers keyed by upload id.

    Chunks only ever set their own slot. Completion and the reaper take a
    transfer out of the table under the lock before touching its files, so a
    claimed transfer has exactly one owner. Claimed and evicted ids leave a
    tombstone so late chunks cannot silently start a new transfer.
    """

    def __init__(self, tombstone_ttl_seconds: float) -> None:
        self.tombstone_ttl_seconds = tombstone_ttl_seconds
        self._transfers: dict[str, UploadTransfer] = {}
        self._claimed: dict[str, UploadTransfer] = {}
        self._tombstones: dict[str, float] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._transfers)

    def __contains__(self, upload_id: str) -> bool:
        with self._lock:
            return upload_id in self._transfers

    def record_chunk(
        self,
        upload_id: str,
        owner_id: str,
        chunk_index: int,
        path: Path,
        *,
        file_name: str,
        file_size: int,
        total_chunks: int,
        mime_type: str | None = None,
        folder_id: str | None = None,
    ) -> tuple[UploadTransfer, Path | None]:
        """Store ``path`` at ``chunk_index``; returns the transfer and any replaced path."""
        with self._lock:
            if upload_id in self._tombstones:
                raise UploadNotFound("upload already completed or expired, restart the transfer", upload_id=upload_id)
            transfer = self._transfers.get(upload_id)
            if transfer is None:
                transfer = UploadTransfer(
                    upload_id=upload_id,
                    owner_id=owner_id,
                    file_name=file_name,
                    declared_file_size=file_size,
                    total_chunks=total_chunks,
                    mime_type=mime_type,
                    folder_id=folder_id,
                )
                self._transfers[upload_id] = transfer
                live_transfers.set(len(self._transfers))
            elif transfer.owner_id != owner_id:
                raise UploadForbidden("forbidden for this upload owner", upload_id=upload_id)
            if chunk_index >= transfer.total_chunks:
                raise InvalidChunk(
                    f"chunk index {chunk_index} out of bounds for {transfer.total_chunks} chunks", upload_id=upload_id
                )
            replaced = transfer.chunks.get(chunk_index)
            transfer.chunks[chunk_index] = path
            return transfer, replaced

    def snapshot(self, upload_id: str, owner_id: str) -> UploadTransfer:
        with self._lock:
            transfer = self._get_owned(upload_id, owner_id)
            return UploadTransfer(
                upload_id=transfer.upload_id,
                owner_id=transfer.owner_id,
                file_name=transfer.file_name,
                declared_file_size=transfer.declared_file_size,
                total_chunks=transfer.total_chunks,
                mime_type=transfer.mime_type,
                folder_id=transfer.folder_id,
                created_at=transfer.created_at,
                chunks=dict(transfer.chunks),
            )

    def claim(self, upload_id: str, owner_id: str) -> UploadTransfer:
        """Take the transfer out of the table for exclusive use until :meth:`finish`."""
        with self._lock:
            transfer = self._get_owned(upload_id, owner_id)
            del self._transfers[upload_id]
            self._claimed[upload_id] = transfer
            now = time.time()
            self._prune_tombstones(now)
            self._tombstones[upload_id] = now
            live_transfers.set(len(self._transfers))
            return transfer

    def finish(self, upload_id: str) -> None:
        with self._lock:
            self._claimed.pop(upload_id, None)

    def evict_stale(self, created_before: float) -> list[UploadTransfer]:
        with self._lock:
            stale = [t for t in self._transfers.values() if t.created_at < created_before]
            now = time.time()
            for transfer in stale:
                del self._transfers[transfer.upload_id]
                self._tombstones[transfer.upload_id] = now
            self._prune_tombstones(now)
            live_transfers.set(len(self._transfers))
            return stale

    def live_scratch_paths(self) -> list[Path]:
        """Scratch files referenced by live or claimed transfers."""
        with self._lock:
            transfers = [*self._transfers.values(), *self._claimed.values()]
            return [path for transfer in transfers for path in transfer.scratch_paths()]

    def clear(self) -> list[UploadTransfer]:
        with self._lock:
            transfers = list(self._transfers.values())
            self._transfers.clear()
            self._claimed.clear()
            self._tombstones.clear()
            live_transfers.set(0)
            return transfers

    def _prune_tombstones(self, now: float) -> None:
        expired = [key for key, at in self._tombstones.items() if now - at > self.tombstone_ttl_seconds]
        for key in expired:
            del self._tombstones[key]

    def _get_owned(self, upload_id: str, owner_id: str) -> UploadTransfer:
        transfer = self._transfers.get(upload_id)
        if transfer is None:
            raise UploadNotFound("upload not found", upload_id=upload_id)
        if transfer.owner_id != owner_id:
            raise UploadForbidden("forbidden for this upload owner", upload_id=upload_id)
        return transfer
