import io

import pytest
from sqlalchemy import select, update

from drive_service.blobstore import LocalBlobStore
from drive_service.db import Base, SessionLocal, engine
from drive_service.errors import (
    ChunkPersistFailure,
    ChunkTooLarge,
    FileTooLarge,
    IncompleteUpload,
    InvalidChunk,
    MissingConfiguration,
    QuotaExceeded,
    RemoteStoreFailure,
    SizeMismatch,
    UploadForbidden,
    UploadNotFound,
)
from drive_service.limits import MAX_TOTAL_CHUNKS
from drive_service.models import Owner, StoredFile
from drive_service.quota import QuotaLedger
from drive_service.scratch import ScratchSpace
from drive_service.tracker import UploadTracker
from drive_service.uploads import UploadService

OWNER = "owner-a"


class _FailingPutStore(LocalBlobStore):
    def put(self, key, source, content_type):
        raise RuntimeError("bucket offline")


class _BrokenSource:
    def read(self, size: int = -1) -> bytes:
        raise OSError("No space left on device")


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _service(tmp_path, *, limit: int = 10_000, blob_store=None, max_chunk_bytes: int = 64) -> UploadService:
    return UploadService(
        UploadTracker(tombstone_ttl_seconds=3600),
        ScratchSpace(tmp_path / "scratch"),
        QuotaLedger(default_limit=limit),
        blob_store if blob_store is not None else LocalBlobStore(str(tmp_path / "blobs")),
        max_chunk_bytes=max_chunk_bytes,
    )


def _send(service: UploadService, upload_id: str, parts: list[bytes], order, owner_id: str = OWNER) -> list:
    total = sum(len(part) for part in parts)
    receipts = []
    for index in order:
        receipts.append(
            service.receive_chunk(
                owner_id,
                io.BytesIO(parts[index]),
                upload_id=upload_id,
                chunk_index=index,
                total_chunks=len(parts),
                file_name="holiday.mp4",
                file_size=total,
                mime_type="video/mp4",
            )
        )
    return receipts


def _complete(service: UploadService, db, upload_id: str, file_size: int, owner_id: str = OWNER) -> StoredFile:
    return service.complete_transfer(
        db, owner_id, upload_id=upload_id, file_name="holiday.mp4", file_size=file_size, mime_type="video/mp4"
    )


def _scratch_files(service: UploadService) -> list:
    return [path for path in service.scratch.root.iterdir() if path.is_file()]


def _remote_bytes(service: UploadService, key: str) -> bytes:
    return b"".join(service.blob_store.open_stream(key))


def test_chunks_out_of_order_assemble_in_index_order(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, max_chunk_bytes=50)
    parts = [b"a" * 50, b"b" * 50, b"c" * 20]

    receipts = _send(service, "abc123", parts, order=[2, 0, 1])
    assert [r.chunk_index for r in receipts] == [2, 0, 1]
    assert receipts[-1].received_chunks == 3

    with SessionLocal() as db:
        stored = _complete(service, db, "abc123", file_size=120)
        snapshot = service.ledger.snapshot(db, OWNER)

    assert stored.size == 120
    assert stored.mime_type == "video/mp4"
    assert stored.remote_key.endswith(".mp4")
    assert _remote_bytes(service, stored.remote_key) == b"".join(parts)
    assert snapshot.used == 120
    assert snapshot.reserved == 0
    assert _scratch_files(service) == []
    assert "abc123" not in service.tracker


@pytest.mark.parametrize("order", [[0, 1, 2, 3], [3, 2, 1, 0], [2, 0, 3, 1]])
def test_assembly_is_independent_of_arrival_order(tmp_path, order) -> None:
    _reset_state()
    service = _service(tmp_path)
    parts = [b"0123", b"4567", b"89ab", b"cd"]
    _send(service, "perm", parts, order)

    with SessionLocal() as db:
        stored = _complete(service, db, "perm", file_size=14)

    assert _remote_bytes(service, stored.remote_key) == b"0123456789abcd"


def test_second_completion_is_upload_not_found(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "twice", [b"abcd", b"ef"], [0, 1])

    with SessionLocal() as db:
        _complete(service, db, "twice", file_size=6)
        with pytest.raises(UploadNotFound):
            _complete(service, db, "twice", file_size=6)
        files = db.scalars(select(StoredFile).where(StoredFile.owner_id == OWNER)).all()
        snapshot = service.ledger.snapshot(db, OWNER)

    assert len(files) == 1
    assert snapshot.used == 6


def test_remote_put_failure_leaves_no_record_and_no_quota(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, blob_store=_FailingPutStore(str(tmp_path / "blobs")))
    _send(service, "broken", [b"abcd", b"efgh"], [1, 0])

    with SessionLocal() as db:
        with pytest.raises(RemoteStoreFailure):
            _complete(service, db, "broken", file_size=8)
        assert db.scalars(select(StoredFile)).all() == []
        snapshot = service.ledger.snapshot(db, OWNER)

    assert snapshot.used == 0
    assert snapshot.reserved == 0
    assert _scratch_files(service) == []
    assert "broken" not in service.tracker


def test_quota_boundary_exact_fit_succeeds(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, limit=100)
    with SessionLocal() as db:
        service.ledger.ensure_owner(db, OWNER)
        db.execute(update(Owner).where(Owner.id == OWNER).values(storage_used=60))
        db.commit()

    _send(service, "fits", [b"x" * 40], [0])
    with SessionLocal() as db:
        _complete(service, db, "fits", file_size=40)
        snapshot = service.ledger.snapshot(db, OWNER)

    assert snapshot.used == 100


def test_quota_boundary_one_byte_over_is_rejected(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, limit=100)
    with SessionLocal() as db:
        service.ledger.ensure_owner(db, OWNER)
        db.execute(update(Owner).where(Owner.id == OWNER).values(storage_used=60))
        db.commit()

    _send(service, "over", [b"x" * 41], [0])
    with SessionLocal() as db:
        with pytest.raises(QuotaExceeded):
            _complete(service, db, "over", file_size=41)
        snapshot = service.ledger.snapshot(db, OWNER)

    assert snapshot.used == 60
    assert snapshot.reserved == 0
    assert _scratch_files(service) == []
    assert "over" not in service.tracker


def test_missing_chunk_rejects_and_removes_received_chunks(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    parts = [b"aa", b"bb", b"cc", b"dd", b"ee"]
    _send(service, "gap", parts, [0, 1, 3, 4])
    assert len(_scratch_files(service)) == 4

    with SessionLocal() as db:
        with pytest.raises(IncompleteUpload) as exc_info:
            _complete(service, db, "gap", file_size=10)
        snapshot = service.ledger.snapshot(db, OWNER)

    assert exc_info.value.missing_indexes == [2]
    assert _scratch_files(service) == []
    assert snapshot.reserved == 0
    with SessionLocal() as db:
        with pytest.raises(UploadNotFound):
            _complete(service, db, "gap", file_size=10)


def test_declared_size_must_match_received_bytes(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "liar", [b"abcd", b"ef"], [0, 1])

    with SessionLocal() as db:
        with pytest.raises(SizeMismatch):
            _complete(service, db, "liar", file_size=3)
        assert db.scalars(select(StoredFile)).all() == []
        snapshot = service.ledger.snapshot(db, OWNER)

    assert snapshot.used == 0
    assert snapshot.reserved == 0
    assert _scratch_files(service) == []


def test_retried_chunk_replaces_previous_scratch_file(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "retry", [b"abcd", b"ef"], [0, 0, 1])
    assert len(_scratch_files(service)) == 2

    with SessionLocal() as db:
        stored = _complete(service, db, "retry", file_size=6)
    assert _remote_bytes(service, stored.remote_key) == b"abcdef"


def test_transfer_is_bound_to_first_chunk_owner(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "mine", [b"abcd", b"ef"], [0])

    with pytest.raises(UploadForbidden):
        _send(service, "mine", [b"abcd", b"ef"], [1], owner_id="owner-b")
    assert len(_scratch_files(service)) == 1

    with SessionLocal() as db:
        with pytest.raises(UploadForbidden):
            _complete(service, db, "mine", file_size=6, owner_id="owner-b")
    assert "mine" in service.tracker


def test_late_chunk_after_completion_is_rejected(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "done", [b"abcd"], [0])
    with SessionLocal() as db:
        _complete(service, db, "done", file_size=4)

    with pytest.raises(UploadNotFound):
        _send(service, "done", [b"abcd"], [0])
    assert _scratch_files(service) == []


def test_missing_configuration_fails_before_scratch_io(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    service.blob_store = None

    with pytest.raises(MissingConfiguration):
        _send(service, "nocfg", [b"abcd"], [0])
    with SessionLocal() as db, pytest.raises(MissingConfiguration):
        service.simple_upload(db, OWNER, io.BytesIO(b"abcd"), file_name="a.txt")
    assert _scratch_files(service) == []
    assert len(service.tracker) == 0


def test_oversized_chunk_is_discarded(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, max_chunk_bytes=8)

    with pytest.raises(ChunkTooLarge):
        _send(service, "big", [b"x" * 9], [0])
    assert _scratch_files(service) == []
    assert "big" not in service.tracker


def test_chunk_persist_failure_cleans_partial_file(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    _send(service, "disk", [b"abcd", b"ef"], [0])

    with pytest.raises(ChunkPersistFailure):
        service.receive_chunk(
            OWNER,
            _BrokenSource(),
            upload_id="disk",
            chunk_index=1,
            total_chunks=2,
            file_name="holiday.mp4",
            file_size=6,
        )
    assert len(_scratch_files(service)) == 1
    assert service.tracker.snapshot("disk", OWNER).missing_indexes() == [1]


def test_simple_upload_commits_record_and_quota(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)

    with SessionLocal() as db:
        stored = service.simple_upload(
            db, OWNER, io.BytesIO(b"hello world"), file_name="notes.TXT", mime_type="text/plain", folder_id="f1"
        )
        snapshot = service.ledger.snapshot(db, OWNER)

    assert stored.size == 11
    assert stored.folder_id == "f1"
    assert stored.remote_key.endswith(".txt")
    assert _remote_bytes(service, stored.remote_key) == b"hello world"
    assert snapshot.used == 11
    assert _scratch_files(service) == []


def test_simple_upload_rejects_files_above_single_request_limit(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, max_chunk_bytes=4)

    with SessionLocal() as db, pytest.raises(FileTooLarge):
        service.simple_upload(db, OWNER, io.BytesIO(b"hello"), file_name="a.bin")
    assert _scratch_files(service) == []


def test_simple_upload_quota_exceeded_discards_scratch(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path, limit=4)

    with SessionLocal() as db:
        with pytest.raises(QuotaExceeded):
            service.simple_upload(db, OWNER, io.BytesIO(b"hello"), file_name="a.bin")
        assert db.scalars(select(StoredFile)).all() == []
    assert _scratch_files(service) == []


def test_copy_and_delete_keep_quota_in_step(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)

    with SessionLocal() as db:
        original = service.simple_upload(db, OWNER, io.BytesIO(b"12345"), file_name="a.bin")
        duplicate = service.copy_file(db, OWNER, original.id)
        assert duplicate.remote_key != original.remote_key
        assert _remote_bytes(service, duplicate.remote_key) == b"12345"
        assert service.ledger.snapshot(db, OWNER).used == 10

        service.delete_file(db, OWNER, original.id)
        assert service.ledger.snapshot(db, OWNER).used == 5
        assert not service.blob_store.exists(original.remote_key)
        assert service.blob_store.exists(duplicate.remote_key)


def test_purge_owner_deletes_namespace(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)

    with SessionLocal() as db:
        first = service.simple_upload(db, OWNER, io.BytesIO(b"one"), file_name="a.bin")
        service.simple_upload(db, OWNER, io.BytesIO(b"two"), file_name="b.bin")
        stats = service.purge_owner(db, OWNER)
        assert stats == {"remote_objects_deleted": 2, "file_records_deleted": 2}
        assert service.ledger.snapshot(db, OWNER).used == 0
        assert not service.blob_store.exists(first.remote_key)


class _FailingCommitLedger(QuotaLedger):
    def apply_commit(self, db, owner_id, reserved, actual):
        raise RuntimeError("database is locked")


@pytest.mark.parametrize(("total_chunks", "file_size"), [(10**12, 4), (MAX_TOTAL_CHUNKS + 1, 10**9), (5, 4)])
def test_total_chunks_is_bounded(tmp_path, total_chunks, file_size) -> None:
    _reset_state()
    service = _service(tmp_path)

    with pytest.raises(InvalidChunk):
        service.receive_chunk(
            OWNER,
            io.BytesIO(b"abcd"),
            upload_id="huge",
            chunk_index=0,
            total_chunks=total_chunks,
            file_name="huge.bin",
            file_size=file_size,
        )
    assert "huge" not in service.tracker
    assert _scratch_files(service) == []


def test_failed_record_commit_deletes_remote_object_and_releases_quota(tmp_path) -> None:
    _reset_state()
    service = _service(tmp_path)
    service.ledger = _FailingCommitLedger(default_limit=10_000)

    with SessionLocal() as db:
        with pytest.raises(RuntimeError):
            service.simple_upload(db, OWNER, io.BytesIO(b"hello"), file_name="a.bin")
        assert db.scalars(select(StoredFile)).all() == []
        snapshot = service.ledger.snapshot(db, OWNER)

    assert snapshot.used == 0
    assert snapshot.reserved == 0
    assert [p for p in service.blob_store.root.rglob("*") if p.is_file()] == []
    assert _scratch_files(service) == []
