from __future__ import annotations

import time

from drive_service.events import log_event
from drive_service.limits import STALE_UPLOAD_TTL_SECONDS
from drive_service.metrics import scratch_files_deleted_total, stale_uploads_reaped_total
from drive_service.scratch import ScratchSpace
from drive_service.tracker import UploadTracker


def reap_stale_uploads(
    tracker: UploadTracker,
    scratch: ScratchSpace,
    *,
    max_age_seconds: float = STALE_UPLOAD_TTL_SECONDS,
    now: float | None = None,
) -> dict[str, int]:
    """Evict transfers older than ``max_age_seconds`` and delete their scratch files.

    Also removes scratch files no live transfer references, which is what a
    process restart in the middle of a transfer leaves behind.
    """
    now = time.time() if now is None else now
    stale_before = now - max_age_seconds

    evicted = tracker.evict_stale(stale_before)
    chunk_files_deleted = 0
    for transfer in evicted:
        deleted = scratch.discard(*transfer.scratch_paths())
        chunk_files_deleted += deleted
        log_event(
            {
                "event": "stale_upload_reaped",
                "upload_id": transfer.upload_id,
                "owner_id": transfer.owner_id,
                "received_chunks": len(transfer.chunks),
                "total_chunks": transfer.total_chunks,
                "scratch_files_deleted": deleted,
            }
        )

    orphans_deleted = scratch.discard_orphans(older_than=stale_before, keep=tracker.live_scratch_paths())

    stale_uploads_reaped_total.inc(len(evicted))
    scratch_files_deleted_total.inc(chunk_files_deleted + orphans_deleted)
    return {
        "stale_uploads_reaped": len(evicted),
        "scratch_files_deleted": chunk_files_deleted + orphans_deleted,
        "orphan_scratch_files_deleted": orphans_deleted,
    }
