"""Local scratch storage for chunks and assembled files.

Every scratch file is owned by the request or sweep that created it, and every
exit path of that owner hands it to :meth:`ScratchSpace.discard`.
"""

import time
import uuid
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from drive_service.errors import ChunkPersistFailure, ChunkTooLarge
from drive_service.events import log_event
from drive_service.limits import COPY_BUFFER_BYTES


def safe_extension(file_name: str) -> str:
    """Extension of a client-declared name, reduced to ``.[a-z0-9]{1,16}`` or ``""``."""
    suffix = PurePosixPath(file_name.replace("\\", "/")).suffix.lower()
    cleaned = "".join(ch for ch in suffix[1:] if ch.isascii() and ch.isalnum())[:16]
    return f".{cleaned}" if cleaned else ""


class ScratchSpace:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def new_path(self, suffix: str = "") -> Path:
        return self.root / f"{uuid.uuid4()}-{int(time.time() * 1000)}{suffix}"

    def write_stream(
        self, source: BinaryIO, *, suffix: str = "", max_bytes: int | None = None, upload_id: str | None = None
    ) -> tuple[Path, int]:
        """Copy ``source`` into a fresh scratch file and return its path and size."""
        path = self.new_path(suffix)
        written = 0
        try:
            with path.open("wb") as out:
                while block := source.read(COPY_BUFFER_BYTES):
                    written += len(block)
                    if max_bytes is not None and written > max_bytes:
                        raise ChunkTooLarge(f"payload exceeds {max_bytes} bytes", upload_id=upload_id)
                    out.write(block)
        except ChunkTooLarge:
            self.discard(path)
            raise
        except OSError as exc:
            self.discard(path)
            raise ChunkPersistFailure(f"could not persist payload to scratch storage: {exc}", upload_id=upload_id) from exc
        return path, written

    def discard(self, *paths: Path | None) -> int:
        """Delete scratch files, ignoring ones already gone. Returns how many were removed."""
        removed = 0
        for path in paths:
            if path is None:
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                log_event(
                    {"event": "scratch_delete_failed", "path": str(path), "detail": str(exc), "error_class": "io_error"}
                )
        return removed

    def discard_orphans(self, older_than: float, keep: Iterable[Path]) -> int:
        """Delete unreferenced scratch files last modified before ``older_than`` (epoch seconds)."""
        keep_names = {path.name for path in keep}
        removed = 0
        for path in self.root.iterdir():
            if not path.is_file() or path.name in keep_names:
                continue
            try:
                if path.stat().st_mtime >= older_than:
                    continue
            except FileNotFoundError:
                continue
            removed += self.discard(path)
        return removed
