from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks persisted to scratch storage")
chunk_bytes_received_total = Counter("chunk_bytes_received_total", "Total chunk bytes persisted to scratch storage")
transfers_completed_total = Counter("transfers_completed_total", "Total uploads committed", ["path"])
upload_failures_total = Counter("upload_failures_total", "Total failed uploads", ["reason"])
stale_uploads_reaped_total = Counter("stale_uploads_reaped_total", "Total abandoned transfers evicted by the reaper")
scratch_files_deleted_total = Counter("scratch_files_deleted_total", "Total scratch files deleted by the reaper")
assembled_bytes_total = Counter("assembled_bytes_total", "Total bytes concatenated by the assembler")

live_transfers = Gauge("live_transfers", "Chunked transfers currently tracked in memory")

blob_put_latency_seconds = Histogram(
    "blob_put_latency_seconds",
    "Blob store put latency in seconds",
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)
assembly_duration_seconds = Histogram("assembly_duration_seconds", "Chunk assembly duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
