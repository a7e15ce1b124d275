from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

sessions_initiated_total = Counter("sessions_initiated_total", "Total upload sessions initiated")
chunks_received_total = Counter("chunks_received_total", "Total chunks written to staging")
chunk_bytes_received_total = Counter("chunk_bytes_received_total", "Total chunk bytes written to staging")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Total failed staging chunk writes")
assemblies_total = Counter("assemblies_total", "Completion attempts by outcome", ["outcome"])
assembled_bytes_total = Counter("assembled_bytes_total", "Total bytes written to final objects")
staged_chunks_deleted_total = Counter("staged_chunks_deleted_total", "Total staged chunk objects deleted")
cleanup_failures_total = Counter("cleanup_failures_total", "Total staged chunk deletions that failed")
sessions_reaped_total = Counter("sessions_reaped_total", "Total expired sessions reaped")

assembly_duration_seconds = Histogram("assembly_duration_seconds", "Wall time of a completion call in seconds")
storage_latency_seconds = Histogram(
    "storage_latency_seconds",
    "Object storage call latency in seconds",
    ["operation"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
