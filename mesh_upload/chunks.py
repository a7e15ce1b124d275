import base64
import binascii
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from mesh_upload.errors import CompletionConflictError, StorageError, ValidationError
from mesh_upload.events import log_event
from mesh_upload.keys import chunk_key
from mesh_upload.metrics import chunk_bytes_received_total, chunk_write_failures_total, chunks_received_total
from mesh_upload.models import ACCEPTING_CHUNKS, UploadSession, utc_now
from mesh_upload.schemas import UploadChunkRequest
from mesh_upload.storage import ObjectStorage, ensure_bucket_quietly, run_storage


@dataclass(frozen=True)
class ChunkRecord:
    upload_id: str
    index: int
    size_bytes: int
    storage_key: str
    uploaded_at: datetime


def decode_base64(value: str, field: str) -> bytes:
    """Decode a base64 body field. A ``data:...;base64,`` prefix is accepted and stripped."""
    if value.startswith("data:"):
        _, _, value = value.partition(",")
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{field} is not valid base64") from exc
    if not decoded:
        raise ValidationError(f"{field} is empty")
    return decoded


async def receive_chunk(
    db: Session, storage: ObjectStorage, payload: UploadChunkRequest, staging_bucket: str
) -> ChunkRecord:
    upload_id = payload.upload_id
    data = decode_base64(payload.chunk_data, "chunkData")

    session = db.get(UploadSession, upload_id)
    if session is not None:
        if session.status not in ACCEPTING_CHUNKS:
            raise CompletionConflictError(
                f"upload {upload_id} is not accepting chunks (status {session.status})", upload_id=upload_id
            )
        declared_total = session.total_chunks
    else:
        declared_total = payload.total_chunks
    if declared_total is not None and payload.chunk_index >= declared_total:
        raise ValidationError(
            f"chunk index {payload.chunk_index} out of bounds for {declared_total} chunks", upload_id=upload_id
        )

    await ensure_bucket_quietly(storage, staging_bucket, upload_id=upload_id)

    key = chunk_key(upload_id, payload.chunk_index)
    try:
        await run_storage("put_object", storage.put_object, staging_bucket, key, data)
    except Exception as exc:
        chunk_write_failures_total.inc()
        log_event(
            {
                "event": "chunk_write_failed",
                "upload_id": upload_id,
                "chunk_index": payload.chunk_index,
                "detail": str(exc),
                "error_class": "storage_error",
            }
        )
        raise StorageError(f"Failed to upload chunk: {exc}", upload_id=upload_id) from exc

    chunks_received_total.inc()
    chunk_bytes_received_total.inc(len(data))
    log_event(
        {
            "event": "chunk_received",
            "upload_id": upload_id,
            "chunk_index": payload.chunk_index,
            "total_chunks": declared_total,
            "size_bytes": len(data),
        }
    )
    return ChunkRecord(
        upload_id=upload_id,
        index=payload.chunk_index,
        size_bytes=len(data),
        storage_key=key,
        uploaded_at=utc_now(),
    )
