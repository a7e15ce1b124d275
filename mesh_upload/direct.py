from mesh_upload.assembly import AssembledObject, issue_urls
from mesh_upload.chunks import decode_base64
from mesh_upload.errors import StorageError
from mesh_upload.events import log_event
from mesh_upload.keys import final_object_key, sanitize_file_name
from mesh_upload.models import utc_now
from mesh_upload.schemas import DirectUploadRequest
from mesh_upload.storage import ObjectStorage, ensure_bucket_quietly, run_storage


async def store_direct_upload(
    storage: ObjectStorage, payload: DirectUploadRequest, bucket: str, signed_url_ttl_seconds: int
) -> AssembledObject:
    """Store a small file sent in one request, skipping the staging bucket."""
    data = decode_base64(payload.file_data, "fileData")
    file_name = sanitize_file_name(payload.file_name)
    key = final_object_key(file_name)

    await ensure_bucket_quietly(storage, bucket)
    try:
        result = await run_storage("put_object", storage.put_object, bucket, key, data, payload.file_type)
    except Exception as exc:
        raise StorageError(f"Failed to upload file: {exc}") from exc

    signed_url, public_url = await issue_urls(storage, bucket, key, signed_url_ttl_seconds)
    log_event({"event": "direct_upload_stored", "path": key, "file_size": result.size})
    return AssembledObject(
        storage_path=key,
        file_name=file_name,
        file_size=result.size,
        signed_url=signed_url,
        public_url=public_url,
        created_at=utc_now(),
    )
