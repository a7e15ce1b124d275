import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from mesh_upload.config import settings
from mesh_upload.events import log_event
from mesh_upload.keys import staging_prefix
from mesh_upload.metrics import sessions_reaped_total, staged_chunks_deleted_total
from mesh_upload.models import ACCEPTING_CHUNKS, SessionStatus, UploadSession, utc_now
from mesh_upload.storage import ObjectStorage

LIVE_STATUSES = (*ACCEPTING_CHUNKS, SessionStatus.assembling.value)


def _storage_warning(event: str, detail: str, **fields) -> None:
    log_event({"event": event, "detail": detail, "error_class": "maintenance_error", **fields}, level=logging.WARNING)


def _delete_keys(storage: ObjectStorage, bucket: str, keys: list[str]) -> tuple[int, int]:
    deleted = 0
    failed = 0
    for key in keys:
        try:
            storage.delete_object(bucket, key)
            deleted += 1
        except Exception as exc:
            failed += 1
            _storage_warning("reaper_delete_failed", str(exc), key=key)
    staged_chunks_deleted_total.inc(deleted)
    return deleted, failed


def reap_expired_sessions(
    db: Session,
    storage: ObjectStorage,
    staging_bucket: str | None = None,
    orphan_ttl_seconds: int | None = None,
) -> dict[str, int]:
    """Expire abandoned sessions and drop staged chunks nobody will assemble.

    A session is only marked EXPIRED once all of its staged chunks are gone, so
    a partially failed sweep is retried on the next run.
    """
    bucket = staging_bucket or settings.staging_bucket
    ttl = settings.session_ttl_seconds if orphan_ttl_seconds is None else orphan_ttl_seconds
    now = utc_now()

    expired = list(
        db.scalars(
            select(UploadSession).where(
                UploadSession.status.in_(ACCEPTING_CHUNKS),
                UploadSession.expires_at < now,
            )
        ).all()
    )

    sessions_expired = 0
    chunks_deleted = 0
    storage_failures = 0
    for session in expired:
        try:
            objects = storage.list_objects(bucket, staging_prefix(session.id))
        except Exception as exc:
            storage_failures += 1
            _storage_warning("reaper_list_failed", str(exc), upload_id=session.id)
            continue
        deleted, failed = _delete_keys(storage, bucket, [obj.key for obj in objects])
        chunks_deleted += deleted
        storage_failures += failed
        if failed:
            continue
        session.status = SessionStatus.expired.value
        session.updated_at = now
        sessions_expired += 1
    db.commit()
    sessions_reaped_total.inc(sessions_expired)

    live_ids = set(db.scalars(select(UploadSession.id).where(UploadSession.status.in_(LIVE_STATUSES))).all())
    orphan_cutoff = now - timedelta(seconds=ttl)
    orphans_deleted = 0
    try:
        staged = storage.list_objects(bucket)
    except Exception as exc:
        storage_failures += 1
        _storage_warning("reaper_list_failed", str(exc), bucket=bucket)
        staged = []

    orphan_keys = []
    for obj in staged:
        upload_id, sep, _ = obj.key.partition("/")
        if not sep or upload_id in live_ids:
            continue
        if obj.last_modified is None or obj.last_modified >= orphan_cutoff:
            continue
        orphan_keys.append(obj.key)
    if orphan_keys:
        orphans_deleted, failed = _delete_keys(storage, bucket, orphan_keys)
        storage_failures += failed

    stats = {
        "sessions_expired": sessions_expired,
        "staged_chunks_deleted": chunks_deleted,
        "orphans_deleted": orphans_deleted,
        "storage_failures": storage_failures,
    }
    log_event({"event": "reaper_completed", **stats})
    return stats
