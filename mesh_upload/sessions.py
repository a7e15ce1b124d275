from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mesh_upload.config import settings
from mesh_upload.errors import CompletionConflictError, SessionExpiredError, ValidationError
from mesh_upload.keys import new_upload_id
from mesh_upload.models import ACCEPTING_CHUNKS, FINISHED, SessionStatus, UploadSession, utc_now
from mesh_upload.schemas import InitUploadRequest

REINITIABLE = (*ACCEPTING_CHUNKS, SessionStatus.expired.value)


def normalize_checksum(checksum: str | None) -> str | None:
    if not checksum:
        return None
    value = checksum.strip().lower()
    return value.removeprefix("sha256:") or None


def initiate_upload(
    db: Session, payload: InitUploadRequest, ttl_seconds: int | None = None
) -> tuple[UploadSession, datetime]:
    """Record a new session, or refresh the declaration of one the client is resuming."""
    ttl = settings.session_ttl_seconds if ttl_seconds is None else ttl_seconds
    upload_id = payload.upload_id or new_upload_id()
    now = utc_now()
    expires_at = now + timedelta(seconds=ttl)

    session = db.get(UploadSession, upload_id)
    if session is None:
        session = UploadSession(id=upload_id, created_at=now)
        db.add(session)
    elif session.status not in REINITIABLE:
        raise CompletionConflictError(
            f"upload {upload_id} is {session.status} and cannot be initiated again", upload_id=upload_id
        )

    session.file_name = payload.file_name
    session.total_chunks = payload.total_chunks
    session.file_size = payload.file_size
    session.checksum = normalize_checksum(payload.checksum)
    session.content_type = payload.content_type
    session.status = SessionStatus.initiated.value
    session.failure_reason = None
    session.updated_at = now
    session.expires_at = expires_at
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise CompletionConflictError(f"upload {upload_id} was initiated concurrently", upload_id=upload_id) from exc
    return session, expires_at


def _cross_check(session: UploadSession, file_name: str, total_chunks: int, checksum: str | None) -> None:
    if session.total_chunks != total_chunks:
        raise ValidationError(
            f"totalChunks {total_chunks} does not match {session.total_chunks} declared at initiation",
            upload_id=session.id,
        )
    if session.file_name != file_name:
        raise ValidationError(
            f"fileName {file_name!r} does not match {session.file_name!r} declared at initiation",
            upload_id=session.id,
        )
    if checksum and session.checksum and checksum != session.checksum:
        raise ValidationError("checksum does not match the one declared at initiation", upload_id=session.id)


def claim_for_assembly(
    db: Session,
    upload_id: str,
    file_name: str,
    total_chunks: int,
    checksum: str | None = None,
    lease_seconds: int | None = None,
) -> tuple[UploadSession, bool]:
    """Move the session to ASSEMBLING for exactly one caller.

    Returns ``(session, replay)``; ``replay`` is True when the session already
    finished and the stored result should be returned instead of assembling again.
    """
    lease = settings.assembly_lease_seconds if lease_seconds is None else lease_seconds
    checksum = normalize_checksum(checksum)
    session = db.get(UploadSession, upload_id)
    if session is None:
        now = utc_now()
        session = UploadSession(
            id=upload_id,
            file_name=file_name,
            total_chunks=total_chunks,
            checksum=checksum,
            status=SessionStatus.initiated.value,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=settings.session_ttl_seconds),
        )
        db.add(session)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            session = db.get(UploadSession, upload_id)
            if session is None:
                raise

    _cross_check(session, file_name, total_chunks, checksum)
    if session.status in FINISHED:
        return session, True
    if session.status == SessionStatus.expired.value:
        raise SessionExpiredError(f"upload {upload_id} has expired", upload_id=upload_id)

    now = utc_now()
    lease_cutoff = now - timedelta(seconds=lease)
    result = db.execute(
        update(UploadSession)
        .where(
            UploadSession.id == upload_id,
            or_(
                UploadSession.status.in_(ACCEPTING_CHUNKS),
                and_(
                    UploadSession.status == SessionStatus.assembling.value,
                    UploadSession.updated_at < lease_cutoff,
                ),
            ),
        )
        .values(status=SessionStatus.assembling.value, updated_at=now, failure_reason=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)
    if result.rowcount != 1:
        if session.status in FINISHED:
            return session, True
        raise CompletionConflictError(f"completion already in progress for upload {upload_id}", upload_id=upload_id)
    return session, False


def record_assembled(
    db: Session, upload_id: str, storage_path: str, signed_url: str, public_url: str, file_size: int
) -> None:
    db.execute(
        update(UploadSession)
        .where(UploadSession.id == upload_id)
        .values(
            status=SessionStatus.assembled.value,
            storage_path=storage_path,
            signed_url=signed_url,
            public_url=public_url,
            assembled_size=file_size,
            failure_reason=None,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def record_failed(db: Session, upload_id: str, reason: str) -> None:
    db.rollback()
    db.execute(
        update(UploadSession)
        .where(UploadSession.id == upload_id, UploadSession.status == SessionStatus.assembling.value)
        .values(status=SessionStatus.failed.value, failure_reason=reason[:2000], updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_cleaned_up(db: Session, upload_id: str) -> None:
    db.execute(
        update(UploadSession)
        .where(UploadSession.id == upload_id, UploadSession.status == SessionStatus.assembled.value)
        .values(status=SessionStatus.cleaned_up.value, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
