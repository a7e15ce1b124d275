import pytest

from mesh_upload.db import Base, SessionLocal, engine
from mesh_upload.errors import CompletionConflictError, SessionExpiredError, ValidationError
from mesh_upload.models import UploadSession
from mesh_upload.schemas import InitUploadRequest
from mesh_upload.sessions import claim_for_assembly, initiate_upload, mark_cleaned_up, record_assembled, record_failed


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def test_reinitiating_refreshes_declaration_until_assembly() -> None:
    _reset_state()
    with SessionLocal() as db:
        session, first_expiry = initiate_upload(
            db, InitUploadRequest(file_name="a.stl", total_chunks=2, upload_id="u-resume"), ttl_seconds=60
        )
        assert session.status == "INITIATED"

        session, second_expiry = initiate_upload(
            db, InitUploadRequest(file_name="a.stl", total_chunks=3, upload_id="u-resume", checksum="SHA256:ABC")
        )
        assert session.total_chunks == 3
        assert session.checksum == "abc"
        assert second_expiry > first_expiry

        claimed, replay = claim_for_assembly(db, "u-resume", "a.stl", 3)
        assert replay is False
        assert claimed.status == "ASSEMBLING"

        with pytest.raises(CompletionConflictError):
            initiate_upload(db, InitUploadRequest(file_name="a.stl", total_chunks=3, upload_id="u-resume"))


def test_claim_lifecycle() -> None:
    _reset_state()
    with SessionLocal() as db:
        initiate_upload(db, InitUploadRequest(file_name="a.stl", total_chunks=1, upload_id="u-life"))

        with pytest.raises(ValidationError):
            claim_for_assembly(db, "u-life", "b.stl", 1)

        claim_for_assembly(db, "u-life", "a.stl", 1)
        with pytest.raises(CompletionConflictError):
            claim_for_assembly(db, "u-life", "a.stl", 1)

        record_failed(db, "u-life", "Chunks mismatch: expected 1, found 0")
        db.expire_all()
        assert db.get(UploadSession, "u-life").status == "FAILED"

        claim_for_assembly(db, "u-life", "a.stl", 1)
        record_assembled(db, "u-life", "2026/01/01/x-a.stl", "signed", "public", 9)
        mark_cleaned_up(db, "u-life")
        db.expire_all()

        session, replay = claim_for_assembly(db, "u-life", "a.stl", 1)
        assert replay is True
        assert session.status == "CLEANED_UP"
        assert session.storage_path == "2026/01/01/x-a.stl"
        assert session.assembled_size == 9


def test_expired_session_cannot_be_claimed_but_can_be_reinitiated() -> None:
    _reset_state()
    with SessionLocal() as db:
        initiate_upload(db, InitUploadRequest(file_name="a.stl", total_chunks=1, upload_id="u-exp"))
        session = db.get(UploadSession, "u-exp")
        session.status = "EXPIRED"
        db.commit()

        with pytest.raises(SessionExpiredError):
            claim_for_assembly(db, "u-exp", "a.stl", 1)

        session, _ = initiate_upload(db, InitUploadRequest(file_name="a.stl", total_chunks=1, upload_id="u-exp"))
        assert session.status == "INITIATED"
