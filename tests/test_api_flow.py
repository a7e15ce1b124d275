import base64
import hashlib
import re
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from mesh_upload.config import settings
from mesh_upload.db import Base, SessionLocal, engine
from mesh_upload.main import app
from mesh_upload.models import UploadSession, utc_now

FINAL_PATH = re.compile(r"^\d{4}/\d{2}/\d{2}/\d+-[0-9a-f]{16}-cube\.stl$")


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "storage_backend", "local")
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "public_base_url", "http://testserver")
    _reset_state()
    with TestClient(app) as test_client:
        yield test_client


def _init(client: TestClient, total_chunks: int, file_name: str = "cube.stl", **extra) -> str:
    response = client.post("/upload-init", json={"fileName": file_name, "totalChunks": total_chunks, **extra})
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["success"] is True
    return payload["uploadId"]


def _send_chunk(client: TestClient, upload_id: str, index: int, data: bytes, total_chunks: int = 3):
    return client.post(
        "/upload-chunk",
        json={
            "uploadId": upload_id,
            "chunkIndex": index,
            "totalChunks": total_chunks,
            "chunkData": _b64(data),
            "fileName": "cube.stl",
        },
    )


def _complete(client: TestClient, upload_id: str, total_chunks: int = 3, file_name: str = "cube.stl", **extra):
    return client.post(
        "/upload-complete",
        json={"uploadId": upload_id, "fileName": file_name, "totalChunks": total_chunks, **extra},
    )


def _set_session(upload_id: str, **fields) -> None:
    with SessionLocal() as db:
        session = db.get(UploadSession, upload_id)
        for name, value in fields.items():
            setattr(session, name, value)
        db.commit()


def _staged(client: TestClient, upload_id: str) -> list:
    return client.app.state.storage.list_objects(settings.staging_bucket, f"{upload_id}/")


def test_three_chunk_upload_assembles_in_order(client) -> None:
    upload_id = _init(client, 3)
    for index, data in enumerate((b"AAA", b"BBB", b"CCC")):
        response = _send_chunk(client, upload_id, index, data)
        assert response.status_code == 200, response.text
        assert response.json()["chunkIndex"] == index
        assert response.json()["message"] == f"Chunk {index + 1}/3 uploaded successfully"

    complete = _complete(client, upload_id)
    assert complete.status_code == 200, complete.text
    payload = complete.json()
    assert payload["success"] is True
    assert payload["fileSize"] == 9
    assert payload["fileName"] == "cube.stl"
    assert FINAL_PATH.match(payload["path"])
    assert payload["publicUrl"].endswith(payload["path"])

    download = client.get(payload["url"])
    assert download.status_code == 200
    assert download.content == b"AAABBBCCC"

    assert _staged(client, upload_id) == []
    final_objects = client.app.state.storage.list_objects(settings.final_bucket)
    assert [obj.key for obj in final_objects] == [payload["path"]]

    status = client.get(f"/upload-status/{upload_id}")
    assert status.status_code == 200
    assert status.json()["status"] == "CLEANED_UP"
    assert status.json()["path"] == payload["path"]


def test_complete_with_missing_chunk_reports_count_and_writes_nothing(client) -> None:
    upload_id = _init(client, 3)
    assert _send_chunk(client, upload_id, 0, b"AAA").status_code == 200
    assert _send_chunk(client, upload_id, 1, b"BBB").status_code == 200

    response = _complete(client, upload_id)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Chunks mismatch: expected 3, found 2"
    assert body["error_code"] == "chunk_mismatch"
    assert body["upload_id"] == upload_id
    assert client.app.state.storage.list_objects(settings.final_bucket) == []
    assert len(_staged(client, upload_id)) == 2


def test_out_of_order_chunks_assemble_by_index(client) -> None:
    upload_id = _init(client, 3)
    for index in (2, 0, 1):
        assert _send_chunk(client, upload_id, index, (b"AAA", b"BBB", b"CCC")[index]).status_code == 200

    complete = _complete(client, upload_id)
    assert complete.status_code == 200, complete.text
    assert client.get(complete.json()["url"]).content == b"AAABBBCCC"


def test_single_chunk_upload_without_init(client) -> None:
    upload_id = "1700000000000-legacyclient0001"
    response = _send_chunk(client, upload_id, 0, b"solid cube\nendsolid cube\n", total_chunks=1)
    assert response.status_code == 200, response.text

    complete = _complete(client, upload_id, total_chunks=1)
    assert complete.status_code == 200, complete.text
    assert complete.json()["fileSize"] == len(b"solid cube\nendsolid cube\n")


def test_reuploading_a_chunk_replaces_its_bytes(client) -> None:
    upload_id = _init(client, 2)
    assert _send_chunk(client, upload_id, 0, b"XXXX", total_chunks=2).status_code == 200
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=2).status_code == 200
    assert _send_chunk(client, upload_id, 1, b"BBB", total_chunks=2).status_code == 200

    complete = _complete(client, upload_id, total_chunks=2)
    assert complete.status_code == 200
    assert client.get(complete.json()["url"]).content == b"AAABBB"


def test_retry_after_success_replays_stored_result(client) -> None:
    upload_id = _init(client, 1)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=1).status_code == 200

    first = _complete(client, upload_id, total_chunks=1)
    second = _complete(client, upload_id, total_chunks=1)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["path"] == first.json()["path"]
    assert second.json()["fileSize"] == 3
    assert len(client.app.state.storage.list_objects(settings.final_bucket)) == 1


def test_failed_completion_can_be_retried_after_reupload(client) -> None:
    upload_id = _init(client, 2)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=2).status_code == 200
    assert _complete(client, upload_id, total_chunks=2).status_code == 400

    assert client.get(f"/upload-status/{upload_id}").json()["status"] == "FAILED"
    assert _send_chunk(client, upload_id, 1, b"BBB", total_chunks=2).status_code == 200
    retry = _complete(client, upload_id, total_chunks=2)
    assert retry.status_code == 200, retry.text
    assert client.get(retry.json()["url"]).content == b"AAABBB"


def test_chunks_are_refused_once_assembled(client) -> None:
    upload_id = _init(client, 1)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=1).status_code == 200
    assert _complete(client, upload_id, total_chunks=1).status_code == 200

    late = _send_chunk(client, upload_id, 0, b"ZZZ", total_chunks=1)
    assert late.status_code == 409
    assert late.json()["error_code"] == "conflict"


def test_concurrent_completion_gets_conflict(client) -> None:
    upload_id = _init(client, 1)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=1).status_code == 200
    _set_session(upload_id, status="ASSEMBLING", updated_at=utc_now())

    response = _complete(client, upload_id, total_chunks=1)
    assert response.status_code == 409
    assert "already in progress" in response.json()["error"]


def test_stale_assembling_lease_is_taken_over(client) -> None:
    upload_id = _init(client, 1)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=1).status_code == 200
    stale = utc_now() - timedelta(seconds=settings.assembly_lease_seconds + 60)
    _set_session(upload_id, status="ASSEMBLING", updated_at=stale)

    assert _complete(client, upload_id, total_chunks=1).status_code == 200


def test_expired_session_cannot_complete(client) -> None:
    upload_id = _init(client, 1)
    _set_session(upload_id, status="EXPIRED")

    response = _complete(client, upload_id, total_chunks=1)
    assert response.status_code == 410
    assert response.json()["error_code"] == "session_expired"


def test_completion_must_match_declaration(client) -> None:
    upload_id = _init(client, 3)
    response = _complete(client, upload_id, total_chunks=2)
    assert response.status_code == 400
    assert response.json()["error_code"] == "validation_error"
    assert "totalChunks" in response.json()["error"]


def test_checksum_is_verified_at_completion(client) -> None:
    good = hashlib.sha256(b"AAABBB").hexdigest()
    upload_id = _init(client, 2, checksum=good)
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=2).status_code == 200
    assert _send_chunk(client, upload_id, 1, b"BBB", total_chunks=2).status_code == 200
    assert _complete(client, upload_id, total_chunks=2).status_code == 200

    other_id = _init(client, 1, checksum="sha256:" + "0" * 64)
    assert _send_chunk(client, other_id, 0, b"AAA", total_chunks=1).status_code == 200
    mismatch = _complete(client, other_id, total_chunks=1)
    assert mismatch.status_code == 400
    assert mismatch.json()["error_code"] == "checksum_mismatch"
    assert len(client.app.state.storage.list_objects(settings.final_bucket)) == 1


def test_chunk_validation_errors(client) -> None:
    upload_id = _init(client, 2)

    out_of_bounds = _send_chunk(client, upload_id, 2, b"AAA", total_chunks=2)
    assert out_of_bounds.status_code == 400
    assert "out of bounds" in out_of_bounds.json()["error"]

    bad_base64 = client.post(
        "/upload-chunk", json={"uploadId": upload_id, "chunkIndex": 0, "totalChunks": 2, "chunkData": "@@not-base64@@"}
    )
    assert bad_base64.status_code == 400
    assert bad_base64.json()["error"] == "chunkData is not valid base64"

    missing = client.post("/upload-chunk", json={"uploadId": upload_id})
    assert missing.status_code == 400
    assert missing.json()["error"] == "Missing required fields: chunkIndex, chunkData"


def test_data_url_prefix_is_accepted(client) -> None:
    upload_id = _init(client, 1)
    response = client.post(
        "/upload-chunk",
        json={
            "uploadId": upload_id,
            "chunkIndex": 0,
            "totalChunks": 1,
            "chunkData": "data:application/octet-stream;base64," + _b64(b"AAA"),
        },
    )
    assert response.status_code == 200
    complete = _complete(client, upload_id, total_chunks=1)
    assert client.get(complete.json()["url"]).content == b"AAA"


def test_init_requires_file_name_and_total_chunks(client) -> None:
    response = client.post("/upload-init", json={})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Missing required fields: fileName, totalChunks"


def test_init_returns_expiry_in_epoch_millis(client) -> None:
    response = client.post("/upload-init", json={"fileName": "cube.stl", "totalChunks": 2})
    payload = response.json()
    expected = (utc_now() + timedelta(seconds=settings.session_ttl_seconds)).timestamp() * 1000
    assert abs(payload["expiresAt"] - expected) < 60_000
    assert re.match(r"^\d+-[0-9a-f]{16}$", payload["uploadId"])
    assert payload["message"] == "Upload initialized successfully"


def test_non_post_is_rejected_and_options_is_allowed(client) -> None:
    wrong_method = client.get("/upload-chunk")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"] == "Method not allowed. Use POST."

    preflight = client.options("/upload-chunk")
    assert preflight.status_code == 200
    assert preflight.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in preflight.headers["Access-Control-Allow-Methods"]


def test_oversized_body_is_rejected(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_request_body_bytes", 64)
    response = _send_chunk(client, "1700000000000-big", 0, b"A" * 512)
    assert response.status_code == 413
    assert response.json()["error_code"] == "payload_too_large"


def test_upload_status_lists_missing_chunks(client) -> None:
    upload_id = _init(client, 3)
    assert _send_chunk(client, upload_id, 1, b"BBB").status_code == 200

    status = client.get(f"/upload-status/{upload_id}")
    assert status.status_code == 200
    payload = status.json()
    assert payload["status"] == "INITIATED"
    assert payload["receivedChunkIndexes"] == [1]
    assert payload["missingChunkIndexes"] == [0, 2]

    assert client.get("/upload-status/unknown-upload").status_code == 404


def test_failed_chunk_write_leaves_other_chunks_intact(client, monkeypatch) -> None:
    storage = client.app.state.storage
    original_put = storage.put_object

    def flaky_put(bucket, key, data, content_type="application/octet-stream"):
        if key.endswith("/00001.chunk"):
            raise OSError("connection reset by peer")
        return original_put(bucket, key, data, content_type)

    upload_id = _init(client, 3)
    monkeypatch.setattr(storage, "put_object", flaky_put)
    assert _send_chunk(client, upload_id, 0, b"AAA").status_code == 200
    failed = _send_chunk(client, upload_id, 1, b"BBB")
    assert _send_chunk(client, upload_id, 2, b"CCC").status_code == 200

    assert failed.status_code == 500
    body = failed.json()
    assert body["success"] is False
    assert body["error_code"] == "storage_error"
    assert body["error"] == "Failed to upload chunk: connection reset by peer"
    assert sorted(obj.name for obj in _staged(client, upload_id)) == ["00000.chunk", "00002.chunk"]

    monkeypatch.setattr(storage, "put_object", original_put)
    assert _send_chunk(client, upload_id, 1, b"BBB").status_code == 200
    complete = _complete(client, upload_id)
    assert complete.status_code == 200, complete.text
    assert client.get(complete.json()["url"]).content == b"AAABBBCCC"


def test_completed_path_uses_sanitized_name_but_echoes_original(client) -> None:
    upload_id = _init(client, 1, file_name="my cube.stl")
    assert _send_chunk(client, upload_id, 0, b"AAA", total_chunks=1).status_code == 200

    complete = _complete(client, upload_id, total_chunks=1, file_name="my cube.stl")
    assert complete.status_code == 200, complete.text
    payload = complete.json()
    assert payload["fileName"] == "my cube.stl"
    assert payload["path"].endswith("-my_cube.stl")
    assert " " not in payload["path"]


def test_direct_upload_stores_sanitized_name(client) -> None:
    response = client.post(
        "/upload-to-storage",
        json={"fileName": "my cube (1).stl", "fileData": _b64(b"solid x\nendsolid x\n")},
    )
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["fileName"] == "my_cube__1_.stl"
    assert payload["path"].endswith("-my_cube__1_.stl")
    assert client.get(payload["url"]).content == b"solid x\nendsolid x\n"


def test_file_route_enforces_tokens_and_ranges(client, monkeypatch) -> None:
    upload_id = _init(client, 1)
    assert _send_chunk(client, upload_id, 0, b"0123456789", total_chunks=1).status_code == 200
    payload = _complete(client, upload_id, total_chunks=1).json()
    path = payload["path"]

    assert client.get(f"/files/{settings.final_bucket}/{path}").status_code == 403
    assert client.get(f"/files/{settings.final_bucket}/{path}?token=forged").status_code == 403

    partial = client.get(payload["url"], headers={"Range": "bytes=2-5"})
    assert partial.status_code == 206
    assert partial.content == b"2345"
    assert partial.headers["Content-Range"] == "bytes 2-5/10"

    monkeypatch.setattr(settings, "final_bucket_public", True)
    assert client.get(payload["publicUrl"]).content == b"0123456789"
    assert client.get(f"/files/{settings.staging_bucket}/{upload_id}/00000.chunk").status_code == 403
    assert client.get(f"/files/{settings.final_bucket}/2020/01/01/missing.stl").status_code == 404


def test_version_and_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    version = client.get("/version")
    assert version.json()["app_name"] == settings.app_name
    assert version.headers["X-App-Version"] == settings.app_version
