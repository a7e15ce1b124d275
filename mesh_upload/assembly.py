import asyncio
import hashlib
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy.orm import Session

from mesh_upload.errors import (
    AssemblyError,
    ChecksumMismatchError,
    ChunkMismatchError,
    CleanupError,
    StorageError,
    UploadError,
)
from mesh_upload.events import log_event
from mesh_upload.keys import final_object_key, parse_chunk_index, staging_prefix
from mesh_upload.metrics import (
    assembled_bytes_total,
    assemblies_total,
    assembly_duration_seconds,
    cleanup_failures_total,
    staged_chunks_deleted_total,
)
from mesh_upload.models import SessionStatus, UploadSession, utc_now
from mesh_upload.schemas import CompleteUploadRequest
from mesh_upload.sessions import claim_for_assembly, normalize_checksum, record_assembled, record_failed
from mesh_upload.storage import ObjectStorage, ObjectWriter, StoredObject, as_bytes, ensure_bucket_quietly, run_storage


@dataclass(frozen=True)
class AssembledObject:
    storage_path: str
    file_name: str
    file_size: int
    signed_url: str
    public_url: str
    created_at: datetime | None = None

    @classmethod
    def from_session(cls, session: UploadSession) -> "AssembledObject":
        return cls(
            storage_path=session.storage_path or "",
            file_name=session.file_name,
            file_size=session.assembled_size or 0,
            signed_url=session.signed_url or "",
            public_url=session.public_url or "",
            created_at=session.updated_at,
        )


@dataclass
class AssemblyOutcome:
    assembled: AssembledObject
    staged_keys: list[str] | None = None
    replayed: bool = False
    needs_cleanup: bool = True


async def issue_urls(storage: ObjectStorage, bucket: str, key: str, ttl_seconds: int) -> tuple[str, str]:
    try:
        signed = await run_storage("signed_url", storage.signed_url, bucket, key, ttl_seconds)
        public = await run_storage("public_url", storage.public_url, bucket, key)
    except Exception as exc:
        raise StorageError(f"Failed to create signed URL: {exc}") from exc
    return signed, public


class AssemblyEngine:
    """Turns a staged chunk prefix into one object in the final bucket.

    Chunks are fetched with at most ``fetch_concurrency`` downloads in flight and
    written to the destination strictly in ascending index order, so memory stays
    bounded by the window rather than the file size.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        staging_bucket: str,
        final_bucket: str,
        fetch_concurrency: int = 4,
        cleanup_concurrency: int = 8,
        signed_url_ttl_seconds: int = 3600,
    ) -> None:
        self.storage = storage
        self.staging_bucket = staging_bucket
        self.final_bucket = final_bucket
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.cleanup_concurrency = max(1, cleanup_concurrency)
        self.signed_url_ttl_seconds = signed_url_ttl_seconds

    async def complete(self, db: Session, request: CompleteUploadRequest) -> AssemblyOutcome:
        upload_id = request.upload_id
        session, replay = claim_for_assembly(
            db, upload_id, request.file_name, request.total_chunks, checksum=request.checksum
        )
        if replay:
            assemblies_total.labels(outcome="replayed").inc()
            log_event({"event": "assembly_replayed", "upload_id": upload_id, "status": session.status})
            return AssemblyOutcome(
                assembled=await self._refresh_urls(AssembledObject.from_session(session), upload_id),
                replayed=True,
                needs_cleanup=session.status == SessionStatus.assembled.value,
            )

        assembled = None
        start = time.perf_counter()
        log_event({"event": "assembly_started", "upload_id": upload_id, "total_chunks": request.total_chunks})
        try:
            assembled, staged_keys = await self._assemble(
                upload_id,
                request.file_name,
                request.total_chunks,
                normalize_checksum(request.checksum) or session.checksum,
                session.content_type,
            )
            record_assembled(
                db,
                upload_id,
                storage_path=assembled.storage_path,
                signed_url=assembled.signed_url,
                public_url=assembled.public_url,
                file_size=assembled.file_size,
            )
        except Exception as exc:
            if assembled is not None:
                await self._discard_final(assembled.storage_path, upload_id)
            reason = exc.message if isinstance(exc, UploadError) else str(exc)
            record_failed(db, upload_id, reason)
            outcome = exc.error_code if isinstance(exc, UploadError) else "internal_error"
            assemblies_total.labels(outcome=outcome).inc()
            log_event(
                {
                    "event": "assembly_failed",
                    "upload_id": upload_id,
                    "error_class": outcome,
                    "detail": reason,
                    "chunk_index": getattr(exc, "chunk_index", None),
                },
                level=logging.WARNING,
            )
            raise
        finally:
            assembly_duration_seconds.observe(time.perf_counter() - start)

        assemblies_total.labels(outcome="assembled").inc()
        assembled_bytes_total.inc(assembled.file_size)
        log_event(
            {
                "event": "assembly_completed",
                "upload_id": upload_id,
                "path": assembled.storage_path,
                "file_size": assembled.file_size,
                "total_chunks": request.total_chunks,
            }
        )
        return AssemblyOutcome(assembled=assembled, staged_keys=staged_keys)

    async def _assemble(
        self, upload_id: str, file_name: str, total_chunks: int, checksum: str | None, content_type: str
    ) -> tuple[AssembledObject, list[str]]:
        await ensure_bucket_quietly(self.storage, self.final_bucket, upload_id=upload_id)
        prefix = staging_prefix(upload_id)
        try:
            listed = await run_storage("list_objects", self.storage.list_objects, self.staging_bucket, prefix)
        except Exception as exc:
            raise StorageError(f"Failed to list chunks: {exc}", upload_id=upload_id) from exc
        ordered = self._verify_and_order(upload_id, prefix, listed, total_chunks)

        key = final_object_key(file_name)
        try:
            writer = await run_storage("open_writer", self.storage.open_writer, self.final_bucket, key, content_type)
        except Exception as exc:
            raise StorageError(f"Failed to upload assembled file: {exc}", upload_id=upload_id) from exc

        digest = hashlib.sha256()
        try:
            await self._stream_chunks(upload_id, ordered, writer, digest)
            if checksum and digest.hexdigest() != checksum:
                raise ChecksumMismatchError(
                    f"Checksum mismatch: expected {checksum}, computed {digest.hexdigest()}", upload_id=upload_id
                )
            try:
                result = await run_storage("commit", writer.commit)
            except Exception as exc:
                raise StorageError(f"Failed to upload assembled file: {exc}", upload_id=upload_id) from exc
        except Exception:
            await self._abort_writer(writer, upload_id)
            raise

        try:
            signed_url, public_url = await issue_urls(self.storage, self.final_bucket, key, self.signed_url_ttl_seconds)
        except StorageError:
            await self._discard_final(key, upload_id)
            raise
        assembled = AssembledObject(
            storage_path=key,
            file_name=file_name,
            file_size=result.size,
            signed_url=signed_url,
            public_url=public_url,
            created_at=utc_now(),
        )
        return assembled, [chunk_key for _, chunk_key in ordered]

    def _verify_and_order(
        self, upload_id: str, prefix: str, listed: list[StoredObject], total_chunks: int
    ) -> list[tuple[int, str]]:
        staged: list[tuple[int, str]] = []
        for obj in listed:
            if "/" in obj.key[len(prefix):]:
                continue
            index = parse_chunk_index(obj.name)
            if index is not None:
                staged.append((index, obj.key))

        if len(staged) != total_chunks:
            raise ChunkMismatchError(
                f"Chunks mismatch: expected {total_chunks}, found {len(staged)}",
                upload_id=upload_id,
                expected=total_chunks,
                found=len(staged),
            )
        missing = sorted(set(range(total_chunks)) - {index for index, _ in staged})
        if missing:
            raise ChunkMismatchError(
                f"Chunks mismatch: missing chunk indexes {missing}",
                upload_id=upload_id,
                expected=total_chunks,
                found=len(staged),
                missing=missing,
            )
        return sorted(staged)

    async def _fetch_chunk(self, upload_id: str, index: int, key: str) -> bytes:
        try:
            payload = await run_storage("get_object", self.storage.get_object, self.staging_bucket, key)
            return as_bytes(payload)
        except Exception as exc:
            raise AssemblyError(
                f"Failed to download chunk {index}: {exc}", upload_id=upload_id, chunk_index=index
            ) from exc

    async def _stream_chunks(
        self, upload_id: str, ordered: list[tuple[int, str]], writer: ObjectWriter, digest
    ) -> None:
        pending: deque[asyncio.Task] = deque()

        async def write_next() -> None:
            data = await pending.popleft()
            digest.update(data)
            try:
                await run_storage("write", writer.write, data)
            except Exception as exc:
                raise StorageError(f"Failed to upload assembled file: {exc}", upload_id=upload_id) from exc

        try:
            for index, key in ordered:
                pending.append(asyncio.create_task(self._fetch_chunk(upload_id, index, key)))
                if len(pending) >= self.fetch_concurrency:
                    await write_next()
            while pending:
                await write_next()
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _abort_writer(self, writer: ObjectWriter, upload_id: str) -> None:
        try:
            await run_storage("abort", writer.abort)
        except Exception as exc:
            log_event(
                {
                    "event": "writer_abort_failed",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": "storage_warning",
                },
                level=logging.WARNING,
            )

    async def _discard_final(self, key: str, upload_id: str) -> None:
        try:
            await run_storage("delete_object", self.storage.delete_object, self.final_bucket, key)
        except Exception as exc:
            log_event(
                {
                    "event": "final_object_discard_failed",
                    "upload_id": upload_id,
                    "path": key,
                    "detail": str(exc),
                    "error_class": "storage_warning",
                },
                level=logging.WARNING,
            )

    async def _refresh_urls(self, assembled: AssembledObject, upload_id: str) -> AssembledObject:
        # Stored presigned URLs may have lapsed; fall back to them only when re-signing fails.
        try:
            signed_url, public_url = await issue_urls(
                self.storage, self.final_bucket, assembled.storage_path, self.signed_url_ttl_seconds
            )
        except StorageError as exc:
            log_event(
                {
                    "event": "replay_url_refresh_failed",
                    "upload_id": upload_id,
                    "detail": exc.message,
                    "error_class": "storage_warning",
                },
                level=logging.WARNING,
            )
            return assembled
        return replace(assembled, signed_url=signed_url, public_url=public_url)

    async def cleanup_staged_chunks(self, upload_id: str, keys: list[str] | None = None) -> bool:
        """Best-effort removal of a session's staged chunks. Returns False when anything was left behind."""
        try:
            deleted = await self._delete_staged(upload_id, keys)
        except CleanupError as exc:
            cleanup_failures_total.inc(max(1, len(exc.failed_keys)))
            log_event(
                {
                    "event": "cleanup_failed",
                    "upload_id": upload_id,
                    "failed_keys": exc.failed_keys,
                    "detail": exc.message,
                    "error_class": exc.error_code,
                },
                level=logging.WARNING,
            )
            return False
        log_event({"event": "cleanup_completed", "upload_id": upload_id, "deleted_keys": deleted})
        return True

    async def _delete_staged(self, upload_id: str, keys: list[str] | None) -> int:
        if keys is None:
            try:
                listed = await run_storage(
                    "list_objects", self.storage.list_objects, self.staging_bucket, staging_prefix(upload_id)
                )
            except Exception as exc:
                raise CleanupError(f"Failed to list staged chunks: {exc}", upload_id=upload_id) from exc
            keys = [obj.key for obj in listed]

        semaphore = asyncio.Semaphore(self.cleanup_concurrency)

        async def delete(key: str) -> None:
            async with semaphore:
                await run_storage("delete_object", self.storage.delete_object, self.staging_bucket, key)

        results = await asyncio.gather(*(delete(key) for key in keys), return_exceptions=True)
        failed = [key for key, result in zip(keys, results) if isinstance(result, BaseException)]
        deleted = len(keys) - len(failed)
        staged_chunks_deleted_total.inc(deleted)
        if failed:
            raise CleanupError(
                f"Failed to delete {len(failed)} staged chunk(s)", upload_id=upload_id, failed_keys=failed
            )
        return deleted
