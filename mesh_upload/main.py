import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from mesh_upload.assembly import AssemblyEngine
from mesh_upload.chunks import receive_chunk
from mesh_upload.config import settings
from mesh_upload.db import SessionLocal, create_schema, get_db
from mesh_upload.direct import store_direct_upload
from mesh_upload.errors import StorageError, UploadError
from mesh_upload.events import audit_event, log_event, trace_id
from mesh_upload.keys import parse_chunk_index, staging_prefix
from mesh_upload.maintenance import reap_expired_sessions
from mesh_upload.metrics import http_request_duration_seconds, metrics_response, sessions_initiated_total
from mesh_upload.models import UploadSession
from mesh_upload.schemas import (
    CompleteUploadRequest,
    DirectUploadRequest,
    ErrorResponse,
    InitUploadRequest,
    InitUploadResponse,
    StoredFileResponse,
    UploadChunkRequest,
    UploadChunkResponse,
    UploadStatusResponse,
)
from mesh_upload.sessions import initiate_upload, mark_cleaned_up
from mesh_upload.storage import ObjectStorage, build_storage, run_storage, verify_object_token
from mesh_upload.tracing import setup_tracing

UPLOAD_ROUTES = ("/upload-init", "/upload-chunk", "/upload-complete", "/upload-to-storage")
CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database_auto_create:
        create_schema()
    storage = build_storage(settings)
    app.state.storage = storage
    app.state.assembly_engine = AssemblyEngine(
        storage,
        staging_bucket=settings.staging_bucket,
        final_bucket=settings.final_bucket,
        fetch_concurrency=settings.assembly_fetch_concurrency,
        cleanup_concurrency=settings.cleanup_concurrency,
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
    )

    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    def _reap_once() -> None:
        with SessionLocal() as db:
            reap_expired_sessions(db, storage)

    async def _periodic_reaper_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(_reap_once)
            except Exception as exc:
                log_event(
                    {"event": "reaper_error", "detail": str(exc), "error_class": "maintenance_error"},
                    level=logging.ERROR,
                )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.reaper_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.reaper_enabled:
        tasks.append(asyncio.create_task(_periodic_reaper_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
setup_tracing(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Range", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-App-Version", "Content-Range"],
)


def get_storage(request: Request) -> ObjectStorage:
    return request.app.state.storage


def get_assembly_engine(request: Request) -> AssemblyEngine:
    return request.app.state.assembly_engine


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        413: "payload_too_large",
        416: "range_not_satisfiable",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    error_code: str,
    upload_id: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_code,
            "detail": message,
        },
        level=logging.WARNING if status_code < 500 else logging.ERROR,
    )
    body = ErrorResponse(
        error=message,
        error_code=error_code,
        request_id=_request_id(request),
        upload_id=upload_id,
        trace_id=trace_id(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    413: {"model": ErrorResponse, "description": "Request body too large"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_request_body_bytes:
        response = _error_response(
            request,
            413,
            f"Request body exceeds {settings.max_request_body_bytes} bytes",
            _error_code_for_status(413),
        )
    else:
        response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    return _error_response(
        request, exc.status_code, exc.message, exc.error_code, upload_id=exc.upload_id or _upload_id(request)
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    missing: list[str] = []
    problems: list[str] = []
    for error in exc.errors():
        field = str(error["loc"][-1]) if error.get("loc") else "body"
        if error.get("type") == "missing":
            missing.append(field)
        elif error.get("type") == "json_invalid":
            problems.append("request body is not valid JSON")
        else:
            problems.append(f"{field}: {error.get('msg')}")
    if missing:
        message = f"Missing required fields: {', '.join(missing)}"
    else:
        message = f"Invalid request: {'; '.join(problems) or 'malformed body'}"
    return _error_response(request, 400, message, "validation_error", upload_id=_upload_id(request))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = str(exc.detail)
    if exc.status_code == 405:
        allowed = (exc.headers or {}).get("Allow", "POST")
        message = f"Method not allowed. Use {allowed}."
    return _error_response(
        request,
        exc.status_code,
        message,
        _error_code_for_status(exc.status_code),
        upload_id=_upload_id(request),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        {
            "event": "unhandled_exception",
            "request_id": _request_id(request),
            "exception_type": type(exc).__name__,
            "detail": str(exc),
        },
        level=logging.ERROR,
    )
    return _error_response(request, 500, "internal server error", "internal_error", upload_id=_upload_id(request))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


def _preflight() -> Response:
    return Response(status_code=200, headers=CORS_PREFLIGHT_HEADERS)


@app.post(
    "/upload-init",
    response_model=InitUploadResponse,
    responses={**COMMON_ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Session already assembling"}},
)
def upload_init(
    request: Request,
    payload: InitUploadRequest,
    db: Session = Depends(get_db),
) -> InitUploadResponse:
    session, expires_at = initiate_upload(db, payload)
    sessions_initiated_total.inc()
    log_event(
        {
            "event": "upload_initiated",
            "upload_id": session.id,
            "file_name": session.file_name,
            "total_chunks": session.total_chunks,
            "file_size": session.file_size,
        }
    )
    audit_event(
        {
            "event": "audit",
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": session.id,
            "status": session.status,
            "total_chunks": session.total_chunks,
            "file_size": session.file_size,
        }
    )
    return InitUploadResponse(
        upload_id=session.id,
        expires_at=int(expires_at.timestamp() * 1000),
        message="Upload initialized successfully",
    )


@app.post(
    "/upload-chunk",
    response_model=UploadChunkResponse,
    responses={**COMMON_ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Session not accepting chunks"}},
)
async def upload_chunk(
    payload: UploadChunkRequest,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
) -> UploadChunkResponse:
    record = await receive_chunk(db, storage, payload, settings.staging_bucket)
    progress = f"{record.index + 1}/{payload.total_chunks}" if payload.total_chunks else f"{record.index + 1}"
    return UploadChunkResponse(
        upload_id=record.upload_id,
        chunk_index=record.index,
        message=f"Chunk {progress} uploaded successfully",
    )


async def _cleanup_after_completion(engine: AssemblyEngine, upload_id: str, keys: list[str] | None) -> None:
    if not await engine.cleanup_staged_chunks(upload_id, keys):
        return
    try:
        with SessionLocal() as db:
            mark_cleaned_up(db, upload_id)
    except SQLAlchemyError as exc:
        log_event(
            {"event": "cleanup_status_failed", "upload_id": upload_id, "detail": str(exc), "error_class": "db_error"},
            level=logging.WARNING,
        )


@app.post(
    "/upload-complete",
    response_model=StoredFileResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        409: {"model": ErrorResponse, "description": "Completion already in progress"},
        410: {"model": ErrorResponse, "description": "Upload session expired"},
    },
)
async def upload_complete(
    request: Request,
    payload: CompleteUploadRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    engine: AssemblyEngine = Depends(get_assembly_engine),
) -> StoredFileResponse:
    outcome = await engine.complete(db, payload)
    if outcome.needs_cleanup:
        background_tasks.add_task(_cleanup_after_completion, engine, payload.upload_id, outcome.staged_keys)

    assembled = outcome.assembled
    audit_event(
        {
            "event": "audit",
            "action": "upload_complete",
            "request_id": _request_id(request),
            "upload_id": payload.upload_id,
            "path": assembled.storage_path,
            "file_size": assembled.file_size,
            "idempotent_replay": outcome.replayed,
        }
    )
    return StoredFileResponse(
        url=assembled.signed_url,
        public_url=assembled.public_url,
        path=assembled.storage_path,
        file_name=assembled.file_name,
        file_size=assembled.file_size,
        message="File assembled and uploaded successfully",
    )


@app.post("/upload-to-storage", response_model=StoredFileResponse, responses={**COMMON_ERROR_RESPONSES})
async def upload_to_storage(
    request: Request,
    payload: DirectUploadRequest,
    storage: ObjectStorage = Depends(get_storage),
) -> StoredFileResponse:
    assembled = await store_direct_upload(storage, payload, settings.final_bucket, settings.signed_url_ttl_seconds)
    audit_event(
        {
            "event": "audit",
            "action": "direct_upload",
            "request_id": _request_id(request),
            "path": assembled.storage_path,
            "file_size": assembled.file_size,
        }
    )
    return StoredFileResponse(
        url=assembled.signed_url,
        public_url=assembled.public_url,
        path=assembled.storage_path,
        file_name=assembled.file_name,
        file_size=assembled.file_size,
    )


@app.get(
    "/upload-status/{upload_id}",
    response_model=UploadStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
async def upload_status(
    upload_id: str,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
) -> UploadStatusResponse:
    session = db.get(UploadSession, upload_id)
    if session is None:
        raise HTTPException(status_code=404, detail="upload not found")
    try:
        staged = await run_storage(
            "list_objects", storage.list_objects, settings.staging_bucket, staging_prefix(upload_id)
        )
    except Exception as exc:
        raise StorageError(f"Failed to list chunks: {exc}", upload_id=upload_id) from exc

    received = sorted(
        {
            index
            for index in (parse_chunk_index(obj.name) for obj in staged)
            if index is not None and index < session.total_chunks
        }
    )
    received_set = set(received)
    missing = [idx for idx in range(session.total_chunks) if idx not in received_set]
    return UploadStatusResponse(
        upload_id=session.id,
        status=session.status,
        file_name=session.file_name,
        total_chunks=session.total_chunks,
        received_chunk_indexes=received,
        missing_chunk_indexes=missing,
        path=session.storage_path,
    )


def _parse_range(range_header: str, file_size: int) -> tuple[int, int]:
    if not range_header.startswith("bytes="):
        raise HTTPException(status_code=416, detail="invalid range header")
    parts = range_header.removeprefix("bytes=").split("-", 1)
    if len(parts) != 2 or "," in range_header:
        raise HTTPException(status_code=416, detail="invalid range format")

    try:
        if parts[0]:
            start = int(parts[0])
            end = int(parts[1]) if parts[1] else file_size - 1
        else:
            # Suffix form: the last N bytes.
            start = max(0, file_size - int(parts[1]))
            end = file_size - 1
    except ValueError:
        raise HTTPException(status_code=416, detail="invalid range format") from None
    end = min(end, file_size - 1)
    if start < 0 or end < start or start >= file_size:
        raise HTTPException(
            status_code=416, detail="range out of bounds", headers={"Content-Range": f"bytes */{file_size}"}
        )
    return start, end


def _can_read(bucket: str, key: str, token: str | None) -> bool:
    if token:
        return verify_object_token(token, bucket, key, settings.url_signing_secret)
    return settings.final_bucket_public and bucket == settings.final_bucket


@app.get(
    "/files/{bucket}/{key:path}",
    responses={
        403: {"model": ErrorResponse, "description": "Missing or invalid token"},
        404: {"model": ErrorResponse, "description": "Object not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
async def serve_object(
    bucket: str,
    key: str,
    token: str | None = Query(default=None),
    range: str | None = Header(default=None),
    storage: ObjectStorage = Depends(get_storage),
) -> Response:
    if not _can_read(bucket, key, token):
        raise HTTPException(status_code=403, detail="invalid or expired token")
    try:
        obj = await run_storage("head_object", storage.head_object, bucket, key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="object not found") from None

    if obj.size == 0:
        return Response(content=b"", media_type="application/octet-stream", headers={"Accept-Ranges": "bytes"})

    headers = {"Accept-Ranges": "bytes"}
    if range:
        start, end = _parse_range(range, obj.size)
        headers["Content-Range"] = f"bytes {start}-{end}/{obj.size}"
        headers["Content-Length"] = str(end - start + 1)
        return StreamingResponse(
            storage.iter_object(bucket, key, start, end),
            status_code=206,
            media_type="application/octet-stream",
            headers=headers,
        )

    headers["Content-Length"] = str(obj.size)
    return StreamingResponse(
        storage.iter_object(bucket, key),
        media_type="application/octet-stream",
        headers=headers,
    )


# Registered after the POST handlers so a 405 names POST in its Allow header.
for _path in UPLOAD_ROUTES:
    app.add_api_route(_path, _preflight, methods=["OPTIONS"], include_in_schema=False)
