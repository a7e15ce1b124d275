import asyncio
import logging
import os
import time
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import quote

import jwt
from botocore.exceptions import ClientError

from mesh_upload.config import Settings, settings
from mesh_upload.events import log_event
from mesh_upload.metrics import storage_latency_seconds

MIN_MULTIPART_PART_SIZE = 5 * 1024 * 1024
# SigV4 presigned URLs are rejected by S3 and R2 beyond seven days.
MAX_PRESIGN_SECONDS = 7 * 24 * 3600
URL_TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime | None = None

    @property
    def name(self) -> str:
        return self.key.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class StorageWriteResult:
    key: str
    size: int
    etag: str | None = None


def as_bytes(payload) -> bytes:
    """Normalize whatever an SDK hands back for an object body into ``bytes``."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        raise TypeError("object payload must be binary, got str")
    if hasattr(payload, "read"):
        return as_bytes(payload.read())
    try:
        parts = iter(payload)
    except TypeError:
        raise TypeError(f"unsupported object payload type: {type(payload).__name__}") from None
    return b"".join(as_bytes(part) for part in parts)


def sign_object_token(bucket: str, key: str, expires_in: int, secret: str) -> str:
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return jwt.encode({"bkt": bucket, "key": key, "exp": expires_at}, secret, algorithm=URL_TOKEN_ALGORITHM)


def verify_object_token(token: str, bucket: str, key: str, secret: str) -> bool:
    try:
        claims = jwt.decode(token, secret, algorithms=[URL_TOKEN_ALGORITHM])
    except jwt.InvalidTokenError:
        return False
    return claims.get("bkt") == bucket and claims.get("key") == key


class ObjectWriter:
    """Streaming write of one object. Nothing is visible under the key until ``commit``."""

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def commit(self) -> StorageWriteResult:
        raise NotImplementedError

    def abort(self) -> None:
        raise NotImplementedError


class ObjectStorage:
    def ensure_bucket(self, bucket: str) -> None:
        raise NotImplementedError

    def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        raise NotImplementedError

    def head_object(self, bucket: str, key: str) -> StoredObject:
        raise NotImplementedError

    def get_object(self, bucket: str, key: str) -> bytes:
        raise NotImplementedError

    def iter_object(
        self, bucket: str, key: str, start: int = 0, end: int | None = None, block_size: int = 1024 * 1024
    ) -> Iterator[bytes]:
        raise NotImplementedError

    def put_object(
        self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StorageWriteResult:
        raise NotImplementedError

    def open_writer(self, bucket: str, key: str, content_type: str = "application/octet-stream") -> ObjectWriter:
        raise NotImplementedError

    def delete_object(self, bucket: str, key: str) -> None:
        raise NotImplementedError

    def signed_url(self, bucket: str, key: str, expires_in: int) -> str:
        raise NotImplementedError

    def public_url(self, bucket: str, key: str) -> str:
        raise NotImplementedError


class LocalObjectWriter(ObjectWriter):
    def __init__(self, temp_path: Path, final_path: Path, key: str) -> None:
        self.temp_path = temp_path
        self.final_path = final_path
        self.key = key
        self.size = 0
        self.temp_path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.temp_path, "wb")

    def write(self, data: bytes) -> None:
        self._handle.write(data)
        self.size += len(data)

    def commit(self) -> StorageWriteResult:
        self._handle.close()
        self.final_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(self.temp_path, self.final_path)
        return StorageWriteResult(key=self.key, size=self.size)

    def abort(self) -> None:
        self._handle.close()
        self.temp_path.unlink(missing_ok=True)


class LocalObjectStorage(ObjectStorage):
    """Buckets are directories under ``root``; URLs point back at this service's ``/files`` route."""

    def __init__(self, root: str, base_url: str, signing_secret: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.signing_secret = signing_secret

    def _bucket_root(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or bucket.startswith("."):
            raise ValueError(f"invalid bucket name: {bucket!r}")
        return self.root / bucket

    def _path(self, bucket: str, key: str) -> Path:
        bucket_root = self._bucket_root(bucket)
        target = (bucket_root / key).resolve()
        if not target.is_relative_to(bucket_root.resolve()) or target == bucket_root.resolve():
            raise ValueError(f"invalid object key: {key!r}")
        return target

    def ensure_bucket(self, bucket: str) -> None:
        self._bucket_root(bucket).mkdir(parents=True, exist_ok=True)

    def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        bucket_root = self._bucket_root(bucket)
        base = bucket_root / prefix.rsplit("/", 1)[0] if "/" in prefix else bucket_root
        if not base.exists():
            return []
        objects: list[StoredObject] = []
        for path in base.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(bucket_root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(
                StoredObject(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return objects

    def head_object(self, bucket: str, key: str) -> StoredObject:
        path = self._path(bucket, key)
        stat = path.stat()
        return StoredObject(key=key, size=stat.st_size, last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc))

    def get_object(self, bucket: str, key: str) -> bytes:
        return self._path(bucket, key).read_bytes()

    def iter_object(
        self, bucket: str, key: str, start: int = 0, end: int | None = None, block_size: int = 1024 * 1024
    ) -> Iterator[bytes]:
        path = self._path(bucket, key)
        last = path.stat().st_size - 1 if end is None else end
        with open(path, "rb") as handle:
            handle.seek(start)
            remaining = last - start + 1
            while remaining > 0:
                block = handle.read(min(block_size, remaining))
                if not block:
                    break
                remaining -= len(block)
                yield block

    def put_object(
        self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StorageWriteResult:
        writer = self.open_writer(bucket, key, content_type)
        try:
            writer.write(data)
        except Exception:
            writer.abort()
            raise
        return writer.commit()

    def open_writer(self, bucket: str, key: str, content_type: str = "application/octet-stream") -> ObjectWriter:
        final_path = self._path(bucket, key)
        temp_path = self.root / ".tmp" / f"{uuid.uuid4().hex}.part"
        return LocalObjectWriter(temp_path, final_path, key)

    def delete_object(self, bucket: str, key: str) -> None:
        self._path(bucket, key).unlink(missing_ok=True)

    def signed_url(self, bucket: str, key: str, expires_in: int) -> str:
        token = sign_object_token(bucket, key, expires_in, self.signing_secret)
        return f"{self.public_url(bucket, key)}?token={token}"

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/files/{bucket}/{quote(key)}"


class S3ObjectWriter(ObjectWriter):
    """Buffers up to one part in memory and spills to a multipart upload once a part fills."""

    def __init__(self, client, bucket: str, key: str, content_type: str, part_size: int) -> None:
        self.client = client
        self.bucket = bucket
        self.key = key
        self.content_type = content_type
        self.part_size = max(part_size, MIN_MULTIPART_PART_SIZE)
        self.size = 0
        self._buffer = bytearray()
        self._multipart_upload_id: str | None = None
        self._parts: list[dict] = []

    def _upload_part(self, data: bytes) -> None:
        if self._multipart_upload_id is None:
            result = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=self.key, ContentType=self.content_type
            )
            self._multipart_upload_id = result["UploadId"]
        part_number = len(self._parts) + 1
        result = self.client.upload_part(
            Bucket=self.bucket,
            Key=self.key,
            PartNumber=part_number,
            UploadId=self._multipart_upload_id,
            Body=data,
        )
        self._parts.append({"PartNumber": part_number, "ETag": result.get("ETag")})

    def write(self, data: bytes) -> None:
        self._buffer.extend(data)
        self.size += len(data)
        while len(self._buffer) >= self.part_size:
            part = bytes(self._buffer[: self.part_size])
            del self._buffer[: self.part_size]
            self._upload_part(part)

    def commit(self) -> StorageWriteResult:
        if self._multipart_upload_id is None:
            result = self.client.put_object(
                Bucket=self.bucket, Key=self.key, Body=bytes(self._buffer), ContentType=self.content_type
            )
            self._buffer.clear()
            return StorageWriteResult(key=self.key, size=self.size, etag=result.get("ETag"))

        if self._buffer:
            self._upload_part(bytes(self._buffer))
            self._buffer.clear()
        result = self.client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self._multipart_upload_id,
            MultipartUpload={"Parts": self._parts},
        )
        return StorageWriteResult(key=self.key, size=self.size, etag=result.get("ETag"))

    def abort(self) -> None:
        self._buffer.clear()
        if self._multipart_upload_id is not None:
            self.client.abort_multipart_upload(
                Bucket=self.bucket, Key=self.key, UploadId=self._multipart_upload_id
            )
            self._multipart_upload_id = None


class S3ObjectStorage(ObjectStorage):
    def __init__(
        self,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        public_base_url: str | None = None,
        part_size: int = MIN_MULTIPART_PART_SIZE,
    ) -> None:
        import boto3

        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.part_size = part_size
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def ensure_bucket(self, bucket: str) -> None:
        try:
            self.client.head_bucket(Bucket=bucket)
            return
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise

        params: dict = {"Bucket": bucket}
        if self.region not in ("us-east-1", "auto") and not self.endpoint_url:
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.client.create_bucket(**params)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise

    def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        objects: list[StoredObject] = []
        continuation_token = None
        while True:
            params = {"Bucket": bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    objects.append(
                        StoredObject(key=key, size=int(item.get("Size", 0)), last_modified=item.get("LastModified"))
                    )
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return objects

    def head_object(self, bucket: str, key: str) -> StoredObject:
        try:
            result = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                raise FileNotFoundError(f"{bucket}/{key}") from exc
            raise
        return StoredObject(key=key, size=int(result.get("ContentLength", 0)), last_modified=result.get("LastModified"))

    def get_object(self, bucket: str, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                raise FileNotFoundError(f"{bucket}/{key}") from exc
            raise
        return as_bytes(obj["Body"])

    def iter_object(
        self, bucket: str, key: str, start: int = 0, end: int | None = None, block_size: int = 1024 * 1024
    ) -> Iterator[bytes]:
        byte_range = f"bytes={start}-{'' if end is None else end}"
        obj = self.client.get_object(Bucket=bucket, Key=key, Range=byte_range)
        yield from obj["Body"].iter_chunks(chunk_size=block_size)

    def put_object(
        self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StorageWriteResult:
        result = self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        return StorageWriteResult(key=key, size=len(data), etag=result.get("ETag"))

    def open_writer(self, bucket: str, key: str, content_type: str = "application/octet-stream") -> ObjectWriter:
        return S3ObjectWriter(self.client, bucket, key, content_type, self.part_size)

    def delete_object(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)

    def signed_url(self, bucket: str, key: str, expires_in: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=min(expires_in, MAX_PRESIGN_SECONDS),
        )

    def public_url(self, bucket: str, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{quote(key)}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{bucket}/{quote(key)}"
        return f"https://{bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"


def build_storage(config: Settings = settings) -> ObjectStorage:
    backend = config.storage_backend.lower()
    if backend == "local":
        return LocalObjectStorage(config.storage_root, config.public_base_url, config.url_signing_secret)
    if backend == "s3":
        return S3ObjectStorage(
            region=config.aws_region,
            endpoint_url=config.s3_endpoint_url or None,
            public_base_url=config.object_public_base_url or None,
            part_size=config.multipart_part_size_bytes,
        )
    if backend == "r2":
        endpoint_url = config.r2_endpoint_url
        if not endpoint_url:
            if not config.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{config.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectStorage(
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=config.r2_access_key_id or None,
            secret_access_key=config.r2_secret_access_key or None,
            public_base_url=config.object_public_base_url or None,
            part_size=config.multipart_part_size_bytes,
        )
    raise ValueError(f"unsupported storage backend: {config.storage_backend}")


async def run_storage(operation: str, fn, *args, **kwargs):
    """Run a blocking storage call off the event loop and record its latency."""
    start = time.perf_counter()
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    finally:
        storage_latency_seconds.labels(operation=operation).observe(time.perf_counter() - start)


async def ensure_bucket_quietly(storage: ObjectStorage, bucket: str, upload_id: str | None = None) -> None:
    """Create-if-absent; a failed check is logged and the caller's write goes ahead anyway."""
    try:
        await run_storage("ensure_bucket", storage.ensure_bucket, bucket)
    except Exception as exc:
        log_event(
            {
                "event": "bucket_check_failed",
                "bucket": bucket,
                "upload_id": upload_id,
                "detail": str(exc),
                "error_class": "storage_warning",
            },
            level=logging.WARNING,
        )
