class UploadError(Exception):
    """Base class for failures surfaced to upload clients.

    ``status_code`` and ``error_code`` drive the JSON error response built in
    ``mesh_upload.main``.
    """

    status_code = 500
    error_code = "upload_error"

    def __init__(self, message: str, upload_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.upload_id = upload_id


class ValidationError(UploadError):
    status_code = 400
    error_code = "validation_error"


class ChunkMismatchError(UploadError):
    status_code = 400
    error_code = "chunk_mismatch"

    def __init__(
        self,
        message: str,
        upload_id: str | None = None,
        expected: int | None = None,
        found: int | None = None,
        missing: list[int] | None = None,
    ) -> None:
        super().__init__(message, upload_id=upload_id)
        self.expected = expected
        self.found = found
        self.missing = missing or []


class ChecksumMismatchError(UploadError):
    status_code = 400
    error_code = "checksum_mismatch"


class CompletionConflictError(UploadError):
    status_code = 409
    error_code = "conflict"


class SessionExpiredError(UploadError):
    status_code = 410
    error_code = "session_expired"


class StorageError(UploadError):
    status_code = 500
    error_code = "storage_error"


class AssemblyError(UploadError):
    status_code = 500
    error_code = "assembly_error"

    def __init__(self, message: str, upload_id: str | None = None, chunk_index: int | None = None) -> None:
        super().__init__(message, upload_id=upload_id)
        self.chunk_index = chunk_index


class CleanupError(UploadError):
    """Staged chunk deletion failed. Logged, never returned to a client."""

    error_code = "cleanup_error"

    def __init__(self, message: str, upload_id: str | None = None, failed_keys: list[str] | None = None) -> None:
        super().__init__(message, upload_id=upload_id)
        self.failed_keys = failed_keys or []
