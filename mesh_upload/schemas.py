from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UPLOAD_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadRequest(CamelModel):
    file_name: str = Field(min_length=1)
    total_chunks: int = Field(ge=1)
    file_size: int | None = Field(default=None, ge=0)
    checksum: str | None = None
    content_type: str = "application/octet-stream"
    upload_id: str | None = Field(default=None, min_length=1, max_length=128, pattern=UPLOAD_ID_PATTERN)


class InitUploadResponse(CamelModel):
    success: bool = True
    upload_id: str
    expires_at: int
    message: str


class UploadChunkRequest(CamelModel):
    upload_id: str = Field(min_length=1, max_length=128, pattern=UPLOAD_ID_PATTERN)
    chunk_index: int = Field(ge=0)
    total_chunks: int | None = Field(default=None, ge=1)
    chunk_data: str = Field(min_length=1)
    file_name: str | None = None


class UploadChunkResponse(CamelModel):
    success: bool = True
    chunk_index: int
    upload_id: str
    message: str


class CompleteUploadRequest(CamelModel):
    upload_id: str = Field(min_length=1, max_length=128, pattern=UPLOAD_ID_PATTERN)
    file_name: str = Field(min_length=1)
    total_chunks: int = Field(ge=1)
    checksum: str | None = None


class StoredFileResponse(CamelModel):
    success: bool = True
    url: str
    public_url: str
    path: str
    file_name: str
    file_size: int
    message: str | None = None


class DirectUploadRequest(CamelModel):
    file_name: str = Field(min_length=1)
    file_data: str = Field(min_length=1)
    file_type: str = "application/octet-stream"


class UploadStatusResponse(CamelModel):
    upload_id: str
    status: str
    file_name: str
    total_chunks: int
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]
    path: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
