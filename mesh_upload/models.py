import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mesh_upload.db import Base


class SessionStatus(str, enum.Enum):
    initiated = "INITIATED"
    assembling = "ASSEMBLING"
    assembled = "ASSEMBLED"
    cleaned_up = "CLEANED_UP"
    failed = "FAILED"
    expired = "EXPIRED"


ACCEPTING_CHUNKS = (SessionStatus.initiated.value, SessionStatus.failed.value)
FINISHED = (SessionStatus.assembled.value, SessionStatus.cleaned_up.value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (Index("idx_upload_sessions_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False, default="application/octet-stream")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SessionStatus.initiated.value)
    storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    public_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    assembled_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
