import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from drive_service.db import Base

DEFAULT_MIME_TYPE = "application/octet-stream"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_storage_prefix() -> str:
    return f"users/{uuid.uuid4()}"


class Owner(Base):
    """Quota ledger row for one owning identity."""

    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    storage_prefix: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, default=new_storage_prefix)
    storage_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    storage_reserved: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    storage_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    files: Mapped[list["StoredFile"]] = relationship(back_populates="owner", cascade="all, delete-orphan")


class StoredFile(Base):
    __tablename__ = "stored_files"
    __table_args__ = (
        Index("idx_stored_files_owner_folder", "owner_id", "folder_id", "is_deleted"),
        Index("idx_stored_files_owner_accessed", "owner_id", "last_accessed_at"),
        Index("idx_stored_files_remote_key", "remote_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(128), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    remote_key: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False, default=DEFAULT_MIME_TYPE)
    folder_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    owner: Mapped[Owner] = relationship(back_populates="files")
