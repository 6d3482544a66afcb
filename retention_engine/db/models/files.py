"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.base import Base
from retention_engine.db.enums import AccessLevel, FileStatus
from retention_engine.db.types import JSONType


class FileMetadata(Base):
    """
    Stored file, owned by the upload subsystem.

    The retention engine reads these rows and only ever writes the terminal
    status (DELETED/ANONYMIZED) plus the anonymization scrub.
    """

    __tablename__ = "file_metadata"
    __table_args__ = (
        Index("idx_files_scope_status", "entity_type", "jurisdiction", "status", "created_at"),
        Index("idx_files_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Owning entity
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    jurisdiction: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Storage location (opaque to the engine, passed to the storage backend)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)

    original_name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    uploaded_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccessLevel.PRIVATE.value
    )
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    custom_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FileStatus.READY.value)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in FileStatus.terminal()}
