"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retention_engine.db.base import Base
from retention_engine.db.enums import DeletionAction, DeletionRequestStatus
from retention_engine.db.types import JSONType


class DeletionRequest(Base):
    """
    Durable unit of deletion/anonymization work.

    Status moves only along the state machine in services/deletion_request_service.py.
    claim_token is rotated on every claim; writes by an executor are guarded
    by the token so a reaped (stale) executor cannot touch the row.
    """

    __tablename__ = "deletion_requests"
    __table_args__ = (
        Index("idx_deletion_requests_pending", "status", "scheduled_at"),
        Index("idx_deletion_requests_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_type: Mapped[str] = mapped_column(String(30), nullable=False)  # DeletionRequestType
    action: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeletionAction.DELETE.value
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeletionRequestStatus.PENDING.value
    )
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)

    # Claim bookkeeping
    claim_token: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Result
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    files_deleted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)  # DeletionErrorKind
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provenance
    policy_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    hold_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    request_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    # Relationships
    targets: Mapped[list["DeletionRequestTarget"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
    )

    @property
    def file_ids(self) -> list[uuid.UUID]:
        return [target.file_id for target in self.targets]


class DeletionRequestTarget(Base):
    """
    One file targeted by a deletion request.

    is_open stays TRUE while the request is PENDING/PROCESSING, and through
    a storage failure that still has attempts left. The partial unique index
    below is what guarantees one open request per file.
    """

    __tablename__ = "deletion_request_targets"
    __table_args__ = (
        Index("idx_deletion_targets_request", "request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deletion_requests.id", ondelete="CASCADE"), nullable=False
    )
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Relationships
    request: Mapped["DeletionRequest"] = relationship(back_populates="targets")


Index(
    "uq_deletion_target_open_file",
    DeletionRequestTarget.file_id,
    unique=True,
    postgresql_where=text("is_open"),
    sqlite_where=text("is_open = 1"),
)
