"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.base import Base
from retention_engine.db.types import JSONType


class AuditEntry(Base):
    """
    Append-only retention compliance ledger.

    Records every policy/rule/hold mutation, file outcome and deletion request
    transition. Rows are never updated or deleted by the engine.

    Security:
    - Never stores file contents or personal metadata, IDs only
    - Hash chain makes tampering detectable
    - At most one FILE_DELETED/FILE_ANONYMIZED row per file (unique index)
    """

    __tablename__ = "retention_audit_log"
    __table_args__ = (
        Index("idx_retention_audit_created", "created_at"),
        Index("idx_retention_audit_event_created", "event_type", "created_at"),
        Index("idx_retention_audit_file", "file_id"),
        Index("idx_retention_audit_request", "deletion_request_id"),
        Index(
            "uq_retention_audit_terminal_file",
            "file_id",
            unique=True,
            postgresql_where=text("event_type IN ('FILE_DELETED', 'FILE_ANONYMIZED')"),
            sqlite_where=text("event_type IN ('FILE_DELETED', 'FILE_ANONYMIZED')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Event classification
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # AuditEventType

    # Subject (all optional, depending on event)
    file_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deletion_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    policy_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    hold_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # "system" for engine-initiated events
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")

    # Event details (IDs and counts only)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Tamper-evident hash chain
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex

    created_at: Mapped[datetime] = mapped_column(nullable=False)
