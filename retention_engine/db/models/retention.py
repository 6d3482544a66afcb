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
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from retention_engine.db.base import Base
from retention_engine.db.types import JSONType


class RetentionPolicy(Base):
    """
    Retention policy for one (entity type, jurisdiction) scope.

    jurisdiction=NULL is the fallback default for the entity type.
    retention_period_days=0 means files expire immediately.
    """

    __tablename__ = "retention_policies"
    __table_args__ = (
        Index("idx_retention_policy_lookup", "entity_type", "jurisdiction", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    jurisdiction: Mapped[str | None] = mapped_column(String(20), nullable=True)
    retention_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    legal_basis: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    # Relationships
    rules: Mapped[list["RetentionRule"]] = relationship(
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="RetentionRule.priority.desc()",
    )


# At most one active policy per (entity type, jurisdiction); NULL jurisdictions
# collapse to '' so only one active default can exist.
Index(
    "uq_retention_policy_active_scope",
    RetentionPolicy.entity_type,
    func.coalesce(RetentionPolicy.jurisdiction, ""),
    unique=True,
    postgresql_where=text("is_active"),
    sqlite_where=text("is_active = 1"),
)


class RetentionRule(Base):
    """
    Prioritized rule on a retention policy.

    condition holds a validated predicate AST (see core/conditions.py).
    Higher priority wins; the first matching active rule decides.
    """

    __tablename__ = "retention_rules"
    __table_args__ = (
        Index("idx_retention_rules_policy_active", "policy_id", "is_active", "priority"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("retention_policies.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    condition: Mapped[dict] = mapped_column(JSONType, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # RuleAction
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Overrides the policy window when set (required for EXTEND)
    retention_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    # Relationships
    policy: Mapped["RetentionPolicy"] = relationship(back_populates="rules")


class LegalHold(Base):
    """
    Legal hold suspending deletion for the files in its scope.

    scope is a HoldScope tagged variant (all_of_type | specific_entities |
    specific_files); scope_kind mirrors its tag for filtering.
    """

    __tablename__ = "legal_holds"
    __table_args__ = (
        Index("idx_legal_holds_active", "is_active", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope_kind: Mapped[str] = mapped_column(String(30), nullable=False)  # HoldScopeKind
    scope: Mapped[dict] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    released_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
