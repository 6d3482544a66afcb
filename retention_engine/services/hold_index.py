"""Legal hold index - answers "is this file under legal hold right now?".

Every lookup reads the store; nothing is cached between calls so the
executor's pre-delete re-check always sees holds created a moment ago.
HoldSnapshot is the batch-scan variant used by the scheduler only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from retention_engine.db.enums import HoldScopeKind
from retention_engine.db.models import FileMetadata, LegalHold

logger = logging.getLogger(__name__)


# =============================================================================
# Hold scope
# =============================================================================

class _Scope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AllOfType(_Scope):
    kind: Literal["all_of_type"] = HoldScopeKind.ALL_OF_TYPE.value
    entity_type: str = Field(min_length=1)

    def covers(self, entity_type: str, entity_id: str, file_id: UUID) -> bool:
        return entity_type == self.entity_type


class SpecificEntities(_Scope):
    kind: Literal["specific_entities"] = HoldScopeKind.SPECIFIC_ENTITIES.value
    entity_type: str = Field(min_length=1)
    entity_ids: list[str] = Field(min_length=1)

    def covers(self, entity_type: str, entity_id: str, file_id: UUID) -> bool:
        return entity_type == self.entity_type and str(entity_id) in self.entity_ids


class SpecificFiles(_Scope):
    kind: Literal["specific_files"] = HoldScopeKind.SPECIFIC_FILES.value
    file_ids: list[UUID] = Field(min_length=1)

    def covers(self, entity_type: str, entity_id: str, file_id: UUID) -> bool:
        return file_id in self.file_ids


HoldScope = Annotated[
    Union[AllOfType, SpecificEntities, SpecificFiles],
    Field(discriminator="kind"),
]

_scope_adapter: TypeAdapter[HoldScope] = TypeAdapter(HoldScope)


def parse_scope(raw: dict) -> HoldScope:
    """Validate a scope payload. Raises pydantic ValidationError."""
    return _scope_adapter.validate_python(raw)


def scope_of(hold: LegalHold) -> HoldScope | None:
    """Parsed scope of a stored hold; None (covers nothing) if the row is corrupt."""
    try:
        return parse_scope(hold.scope)
    except ValidationError:
        logger.error(
            "Legal hold has an invalid scope; treating it as covering nothing",
            extra={"hold_id": str(hold.id)},
        )
        return None


# =============================================================================
# Store queries
# =============================================================================

def _in_force_clause(as_of: datetime):
    return and_(
        LegalHold.is_active.is_(True),
        or_(LegalHold.expires_at.is_(None), LegalHold.expires_at > as_of),
    )


def active_holds(db: Session, as_of: datetime) -> list[LegalHold]:
    """Active holds not expired as of ``as_of``."""
    return list(
        db.execute(
            select(LegalHold)
            .where(_in_force_clause(as_of))
            .order_by(LegalHold.created_at, LegalHold.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
    )


def holds_for(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    file_id: UUID,
    as_of: datetime,
) -> list[LegalHold]:
    """Every in-force hold covering the file."""
    covering: list[LegalHold] = []
    for hold in active_holds(db, as_of):
        scope = scope_of(hold)
        if scope is not None and scope.covers(entity_type, entity_id, file_id):
            covering.append(hold)
    return covering


def is_held(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    file_id: UUID,
    as_of: datetime,
) -> bool:
    return bool(
        holds_for(db, entity_type=entity_type, entity_id=entity_id, file_id=file_id, as_of=as_of)
    )


def holds_for_file(db: Session, file: FileMetadata, as_of: datetime) -> list[LegalHold]:
    return holds_for(
        db,
        entity_type=file.entity_type,
        entity_id=file.entity_id,
        file_id=file.id,
        as_of=as_of,
    )


def files_covered_by(db: Session, hold: LegalHold) -> list[FileMetadata]:
    """Files in the hold's scope, regardless of whether the hold is still active."""
    scope = scope_of(hold)
    if scope is None:
        return []
    query = select(FileMetadata)
    if isinstance(scope, AllOfType):
        query = query.where(FileMetadata.entity_type == scope.entity_type)
    elif isinstance(scope, SpecificEntities):
        query = query.where(
            FileMetadata.entity_type == scope.entity_type,
            FileMetadata.entity_id.in_(scope.entity_ids),
        )
    else:
        query = query.where(FileMetadata.id.in_(scope.file_ids))
    return list(db.execute(query.order_by(FileMetadata.created_at, FileMetadata.id)).scalars().all())


# =============================================================================
# Snapshot for batch scans
# =============================================================================

@dataclass(frozen=True)
class _SnapshotEntry:
    hold_id: UUID
    name: str
    scope: HoldScope


class HoldSnapshot:
    """
    In-memory view of in-force holds at one instant.

    A hold created after the snapshot is missed here; the executor's fresh
    re-check catches it before anything is deleted.
    """

    def __init__(self, as_of: datetime, entries: list[_SnapshotEntry]):
        self.as_of = as_of
        self._entries = entries

    def holds_for(self, entity_type: str, entity_id: str, file_id: UUID) -> list[tuple[UUID, str]]:
        return [
            (entry.hold_id, entry.name)
            for entry in self._entries
            if entry.scope.covers(entity_type, entity_id, file_id)
        ]

    def is_held(self, entity_type: str, entity_id: str, file_id: UUID) -> bool:
        return bool(self.holds_for(entity_type, entity_id, file_id))


def snapshot(db: Session, as_of: datetime) -> HoldSnapshot:
    entries = []
    for hold in active_holds(db, as_of):
        scope = scope_of(hold)
        if scope is not None:
            entries.append(_SnapshotEntry(hold_id=hold.id, name=hold.name, scope=scope))
    return HoldSnapshot(as_of, entries)
