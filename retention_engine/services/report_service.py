"""Retention reporting - period compliance report and per-file retention audit."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock, system_clock
from retention_engine.core.errors import NotFoundError
from retention_engine.db.enums import (
    AuditEventType,
    DecisionKind,
    DeletionRequestStatus,
    FileStatus,
)
from retention_engine.db.models import (
    AuditEntry,
    DeletionRequest,
    DeletionRequestTarget,
    FileMetadata,
    LegalHold,
)
from retention_engine.services import audit_service, evaluator, hold_index, policy_store


def _count(db: Session, query) -> int:
    return db.execute(query).scalar() or 0


def _audit_count(db: Session, event_type: AuditEventType, start: datetime, end: datetime) -> int:
    return _count(
        db,
        select(func.count(AuditEntry.id)).where(
            AuditEntry.event_type == event_type.value,
            AuditEntry.created_at >= start,
            AuditEntry.created_at <= end,
        ),
    )


def generate_retention_report(db: Session, start: datetime, end: datetime) -> dict[str, Any]:
    """Counts of files, holds and deletion requests over [start, end]."""
    if end < start:
        raise ValueError("end must not be before start")

    summary = {
        "total_files": _count(
            db,
            select(func.count(FileMetadata.id)).where(
                FileMetadata.created_at >= start, FileMetadata.created_at <= end
            ),
        ),
        "expired_files": _audit_count(db, AuditEventType.FILE_EXPIRED, start, end),
        "deleted_files": _audit_count(db, AuditEventType.FILE_DELETED, start, end),
        "anonymized_files": _audit_count(db, AuditEventType.FILE_ANONYMIZED, start, end),
        "missing_files": _audit_count(db, AuditEventType.FILE_MISSING, start, end),
        "hold_conflicts": _audit_count(db, AuditEventType.DELETION_REQUEST_HOLD_CONFLICT, start, end),
    }

    by_entity_type: dict[str, dict[str, int]] = {}
    rows = db.execute(
        select(FileMetadata.entity_type, FileMetadata.status, func.count(FileMetadata.id))
        .where(FileMetadata.created_at >= start, FileMetadata.created_at <= end)
        .group_by(FileMetadata.entity_type, FileMetadata.status)
    ).all()
    for entity_type, status, count in rows:
        bucket = by_entity_type.setdefault(
            entity_type, {"total_files": 0, "deleted_files": 0, "anonymized_files": 0}
        )
        bucket["total_files"] += count
        if status == FileStatus.DELETED.value:
            bucket["deleted_files"] += count
        elif status == FileStatus.ANONYMIZED.value:
            bucket["anonymized_files"] += count

    legal_holds = {
        "active": _count(db, select(func.count(LegalHold.id)).where(LegalHold.is_active.is_(True))),
        "created": _count(
            db,
            select(func.count(LegalHold.id)).where(LegalHold.created_at >= start, LegalHold.created_at <= end),
        ),
        "released": _audit_count(db, AuditEventType.LEGAL_HOLD_RELEASED, start, end),
        "expired": _audit_count(db, AuditEventType.LEGAL_HOLD_EXPIRED, start, end),
    }

    deletion_requests = {
        "pending": _count(
            db,
            select(func.count(DeletionRequest.id)).where(
                DeletionRequest.status.in_([s.value for s in DeletionRequestStatus.open()]),
                DeletionRequest.created_at >= start,
                DeletionRequest.created_at <= end,
            ),
        ),
        "completed": _count(
            db,
            select(func.count(DeletionRequest.id)).where(
                DeletionRequest.status == DeletionRequestStatus.COMPLETED.value,
                DeletionRequest.processed_at >= start,
                DeletionRequest.processed_at <= end,
            ),
        ),
        "failed": _count(
            db,
            select(func.count(DeletionRequest.id)).where(
                DeletionRequest.status == DeletionRequestStatus.FAILED.value,
                DeletionRequest.processed_at >= start,
                DeletionRequest.processed_at <= end,
            ),
        ),
    }
    failures_by_kind = dict(
        db.execute(
            select(DeletionRequest.error_kind, func.count(DeletionRequest.id))
            .where(
                DeletionRequest.status == DeletionRequestStatus.FAILED.value,
                DeletionRequest.processed_at >= start,
                DeletionRequest.processed_at <= end,
            )
            .group_by(DeletionRequest.error_kind)
        ).all()
    )
    deletion_requests["failed_by_kind"] = {str(k): v for k, v in failures_by_kind.items()}

    return {
        "period": {"start": start, "end": end},
        "summary": summary,
        "by_entity_type": by_entity_type,
        "legal_holds": legal_holds,
        "deletion_requests": deletion_requests,
    }


def audit_file_retention(db: Session, file_id: UUID, *, clock: Clock = system_clock) -> dict[str, Any]:
    """
    Compliance view of one file: decision, holds, requests and ledger history.

    compliance_status precedence: terminal > pending_deletion > held >
    expired > compliant.
    """
    file = db.get(FileMetadata, file_id)
    if not file:
        raise NotFoundError(f"File {file_id} not found")

    now = clock.now()
    decision = evaluator.evaluate(db, file, now)
    holds = hold_index.holds_for_file(db, file, now)
    policy = policy_store.get_active_policy(db, file.entity_type, file.jurisdiction)

    requests = list(
        db.execute(
            select(DeletionRequest)
            .join(DeletionRequestTarget, DeletionRequestTarget.request_id == DeletionRequest.id)
            .where(DeletionRequestTarget.file_id == file_id)
            .order_by(DeletionRequest.created_at, DeletionRequest.id)
        ).scalars().all()
    )
    has_open = any(r.status in {s.value for s in DeletionRequestStatus.open()} for r in requests)

    recommendations: list[str] = []
    if file.is_terminal:
        status = file.status.lower()
    elif has_open:
        status = "pending_deletion"
        recommendations.append("File has an open deletion request")
    elif holds:
        status = "held"
        recommendations.append("File is under legal hold: " + ", ".join(h.name for h in holds))
    elif decision.kind in (DecisionKind.DELETE_NOW, DecisionKind.ANONYMIZE):
        status = "expired"
        recommendations.append("File has exceeded its retention period and will be queued on the next pass")
    else:
        status = "compliant"

    return {
        "file_id": file.id,
        "current_status": file.status,
        "compliance_status": status,
        "decision": decision,
        "policy": policy,
        "legal_holds": holds,
        "deletion_requests": requests,
        "history": audit_service.list_file_history(db, file_id),
        "recommendations": recommendations,
    }
