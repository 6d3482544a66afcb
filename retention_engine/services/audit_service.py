"""Audit ledger service - retention compliance event tracking.

Every policy/rule/hold mutation, file outcome and deletion request transition
is appended here. Entries are hash-chained so tampering is detectable.

Security guidelines:
- NEVER log file contents, original names or uploader identities
- Use IDs and counts in details
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from retention_engine.db.enums import AuditEventType
from retention_engine.db.models import AuditEntry


GENESIS_HASH = "0" * 64  # All zeros for first entry


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    This MUST be used consistently everywhere hashes are computed.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def _json_safe(details: dict[str, Any] | None) -> dict[str, Any] | None:
    if details is None:
        return None
    return json.loads(canonical_json(details))


def compute_audit_hash(entry: AuditEntry, prev_hash: str) -> str:
    """
    Compute hash for an audit entry.

    Hash = SHA256(all immutable fields joined with |)
    """
    data = "|".join([
        prev_hash,
        str(entry.id),
        entry.event_type,
        entry.created_at.astimezone(timezone.utc).isoformat(),
        canonical_json(entry.details),
        str(entry.file_id) if entry.file_id else "",
        entry.entity_type or "",
        entry.entity_id or "",
        str(entry.deletion_request_id) if entry.deletion_request_id else "",
        str(entry.policy_id) if entry.policy_id else "",
        str(entry.rule_id) if entry.rule_id else "",
        str(entry.hold_id) if entry.hold_id else "",
        entry.performed_by or "",
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def get_last_audit_hash(db: Session) -> str:
    """Get the hash of the most recent audit entry.

    Uses created_at + id for deterministic ordering under concurrency.
    """
    result = db.execute(
        select(AuditEntry.entry_hash)
        .where(AuditEntry.entry_hash.isnot(None))
        .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        .limit(1)
    ).scalar()
    return result or GENESIS_HASH


def log_event(
    db: Session,
    event_type: AuditEventType,
    *,
    now: datetime,
    performed_by: str | None = None,
    file_id: UUID | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    deletion_request_id: UUID | None = None,
    policy_id: UUID | None = None,
    rule_id: UUID | None = None,
    hold_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEntry:
    """
    Append an audit entry with hash chain.

    The entry is flushed but not committed; it becomes durable with the
    caller's transaction so state change and audit land together.
    """
    prev_hash = get_last_audit_hash(db)

    entry = AuditEntry(
        event_type=event_type.value,
        file_id=file_id,
        entity_type=entity_type,
        entity_id=entity_id,
        deletion_request_id=deletion_request_id,
        policy_id=policy_id,
        rule_id=rule_id,
        hold_id=hold_id,
        performed_by=performed_by or "system",
        details=_json_safe(details),
        prev_hash=prev_hash,
        created_at=now,
    )
    db.add(entry)
    db.flush()  # Get ID

    entry.entry_hash = compute_audit_hash(entry, prev_hash)
    db.flush()
    return entry


# =============================================================================
# Configuration Events
# =============================================================================

def log_policy_event(
    db: Session,
    event_type: AuditEventType,
    policy,
    *,
    now: datetime,
    performed_by: str | None = None,
    changes: dict[str, Any] | None = None,
) -> AuditEntry:
    details: dict[str, Any] = {
        "name": policy.name,
        "jurisdiction": policy.jurisdiction,
        "retention_period_days": policy.retention_period_days,
        "is_active": policy.is_active,
    }
    if changes:
        details["changes"] = changes
    return log_event(
        db,
        event_type,
        now=now,
        performed_by=performed_by,
        entity_type=policy.entity_type,
        policy_id=policy.id,
        details=details,
    )


def log_rule_event(
    db: Session,
    event_type: AuditEventType,
    rule,
    *,
    now: datetime,
    performed_by: str | None = None,
    changes: dict[str, Any] | None = None,
) -> AuditEntry:
    details: dict[str, Any] = {
        "action": rule.action,
        "priority": rule.priority,
        "retention_period_days": rule.retention_period_days,
        "is_active": rule.is_active,
    }
    if changes:
        details["changes"] = changes
    return log_event(
        db,
        event_type,
        now=now,
        performed_by=performed_by,
        policy_id=rule.policy_id,
        rule_id=rule.id,
        details=details,
    )


def log_hold_event(
    db: Session,
    event_type: AuditEventType,
    hold,
    *,
    now: datetime,
    performed_by: str | None = None,
) -> AuditEntry:
    return log_event(
        db,
        event_type,
        now=now,
        performed_by=performed_by,
        hold_id=hold.id,
        details={
            "name": hold.name,
            "scope": hold.scope,
            "expires_at": hold.expires_at.isoformat() if hold.expires_at else None,
            "release_reason": hold.release_reason,
        },
    )


# =============================================================================
# File Events
# =============================================================================

def log_file_expired(
    db: Session,
    file,
    *,
    now: datetime,
    deletion_request_id: UUID,
    policy_id: UUID | None,
    rule_id: UUID | None,
    action: str,
    expires_at: datetime | None,
) -> AuditEntry:
    return log_event(
        db,
        AuditEventType.FILE_EXPIRED,
        now=now,
        file_id=file.id,
        entity_type=file.entity_type,
        entity_id=file.entity_id,
        deletion_request_id=deletion_request_id,
        policy_id=policy_id,
        rule_id=rule_id,
        details={
            "action": action,
            "expired_at": expires_at.isoformat() if expires_at else None,
        },
    )


def log_file_outcome(
    db: Session,
    file,
    request,
    *,
    now: datetime,
    anonymized: bool,
) -> AuditEntry:
    """Terminal entry; the unique index allows only one per file."""
    event_type = AuditEventType.FILE_ANONYMIZED if anonymized else AuditEventType.FILE_DELETED
    return log_event(
        db,
        event_type,
        now=now,
        performed_by=request.requested_by,
        file_id=file.id,
        entity_type=file.entity_type,
        entity_id=file.entity_id,
        deletion_request_id=request.id,
        policy_id=request.policy_id,
        rule_id=request.rule_id,
        hold_id=request.hold_id,
        details={
            "request_type": request.request_type,
            "size": file.size,
            "attempt": request.attempts,
        },
    )


def log_file_missing(db: Session, file_id: UUID, request, *, now: datetime) -> AuditEntry:
    return log_event(
        db,
        AuditEventType.FILE_MISSING,
        now=now,
        file_id=file_id,
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        deletion_request_id=request.id,
        details={"request_type": request.request_type},
    )


# =============================================================================
# Deletion Request Events
# =============================================================================

def log_request_event(
    db: Session,
    event_type: AuditEventType,
    request,
    *,
    now: datetime,
    performed_by: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEntry:
    payload: dict[str, Any] = {
        "request_type": request.request_type,
        "action": request.action,
        "status": request.status,
        "attempts": request.attempts,
        "file_count": len(request.targets),
    }
    if details:
        payload.update(details)
    return log_event(
        db,
        event_type,
        now=now,
        performed_by=performed_by or request.requested_by,
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        deletion_request_id=request.id,
        policy_id=request.policy_id,
        rule_id=request.rule_id,
        hold_id=request.hold_id,
        details=payload,
    )


def log_hold_conflict(
    db: Session,
    request,
    holds: list[tuple[UUID, str]],
    held_file_ids: list[UUID],
    *,
    now: datetime,
) -> AuditEntry:
    return log_request_event(
        db,
        AuditEventType.DELETION_REQUEST_HOLD_CONFLICT,
        request,
        now=now,
        details={
            "hold_ids": [str(hold_id) for hold_id, _ in holds],
            "held_file_ids": [str(file_id) for file_id in held_file_ids],
        },
    )


# =============================================================================
# Queries
# =============================================================================

def list_entries(
    db: Session,
    *,
    file_id: UUID | None = None,
    deletion_request_id: UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    event_types: list[AuditEventType] | None = None,
    limit: int | None = None,
) -> list[AuditEntry]:
    query = select(AuditEntry)
    if file_id:
        query = query.where(AuditEntry.file_id == file_id)
    if deletion_request_id:
        query = query.where(AuditEntry.deletion_request_id == deletion_request_id)
    if start:
        query = query.where(AuditEntry.created_at >= start)
    if end:
        query = query.where(AuditEntry.created_at <= end)
    if event_types:
        query = query.where(AuditEntry.event_type.in_([e.value for e in event_types]))
    query = query.order_by(AuditEntry.created_at, AuditEntry.id)
    if limit:
        query = query.limit(limit)
    return list(db.execute(query).scalars().all())


def list_file_history(db: Session, file_id: UUID) -> list[AuditEntry]:
    """All entries about a file, including request-level entries targeting it."""
    from retention_engine.db.models import DeletionRequestTarget

    request_ids = select(DeletionRequestTarget.request_id).where(
        DeletionRequestTarget.file_id == file_id
    )
    query = (
        select(AuditEntry)
        .where(
            or_(
                AuditEntry.file_id == file_id,
                AuditEntry.deletion_request_id.in_(request_ids),
            )
        )
        .order_by(AuditEntry.created_at, AuditEntry.id)
    )
    return list(db.execute(query).scalars().all())


@dataclass
class ChainVerification:
    valid: bool
    entries_checked: int = 0
    broken_entry_ids: list[UUID] = field(default_factory=list)


def verify_audit_chain(db: Session) -> ChainVerification:
    """
    Recompute every entry hash and check each prev_hash links to a real entry.

    Concurrent writers can fork the chain (two entries sharing a prev_hash);
    that is accepted, a hash that matches no entry is not.
    """
    entries = db.execute(
        select(AuditEntry).order_by(AuditEntry.created_at, AuditEntry.id)
    ).scalars().all()

    known_hashes = {GENESIS_HASH} | {e.entry_hash for e in entries if e.entry_hash}
    broken: list[UUID] = []
    for entry in entries:
        prev_hash = entry.prev_hash or GENESIS_HASH
        if entry.entry_hash != compute_audit_hash(entry, prev_hash):
            broken.append(entry.id)
        elif prev_hash not in known_hashes:
            broken.append(entry.id)

    return ChainVerification(valid=not broken, entries_checked=len(entries), broken_entry_ids=broken)
