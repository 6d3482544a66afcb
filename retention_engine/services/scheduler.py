"""Scheduler - turns retention decisions into deletion requests.

Each request is created in its own transaction. A file that already has an
open request is rejected by the partial unique index on open targets; the
scheduler rolls back and counts a duplicate, so concurrent passes never
produce two open requests for one file.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import and_, exists, select, update
from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock, system_clock
from retention_engine.core.config import settings
from retention_engine.core.errors import InvalidRequestError, OpenRequestConflictError
from retention_engine.core.structured_logging import build_log_context
from retention_engine.db.enums import (
    AuditEventType,
    DecisionKind,
    DeletionAction,
    DeletionErrorKind,
    DeletionRequestStatus,
    DeletionRequestType,
    FileStatus,
    HoldReleaseReason,
)
from retention_engine.db.models import DeletionRequest, DeletionRequestTarget, FileMetadata, LegalHold
from retention_engine.services import (
    audit_service,
    deletion_request_service,
    evaluator,
    hold_index,
    policy_store,
)
from retention_engine.services.metrics import MetricsSink, default_metrics_sink

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = [status.value for status in FileStatus.terminal()]


@dataclass
class ExpirationPassResult:
    scanned: int = 0
    requested: int = 0
    duplicates: int = 0
    retained: int = 0
    held: int = 0
    not_expired: int = 0

    def as_counts(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class HoldReleaseResult:
    files: int = 0
    created: int = 0
    existing: int = 0
    retained: int = 0

    def as_counts(self) -> dict[str, int]:
        return asdict(self)


def _open_target_exists():
    return exists().where(
        and_(
            DeletionRequestTarget.file_id == FileMetadata.id,
            DeletionRequestTarget.is_open.is_(True),
        )
    )


def _storage_retries_exhausted():
    """A request for the file already spent every attempt on storage failures."""
    return exists().where(
        and_(
            DeletionRequestTarget.file_id == FileMetadata.id,
            DeletionRequestTarget.request_id == DeletionRequest.id,
            DeletionRequest.status == DeletionRequestStatus.FAILED.value,
            DeletionRequest.error_kind == DeletionErrorKind.STORAGE_FAILURE.value,
            DeletionRequest.attempts >= DeletionRequest.max_attempts,
        )
    )


def _scopes(db: Session, entity_type: str | None = None) -> list[tuple[str, str | None]]:
    query = select(FileMetadata.entity_type, FileMetadata.jurisdiction).where(
        FileMetadata.status.notin_(_TERMINAL_STATUSES)
    )
    if entity_type is not None:
        query = query.where(FileMetadata.entity_type == entity_type)
    rows = db.execute(query.distinct()).all()
    return sorted(((row[0], row[1]) for row in rows), key=lambda s: (s[0], s[1] or ""))


def _scope_batch(
    db: Session,
    entity_type: str,
    jurisdiction: str | None,
    after_id: UUID | None,
    batch_size: int,
) -> list[FileMetadata]:
    query = select(FileMetadata).where(
        FileMetadata.entity_type == entity_type,
        FileMetadata.status.notin_(_TERMINAL_STATUSES),
        ~_open_target_exists(),
        ~_storage_retries_exhausted(),
    )
    if jurisdiction is None:
        query = query.where(FileMetadata.jurisdiction.is_(None))
    else:
        query = query.where(FileMetadata.jurisdiction == jurisdiction)
    if after_id is not None:
        query = query.where(FileMetadata.id > after_id)
    return list(db.execute(query.order_by(FileMetadata.id).limit(batch_size)).scalars().all())


def _request_for_decision(
    db: Session,
    file: FileMetadata,
    decision: evaluator.Decision,
    *,
    request_type: DeletionRequestType,
    clock: Clock,
    hold_id: UUID | None = None,
) -> bool:
    """Create a one-file request plus FILE_EXPIRED entry. False if the file already had one."""
    now = clock.now()
    file_id = file.id
    try:
        request = deletion_request_service.create_request(
            db,
            request_type=request_type,
            entity_type=file.entity_type,
            entity_id=file.entity_id,
            file_ids=[file_id],
            now=now,
            action=decision.action,
            policy_id=decision.policy_id,
            rule_id=decision.rule_id,
            hold_id=hold_id,
            metadata={
                "reason": decision.reason,
                "expires_at": decision.expires_at.isoformat() if decision.expires_at else None,
            },
        )
        audit_service.log_file_expired(
            db,
            file,
            now=now,
            deletion_request_id=request.id,
            policy_id=decision.policy_id,
            rule_id=decision.rule_id,
            action=decision.action.value,
            expires_at=decision.expires_at,
        )
        db.commit()
    except OpenRequestConflictError:
        logger.info(
            "File already has an open deletion request",
            extra=build_log_context(file_id=file_id),
        )
        return False
    return True


def run_expiration_pass(
    db: Session,
    *,
    clock: Clock = system_clock,
    batch_size: int | None = None,
    metrics: MetricsSink | None = None,
    entity_type: str | None = None,
) -> ExpirationPassResult:
    """
    Scan active files scope by scope and queue every past-due file.

    Holds are read once per pass into a snapshot; the executor re-checks
    fresh before anything destructive happens. Files whose storage retries
    are exhausted are left for an operator. entity_type narrows the pass to
    one entity type, as after a policy change.
    """
    batch_size = settings.SCHEDULER_BATCH_SIZE if batch_size is None else batch_size
    as_of = clock.now()
    result = ExpirationPassResult()
    holds = hold_index.snapshot(db, as_of)
    policies = policy_store.PolicyCache(db)

    for scope_type, jurisdiction in _scopes(db, entity_type):
        after_id: UUID | None = None
        while True:
            batch = _scope_batch(db, scope_type, jurisdiction, after_id, batch_size)
            if not batch:
                break
            after_id = batch[-1].id
            for file in batch:
                result.scanned += 1
                decision = evaluator.evaluate(db, file, as_of, snapshot=holds, policies=policies)
                if decision.kind == DecisionKind.EXPIRE_AT:
                    result.not_expired += 1
                    continue
                if not decision.is_destructive:
                    if decision.reason == evaluator.REASON_LEGAL_HOLD:
                        result.held += 1
                    else:
                        result.retained += 1
                    continue
                created = _request_for_decision(
                    db,
                    file,
                    decision,
                    request_type=DeletionRequestType.POLICY_EXPIRATION,
                    clock=clock,
                )
                if created:
                    result.requested += 1
                else:
                    result.duplicates += 1
            if len(batch) < batch_size:
                break

    logger.info(
        "Expiration pass complete: scanned=%s requested=%s duplicates=%s",
        result.scanned,
        result.requested,
        result.duplicates,
        extra=build_log_context(run="expiration_pass"),
    )
    (metrics or default_metrics_sink).record("expiration_pass", result.as_counts())
    return result


def submit_request(
    db: Session,
    *,
    request_type: DeletionRequestType,
    entity_type: str,
    entity_id: str,
    file_ids: list[UUID] | None = None,
    action: DeletionAction = DeletionAction.DELETE,
    requested_by: str | None = None,
    clock: Clock = system_clock,
) -> DeletionRequest:
    """
    Record a USER_REQUEST / GDPR_REQUEST.

    Without file_ids every live file of the entity is targeted. Files that
    already have an open request are skipped and listed under
    skipped_file_ids in the request metadata; a request left with no files
    still completes (with zero files).
    """
    if request_type not in DeletionRequestType.explicit():
        raise InvalidRequestError(f"{request_type.value} requests cannot be submitted directly")

    now = clock.now()
    if file_ids is None:
        targets = list(
            db.execute(
                select(FileMetadata.id)
                .where(
                    FileMetadata.entity_type == entity_type,
                    FileMetadata.entity_id == entity_id,
                    FileMetadata.status.notin_(_TERMINAL_STATUSES),
                )
                .order_by(FileMetadata.created_at, FileMetadata.id)
            ).scalars().all()
        )
    else:
        targets = list(dict.fromkeys(file_ids))
        foreign = db.execute(
            select(FileMetadata.id).where(
                FileMetadata.id.in_(targets),
                ~and_(FileMetadata.entity_type == entity_type, FileMetadata.entity_id == entity_id),
            )
        ).scalars().all()
        if foreign:
            raise InvalidRequestError(
                f"Files do not belong to {entity_type}/{entity_id}: {', '.join(str(f) for f in foreign)}"
            )

    skipped = deletion_request_service.open_file_ids(db, targets)
    remaining = [file_id for file_id in targets if file_id not in skipped]
    metadata = None
    if skipped:
        metadata = {"skipped_file_ids": [str(file_id) for file_id in targets if file_id in skipped]}

    grace_hours = (
        settings.GDPR_REQUEST_GRACE_HOURS
        if request_type == DeletionRequestType.GDPR_REQUEST
        else settings.USER_REQUEST_GRACE_HOURS
    )
    request = deletion_request_service.create_request(
        db,
        request_type=request_type,
        entity_type=entity_type,
        entity_id=entity_id,
        file_ids=remaining,
        now=now,
        action=action,
        requested_by=requested_by,
        scheduled_at=now + timedelta(hours=grace_hours),
        metadata=metadata,
    )
    db.commit()
    return deletion_request_service.get_request_or_raise(db, request.id)


def on_hold_released(
    db: Session,
    hold: LegalHold,
    *,
    clock: Clock = system_clock,
) -> HoldReleaseResult:
    """
    Re-evaluate every file the hold covered and queue the ones now past due.

    Files still covered by another hold, or not yet expired, stay retained.
    """
    hold_id = hold.id
    as_of = clock.now()
    result = HoldReleaseResult()
    files = hold_index.files_covered_by(db, hold)
    file_ids = [file.id for file in files]

    for file_id in file_ids:
        file = db.get(FileMetadata, file_id)
        if file is None or file.is_terminal:
            continue
        result.files += 1
        decision = evaluator.evaluate(db, file, as_of)
        if not decision.is_destructive:
            result.retained += 1
            continue
        created = _request_for_decision(
            db,
            file,
            decision,
            request_type=DeletionRequestType.LEGAL_HOLD_RELEASE,
            clock=clock,
            hold_id=hold_id,
        )
        if created:
            result.created += 1
        else:
            result.existing += 1

    logger.info(
        "Hold release cascade: files=%s created=%s existing=%s retained=%s",
        result.files,
        result.created,
        result.existing,
        result.retained,
        extra=build_log_context(hold_id=hold_id, run="hold_release"),
    )
    return result


def deactivate_hold(
    db: Session,
    hold_id: UUID,
    *,
    reason: HoldReleaseReason,
    clock: Clock = system_clock,
    released_by: str | None = None,
) -> LegalHold | None:
    """
    Conditionally deactivate an active hold and audit it.

    Returns None if another actor deactivated it first. Commits.
    """
    now = clock.now()
    moved = db.execute(
        update(LegalHold)
        .where(LegalHold.id == hold_id, LegalHold.is_active.is_(True))
        .values(
            is_active=False,
            released_at=now,
            released_by=released_by,
            release_reason=reason.value,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    if moved != 1:
        db.rollback()
        return None

    hold = db.execute(
        select(LegalHold).where(LegalHold.id == hold_id).execution_options(populate_existing=True)
    ).scalar_one()
    event_type = (
        AuditEventType.LEGAL_HOLD_EXPIRED
        if reason == HoldReleaseReason.EXPIRED
        else AuditEventType.LEGAL_HOLD_RELEASED
    )
    audit_service.log_hold_event(db, event_type, hold, now=now, performed_by=released_by)
    db.commit()
    return hold


def process_expired_holds(
    db: Session,
    *,
    clock: Clock = system_clock,
    metrics: MetricsSink | None = None,
) -> int:
    """Deactivate holds past expires_at and run the release cascade for each."""
    now = clock.now()
    expired_ids = db.execute(
        select(LegalHold.id).where(
            LegalHold.is_active.is_(True),
            LegalHold.expires_at.isnot(None),
            LegalHold.expires_at <= now,
        )
    ).scalars().all()

    expired = 0
    requests = 0
    for hold_id in expired_ids:
        hold = deactivate_hold(db, hold_id, reason=HoldReleaseReason.EXPIRED, clock=clock)
        if hold is None:
            continue
        expired += 1
        logger.info("Legal hold expired", extra=build_log_context(hold_id=hold_id))
        requests += on_hold_released(db, hold, clock=clock).created

    (metrics or default_metrics_sink).record(
        "hold_expiry", {"expired": expired, "requests_created": requests}
    )
    return expired
