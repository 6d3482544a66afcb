"""Deletion request service - durable work items and their state machine.

Status edges:

    PENDING    -> PROCESSING   claim
    PENDING    -> FAILED       cancellation only
    PROCESSING -> COMPLETED    executor success
    PROCESSING -> FAILED       executor failure (or reaper, attempts exhausted)
    PROCESSING -> PENDING      stale-claim reaper only
    FAILED     -> PENDING      operator retry / automatic storage retry

Every edge is a conditional UPDATE on the current status (and, for executor
writes, the claim token); rowcount == 0 means another actor won.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from retention_engine.core.config import settings
from retention_engine.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    OpenRequestConflictError,
    RetryLimitExceededError,
)
from retention_engine.core.structured_logging import build_log_context
from retention_engine.db.enums import (
    AuditEventType,
    DeletionAction,
    DeletionErrorKind,
    DeletionRequestStatus,
    DeletionRequestType,
)
from retention_engine.db.models import DeletionRequest, DeletionRequestTarget
from retention_engine.services import audit_service

logger = logging.getLogger(__name__)

S = DeletionRequestStatus

ALLOWED_TRANSITIONS: dict[DeletionRequestStatus, frozenset[DeletionRequestStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.PENDING}),
    S.FAILED: frozenset({S.PENDING}),
    S.COMPLETED: frozenset(),
}


def assert_transition(from_status: DeletionRequestStatus, to_status: DeletionRequestStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(from_status.value, to_status.value)


def transition(
    db: Session,
    request_id: UUID,
    from_status: DeletionRequestStatus,
    to_status: DeletionRequestStatus,
    *,
    now: datetime,
    expected_token: UUID | None = None,
    **values: Any,
) -> bool:
    """
    Move a request along one edge if it is still in ``from_status``.

    When expected_token is given the update only applies to the current claim
    holder. Returns False when the guard did not match (lost race). Does not
    commit.
    """
    assert_transition(from_status, to_status)
    stmt = (
        update(DeletionRequest)
        .where(DeletionRequest.id == request_id, DeletionRequest.status == from_status.value)
        .values(status=to_status.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if expected_token is not None:
        stmt = stmt.where(DeletionRequest.claim_token == expected_token)
    result = db.execute(stmt)
    return result.rowcount == 1


def close_targets(db: Session, request_id: UUID) -> None:
    db.execute(
        update(DeletionRequestTarget)
        .where(DeletionRequestTarget.request_id == request_id)
        .values(is_open=False)
        .execution_options(synchronize_session=False)
    )


def reopen_targets(db: Session, request_id: UUID) -> None:
    """Raises IntegrityError if another open request now targets one of the files."""
    db.execute(
        update(DeletionRequestTarget)
        .where(DeletionRequestTarget.request_id == request_id)
        .values(is_open=True)
        .execution_options(synchronize_session=False)
    )


# =============================================================================
# Creation
# =============================================================================

def create_request(
    db: Session,
    *,
    request_type: DeletionRequestType,
    entity_type: str,
    entity_id: str | None,
    file_ids: Iterable[UUID],
    now: datetime,
    action: DeletionAction = DeletionAction.DELETE,
    requested_by: str | None = None,
    scheduled_at: datetime | None = None,
    policy_id: UUID | None = None,
    rule_id: UUID | None = None,
    hold_id: UUID | None = None,
    metadata: dict[str, Any] | None = None,
    max_attempts: int | None = None,
) -> DeletionRequest:
    """
    Insert a PENDING request with one open target per file and audit it.

    The partial unique index on open targets rejects a file that already has
    an open request; the transaction is rolled back and
    OpenRequestConflictError raised. Does not commit on success.
    """
    request = DeletionRequest(
        request_type=request_type.value,
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        requested_by=requested_by,
        status=S.PENDING.value,
        scheduled_at=scheduled_at or now,
        attempts=0,
        max_attempts=settings.DELETION_MAX_ATTEMPTS if max_attempts is None else max_attempts,
        files_deleted=0,
        policy_id=policy_id,
        rule_id=rule_id,
        hold_id=hold_id,
        request_metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    request.targets = [DeletionRequestTarget(file_id=file_id, is_open=True) for file_id in dict.fromkeys(file_ids)]
    try:
        db.add(request)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise OpenRequestConflictError("A targeted file already has an open deletion request")

    audit_service.log_request_event(
        db,
        AuditEventType.DELETION_REQUEST_CREATED,
        request,
        now=now,
        details={"scheduled_at": request.scheduled_at.isoformat()},
    )
    logger.info(
        "Created deletion request type=%s files=%s",
        request.request_type,
        len(request.targets),
        extra=build_log_context(request_id=request.id, policy_id=policy_id, hold_id=hold_id),
    )
    return request


# =============================================================================
# Queries
# =============================================================================

def get_request(db: Session, request_id: UUID) -> DeletionRequest | None:
    return db.execute(
        select(DeletionRequest)
        .options(selectinload(DeletionRequest.targets))
        .where(DeletionRequest.id == request_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_request_or_raise(db: Session, request_id: UUID) -> DeletionRequest:
    request = get_request(db, request_id)
    if not request:
        raise NotFoundError(f"Deletion request {request_id} not found")
    return request


def list_requests(
    db: Session,
    *,
    status: DeletionRequestStatus | None = None,
    request_type: DeletionRequestType | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[DeletionRequest]:
    query = select(DeletionRequest).options(selectinload(DeletionRequest.targets))
    if status:
        query = query.where(DeletionRequest.status == status.value)
    if request_type:
        query = query.where(DeletionRequest.request_type == request_type.value)
    if entity_type:
        query = query.where(DeletionRequest.entity_type == entity_type)
    if entity_id:
        query = query.where(DeletionRequest.entity_id == entity_id)
    query = query.order_by(DeletionRequest.created_at.desc(), DeletionRequest.id).offset(offset).limit(limit)
    return list(db.execute(query).scalars().all())


def open_file_ids(db: Session, file_ids: Iterable[UUID]) -> set[UUID]:
    """Subset of file_ids already targeted by an open request."""
    ids = list(file_ids)
    if not ids:
        return set()
    return set(
        db.execute(
            select(DeletionRequestTarget.file_id).where(
                DeletionRequestTarget.file_id.in_(ids),
                DeletionRequestTarget.is_open.is_(True),
            )
        ).scalars().all()
    )


# =============================================================================
# Operator actions
# =============================================================================

def cancel_request(
    db: Session,
    request_id: UUID,
    *,
    now: datetime,
    performed_by: str | None = None,
) -> DeletionRequest:
    """Force a PENDING request to FAILED("cancelled"). In-flight work cannot be cancelled."""
    request = get_request_or_raise(db, request_id)
    current = DeletionRequestStatus(request.status)
    if current != S.PENDING:
        raise InvalidTransitionError(current.value, S.FAILED.value)

    moved = transition(
        db,
        request_id,
        S.PENDING,
        S.FAILED,
        now=now,
        error_kind=DeletionErrorKind.CANCELLED.value,
        error_message="cancelled",
        processed_at=now,
    )
    if not moved:
        db.rollback()
        latest = get_request_or_raise(db, request_id)
        raise InvalidTransitionError(latest.status, S.FAILED.value)

    close_targets(db, request_id)
    request = get_request_or_raise(db, request_id)
    audit_service.log_request_event(
        db,
        AuditEventType.DELETION_REQUEST_CANCELLED,
        request,
        now=now,
        performed_by=performed_by,
    )
    db.commit()
    logger.info("Cancelled deletion request", extra=build_log_context(request_id=request_id))
    return get_request_or_raise(db, request_id)


def retry_request(
    db: Session,
    request_id: UUID,
    *,
    now: datetime,
    performed_by: str | None = None,
    automatic: bool = False,
) -> DeletionRequest:
    """
    Reset a FAILED request to PENDING.

    Bounded by max_attempts. Reopening the targets fails with
    OpenRequestConflictError if a newer request already covers a file.
    """
    request = get_request_or_raise(db, request_id)
    current = DeletionRequestStatus(request.status)
    if current != S.FAILED:
        raise InvalidTransitionError(current.value, S.PENDING.value)
    if request.attempts >= request.max_attempts:
        raise RetryLimitExceededError(
            f"Deletion request {request_id} used {request.attempts}/{request.max_attempts} attempts"
        )

    previous_error = request.error_kind
    moved = transition(
        db,
        request_id,
        S.FAILED,
        S.PENDING,
        now=now,
        scheduled_at=now,
        error_kind=None,
        error_message=None,
        claim_token=None,
        claimed_by=None,
        claimed_at=None,
        processed_at=None,
    )
    if not moved:
        db.rollback()
        latest = get_request_or_raise(db, request_id)
        raise InvalidTransitionError(latest.status, S.PENDING.value)

    try:
        reopen_targets(db, request_id)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise OpenRequestConflictError(
            f"Cannot retry deletion request {request_id}: a file already has an open request"
        )

    request = get_request_or_raise(db, request_id)
    audit_service.log_request_event(
        db,
        AuditEventType.DELETION_REQUEST_RETRIED,
        request,
        now=now,
        performed_by=performed_by,
        details={"automatic": automatic, "previous_error": previous_error},
    )
    db.commit()
    logger.info(
        "Retrying deletion request attempt=%s/%s",
        request.attempts + 1,
        request.max_attempts,
        extra=build_log_context(request_id=request_id),
    )
    return get_request_or_raise(db, request_id)
