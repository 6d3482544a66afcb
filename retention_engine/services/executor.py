"""Executor - claims deletion requests and performs them exactly once.

Flow for one request:
1. claim_next: conditional PENDING -> PROCESSING with a fresh claim token
2. fresh legal hold re-check for every target (never the scheduler snapshot)
3. per file: storage call under a timeout, then file status + terminal audit
   entry + files_deleted in one transaction guarded by the claim token
4. PROCESSING -> COMPLETED / FAILED, targets closed, request audited. A
   storage failure with attempts left keeps its targets open until the
   automatic retry picks it up again

A reaped executor whose token was rotated cannot write anything: every
update it issues matches zero rows.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from uuid import UUID

import anyio
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock, system_clock
from retention_engine.core.config import settings
from retention_engine.core.errors import (
    HoldConflictError,
    InvalidTransitionError,
    OpenRequestConflictError,
    RetentionError,
    RetryLimitExceededError,
    StorageFailure,
)
from retention_engine.core.structured_logging import build_log_context
from retention_engine.db.enums import (
    AuditEventType,
    DeletionAction,
    DeletionErrorKind,
    DeletionRequestStatus,
    DeletionRequestType,
    FileStatus,
)
from retention_engine.db.models import DeletionRequest, FileMetadata
from retention_engine.services import audit_service, deletion_request_service, evaluator, hold_index
from retention_engine.services.metrics import MetricsSink, default_metrics_sink
from retention_engine.services.storage import StorageBackend

logger = logging.getLogger(__name__)

S = DeletionRequestStatus

ANONYMIZED_NAME = "anonymized_file"
ANONYMIZED_USER = "anonymized_user"

CLAIM_CANDIDATES = 5


class LostClaimError(Exception):
    """The claim token was rotated under this executor (reaped)."""


@dataclass
class RunResult:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    hold_conflicts: int = 0
    lost_claims: int = 0
    files_deleted: int = 0

    def as_counts(self) -> dict[str, int]:
        return asdict(self)


# =============================================================================
# Claiming
# =============================================================================

def claim_next(
    db: Session,
    *,
    worker_id: str,
    clock: Clock = system_clock,
) -> DeletionRequest | None:
    """
    Claim the oldest due PENDING request.

    The status-guarded UPDATE is the only arbiter between workers; losing a
    race on one candidate moves on to the next.
    """
    now = clock.now()
    candidates = db.execute(
        select(DeletionRequest.id)
        .where(
            DeletionRequest.status == S.PENDING.value,
            DeletionRequest.scheduled_at <= now,
        )
        .order_by(DeletionRequest.scheduled_at, DeletionRequest.created_at, DeletionRequest.id)
        .limit(CLAIM_CANDIDATES)
    ).scalars().all()

    for request_id in candidates:
        token = uuid.uuid4()
        claimed = deletion_request_service.transition(
            db,
            request_id,
            S.PENDING,
            S.PROCESSING,
            now=now,
            claim_token=token,
            claimed_by=worker_id,
            claimed_at=now,
            attempts=DeletionRequest.attempts + 1,
        )
        db.commit()
        if claimed:
            logger.info(
                "Claimed deletion request",
                extra=build_log_context(request_id=request_id, worker_id=worker_id),
            )
            return deletion_request_service.get_request(db, request_id)
    return None


def _still_claimed(db: Session, request_id: UUID, token: UUID) -> bool:
    current = db.execute(
        select(DeletionRequest.claim_token, DeletionRequest.status).where(DeletionRequest.id == request_id)
    ).one_or_none()
    return bool(current) and current[0] == token and current[1] == S.PROCESSING.value


# =============================================================================
# Outcomes
# =============================================================================

def _finish(
    db: Session,
    request_id: UUID,
    token: UUID,
    to_status: DeletionRequestStatus,
    event_type: AuditEventType,
    *,
    clock: Clock,
    error_kind: DeletionErrorKind | None = None,
    error_message: str | None = None,
    details: dict | None = None,
    release_targets: bool = True,
) -> DeletionRequest:
    """
    Terminal transition + target release + audit, one transaction.

    With release_targets=False the targets stay open, so neither the
    scheduler nor a new submission can queue the files while the request
    still has automatic retries left.
    """
    now = clock.now()
    moved = deletion_request_service.transition(
        db,
        request_id,
        S.PROCESSING,
        to_status,
        now=now,
        expected_token=token,
        processed_at=now,
        error_kind=error_kind.value if error_kind else None,
        error_message=error_message,
    )
    if not moved:
        db.rollback()
        raise LostClaimError(str(request_id))
    if release_targets:
        deletion_request_service.close_targets(db, request_id)
    request = deletion_request_service.get_request_or_raise(db, request_id)
    audit_service.log_request_event(db, event_type, request, now=now, details=details)
    db.commit()
    return request


def _fail_hold_conflict(
    db: Session,
    request: DeletionRequest,
    token: UUID,
    conflict: HoldConflictError,
    *,
    clock: Clock,
    metrics: MetricsSink,
) -> DeletionRequest:
    request_id = request.id
    now = clock.now()
    moved = deletion_request_service.transition(
        db,
        request_id,
        S.PROCESSING,
        S.FAILED,
        now=now,
        expected_token=token,
        processed_at=now,
        error_kind=DeletionErrorKind.HOLD_CONFLICT.value,
        error_message=str(conflict),
    )
    if not moved:
        db.rollback()
        raise LostClaimError(str(request_id))
    deletion_request_service.close_targets(db, request_id)
    request = deletion_request_service.get_request_or_raise(db, request_id)
    audit_service.log_hold_conflict(db, request, conflict.holds, conflict.file_ids, now=now)
    db.commit()

    logger.error(
        "Deletion request blocked by legal hold: %s",
        conflict,
        extra=build_log_context(request_id=request_id, hold_id=conflict.holds[0][0]),
    )
    metrics.record(
        "hold_conflict",
        {"deletion_requests": 1, "held_files": len(conflict.file_ids), "holds": len(conflict.holds)},
    )
    return request


def _check_holds(db: Session, request: DeletionRequest, *, clock: Clock) -> None:
    """
    Fresh store query per target. Raises HoldConflictError naming every blocking hold.

    USER_REQUEST / GDPR_REQUEST targets go through the explicit-request
    evaluation, which skips the retention window but not the holds.
    """
    now = clock.now()
    explicit = DeletionRequestType(request.request_type) in DeletionRequestType.explicit()
    action = DeletionAction(request.action)
    blocking: dict[UUID, str] = {}
    held_files: list[UUID] = []
    for file_id in request.file_ids:
        file = db.get(FileMetadata, file_id)
        if file is None or file.is_terminal:
            continue
        if explicit:
            holds = list(evaluator.evaluate_explicit_request(db, file, now, action).holds)
        else:
            holds = [(hold.id, hold.name) for hold in hold_index.holds_for_file(db, file, now)]
        if holds:
            held_files.append(file_id)
            for hold_id, name in holds:
                blocking.setdefault(hold_id, name)
    if blocking:
        raise HoldConflictError(list(blocking.items()), held_files)


# =============================================================================
# Per-file work
# =============================================================================

async def _call_storage(
    storage: StorageBackend,
    file: FileMetadata,
    action: DeletionAction,
    timeout: float,
) -> None:
    path = file.path
    try:
        with anyio.fail_after(timeout):
            if action == DeletionAction.DELETE:
                await storage.delete(path)
            elif storage.supports_anonymize:
                await storage.anonymize(path)
    except TimeoutError as exc:
        raise StorageFailure(f"Storage call timed out after {timeout}s for file {file.id}") from exc
    except RetentionError:
        raise
    except Exception as exc:
        # Backends that leak their own errors (OSError, SDK errors) are still storage failures
        raise StorageFailure(f"Storage call failed for file {file.id}: {type(exc).__name__}: {exc}") from exc


def _record_file_outcome(
    db: Session,
    request: DeletionRequest,
    token: UUID,
    file_id: UUID,
    action: DeletionAction,
    *,
    clock: Clock,
) -> bool:
    """
    Mark the file terminal, bump files_deleted and append the terminal entry.

    Returns False if the file was already finalized (by an earlier attempt
    of a now-reaped executor). Raises LostClaimError if the claim moved.
    """
    now = clock.now()
    request_id = request.id
    values: dict = {FileMetadata.updated_at: now}
    if action == DeletionAction.ANONYMIZE:
        values.update({
            FileMetadata.status: FileStatus.ANONYMIZED.value,
            FileMetadata.original_name: ANONYMIZED_NAME,
            FileMetadata.uploaded_by: ANONYMIZED_USER,
            FileMetadata.custom_metadata: {},
            FileMetadata.tags: [],
        })
    else:
        values[FileMetadata.status] = FileStatus.DELETED.value

    updated = db.execute(
        update(FileMetadata)
        .where(
            FileMetadata.id == file_id,
            FileMetadata.status.notin_([s.value for s in FileStatus.terminal()]),
        )
        .values(values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if updated != 1:
        db.rollback()
        return False

    bumped = db.execute(
        update(DeletionRequest)
        .where(
            DeletionRequest.id == request_id,
            DeletionRequest.status == S.PROCESSING.value,
            DeletionRequest.claim_token == token,
        )
        .values(files_deleted=DeletionRequest.files_deleted + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if bumped != 1:
        db.rollback()
        raise LostClaimError(str(request_id))

    file = db.execute(
        select(FileMetadata).where(FileMetadata.id == file_id).execution_options(populate_existing=True)
    ).scalar_one()
    try:
        audit_service.log_file_outcome(
            db,
            file,
            request,
            now=now,
            anonymized=action == DeletionAction.ANONYMIZE,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Terminal audit entry already exists for file",
            extra=build_log_context(request_id=request_id, file_id=file_id),
        )
        return False
    return True


async def process_request(
    db: Session,
    request: DeletionRequest,
    *,
    storage: StorageBackend,
    clock: Clock = system_clock,
    metrics: MetricsSink | None = None,
    timeout: float | None = None,
) -> DeletionRequest | None:
    """
    Perform a claimed request. Returns the finished request, or None when
    the claim was lost to the reaper mid-flight.
    """
    metrics = metrics or default_metrics_sink
    timeout = timeout if timeout is not None else settings.STORAGE_TIMEOUT_SECONDS
    request_id = request.id
    token = request.claim_token
    log_context = build_log_context(request_id=request_id, worker_id=request.claimed_by)

    if request.status != S.PROCESSING.value or token is None:
        raise InvalidTransitionError(request.status, S.COMPLETED.value)

    try:
        try:
            _check_holds(db, request, clock=clock)
        except HoldConflictError as conflict:
            return _fail_hold_conflict(db, request, token, conflict, clock=clock, metrics=metrics)

        action = DeletionAction(request.action)
        for file_id in request.file_ids:
            file = db.get(FileMetadata, file_id)
            if file is None:
                audit_service.log_file_missing(db, file_id, request, now=clock.now())
                db.commit()
                logger.info("Target file is missing", extra={**log_context, "file_id": str(file_id)})
                continue
            if file.is_terminal:
                continue
            if not _still_claimed(db, request_id, token):
                raise LostClaimError(str(request_id))

            try:
                await _call_storage(storage, file, action, timeout)
            except StorageFailure as exc:
                db.rollback()
                retryable = request.attempts < request.max_attempts
                logger.warning(
                    "Storage failure (attempt %s/%s): %s",
                    request.attempts,
                    request.max_attempts,
                    exc,
                    extra={**log_context, "file_id": str(file_id)},
                )
                return _finish(
                    db,
                    request_id,
                    token,
                    S.FAILED,
                    AuditEventType.DELETION_REQUEST_FAILED,
                    clock=clock,
                    error_kind=DeletionErrorKind.STORAGE_FAILURE,
                    error_message=str(exc),
                    details={"file_id": str(file_id), "retryable": retryable},
                    release_targets=not retryable,
                )

            _record_file_outcome(db, request, token, file_id, action, clock=clock)

        request = deletion_request_service.get_request_or_raise(db, request_id)
        finished = _finish(
            db,
            request_id,
            token,
            S.COMPLETED,
            AuditEventType.DELETION_REQUEST_PROCESSED,
            clock=clock,
            details={"files_deleted": request.files_deleted},
        )
        logger.info("Deletion request completed files=%s", finished.files_deleted, extra=log_context)
        return finished
    except LostClaimError:
        db.rollback()
        logger.warning("Lost claim on deletion request; another worker owns it now", extra=log_context)
        return None
    except Exception as exc:
        db.rollback()
        logger.exception("Deletion request failed unexpectedly", extra=log_context)
        try:
            _finish(
                db,
                request_id,
                token,
                S.FAILED,
                AuditEventType.DELETION_REQUEST_FAILED,
                clock=clock,
                error_kind=DeletionErrorKind.INTERNAL_ERROR,
                error_message=f"{type(exc).__name__}: {exc}"[:1000],
            )
        except LostClaimError:
            db.rollback()
        raise


# =============================================================================
# Sweeps
# =============================================================================

def reap_stale_claims(
    db: Session,
    *,
    clock: Clock = system_clock,
    stale_seconds: int | None = None,
) -> dict[str, int]:
    """
    Recover PROCESSING rows whose executor died.

    Rows with attempts left go back to PENDING (token cleared, so the dead
    executor is fenced out); exhausted rows end FAILED("stale_claim").
    """
    now = clock.now()
    stale_seconds = settings.STALE_CLAIM_SECONDS if stale_seconds is None else stale_seconds
    cutoff = now - timedelta(seconds=stale_seconds)
    stale = db.execute(
        select(DeletionRequest.id, DeletionRequest.claim_token, DeletionRequest.attempts, DeletionRequest.max_attempts)
        .where(
            DeletionRequest.status == S.PROCESSING.value,
            DeletionRequest.claimed_at < cutoff,
        )
        .order_by(DeletionRequest.claimed_at)
    ).all()

    counts = {"requeued": 0, "failed": 0}
    for request_id, token, attempts, max_attempts in stale:
        if attempts >= max_attempts:
            try:
                _finish(
                    db,
                    request_id,
                    token,
                    S.FAILED,
                    AuditEventType.DELETION_REQUEST_FAILED,
                    clock=clock,
                    error_kind=DeletionErrorKind.STALE_CLAIM,
                    error_message=f"Claim expired after {attempts} attempts",
                )
            except LostClaimError:
                continue
            counts["failed"] += 1
            continue

        moved = deletion_request_service.transition(
            db,
            request_id,
            S.PROCESSING,
            S.PENDING,
            now=now,
            expected_token=token,
            claim_token=None,
            claimed_by=None,
            claimed_at=None,
            scheduled_at=now,
        )
        if not moved:
            db.rollback()
            continue
        request = deletion_request_service.get_request_or_raise(db, request_id)
        audit_service.log_request_event(
            db,
            AuditEventType.DELETION_REQUEST_REQUEUED,
            request,
            now=now,
            details={"stale_token": str(token)},
        )
        db.commit()
        counts["requeued"] += 1
        logger.warning("Requeued stale deletion request", extra=build_log_context(request_id=request_id))
    return counts


def requeue_failed_requests(
    db: Session,
    *,
    clock: Clock = system_clock,
    backoff_seconds: int | None = None,
) -> int:
    """Automatic retry of storage failures that still have attempts left."""
    now = clock.now()
    backoff = settings.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    cutoff = now - timedelta(seconds=backoff)
    candidates = db.execute(
        select(DeletionRequest.id).where(
            DeletionRequest.status == S.FAILED.value,
            DeletionRequest.error_kind == DeletionErrorKind.STORAGE_FAILURE.value,
            DeletionRequest.attempts < DeletionRequest.max_attempts,
            DeletionRequest.processed_at <= cutoff,
        )
    ).scalars().all()

    requeued = 0
    for request_id in candidates:
        try:
            deletion_request_service.retry_request(db, request_id, now=now, automatic=True)
        except (OpenRequestConflictError, InvalidTransitionError, RetryLimitExceededError) as exc:
            logger.info(
                "Automatic retry skipped: %s",
                exc,
                extra=build_log_context(request_id=request_id),
            )
            continue
        requeued += 1
    return requeued


async def run_once(
    db: Session,
    *,
    storage: StorageBackend,
    worker_id: str,
    clock: Clock = system_clock,
    metrics: MetricsSink | None = None,
    batch_size: int | None = None,
    timeout: float | None = None,
) -> RunResult:
    """Claim and process until the queue is empty or the batch limit is hit."""
    metrics = metrics or default_metrics_sink
    limit = settings.EXECUTOR_BATCH_SIZE if batch_size is None else batch_size
    result = RunResult()

    while result.claimed < limit:
        request = claim_next(db, worker_id=worker_id, clock=clock)
        if request is None:
            break
        result.claimed += 1
        try:
            finished = await process_request(
                db,
                request,
                storage=storage,
                clock=clock,
                metrics=metrics,
                timeout=timeout,
            )
        except Exception:
            # Already recorded as FAILED(internal_error) by process_request
            logger.exception(
                "Executor error while processing request",
                extra=build_log_context(request_id=request.id, worker_id=worker_id),
            )
            result.failed += 1
            continue

        if finished is None:
            result.lost_claims += 1
        elif finished.status == S.COMPLETED.value:
            result.completed += 1
            result.files_deleted += finished.files_deleted
        elif finished.error_kind == DeletionErrorKind.HOLD_CONFLICT.value:
            result.hold_conflicts += 1
            result.failed += 1
        else:
            result.failed += 1

    metrics.record("executor", result.as_counts())
    return result
