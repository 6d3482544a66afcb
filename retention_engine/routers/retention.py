"""Retention router - deletion requests, legal holds, policies, decisions and reports."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock
from retention_engine.core.deps import get_clock, get_db
from retention_engine.core.errors import (
    DuplicatePolicyError,
    HoldAlreadyReleasedError,
    HoldConflictError,
    InvalidTransitionError,
    NotFoundError,
    OpenRequestConflictError,
    RetentionError,
    RetryLimitExceededError,
)
from retention_engine.db.enums import DeletionRequestStatus, DeletionRequestType
from retention_engine.db.models import FileMetadata
from retention_engine.schemas.retention import (
    AuditEntryRead,
    AuditVerificationRead,
    DecisionRead,
    DeletionRequestCreate,
    DeletionRequestCreated,
    DeletionRequestRead,
    FileRetentionAuditRead,
    HoldReleaseRead,
    LegalHoldCreate,
    LegalHoldRead,
    LegalHoldRelease,
    OperatorAction,
    RetentionPolicyCreate,
    RetentionPolicyRead,
    RetentionPolicyUpdate,
    RetentionReportRead,
    RetentionRuleCreate,
    RetentionRuleRead,
    RetentionRuleUpdate,
)
from retention_engine.services import (
    audit_service,
    compliance_service,
    deletion_request_service,
    evaluator,
    report_service,
    scheduler,
)


router = APIRouter(prefix="/retention", tags=["Retention"])

_CONFLICTS = (
    DuplicatePolicyError,
    HoldAlreadyReleasedError,
    HoldConflictError,
    InvalidTransitionError,
    OpenRequestConflictError,
    RetryLimitExceededError,
)


def _http_error(exc: RetentionError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, _CONFLICTS):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _decision_read(file_id: UUID, decision: evaluator.Decision) -> DecisionRead:
    return DecisionRead(
        file_id=file_id,
        kind=decision.kind,
        reason=decision.reason,
        expires_at=decision.expires_at,
        policy_id=decision.policy_id,
        rule_id=decision.rule_id,
        hold_ids=decision.hold_ids,
    )


# =============================================================================
# Deletion requests
# =============================================================================

@router.post("/deletion-requests", response_model=DeletionRequestCreated, status_code=201)
def create_deletion_request(
    payload: DeletionRequestCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DeletionRequestCreated:
    """Submit a user or GDPR deletion request."""
    try:
        return scheduler.submit_request(
            db,
            request_type=payload.request_type,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            file_ids=payload.file_ids,
            action=payload.action,
            requested_by=payload.requested_by,
            clock=clock,
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.get("/deletion-requests", response_model=list[DeletionRequestRead])
def list_deletion_requests(
    status: DeletionRequestStatus | None = None,
    request_type: DeletionRequestType | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[DeletionRequestRead]:
    return deletion_request_service.list_requests(
        db,
        status=status,
        request_type=request_type,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )


@router.get("/deletion-requests/{request_id}", response_model=DeletionRequestRead)
def get_deletion_request(request_id: UUID, db: Session = Depends(get_db)) -> DeletionRequestRead:
    request = deletion_request_service.get_request(db, request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Deletion request not found")
    return request


@router.post("/deletion-requests/{request_id}/cancel", response_model=DeletionRequestRead)
def cancel_deletion_request(
    request_id: UUID,
    payload: OperatorAction | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DeletionRequestRead:
    """Cancel a PENDING request. In-flight requests cannot be cancelled."""
    try:
        return deletion_request_service.cancel_request(
            db, request_id, now=clock.now(), performed_by=payload.performed_by if payload else None
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.post("/deletion-requests/{request_id}/retry", response_model=DeletionRequestRead)
def retry_deletion_request(
    request_id: UUID,
    payload: OperatorAction | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DeletionRequestRead:
    try:
        return deletion_request_service.retry_request(
            db, request_id, now=clock.now(), performed_by=payload.performed_by if payload else None
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


# =============================================================================
# Legal holds
# =============================================================================

@router.get("/legal-holds", response_model=list[LegalHoldRead])
def list_legal_holds(
    active_only: bool = False,
    db: Session = Depends(get_db),
) -> list[LegalHoldRead]:
    return compliance_service.list_legal_holds(db, active_only=active_only)


@router.post("/legal-holds", response_model=LegalHoldRead, status_code=201)
def create_legal_hold(
    payload: LegalHoldCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> LegalHoldRead:
    try:
        return compliance_service.create_legal_hold(
            db,
            name=payload.name,
            scope=payload.scope,
            description=payload.description,
            expires_at=payload.expires_at,
            created_by=payload.created_by,
            clock=clock,
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.post("/legal-holds/{hold_id}/release", response_model=HoldReleaseRead)
def release_legal_hold(
    hold_id: UUID,
    payload: LegalHoldRelease | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> HoldReleaseRead:
    """Release a legal hold and queue covered files that are now past due."""
    try:
        hold, cascade = compliance_service.release_legal_hold(
            db, hold_id, released_by=payload.released_by if payload else None, clock=clock
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc
    return HoldReleaseRead(
        hold=LegalHoldRead.model_validate(hold),
        files=cascade.files,
        requests_created=cascade.created,
        requests_existing=cascade.existing,
        retained=cascade.retained,
    )


# =============================================================================
# Policies and rules
# =============================================================================

@router.get("/policies", response_model=list[RetentionPolicyRead])
def list_policies(
    entity_type: str | None = None,
    include_inactive: bool = True,
    db: Session = Depends(get_db),
) -> list[RetentionPolicyRead]:
    return compliance_service.list_retention_policies(
        db, entity_type=entity_type, include_inactive=include_inactive
    )


@router.post("/policies", response_model=RetentionPolicyRead, status_code=201)
def create_policy(
    payload: RetentionPolicyCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RetentionPolicyRead:
    try:
        return compliance_service.create_retention_policy(db, **payload.model_dump(), clock=clock)
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.get("/policies/{policy_id}", response_model=RetentionPolicyRead)
def get_policy(policy_id: UUID, db: Session = Depends(get_db)) -> RetentionPolicyRead:
    try:
        return compliance_service.get_retention_policy(db, policy_id)
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.patch("/policies/{policy_id}", response_model=RetentionPolicyRead)
def update_policy(
    policy_id: UUID,
    payload: RetentionPolicyUpdate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RetentionPolicyRead:
    changes = payload.model_dump(exclude_unset=True, exclude={"performed_by"})
    try:
        return compliance_service.update_retention_policy(
            db, policy_id, changes=changes, performed_by=payload.performed_by, clock=clock
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.delete("/policies/{policy_id}", status_code=204)
def delete_policy(
    policy_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> None:
    try:
        compliance_service.delete_retention_policy(db, policy_id, clock=clock)
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.get("/policies/{policy_id}/rules", response_model=list[RetentionRuleRead])
def list_rules(policy_id: UUID, db: Session = Depends(get_db)) -> list[RetentionRuleRead]:
    try:
        return compliance_service.list_rules(db, policy_id)
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.post("/policies/{policy_id}/rules", response_model=RetentionRuleRead, status_code=201)
def create_rule(
    policy_id: UUID,
    payload: RetentionRuleCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RetentionRuleRead:
    try:
        return compliance_service.create_rule(
            db,
            policy_id,
            name=payload.name,
            condition=payload.condition,
            action=payload.action.value,
            priority=payload.priority,
            retention_period_days=payload.retention_period_days,
            is_active=payload.is_active,
            performed_by=payload.performed_by,
            clock=clock,
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.patch("/policies/{policy_id}/rules/{rule_id}", response_model=RetentionRuleRead)
def update_rule(
    policy_id: UUID,
    rule_id: UUID,
    payload: RetentionRuleUpdate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RetentionRuleRead:
    changes = payload.model_dump(mode="json", exclude_unset=True, exclude={"performed_by"})
    try:
        return compliance_service.update_rule(
            db, policy_id, rule_id, changes=changes, performed_by=payload.performed_by, clock=clock
        )
    except RetentionError as exc:
        raise _http_error(exc) from exc


@router.delete("/policies/{policy_id}/rules/{rule_id}", status_code=204)
def delete_rule(
    policy_id: UUID,
    rule_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> None:
    try:
        compliance_service.delete_rule(db, policy_id, rule_id, clock=clock)
    except RetentionError as exc:
        raise _http_error(exc) from exc


# =============================================================================
# Decisions, audit, reports
# =============================================================================

@router.get("/files/{file_id}/decision", response_model=DecisionRead)
def inspect_decision(
    file_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DecisionRead:
    """Read-only: what the engine would decide for this file right now."""
    file = db.get(FileMetadata, file_id)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")
    return _decision_read(file_id, evaluator.evaluate(db, file, clock.now()))


@router.get("/files/{file_id}/audit", response_model=FileRetentionAuditRead)
def file_retention_audit(
    file_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> FileRetentionAuditRead:
    try:
        audit = report_service.audit_file_retention(db, file_id, clock=clock)
    except RetentionError as exc:
        raise _http_error(exc) from exc
    audit["decision"] = _decision_read(file_id, audit["decision"])
    return FileRetentionAuditRead.model_validate(audit, from_attributes=True)


@router.get("/report", response_model=RetentionReportRead)
def retention_report(
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
) -> RetentionReportRead:
    try:
        return report_service.generate_retention_report(db, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/audit/verify", response_model=AuditVerificationRead)
def verify_audit_chain(db: Session = Depends(get_db)) -> AuditVerificationRead:
    result = audit_service.verify_audit_chain(db)
    return AuditVerificationRead(
        valid=result.valid,
        entries_checked=result.entries_checked,
        broken_entry_ids=result.broken_entry_ids,
    )
