"""Schemas for retention policies, legal holds and deletion requests."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from retention_engine.db.enums import (
    DecisionKind,
    DeletionAction,
    DeletionRequestType,
    RuleAction,
)


# =============================================================================
# Policies and rules
# =============================================================================

class RetentionPolicyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    entity_type: str = Field(min_length=1, max_length=50)
    jurisdiction: str | None = Field(default=None, max_length=20)
    retention_period_days: int = Field(ge=0)
    description: str | None = None
    legal_basis: str | None = None
    is_active: bool = True
    created_by: str | None = None


class RetentionPolicyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    retention_period_days: int | None = Field(default=None, ge=0)
    description: str | None = None
    legal_basis: str | None = None
    is_active: bool | None = None
    performed_by: str | None = None


class RetentionRuleCreate(BaseModel):
    name: str | None = None
    condition: dict[str, Any]
    action: RuleAction
    priority: int = 0
    retention_period_days: int | None = Field(default=None, ge=0)
    is_active: bool = True
    performed_by: str | None = None


class RetentionRuleUpdate(BaseModel):
    name: str | None = None
    condition: dict[str, Any] | None = None
    action: RuleAction | None = None
    priority: int | None = None
    retention_period_days: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    performed_by: str | None = None


class RetentionRuleRead(BaseModel):
    id: UUID
    policy_id: UUID
    name: str | None
    condition: dict[str, Any]
    action: str
    priority: int
    retention_period_days: int | None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RetentionPolicyRead(BaseModel):
    id: UUID
    name: str
    entity_type: str
    jurisdiction: str | None
    retention_period_days: int
    is_active: bool
    description: str | None
    legal_basis: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    rules: list[RetentionRuleRead] = []

    model_config = {"from_attributes": True}


# =============================================================================
# Legal holds
# =============================================================================

class LegalHoldCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    scope: dict[str, Any]
    description: str | None = None
    expires_at: datetime | None = None
    created_by: str | None = None


class LegalHoldRelease(BaseModel):
    released_by: str | None = None


class LegalHoldRead(BaseModel):
    id: UUID
    name: str
    description: str | None
    scope_kind: str
    scope: dict[str, Any]
    is_active: bool
    created_by: str | None
    created_at: datetime
    expires_at: datetime | None
    released_by: str | None
    released_at: datetime | None
    release_reason: str | None

    model_config = {"from_attributes": True}


class HoldReleaseRead(BaseModel):
    hold: LegalHoldRead
    files: int
    requests_created: int
    requests_existing: int
    retained: int


# =============================================================================
# Deletion requests
# =============================================================================

class DeletionRequestCreate(BaseModel):
    request_type: DeletionRequestType
    entity_type: str = Field(min_length=1, max_length=50)
    entity_id: str = Field(min_length=1, max_length=255)
    file_ids: list[UUID] | None = None
    action: DeletionAction = DeletionAction.DELETE
    requested_by: str | None = None


class DeletionRequestCreated(BaseModel):
    id: UUID
    status: str

    model_config = {"from_attributes": True}


class DeletionRequestRead(BaseModel):
    id: UUID
    request_type: str
    action: str
    entity_type: str
    entity_id: str | None
    requested_by: str | None
    status: str
    scheduled_at: datetime
    attempts: int
    max_attempts: int
    files_deleted: int
    error_kind: str | None
    error_message: str | None
    processed_at: datetime | None
    policy_id: UUID | None
    rule_id: UUID | None
    hold_id: UUID | None
    file_ids: list[UUID]
    request_metadata: dict[str, Any] = Field(serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OperatorAction(BaseModel):
    performed_by: str | None = None


# =============================================================================
# Decisions, audit, reports
# =============================================================================

class DecisionRead(BaseModel):
    file_id: UUID
    kind: DecisionKind
    reason: str
    expires_at: datetime | None = None
    policy_id: UUID | None = None
    rule_id: UUID | None = None
    hold_ids: list[UUID] = []


class AuditEntryRead(BaseModel):
    id: UUID
    event_type: str
    file_id: UUID | None
    entity_type: str | None
    entity_id: str | None
    deletion_request_id: UUID | None
    policy_id: UUID | None
    rule_id: UUID | None
    hold_id: UUID | None
    performed_by: str
    details: dict[str, Any] | None
    entry_hash: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class FileRetentionAuditRead(BaseModel):
    file_id: UUID
    current_status: str
    compliance_status: str
    decision: DecisionRead
    policy: RetentionPolicyRead | None
    legal_holds: list[LegalHoldRead]
    deletion_requests: list[DeletionRequestRead]
    history: list[AuditEntryRead]
    recommendations: list[str]


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class RetentionReportRead(BaseModel):
    period: ReportPeriod
    summary: dict[str, int]
    by_entity_type: dict[str, dict[str, int]]
    legal_holds: dict[str, int]
    deletion_requests: dict[str, Any]


class AuditVerificationRead(BaseModel):
    valid: bool
    entries_checked: int
    broken_entry_ids: list[UUID]
