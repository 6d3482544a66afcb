"""Enum definitions for application constants."""

from retention_engine.db.enums.audit import AuditEventType
from retention_engine.db.enums.jobs import WorkerTask
from retention_engine.db.enums.retention import (
    AccessLevel,
    DecisionKind,
    DeletionAction,
    DeletionErrorKind,
    DeletionRequestStatus,
    DeletionRequestType,
    FileStatus,
    HoldReleaseReason,
    HoldScopeKind,
    RuleAction,
)

__all__ = [
    "AccessLevel",
    "AuditEventType",
    "DecisionKind",
    "DeletionAction",
    "DeletionErrorKind",
    "DeletionRequestStatus",
    "DeletionRequestType",
    "FileStatus",
    "HoldReleaseReason",
    "HoldScopeKind",
    "RuleAction",
    "WorkerTask",
]
