"""SQLAlchemy ORM models."""

from retention_engine.db.models.audit import AuditEntry
from retention_engine.db.models.deletion import DeletionRequest, DeletionRequestTarget
from retention_engine.db.models.files import FileMetadata
from retention_engine.db.models.retention import LegalHold, RetentionPolicy, RetentionRule

__all__ = [
    "AuditEntry",
    "DeletionRequest",
    "DeletionRequestTarget",
    "FileMetadata",
    "LegalHold",
    "RetentionPolicy",
    "RetentionRule",
]
