"""Audit ledger enums."""

from enum import Enum


class AuditEventType(str, Enum):
    """
    Retention-relevant state changes recorded in the audit ledger.

    Groups:
    - POLICY_* / RULE_*: Retention configuration changes
    - LEGAL_HOLD_*: Hold lifecycle
    - FILE_*: Per-file lifecycle outcomes
    - DELETION_REQUEST_*: Work item lifecycle
    """

    # Retention configuration
    POLICY_CREATED = "POLICY_CREATED"
    POLICY_UPDATED = "POLICY_UPDATED"
    POLICY_DELETED = "POLICY_DELETED"
    RULE_CREATED = "RULE_CREATED"
    RULE_UPDATED = "RULE_UPDATED"
    RULE_DELETED = "RULE_DELETED"

    # Legal holds
    LEGAL_HOLD_CREATED = "LEGAL_HOLD_CREATED"
    LEGAL_HOLD_RELEASED = "LEGAL_HOLD_RELEASED"
    LEGAL_HOLD_EXPIRED = "LEGAL_HOLD_EXPIRED"

    # Files
    FILE_EXPIRED = "FILE_EXPIRED"
    FILE_DELETED = "FILE_DELETED"
    FILE_ANONYMIZED = "FILE_ANONYMIZED"
    FILE_MISSING = "FILE_MISSING"

    # Deletion requests
    DELETION_REQUEST_CREATED = "DELETION_REQUEST_CREATED"
    DELETION_REQUEST_PROCESSED = "DELETION_REQUEST_PROCESSED"
    DELETION_REQUEST_FAILED = "DELETION_REQUEST_FAILED"
    DELETION_REQUEST_HOLD_CONFLICT = "DELETION_REQUEST_HOLD_CONFLICT"
    DELETION_REQUEST_CANCELLED = "DELETION_REQUEST_CANCELLED"
    DELETION_REQUEST_RETRIED = "DELETION_REQUEST_RETRIED"
    DELETION_REQUEST_REQUEUED = "DELETION_REQUEST_REQUEUED"
