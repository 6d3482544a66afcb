"""Retention, legal hold and file lifecycle enums."""

from enum import Enum


class FileStatus(str, Enum):
    """
    File lifecycle status.

    DELETED and ANONYMIZED are terminal and written only by this engine.
    """

    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"
    DELETED = "DELETED"
    ANONYMIZED = "ANONYMIZED"

    @classmethod
    def terminal(cls) -> tuple["FileStatus", ...]:
        return (cls.DELETED, cls.ANONYMIZED)


class AccessLevel(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    RESTRICTED = "RESTRICTED"


class RuleAction(str, Enum):
    """Action a retention rule applies once its window elapses."""

    DELETE = "DELETE"
    ANONYMIZE = "ANONYMIZE"
    ARCHIVE = "ARCHIVE"
    EXTEND = "EXTEND"


class DeletionAction(str, Enum):
    """Destructive operation carried by a deletion request."""

    DELETE = "DELETE"
    ANONYMIZE = "ANONYMIZE"


class DeletionRequestType(str, Enum):
    POLICY_EXPIRATION = "POLICY_EXPIRATION"
    USER_REQUEST = "USER_REQUEST"
    GDPR_REQUEST = "GDPR_REQUEST"
    LEGAL_HOLD_RELEASE = "LEGAL_HOLD_RELEASE"

    @classmethod
    def explicit(cls) -> tuple["DeletionRequestType", ...]:
        """Request types submitted by people rather than computed."""
        return (cls.USER_REQUEST, cls.GDPR_REQUEST)


class DeletionRequestStatus(str, Enum):
    """
    Deletion request state machine.

    PENDING -> PROCESSING -> COMPLETED | FAILED; FAILED -> PENDING on retry.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def open(cls) -> tuple["DeletionRequestStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)


class DeletionErrorKind(str, Enum):
    """Why a deletion request ended FAILED."""

    HOLD_CONFLICT = "hold_conflict"
    STORAGE_FAILURE = "storage_failure"
    CANCELLED = "cancelled"
    STALE_CLAIM = "stale_claim"
    INTERNAL_ERROR = "internal_error"


class DecisionKind(str, Enum):
    """Evaluator outcome for one file."""

    RETAIN = "RETAIN"
    EXPIRE_AT = "EXPIRE_AT"
    DELETE_NOW = "DELETE_NOW"
    ANONYMIZE = "ANONYMIZE"


class HoldScopeKind(str, Enum):
    ALL_OF_TYPE = "all_of_type"
    SPECIFIC_ENTITIES = "specific_entities"
    SPECIFIC_FILES = "specific_files"


class HoldReleaseReason(str, Enum):
    RELEASED = "released"
    EXPIRED = "expired"
