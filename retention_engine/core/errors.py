"""Retention engine exceptions."""

from __future__ import annotations

from uuid import UUID


class RetentionError(Exception):
    """Base exception for retention engine errors."""

    pass


class NotFoundError(RetentionError):
    """Requested policy, rule, hold, file or deletion request does not exist."""

    pass


class RuleValidationError(RetentionError, ValueError):
    """A rule condition or action is malformed. Raised at save time only."""

    pass


class HoldConflictError(RetentionError):
    """A destructive action was attempted on a file under legal hold."""

    def __init__(self, holds: list[tuple[UUID, str]], file_ids: list[UUID] | None = None):
        self.holds = holds
        self.file_ids = file_ids or []
        names = ", ".join(f"{name} ({hold_id})" for hold_id, name in holds)
        super().__init__(f"Cannot delete files under legal hold: {names}")


class StorageFailure(RetentionError):
    """The storage collaborator failed or timed out. Retryable."""

    pass


class InvalidTransitionError(RetentionError):
    """Deletion request status change is not an edge of the state machine."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Illegal deletion request transition: {from_status} -> {to_status}")


class OpenRequestConflictError(RetentionError):
    """A file targeted by the request already has an open deletion request."""

    pass


class RetryLimitExceededError(RetentionError):
    """The deletion request has used all of its attempts."""

    pass


class InvalidRequestError(RetentionError, ValueError):
    """A submitted deletion request or hold is malformed."""

    pass


class DuplicatePolicyError(RetentionError):
    """An active policy already exists for the (entity type, jurisdiction) scope."""

    pass


class HoldAlreadyReleasedError(RetentionError):
    """The legal hold is no longer active."""

    pass
