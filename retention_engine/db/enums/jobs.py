"""Worker task enums."""

from enum import Enum


class WorkerTask(str, Enum):
    """Periodic tasks run by the background worker, in execution order."""

    HOLD_EXPIRY_SWEEP = "hold_expiry_sweep"
    EXPIRATION_SWEEP = "expiration_sweep"
    REAP_STALE_CLAIMS = "reap_stale_claims"
    RETRY_FAILED = "retry_failed"
    EXECUTE_DELETIONS = "execute_deletions"
