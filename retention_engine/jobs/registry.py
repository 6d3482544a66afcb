"""Worker task handler registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

from retention_engine.core.clock import Clock
from retention_engine.db.enums import WorkerTask
from retention_engine.jobs.handlers import retention
from retention_engine.services.metrics import MetricsSink
from retention_engine.services.storage import StorageBackend


@dataclass
class WorkerContext:
    """Collaborators shared by every task of one worker process."""

    storage: StorageBackend
    clock: Clock
    metrics: MetricsSink
    worker_id: str


TaskHandler = Callable[[object, WorkerContext], Awaitable[None]]

# Insertion order is execution order within one tick
TASK_HANDLERS: Mapping[str, TaskHandler] = {
    WorkerTask.HOLD_EXPIRY_SWEEP.value: retention.process_hold_expiry_sweep,
    WorkerTask.EXPIRATION_SWEEP.value: retention.process_expiration_sweep,
    WorkerTask.REAP_STALE_CLAIMS.value: retention.process_reap_stale_claims,
    WorkerTask.RETRY_FAILED.value: retention.process_retry_failed,
    WorkerTask.EXECUTE_DELETIONS.value: retention.process_execute_deletions,
}


def resolve_task_handler(task: str) -> TaskHandler:
    handler = TASK_HANDLERS.get(task)
    if not handler:
        raise ValueError(f"Unknown worker task: {task}")
    return handler
