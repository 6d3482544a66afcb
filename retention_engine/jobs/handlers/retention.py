"""Retention worker task handlers."""

from __future__ import annotations

import logging

from retention_engine.services import executor, scheduler

logger = logging.getLogger(__name__)


async def process_hold_expiry_sweep(db, ctx) -> None:
    """Deactivate expired legal holds and cascade their files."""
    expired = scheduler.process_expired_holds(db, clock=ctx.clock, metrics=ctx.metrics)
    if expired:
        logger.info("Hold expiry sweep: %s holds expired", expired)


async def process_expiration_sweep(db, ctx) -> None:
    scheduler.run_expiration_pass(db, clock=ctx.clock, metrics=ctx.metrics)


async def process_reap_stale_claims(db, ctx) -> None:
    counts = executor.reap_stale_claims(db, clock=ctx.clock)
    if counts["requeued"] or counts["failed"]:
        ctx.metrics.record("reaper", counts)


async def process_retry_failed(db, ctx) -> None:
    requeued = executor.requeue_failed_requests(db, clock=ctx.clock)
    if requeued:
        ctx.metrics.record("retry_sweep", {"requeued": requeued})


async def process_execute_deletions(db, ctx) -> None:
    """Drain due deletion requests (bounded by EXECUTOR_BATCH_SIZE)."""
    await executor.run_once(
        db,
        storage=ctx.storage,
        worker_id=ctx.worker_id,
        clock=ctx.clock,
        metrics=ctx.metrics,
    )
