"""
Background worker for the retention engine.

Usage:
    python -m retention_engine.worker

Every tick runs, in order: hold expiry sweep, expiration pass, stale-claim
reaper, automatic retry sweep, and the executor. Several workers may run at
once; claims and unique indexes keep them from stepping on each other.
"""

import asyncio
import logging
import os
import socket

from sqlalchemy.orm import Session, sessionmaker

from retention_engine.core.clock import Clock, system_clock
from retention_engine.core.config import settings
from retention_engine.core.structured_logging import build_log_context, configure_logging
from retention_engine.db.session import SessionLocal
from retention_engine.jobs.registry import TASK_HANDLERS, WorkerContext
from retention_engine.services.metrics import default_metrics_sink
from retention_engine.services.storage import get_storage_backend

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return settings.WORKER_ID or f"{socket.gethostname()}:{os.getpid()}"


def build_context(clock: Clock = system_clock) -> WorkerContext:
    return WorkerContext(
        storage=get_storage_backend(),
        clock=clock,
        metrics=default_metrics_sink,
        worker_id=default_worker_id(),
    )


async def run_tick(ctx: WorkerContext, session_factory: sessionmaker[Session] = SessionLocal) -> dict[str, bool]:
    """Run every task once. A failing task is logged and does not stop the others."""
    outcome: dict[str, bool] = {}
    for task, handler in TASK_HANDLERS.items():
        with session_factory() as db:
            try:
                await handler(db, ctx)
                outcome[task] = True
            except Exception:
                db.rollback()
                logger.exception(
                    "Worker task %s failed",
                    task,
                    extra=build_log_context(worker_id=ctx.worker_id, run=task),
                )
                outcome[task] = False
    return outcome


async def worker_loop(ctx: WorkerContext | None = None) -> None:
    """Main worker loop - runs all retention tasks every poll interval."""
    ctx = ctx or build_context()
    logger.info(
        "Worker %s starting (poll interval: %ss, storage: %s)",
        ctx.worker_id,
        settings.WORKER_POLL_INTERVAL,
        settings.STORAGE_BACKEND,
    )
    while True:
        await run_tick(ctx)
        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    """Entry point for the worker."""
    configure_logging(settings.LOG_LEVEL)
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
