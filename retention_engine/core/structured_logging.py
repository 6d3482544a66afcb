"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any
from uuid import UUID


def build_log_context(
    *,
    request_id: UUID | str | None = None,
    file_id: UUID | str | None = None,
    hold_id: UUID | str | None = None,
    policy_id: UUID | str | None = None,
    worker_id: str | None = None,
    run: str | None = None,
) -> dict[str, Any]:
    """Return an ID-only log context dict for use as ``extra``."""
    context: dict[str, Any] = {}
    if request_id:
        context["deletion_request_id"] = str(request_id)
    if file_id:
        context["file_id"] = str(file_id)
    if hold_id:
        context["hold_id"] = str(hold_id)
    if policy_id:
        context["policy_id"] = str(policy_id)
    if worker_id:
        context["worker_id"] = worker_id
    if run:
        context["run"] = run
    return context


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
