"""Metrics / notification sink for per-run counts (observability only)."""

from __future__ import annotations

import logging
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def record(self, run: str, counts: Mapping[str, int]) -> None: ...


class LoggingMetricsSink:
    """Emit run counts as a log line; never raises."""

    def record(self, run: str, counts: Mapping[str, int]) -> None:
        summary = " ".join(f"{key}={value}" for key, value in sorted(counts.items()))
        logger.info("retention run=%s %s", run, summary, extra={"run": run, "counts": dict(counts)})


default_metrics_sink = LoggingMetricsSink()
