"""
Performance and zone success-rate telemetry.

Metrics are appended as JSON lines to `metrics.jsonl` in the state directory.
Each attempt process appends whole lines with a single O_APPEND write, so
concurrent writers never interleave. The orchestrator compacts the file to the
most recent `max_lines` entries after each run.

Metric types:
    ZONE_RESULT          label=zone, value 1 (success) or 0, annotation=classification
    API_RESPONSE_TIME    label=operation, value in ms, annotation=status
    EXECUTION_PHASE      label=phase, value in seconds, annotation=status
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from tierhunt.locking import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_SECONDS, FileLock
from tierhunt.utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

METRICS_FILE_NAME = "metrics.jsonl"
DEFAULT_MAX_LINES = 5000

ZONE_RESULT = "ZONE_RESULT"
API_RESPONSE_TIME = "API_RESPONSE_TIME"
EXECUTION_PHASE = "EXECUTION_PHASE"

SLOW_API_MS = 5000
SLOW_PARALLEL_SECONDS = 30


@dataclass(frozen=True)
class PerformanceMetric:
    """A single telemetry sample."""
    metric_type: str
    label: str
    value: float
    annotation: str = ""
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_type": self.metric_type,
            "label": self.label,
            "value": self.value,
            "annotation": self.annotation,
            "timestamp": format_timestamp(self.timestamp) if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PerformanceMetric":
        return cls(
            metric_type=data["metric_type"],
            label=data["label"],
            value=float(data["value"]),
            annotation=data.get("annotation") or "",
            timestamp=parse_timestamp(data["timestamp"]) if data.get("timestamp") else None,
        )


@dataclass
class ZoneStats:
    """Success-rate summary for one zone."""
    zone: str
    attempts: int = 0
    successes: int = 0
    failures_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0


class MetricsRecorder:
    """
    Appends metrics to a JSON lines file and summarizes them.

    Args:
        path: Metrics file (usually state_dir / metrics.jsonl)
        max_lines: Entries kept by compact()
        lock_timeout: Seconds to wait for the metrics file lock
        stale_lock_seconds: Age after which that lock is reclaimed
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        path: Path,
        max_lines: int = DEFAULT_MAX_LINES,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_lock_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.path = Path(path)
        self.max_lines = max_lines
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self.clock = clock

    @property
    def lock_file(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def _lock(self) -> FileLock:
        return FileLock(self.lock_file, timeout=self.lock_timeout, stale_seconds=self.stale_lock_seconds)

    def record(self, metric_type: str, label: str, value: float, annotation: str = "") -> PerformanceMetric:
        """
        Append one metric.

        Holds the lock compact() takes while appending.

        Raises:
            LockTimeoutError: If the metrics file lock could not be acquired
        """
        metric = PerformanceMetric(
            metric_type=metric_type,
            label=label,
            value=value,
            annotation=annotation,
            timestamp=self.clock(),
        )
        line = (json.dumps(metric.to_dict()) + "\n").encode("utf-8")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock():
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
            try:
                os.write(fd, line)
            finally:
                os.close(fd)

        logger.debug(
            f"PERF_METRIC {metric_type} {label}={value} {annotation}".rstrip(),
            extra={"event": "metric", "metadata": metric.to_dict()},
        )
        return metric

    def record_zone_result(self, zone: str, success: bool, classification: Optional[str] = None) -> PerformanceMetric:
        return self.record(ZONE_RESULT, zone, 1 if success else 0, "" if success else (classification or ""))

    def record_api_response_time(self, operation: str, response_time_ms: float, status: str = "success") -> PerformanceMetric:
        if response_time_ms > SLOW_API_MS:
            logger.warning(f"Slow API response detected: {operation} took {response_time_ms:.0f}ms")
        return self.record(API_RESPONSE_TIME, operation, response_time_ms, status)

    def record_execution_phase(self, phase: str, duration_seconds: float, status: str = "completed") -> PerformanceMetric:
        if phase == "parallel_execution" and duration_seconds > SLOW_PARALLEL_SECONDS:
            logger.warning(
                f"Parallel execution took {duration_seconds:.1f}s (>{SLOW_PARALLEL_SECONDS}s may indicate issues)"
            )
        return self.record(EXECUTION_PHASE, phase, duration_seconds, status)

    def read(self, metric_type: Optional[str] = None) -> list[PerformanceMetric]:
        """All readable metrics, oldest first, optionally filtered by type."""
        if not self.path.exists():
            return []

        metrics = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    metric = PerformanceMetric.from_dict(json.loads(line))
                except (ValueError, KeyError, TypeError):
                    logger.debug(f"Skipping unreadable metrics line: {line[:80]}")
                    continue
                if metric_type is None or metric.metric_type == metric_type:
                    metrics.append(metric)
        return metrics

    def zone_summary(self) -> dict[str, ZoneStats]:
        """Per-zone attempt counts, successes and failure breakdown."""
        summary: dict[str, ZoneStats] = {}
        for metric in self.read(ZONE_RESULT):
            stats = summary.setdefault(metric.label, ZoneStats(zone=metric.label))
            stats.attempts += 1
            if metric.value >= 1:
                stats.successes += 1
            elif metric.annotation:
                stats.failures_by_type[metric.annotation] = stats.failures_by_type.get(metric.annotation, 0) + 1
        return summary

    def optimal_zone(self) -> Optional[str]:
        """Zone with the highest historical success rate, or None without data."""
        summary = self.zone_summary()
        if not summary:
            return None
        # Ties go to the zone with more attempts, then name for determinism.
        best = max(summary.values(), key=lambda s: (s.success_rate, s.attempts, s.zone))
        return best.zone

    def compact(self) -> int:
        """
        Keep only the most recent max_lines entries.

        Returns:
            Number of entries dropped
        """
        if not self.path.exists():
            return 0

        with self._lock():
            with open(self.path, "r") as f:
                lines = [line for line in f if line.strip()]
            if len(lines) <= self.max_lines:
                return 0

            kept = lines[-self.max_lines:]
            tmp = self.path.with_name(self.path.name + ".compact")
            with open(tmp, "w") as f:
                f.writelines(kept)
            os.replace(tmp, self.path)

        dropped = len(lines) - len(kept)
        logger.debug(f"Compacted metrics file, dropped {dropped} entries")
        return dropped
