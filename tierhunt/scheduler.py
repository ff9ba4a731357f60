"""
Adaptive scheduler.

Learns from the outcomes of past invocations whether the current UTC hour is
worth attempting at all. History lives in the KeyValueStore under
`attempt_patterns` as a bounded list of AttemptContextRecords.

Skip rule: with at least `min_samples` records on file, take the outcome
records (success / capacity_failure) from the current UTC hour, keep the latest
`window_size` of them, and skip only when there are `window_size` of them and
every one is a capacity failure.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from tierhunt.store import KeyValueStore
from tierhunt.utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

STORE_KEY = "attempt_patterns"

DEFAULT_WINDOW_SIZE = 5
DEFAULT_MIN_SAMPLES = 10
DEFAULT_MAX_ENTRIES = 50
REDUCED_MAX_ENTRIES = 40
MAX_SERIALIZED_BYTES = 60000  # backing variable store caps documents at 64KB


class OutcomeType(str, Enum):
    """Kind of pattern record."""
    ATTEMPT = "attempt"
    SUCCESS = "success"
    CAPACITY_FAILURE = "capacity_failure"


OUTCOME_TYPES = frozenset({OutcomeType.SUCCESS, OutcomeType.CAPACITY_FAILURE})


@dataclass(frozen=True)
class ScheduleContext:
    """Time window classification of an invocation."""
    window: str
    description: str
    timestamp: datetime

    @property
    def label(self) -> str:
        return f"{self.window}|{self.description}"


@dataclass(frozen=True)
class AttemptContextRecord:
    """
    One entry of scheduling history.

    Attributes:
        context: Window label the invocation ran in
        timestamp: When it ran (UTC)
        type: attempt, success or capacity_failure
    """
    context: str
    timestamp: datetime
    type: OutcomeType

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "context": self.context,
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptContextRecord":
        """Deserialize from dictionary."""
        return cls(
            context=data.get("context", ""),
            timestamp=parse_timestamp(data["timestamp"]),
            type=OutcomeType(data["type"]),
        )


@dataclass
class PatternAnalysis:
    """Summary of scheduling history for reporting."""
    total: int = 0
    successes: int = 0
    capacity_failures: int = 0
    success_rate: float = 0.0
    successes_by_hour: dict[int, int] = field(default_factory=dict)
    recent_successes: int = 0
    recent_failures: int = 0
    context: Optional[ScheduleContext] = None
    recommendation: str = ""
    regional_tip: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "capacity_failures": self.capacity_failures,
            "success_rate": self.success_rate,
            "successes_by_hour": {f"{h:02d}": n for h, n in sorted(self.successes_by_hour.items())},
            "recent_successes": self.recent_successes,
            "recent_failures": self.recent_failures,
            "window": self.context.window if self.context else None,
            "recommendation": self.recommendation,
            "regional_tip": self.regional_tip,
        }


def classify_window(now: datetime) -> ScheduleContext:
    """
    Map a UTC time onto a scheduling window.

    02-07 UTC is the aggressive off-peak window (Singapore early afternoon).
    Weekend mornings 01-06 UTC get a boost. Everything else is peak.
    """
    hour = now.hour
    weekday = now.isoweekday()  # 1=Monday, 7=Sunday

    if 2 <= hour <= 7:
        return ScheduleContext("off_peak_aggressive", "10am-3pm SGT (low business activity)", now)
    if weekday in (6, 7) and 1 <= hour <= 6:
        return ScheduleContext("weekend_boost", "Weekend 9am-2pm SGT (lower demand)", now)
    return ScheduleContext("conservative_peak", "Peak business hours SGT", now)


def _regional_tip(region: str) -> str:
    if "ap-singapore" in region:
        return "Singapore region: the 02-07 UTC window targets SGT business off-hours"
    if region.startswith("us-"):
        return "US region: consider shifting windows toward US off-hours (UTC -4 to -8)"
    if region.startswith("eu-"):
        return "EU region: consider shifting windows toward European off-hours (UTC +0 to +2)"
    return "Unknown region: verify optimal time windows for your location"


def _trim(entries: list[dict[str, Any]], max_entries: int) -> list[dict[str, Any]]:
    entries = entries[-max_entries:]
    if len(json.dumps(entries)) > MAX_SERIALIZED_BYTES:
        logger.warning(
            f"Pattern data approaching size limit, reducing to {REDUCED_MAX_ENTRIES} entries",
            extra={"event": "patterns_trimmed"},
        )
        entries = entries[-REDUCED_MAX_ENTRIES:]
    return entries


class AdaptiveScheduler:
    """
    Decides whether an invocation should attempt provisioning at all.

    Args:
        store: Shared key-value store holding pattern history
        enabled: When False the scheduler never recommends skipping
        window_size: Same-hour outcomes that must all be failures to skip
        min_samples: History size required before any skip decision
        max_entries: History entries kept
        region: Region, used for reporting tips only
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        store: KeyValueStore,
        enabled: bool = True,
        window_size: int = DEFAULT_WINDOW_SIZE,
        min_samples: int = DEFAULT_MIN_SAMPLES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        region: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enabled = enabled
        self.window_size = window_size
        self.min_samples = min_samples
        self.max_entries = max_entries
        self.region = region
        self.clock = clock

    def current_context(self, now: Optional[datetime] = None) -> ScheduleContext:
        return classify_window(now or self.clock())

    def history(self) -> list[AttemptContextRecord]:
        """Stored records, oldest first. Malformed entries are dropped."""
        records = []
        for item in self.store.get(STORE_KEY) or []:
            try:
                records.append(AttemptContextRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed pattern entry {item!r}: {e}")
        return records

    def record_context(self, window_label: str, outcome: OutcomeType | str) -> Optional[AttemptContextRecord]:
        """
        Append a history entry.

        Args:
            window_label: Context label, usually ScheduleContext.label
            outcome: attempt, success or capacity_failure

        Returns:
            The recorded entry, or None when the scheduler is disabled
        """
        if not self.enabled:
            logger.debug("Pattern tracking disabled, not recording context")
            return None

        record = AttemptContextRecord(
            context=window_label,
            timestamp=self.clock(),
            type=OutcomeType(outcome),
        )
        entry = record.to_dict()
        self.store.update(
            STORE_KEY,
            lambda raw: _trim(list(raw or []) + [entry], self.max_entries),
        )
        logger.debug(
            f"Recorded {record.type.value} in {window_label}",
            extra={"event": "pattern_recorded", "metadata": entry},
        )
        return record

    def should_skip_this_invocation(self) -> bool:
        """
        Check whether history says this hour is hopeless.

        Returns:
            True if the latest window_size outcomes in the current UTC hour
            were all capacity failures
        """
        if not self.enabled:
            return False

        history = self.history()
        if len(history) < self.min_samples:
            logger.debug(
                f"Not enough pattern data ({len(history)}/{self.min_samples}) for a skip decision"
            )
            return False

        hour = self.clock().hour
        in_hour = [
            r for r in history
            if r.type in OUTCOME_TYPES and r.timestamp.hour == hour
        ][-self.window_size:]

        if len(in_hour) < self.window_size:
            return False

        if all(r.type == OutcomeType.CAPACITY_FAILURE for r in in_hour):
            logger.info(
                f"Adaptive skip: the last {self.window_size} outcomes in hour {hour:02d} UTC were capacity failures",
                extra={"event": "adaptive_skip", "metadata": {"hour": hour}},
            )
            return True

        return False

    def analyze(self) -> PatternAnalysis:
        """Summarize history: totals, success rate, hourly successes and a recommendation."""
        now = self.clock()
        history = self.history()
        analysis = PatternAnalysis(
            total=len(history),
            context=self.current_context(now),
            regional_tip=_regional_tip(self.region),
        )

        if not history:
            analysis.recommendation = "No historical pattern data yet, using baseline scheduling"
            return analysis

        recent_cutoff = now - timedelta(hours=24)
        for record in history:
            if record.type == OutcomeType.SUCCESS:
                analysis.successes += 1
                hour = record.timestamp.hour
                analysis.successes_by_hour[hour] = analysis.successes_by_hour.get(hour, 0) + 1
                if record.timestamp >= recent_cutoff:
                    analysis.recent_successes += 1
            elif record.type == OutcomeType.CAPACITY_FAILURE:
                analysis.capacity_failures += 1
                if record.timestamp >= recent_cutoff:
                    analysis.recent_failures += 1

        analysis.success_rate = round(analysis.successes * 100 / analysis.total, 1)

        if analysis.recent_failures > 5 and analysis.recent_successes == 0:
            analysis.recommendation = "High recent failure rate, consider adjusting time windows"
        elif analysis.recent_successes > 0:
            analysis.recommendation = "Recent success detected, current strategy is effective"
        else:
            analysis.recommendation = "Keep the current schedule"

        return analysis
