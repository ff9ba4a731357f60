"""
Per-zone circuit breaker.

A zone that keeps failing is skipped until it cools down:

    CLOSED (failures < threshold) -> OPEN (failures >= threshold)
    OPEN -> CLOSED on a recorded success, or once reset_after has elapsed
    since the last failure.

There is no half-open state. Records live in the KeyValueStore under
`zone_failures` as a bounded JSON list so concurrent attempt processes share
them; all mutations go through KeyValueStore.update().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from tierhunt.store import KeyValueStore
from tierhunt.utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

STORE_KEY = "zone_failures"

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_AFTER = timedelta(hours=24)
DEFAULT_MAX_RECORDS = 20


@dataclass(frozen=True)
class ZoneFailureRecord:
    """
    Consecutive failure count for one zone.

    Attributes:
        zone: Availability domain name
        failures: Consecutive failures since the last success or reset
        last_failure: When the most recent failure was recorded
    """
    zone: str
    failures: int
    last_failure: datetime

    def __post_init__(self):
        if self.failures < 0:
            raise ValueError("failures must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "zone": self.zone,
            "failures": self.failures,
            "last_failure": format_timestamp(self.last_failure),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ZoneFailureRecord":
        """Deserialize from dictionary."""
        return cls(
            zone=data["zone"],
            failures=int(data["failures"]),
            last_failure=parse_timestamp(data["last_failure"]),
        )


def _load_records(raw: Optional[Any]) -> list[ZoneFailureRecord]:
    records = []
    for item in raw or []:
        try:
            records.append(ZoneFailureRecord.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed zone failure record {item!r}: {e}")
    return records


class CircuitBreaker:
    """
    Zone-level circuit breaker backed by a KeyValueStore.

    Args:
        store: Shared key-value store
        failure_threshold: Failures at which a zone is skipped
        reset_after: Cool-down after the last failure
        max_records: Most recent records kept in the store
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        store: KeyValueStore,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_after: timedelta = DEFAULT_RESET_AFTER,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self.max_records = max_records
        self.clock = clock

    def records(self) -> list[ZoneFailureRecord]:
        """All stored records, oldest first."""
        return _load_records(self.store.get(STORE_KEY))

    def get_record(self, zone: str) -> Optional[ZoneFailureRecord]:
        for record in self.records():
            if record.zone == zone:
                return record
        return None

    def _expired(self, record: ZoneFailureRecord, now: datetime) -> bool:
        return now - record.last_failure > self.reset_after

    def should_skip(self, zone: str) -> bool:
        """
        Check whether a zone's breaker is open.

        A record whose cool-down has elapsed is removed from the store and the
        zone is treated as closed.

        Args:
            zone: Availability domain name

        Returns:
            True if the zone should not be attempted this cycle
        """
        now = self.clock()
        record = self.get_record(zone)
        if record is None:
            return False

        if self._expired(record, now):
            self._remove(zone, only_if_expired_at=now)
            logger.info(
                f"Circuit breaker reset for {zone} after cool-down",
                extra={"event": "breaker_reset", "zone": zone, "metadata": {"failures": record.failures}},
            )
            return False

        if record.failures >= self.failure_threshold:
            logger.info(
                f"Circuit breaker open for {zone} ({record.failures} consecutive failures)",
                extra={"event": "breaker_open", "zone": zone, "metadata": {"failures": record.failures}},
            )
            return True

        return False

    def record_failure(self, zone: str) -> ZoneFailureRecord:
        """
        Increment a zone's failure count.

        A record past its cool-down restarts from zero.

        Returns:
            The updated record
        """
        now = self.clock()
        result: dict[str, ZoneFailureRecord] = {}

        def apply(raw):
            records = _load_records(raw)
            previous = next((r for r in records if r.zone == zone), None)
            failures = 1
            if previous is not None and not self._expired(previous, now):
                failures = previous.failures + 1
            updated = ZoneFailureRecord(zone=zone, failures=failures, last_failure=now)
            result["record"] = updated
            records = [r for r in records if r.zone != zone] + [updated]
            records = records[-self.max_records:]
            return [r.to_dict() for r in records]

        self.store.update(STORE_KEY, apply)
        record = result["record"]
        logger.info(
            f"Recorded failure {record.failures}/{self.failure_threshold} for {zone}",
            extra={"event": "breaker_failure", "zone": zone, "metadata": {"failures": record.failures}},
        )
        return record

    def record_success(self, zone: str) -> None:
        """Remove a zone's record regardless of timing."""
        self._remove(zone)

    def reset(self, zone: Optional[str] = None) -> None:
        """
        Clear one zone's record, or all records when zone is None.
        """
        if zone is None:
            self.store.update(STORE_KEY, lambda raw: None)
            logger.info("Circuit breaker records cleared", extra={"event": "breaker_cleared"})
        else:
            self._remove(zone)

    def get_available_zones(self, candidates: Iterable[str]) -> list[str]:
        """
        Filter candidate zones down to those whose breaker is closed.

        Args:
            candidates: Zones in preference order

        Returns:
            Eligible zones in the same order; empty means no eligible zones
        """
        available = [zone for zone in candidates if not self.should_skip(zone)]
        if not available:
            logger.warning(
                "All zones are circuit-broken",
                extra={"event": "no_eligible_zones"},
            )
        return available

    def _remove(self, zone: str, only_if_expired_at: Optional[datetime] = None) -> None:
        def apply(raw):
            records = _load_records(raw)
            kept = []
            for r in records:
                if r.zone != zone:
                    kept.append(r)
                elif only_if_expired_at is not None and not self._expired(r, only_if_expired_at):
                    # A fresh failure landed after our read.
                    kept.append(r)
            return [r.to_dict() for r in kept] if kept else None

        self.store.update(STORE_KEY, apply)
