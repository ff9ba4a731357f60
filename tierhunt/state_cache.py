"""
State cache - remembers which instances were already created.

The cache prevents redundant provisioning calls: once an instance is recorded
as created/verified/running, later runs skip it until the cache expires.

State file layout (JSON envelope, one per region):
    {
        "version": "v1",
        "region": "ap-singapore-1",
        "created_at": "...",
        "updated_at": "...",
        "instances": {
            "a1-flex-sg": {"name": ..., "instance_id": ..., "status": ..., ...}
        }
    }

Every mutation holds the state file's FileLock across its read-modify-write
and writes atomically. The lock is never held across a provisioning call.
"""

import hashlib
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from tierhunt.errors import InvalidTransitionError
from tierhunt.locking import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_SECONDS, FileLock
from tierhunt.utils import atomic_write_json, format_timestamp, parse_timestamp, read_json, utcnow

logger = logging.getLogger(__name__)

CACHE_VERSION = "v1"
STATE_FILE_NAME = "instance-state.json"
DEFAULT_TTL_HOURS = 24
MIN_TTL_HOURS = 1
MAX_TTL_HOURS = 168  # 7 days, the CI cache retention limit
HIGH_CONTENTION_TTL_MULTIPLIER = 0.5
HIGH_CONTENTION_REGIONS = (
    "ap-singapore-1",
    "us-ashburn-1",
    "us-phoenix-1",
    "eu-frankfurt-1",
)


class InstanceStatus(str, Enum):
    """Lifecycle status of a cached instance."""
    CREATED = "created"
    VERIFIED = "verified"
    RUNNING = "running"
    FAILED = "failed"
    TERMINATED = "terminated"


# Statuses that mean "already provisioned, do not create again".
PRESENT_STATUSES = frozenset({
    InstanceStatus.CREATED,
    InstanceStatus.VERIFIED,
    InstanceStatus.RUNNING,
})

_FORWARD_ORDER = (InstanceStatus.CREATED, InstanceStatus.VERIFIED, InstanceStatus.RUNNING)
_END_STATES = frozenset({InstanceStatus.FAILED, InstanceStatus.TERMINATED})


def is_allowed_transition(current: InstanceStatus, requested: InstanceStatus) -> bool:
    """
    Check an instance status change.

    Allowed: re-recording the same status, forward progress
    created -> verified -> running (skipping ahead is fine), any status to
    failed/terminated, and failed/terminated back to created.
    """
    if current == requested:
        return True
    if requested in _END_STATES:
        return True
    if current in _END_STATES:
        return requested == InstanceStatus.CREATED
    return _FORWARD_ORDER.index(requested) > _FORWARD_ORDER.index(current)


@dataclass(frozen=True)
class InstanceStateEntry:
    """
    Cached knowledge about one instance.

    Attributes:
        name: Instance display name (cache key)
        instance_id: Provider identifier returned at creation
        status: Lifecycle status
        created_at: When the instance was first recorded as created
        last_verified_at: When the status was last confirmed
        shape: Compute shape, if known
        region: Region the instance lives in
    """
    name: str
    instance_id: str
    status: InstanceStatus
    created_at: datetime
    last_verified_at: datetime
    shape: str = ""
    region: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "name": self.name,
            "instance_id": self.instance_id,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "last_verified_at": format_timestamp(self.last_verified_at),
            "shape": self.shape,
            "region": self.region,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstanceStateEntry":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            instance_id=data["instance_id"],
            status=InstanceStatus(data["status"]),
            created_at=parse_timestamp(data["created_at"]),
            last_verified_at=parse_timestamp(data["last_verified_at"]),
            shape=data.get("shape", ""),
            region=data.get("region", ""),
        )


@dataclass
class CacheEnvelope:
    """Versioned container for all cached instance entries of a region."""
    version: str
    region: str
    created_at: datetime
    updated_at: datetime
    instances: dict[str, InstanceStateEntry] = field(default_factory=dict)

    @classmethod
    def empty(cls, region: str, now: datetime) -> "CacheEnvelope":
        return cls(version=CACHE_VERSION, region=region, created_at=now, updated_at=now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "version": self.version,
            "region": self.region,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "instances": {name: entry.to_dict() for name, entry in self.instances.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEnvelope":
        """
        Deserialize from dictionary.

        Raises:
            ValueError: If the document is not a valid envelope of this version
        """
        if not isinstance(data, dict):
            raise ValueError("state document is not an object")
        if data.get("version") != CACHE_VERSION:
            raise ValueError(
                f"state version {data.get('version')!r} does not match {CACHE_VERSION!r}"
            )
        instances_raw = data.get("instances", {})
        if not isinstance(instances_raw, dict):
            raise ValueError("'instances' is not an object")

        try:
            instances = {
                name: InstanceStateEntry.from_dict(entry)
                for name, entry in instances_raw.items()
            }
            return cls(
                version=data["version"],
                region=data.get("region", ""),
                created_at=parse_timestamp(data["created_at"]),
                updated_at=parse_timestamp(data["updated_at"]),
                instances=instances,
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed state document: {e}") from e


def generate_cache_key(
    region: str,
    on: Optional[date] = None,
    version: str = CACHE_VERSION,
) -> str:
    """
    Derive the external cache key for a region and day.

    The region is hashed so raw identifiers are not exposed in cache names.

    Returns:
        oci-instances-{sha256(region)[:8]}-{version}-{YYYY-MM-DD}
    """
    on = on or utcnow().date()
    region_hash = hashlib.sha256(region.encode("utf-8")).hexdigest()[:8]
    return f"oci-instances-{region_hash}-{version}-{on.isoformat()}"


def cache_restore_keys(
    region: str,
    on: Optional[date] = None,
    version: str = CACHE_VERSION,
) -> list[str]:
    """Restore keys for the CI cache step: today, yesterday, then the version prefix."""
    on = on or utcnow().date()
    today = generate_cache_key(region, on, version)
    yesterday = generate_cache_key(region, on - timedelta(days=1), version)
    prefix = today[: -len(on.isoformat())]
    return [today, yesterday, prefix]


class StateCacheManager:
    """
    Lock-protected instance state cache.

    Args:
        state_file: Path to the JSON state file
        region: Region the cache belongs to
        enabled: When False every instance is eligible for creation
        ttl_hours: Base expiry for the whole envelope
        high_contention_regions: Regions whose TTL is halved
        lock_timeout: Seconds to wait for the state lock
        stale_lock_seconds: Age at which a held lock is reclaimed
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        state_file: Path,
        region: str,
        enabled: bool = True,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        high_contention_regions: Iterable[str] = HIGH_CONTENTION_REGIONS,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_lock_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state_file = Path(state_file)
        self.region = region
        self.enabled = enabled
        self.ttl_hours = ttl_hours
        self.high_contention_regions = frozenset(high_contention_regions)
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self.clock = clock

    @property
    def lock_file(self) -> Path:
        return self.state_file.with_name(self.state_file.name + ".lock")

    def _lock(self) -> FileLock:
        return FileLock(
            self.lock_file,
            timeout=self.lock_timeout,
            stale_seconds=self.stale_lock_seconds,
        )

    def effective_ttl_hours(self) -> float:
        """Configured TTL, halved (minimum 1 h) for high-contention regions."""
        if self.region in self.high_contention_regions:
            return max(MIN_TTL_HOURS, self.ttl_hours * HIGH_CONTENTION_TTL_MULTIPLIER)
        return float(self.ttl_hours)

    def is_expired(self, envelope: CacheEnvelope, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return now - envelope.updated_at > timedelta(hours=self.effective_ttl_hours())

    def _read_envelope(self) -> Optional[CacheEnvelope]:
        """Read the envelope from disk; None if missing, corrupt or of another version."""
        try:
            data = read_json(self.state_file)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(
                f"State file is corrupt, reinitializing: {e}",
                extra={"event": "state_corrupt", "metadata": {"state_file": str(self.state_file)}},
            )
            return None

        if data is None:
            return None

        try:
            return CacheEnvelope.from_dict(data)
        except ValueError as e:
            logger.warning(
                f"State file is invalid, reinitializing: {e}",
                extra={"event": "state_invalid", "metadata": {"state_file": str(self.state_file)}},
            )
            return None

    def load(self) -> CacheEnvelope:
        """
        Current envelope, as a reader would see it.

        Returns an empty envelope when the file is missing, invalid, expired or
        belongs to another region. Nothing is written.
        """
        now = self.clock()
        envelope = self._read_envelope()
        if envelope is None or envelope.region != self.region or self.is_expired(envelope, now):
            return CacheEnvelope.empty(self.region, now)
        return envelope

    def get_entry(self, name: str) -> Optional[InstanceStateEntry]:
        return self.load().instances.get(name)

    def should_create(self, name: str) -> bool:
        """
        Decide whether a provisioning call for this instance is worthwhile.

        Args:
            name: Instance display name

        Returns:
            False only when the instance is recorded as created/verified/running
            in an unexpired envelope
        """
        if not self.enabled:
            logger.debug(f"Cache disabled, allowing creation of {name}")
            return True

        now = self.clock()
        envelope = self._read_envelope()
        if envelope is None or envelope.region != self.region:
            return True

        if self.is_expired(envelope, now):
            logger.debug(f"State expired, allowing creation of {name}")
            return True

        entry = envelope.instances.get(name)
        if entry is None:
            return True

        if entry.status in PRESENT_STATUSES:
            logger.info(
                f"Instance {name} exists in state with status '{entry.status.value}', skipping creation",
                extra={"event": "instance_cached", "metadata": {"name": name, "status": entry.status.value}},
            )
            return False

        logger.info(f"Instance {name} has status '{entry.status.value}', allowing recreation")
        return True

    def _mutate(self, apply: Callable[[CacheEnvelope, datetime], Any]) -> Any:
        """
        Read-modify-write the envelope under the state lock.

        An invalid, expired or foreign-region envelope is reinitialized
        before apply runs.
        """
        with self._lock():
            now = self.clock()
            envelope = self._read_envelope()
            if envelope is None or envelope.region != self.region or self.is_expired(envelope, now):
                envelope = CacheEnvelope.empty(self.region, now)

            result = apply(envelope, now)
            envelope.updated_at = now
            atomic_write_json(self.state_file, envelope.to_dict())
            return result

    def _set_status(
        self,
        name: str,
        instance_id: str,
        status: InstanceStatus,
        shape: str = "",
    ) -> InstanceStateEntry:
        def apply(envelope: CacheEnvelope, now: datetime) -> InstanceStateEntry:
            current = envelope.instances.get(name)
            recreated = current is not None and current.status in _END_STATES and status == InstanceStatus.CREATED
            if current is None or recreated:
                entry = InstanceStateEntry(
                    name=name,
                    instance_id=instance_id,
                    status=status,
                    created_at=now,
                    last_verified_at=now,
                    shape=shape,
                    region=self.region,
                )
            else:
                if not is_allowed_transition(current.status, status):
                    raise InvalidTransitionError(name, current.status.value, status.value)
                entry = replace(
                    current,
                    instance_id=instance_id or current.instance_id,
                    status=status,
                    last_verified_at=now,
                    shape=shape or current.shape,
                )
            envelope.instances[name] = entry
            return entry

        entry = self._mutate(apply)
        logger.info(
            f"Recorded {name} as {status.value} ({instance_id})",
            extra={
                "event": "state_recorded",
                "metadata": {"name": name, "instance_id": instance_id, "status": status.value},
            },
        )
        return entry

    def record_created(self, name: str, instance_id: str, shape: str = "") -> InstanceStateEntry:
        """Record a successful creation."""
        return self._set_status(name, instance_id, InstanceStatus.CREATED, shape)

    def record_verified(
        self,
        name: str,
        instance_id: str,
        status: InstanceStatus | str = InstanceStatus.VERIFIED,
    ) -> InstanceStateEntry:
        """
        Record a verification result.

        Raises:
            InvalidTransitionError: If the status change is not allowed
            ValueError: If status is not a known InstanceStatus
        """
        return self._set_status(name, instance_id, InstanceStatus(status))

    def remove(self, name: str) -> bool:
        """
        Remove an instance from the cache.

        Returns:
            True if an entry was removed
        """
        def apply(envelope: CacheEnvelope, now: datetime) -> bool:
            return envelope.instances.pop(name, None) is not None

        removed = self._mutate(apply)
        if removed:
            logger.info(f"Removed {name} from state", extra={"event": "state_removed"})
        return removed

    def purge(self) -> None:
        """Delete the state file and start over with an empty envelope."""
        with self._lock():
            try:
                self.state_file.unlink()
            except FileNotFoundError:
                pass
            atomic_write_json(self.state_file, CacheEnvelope.empty(self.region, self.clock()).to_dict())
        logger.info(f"State cache purged: {self.state_file}", extra={"event": "state_purged"})

    def summary(self) -> dict[str, Any]:
        """Counts and timestamps for status output."""
        envelope = self._read_envelope()
        counts: dict[str, int] = {status.value: 0 for status in InstanceStatus}
        if envelope is not None:
            for entry in envelope.instances.values():
                counts[entry.status.value] += 1

        return {
            "state_file": str(self.state_file),
            "enabled": self.enabled,
            "region": self.region,
            "ttl_hours": self.ttl_hours,
            "effective_ttl_hours": self.effective_ttl_hours(),
            "instances": len(envelope.instances) if envelope else 0,
            "by_status": counts,
            "updated_at": format_timestamp(envelope.updated_at) if envelope else None,
            "expired": self.is_expired(envelope) if envelope else None,
        }

    def health(self) -> list[tuple[bool, str]]:
        """
        Check the cache directory and state file.

        Returns:
            (ok, message) pairs; any False means the cache needs attention
        """
        checks: list[tuple[bool, str]] = []
        cache_dir = self.state_file.parent

        if cache_dir.is_dir():
            checks.append((True, f"Cache directory exists: {cache_dir}"))
        else:
            checks.append((False, f"Cache directory missing: {cache_dir}"))
            return checks

        if not self.state_file.exists():
            checks.append((True, f"State file not created yet: {self.state_file}"))
        else:
            envelope = self._read_envelope()
            if envelope is None:
                checks.append((False, f"State file is corrupt or of another version: {self.state_file}"))
            else:
                checks.append((True, f"State file is valid ({len(envelope.instances)} instances)"))
                if self.is_expired(envelope):
                    checks.append((True, f"State is expired (TTL {self.effective_ttl_hours():g}h)"))
                else:
                    checks.append((True, f"State is current (TTL {self.effective_ttl_hours():g}h)"))

        if self.lock_file.exists():
            age = self.clock().timestamp() - self.lock_file.stat().st_mtime
            if age > self.stale_lock_seconds:
                checks.append((False, f"Stale lock file ({age:.0f}s old): {self.lock_file}"))
            else:
                checks.append((True, f"Lock currently held: {self.lock_file}"))

        checks.append((True, f"Cache enabled: {self.enabled}"))
        return checks
