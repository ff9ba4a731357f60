"""
One profile's provisioning attempt.

An attempt runs in its own OS process, started by the ParallelCoordinator:

    1. skip if the state cache says the instance already exists, optionally
       confirming that with the provider
    2. optionally ask the provider whether the instance exists already
    3. drop circuit-broken zones
    4. look up the newest image when none is configured
    5. walk the remaining zones, retrying transient errors per zone
    6. write an AttemptOutcome artifact for the coordinator

SIGTERM is turned into AttemptInterrupted so `finally` blocks (lock release)
run when the coordinator stops a process at the budget deadline.
"""

import logging
import signal
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from tierhunt.circuit_breaker import CircuitBreaker
from tierhunt.classifier import (
    CAPACITY_FAMILY,
    EXIT_CAPACITY_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    Classification,
    exit_code_for,
    is_transient,
)
from tierhunt.errors import AttemptInterrupted, PermanentError, TransientError
from tierhunt.metrics import MetricsRecorder
from tierhunt.provisioner import CommandResult, ProvisionCommand, ProvisionSpec, Verdict
from tierhunt.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, DEFAULT_MAX_RETRIES, retry_transient
from tierhunt.state_cache import InstanceStatus, StateCacheManager
from tierhunt.utils import atomic_write_json, read_json

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
DEFAULT_LIMIT_EXCEEDED_DELAY = 5.0


class AttemptStatus(str, Enum):
    """Result of one profile attempt."""
    CREATED = "created"
    EXISTING = "existing"
    CAPACITY = "capacity"
    NO_ZONES = "no_zones"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class AttemptOutcome:
    """
    What one profile attempt achieved.

    Attributes:
        profile: Profile name
        status: Outcome category
        classification: Error classification behind a non-created outcome
        zone: Zone of the last provisioning call (or of the created instance)
        instance_id: Provider identifier when an instance exists
        message: Short human-readable detail
        duration_seconds: Wall-clock time of the attempt
    """
    profile: str
    status: AttemptStatus
    classification: Optional[Classification] = None
    zone: Optional[str] = None
    instance_id: Optional[str] = None
    message: str = ""
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        """Attempt-level exit code."""
        if self.status in (AttemptStatus.CREATED, AttemptStatus.EXISTING):
            return EXIT_SUCCESS
        if self.status in (AttemptStatus.CAPACITY, AttemptStatus.NO_ZONES):
            return EXIT_CAPACITY_ERROR
        if self.status == AttemptStatus.TIMEOUT:
            return EXIT_TIMEOUT
        return exit_code_for(self.classification or Classification.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "profile": self.profile,
            "status": self.status.value,
            "classification": self.classification.value if self.classification else None,
            "zone": self.zone,
            "instance_id": self.instance_id,
            "message": self.message,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptOutcome":
        """Deserialize from dictionary."""
        return cls(
            profile=data["profile"],
            status=AttemptStatus(data["status"]),
            classification=Classification(data["classification"]) if data.get("classification") else None,
            zone=data.get("zone"),
            instance_id=data.get("instance_id"),
            message=data.get("message", ""),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
        )


def write_outcome(path: Path, outcome: AttemptOutcome) -> None:
    """Write the result artifact atomically."""
    atomic_write_json(Path(path), outcome.to_dict())


def read_outcome(path: Path) -> Optional[AttemptOutcome]:
    """
    Read a result artifact.

    Returns:
        The outcome, or None if the artifact is missing or incomplete
    """
    try:
        data = read_json(Path(path))
    except (ValueError, UnicodeDecodeError):
        return None
    if data is None:
        return None
    try:
        return AttemptOutcome.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


def _excerpt(output: str) -> str:
    text = " ".join(output.split())
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH] + "..."
    return text


def _raise_interrupted(signum, frame):
    raise AttemptInterrupted(f"Received signal {signum}")


def install_signal_handlers() -> None:
    """Turn SIGTERM into AttemptInterrupted in this process."""
    signal.signal(signal.SIGTERM, _raise_interrupted)


class ProvisionAttempt:
    """
    Provision one profile across its zones.

    Args:
        spec: What to provision
        command: Provisioning command boundary
        breaker: Zone circuit breaker
        cache: Instance state cache
        metrics: Optional telemetry recorder
        max_retries: Transient retries per zone
        base_delay: Backoff base delay
        max_delay: Backoff ceiling
        deadline: time.monotonic() value by which the attempt must finish
        sleep: Sleep function (injectable for tests)
        check_existing: Ask the provider for the instance before launching
        image_lookup: Look up the newest image when the spec has none
        limit_exceeded_checks: Instance lookups after a LimitExceeded response
        limit_exceeded_delay: Seconds between those lookups
        verify_existing: Confirm a cached instance with the provider
    """

    def __init__(
        self,
        spec: ProvisionSpec,
        command: ProvisionCommand,
        breaker: CircuitBreaker,
        cache: StateCacheManager,
        metrics: Optional[MetricsRecorder] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        deadline: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        check_existing: bool = False,
        image_lookup: bool = False,
        limit_exceeded_checks: int = 1,
        limit_exceeded_delay: float = DEFAULT_LIMIT_EXCEEDED_DELAY,
        verify_existing: bool = False,
    ):
        self.spec = spec
        self.command = command
        self.breaker = breaker
        self.cache = cache
        self.metrics = metrics
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.deadline = deadline
        self.sleep = sleep
        self.check_existing = check_existing
        self.image_lookup = image_lookup
        self.limit_exceeded_checks = max(1, limit_exceeded_checks)
        self.limit_exceeded_delay = limit_exceeded_delay
        self.verify_existing = verify_existing
        self.name = spec.name

    def _log_extra(self, event: str, zone: Optional[str] = None, **metadata) -> dict[str, Any]:
        extra: dict[str, Any] = {"event": event, "profile": self.name}
        if zone:
            extra["zone"] = zone
        if metadata:
            extra["metadata"] = metadata
        return extra

    def _record_metrics(self, zone: str, result: CommandResult) -> None:
        if self.metrics is None:
            return
        status = "success" if result.success else result.classification.value
        try:
            self.metrics.record_api_response_time("launch_instance", result.duration_ms, status)
            self.metrics.record_zone_result(zone, result.success, None if result.success else status)
        except (OSError, TransientError) as e:
            logger.warning(f"Could not record metrics: {e}", extra=self._log_extra("metrics_failed", zone))

    def _record_created(self, instance_id: str) -> None:
        # The instance exists either way; a cache write failure must not hide that.
        try:
            self.cache.record_created(self.spec.display_name, instance_id, shape=self.spec.shape)
        except (OSError, TransientError, PermanentError) as e:
            logger.error(
                f"Instance created but state cache update failed: {e}",
                extra=self._log_extra("state_record_failed", instance_id=instance_id),
            )

    def _update_breaker(self, zone: str, failed: bool) -> None:
        # Breaker bookkeeping never changes the outcome of the attempt.
        try:
            if failed:
                self.breaker.record_failure(zone)
            else:
                self.breaker.record_success(zone)
        except (OSError, TransientError, PermanentError) as e:
            logger.warning(
                f"Could not update circuit breaker for {zone}: {e}",
                extra=self._log_extra("breaker_record_failed", zone),
            )

    def _record_status(self, instance_id: str, status: InstanceStatus) -> None:
        try:
            self.cache.record_verified(self.spec.display_name, instance_id, status)
        except (OSError, TransientError, PermanentError) as e:
            logger.warning(
                f"Could not record {instance_id} as {status.value}: {e}",
                extra=self._log_extra("state_record_failed", instance_id=instance_id),
            )

    def _past_deadline(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def _cached_outcome(self) -> Optional[AttemptOutcome]:
        """
        EXISTING outcome for an instance the state cache knows about.

        Returns None when provider verification finds the instance gone, so
        the attempt provisions it again.
        """
        spec = self.spec
        entry = self.cache.get_entry(spec.display_name)
        instance_id = entry.instance_id if entry else None
        message = f"{spec.display_name} already recorded in state cache"

        if self.verify_existing and instance_id:
            check = self.command.verify_instance(spec, instance_id)
            if check.verdict == Verdict.GONE:
                logger.warning(
                    f"Cached instance {instance_id} is gone ({check.detail}), provisioning again",
                    extra=self._log_extra("cached_instance_gone", instance_id=instance_id),
                )
                self._record_status(instance_id, InstanceStatus.TERMINATED)
                return None
            if check.verdict == Verdict.MATCHES:
                status = InstanceStatus.RUNNING if check.running else InstanceStatus.VERIFIED
                self._record_status(instance_id, status)
                message = f"{spec.display_name} verified with the provider ({check.lifecycle_state})"
            elif check.verdict == Verdict.MISMATCH:
                logger.warning(
                    f"Cached instance {instance_id} differs from the profile: {check.detail}",
                    extra=self._log_extra("cached_instance_mismatch", instance_id=instance_id),
                )
                message = f"{spec.display_name} exists but differs from the profile: {check.detail}"

        return AttemptOutcome(
            profile=self.name,
            status=AttemptStatus.EXISTING,
            instance_id=instance_id,
            message=message,
        )

    def _find_after_limit_exceeded(self) -> Optional[str]:
        """Poll for an instance the provider may have created despite LimitExceeded."""
        checks = self.limit_exceeded_checks
        for check in range(1, checks + 1):
            instance_id = self.command.find_instance(self.spec)
            if instance_id:
                return instance_id
            if check == checks:
                break
            if self.deadline is not None and time.monotonic() + self.limit_exceeded_delay >= self.deadline:
                break
            logger.info(
                f"Instance not found yet, checking again in {self.limit_exceeded_delay:g}s ({check}/{checks})",
                extra=self._log_extra("limit_exceeded_recheck", check=check),
            )
            self.sleep(self.limit_exceeded_delay)
        return None

    def run(self) -> AttemptOutcome:
        """
        Run the attempt.

        Returns:
            AttemptOutcome; never raises for provider or machinery failures
        """
        start = time.monotonic()
        logger.info(
            f"Starting attempt: {self.name} ({self.spec.shape})",
            extra=self._log_extra("attempt_started", zones=list(self.spec.zones)),
        )

        try:
            outcome = self._execute()

        except AttemptInterrupted as e:
            logger.warning(
                f"Attempt {self.name} interrupted: {e}",
                extra=self._log_extra("attempt_interrupted"),
            )
            outcome = AttemptOutcome(
                profile=self.name,
                status=AttemptStatus.TIMEOUT,
                message="Interrupted at the run deadline",
            )

        except Exception as e:
            logger.error(
                f"Attempt {self.name} failed with exception: {e}",
                extra=self._log_extra("attempt_exception", exception=str(e)),
                exc_info=True,
            )
            outcome = AttemptOutcome(
                profile=self.name,
                status=AttemptStatus.FAILED,
                classification=Classification.UNKNOWN,
                message=_excerpt(str(e)),
            )

        outcome.duration_seconds = time.monotonic() - start
        logger.info(
            f"Attempt {self.name} finished: {outcome.status.value}",
            extra=self._log_extra(
                "attempt_finished",
                outcome.zone,
                status=outcome.status.value,
                classification=outcome.classification.value if outcome.classification else None,
                duration_seconds=outcome.duration_seconds,
            ),
        )
        return outcome

    def _execute(self) -> AttemptOutcome:
        spec = self.spec

        if not self.cache.should_create(spec.display_name):
            outcome = self._cached_outcome()
            if outcome is not None:
                return outcome

        if self.check_existing:
            instance_id = self.command.find_instance(spec)
            if instance_id:
                self._record_created(instance_id)
                return AttemptOutcome(
                    profile=self.name,
                    status=AttemptStatus.EXISTING,
                    instance_id=instance_id,
                    message=f"{spec.display_name} already exists ({instance_id})",
                )

        zones = self.breaker.get_available_zones(spec.zones)
        if not zones:
            return AttemptOutcome(
                profile=self.name,
                status=AttemptStatus.NO_ZONES,
                message="All zones are circuit-broken",
            )

        if not spec.image_id and self.image_lookup:
            image_id = self.command.lookup_image_id(spec)
            if not image_id:
                return AttemptOutcome(
                    profile=self.name,
                    status=AttemptStatus.FAILED,
                    classification=Classification.CONFIG,
                    message=f"No image found for {spec.operating_system} {spec.os_version} on {spec.shape}",
                )
            logger.info(f"Using image {image_id}", extra=self._log_extra("image_found", image_id=image_id))
            spec = replace(spec, image_id=image_id)

        last_capacity: Optional[Classification] = None
        transient: Optional[Classification] = None
        last_zone: Optional[str] = None
        last_message = ""

        for index, zone in enumerate(zones, start=1):
            if self._past_deadline():
                return AttemptOutcome(
                    profile=self.name,
                    status=AttemptStatus.TIMEOUT,
                    zone=last_zone,
                    message=f"Run budget exhausted after {index - 1}/{len(zones)} zones",
                )

            logger.info(
                f"Trying zone {index}/{len(zones)}: {zone}",
                extra=self._log_extra("zone_attempt", zone),
            )
            result = retry_transient(
                lambda: self.command.launch(spec, zone),
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self.sleep,
                deadline=self.deadline,
                label=zone,
            )
            self._record_metrics(zone, result)
            last_zone = zone
            classification = result.classification

            if result.success:
                self._update_breaker(zone, failed=False)
                self._record_created(result.instance_id)
                return AttemptOutcome(
                    profile=self.name,
                    status=AttemptStatus.CREATED,
                    zone=zone,
                    instance_id=result.instance_id,
                    message=f"Created {spec.display_name} in {zone}",
                )

            last_message = _excerpt(result.output)

            if classification == Classification.DUPLICATE:
                return AttemptOutcome(
                    profile=self.name,
                    status=AttemptStatus.EXISTING,
                    classification=classification,
                    zone=zone,
                    message=f"{spec.display_name} already exists",
                )

            if classification == Classification.LIMIT_EXCEEDED:
                logger.info(
                    "LimitExceeded returned, checking whether the instance was created anyway",
                    extra=self._log_extra("limit_exceeded_check", zone),
                )
                instance_id = self._find_after_limit_exceeded()
                if instance_id:
                    self._record_created(instance_id)
                    return AttemptOutcome(
                        profile=self.name,
                        status=AttemptStatus.CREATED,
                        classification=classification,
                        zone=zone,
                        instance_id=instance_id,
                        message=f"Created {spec.display_name} in {zone} despite LimitExceeded",
                    )
                # Account-wide limit, the zone itself is not to blame.
                last_capacity = classification
                continue

            if classification in CAPACITY_FAMILY:
                self._update_breaker(zone, failed=True)
                last_capacity = classification
                logger.info(
                    f"{classification.value} in {zone}, trying next zone",
                    extra=self._log_extra("zone_capacity", zone),
                )
                continue

            if is_transient(classification):
                self._update_breaker(zone, failed=True)
                transient = classification
                continue

            logger.error(
                f"{classification.value} error in {zone}, stopping: {last_message}",
                extra=self._log_extra("attempt_fatal", zone, classification=classification.value),
            )
            return AttemptOutcome(
                profile=self.name,
                status=AttemptStatus.FAILED,
                classification=classification,
                zone=zone,
                message=last_message,
            )

        if transient is not None:
            return AttemptOutcome(
                profile=self.name,
                status=AttemptStatus.FAILED,
                classification=transient,
                zone=last_zone,
                message=f"Transient errors persisted across zones: {last_message}",
            )

        return AttemptOutcome(
            profile=self.name,
            status=AttemptStatus.CAPACITY,
            classification=last_capacity or Classification.CAPACITY,
            zone=last_zone,
            message=f"All {len(zones)} zones exhausted, will retry on next schedule",
        )


def run_profile(config, profile_name: str, result_file: Path, deadline_epoch: Optional[float] = None) -> int:
    """
    Entry point of an attempt process.

    Args:
        config: Loaded TierhuntConfig
        profile_name: Profile to provision
        result_file: Where to write the AttemptOutcome artifact
        deadline_epoch: Wall-clock (time.time()) deadline shared with the parent

    Returns:
        Attempt-level exit code
    """
    install_signal_handlers()

    deadline = None
    if deadline_epoch is not None:
        deadline = time.monotonic() + (deadline_epoch - time.time())

    store = config.build_store()
    attempt = ProvisionAttempt(
        spec=config.build_spec(profile_name),
        command=config.build_command(),
        breaker=config.build_breaker(store),
        cache=config.build_cache(),
        metrics=config.build_metrics(),
        max_retries=config.retry_max_retries,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
        deadline=deadline,
        check_existing=config.check_existing_instance,
        image_lookup=config.image_lookup,
        limit_exceeded_checks=config.limit_exceeded_checks,
        limit_exceeded_delay=config.limit_exceeded_delay,
        verify_existing=config.verify_existing,
    )
    outcome = attempt.run()
    write_outcome(result_file, outcome)
    return outcome.exit_code
