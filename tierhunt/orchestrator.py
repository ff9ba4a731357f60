"""
Invocation orchestrator for tierhunt.

One scheduled invocation:

    validate config -> adaptive skip decision -> parallel attempts
    -> record schedule outcome -> notify -> record metrics
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tierhunt.attempt import AttemptOutcome, AttemptStatus
from tierhunt.classifier import EXIT_CONFIG_ERROR, EXIT_GENERAL_ERROR, EXIT_SUCCESS, Classification
from tierhunt.config import BILLING_BOUNDARY_SECONDS, TierhuntConfig, load_config
from tierhunt.coordinator import AggregateResult, AggregateStatus, ParallelCoordinator, default_launcher
from tierhunt.errors import ConfigError, TransientError
from tierhunt.notify import Notifier, Severity, notify_with_retry
from tierhunt.scheduler import OutcomeType
from tierhunt.store import KeyValueStore
from tierhunt.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of one orchestrator invocation."""

    status: str
    exit_code: int
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    aggregate: Optional[AggregateResult] = None
    error_message: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "aggregate": self.aggregate.to_dict() if self.aggregate else None,
            "error_message": self.error_message,
        }


def severity_for(outcome: AttemptOutcome) -> Optional[Severity]:
    """
    Notification severity for one attempt outcome.

    Returns:
        None when the outcome is not worth a notification (instance already exists)
    """
    if outcome.status == AttemptStatus.CREATED:
        return Severity.SUCCESS
    if outcome.status in (AttemptStatus.CAPACITY, AttemptStatus.NO_ZONES):
        return Severity.INFO
    if outcome.status == AttemptStatus.TIMEOUT:
        return Severity.WARNING
    if outcome.status == AttemptStatus.FAILED:
        if outcome.classification == Classification.AUTH:
            return Severity.CRITICAL
        if outcome.classification in (Classification.NETWORK, Classification.INTERNAL_ERROR):
            return Severity.WARNING
        return Severity.ERROR
    return None


def describe(outcome: AttemptOutcome) -> str:
    """Human-readable notification text for one outcome."""
    status = outcome.status
    if status == AttemptStatus.CREATED:
        return f"{outcome.profile} instance created in {outcome.zone} ({outcome.instance_id})"
    if status == AttemptStatus.CAPACITY:
        return f"{outcome.profile}: no capacity available, will retry on the next schedule"
    if status == AttemptStatus.NO_ZONES:
        return f"{outcome.profile}: every zone is circuit-broken, skipped this cycle"
    if status == AttemptStatus.TIMEOUT:
        return f"{outcome.profile}: attempt stopped at the run budget"
    if status == AttemptStatus.FAILED:
        kind = outcome.classification.value if outcome.classification else "UNKNOWN"
        text = f"{outcome.profile}: {kind} failure"
        if outcome.classification == Classification.AUTH:
            text += ", check API credentials"
        if outcome.message:
            text += f"\n{outcome.message}"
        return text
    return f"{outcome.profile}: {status.value}"


class Orchestrator:
    """
    Runs one scheduled invocation.

    Args:
        config: Loaded configuration (defaults to load_config())
        coordinator: Parallel coordinator (defaults to one built from config)
        notifier: Notification channel (defaults to config.build_notifier())
        store: Store for the adaptive scheduler (defaults to config.build_store())
        sleep: Sleep used between notification retries
        clock: Monotonic time source for the invocation deadline
    """

    def __init__(
        self,
        config: Optional[TierhuntConfig] = None,
        coordinator: Optional[ParallelCoordinator] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[KeyValueStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or load_config()
        self.coordinator = coordinator
        self.notifier = notifier
        self.store = store
        self._sleep = sleep
        self._clock = clock
        self._notify_deadline: Optional[float] = None

    def _build_coordinator(self, verbose: bool) -> ParallelCoordinator:
        return ParallelCoordinator(
            default_launcher(self.config.config_path, verbose=verbose),
            budget_seconds=self.config.budget_seconds,
            grace_seconds=self.config.grace_seconds,
        )

    def _notify(self, severity: Severity, message: str) -> None:
        notify_with_retry(
            self.notifier,
            severity,
            message,
            sleep=self._sleep,
            deadline=self._notify_deadline,
            clock=self._clock,
        )

    def run(self, dry_run: bool = False, force: bool = False, verbose: bool = False) -> RunResult:
        """
        Run one invocation.

        Args:
            dry_run: Validate and show the schedule decision only
            force: Ignore an adaptive skip recommendation
            verbose: Enable debug logging

        Returns:
            RunResult with the exit code for the scheduler
        """
        started_at = utcnow()
        start_time = self._clock()
        # Retries stop at the billing boundary; every notification still gets one try.
        self._notify_deadline = start_time + BILLING_BOUNDARY_SECONDS

        log_level = "DEBUG" if verbose else self.config.get_log_level()
        setup_logging(
            self.config.get_log_file_path(),
            log_level,
            self.config.get_log_format(),
            self.config.should_log_to_console(),
        )

        def finish(status: str, exit_code: int, **kwargs) -> RunResult:
            return RunResult(
                status=status,
                exit_code=exit_code,
                started_at=started_at,
                ended_at=utcnow(),
                duration_seconds=self._clock() - start_time,
                **kwargs,
            )

        print_banner(f"tierhunt {self.config.region}")

        if self.notifier is None:
            self.notifier = self.config.build_notifier()

        try:
            self.config.validate()
            profiles = [p.name for p in self.config.get_enabled_profiles()]

            store = self.store or self.config.build_store()
            scheduler = self.config.build_scheduler(store)
            context = scheduler.current_context()
            logger.info(
                f"Invocation started in window {context.window}",
                extra={
                    "event": "run_started",
                    "metadata": {"profiles": profiles, "window": context.window, "dry_run": dry_run},
                },
            )

            if scheduler.should_skip_this_invocation():
                if force:
                    print_warning("Adaptive scheduler recommends skipping, continuing (--force)")
                else:
                    print_info("Adaptive scheduler: recent attempts in this hour all hit capacity, skipping")
                    return finish("skipped", EXIT_SUCCESS)

            if dry_run:
                print_info(f"Dry run: would attempt {', '.join(profiles)} in {context.window}")
                return finish("dry_run", EXIT_SUCCESS)

            scheduler.record_context(context.label, OutcomeType.ATTEMPT)

            coordinator = self.coordinator or self._build_coordinator(verbose)
            print_info(f"Attempting {len(profiles)} profiles within {coordinator.budget_seconds:g}s...")
            aggregate = coordinator.run_parallel(profiles)

            if aggregate.status == AggregateStatus.SUCCESS:
                scheduler.record_context(context.label, OutcomeType.SUCCESS)
            elif aggregate.status == AggregateStatus.CAPACITY_EXHAUSTED:
                scheduler.record_context(context.label, OutcomeType.CAPACITY_FAILURE)

            self._report(aggregate)
            self._record_metrics(aggregate)

            return finish(aggregate.status.value, aggregate.exit_code, aggregate=aggregate)

        except ConfigError as e:
            print_error(f"Configuration error: {e}")
            logger.error(f"Configuration error: {e}", extra={"event": "run_config_error"})
            self._notify(Severity.ERROR, f"Configuration error: {e}")
            return finish("failure", EXIT_CONFIG_ERROR, error_message=str(e))

        except Exception as e:
            print_error(f"Run failed: {e}")
            logger.error(
                f"Run failed with exception: {e}",
                extra={"event": "run_exception", "metadata": {"exception": str(e)}},
                exc_info=True,
            )
            self._notify(Severity.ERROR, f"Run failed unexpectedly: {e}")
            return finish("failure", EXIT_GENERAL_ERROR, error_message=str(e))

    def _report(self, aggregate: AggregateResult) -> None:
        """Console summary and one notification per notable outcome."""
        for outcome in aggregate.outcomes:
            line = describe(outcome).splitlines()[0]
            if outcome.status in (AttemptStatus.CREATED, AttemptStatus.EXISTING):
                print_success(line)
            elif outcome.status == AttemptStatus.FAILED:
                print_error(line)
            elif outcome.status == AttemptStatus.TIMEOUT:
                print_warning(line)
            else:
                print_info(line)

            severity = severity_for(outcome)
            if severity is not None:
                self._notify(severity, describe(outcome))

        summary = f"Run {aggregate.status.value} in {format_duration(aggregate.duration_seconds)}"
        if aggregate.exit_code == EXIT_SUCCESS:
            print_success(summary)
        else:
            print_error(f"{summary} (exit {aggregate.exit_code})")

        logger.info(
            summary,
            extra={"event": "run_completed", "metadata": aggregate.to_dict()},
        )

    def _record_metrics(self, aggregate: AggregateResult) -> None:
        try:
            metrics = self.config.build_metrics()
            metrics.record_execution_phase(
                "parallel_execution", aggregate.duration_seconds, aggregate.status.value
            )
            metrics.compact()
        except (OSError, TransientError) as e:
            logger.warning(f"Could not record run metrics: {e}", extra={"event": "metrics_failed"})
