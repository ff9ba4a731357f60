"""
Parallel coordinator.

Runs one OS process per profile and guarantees the whole batch finishes within
a fixed budget:

    launch all -> join against one deadline -> SIGTERM survivors
    -> grace period -> SIGKILL -> collect result artifacts -> aggregate

Processes share nothing but the state directory and their result artifacts,
which live in a private temporary directory.
"""

import logging
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from tierhunt.attempt import AttemptOutcome, AttemptStatus, read_outcome
from tierhunt.classifier import (
    EXIT_CONFIG_ERROR,
    EXIT_GENERAL_ERROR,
    EXIT_NETWORK_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    Classification,
    is_transient,
)

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_SECONDS = 55.0   # below the 60s billing boundary of the scheduler
DEFAULT_GRACE_SECONDS = 2.0

# profile, result file, wall-clock deadline -> argv
Launcher = Callable[[str, Path, float], Sequence[str]]


class AggregateStatus(str, Enum):
    """Combined result of all profile attempts."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    UNCHANGED = "unchanged"


def aggregate(outcomes: Iterable[AttemptOutcome]) -> AggregateStatus:
    """
    Combine attempt outcomes.

    SUCCESS if anything was created, else FAILURE if anything failed, else
    TIMEOUT if anything timed out, else CAPACITY_EXHAUSTED if any profile hit
    capacity or had no eligible zones, else UNCHANGED.
    """
    statuses = {outcome.status for outcome in outcomes}
    if AttemptStatus.CREATED in statuses:
        return AggregateStatus.SUCCESS
    if AttemptStatus.FAILED in statuses:
        return AggregateStatus.FAILURE
    if AttemptStatus.TIMEOUT in statuses:
        return AggregateStatus.TIMEOUT
    if statuses & {AttemptStatus.CAPACITY, AttemptStatus.NO_ZONES}:
        return AggregateStatus.CAPACITY_EXHAUSTED
    return AggregateStatus.UNCHANGED


def failure_exit_code(outcomes: Iterable[AttemptOutcome]) -> int:
    """Most severe exit code among failed outcomes: 3, then 1, then 4."""
    codes = set()
    for outcome in outcomes:
        if outcome.status != AttemptStatus.FAILED:
            continue
        if outcome.classification in (Classification.AUTH, Classification.CONFIG):
            codes.add(EXIT_CONFIG_ERROR)
        elif is_transient(outcome.classification):
            codes.add(EXIT_NETWORK_ERROR)
        else:
            codes.add(EXIT_GENERAL_ERROR)

    for code in (EXIT_CONFIG_ERROR, EXIT_GENERAL_ERROR, EXIT_NETWORK_ERROR):
        if code in codes:
            return code
    return EXIT_GENERAL_ERROR


@dataclass
class AggregateResult:
    """Result of a coordinated batch of attempts."""
    status: AggregateStatus
    outcomes: list[AttemptOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.status == AggregateStatus.TIMEOUT:
            return EXIT_TIMEOUT
        if self.status == AggregateStatus.FAILURE:
            return failure_exit_code(self.outcomes)
        return EXIT_SUCCESS

    @property
    def created(self) -> list[AttemptOutcome]:
        return [o for o in self.outcomes if o.status == AttemptStatus.CREATED]

    def get(self, profile: str) -> Optional[AttemptOutcome]:
        for outcome in self.outcomes:
            if outcome.profile == profile:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration_seconds": self.duration_seconds,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def default_launcher(
    config_path: Optional[Path] = None,
    python: str = sys.executable,
    verbose: bool = False,
) -> Launcher:
    """
    Launcher that re-invokes this package's CLI for one profile.

    Args:
        config_path: Configuration file passed through to the child
        python: Interpreter to run
        verbose: Pass --verbose to the child
    """
    def launch(profile: str, result_file: Path, deadline_epoch: float) -> list[str]:
        argv = [
            python, "-m", "tierhunt", "attempt",
            "--profile", profile,
            "--result-file", str(result_file),
            "--deadline", f"{deadline_epoch:.3f}",
        ]
        if config_path is not None:
            argv += ["--config", str(config_path)]
        if verbose:
            argv.append("--verbose")
        return argv

    return launch


class ParallelCoordinator:
    """
    Runs profile attempts as parallel processes under a hard budget.

    Args:
        launcher: Builds the argv for one profile's process
        budget_seconds: Deadline for the whole batch
        grace_seconds: Time between SIGTERM and SIGKILL
        env: Environment for child processes (default: inherit)
    """

    def __init__(
        self,
        launcher: Launcher,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        env: Optional[dict[str, str]] = None,
    ):
        self.launcher = launcher
        self.budget_seconds = budget_seconds
        self.grace_seconds = grace_seconds
        self.env = env

    def run_parallel(self, profiles: Sequence[str]) -> AggregateResult:
        """
        Run one attempt process per profile.

        Args:
            profiles: Profile names

        Returns:
            AggregateResult with one outcome per profile, in input order
        """
        start = time.monotonic()
        deadline = start + self.budget_seconds
        deadline_epoch = time.time() + self.budget_seconds

        # mkdtemp creates the directory with mode 0700
        result_dir = Path(tempfile.mkdtemp(prefix="tierhunt-results-"))
        logger.info(
            f"Launching {len(profiles)} attempts with a {self.budget_seconds:g}s budget",
            extra={"event": "parallel_started", "metadata": {"profiles": list(profiles)}},
        )

        try:
            processes: dict[str, subprocess.Popen] = {}
            outcomes: dict[str, AttemptOutcome] = {}
            result_files = {profile: result_dir / f"{profile}.json" for profile in profiles}

            for profile in profiles:
                argv = list(self.launcher(profile, result_files[profile], deadline_epoch))
                try:
                    processes[profile] = subprocess.Popen(argv, env=self.env)
                except OSError as e:
                    logger.error(
                        f"Could not start attempt process for {profile}: {e}",
                        extra={"event": "launch_failed", "profile": profile},
                    )
                    outcomes[profile] = AttemptOutcome(
                        profile=profile,
                        status=AttemptStatus.FAILED,
                        classification=Classification.UNKNOWN,
                        message=f"Could not start attempt process: {e}",
                    )

            for profile, proc in processes.items():
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    proc.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    pass

            timed_out = self._terminate_survivors(processes)

            # Every process is reaped by now and artifacts are written by
            # rename, so each one is either complete or absent.
            for profile, proc in processes.items():
                outcome = read_outcome(result_files[profile])
                if outcome is None and profile in timed_out:
                    outcome = AttemptOutcome(
                        profile=profile,
                        status=AttemptStatus.TIMEOUT,
                        message=f"Terminated at the {self.budget_seconds:g}s budget",
                    )
                elif outcome is None:
                    logger.error(
                        f"Attempt {profile} exited with code {proc.returncode} without a result artifact",
                        extra={"event": "artifact_missing", "profile": profile},
                    )
                    outcome = AttemptOutcome(
                        profile=profile,
                        status=AttemptStatus.FAILED,
                        classification=Classification.UNKNOWN,
                        message=f"Attempt exited with code {proc.returncode} without a result",
                    )
                outcomes[profile] = outcome

        finally:
            shutil.rmtree(result_dir, ignore_errors=True)

        ordered = [outcomes[profile] for profile in profiles]
        result = AggregateResult(
            status=aggregate(ordered),
            outcomes=ordered,
            duration_seconds=time.monotonic() - start,
        )
        logger.info(
            f"Parallel attempts finished: {result.status.value} in {result.duration_seconds:.1f}s",
            extra={"event": "parallel_finished", "metadata": result.to_dict()},
        )
        return result

    def _terminate_survivors(self, processes: dict[str, subprocess.Popen]) -> set[str]:
        """SIGTERM every running process, then SIGKILL what outlives the grace period."""
        survivors = {profile: proc for profile, proc in processes.items() if proc.poll() is None}
        if not survivors:
            return set()

        logger.warning(
            f"Budget of {self.budget_seconds:g}s exceeded, terminating: {', '.join(survivors)}",
            extra={"event": "budget_exceeded", "metadata": {"profiles": list(survivors)}},
        )
        for proc in survivors.values():
            proc.terminate()

        grace_deadline = time.monotonic() + self.grace_seconds
        for profile, proc in survivors.items():
            try:
                proc.wait(timeout=max(0.0, grace_deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning(
                    f"Attempt {profile} ignored SIGTERM, killing",
                    extra={"event": "attempt_killed", "profile": profile},
                )
                proc.kill()
                proc.wait()

        return set(survivors)
