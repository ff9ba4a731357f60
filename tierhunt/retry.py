"""
Retry policy helpers.

Two flavours:
- retry_transient(): result-based retry of a provisioning call, only while the
  classifier reports a transient category (INTERNAL_ERROR, NETWORK).
- retry_with_backoff(): exception-based retry for incidental operations such
  as notification delivery.

Delays come from backoff_delay(), a pure function, and sleeping goes through an
injectable callable so tests never wait for real.
"""

import logging
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

from tierhunt.classifier import Classification, is_transient

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3      # 3 retries = 4 total tries per zone
DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_DELAY = 40.0


class ClassifiedResult(Protocol):
    classification: Optional[Classification]


R = TypeVar("R", bound=ClassifiedResult)


def backoff_delay(attempt: int, base_delay: float, max_delay: Optional[float] = None) -> float:
    """
    Delay before retry number `attempt` (1-indexed).

    Args:
        attempt: Retry number, starting at 1
        base_delay: Delay for the first retry in seconds
        max_delay: Optional ceiling in seconds

    Returns:
        base_delay * 2 ** (attempt - 1), capped at max_delay
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if base_delay < 0:
        raise ValueError(f"base_delay must be >= 0, got {base_delay}")

    delay = base_delay * (2 ** (attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return float(delay)


def retry_transient(
    operation: Callable[[], R],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: Optional[float] = DEFAULT_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    label: str = "",
) -> R:
    """
    Run an operation, retrying while its result is classified as transient.

    Non-transient classifications (and success, where classification is None)
    are returned immediately for the caller's error routing.

    Args:
        operation: Zero-argument callable returning a result with a
            `classification` attribute
        max_retries: Retries after the first try
        base_delay: Base delay for exponential backoff
        max_delay: Ceiling for a single delay
        sleep: Sleep function (injectable for tests)
        deadline: Optional clock() value after which no retry is started
        clock: Monotonic clock used with deadline
        label: Context for log messages (e.g. the zone)

    Returns:
        The last result produced by operation
    """
    result = operation()
    retry = 0

    while is_transient(result.classification) and retry < max_retries:
        retry += 1
        delay = backoff_delay(retry, base_delay, max_delay)

        if deadline is not None and clock() + delay >= deadline:
            logger.warning(
                f"Not retrying {label or 'operation'}: backoff of {delay:.0f}s would overrun the run budget",
                extra={"event": "retry_budget_exhausted", "metadata": {"retry": retry, "delay": delay}},
            )
            break

        logger.info(
            f"Transient {result.classification.value} error{' in ' + label if label else ''}; "
            f"retry {retry}/{max_retries} in {delay:.0f}s",
            extra={
                "event": "transient_retry",
                "metadata": {"retry": retry, "delay": delay, "classification": result.classification.value},
            },
        )
        sleep(delay)
        result = operation()

    if is_transient(result.classification):
        logger.warning(
            f"Transient errors persisted{' in ' + label if label else ''} after {retry} retries",
            extra={"event": "retries_exhausted", "metadata": {"retries": retry}},
        )

    return result


def retry_with_backoff(
    func: Callable[[], Any],
    max_attempts: int = 3,
    backoff_seconds: float = 5,
    backoff_multiplier: float = 2.0,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """
    Retry a function with exponential backoff.

    With a deadline (on the `clock` timeline), a retry whose backoff would end
    past it is not attempted and the last error is raised.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        logger: Logger for retry messages
        sleep: Sleep function (injectable for tests)
        deadline: Optional clock value after which no retry starts
        clock: Time source for the deadline

    Returns:
        Result of successful function call

    Raises:
        Exception: If all retries exhausted
    """
    attempt = 1
    wait_time = backoff_seconds

    while attempt <= max_attempts:
        try:
            return func()

        except Exception as e:
            if attempt == max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if deadline is not None and clock() + wait_time >= deadline:
                if logger:
                    logger.error(f"Attempt {attempt} failed: {e}. No time left to retry")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt} failed: {e}. Retrying in {wait_time}s..."
                )

            sleep(wait_time)
            wait_time *= backoff_multiplier
            attempt += 1
