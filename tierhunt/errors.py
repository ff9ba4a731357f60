"""
Error classes for tierhunt.

These error types mark how a failure should be routed:
- TransientError: Safe to retry (lock contention, flaky store access)
- PermanentError: Do not retry (bad configuration, invalid state transitions)

Provider-side failures of the provisioning command are not exceptions; they are
plain text that the classifier turns into a Classification. Exceptions are
reserved for failures of the orchestrator's own machinery.
"""


class TierhuntError(Exception):
    """Base exception for tierhunt."""
    pass


class TransientError(TierhuntError):
    """
    Transient error - safe to retry on the next attempt or next run.

    Examples:
    - State lock held by another process
    - Store write raced with another writer
    """
    pass


class PermanentError(TierhuntError):
    """
    Permanent error - do not retry.

    Examples:
    - Missing or invalid configuration
    - Illegal instance status transition
    """
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass


class LockTimeoutError(TransientError):
    """Raised when an exclusive lock cannot be acquired within the wait bound."""

    def __init__(self, lock_path, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock after {timeout}s: {lock_path}")


class InvalidTransitionError(PermanentError):
    """Raised when an instance status change violates the allowed transitions."""

    def __init__(self, name: str, current: str, requested: str):
        self.name = name
        self.current = current
        self.requested = requested
        super().__init__(
            f"Instance '{name}' cannot move from '{current}' to '{requested}'"
        )


class AttemptInterrupted(TierhuntError):
    """Raised inside an attempt process when it receives a termination signal."""
    pass
