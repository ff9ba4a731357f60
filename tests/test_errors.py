"""Tests for tierhunt error classes.

Tests cover:
- TransientError and PermanentError hierarchy
- Errors carrying context (lock path, transition)
- AttemptInterrupted is outside the retry categories
"""

import pytest
from tierhunt.errors import (
    AttemptInterrupted,
    ConfigError,
    InvalidTransitionError,
    LockTimeoutError,
    PermanentError,
    TierhuntError,
    TransientError,
)


class TestTierhuntError:
    """Tests for base TierhuntError."""

    def test_is_exception(self):
        """TierhuntError should be an Exception."""
        assert issubclass(TierhuntError, Exception)

    def test_has_message(self):
        """TierhuntError should have a message."""
        error = TierhuntError("my message")
        assert str(error) == "my message"


class TestTransientError:
    """Tests for TransientError."""

    def test_is_tierhunt_error(self):
        """TransientError should be a TierhuntError."""
        assert issubclass(TransientError, TierhuntError)

    def test_can_be_caught_as_tierhunt_error(self):
        """TransientError can be caught as TierhuntError."""
        with pytest.raises(TierhuntError):
            raise TransientError("store busy")


class TestPermanentError:
    """Tests for PermanentError."""

    def test_is_tierhunt_error(self):
        """PermanentError should be a TierhuntError."""
        assert issubclass(PermanentError, TierhuntError)

    def test_not_transient(self):
        """PermanentError and TransientError are distinct categories."""
        assert not issubclass(PermanentError, TransientError)
        assert not issubclass(TransientError, PermanentError)

    def test_config_error_is_permanent(self):
        """ConfigError should never be retried."""
        assert issubclass(ConfigError, PermanentError)


class TestLockTimeoutError:
    """Tests for LockTimeoutError."""

    def test_is_transient(self):
        """Lock contention is safe to retry."""
        assert issubclass(LockTimeoutError, TransientError)

    def test_carries_context(self):
        """LockTimeoutError keeps the lock path and timeout."""
        error = LockTimeoutError("/tmp/state.lock", 30)
        assert error.lock_path == "/tmp/state.lock"
        assert error.timeout == 30
        assert "/tmp/state.lock" in str(error)


class TestInvalidTransitionError:
    """Tests for InvalidTransitionError."""

    def test_is_permanent(self):
        """Invalid transitions are permanent errors."""
        assert issubclass(InvalidTransitionError, PermanentError)

    def test_message(self):
        """Message names the instance and both statuses."""
        error = InvalidTransitionError("a1-flex-sg", "running", "created")
        assert error.current == "running"
        assert error.requested == "created"
        assert "a1-flex-sg" in str(error)


class TestAttemptInterrupted:
    """Tests for AttemptInterrupted."""

    def test_not_transient_or_permanent(self):
        """Interruption must not be swallowed by transient/permanent handlers."""
        assert issubclass(AttemptInterrupted, TierhuntError)
        assert not issubclass(AttemptInterrupted, TransientError)
        assert not issubclass(AttemptInterrupted, PermanentError)
