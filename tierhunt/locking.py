"""
Exclusive file locks for state shared between attempt processes.

A lock is a sibling file created with O_CREAT | O_EXCL that records the
holder's pid, host and acquisition time. A lock is reclaimed when it is older
than the stale threshold, or when its holder ran on this host and is gone.
Reclaimers serialize on an flock over a sibling ".reclaim" file and re-read
the holder under it, so a lock re-acquired by another waiter is never removed.
"""

import errno
import fcntl
import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Callable, Optional

from tierhunt.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0
DEFAULT_STALE_SECONDS = 300.0
DEFAULT_POLL_INTERVAL = 0.05


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class FileLock:
    """
    Exclusive lock on a file path.

    Usage:
        with FileLock(state_file.with_suffix(".lock")):
            ... read, modify, write ...

    Args:
        lock_path: Path of the lock file itself
        timeout: Seconds to wait before raising LockTimeoutError
        stale_seconds: Age after which an existing lock is reclaimed
        poll_interval: Sleep between acquisition tries
    """

    def __init__(
        self,
        lock_path: Path,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.stale_seconds = stale_seconds
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """
        Acquire the lock, waiting up to `timeout` seconds.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self._clock()

        while True:
            if self._try_create():
                self._held = True
                return

            if self._reclaim_if_stale():
                continue

            if self._clock() - started >= self.timeout:
                raise LockTimeoutError(self.lock_path, self.timeout)

            self._sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        self._held = False
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file vanished before release: {self.lock_path}")

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except OSError as e:
            if e.errno == errno.EEXIST:
                return False
            raise

        holder = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": self._clock(),
        }
        with os.fdopen(fd, "w") as f:
            json.dump(holder, f)
        return True

    def _read_holder(self) -> Optional[dict]:
        try:
            with open(self.lock_path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Holder is mid-write or the file is garbage; age decides.
            return {}

    def _is_stale(self, holder: dict) -> bool:
        acquired_at = holder.get("acquired_at")
        if acquired_at is None:
            try:
                acquired_at = self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return False

        if self._clock() - float(acquired_at) > self.stale_seconds:
            return True

        pid = holder.get("pid")
        if pid and holder.get("host") == socket.gethostname():
            return not _pid_alive(int(pid))

        return False

    @property
    def guard_path(self) -> Path:
        return self.lock_path.with_name(self.lock_path.name + ".reclaim")

    def _reclaim_if_stale(self) -> bool:
        holder = self._read_holder()
        if holder is None:
            # Released between our create attempt and the read.
            return True

        if not self._is_stale(holder):
            return False

        # Confirm under the guard: another waiter may have reclaimed and
        # re-acquired since the read above.
        with open(self.guard_path, "a") as guard:
            fcntl.flock(guard, fcntl.LOCK_EX)
            try:
                current = self._read_holder()
                if current is None:
                    return True
                if not self._is_stale(current):
                    return False

                logger.warning(
                    f"Reclaiming stale lock {self.lock_path} held by pid {current.get('pid')}",
                    extra={"event": "stale_lock_reclaimed", "metadata": {"holder": current}},
                )
                try:
                    self.lock_path.unlink()
                except FileNotFoundError:
                    pass
                return True
            finally:
                fcntl.flock(guard, fcntl.LOCK_UN)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"FileLock(path={self.lock_path}, held={self._held})"
