"""Per-host serialization of firewall mutations.

The live firewall has no multi-writer isolation, so every mutation takes
the HostLock end to end. Waiters are served first come, first served.
The lock is re-entrant for its owning thread, which lets a batch drive
the reconciler without releasing it between operations.
"""

import fcntl
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from hostfw.core.exceptions import ConfigurationError
from hostfw.core.output import console


class HostLock:
    """FIFO, re-entrant mutual exclusion for one host.

    Threads in this process queue on a ticket counter. When ``lock_path``
    is given, the outermost acquisition also takes an exclusive
    ``flock`` on that file so other processes on the host are serialized.
    """

    def __init__(self, lock_path: Optional[Path] = None) -> None:
        self.lock_path = Path(lock_path) if lock_path else None
        self._cond = threading.Condition(threading.Lock())
        self._next_ticket = 0
        self._serving = 0
        self._owner: Optional[int] = None
        self._depth = 0
        self._fd: Optional[int] = None
        self._abandoned: set[int] = set()

    @property
    def locked(self) -> bool:
        """True while some thread holds the lock."""
        with self._cond:
            return self._owner is not None

    def held_by_current_thread(self) -> bool:
        with self._cond:
            return self._owner == threading.get_ident()

    @property
    def depth(self) -> int:
        """Nesting level of the current owner, 0 when free."""
        with self._cond:
            return self._depth

    def acquire(self) -> None:
        """Block until the lock is ours."""
        me = threading.get_ident()
        with self._cond:
            if self._owner == me:
                self._depth += 1
                return
            ticket = self._next_ticket
            self._next_ticket += 1
            try:
                while self._serving != ticket or self._owner is not None:
                    self._cond.wait()
            except BaseException:
                # Interrupted waiter gives up its place in the queue
                self._abandoned.add(ticket)
                self._skip_abandoned()
                self._cond.notify_all()
                raise
            self._owner = me
            self._depth = 1

        try:
            self._lock_file()
        except BaseException:
            self._hand_over()
            raise

    def release(self) -> None:
        """Release one level of ownership."""
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("HostLock released by a thread that does not own it")
            self._depth -= 1
            if self._depth:
                return

        self._unlock_file()
        self._hand_over()

    @contextmanager
    def hold(self) -> Generator["HostLock", None, None]:
        """Context manager around acquire/release."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def _hand_over(self) -> None:
        with self._cond:
            self._owner = None
            self._depth = 0
            self._serving += 1
            self._skip_abandoned()
            self._cond.notify_all()

    def _skip_abandoned(self) -> None:
        while self._owner is None and self._serving in self._abandoned:
            self._abandoned.discard(self._serving)
            self._serving += 1

    def _lock_file(self) -> None:
        if self.lock_path is None:
            return
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot open lock file: {self.lock_path}",
                hint="Run as root or set lock_path in the configuration",
                details=[str(e)],
            ) from e
        console.debug(f"Waiting for host lock {self.lock_path}")
        fcntl.flock(fd, fcntl.LOCK_EX)
        self._fd = fd

    def _unlock_file(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class CancelToken:
    """Cooperative cancellation flag, checked between batch operations."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
