"""
Host-wide mutual exclusion for mutating workflows.

InstanceLock takes a non-blocking exclusive flock() on a lock file. A second
invocation fails immediately with LockContentionError. When the host cannot
provide flock() at all the lock degrades to a no-op with a warning.
"""

from __future__ import annotations

import errno
import json
import os
from pathlib import Path
from types import TracebackType

from anytlsctl.errors import LockContentionError
from anytlsctl.logging import get_logger

try:
    import fcntl
except ImportError:  # not a POSIX host
    fcntl = None  # type: ignore[assignment]

logger = get_logger(__name__)

# flock() errors that mean "locking is not supported here", not contention
_UNSUPPORTED_ERRNOS = {errno.ENOLCK, errno.EOPNOTSUPP, errno.ENOSYS}


class InstanceLock:
    """
    Advisory exclusive lock held for the lifetime of one invocation.

    Attributes:
        path: Lock file path.
        degraded: True when acquire() fell back to a no-op.

    Example:
        >>> with InstanceLock("/var/lock/anytls_manager.lock"):
        ...     ...  # mutate binary, config, unit
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.degraded = False
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        """True while this process holds the lock."""
        return self._fd is not None

    def _degrade(self, reason: str) -> None:
        self.degraded = True
        logger.warning(
            f"Locking unavailable ({reason}); continuing without mutual exclusion",
            extra={"path": str(self.path)},
        )

    def acquire(self) -> None:
        """
        Take the lock without waiting.

        Raises:
            LockContentionError: If another invocation holds it.
        """
        if self.held or self.degraded:
            return

        if fcntl is None:
            self._degrade("fcntl not available")
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            holder = self._read_holder()
            raise LockContentionError(
                f"Another anytlsctl run holds the lock ({self.path}); try again later",
                details={"path": str(self.path), "holder": holder},
            ) from e
        except OSError as e:
            os.close(fd)
            if e.errno in _UNSUPPORTED_ERRNOS:
                self._degrade(os.strerror(e.errno))
                return
            raise

        self._fd = fd
        self._write_holder(fd)
        logger.debug("Lock acquired", extra={"path": str(self.path)})

    def release(self) -> None:
        """Release the lock; the file stays behind for diagnostics."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Lock released", extra={"path": str(self.path)})

    def _write_holder(self, fd: int) -> None:
        payload = json.dumps({"pid": os.getpid(), "path": str(self.path)})
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, payload.encode())

    def _read_holder(self) -> dict[str, object] | None:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def __enter__(self) -> InstanceLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
