"""
Cross-process lock files for shared cache metadata.

Several processes may share one cache root, so updates to its index are
serialized through an OS-level lock on a sidecar ``.lock`` file:
- Windows: msvcrt.locking()
- Unix/Linux/macOS: fcntl.flock()

The lock is taken on a dedicated file rather than on the data file itself
because the data file is replaced with ``os.replace`` on every update.
"""

import contextlib
import logging
import platform
import time
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from cloudpack.exceptions import CloudpackError

log = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

if _IS_WINDOWS:
    import msvcrt
else:
    import fcntl


class FileLockError(CloudpackError):
    """Exception raised when file locking operations fail."""

    pass


class FileLockTimeout(FileLockError):
    """Exception raised when file locking times out."""

    pass


@contextlib.contextmanager
def locked_path(
    lock_path: Path,
    exclusive: bool = True,
    timeout: Optional[float] = 10.0,
    retry_interval: float = 0.05,
) -> Iterator[None]:
    """
    Hold an OS lock on ``lock_path`` for the duration of the block.

    Args:
        lock_path: Sidecar file to lock; created if missing
        exclusive: True for exclusive lock, False for shared lock
        timeout: Maximum seconds to wait for lock (None = wait forever)
        retry_interval: Seconds to wait between lock attempts

    Raises:
        FileLockTimeout: If lock cannot be acquired within timeout

    Usage:
        with locked_path(root / "index.lock"):
            index = load()
            index[key] = value
            save(index)
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    start_time = time.monotonic()

    with open(lock_path, "a+b") as handle:
        while True:
            try:
                _acquire(handle, exclusive)
                break
            except OSError as e:
                if timeout is not None and time.monotonic() - start_time >= timeout:
                    raise FileLockTimeout(
                        f"Could not lock {lock_path} within {timeout} seconds: {e}"
                    ) from e
                time.sleep(retry_interval)

        log.debug(f"Lock acquired on {lock_path} (exclusive={exclusive})")
        try:
            yield
        finally:
            try:
                _release(handle)
            except OSError as e:
                log.error(f"Error releasing lock on {lock_path}: {e}")


def _acquire(handle: BinaryIO, exclusive: bool) -> None:
    if _IS_WINDOWS:
        # msvcrt has no shared locks; lock the first byte exclusively
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        return

    mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)


def _release(handle: BinaryIO) -> None:
    if _IS_WINDOWS:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
