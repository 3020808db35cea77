"""
Knox Lock — OS-level advisory locking of the bunker file itself.

The CLI and the daemon are separate processes sharing one file, so the
file lock is the only mutual-exclusion primitive between them. Writers hold
an exclusive lock across truncate + write + flush + fsync; readers take a
shared lock so they never observe a half-written envelope.

Uses fcntl on Unix/Linux/Mac and msvcrt on Windows (where every lock is
exclusive).
"""
import os
import logging
from contextlib import contextmanager
from collections.abc import Iterator
from typing import BinaryIO, Union

try:
    import fcntl
    _USE_WINDOWS_LOCKING = False
except ImportError:  # pragma: no cover
    import msvcrt
    _USE_WINDOWS_LOCKING = True

logger = logging.getLogger("knox.lock")

PathLike = Union[str, os.PathLike]


def _lock(fh: BinaryIO, exclusive: bool) -> None:
    if _USE_WINDOWS_LOCKING:  # pragma: no cover
        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_LOCK, 1)
    else:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)


def _unlock(fh: BinaryIO) -> None:
    if _USE_WINDOWS_LOCKING:  # pragma: no cover
        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


@contextmanager
def locked_file(
    path: PathLike,
    mode: str = "rb",
    exclusive: bool = False,
) -> Iterator[BinaryIO]:
    """Open ``path`` and hold a lock on it for the duration of the block.

    Args:
        path: File to open and lock.
        mode: Binary open mode. Never use ``"wb"``: truncating before the
            lock is held would expose an empty file to readers.
        exclusive: Exclusive (writer) lock instead of a shared one.

    Yields:
        The open, locked file object.

    Raises:
        OSError: Opening or locking failed; never translated.
    """
    if "w" in mode:
        raise ValueError("locked_file does not accept truncating modes")
    with open(path, mode) as fh:
        _lock(fh, exclusive)
        logger.debug("Locked %s (%s)", path, "exclusive" if exclusive else "shared")
        try:
            yield fh
        finally:
            try:
                fh.flush()
            finally:
                _unlock(fh)
                logger.debug("Unlocked %s", path)


def rewrite(fh: BinaryIO, data: bytes) -> None:
    """Replace the whole content of a locked file.

    Must be called while holding an exclusive lock on ``fh``.
    """
    fh.seek(0)
    fh.truncate()
    fh.write(data)
    fh.flush()
    os.fsync(fh.fileno())
