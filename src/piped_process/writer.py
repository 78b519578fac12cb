"""Blocking, complete writes to a child's standard input."""

from __future__ import annotations

import errno
import logging
import os

from piped_process.errors import ChannelClosedError, ProcessIOError

logger = logging.getLogger(__name__)

# fsync() on a pipe fails with one of these; the bytes are already in the
# kernel pipe buffer at that point.
_UNFLUSHABLE_ERRNOS = frozenset({errno.EINVAL, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EROFS})

# ERROR_BROKEN_PIPE, ERROR_NO_DATA
_BROKEN_PIPE_WINERRORS = frozenset({109, 232})


def _is_broken_pipe(error: OSError) -> bool:
    if isinstance(error, BrokenPipeError):
        return True
    return getattr(error, "winerror", None) in _BROKEN_PIPE_WINERRORS


def write_all(fd: int, data: bytes, flush: bool = True) -> int:
    """Write every byte of ``data`` to ``fd`` and return ``len(data)``.

    Short writes are continued and interrupted writes retried. A reader that
    has gone away raises :class:`ChannelClosedError`.
    """
    view = memoryview(data)
    total = 0
    while total < len(view):
        try:
            written = os.write(fd, view[total:])
        except InterruptedError:
            continue
        except OSError as e:
            if _is_broken_pipe(e):
                msg = "Child process closed its standard input"
                raise ChannelClosedError(msg) from e
            msg = f"Write to child standard input failed: {e}"
            raise ProcessIOError(msg) from e
        total += written

    if flush:
        _flush(fd)
    logger.debug("Wrote %d bytes to fd %d", total, fd)
    return total


def _flush(fd: int) -> None:
    try:
        os.fsync(fd)
    except OSError as e:
        if e.errno in _UNFLUSHABLE_ERRNOS:
            return
        msg = f"Flushing child standard input failed: {e}"
        raise ProcessIOError(msg) from e
