"""Process handle state shared by both backends."""

from __future__ import annotations

from piped_process.errors import ProcessError
from piped_process.read_result import Stream

# Read buffer used when the caller does not pass one; reads return at most
# buffer_size - 1 bytes.
DEFAULT_BUFFER_SIZE = 4096
DEFAULT_TIMEOUT_MS = 1000
# Seconds close() waits for a voluntary exit before terminating the child.
DEFAULT_GRACE_PERIOD = 1.0
# Seconds close() waits after terminating the child.
TERMINATE_TIMEOUT = 5.0


class ProcessHandle:
    """Opaque record for one spawned child and its three endpoints.

    Backends subclass this with their native endpoint types. Callers should
    only read ``pid``, ``returncode`` and ``closed``.
    """

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.closed = False
        # Set once a liveness probe observes the exit; never reset.
        self.exited = False
        # Streams that reported end-of-stream; read_either stops waiting on them.
        self.ended: set[Stream] = set()

    def ensure_open(self) -> None:
        if self.closed:
            msg = f"Handle for process {self.pid} is closed"
            raise ProcessError(msg)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<{type(self).__name__} pid={self.pid} {state}>"


def check_buffer_size(buffer_size: int) -> int:
    """Validate ``buffer_size`` and return the number of bytes a read may return."""
    if buffer_size < 2:
        msg = f"buffer_size must be at least 2, got {buffer_size}"
        raise ValueError(msg)
    return buffer_size - 1
