"""Child processes with piped standard streams and timeout-bounded I/O.

## Basic Usage

### Read a child's output
```python
with PipedProcess(sys.executable, ["-c", "print('hello')"]) as proc:
    result = proc.read_output(timeout_ms=5000)
    print(result.data)  # b"hello\\n"
```

### Talk to an interactive child
```python
proc = PipedProcess("cat")
proc.write(b"ping\\n")
result = proc.read_output(timeout_ms=1000)
if result.timeout:
    ...  # nothing yet, try again
proc.close()
```

### Multiplex output and error
```python
while True:
    result = proc.read_either(timeout_ms=250)
    if result.eof:
        break
    if result:
        handle_chunk(result.source, result.data)
```

### Functional interface
```python
handle = spawn("cat", [])
write(handle, b"data")
read_output(handle, 4096, 1000)
close(handle)
```

## Semantics

- Reads wait at most ``timeout_ms`` milliseconds (``None`` waits forever,
  ``0`` polls) and return at most ``buffer_size - 1`` bytes.
- A read returns a ``ReadResult`` whose status tells data, timeout and
  end-of-stream apart. Hard failures raise ``ProcessIOError``.
- ``write`` writes the whole buffer or raises.
- ``close`` releases the three endpoints, waits ``grace_period`` seconds for
  the child to exit, then terminates it. Call it exactly once per handle.
- Handles are not thread-safe; serialize access to one handle externally.
"""

from __future__ import annotations

import logging
import os
import warnings
from collections.abc import Mapping, Sequence
from typing import Any

from piped_process.backend import ProcessBackend, get_backend
from piped_process.handle import DEFAULT_BUFFER_SIZE, DEFAULT_GRACE_PERIOD, DEFAULT_TIMEOUT_MS, ProcessHandle
from piped_process.quoting import build_command_line
from piped_process.read_result import ReadResult

logger = logging.getLogger(__name__)


class PipedProcess:
    """
    A spawned child process with its stdin, stdout and stderr piped to us.

    The process starts in the constructor; a ``SpawnError`` means nothing
    was started and nothing needs cleaning up. Use it as a context manager
    or call ``close()`` exactly once.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        backend: ProcessBackend | None = None,
    ) -> None:
        """
        Spawn ``command`` with ``args``.

        Args:
            command: Program to run; looked up on PATH.
            args: Arguments passed after the program name.
            cwd: Working directory for the child. None inherits ours.
            env: Complete environment for the child. None inherits ours.
            backend: Backend override; defaults to the platform backend.
        """
        self.command = command
        self.args = list(args)
        self.cwd = os.fspath(cwd) if cwd is not None else None
        self._backend = backend if backend is not None else get_backend()
        self._handle: ProcessHandle = self._backend.spawn(self.command, self.args, cwd=self.cwd, env=env)

    @property
    def handle(self) -> ProcessHandle:
        return self._handle

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def returncode(self) -> int | None:
        """Exit code recorded by ``close()``, or None before that."""
        return self._handle.returncode

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def get_command_str(self) -> str:
        return build_command_line(self.command, self.args)

    def is_running(self) -> bool:
        """Probe whether the child is still executing. Never blocks."""
        return self._backend.is_running(self._handle)

    def write(self, data: bytes) -> int:
        """Write all of ``data`` to the child's standard input."""
        return self._backend.write(self._handle, data)

    def read_output(
        self, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
    ) -> ReadResult:
        return self._backend.read_output(self._handle, buffer_size, timeout_ms)

    def read_error(
        self, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
    ) -> ReadResult:
        return self._backend.read_error(self._handle, buffer_size, timeout_ms)

    def read_either(
        self, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
    ) -> ReadResult:
        """
        Read from whichever of output and error has data first.

        ``result.source`` tells which stream the bytes came from. When both
        are ready at once the pick is up to the platform's wait primitive.
        End-of-stream is reported only once both streams have ended.
        """
        return self._backend.read_either(self._handle, buffer_size, timeout_ms)

    def close(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """
        Close the pipes and reclaim the child.

        Args:
            grace_period: Seconds to wait for a voluntary exit before the
                child is terminated.
        """
        close(self._handle, grace_period=grace_period, backend=self._backend)

    def __enter__(self) -> PipedProcess:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: Any | None) -> bool:
        if not self._handle.closed:
            self.close()
        return False

    def __repr__(self) -> str:
        return f"<PipedProcess pid={self.pid} command={self.get_command_str()!r}>"


def spawn(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ProcessHandle:
    """Spawn ``command`` and return its handle.

    Raises:
        SpawnError: If the channels or the process could not be created.
    """
    return get_backend().spawn(command, list(args), cwd=os.fspath(cwd) if cwd is not None else None, env=env)


def close(
    handle: ProcessHandle,
    grace_period: float = DEFAULT_GRACE_PERIOD,
    backend: ProcessBackend | None = None,
) -> None:
    """Release ``handle``'s endpoints and reclaim its process.

    A second call on the same handle does nothing and emits a warning.
    """
    if handle.closed:
        warnings.warn(f"Process {handle.pid} handle closed twice", UserWarning, stacklevel=2)
        return
    logger.debug("Closing process %s", handle.pid)
    (backend or get_backend()).close(handle, grace_period)


def is_running(handle: ProcessHandle) -> bool:
    return get_backend().is_running(handle)


def write(handle: ProcessHandle, data: bytes) -> int:
    return get_backend().write(handle, data)


def read_output(
    handle: ProcessHandle, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
) -> ReadResult:
    return get_backend().read_output(handle, buffer_size, timeout_ms)


def read_error(
    handle: ProcessHandle, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
) -> ReadResult:
    return get_backend().read_error(handle, buffer_size, timeout_ms)


def read_either(
    handle: ProcessHandle, buffer_size: int = DEFAULT_BUFFER_SIZE, timeout_ms: int | None = DEFAULT_TIMEOUT_MS
) -> ReadResult:
    return get_backend().read_either(handle, buffer_size, timeout_ms)
