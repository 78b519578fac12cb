"""POSIX process backend.

Channels are ``os.pipe()`` pairs, the child is created with ``fork`` and
``execvp``, and reads wait for readiness with ``select.poll``.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import math
import os
import select
import signal
import time
from collections.abc import Mapping, Sequence
from typing import NamedTuple, NoReturn

from piped_process.errors import ProcessIOError, SpawnError
from piped_process.handle import TERMINATE_TIMEOUT, ProcessHandle, check_buffer_size
from piped_process.process_utils import get_process_info, is_process_alive
from piped_process.read_result import ReadResult, Stream
from piped_process.writer import write_all

logger = logging.getLogger(__name__)

# Exit status of a child whose exec step failed (shell convention).
EXEC_FAILURE_STATUS = 127

_REAP_POLL_INTERVAL = 0.01
# Largest timeout poll() accepts; longer waits are treated as unbounded.
_MAX_POLL_MS = 2**31 - 1


class _Channels(NamedTuple):
    """The three pipes, each as a (read_fd, write_fd) pair."""

    stdin: tuple[int, int]
    stdout: tuple[int, int]
    stderr: tuple[int, int]

    def parent_ends(self) -> tuple[int, int, int]:
        return self.stdin[1], self.stdout[0], self.stderr[0]

    def child_ends(self) -> tuple[int, int, int]:
        return self.stdin[0], self.stdout[1], self.stderr[1]


class PosixHandle(ProcessHandle):
    """Handle owning the parent ends of the three pipes.

    The pid doubles as the wait token.
    """

    def __init__(self, pid: int, stdin_fd: int, stdout_fd: int, stderr_fd: int) -> None:
        super().__init__(pid)
        self.stdin_fd = stdin_fd
        self.stdout_fd = stdout_fd
        self.stderr_fd = stderr_fd

    def endpoint(self, stream: Stream) -> int:
        return self.stdout_fd if stream is Stream.OUTPUT else self.stderr_fd

    def release_endpoints(self) -> None:
        """Close the three pipe ends, each exactly once."""
        for name in ("stdin_fd", "stdout_fd", "stderr_fd"):
            fd = getattr(self, name)
            if fd < 0:
                continue
            setattr(self, name, -1)
            try:
                os.close(fd)
            except OSError as e:
                logger.warning("Failed to close %s %d of process %s: %s", name, fd, self.pid, e)


def _close_fds(fds: Sequence[int]) -> None:
    for fd in fds:
        try:
            os.close(fd)
        except OSError as e:
            logger.debug("Ignoring close failure on fd %d: %s", fd, e)


def _open_channels() -> _Channels:
    """Allocate the stdin, stdout and stderr pipes.

    ``os.pipe`` descriptors are close-on-exec, so nothing leaks into the
    child except what is explicitly duplicated onto fds 0-2.
    """
    pipes: list[tuple[int, int]] = []
    try:
        for _ in range(3):
            pipes.append(os.pipe())
    except OSError as e:
        _close_fds([fd for pair in pipes for fd in pair])
        msg = f"Failed to allocate pipes: {e}"
        raise SpawnError(msg) from e
    return _Channels(*pipes)


def _exec_child(
    command: str,
    argv: list[str],
    channels: _Channels,
    cwd: str | None,
    env: Mapping[str, str] | None,
) -> NoReturn:
    """Wire the pipes onto fds 0-2 and replace the forked child image."""
    try:
        _close_fds(channels.parent_ends())
        # Move child ends above 2 first so dup2 never clobbers one of them.
        child_fds = [fcntl.fcntl(fd, fcntl.F_DUPFD, 3) for fd in channels.child_ends()]
        _close_fds(channels.child_ends())
        for target, fd in enumerate(child_fds):
            os.dup2(fd, target)
        _close_fds(child_fds)

        if cwd is not None:
            os.chdir(cwd)
        if env is None:
            os.execvp(command, argv)
        else:
            os.execvpe(command, argv, env)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.write(2, f"execvp: {command}: {e.strerror or e}\n".encode(errors="replace"))
    finally:
        os._exit(EXEC_FAILURE_STATUS)


def _remaining_ms(deadline: float | None) -> int | None:
    if deadline is None:
        return None
    return max(0, math.ceil((deadline - time.monotonic()) * 1000))


def _deadline(timeout_ms: int | None) -> float | None:
    if timeout_ms is None or timeout_ms < 0 or timeout_ms > _MAX_POLL_MS:
        return None
    return time.monotonic() + timeout_ms / 1000


def _read_ready(fd: int, size: int) -> bytes | None:
    """Read from a descriptor poll reported readable; None means it would block."""
    try:
        return os.read(fd, size)
    except BlockingIOError:
        return None
    except OSError as e:
        msg = f"Read from fd {fd} failed: {e}"
        raise ProcessIOError(msg) from e


def _poll(poller: select.poll, timeout_ms: int | None) -> list[tuple[int, int]]:
    try:
        return poller.poll(timeout_ms)
    except OSError as e:
        msg = f"poll() failed: {e}"
        raise ProcessIOError(msg) from e


class PosixBackend:
    """pipe/fork/exec/poll implementation of the process backend."""

    name = "posix"

    def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> PosixHandle:
        argv = [command, *args]
        channels = _open_channels()

        try:
            pid = os.fork()
        except OSError as e:
            _close_fds(channels.parent_ends() + channels.child_ends())
            msg = f"Failed to fork for {command!r}: {e}"
            raise SpawnError(msg) from e

        if pid == 0:
            _exec_child(command, argv, channels, cwd, env)

        _close_fds(channels.child_ends())
        stdin_fd, stdout_fd, stderr_fd = channels.parent_ends()
        try:
            os.set_blocking(stdout_fd, False)
            os.set_blocking(stderr_fd, False)
        except OSError as e:
            _close_fds(channels.parent_ends())
            _kill_and_reap(pid)
            msg = f"Failed to configure pipes for {command!r}: {e}"
            raise SpawnError(msg) from e

        logger.debug("Spawned %s as pid %s", argv, pid)
        return PosixHandle(pid, stdin_fd, stdout_fd, stderr_fd)

    def is_running(self, handle: PosixHandle) -> bool:
        if handle.closed or handle.exited:
            return False
        if is_process_alive(handle.pid):
            return True
        handle.exited = True
        return False

    def write(self, handle: PosixHandle, data: bytes) -> int:
        handle.ensure_open()
        return write_all(handle.stdin_fd, data)

    def read_output(self, handle: PosixHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        return self._read_stream(handle, Stream.OUTPUT, buffer_size, timeout_ms)

    def read_error(self, handle: PosixHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        return self._read_stream(handle, Stream.ERROR, buffer_size, timeout_ms)

    def _read_stream(
        self, handle: PosixHandle, stream: Stream, buffer_size: int, timeout_ms: int | None
    ) -> ReadResult:
        handle.ensure_open()
        size = check_buffer_size(buffer_size)
        fd = handle.endpoint(stream)
        deadline = _deadline(timeout_ms)

        poller = select.poll()
        poller.register(fd, select.POLLIN)
        while True:
            events = _poll(poller, _remaining_ms(deadline))
            if not events:
                return ReadResult.timed_out(stream)
            _, revents = events[0]
            if not revents & select.POLLIN:
                break
            data = _read_ready(fd, size)
            if data is not None:
                break
            # Spurious wakeup; wait out the rest of the timeout.
            if deadline is not None and time.monotonic() >= deadline:
                return ReadResult.timed_out(stream)

        if revents & select.POLLIN:
            if data:
                return ReadResult.of(data, stream)
            handle.ended.add(stream)
            return ReadResult.end_of_stream(stream)
        if revents & select.POLLHUP:
            handle.ended.add(stream)
            return ReadResult.end_of_stream(stream)
        msg = f"poll() reported events {revents:#x} on {stream.name.lower()} of process {handle.pid}"
        raise ProcessIOError(msg)

    def read_either(self, handle: PosixHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        handle.ensure_open()
        size = check_buffer_size(buffer_size)
        deadline = _deadline(timeout_ms)

        poller = select.poll()
        watched: dict[int, Stream] = {}
        for stream in (Stream.OUTPUT, Stream.ERROR):
            if stream not in handle.ended:
                fd = handle.endpoint(stream)
                poller.register(fd, select.POLLIN)
                watched[fd] = stream

        while watched:
            events = _poll(poller, _remaining_ms(deadline))
            if not events:
                return ReadResult.timed_out()

            # Ties go to whichever descriptor poll() lists first.
            for fd, revents in events:
                stream = watched[fd]
                if revents & select.POLLIN:
                    data = _read_ready(fd, size)
                    if data is None:
                        continue
                    if data:
                        return ReadResult.of(data, stream)
                elif not revents & select.POLLHUP:
                    msg = f"poll() reported events {revents:#x} on {stream.name.lower()} of process {handle.pid}"
                    raise ProcessIOError(msg)
                handle.ended.add(stream)
                poller.unregister(fd)
                del watched[fd]

            if deadline is not None and time.monotonic() >= deadline and watched:
                return ReadResult.timed_out()

        return ReadResult.end_of_stream()

    def close(self, handle: PosixHandle, grace_period: float) -> None:
        handle.closed = True
        handle.release_endpoints()

        if not _reap(handle, grace_period):
            logger.warning(
                "Process %s still running %.1fs after close, sending SIGTERM: %s",
                handle.pid,
                grace_period,
                get_process_info(handle.pid),
            )
            _send_signal(handle.pid, signal.SIGTERM)
            if not _reap(handle, TERMINATE_TIMEOUT):
                logger.warning("Process %s ignored SIGTERM for %.1fs, sending SIGKILL", handle.pid, TERMINATE_TIMEOUT)
                handle.returncode = _kill_and_reap(handle.pid)

        handle.exited = True
        logger.debug("Process %s reaped with status %s", handle.pid, handle.returncode)


def _send_signal(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        logger.debug("Process %s already gone before signal %s", pid, sig)


def _reap(handle: PosixHandle, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for the child to exit and record its status."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            reaped, status = os.waitpid(handle.pid, os.WNOHANG)
        except ChildProcessError:
            logger.debug("Process %s was reaped elsewhere; exit status unknown", handle.pid)
            return True
        if reaped == handle.pid:
            handle.returncode = os.waitstatus_to_exitcode(status)
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(_REAP_POLL_INTERVAL)


def _kill_and_reap(pid: int) -> int | None:
    _send_signal(pid, signal.SIGKILL)
    try:
        _, status = os.waitpid(pid, 0)
    except ChildProcessError:
        return None
    return os.waitstatus_to_exitcode(status)
