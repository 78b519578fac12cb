"""Windows process backend.

The child is created with ``CreateProcess`` from a quoted command line.
Output and error are named pipes whose parent end is opened for overlapped
I/O, so a read can wait on an event with a timeout and be cancelled when
the timeout elapses.
"""

from __future__ import annotations

import _winapi
import contextlib
import itertools
import logging
import math
import msvcrt
import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

from piped_process.errors import ProcessIOError, SpawnError
from piped_process.handle import TERMINATE_TIMEOUT, ProcessHandle, check_buffer_size
from piped_process.quoting import build_command_line
from piped_process.read_result import ReadResult, Stream
from piped_process.writer import write_all

logger = logging.getLogger(__name__)

_STILL_ACTIVE = 259
_PIPE_BUFFER_SIZE = 8192
_pipe_counter = itertools.count()


class _Channels(NamedTuple):
    """Pipe handles; ``*_read``/``*_write`` name the direction of each end."""

    stdin_read: int
    stdin_write: int
    stdout_read: int
    stdout_write: int
    stderr_read: int
    stderr_write: int

    def parent_ends(self) -> tuple[int, int, int]:
        return self.stdin_write, self.stdout_read, self.stderr_read

    def child_ends(self) -> tuple[int, int, int]:
        return self.stdin_read, self.stdout_write, self.stderr_write


class WindowsHandle(ProcessHandle):
    """Handle owning the parent pipe ends and the native process handle.

    Standard input is wrapped in a C runtime descriptor so it can share the
    POSIX writer; output and error stay raw handles for overlapped reads.
    """

    def __init__(self, pid: int, process_handle: int, stdin_fd: int, stdout_handle: int, stderr_handle: int) -> None:
        super().__init__(pid)
        self.process_handle = process_handle
        self.stdin_fd = stdin_fd
        self.stdout_handle = stdout_handle
        self.stderr_handle = stderr_handle
        # Bytes that completed on a stream while read_either returned the other one.
        self.carry: dict[Stream, bytes] = {}

    def endpoint(self, stream: Stream) -> int:
        return self.stdout_handle if stream is Stream.OUTPUT else self.stderr_handle

    def release_endpoints(self) -> None:
        """Close the three pipe ends, each exactly once."""
        if self.stdin_fd >= 0:
            fd, self.stdin_fd = self.stdin_fd, -1
            try:
                os.close(fd)
            except OSError as e:
                logger.warning("Failed to close stdin of process %s: %s", self.pid, e)
        for name in ("stdout_handle", "stderr_handle"):
            handle = getattr(self, name)
            if handle is None:
                continue
            setattr(self, name, None)
            try:
                _winapi.CloseHandle(handle)
            except OSError as e:
                logger.warning("Failed to close %s of process %s: %s", name, self.pid, e)

    def take_carry(self, stream: Stream, size: int) -> bytes | None:
        pending = self.carry.pop(stream, None)
        if not pending:
            return None
        if len(pending) > size:
            self.carry[stream] = pending[size:]
        return pending[:size]


def _close_handles(handles: Sequence[int]) -> None:
    for handle in handles:
        try:
            _winapi.CloseHandle(handle)
        except OSError as e:
            logger.debug("Ignoring CloseHandle failure on %s: %s", handle, e)


def _overlapped_pipe() -> tuple[int, int]:
    """Create an inbound pipe whose read end supports overlapped reads.

    Anonymous pipes cannot do overlapped I/O, so this is a single-instance
    named pipe with a process-unique name. Both ends are non-inheritable.
    """
    address = rf"\\.\pipe\piped-process-{os.getpid()}-{next(_pipe_counter)}-{os.urandom(4).hex()}"
    read_end = write_end = None
    try:
        read_end = _winapi.CreateNamedPipe(
            address,
            _winapi.PIPE_ACCESS_INBOUND | _winapi.FILE_FLAG_FIRST_PIPE_INSTANCE | _winapi.FILE_FLAG_OVERLAPPED,
            _winapi.PIPE_WAIT,
            1,
            0,
            _PIPE_BUFFER_SIZE,
            _winapi.NMPWAIT_WAIT_FOREVER,
            _winapi.NULL,
        )
        write_end = _winapi.CreateFile(
            address,
            _winapi.GENERIC_WRITE,
            0,
            _winapi.NULL,
            _winapi.OPEN_EXISTING,
            0,
            _winapi.NULL,
        )
        ov = _winapi.ConnectNamedPipe(read_end, overlapped=True)
        ov.GetOverlappedResult(True)
    except OSError:
        _close_handles([h for h in (read_end, write_end) if h is not None])
        raise
    return read_end, write_end


def _open_channels() -> _Channels:
    """Allocate the three pipes; only the child ends are made inheritable."""
    allocated: list[int] = []
    try:
        stdin_read, stdin_write = _winapi.CreatePipe(None, 0)
        allocated += [stdin_read, stdin_write]
        stdout_read, stdout_write = _overlapped_pipe()
        allocated += [stdout_read, stdout_write]
        stderr_read, stderr_write = _overlapped_pipe()
        allocated += [stderr_read, stderr_write]
        channels = _Channels(stdin_read, stdin_write, stdout_read, stdout_write, stderr_read, stderr_write)
        for handle in channels.child_ends():
            os.set_handle_inheritable(handle, True)
    except OSError as e:
        _close_handles(allocated)
        msg = f"Failed to allocate pipes: {e}"
        raise SpawnError(msg) from e
    return channels


def _timeout_arg(timeout_ms: int | None) -> int:
    # Waits are DWORD milliseconds; anything at or past INFINITE waits forever.
    if timeout_ms is None or timeout_ms < 0 or timeout_ms >= _winapi.INFINITE:
        return _winapi.INFINITE
    return timeout_ms


def _start_read(handle: WindowsHandle, stream: Stream, size: int) -> Any | None:
    """Issue an overlapped read; None means the writer already hung up."""
    try:
        ov, _ = _winapi.ReadFile(handle.endpoint(stream), size, overlapped=True)
    except BrokenPipeError:
        return None
    except OSError as e:
        msg = f"ReadFile on {stream.name.lower()} of process {handle.pid} failed: {e}"
        raise ProcessIOError(msg) from e
    return ov


def _finish_read(ov: Any, stream: Stream) -> bytes | None:
    """Collect a completed or cancelled read; None means end of stream."""
    try:
        _, err = ov.GetOverlappedResult(True)
    except BrokenPipeError:
        return None
    except OSError as e:
        msg = f"Read from {stream.name.lower()} failed: {e}"
        raise ProcessIOError(msg) from e
    if err == _winapi.ERROR_OPERATION_ABORTED:
        return b""
    return ov.getbuffer()


class WindowsBackend:
    """CreateProcess/overlapped-I/O implementation of the process backend."""

    name = "windows"

    def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> WindowsHandle:
        command_line = build_command_line(command, args)
        channels = _open_channels()
        startupinfo = subprocess.STARTUPINFO(
            dwFlags=subprocess.STARTF_USESTDHANDLES,
            hStdInput=channels.stdin_read,
            hStdOutput=channels.stdout_write,
            hStdError=channels.stderr_write,
            lpAttributeList={"handle_list": list(channels.child_ends())},
        )

        try:
            try:
                process_handle, thread_handle, pid, _ = _winapi.CreateProcess(
                    None,
                    command_line,
                    None,
                    None,
                    True,
                    subprocess.CREATE_NO_WINDOW,
                    dict(env) if env is not None else None,
                    cwd,
                    startupinfo,
                )
            finally:
                _close_handles(channels.child_ends())
        except OSError as e:
            _close_handles(channels.parent_ends())
            msg = f"Failed to create process {command_line!r}: {e}"
            raise SpawnError(msg) from e
        _winapi.CloseHandle(thread_handle)

        try:
            stdin_fd = msvcrt.open_osfhandle(channels.stdin_write, 0)
        except OSError as e:
            _close_handles(channels.parent_ends())
            _terminate_and_release(process_handle)
            msg = f"Failed to wrap standard input of {command_line!r}: {e}"
            raise SpawnError(msg) from e

        logger.debug("Spawned %s as pid %s", command_line, pid)
        return WindowsHandle(pid, process_handle, stdin_fd, channels.stdout_read, channels.stderr_read)

    def is_running(self, handle: WindowsHandle) -> bool:
        if handle.closed or handle.exited:
            return False
        try:
            running = _winapi.GetExitCodeProcess(handle.process_handle) == _STILL_ACTIVE
        except OSError as e:
            logger.debug("GetExitCodeProcess failed for %s: %s", handle.pid, e)
            running = False
        if not running:
            handle.exited = True
        return running

    def write(self, handle: WindowsHandle, data: bytes) -> int:
        handle.ensure_open()
        # FlushFileBuffers on a pipe blocks until the child has read everything.
        return write_all(handle.stdin_fd, data, flush=False)

    def read_output(self, handle: WindowsHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        return self._read_stream(handle, Stream.OUTPUT, buffer_size, timeout_ms)

    def read_error(self, handle: WindowsHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        return self._read_stream(handle, Stream.ERROR, buffer_size, timeout_ms)

    def _read_stream(
        self, handle: WindowsHandle, stream: Stream, buffer_size: int, timeout_ms: int | None
    ) -> ReadResult:
        handle.ensure_open()
        size = check_buffer_size(buffer_size)

        pending = handle.take_carry(stream, size)
        if pending:
            return ReadResult.of(pending, stream)
        if stream in handle.ended:
            return ReadResult.end_of_stream(stream)

        ov = _start_read(handle, stream, size)
        if ov is None:
            handle.ended.add(stream)
            return ReadResult.end_of_stream(stream)

        try:
            result = _winapi.WaitForSingleObject(ov.event, _timeout_arg(timeout_ms))
        except OSError as e:
            ov.cancel()
            _finish_read(ov, stream)
            msg = f"Waiting on {stream.name.lower()} of process {handle.pid} failed: {e}"
            raise ProcessIOError(msg) from e
        if result != _winapi.WAIT_OBJECT_0:
            ov.cancel()

        data = _finish_read(ov, stream)
        if data is None:
            handle.ended.add(stream)
            return ReadResult.end_of_stream(stream)
        if not data:
            return ReadResult.timed_out(stream)
        return ReadResult.of(data, stream)

    def read_either(self, handle: WindowsHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult:
        handle.ensure_open()
        size = check_buffer_size(buffer_size)

        for stream in (Stream.OUTPUT, Stream.ERROR):
            pending = handle.take_carry(stream, size)
            if pending:
                return ReadResult.of(pending, stream)

        timeout = _timeout_arg(timeout_ms)
        deadline = None if timeout == _winapi.INFINITE else time.monotonic() + timeout / 1000

        while True:
            reads: dict[Stream, Any] = {}
            for stream in (Stream.OUTPUT, Stream.ERROR):
                if stream in handle.ended:
                    continue
                ov = _start_read(handle, stream, size)
                if ov is None:
                    handle.ended.add(stream)
                else:
                    reads[stream] = ov
            if not reads:
                return ReadResult.end_of_stream()

            order = list(reads)
            remaining = timeout if deadline is None else max(0, math.ceil((deadline - time.monotonic()) * 1000))
            try:
                index = _winapi.WaitForMultipleObjects([reads[s].event for s in order], False, remaining)
            except OSError as e:
                for stream, ov in reads.items():
                    ov.cancel()
                    _finish_read(ov, stream)
                msg = f"Waiting on output and error of process {handle.pid} failed: {e}"
                raise ProcessIOError(msg) from e

            winner = None
            if _winapi.WAIT_OBJECT_0 <= index < _winapi.WAIT_OBJECT_0 + len(order):
                winner = order[index - _winapi.WAIT_OBJECT_0]

            completed: dict[Stream, bytes] = {}
            for stream, ov in reads.items():
                if stream is not winner:
                    ov.cancel()
                data = _finish_read(ov, stream)
                if data is None:
                    handle.ended.add(stream)
                elif data:
                    completed[stream] = data

            # The wait primitive's pick wins ties; a cancelled read that had
            # already completed keeps its bytes for the next read.
            for stream in ([winner] if winner in completed else []) + order:
                if stream in completed:
                    data = completed.pop(stream)
                    handle.carry.update(completed)
                    return ReadResult.of(data, stream)

            if winner is None:
                return ReadResult.timed_out()
            if deadline is not None and time.monotonic() >= deadline:
                return ReadResult.timed_out()

    def close(self, handle: WindowsHandle, grace_period: float) -> None:
        handle.closed = True
        handle.release_endpoints()
        process_handle, handle.process_handle = handle.process_handle, None
        try:
            grace_ms = _timeout_arg(int(grace_period * 1000))
            if _winapi.WaitForSingleObject(process_handle, grace_ms) == _winapi.WAIT_TIMEOUT:
                logger.warning("Process %s still running %.1fs after close, terminating", handle.pid, grace_period)
                with contextlib.suppress(PermissionError):
                    _winapi.TerminateProcess(process_handle, 1)
                if _winapi.WaitForSingleObject(process_handle, int(TERMINATE_TIMEOUT * 1000)) == _winapi.WAIT_TIMEOUT:
                    logger.warning(
                        "Process %s did not exit %.1fs after TerminateProcess; releasing its handle",
                        handle.pid,
                        TERMINATE_TIMEOUT,
                    )
            exit_code = _winapi.GetExitCodeProcess(process_handle)
            if exit_code != _STILL_ACTIVE:
                handle.returncode = exit_code
        finally:
            _winapi.CloseHandle(process_handle)
        handle.exited = True
        logger.debug("Process %s released with status %s", handle.pid, handle.returncode)


def _terminate_and_release(process_handle: int) -> None:
    try:
        with contextlib.suppress(PermissionError):
            _winapi.TerminateProcess(process_handle, 1)
        _winapi.WaitForSingleObject(process_handle, int(TERMINATE_TIMEOUT * 1000))
    finally:
        _winapi.CloseHandle(process_handle)
