"""Spawn a child process with piped standard streams and timeout-bounded I/O."""

from __future__ import annotations

__version__ = "1.0.0"

from piped_process.backend import ProcessBackend, get_backend, is_available
from piped_process.errors import (
    BackendNotAvailableError,
    ChannelClosedError,
    ProcessError,
    ProcessIOError,
    SpawnError,
)
from piped_process.handle import ProcessHandle
from piped_process.piped_process import (
    PipedProcess,
    close,
    is_running,
    read_either,
    read_error,
    read_output,
    spawn,
    write,
)
from piped_process.quoting import build_command_line, quote_argument, split_command_line
from piped_process.read_result import ReadResult, ReadStatus, Stream

__all__ = [
    "BackendNotAvailableError",
    "ChannelClosedError",
    "PipedProcess",
    "ProcessBackend",
    "ProcessError",
    "ProcessHandle",
    "ProcessIOError",
    "ReadResult",
    "ReadStatus",
    "SpawnError",
    "Stream",
    "build_command_line",
    "close",
    "get_backend",
    "is_available",
    "is_running",
    "quote_argument",
    "read_either",
    "read_error",
    "read_output",
    "spawn",
    "split_command_line",
    "write",
]
