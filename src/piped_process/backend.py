"""Process backend protocol and platform selection.

Two backends implement the same operations: ``_posix`` (pipe/fork/exec/poll)
and ``_windows`` (CreateProcess/overlapped I/O). The backend is picked from
``os.name``; it is not a runtime option.
"""

from __future__ import annotations

import functools
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Protocol

from piped_process.errors import BackendNotAvailableError

if TYPE_CHECKING:
    from piped_process.handle import ProcessHandle
    from piped_process.read_result import ReadResult


class ProcessBackend(Protocol):
    """Operations every platform backend provides."""

    name: str

    def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle: ...
    def is_running(self, handle: ProcessHandle) -> bool: ...
    def write(self, handle: ProcessHandle, data: bytes) -> int: ...
    def read_output(self, handle: ProcessHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult: ...
    def read_error(self, handle: ProcessHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult: ...
    def read_either(self, handle: ProcessHandle, buffer_size: int, timeout_ms: int | None) -> ReadResult: ...
    def close(self, handle: ProcessHandle, grace_period: float) -> None: ...


def is_available() -> bool:
    """Check if a process backend exists for the current platform."""
    return os.name in ("posix", "nt")


@functools.cache
def get_backend() -> ProcessBackend:
    """Return the backend for the current platform.

    Raises:
        BackendNotAvailableError: If the platform has no backend.
    """
    if os.name == "nt":
        from piped_process._windows import WindowsBackend  # noqa: PLC0415

        return WindowsBackend()
    if os.name == "posix":
        from piped_process._posix import PosixBackend  # noqa: PLC0415

        return PosixBackend()
    msg = f"No process backend for os.name={os.name!r}"
    raise BackendNotAvailableError(msg)
