"""Exception types raised by piped_process.

Timeouts and end-of-stream are not errors; reads report them through
:class:`piped_process.read_result.ReadResult`.
"""


class ProcessError(Exception):
    """Base class for every error raised by piped_process."""


class SpawnError(ProcessError, OSError):
    """Raised when channels or the child process could not be created.

    No handle exists when this is raised; everything allocated during the
    attempt has already been released.
    """


class ProcessIOError(ProcessError, OSError):
    """Raised on a hard read, write or wait failure."""


class ChannelClosedError(ProcessIOError):
    """Raised when writing to a child that has closed its standard input."""


class BackendNotAvailableError(ProcessError):
    """Raised when no process backend exists for the current platform."""
