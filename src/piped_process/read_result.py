"""Read result types shared by both process backends."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Stream(enum.Enum):
    """A child output channel."""

    OUTPUT = 1
    ERROR = 2


class ReadStatus(enum.Enum):
    """Outcome of a timeout-bounded read."""

    DATA = "data"
    TIMEOUT = "timeout"
    END_OF_STREAM = "end_of_stream"


@dataclass(frozen=True)
class ReadResult:
    """Result of ``read_output``, ``read_error`` or ``read_either``.

    ``data`` is empty unless ``status`` is ``DATA``. ``source`` names the
    stream the bytes came from; it is ``None`` when ``read_either`` timed out
    or both streams have ended.

    A result is falsy when it carries no bytes, so ``if result:`` reads the
    same way as checking for a non-empty buffer.
    """

    status: ReadStatus
    data: bytes = b""
    source: Stream | None = None

    @classmethod
    def of(cls, data: bytes, source: Stream) -> ReadResult:
        return cls(ReadStatus.DATA, data, source)

    @classmethod
    def timed_out(cls, source: Stream | None = None) -> ReadResult:
        return cls(ReadStatus.TIMEOUT, b"", source)

    @classmethod
    def end_of_stream(cls, source: Stream | None = None) -> ReadResult:
        return cls(ReadStatus.END_OF_STREAM, b"", source)

    @property
    def timeout(self) -> bool:
        return self.status is ReadStatus.TIMEOUT

    @property
    def eof(self) -> bool:
        return self.status is ReadStatus.END_OF_STREAM

    def __bool__(self) -> bool:
        return self.status is ReadStatus.DATA

    def __len__(self) -> int:
        return len(self.data)
