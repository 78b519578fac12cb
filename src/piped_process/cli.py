"""Command line relay: run a program and copy its output and error to ours."""

from __future__ import annotations

import argparse
import logging
import sys

from piped_process import __version__
from piped_process.backend import get_backend
from piped_process.errors import ProcessError
from piped_process.handle import DEFAULT_TIMEOUT_MS
from piped_process.piped_process import PipedProcess
from piped_process.read_result import Stream

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="piped-process",
        description="Run COMMAND with piped standard streams and relay its output and error.",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help="Milliseconds each read waits for data (default: %(default)s)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("command", nargs="?", help="Program to run; prints the backend when omitted")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to COMMAND")
    return parser.parse_args(argv)


def relay(proc: PipedProcess, timeout_ms: int) -> None:
    """Copy the child's output and error to ours until both streams end."""
    sinks = {Stream.OUTPUT: sys.stdout.buffer, Stream.ERROR: sys.stderr.buffer}
    draining = False
    while True:
        result = proc.read_either(timeout_ms=0 if draining else timeout_ms)
        if result.eof:
            return
        if result.timeout:
            # A grandchild can hold the pipes open after the child exits;
            # take what is already buffered and stop.
            if draining:
                return
            draining = not proc.is_running()
            continue
        assert result.source is not None
        sink = sinks[result.source]
        sink.write(result.data)
        sink.flush()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if args.command is None:
        print(f"piped-process {__version__} ({get_backend().name} backend)")
        return 0

    try:
        proc = PipedProcess(args.command, args.args)
    except ProcessError as e:
        print(f"piped-process: {e}", file=sys.stderr)
        return 1

    with proc:
        relay(proc, args.timeout_ms)
    return proc.returncode if proc.returncode is not None else 1


if __name__ == "__main__":
    sys.exit(main())
