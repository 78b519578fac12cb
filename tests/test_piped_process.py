"""Unit tests for the PipedProcess class and the functional API.

These tests cover the common use cases without mocks, running real child
processes through the platform backend.
"""

import os
import signal
import sys
import tempfile
import time
import unittest
from collections.abc import Callable

import piped_process
from piped_process import (
    ChannelClosedError,
    PipedProcess,
    ProcessError,
    ReadResult,
    ReadStatus,
    SpawnError,
    Stream,
)

SLEEP_FOREVER = "import time; time.sleep(60)"
ECHO_LINES = """
import sys
while True:
    line = sys.stdin.buffer.readline()
    if not line:
        break
    sys.stdout.buffer.write(line)
    sys.stdout.buffer.flush()
"""


def python(code: str) -> PipedProcess:
    return PipedProcess(sys.executable, ["-u", "-c", code])


def collect(read: Callable[[], ReadResult], expected_len: int | None = None, deadline: float = 10.0) -> bytes:
    """Read until end of stream (or ``expected_len`` bytes) within ``deadline`` seconds."""
    chunks: list[bytes] = []
    stop_at = time.monotonic() + deadline
    while time.monotonic() < stop_at:
        result = read()
        if result.eof:
            break
        chunks.append(result.data)
        if expected_len is not None and sum(map(len, chunks)) >= expected_len:
            break
    return b"".join(chunks)


def wait_until_exited(proc: PipedProcess, deadline: float = 10.0) -> bool:
    stop_at = time.monotonic() + deadline
    while time.monotonic() < stop_at:
        if not proc.is_running():
            return True
        time.sleep(0.01)
    return False


class TestBasicExecution(unittest.TestCase):
    """Test spawning and reading from short-lived children."""

    def test_read_hello_then_not_running(self):
        """A child that prints and exits is read back and then reported as exited."""
        with python("import sys; sys.stdout.buffer.write(b'hello\\n')") as proc:
            result = proc.read_output(timeout_ms=10000)

            self.assertEqual(result.status, ReadStatus.DATA)
            self.assertEqual(result.data, b"hello\n")
            self.assertIs(result.source, Stream.OUTPUT)
            self.assertTrue(wait_until_exited(proc))
            self.assertFalse(proc.is_running())

    def test_exit_code_recorded_on_close(self):
        proc = python("import sys; sys.exit(42)")
        self.assertTrue(wait_until_exited(proc))
        proc.close()

        self.assertEqual(proc.returncode, 42)
        self.assertTrue(proc.closed)

    def test_read_error_stream(self):
        with python("import sys; sys.stderr.write('oops')") as proc:
            data = collect(lambda: proc.read_error(timeout_ms=1000))

        self.assertEqual(data, b"oops")

    def test_pid_is_positive(self):
        with python("pass") as proc:
            self.assertGreater(proc.pid, 0)
            self.assertEqual(proc.handle.pid, proc.pid)

    def test_cwd_and_env(self):
        """Working directory and environment are forwarded to the child."""
        env = dict(os.environ, PIPED_PROCESS_MARKER="marker-value")
        code = "import os; print(os.getcwd()); print(os.environ['PIPED_PROCESS_MARKER'])"
        with tempfile.TemporaryDirectory() as temp_dir:
            proc = PipedProcess(sys.executable, ["-c", code], cwd=temp_dir, env=env)
            with proc:
                output = collect(lambda: proc.read_output(timeout_ms=1000)).decode()

            self.assertIn("marker-value", output)
            self.assertEqual(
                os.path.realpath(output.splitlines()[0]),
                os.path.realpath(temp_dir),
            )

    def test_command_str(self):
        with python("pass") as proc:
            self.assertIn(sys.executable, proc.get_command_str())
            self.assertIn("-u", proc.get_command_str())


class TestReads(unittest.TestCase):
    """Test the timeout-bounded readers."""

    def test_reads_cap_at_buffer_size_minus_one(self):
        with python("import sys; sys.stdout.write('x' * 100)") as proc:
            sizes: list[int] = []

            def read() -> ReadResult:
                result = proc.read_output(buffer_size=10, timeout_ms=1000)
                sizes.append(len(result.data))
                return result

            data = collect(read)

        self.assertEqual(data, b"x" * 100)
        self.assertLessEqual(max(sizes), 9)

    def test_buffer_size_too_small(self):
        with python("pass") as proc, self.assertRaises(ValueError):
            proc.read_output(buffer_size=1)

    def test_timeout_is_bounded(self):
        with python(SLEEP_FOREVER) as proc:
            start = time.monotonic()
            result = proc.read_output(timeout_ms=200)
            elapsed = time.monotonic() - start
            proc.close(grace_period=0.1)

        self.assertEqual(result.status, ReadStatus.TIMEOUT)
        self.assertFalse(result)
        self.assertEqual(result.data, b"")
        self.assertGreaterEqual(elapsed, 0.15)
        self.assertLess(elapsed, 2.0)

    def test_end_of_stream_is_distinct_from_timeout(self):
        with python("pass") as proc:
            statuses = set()
            stop_at = time.monotonic() + 10
            while time.monotonic() < stop_at:
                result = proc.read_output(timeout_ms=500)
                statuses.add(result.status)
                if result.eof:
                    break

        self.assertIn(ReadStatus.END_OF_STREAM, statuses)
        self.assertNotIn(ReadStatus.DATA, statuses)

    def test_read_either_reports_source(self):
        code = "import sys, time; sys.stderr.write('err'); sys.stderr.flush(); time.sleep(0.2); sys.stdout.write('out')"
        with python(code) as proc:
            seen: dict[Stream, bytes] = {Stream.OUTPUT: b"", Stream.ERROR: b""}
            stop_at = time.monotonic() + 10
            while time.monotonic() < stop_at:
                result = proc.read_either(timeout_ms=1000)
                if result.eof:
                    break
                if result:
                    assert result.source is not None
                    seen[result.source] += result.data

        self.assertEqual(seen[Stream.ERROR], b"err")
        self.assertEqual(seen[Stream.OUTPUT], b"out")

    def test_read_either_end_of_stream_after_both_close(self):
        with python("import sys; sys.stdout.write('done')") as proc:
            data = collect(lambda: proc.read_either(timeout_ms=1000))
            result = proc.read_either(timeout_ms=0)

        self.assertEqual(data, b"done")
        self.assertTrue(result.eof)
        self.assertIsNone(result.source)

    def test_timeout_beyond_wait_limit_waits_for_data(self):
        with python("import sys; sys.stdout.write('x')") as proc:
            result = proc.read_output(timeout_ms=2**40)

        self.assertEqual(result.status, ReadStatus.DATA)
        self.assertEqual(result.data, b"x")

    def test_read_either_skips_stream_that_hung_up_early(self):
        """A stream closed while the other is still open is not reported again."""
        code = "import os, sys, time; os.close(2); time.sleep(0.2); sys.stdout.write('late')"
        with python(code) as proc:
            results: list[ReadResult] = []
            stop_at = time.monotonic() + 10
            while time.monotonic() < stop_at:
                result = proc.read_either(timeout_ms=1000)
                if not result.timeout:
                    results.append(result)
                if result.eof:
                    break
            ended = set(proc.handle.ended)

        self.assertEqual(b"".join(r.data for r in results), b"late")
        self.assertTrue(all(r.source is Stream.OUTPUT for r in results[:-1]))
        self.assertTrue(results[-1].eof)
        self.assertIsNone(results[-1].source)
        self.assertIn(Stream.ERROR, ended)


class TestWrite(unittest.TestCase):
    """Test writing to the child's standard input."""

    def test_write_then_read_back_in_order(self):
        payload = b"".join(b"line %03d\n" % i for i in range(200))
        with python(ECHO_LINES) as proc:
            written = proc.write(payload)
            echoed = collect(lambda: proc.read_output(timeout_ms=1000), expected_len=len(payload))

        self.assertEqual(written, len(payload))
        self.assertEqual(echoed, payload)

    def test_write_empty(self):
        with python(ECHO_LINES) as proc:
            self.assertEqual(proc.write(b""), 0)

    def test_write_after_child_exit_raises(self):
        with python("pass") as proc:
            self.assertTrue(wait_until_exited(proc))
            with self.assertRaises(ChannelClosedError):
                proc.write(b"nobody is listening\n")


class TestLifecycle(unittest.TestCase):
    """Test liveness probes and teardown."""

    def test_is_running_never_reverts(self):
        proc = python("import time; time.sleep(0.2)")
        self.assertTrue(proc.is_running())
        self.assertTrue(wait_until_exited(proc))
        for _ in range(5):
            self.assertFalse(proc.is_running())
        proc.close()
        self.assertFalse(proc.is_running())

    def test_silent_child_that_never_exits(self):
        """Write succeeds, read_either times out within bound, close terminates promptly."""
        proc = python(SLEEP_FOREVER)
        self.assertEqual(proc.write(b"ignored input\n"), 14)

        start = time.monotonic()
        result = proc.read_either(timeout_ms=200)
        self.assertEqual(result.status, ReadStatus.TIMEOUT)
        self.assertIsNone(result.source)
        self.assertLess(time.monotonic() - start, 2.0)

        start = time.monotonic()
        proc.close()
        self.assertLess(time.monotonic() - start, 5.0)
        self.assertFalse(proc.is_running())
        self.assertIsNotNone(proc.returncode)
        self.assertNotEqual(proc.returncode, 0)

    @unittest.skipIf(sys.platform == "win32", "signals are POSIX only")
    def test_close_kills_child_that_ignores_sigterm(self):
        code = (
            "import signal, sys, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "sys.stdout.write('ready'); time.sleep(60)"
        )
        proc = python(code)
        self.assertEqual(collect(lambda: proc.read_output(timeout_ms=1000), expected_len=5), b"ready")

        start = time.monotonic()
        proc.close(grace_period=0.1)

        self.assertLess(time.monotonic() - start, 30.0)
        self.assertEqual(proc.returncode, -signal.SIGKILL)
        self.assertFalse(proc.is_running())

    def test_close_waits_for_voluntary_exit(self):
        proc = python(ECHO_LINES)
        proc.close(grace_period=5.0)
        self.assertEqual(proc.returncode, 0)

    def test_operations_on_closed_handle(self):
        proc = python("pass")
        proc.close()
        with self.assertRaises(ProcessError):
            proc.write(b"data")
        with self.assertRaises(ProcessError):
            proc.read_output()
        with self.assertRaises(ProcessError):
            proc.read_either()

    def test_double_close_warns(self):
        proc = python("pass")
        proc.close()
        with self.assertWarns(UserWarning):
            proc.close()

    def test_context_manager_closes(self):
        with python(SLEEP_FOREVER) as proc:
            pass
        self.assertTrue(proc.closed)

    @unittest.skipIf(sys.platform == "win32", "exec failure surfaces as a child exit on POSIX")
    def test_missing_program_exits_127(self):
        proc = PipedProcess("this_command_does_not_exist_12345")
        error = collect(lambda: proc.read_error(timeout_ms=1000))
        proc.close()

        self.assertIn(b"this_command_does_not_exist_12345", error)
        self.assertEqual(proc.returncode, 127)

    @unittest.skipUnless(sys.platform == "win32", "CreateProcess rejects missing programs")
    def test_missing_program_raises_spawn_error(self):
        with self.assertRaises(SpawnError):
            PipedProcess("this_command_does_not_exist_12345")


class TestFunctionalInterface(unittest.TestCase):
    """Test the module-level operations on raw handles."""

    def test_round_trip(self):
        handle = piped_process.spawn(sys.executable, ["-u", "-c", ECHO_LINES])
        try:
            self.assertTrue(piped_process.is_running(handle))
            self.assertEqual(piped_process.write(handle, b"ping\n"), 5)
            data = collect(lambda: piped_process.read_output(handle, 4096, 1000), expected_len=5)
            self.assertEqual(data, b"ping\n")
            self.assertTrue(piped_process.read_error(handle, 4096, 0).timeout)
        finally:
            piped_process.close(handle)
        self.assertTrue(handle.closed)
        self.assertFalse(piped_process.is_running(handle))

    def test_read_either_functional(self):
        handle = piped_process.spawn(sys.executable, ["-c", "import sys; sys.stderr.write('e')"])
        try:
            data = collect(lambda: piped_process.read_either(handle, 16, 1000))
        finally:
            piped_process.close(handle)
        self.assertEqual(data, b"e")


if __name__ == "__main__":
    unittest.main()
