#!/usr/bin/env python3
"""Process utilities for probing and describing a spawned child."""

from __future__ import annotations

import psutil


def get_process_info(pid: int) -> str:
    """Get a one-line description of a process for log messages."""
    try:
        process = psutil.Process(pid)
        with process.oneshot():
            return (
                f"Process {pid} ({process.name()}) status={process.status()} "
                f"cpu={process.cpu_times()} memory={process.memory_info().rss}"
            )
    except psutil.Error:
        return f"Could not get process info for PID {pid}"


def is_process_alive(pid: int) -> bool:
    """Check whether ``pid`` is still executing, without reaping it.

    An exited child that has not been waited for is a zombie and counts as
    not running. Any probe failure also counts as not running.
    """
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False
