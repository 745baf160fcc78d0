"""
Execution Tracing
=================

Optional timing trace of a kbdctl run, written to a file. Tasks mark a
whole user-level operation (SetTime); regions mark phases inside it
(loadConfig, updateConfig). Each records its start, its end and the
elapsed time:

    12:00:01,204 task 1 SetTime start
    12:00:01,204 task 1 SetTime region loadConfig start
    12:00:01,731 task 1 SetTime region loadConfig end 527.112ms
    ...

Tracing is instrumentation only. When no trace is active, task() and
region() cost one disabled log call each.

Usage:
    start_trace("kbdctl.trace")
    try:
        with task("SetTime"):
            with region("loadConfig"):
                ...
    finally:
        stop_trace()
"""

import contextvars
import itertools
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

TRACE_LOGGER_NAME = "kbdctl.trace"

trace_logger = logging.getLogger(TRACE_LOGGER_NAME)
trace_logger.propagate = False

_handler: Optional[logging.Handler] = None
_task_ids = itertools.count(1)
_current_task: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "kbdctl_trace_task", default=None
)


def start_trace(path: Union[str, Path]) -> None:
    """
    Start writing trace records to `path`, replacing any existing file.

    An already active trace is stopped first.
    """
    global _handler
    stop_trace()

    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    trace_logger.addHandler(handler)
    trace_logger.setLevel(logging.DEBUG)
    _handler = handler

    trace_logger.debug("trace started")


def stop_trace() -> None:
    """Flush and close the active trace, if any."""
    global _handler
    if _handler is None:
        return
    trace_logger.debug("trace stopped")
    trace_logger.removeHandler(_handler)
    _handler.close()
    _handler = None
    trace_logger.setLevel(logging.NOTSET)


def is_tracing() -> bool:
    return _handler is not None


@contextmanager
def task(name: str) -> Iterator[None]:
    """Mark a top-level operation."""
    label = f"task {next(_task_ids)} {name}"
    token = _current_task.set(label)
    trace_logger.debug("%s start", label)
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = (time.perf_counter() - start) * 1000
        trace_logger.debug("%s end %.3fms", label, elapsed)
        _current_task.reset(token)


@contextmanager
def region(name: str) -> Iterator[None]:
    """Mark a phase within the current task."""
    parent = _current_task.get()
    label = f"{parent} region {name}" if parent else f"region {name}"
    trace_logger.debug("%s start", label)
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = (time.perf_counter() - start) * 1000
        trace_logger.debug("%s end %.3fms", label, elapsed)
