"""
External tool invocation.

Every out-of-process call (ffmpeg, ffprobe) goes through run_tool, and every
blocking in-process call (libsndfile) through run_bounded, so that it
is bounded by a timeout, can be cancelled from another thread, and reports
failures as project exceptions instead of raw OSError/TimeoutExpired.
"""

import json
import logging
import shutil
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from functools import lru_cache
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional, Sequence, TypeVar

import config
from codec_fixtures.errors import GenerationCancelled, MissingTool, ToolTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')


def run_tool(
    cmd: Sequence[str],
    *,
    input: Optional[bytes] = None,
    timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
    cancel_event: Optional[threading.Event] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command to completion and capture its output.

    The caller decides what a non-zero exit status means; this function only
    guarantees the process is gone when it returns or raises.

    Raises:
        MissingTool: The executable does not exist
        ToolTimeout: The process outlived timeout_sec and was killed
        GenerationCancelled: cancel_event was set while the process ran
    """
    cmd = [str(c) for c in cmd]
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise MissingTool(f"Executable not found: {cmd[0]}", tool=cmd[0]) from e

    deadline = time.monotonic() + timeout_sec
    payload = input
    while True:
        try:
            stdout, stderr = proc.communicate(
                input=payload, timeout=config.PROCESS_POLL_INTERVAL_SEC
            )
            break
        except subprocess.TimeoutExpired:
            # communicate() keeps feeding stdin from the first call
            payload = None
            if cancel_event is not None and cancel_event.is_set():
                _kill(proc)
                raise GenerationCancelled(f"Cancelled while running {cmd[0]}")
            if time.monotonic() >= deadline:
                _kill(proc)
                raise ToolTimeout(
                    f"{cmd[0]} did not finish within {timeout_sec:g}s",
                    timeout_sec=timeout_sec,
                )

    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def run_bounded(
    call: Callable[[], T],
    *,
    timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
    cancel_event: Optional[threading.Event] = None,
    label: str = "call",
) -> T:
    """
    Run an in-process call (e.g. a libsndfile write) under run_tool's rules.

    The call runs on a worker thread that is polled for the timeout and for
    cancellation. A thread cannot be killed, so on either event the call is
    abandoned and left to finish in the background; callers must discard
    whatever it writes.

    Raises:
        ToolTimeout: The call outlived timeout_sec
        GenerationCancelled: cancel_event was set while the call ran
        Exception: Whatever the call itself raised
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='bounded-call')
    future = executor.submit(call)
    deadline = time.monotonic() + timeout_sec
    try:
        while True:
            try:
                return future.result(timeout=config.PROCESS_POLL_INTERVAL_SEC)
            except FutureTimeout:
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationCancelled(f"Cancelled while running {label}")
                if time.monotonic() >= deadline:
                    logger.warning("Abandoning %s after %gs", label, timeout_sec)
                    raise ToolTimeout(
                        f"{label} did not finish within {timeout_sec:g}s",
                        timeout_sec=timeout_sec,
                    )
    finally:
        executor.shutdown(wait=False)


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.communicate()


def stderr_tail(stderr: bytes, lines: int = 5) -> str:
    """Last few lines of a tool's diagnostics, for error messages."""
    text = stderr.decode('utf-8', errors='replace').strip()
    return "\n".join(text.splitlines()[-lines:])


def tool_available(binary: str) -> bool:
    return shutil.which(binary) is not None


@lru_cache(maxsize=None)
def ffmpeg_encoders(binary: str = config.FFMPEG_BINARY) -> FrozenSet[str]:
    """
    Names of the encoders compiled into an ffmpeg binary.

    Returns an empty set if the binary is missing or cannot list encoders.
    Cached per binary: the capability set of an executable does not change
    during a run.
    """
    if not tool_available(binary):
        return frozenset()
    try:
        result = run_tool([binary, '-hide_banner', '-encoders'], timeout_sec=10.0)
    except (MissingTool, ToolTimeout) as e:
        logger.warning("Could not list %s encoders: %s", binary, e)
        return frozenset()
    if result.returncode != 0:
        return frozenset()

    names = set()
    past_header = False
    for line in result.stdout.decode('utf-8', errors='replace').splitlines():
        stripped = line.strip()
        if stripped.startswith('------'):
            past_header = True
            continue
        parts = stripped.split()
        if past_header and len(parts) >= 2:
            names.add(parts[1])
    return frozenset(names)


def ffprobe(
    path: Path,
    binary: str = config.FFPROBE_BINARY,
    timeout_sec: float = config.ENCODER_TIMEOUT_SEC,
    cancel_event: Optional[threading.Event] = None,
) -> dict:
    """
    Describe a media file with ffprobe (format and stream sections, JSON).

    Raises:
        MissingTool: ffprobe is not installed
        ToolTimeout: ffprobe hung
        ValueError: ffprobe rejected the file
    """
    cmd: List[str] = [
        binary, '-v', 'error', '-print_format', 'json',
        '-show_format', '-show_streams', str(path),
    ]
    result = run_tool(cmd, timeout_sec=timeout_sec, cancel_event=cancel_event)
    if result.returncode != 0:
        raise ValueError(f"ffprobe failed on {path}: {stderr_tail(result.stderr)}")
    return json.loads(result.stdout.decode('utf-8'))
