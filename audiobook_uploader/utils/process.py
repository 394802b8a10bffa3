"""Async subprocess execution for the media tools.

This module wraps ``asyncio.create_subprocess_exec`` for ffmpeg/ffprobe so
the event loop never blocks during long encodes, and adds the two things
the orchestrator needs from a running tool: a live stream of stderr lines
(ffmpeg reports progress there) and cooperative termination.

Critical Pattern:
- Adapters MUST use this wrapper instead of subprocess.run() directly
- Arguments are always passed as a list (never shell=True)
- Timeouts and cancellation terminate the child: SIGTERM, a short grace
  period, then SIGKILL
- Non-zero exit codes raise MediaProcessError with the captured stderr
"""

import asyncio
import contextlib
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from audiobook_uploader.exceptions import (
    ConfigurationError,
    MediaProcessError,
    OperationTimeoutError,
    PipelineCancelledError,
)
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

SIGTERM_GRACE_SECONDS = 5.0
_READ_CHUNK_SIZE = 4096
# ffmpeg rewrites its status line with carriage returns
_LINE_SPLIT = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class ProcessResult:
    """Immutable result of a subprocess execution."""

    command: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float


def _sanitize_args(command: list[str]) -> list[str]:
    # Truncate long arguments (filter graphs, file paths) to prevent log bloat
    return [arg[:100] + "..." if len(arg) > 100 else arg for arg in command]


async def _pump_lines(
    stream: asyncio.StreamReader,
    sink: list[str],
    on_line: Callable[[str], None] | None,
) -> None:
    pending = ""
    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk.decode("utf-8", errors="replace")
        *lines, pending = _LINE_SPLIT.split(pending)
        for line in lines:
            if not line:
                continue
            sink.append(line)
            if on_line is not None:
                on_line(line)
    if pending:
        sink.append(pending)
        if on_line is not None:
            on_line(pending)


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Stop a child process: SIGTERM, wait for the grace period, then SIGKILL."""
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=SIGTERM_GRACE_SECONDS)
    except asyncio.TimeoutError:
        log.warning("process_kill_after_sigterm", pid=process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def run_process(
    command: list[str],
    timeout: float | None = None,
    on_stderr_line: Callable[[str], None] | None = None,
    cancel_event: asyncio.Event | None = None,
    check: bool = True,
) -> ProcessResult:
    """Run a command without blocking the event loop.

    Args:
        command: Executable plus arguments
        timeout: Seconds before the process is terminated (None = no limit)
        on_stderr_line: Called synchronously with each stderr line as it
            arrives; ffmpeg progress ("frame=  120 fps=...") is parsed here
        cancel_event: When set, the process is terminated and
            PipelineCancelledError is raised
        check: Raise MediaProcessError on a non-zero exit code

    Returns:
        ProcessResult with decoded stdout/stderr, exit code and duration

    Raises:
        MediaProcessError: If the process exits non-zero and check is True
        OperationTimeoutError: If the process exceeds the timeout
        PipelineCancelledError: If cancel_event is set before exit
        ConfigurationError: If the executable does not exist

    Example:
        >>> result = await run_process(["ffprobe", "-version"], timeout=10)
        >>> result.returncode
        0
    """
    tool = Path(command[0]).name
    log.info("process_start", tool=tool, args=_sanitize_args(command[1:]), timeout=timeout)
    start = time.monotonic()

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ConfigurationError(f"{tool} executable not found: {command[0]}") from e

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    io_future = asyncio.gather(
        _pump_lines(process.stdout, stdout_lines, None),
        _pump_lines(process.stderr, stderr_lines, on_stderr_line),
        process.wait(),
    )
    waiters: set[asyncio.Future] = {io_future}
    cancel_waiter: asyncio.Task | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await terminate_process(process)
        io_future.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if io_future not in done:
        await terminate_process(process)
        io_future.cancel()
        await asyncio.gather(io_future, return_exceptions=True)
        if cancel_waiter is not None and cancel_waiter in done:
            log.warning("process_cancelled", tool=tool)
            raise PipelineCancelledError(f"{tool} was cancelled")
        log.error("process_timeout", tool=tool, timeout=timeout)
        raise OperationTimeoutError(f"{tool} exceeded timeout of {timeout}s")

    # Surface errors from the stream readers
    io_future.result()

    result = ProcessResult(
        command=command,
        returncode=process.returncode or 0,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_lines),
        duration_seconds=round(time.monotonic() - start, 2),
    )

    if check and result.returncode != 0:
        # Truncate stderr to prevent log bloat
        stderr_truncated = (
            result.stderr[-500:] if len(result.stderr) > 500 else result.stderr
        )
        log.error(
            "process_error",
            tool=tool,
            exit_code=result.returncode,
            stderr=stderr_truncated,
        )
        raise MediaProcessError(tool, result.returncode, result.stderr)

    log.info("process_success", tool=tool, duration_seconds=result.duration_seconds)
    return result
