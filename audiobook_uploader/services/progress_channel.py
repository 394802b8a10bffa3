"""Progress/Result Channel between the pipeline worker and its consumer.

The pipeline runs in a separate process (see workers/pipeline_worker.py) so
a presentation layer stays responsive and can cancel it. The worker writes
one JSON message per line to stdout; the consumer decodes each line into a
typed message (schemas/messages.py).

Key Responsibilities:
- JsonLinesChannelWriter: serialize progress/log/error/result messages,
  at most one result per channel
- parse_message / iter_messages: decode lines into typed messages
- StepProjection: consumer-side step list (replace by step name)
- PipelineProcessClient: spawn the worker, stream messages to a callback,
  return the terminal PipelineResult, cancel with SIGTERM

Usage:
    client = PipelineProcessClient()
    projection = StepProjection()

    def on_message(message):
        projection.apply(message)
        render(projection.steps)

    result = await client.run(config, on_message=on_message)
"""

import asyncio
import json
import sys
import tempfile
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any, TextIO

from pydantic import ValidationError

from audiobook_uploader.constants import PIPELINE_STEP_NAMES
from audiobook_uploader.exceptions import KIND_UNKNOWN
from audiobook_uploader.schemas.messages import (
    ChannelMessage,
    ErrorMessage,
    LogMessage,
    ProgressMessage,
    ResultMessage,
    channel_message_adapter,
)
from audiobook_uploader.schemas.pipeline import PipelineConfig, PipelineResult, PipelineStep
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

WORKER_MODULE = "audiobook_uploader.workers.pipeline_worker"
# Result messages carry every step; allow long lines
STREAM_LIMIT_BYTES = 4 * 1024 * 1024
STDERR_TAIL_LINES = 20

# Event dict keys rendered separately (or not at all) in log messages
_LOG_META_KEYS = frozenset({"event", "level", "logger", "timestamp", "exc_info", "stack_info"})

MessageCallback = Callable[[ChannelMessage], None]


class JsonLinesChannelWriter:
    """Write channel messages as JSON Lines to a text stream.

    Safe to call from several threads. Also usable directly as the
    orchestrator's progress observer (on_step_update).
    """

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self._lock = threading.Lock()
        self.result_sent = False

    def write(self, message: ChannelMessage) -> None:
        line = message.model_dump_json()
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()

    def on_step_update(self, step: PipelineStep) -> None:
        self.write(ProgressMessage(step=step))

    def emit_log(self, event_dict: dict[str, Any]) -> None:
        """Forward a structlog event dict as a log message."""
        context = " ".join(
            f"{key}={value}" for key, value in event_dict.items() if key not in _LOG_META_KEYS
        )
        text = str(event_dict.get("event", ""))
        self.write(
            LogMessage(
                level=str(event_dict.get("level", "info")),
                module=str(event_dict.get("logger", "")),
                message=f"{text} {context}".strip(),
            )
        )

    def emit_error(self, error: str, error_kind: str | None = None) -> None:
        self.write(ErrorMessage(error=error, error_kind=error_kind))

    def emit_result(self, result: PipelineResult) -> None:
        """Write the terminal result.

        Raises:
            RuntimeError: If a result was already written on this channel.
        """
        if self.result_sent:
            raise RuntimeError("Result already sent on this channel")
        self.result_sent = True
        self.write(ResultMessage(result=result))


def parse_message(line: str | bytes) -> ChannelMessage | None:
    """Decode one channel line.

    Returns:
        The typed message, or None for a blank line.

    Raises:
        ValueError: If the line is not a valid channel message.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        return channel_message_adapter.validate_json(line)
    except ValidationError as e:
        raise ValueError(f"Invalid channel message: {e.errors()[0]['msg']}") from e


def iter_messages(lines: Iterable[str]) -> Iterator[ChannelMessage]:
    """Decode a stream of lines, skipping blank and undecodable ones."""
    for line in lines:
        try:
            message = parse_message(line)
        except ValueError as e:
            log.warning("channel_line_skipped", error=str(e), line=line[:200])
            continue
        if message is not None:
            yield message


class StepProjection:
    """Consumer-side step list.

    Progress messages replace the step with the same name, so repeated
    updates never grow the list. A result message replaces the whole list.
    """

    def __init__(self, names: Iterable[str] = PIPELINE_STEP_NAMES) -> None:
        self._steps: dict[str, PipelineStep] = {name: PipelineStep(name=name) for name in names}
        self.result: PipelineResult | None = None
        self.log_lines: list[LogMessage] = []
        self.errors: list[ErrorMessage] = []

    @property
    def steps(self) -> list[PipelineStep]:
        return list(self._steps.values())

    def apply(self, message: ChannelMessage) -> None:
        if isinstance(message, ProgressMessage):
            self._steps[message.step.name] = message.step
        elif isinstance(message, ResultMessage):
            self.result = message.result
            self._steps = {step.name: step for step in message.result.steps}
        elif isinstance(message, LogMessage):
            self.log_lines.append(message)
        elif isinstance(message, ErrorMessage):
            self.errors.append(message)


class PipelineProcessClient:
    """Run the pipeline in a worker process and follow its channel.

    Example:
        client = PipelineProcessClient()
        task = asyncio.create_task(client.run(config, on_message=print))
        ...
        client.cancel()  # worker marks the current step cancelled
        result = await task
    """

    def __init__(
        self,
        python_executable: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.python_executable = python_executable or sys.executable
        self.env = env
        self._process: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self, config_path: Path, resume: bool = False) -> list[str]:
        command = [self.python_executable, "-m", WORKER_MODULE, "--config", str(config_path)]
        if resume:
            command.append("--resume")
        return command

    async def run(
        self,
        config: PipelineConfig,
        on_message: MessageCallback | None = None,
        resume: bool = False,
    ) -> PipelineResult:
        """Spawn the worker for one config and wait for its result.

        A worker that exits without a result message (crash, kill) still
        yields a failed PipelineResult built from the last known steps and
        the worker's stderr tail.
        """
        projection = StepProjection()
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        with tempfile.TemporaryDirectory(prefix="audiobook-run-") as tmp_dir:
            config_path = Path(tmp_dir) / "config.json"
            config_path.write_text(
                json.dumps(config.model_dump(mode="json"), ensure_ascii=False), encoding="utf-8"
            )
            command = self.build_command(config_path, resume=resume)
            log.info("worker_spawn", command=command[:4])
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=STREAM_LIMIT_BYTES,
            )
            try:
                await asyncio.gather(
                    self._read_stdout(projection, on_message),
                    self._read_stderr(stderr_tail),
                )
                returncode = await self._process.wait()
            except asyncio.CancelledError:
                self.cancel()
                raise

        log.info("worker_exit", returncode=returncode, has_result=projection.result is not None)
        if projection.result is not None:
            return projection.result

        detail = "\n".join(stderr_tail) or "no output"
        if projection.errors:
            detail = projection.errors[-1].error
        return PipelineResult(
            success=False,
            error=f"Pipeline worker exited with code {returncode} without a result\n{detail}",
            error_kind=projection.errors[-1].error_kind if projection.errors else KIND_UNKNOWN,
            steps=projection.steps,
        )

    async def _read_stdout(
        self, projection: StepProjection, on_message: MessageCallback | None
    ) -> None:
        assert self._process is not None and self._process.stdout is not None
        async for raw_line in self._process.stdout:
            try:
                message = parse_message(raw_line)
            except ValueError as e:
                log.warning("channel_line_skipped", error=str(e))
                continue
            if message is None:
                continue
            projection.apply(message)
            if on_message is not None:
                try:
                    on_message(message)
                except Exception as e:
                    log.warning("channel_callback_error", error=str(e))

    async def _read_stderr(self, tail: deque[str]) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for raw_line in self._process.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    def cancel(self) -> bool:
        """Ask the worker to cancel (SIGTERM). Returns False if not running."""
        if not self.running:
            return False
        assert self._process is not None
        log.info("worker_cancel_requested", pid=self._process.pid)
        self._process.terminate()
        return True
