"""Tests for the JSON Lines progress/result channel.

Test Coverage:
- Writer emits one decodable line per message
- At most one result per channel
- Log forwarding flattens structlog event dicts
- Consumer projection replaces steps by name and adopts the result list
- PipelineProcessClient builds the worker command and falls back to a
  failed result when the worker dies silently
"""

import io
import sys

import pytest

from audiobook_uploader.schemas.messages import (
    ErrorMessage,
    LogMessage,
    ProgressMessage,
    ResultMessage,
)
from audiobook_uploader.schemas.pipeline import (
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    StepStatus,
)
from audiobook_uploader.services.progress_channel import (
    JsonLinesChannelWriter,
    PipelineProcessClient,
    StepProjection,
    iter_messages,
    parse_message,
)


def _lines(stream: io.StringIO) -> list[str]:
    return stream.getvalue().splitlines()


class TestJsonLinesChannelWriter:
    def test_progress_message_round_trip(self):
        stream = io.StringIO()
        writer = JsonLinesChannelWriter(stream)
        step = PipelineStep(name="Compose Video", status=StepStatus.IN_PROGRESS, progress=40)

        writer.on_step_update(step)

        [line] = _lines(stream)
        message = parse_message(line)
        assert isinstance(message, ProgressMessage)
        assert message.step == step

    def test_result_sent_at_most_once(self):
        writer = JsonLinesChannelWriter(io.StringIO())
        writer.emit_result(PipelineResult(success=True))

        with pytest.raises(RuntimeError, match="Result already sent"):
            writer.emit_result(PipelineResult(success=False))

        assert writer.result_sent is True

    def test_emit_log_flattens_event_dict(self):
        stream = io.StringIO()
        writer = JsonLinesChannelWriter(stream)

        writer.emit_log(
            {
                "event": "tts_chunk_converted",
                "level": "info",
                "logger": "audiobook_uploader.services.speech_synthesis",
                "timestamp": "2026-01-01T00:00:00Z",
                "chunk": 2,
                "total": 5,
            }
        )

        message = parse_message(_lines(stream)[0])
        assert isinstance(message, LogMessage)
        assert message.level == "info"
        assert message.module == "audiobook_uploader.services.speech_synthesis"
        assert message.message == "tts_chunk_converted chunk=2 total=5"

    def test_emit_error(self):
        stream = io.StringIO()
        JsonLinesChannelWriter(stream).emit_error("Invalid configuration", "configuration")

        message = parse_message(_lines(stream)[0])
        assert message == ErrorMessage(error="Invalid configuration", error_kind="configuration")


class TestParseMessage:
    def test_blank_line(self):
        assert parse_message("  \n") is None
        assert parse_message(b"") is None

    def test_bytes_accepted(self):
        message = parse_message(b'{"type": "error", "error": "boom"}\n')
        assert isinstance(message, ErrorMessage)

    @pytest.mark.parametrize(
        "line",
        ['{"type": "telemetry"}', '{"type": "progress"}', "not json", "[1, 2]"],
    )
    def test_invalid_lines(self, line):
        with pytest.raises(ValueError, match="Invalid channel message"):
            parse_message(line)

    def test_iter_messages_skips_garbage(self):
        lines = [
            '{"type": "error", "error": "first"}',
            "Traceback (most recent call last):",
            "",
            '{"type": "error", "error": "second"}',
        ]

        assert [m.error for m in iter_messages(lines)] == ["first", "second"]


class TestStepProjection:
    def test_initial_steps_pending_in_order(self):
        projection = StepProjection()

        assert [s.name for s in projection.steps][0] == "Validate Input"
        assert len(projection.steps) == 7
        assert all(s.status == StepStatus.PENDING for s in projection.steps)

    def test_progress_replaces_by_name(self):
        projection = StepProjection()
        for progress in (10, 50, 90):
            step = PipelineStep(
                name="Compose Video", status=StepStatus.IN_PROGRESS, progress=progress
            )
            projection.apply(ProgressMessage(step=step))

        compose = [s for s in projection.steps if s.name == "Compose Video"]
        assert len(projection.steps) == 7
        assert [s.progress for s in compose] == [90]

    def test_result_replaces_step_list(self):
        projection = StepProjection()
        steps = [PipelineStep(name="Validate Input", status=StepStatus.FAILED)]

        projection.apply(ResultMessage(result=PipelineResult(success=False, steps=steps)))

        assert projection.steps == steps
        assert projection.result.success is False

    def test_logs_and_errors_accumulate(self):
        projection = StepProjection()
        projection.apply(LogMessage(message="a"))
        projection.apply(LogMessage(message="b"))
        projection.apply(ErrorMessage(error="boom"))

        assert [m.message for m in projection.log_lines] == ["a", "b"]
        assert [e.error for e in projection.errors] == ["boom"]


class TestPipelineProcessClient:
    def test_build_command(self, tmp_path):
        client = PipelineProcessClient(python_executable="/usr/bin/python3")

        command = client.build_command(tmp_path / "config.json", resume=True)

        assert command == [
            "/usr/bin/python3",
            "-m",
            "audiobook_uploader.workers.pipeline_worker",
            "--config",
            str(tmp_path / "config.json"),
            "--resume",
        ]

    def test_cancel_when_not_running(self):
        assert PipelineProcessClient().cancel() is False

    @pytest.mark.asyncio
    async def test_worker_without_result_yields_failed_result(self, mocker):
        """Test a silent worker crash still produces a result with stderr detail."""
        script = (
            "import sys\n"
            "print('{\"type\": \"error\", \"error\": \"boom\", \"error_kind\": \"unknown\"}')\n"
            "print('fatal detail', file=sys.stderr)\n"
            "sys.exit(3)\n"
        )
        client = PipelineProcessClient()
        mocker.patch.object(client, "build_command", return_value=[sys.executable, "-c", script])
        received = []

        result = await client.run(PipelineConfig(story_title="T"), on_message=received.append)

        assert result.success is False
        assert result.error == "Pipeline worker exited with code 3 without a result\nboom"
        assert result.error_kind == "unknown"
        assert len(result.steps) == 7
        assert [type(m) for m in received] == [ErrorMessage]

    @pytest.mark.asyncio
    async def test_worker_result_is_returned(self, mocker):
        payload = ResultMessage(
            result=PipelineResult(success=True, video_path="/out/final.mp4")
        ).model_dump_json()
        script = f"print({payload!r})"
        client = PipelineProcessClient()
        mocker.patch.object(client, "build_command", return_value=[sys.executable, "-c", script])

        result = await client.run(PipelineConfig())

        assert result.success is True
        assert result.video_path == "/out/final.mp4"
        assert client.running is False
