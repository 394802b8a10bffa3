"""Tests for the command line interface."""

import io
import json
from unittest.mock import AsyncMock

import pytest

from audiobook_uploader.cli import (
    HumanRenderer,
    format_step_line,
    indent_continuation,
    main,
)
from audiobook_uploader.schemas.messages import ErrorMessage, LogMessage, ProgressMessage
from audiobook_uploader.schemas.pipeline import (
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    StepStatus,
)
from audiobook_uploader.services.progress_channel import PipelineProcessClient
from audiobook_uploader.services.project_history import JsonProjectHistoryStore


class TestFormatting:
    def test_indent_continuation(self):
        text = "Compose Video failed\nffmpeg failed with exit code 1: boom"

        assert indent_continuation(text) == (
            "Compose Video failed\n    ffmpeg failed with exit code 1: boom"
        )

    def test_indent_empty(self):
        assert indent_continuation("") == ""

    def test_failed_step_shows_indented_error(self):
        step = PipelineStep(
            name="Compose Video",
            status=StepStatus.FAILED,
            progress=40,
            message="Encoding video: 40%",
            error="Compose Video failed\nffmpeg failed",
            error_kind="vendor",
        )

        lines = format_step_line(step).splitlines()

        assert lines[0].startswith("✗ Compose Video")
        assert " 40%" in lines[0]
        assert lines[1] == "      error (vendor): Compose Video failed"
        assert lines[2] == "          ffmpeg failed"


class TestHumanRenderer:
    def test_duplicate_progress_lines_suppressed(self):
        out = io.StringIO()
        renderer = HumanRenderer(out)
        step = PipelineStep(name="Compose Video", status=StepStatus.IN_PROGRESS, progress=10)

        renderer(ProgressMessage(step=step))
        renderer(ProgressMessage(step=step))
        renderer(ProgressMessage(step=step.model_copy(update={"progress": 20})))

        assert len(out.getvalue().splitlines()) == 2

    def test_logs_only_when_verbose(self):
        quiet, loud = io.StringIO(), io.StringIO()
        message = LogMessage(level="info", module="m", message="compose_start")

        HumanRenderer(quiet)(message)
        HumanRenderer(loud, verbose=True)(message)

        assert quiet.getvalue() == ""
        assert "compose_start" in loud.getvalue()

    def test_error_message(self):
        out = io.StringIO()

        HumanRenderer(out)(ErrorMessage(error="Invalid configuration\nstory_text: missing"))

        assert out.getvalue() == "error: Invalid configuration\n    story_text: missing\n"

    def test_summary_for_failure(self):
        out = io.StringIO()
        result = PipelineResult(
            success=False,
            error="Synthesize Narration failed\nVBEE_API_KEY and VBEE_APP_ID are required",
            steps=[PipelineStep(name="Validate Input", status=StepStatus.COMPLETED, progress=100)],
        )

        HumanRenderer(out).summary(result)

        text = out.getvalue()
        assert "Synthesize Narration failed\n    VBEE_API_KEY" in text
        assert "✓ Validate Input" in text


class TestRunCommand:
    def test_invalid_config_exits_2(self, tmp_path, capsys):
        assert main(["run", str(tmp_path / "missing.json")]) == 2
        assert "Config file not found" in capsys.readouterr().err

    def test_run_renders_summary(self, tmp_path, capsys, mocker):
        config_path = tmp_path / "run.json"
        config_path.write_text(json.dumps({"story_title": "T"}), encoding="utf-8")
        run = mocker.patch.object(
            PipelineProcessClient,
            "run",
            new=AsyncMock(
                return_value=PipelineResult(
                    success=True, video_path="/out/final.mp4", thumbnail_path="/out/t.jpg"
                )
            ),
        )

        assert main(["run", str(config_path), "--resume"]) == 0

        config = run.await_args.args[0]
        assert isinstance(config, PipelineConfig)
        assert config.resume_on_exist is True
        out = capsys.readouterr().out
        assert "Pipeline completed" in out
        assert "/out/final.mp4" in out

    def test_failed_run_exits_1(self, tmp_path, mocker):
        config_path = tmp_path / "run.json"
        config_path.write_text("{}", encoding="utf-8")
        mocker.patch.object(
            PipelineProcessClient,
            "run",
            new=AsyncMock(return_value=PipelineResult(success=False, error="boom")),
        )

        assert main(["run", str(config_path)]) == 1


class TestOtherCommands:
    def test_next_run_dir(self, tmp_path, capsys):
        (tmp_path / "video_1").mkdir()

        assert main(["next-run-dir", str(tmp_path), "--no-create"]) == 0

        assert capsys.readouterr().out.strip() == str(tmp_path / "video_2")
        assert not (tmp_path / "video_2").exists()

    def test_history_empty(self, tmp_path, capsys):
        assert main(["history", "--history-path", str(tmp_path / "history.json")]) == 0
        assert "No runs recorded" in capsys.readouterr().out

    def test_history_json(self, tmp_path, capsys):
        history_path = tmp_path / "history.json"
        store = JsonProjectHistoryStore(history_path)
        store.record_started(PipelineConfig(story_title="Cô Tấm", output_video_path="/o.mp4"))
        capsys.readouterr()

        assert main(["history", "--json", "--history-path", str(history_path)]) == 0

        [record] = json.loads(capsys.readouterr().out)
        assert record["title"] == "Cô Tấm"
        assert record["status"] == "running"

    def test_history_uses_data_dir_by_default(self, tmp_path, capsys):
        store = JsonProjectHistoryStore(tmp_path / "appdata" / "history.json")
        store.record_started(PipelineConfig(story_title="Part 1", output_video_path="/o.mp4"))
        capsys.readouterr()

        assert main(["history"]) == 0

        assert "Part 1" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])

        assert exc.value.code == 0
        assert "audiobook-uploader" in capsys.readouterr().out
