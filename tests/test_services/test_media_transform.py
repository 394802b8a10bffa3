"""
Unit tests for audiobook_uploader/services/media_transform.py.

ffmpeg is never executed: run_process is patched in the service module and
tests assert on the argument lists and on how stderr lines are turned into
progress.
"""

from pathlib import Path

import pytest

from audiobook_uploader.exceptions import MediaProcessError, PipelineCancelledError, VendorError
from audiobook_uploader.services.media_transform import (
    SOFTWARE_ENCODER,
    VIDEOTOOLBOX_ENCODER,
    FrameProgressParser,
    MediaTransformService,
    is_encoder_failure,
)
from audiobook_uploader.utils.process import ProcessResult

RUN_PROCESS = "audiobook_uploader.services.media_transform.run_process"


def _result(stdout: str = "", stderr: str = "", returncode: int = 0) -> ProcessResult:
    return ProcessResult(
        command=["ffmpeg"],
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=0.1,
    )


@pytest.fixture
def media_files(tmp_path):
    files = {}
    for name in ("banner.png", "cooking.mp4", "voiceover.mp3"):
        files[name] = tmp_path / name
        files[name].write_bytes(b"media")
    return files


class TestFrameProgressParser:
    """Test ffmpeg stderr → percentage parsing."""

    def test_reports_percentage_of_expected_frames(self):
        """Test frame count is converted against duration * fps."""
        seen = []
        parser = FrameProgressParser(10.0, lambda pct, msg: seen.append((pct, msg)))

        assert parser.feed("frame=  150 fps= 60 q=28.0 size=  512kB") == 50
        assert seen == [(50, "Encoding video: 50%")]

    def test_progress_never_decreases_or_repeats(self):
        """Test only strictly increasing values are reported."""
        seen = []
        parser = FrameProgressParser(10.0, lambda pct, msg: seen.append(pct))

        for frame in (30, 30, 15, 90, 60, 150):
            parser.feed(f"frame={frame} fps=30")

        assert seen == [10, 30, 50]

    def test_progress_is_capped_below_100(self):
        """Test 100 is reserved for successful process exit."""
        parser = FrameProgressParser(1.0, None)

        assert parser.feed("frame= 5000") == 99

    def test_non_progress_lines_ignored(self):
        """Test unrelated stderr lines produce nothing."""
        parser = FrameProgressParser(10.0, None)

        assert parser.feed("Input #0, mov,mp4,m4a,3gp, from 'cooking.mp4':") is None


class TestIsEncoderFailure:
    """Test hardware encoder failure detection."""

    def test_hardware_encoder_marker_detected(self):
        assert is_encoder_failure("Unknown encoder 'h264_videotoolbox'", VIDEOTOOLBOX_ENCODER)

    def test_software_encoder_never_falls_back(self):
        """Test libx264 failures are real failures."""
        assert not is_encoder_failure("Conversion failed!", SOFTWARE_ENCODER)

    def test_unrelated_error_is_not_encoder_failure(self):
        stderr = "cooking.mp4: No such file or directory"
        assert not is_encoder_failure(stderr, VIDEOTOOLBOX_ENCODER)


class TestSelectEncoder:
    """Test platform encoder selection."""

    @pytest.mark.asyncio
    async def test_darwin_uses_videotoolbox(self, mocker):
        run = mocker.patch(RUN_PROCESS)
        media = MediaTransformService("ffmpeg", "ffprobe", platform="darwin")

        assert (await media.select_encoder()).codec == "h264_videotoolbox"
        run.assert_not_called()

    @pytest.mark.asyncio
    async def test_linux_uses_libx264_ultrafast(self, mocker):
        mocker.patch(RUN_PROCESS)
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")

        encoder = await media.select_encoder()

        assert encoder.codec == "libx264"
        assert encoder.options == ("-preset", "ultrafast", "-crf", "28")

    @pytest.mark.asyncio
    async def test_windows_prefers_first_listed_hardware_encoder(self, mocker):
        """Test detection order is qsv, then nvenc, then mf."""
        listing = " V....D h264_nvenc  NVIDIA NVENC\n V....D h264_mf  MediaFoundation"
        run = mocker.patch(RUN_PROCESS, return_value=_result(stdout=listing))
        media = MediaTransformService("ffmpeg", "ffprobe", platform="win32")

        assert (await media.select_encoder()).codec == "h264_nvenc"
        assert (await media.select_encoder()).codec == "h264_nvenc"
        run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_windows_detection_failure_uses_software(self, mocker):
        mocker.patch(RUN_PROCESS, side_effect=MediaProcessError("ffmpeg", 1, "boom"))
        media = MediaTransformService("ffmpeg", "ffprobe", platform="win32")

        assert (await media.select_encoder()).codec == "libx264"


class TestComposeBannerVideo:
    """Test banner composition command building, progress and fallback."""

    def test_filter_graph_layout(self):
        """Test the foreground is scaled to 540x960 and overlaid at (690, 60)."""
        graph = MediaTransformService.build_banner_filter_graph()

        assert "[1:v]scale=540:960,setsar=1[cooked]" in graph
        assert "[0:v]scale=1920:1080[banner]" in graph
        assert "overlay=690:60" in graph
        assert graph.endswith("fps=30[video_out]")

    def test_compose_command_loops_inputs_and_truncates(self, media_files, tmp_path):
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")

        command = media.build_compose_command(
            media_files["banner.png"],
            media_files["cooking.mp4"],
            media_files["voiceover.mp3"],
            tmp_path / "final.mp4",
            42.5,
            SOFTWARE_ENCODER,
        )

        assert command[:3] == ["ffmpeg", "-loop", "1"]
        assert command[command.index("-stream_loop") + 1] == "-1"
        assert command[command.index("-t") + 1] == "42.5"
        assert command[command.index("-c:v") + 1] == "libx264"
        assert "2:a:0" in command
        assert command[-1] == str(tmp_path / "final.mp4")

    @pytest.mark.asyncio
    async def test_progress_starts_at_zero_and_ends_at_100(self, mocker, media_files, tmp_path):
        """Test progress values strictly increase from 0 to 100."""

        async def fake_run(command, timeout=None, on_stderr_line=None, cancel_event=None):
            for frame in (0, 300, 600, 900, 1200):
                on_stderr_line(f"frame= {frame} fps=120 q=28.0")
            return _result()

        mocker.patch(RUN_PROCESS, side_effect=fake_run)
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")
        progress = []

        composed = await media.compose_banner_video(
            media_files["banner.png"],
            media_files["cooking.mp4"],
            media_files["voiceover.mp3"],
            tmp_path / "final.mp4",
            60.0,
            on_progress=lambda pct, msg: progress.append(pct),
        )

        assert progress == [0, 17, 33, 50, 67, 100]
        assert composed.codec == "libx264"
        assert composed.used_fallback is False
        assert (composed.width, composed.height) == (1920, 1080)

    @pytest.mark.asyncio
    async def test_hardware_failure_retries_once_with_libx264(self, mocker, media_files, tmp_path):
        run = mocker.patch(
            RUN_PROCESS,
            side_effect=[
                MediaProcessError("ffmpeg", 1, "Unknown encoder 'h264_videotoolbox'"),
                _result(),
            ],
        )
        media = MediaTransformService("ffmpeg", "ffprobe", platform="darwin")

        composed = await media.compose_banner_video(
            media_files["banner.png"],
            media_files["cooking.mp4"],
            media_files["voiceover.mp3"],
            tmp_path / "final.mp4",
            30.0,
        )

        assert composed.used_fallback is True
        assert composed.codec == "libx264"
        assert run.await_count == 2
        retry_command = run.await_args_list[1].args[0]
        assert retry_command[retry_command.index("-c:v") + 1] == "libx264"

    @pytest.mark.asyncio
    async def test_non_encoder_failure_is_not_retried(self, mocker, media_files, tmp_path):
        run = mocker.patch(
            RUN_PROCESS,
            side_effect=MediaProcessError("ffmpeg", 1, "cooking.mp4: Invalid data found"),
        )
        media = MediaTransformService("ffmpeg", "ffprobe", platform="darwin")

        with pytest.raises(MediaProcessError, match="Invalid data found"):
            await media.compose_banner_video(
                media_files["banner.png"],
                media_files["cooking.mp4"],
                media_files["voiceover.mp3"],
                tmp_path / "final.mp4",
                30.0,
            )

        run.assert_awaited_once()


class TestProbing:
    """Test ffprobe wrappers."""

    @pytest.mark.asyncio
    async def test_probe_duration_parses_seconds(self, mocker, media_files):
        mocker.patch(RUN_PROCESS, return_value=_result(stdout="42.500000\n"))
        media = MediaTransformService("ffmpeg", "ffprobe")

        assert await media.probe_duration(media_files["voiceover.mp3"]) == 42.5

    @pytest.mark.asyncio
    async def test_probe_duration_rejects_non_numeric_output(self, mocker, media_files):
        mocker.patch(RUN_PROCESS, return_value=_result(stdout="N/A"))
        media = MediaTransformService("ffmpeg", "ffprobe")

        with pytest.raises(VendorError, match="no duration"):
            await media.probe_duration(media_files["voiceover.mp3"])

    @pytest.mark.asyncio
    async def test_probe_missing_file(self, mocker, tmp_path):
        run = mocker.patch(RUN_PROCESS)
        media = MediaTransformService("ffmpeg", "ffprobe")

        with pytest.raises(FileNotFoundError):
            await media.probe_duration(tmp_path / "missing.mp3")
        run.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_video_info_parses_stream_fields(self, mocker, media_files):
        stdout = "width=1080\nheight=1920\nr_frame_rate=30000/1001\nduration=15.015\n"
        mocker.patch(RUN_PROCESS, return_value=_result(stdout=stdout))
        media = MediaTransformService("ffmpeg", "ffprobe")

        info = await media.get_video_info(media_files["cooking.mp4"])

        assert info.width == 1080
        assert info.height == 1920
        assert info.duration == 15.015
        assert info.frame_rate == 29.97

    @pytest.mark.asyncio
    async def test_get_video_info_missing_duration(self, mocker, media_files):
        mocker.patch(RUN_PROCESS, return_value=_result(stdout="width=640\nduration=N/A\n"))
        media = MediaTransformService("ffmpeg", "ffprobe")

        info = await media.get_video_info(media_files["cooking.mp4"])

        assert info.duration == 0.0
        assert info.frame_rate == 30.0


class TestAudioOperations:
    """Test concatenation and mixing commands."""

    @pytest.mark.asyncio
    async def test_concat_writes_list_in_order_and_removes_it(self, mocker, tmp_path):
        chunks = [tmp_path / f"chunk_{i}.mp3" for i in range(3)]
        listed = {}

        async def fake_run(command, timeout=None):
            list_path = Path(command[command.index("-i") + 1])
            listed["lines"] = list_path.read_text(encoding="utf-8").splitlines()
            return _result()

        run = mocker.patch(RUN_PROCESS, side_effect=fake_run)
        media = MediaTransformService("ffmpeg", "ffprobe")

        await media.concat_audio(chunks, tmp_path / "voiceover.mp3")

        assert listed["lines"] == [f"file '{c.resolve()}'" for c in chunks]
        command = run.await_args.args[0]
        assert command[command.index("-c") + 1] == "copy"
        assert not (tmp_path / "concat_list.txt").exists()

    @pytest.mark.asyncio
    async def test_concat_requires_inputs(self, tmp_path):
        media = MediaTransformService("ffmpeg", "ffprobe")

        with pytest.raises(ValueError):
            await media.concat_audio([], tmp_path / "voiceover.mp3")

    @pytest.mark.asyncio
    async def test_mix_audio_applies_volumes(self, mocker, tmp_path):
        run = mocker.patch(RUN_PROCESS, return_value=_result())
        media = MediaTransformService("ffmpeg", "ffprobe")

        await media.mix_audio(
            tmp_path / "voiceover.mp3", tmp_path / "music.mp3", tmp_path / "mixed_audio.m4a"
        )

        command = run.await_args.args[0]
        graph = command[command.index("-filter_complex") + 1]
        assert "[0:a]volume=1.0" in graph
        assert "[1:a]volume=0.5" in graph
        assert "amix=inputs=2:duration=first" in graph


def _write_output_then(outcome):
    """Fake ffmpeg that writes 1100 bytes to its output argument, then returns or raises."""

    async def fake_run(command, timeout=None, on_stderr_line=None, cancel_event=None):
        Path(command[-1]).write_bytes(b"\x00" * 1100)
        if isinstance(outcome, BaseException):
            raise outcome
        return _result()

    return fake_run


class TestStagedOutputs:
    """Test outputs only appear at their final path after ffmpeg succeeds."""

    @pytest.mark.asyncio
    async def test_compose_success_renames_partial_output(self, mocker, media_files, tmp_path):
        run = mocker.patch(RUN_PROCESS, side_effect=_write_output_then(None))
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")
        output = tmp_path / "final.mp4"

        await media.compose_banner_video(
            media_files["banner.png"],
            media_files["cooking.mp4"],
            media_files["voiceover.mp3"],
            output,
            30.0,
        )

        assert run.await_args.args[0][-1] == str(tmp_path / "final.part.mp4")
        assert output.stat().st_size == 1100
        assert not (tmp_path / "final.part.mp4").exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            MediaProcessError("ffmpeg", 1, "cooking.mp4: Invalid data found"),
            PipelineCancelledError("Pipeline cancelled during encode"),
        ],
    )
    async def test_compose_failure_leaves_no_output(self, mocker, media_files, tmp_path, error):
        mocker.patch(RUN_PROCESS, side_effect=_write_output_then(error))
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")
        output = tmp_path / "final.mp4"

        with pytest.raises(type(error)):
            await media.compose_banner_video(
                media_files["banner.png"],
                media_files["cooking.mp4"],
                media_files["voiceover.mp3"],
                output,
                30.0,
            )

        assert not output.exists()
        assert not (tmp_path / "final.part.mp4").exists()

    @pytest.mark.asyncio
    async def test_compose_failure_keeps_previous_output(self, mocker, media_files, tmp_path):
        """Test a failed re-encode does not clobber an earlier finished video."""
        output = tmp_path / "final.mp4"
        output.write_bytes(b"finished video")
        mocker.patch(
            RUN_PROCESS,
            side_effect=_write_output_then(MediaProcessError("ffmpeg", 1, "disk full")),
        )
        media = MediaTransformService("ffmpeg", "ffprobe", platform="linux")

        with pytest.raises(MediaProcessError):
            await media.compose_banner_video(
                media_files["banner.png"],
                media_files["cooking.mp4"],
                media_files["voiceover.mp3"],
                output,
                30.0,
            )

        assert output.read_bytes() == b"finished video"

    @pytest.mark.asyncio
    async def test_mix_failure_leaves_no_output(self, mocker, tmp_path):
        mocker.patch(
            RUN_PROCESS,
            side_effect=_write_output_then(MediaProcessError("ffmpeg", 1, "music.mp3: EOF")),
        )
        media = MediaTransformService("ffmpeg", "ffprobe")
        output = tmp_path / "mixed_audio.m4a"

        with pytest.raises(MediaProcessError):
            await media.mix_audio(tmp_path / "voiceover.mp3", tmp_path / "music.mp3", output)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_mix_success_renames_partial_output(self, mocker, tmp_path):
        mocker.patch(RUN_PROCESS, side_effect=_write_output_then(None))
        media = MediaTransformService("ffmpeg", "ffprobe")
        output = tmp_path / "mixed_audio.m4a"

        await media.mix_audio(tmp_path / "voiceover.mp3", tmp_path / "music.mp3", output)

        assert output.stat().st_size == 1100
        assert not (tmp_path / "mixed_audio.part.m4a").exists()

    @pytest.mark.asyncio
    async def test_concat_failure_leaves_no_output(self, mocker, tmp_path):
        mocker.patch(
            RUN_PROCESS,
            side_effect=_write_output_then(MediaProcessError("ffmpeg", 1, "chunk_1.mp3: EOF")),
        )
        media = MediaTransformService("ffmpeg", "ffprobe")
        output = tmp_path / "voiceover.mp3"

        with pytest.raises(MediaProcessError):
            await media.concat_audio([tmp_path / "chunk_0.mp3"], output)

        assert list(tmp_path.iterdir()) == []
