"""Media Transform Service for ffmpeg-powered composition and audio work.

This module wraps the ffmpeg/ffprobe command-line tools behind a small async
interface used by every media step of the pipeline.

Key Responsibilities:
- Compose the banner video: static banner background, looped foreground clip
  scaled into the center, narration (or mixed) audio, truncated to duration
- Select a platform-appropriate H.264 encoder (hardware first, libx264 last)
  and retry once with libx264 when a hardware encoder fails at runtime
- Stream encode progress parsed from ffmpeg's "frame=N" status lines
- Concatenate audio chunks losslessly with the concat demuxer
- Mix narration with background music
- Probe durations and stream info with ffprobe
- Write every output under a ".part" name and rename it only after ffmpeg
  exits 0, so a failed or cancelled run never leaves a resumable artifact

Architecture Pattern:
    Service (Smart): Builds filter graphs and arguments, parses progress,
        decides on encoder fallback
    ffmpeg (Dumb): Executed through utils.process.run_process

Usage:
    from audiobook_uploader.services.media_transform import MediaTransformService

    media = MediaTransformService()
    duration = await media.probe_duration(Path("voiceover.mp3"))
    await media.compose_banner_video(
        banner, foreground, audio, output, duration,
        on_progress=lambda pct, msg: print(pct, msg),
    )
"""

import asyncio
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from audiobook_uploader.config import get_ffmpeg_path, get_ffprobe_path
from audiobook_uploader.constants import (
    AUDIO_BITRATE,
    AUDIO_TIMEOUT_SECONDS,
    COMPOSE_TIMEOUT_SECONDS,
    FOREGROUND_HEIGHT,
    FOREGROUND_WIDTH,
    FOREGROUND_X,
    FOREGROUND_Y,
    MUSIC_VOLUME,
    NARRATION_VOLUME,
    OUTPUT_FPS,
    OUTPUT_HEIGHT,
    OUTPUT_WIDTH,
    PROBE_TIMEOUT_SECONDS,
)
from audiobook_uploader.exceptions import MediaProcessError, PipelineError, VendorError
from audiobook_uploader.utils.artifacts import staged_artifact
from audiobook_uploader.utils.logging import get_logger
from audiobook_uploader.utils.process import run_process

ProgressCallback = Callable[[int, str], None]

_FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")

# stderr fragments that mean "this hardware encoder cannot run here"
_ENCODER_FAILURE_MARKERS = (
    "nvcuda.dll",
    "h264_nvenc",
    "h264_qsv",
    "h264_videotoolbox",
    "h264_mf",
    "Error while opening encoder",
    "Operation not permitted",
    "Conversion failed",
    "Unknown encoder",
)


@dataclass(frozen=True)
class EncoderChoice:
    """H.264 encoder name plus its quality/speed options."""

    codec: str
    options: tuple[str, ...]

    @property
    def is_software(self) -> bool:
        return self.codec == SOFTWARE_ENCODER.codec


SOFTWARE_ENCODER = EncoderChoice("libx264", ("-preset", "ultrafast", "-crf", "28"))
VIDEOTOOLBOX_ENCODER = EncoderChoice("h264_videotoolbox", ("-q:v", "4"))

# Windows hardware encoders in preference order (Intel QSV > NVENC > MediaFoundation)
WINDOWS_ENCODERS: tuple[EncoderChoice, ...] = (
    EncoderChoice("h264_qsv", ("-global_quality", "23", "-preset", "faster")),
    EncoderChoice("h264_nvenc", ("-preset", "fast", "-rc", "vbr", "-cq", "23")),
    EncoderChoice("h264_mf", ("-q:v", "23")),
)


@dataclass
class VideoInfo:
    """Stream information for a video file.

    Attributes:
        duration: Seconds (0.0 when ffprobe reports none)
        width: Pixels
        height: Pixels
        frame_rate: Frames per second
    """

    duration: float
    width: int
    height: int
    frame_rate: float


@dataclass
class ComposedVideo:
    """Result of a banner composition."""

    path: Path
    duration: float
    width: int
    height: int
    codec: str
    used_fallback: bool = False


def is_encoder_failure(stderr: str, encoder: EncoderChoice) -> bool:
    """Check whether an ffmpeg failure was caused by the selected hardware encoder.

    Software encoder failures are never encoder failures: there is nothing
    left to fall back to.
    """
    if encoder.is_software:
        return False
    return any(marker in stderr for marker in _ENCODER_FAILURE_MARKERS)


class FrameProgressParser:
    """Turn ffmpeg stderr lines into monotonically increasing percentages.

    Progress is frame / (duration * fps), capped at 99 so that 100 is only
    ever reported once the process has exited successfully.

    Example:
        >>> parser = FrameProgressParser(10.0, callback)
        >>> parser.feed("frame=  150 fps= 60 q=28.0 size=  512kB")
        # callback(50, "Encoding video: 50%")
    """

    def __init__(self, duration: float, callback: ProgressCallback | None, fps: int = OUTPUT_FPS):
        self.total_frames = max(1.0, duration * fps)
        self.callback = callback
        self.last_progress = 0

    def feed(self, line: str) -> int | None:
        match = _FRAME_PATTERN.search(line)
        if not match:
            return None
        frame = int(match.group(1))
        progress = min(99, round(frame / self.total_frames * 100))
        if progress <= self.last_progress:
            return None
        self.last_progress = progress
        if self.callback is not None:
            self.callback(progress, f"Encoding video: {progress}%")
        return progress


class MediaTransformService:
    """Service wrapping ffmpeg/ffprobe for composition, mixing and probing.

    The selected encoder is cached per instance. A runtime encoder failure
    clears the cache so the next composition re-detects.
    """

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        platform: str | None = None,
    ) -> None:
        """Initialize media transform service.

        Args:
            ffmpeg_path: ffmpeg executable (default: FFMPEG_PATH or "ffmpeg")
            ffprobe_path: ffprobe executable (default: FFPROBE_PATH or "ffprobe")
            platform: sys.platform override used for encoder selection
        """
        self.ffmpeg_path = ffmpeg_path or get_ffmpeg_path()
        self.ffprobe_path = ffprobe_path or get_ffprobe_path()
        self.platform = platform or sys.platform
        self._cached_encoder: EncoderChoice | None = None
        self.log = get_logger(__name__)

    async def select_encoder(self) -> EncoderChoice:
        """Pick the H.264 encoder for this host.

        Selection:
            darwin: h264_videotoolbox
            win32: first of h264_qsv, h264_nvenc, h264_mf listed by
                ``ffmpeg -encoders``, else libx264
            other: libx264 (ultrafast, crf 28)

        Returns:
            Cached EncoderChoice.
        """
        if self._cached_encoder is not None:
            return self._cached_encoder

        if self.platform == "darwin":
            encoder = VIDEOTOOLBOX_ENCODER
        elif self.platform == "win32":
            encoder = await self._detect_windows_encoder()
        else:
            encoder = SOFTWARE_ENCODER

        self.log.info("encoder_selected", codec=encoder.codec, platform=self.platform)
        self._cached_encoder = encoder
        return encoder

    async def _detect_windows_encoder(self) -> EncoderChoice:
        try:
            result = await run_process(
                [self.ffmpeg_path, "-hide_banner", "-encoders"], timeout=10, check=False
            )
            available = result.stdout + result.stderr
        except PipelineError as e:
            self.log.warning("encoder_detection_failed", error=str(e))
            available = ""

        for encoder in WINDOWS_ENCODERS:
            if encoder.codec in available:
                return encoder
        self.log.warning("software_encoder_fallback", reason="no hardware encoder listed")
        return SOFTWARE_ENCODER

    def clear_encoder_cache(self) -> None:
        self._cached_encoder = None

    @staticmethod
    def build_banner_filter_graph() -> str:
        """Build the filter graph for banner composition.

        Inputs:
            [0:v] banner image (looped with -loop 1)
            [1:v] foreground clip (looped with -stream_loop -1)

        Output label: [video_out] at 1920x1080, 30 fps, foreground 540x960
        overlaid at (690, 60).
        """
        return ";".join(
            [
                f"[1:v]scale={FOREGROUND_WIDTH}:{FOREGROUND_HEIGHT},setsar=1[cooked]",
                f"[0:v]scale={OUTPUT_WIDTH}:{OUTPUT_HEIGHT}[banner]",
                f"[banner][cooked]overlay={FOREGROUND_X}:{FOREGROUND_Y}[with_video]",
                f"[with_video]fps={OUTPUT_FPS}[video_out]",
            ]
        )

    def build_compose_command(
        self,
        banner_path: Path,
        foreground_path: Path,
        audio_path: Path,
        output_path: Path,
        duration: float,
        encoder: EncoderChoice,
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-loop", "1",
            "-i", str(banner_path),
            "-stream_loop", "-1",
            "-i", str(foreground_path),
            "-i", str(audio_path),
            "-filter_complex", self.build_banner_filter_graph(),
            "-map", "[video_out]",
            "-map", "2:a:0",
            "-c:v", encoder.codec,
            *encoder.options,
            "-c:a", "aac",
            "-b:a", AUDIO_BITRATE,
            "-t", f"{duration:g}",
            "-y",
            str(output_path),
        ]

    async def compose_banner_video(
        self,
        banner_path: Path,
        foreground_path: Path,
        audio_path: Path,
        output_path: Path,
        duration: float,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ComposedVideo:
        """Compose banner + looped foreground + audio into the output video.

        Args:
            banner_path: Background image
            foreground_path: Foreground clip, looped as needed
            audio_path: Audio track mapped as-is (narration or mixed)
            output_path: Output MP4
            duration: Output length in seconds (-t)
            on_progress: Called with (percent, message); percentages strictly
                increase and end with 100
            cancel_event: Terminates ffmpeg when set

        Returns:
            ComposedVideo describing the output.

        Raises:
            MediaProcessError: If ffmpeg fails (after the libx264 retry for
                hardware encoder failures)
            OperationTimeoutError: If the encode exceeds its timeout
            PipelineCancelledError: If cancel_event is set mid-encode
        """
        encoder = await self.select_encoder()
        parser = FrameProgressParser(duration, on_progress)
        used_fallback = False

        self.log.info(
            "compose_start",
            codec=encoder.codec,
            duration=duration,
            output=str(output_path),
        )
        if on_progress is not None:
            on_progress(0, f"Starting encode of {duration:g}s video with {encoder.codec}")

        with staged_artifact(output_path) as partial_path:
            command = self.build_compose_command(
                banner_path, foreground_path, audio_path, partial_path, duration, encoder
            )
            try:
                await run_process(
                    command,
                    timeout=COMPOSE_TIMEOUT_SECONDS,
                    on_stderr_line=parser.feed,
                    cancel_event=cancel_event,
                )
            except MediaProcessError as e:
                if not is_encoder_failure(e.stderr, encoder):
                    raise
                self.log.warning(
                    "encoder_failed_retrying_software",
                    codec=encoder.codec,
                    error=str(e)[:200],
                )
                self.clear_encoder_cache()
                encoder = SOFTWARE_ENCODER
                used_fallback = True
                command = self.build_compose_command(
                    banner_path, foreground_path, audio_path, partial_path, duration, encoder
                )
                await run_process(
                    command,
                    timeout=COMPOSE_TIMEOUT_SECONDS,
                    on_stderr_line=parser.feed,
                    cancel_event=cancel_event,
                )

        if on_progress is not None:
            on_progress(100, "Encoding complete")
        self.log.info("compose_complete", codec=encoder.codec, output=str(output_path))
        return ComposedVideo(
            path=output_path,
            duration=duration,
            width=OUTPUT_WIDTH,
            height=OUTPUT_HEIGHT,
            codec=encoder.codec,
            used_fallback=used_fallback,
        )

    async def probe_duration(self, path: Path) -> float:
        """Get media duration in seconds using ffprobe.

        Raises:
            FileNotFoundError: If the file doesn't exist
            MediaProcessError: If ffprobe fails
            VendorError: If ffprobe output is not a number
        """
        if not Path(path).exists():
            raise FileNotFoundError(f"Media file not found: {path}")

        result = await run_process(
            [
                self.ffprobe_path,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            timeout=PROBE_TIMEOUT_SECONDS,
        )
        try:
            return float(result.stdout.strip())
        except ValueError as e:
            raise VendorError(
                f"ffprobe returned no duration for {Path(path).name}", vendor="ffprobe"
            ) from e

    async def get_video_info(self, path: Path) -> VideoInfo:
        """Read duration, resolution and frame rate of the first video stream."""
        if not Path(path).exists():
            raise FileNotFoundError(f"Video file not found: {path}")

        result = await run_process(
            [
                self.ffprobe_path,
                "-v", "error",
                "-select_streams", "v:0",
                "-show_entries", "stream=duration,width,height,r_frame_rate",
                "-of", "default=noprint_wrappers=1",
                str(path),
            ],
            timeout=PROBE_TIMEOUT_SECONDS,
        )
        fields: dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                fields[key.strip()] = value.strip()

        return VideoInfo(
            duration=_parse_float(fields.get("duration")),
            width=int(_parse_float(fields.get("width"))),
            height=int(_parse_float(fields.get("height"))),
            frame_rate=_parse_frame_rate(fields.get("r_frame_rate")),
        )

    async def concat_audio(self, input_paths: list[Path], output_path: Path) -> Path:
        """Concatenate audio files losslessly (concat demuxer, stream copy).

        Inputs must share codec parameters, which holds for chunks from the
        same TTS voice. The list file is removed afterwards.
        """
        if not input_paths:
            raise ValueError("concat_audio requires at least one input")

        list_path = output_path.parent / "concat_list.txt"
        lines = []
        for path in input_paths:
            escaped = str(Path(path).resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        try:
            with staged_artifact(output_path) as partial_path:
                await run_process(
                    [
                        self.ffmpeg_path,
                        "-f", "concat",
                        "-safe", "0",
                        "-i", str(list_path),
                        "-c", "copy",
                        "-y",
                        str(partial_path),
                    ],
                    timeout=AUDIO_TIMEOUT_SECONDS,
                )
        finally:
            list_path.unlink(missing_ok=True)

        self.log.info("audio_concatenated", inputs=len(input_paths), output=str(output_path))
        return output_path

    async def mix_audio(
        self,
        primary_path: Path,
        secondary_path: Path,
        output_path: Path,
        primary_volume: float = NARRATION_VOLUME,
        secondary_volume: float = MUSIC_VOLUME,
    ) -> Path:
        """Mix two audio tracks; output length follows the primary track."""
        audio_filter = (
            f"[0:a]volume={primary_volume}[v0];"
            f"[1:a]volume={secondary_volume}[v1];"
            "[v0][v1]amix=inputs=2:duration=first[a_out]"
        )
        with staged_artifact(output_path) as partial_path:
            await run_process(
                [
                    self.ffmpeg_path,
                    "-i", str(primary_path),
                    "-i", str(secondary_path),
                    "-filter_complex", audio_filter,
                    "-map", "[a_out]",
                    "-c:a", "aac",
                    "-b:a", AUDIO_BITRATE,
                    "-y",
                    str(partial_path),
                ],
                timeout=AUDIO_TIMEOUT_SECONDS,
            )
        self.log.info("audio_mixed", output=str(output_path))
        return output_path


def _parse_float(value: str | None) -> float:
    try:
        return float(value) if value not in (None, "", "N/A") else 0.0
    except ValueError:
        return 0.0


def _parse_frame_rate(value: str | None) -> float:
    # ffprobe reports rationals like "30000/1001"
    if not value:
        return float(OUTPUT_FPS)
    numerator, _, denominator = value.partition("/")
    num = _parse_float(numerator)
    den = _parse_float(denominator) if denominator else 1.0
    return round(num / den, 3) if den else float(OUTPUT_FPS)
