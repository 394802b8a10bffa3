"""Shared pytest fixtures for pipeline testing.

Provides on-disk input assets in tmp_path, a PipelineConfig factory, and a
PipelineServices bundle whose adapters are mocks that write real (tiny)
artifact files, so resume checks behave exactly as in production. No
fixture invokes ffmpeg or the network.
"""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest
import structlog

from audiobook_uploader.constants import OUTPUT_HEIGHT, OUTPUT_WIDTH
from audiobook_uploader.schemas.pipeline import PipelineConfig, PipelineStep
from audiobook_uploader.services.audio_mixer import AudioMixerService, MixedAudio
from audiobook_uploader.services.image_generation import ImageGenerationService, ThumbnailImage
from audiobook_uploader.services.media_transform import (
    ComposedVideo,
    MediaTransformService,
    VideoInfo,
)
from audiobook_uploader.services.pipeline_orchestrator import PipelineServices
from audiobook_uploader.services.publish import PublishService
from audiobook_uploader.services.speech_synthesis import AudioFile, SpeechSynthesisService
from audiobook_uploader.services.video_download import VideoDownloadService

NARRATION_DURATION = 42.5
MIXED_DURATION = 43.0


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep tests independent of the developer's .env and home directory."""
    monkeypatch.setenv("AUDIOBOOK_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("AUDIOBOOK_DATA_DIR", str(tmp_path / "appdata"))
    for name in (
        "VBEE_API_KEY",
        "VBEE_APP_ID",
        "VBEE_VOICE_CODE",
        "GEMINI_API_KEY",
        "AUDIOBOOK_HISTORY_PATH",
        "AUDIOBOOK_OUTPUT_ROOT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    structlog.reset_defaults()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def input_assets(tmp_path: Path) -> dict[str, Path]:
    """Create the input files a run config points at."""
    assets_dir = tmp_path / "assets"
    assets_dir.mkdir()
    assets = {
        "banner": assets_dir / "banner.png",
        "foreground": assets_dir / "cooking.mp4",
        "music": assets_dir / "music.mp3",
        "avatar": assets_dir / "avatar.png",
    }
    for path in assets.values():
        path.write_bytes(b"asset-bytes")
    return assets


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "output" / "video_1"


@pytest.fixture
def make_config(
    input_assets: dict[str, Path], output_dir: Path
) -> Callable[..., PipelineConfig]:
    """Factory for valid configs; keyword arguments override fields."""

    def _make(**overrides: Any) -> PipelineConfig:
        fields: dict[str, Any] = {
            "story_text": "Hello world.",
            "story_title": "Bà Ngoại Kể Chuyện",
            "banner_image_path": str(input_assets["banner"]),
            "foreground_video_path": str(input_assets["foreground"]),
            "background_music_path": str(input_assets["music"]),
            "avatar_image_path": str(input_assets["avatar"]),
            "output_video_path": str(output_dir / "final.mp4"),
            "output_thumbnail_path": str(output_dir / "thumbnail.jpg"),
        }
        fields.update(overrides)
        return PipelineConfig(**fields)

    return _make


async def _fake_synthesize(text: str, output_path: Path, voice_code: str | None = None):
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(b"narration")
    return AudioFile(
        path=output_path,
        duration=NARRATION_DURATION,
        file_size=9,
        chunk_durations=[NARRATION_DURATION],
    )


async def _fake_mix(narration_path, music_path, output_path, narration_duration=None):
    output_path.write_bytes(b"mixed")
    return MixedAudio(path=output_path, duration=MIXED_DURATION)


async def _fake_compose(
    banner_path,
    foreground_path,
    audio_path,
    output_path,
    duration,
    on_progress=None,
    cancel_event=None,
):
    if on_progress is not None:
        on_progress(0, "Starting encode")
        on_progress(50, "Encoding video: 50%")
        on_progress(100, "Encoding complete")
    output_path.write_bytes(b"video")
    return ComposedVideo(
        path=output_path,
        duration=duration,
        width=OUTPUT_WIDTH,
        height=OUTPUT_HEIGHT,
        codec="libx264",
    )


async def _fake_thumbnail(title, output_path, reference_images=None):
    output_path.write_bytes(b"thumbnail")
    return ThumbnailImage(path=output_path, width=1920, height=1080, file_size=9)


@pytest.fixture
def fake_services() -> PipelineServices:
    """PipelineServices with mock adapters that write tiny artifacts."""
    media = Mock(spec=MediaTransformService)
    media.probe_duration = AsyncMock(return_value=NARRATION_DURATION)
    media.get_video_info = AsyncMock(
        return_value=VideoInfo(duration=15.0, width=1080, height=1920, frame_rate=30.0)
    )
    media.compose_banner_video = AsyncMock(side_effect=_fake_compose)

    speech = Mock(spec=SpeechSynthesisService)
    speech.synthesize = AsyncMock(side_effect=_fake_synthesize)

    mixer = Mock(spec=AudioMixerService)
    mixer.mix = AsyncMock(side_effect=_fake_mix)

    images = Mock(spec=ImageGenerationService)
    images.generate_thumbnail = AsyncMock(side_effect=_fake_thumbnail)

    publisher = Mock(spec=PublishService)
    publisher.publish = AsyncMock()

    downloader = Mock(spec=VideoDownloadService)
    downloader.download = AsyncMock()

    return PipelineServices(
        media=media,
        speech=speech,
        mixer=mixer,
        images=images,
        publisher=publisher,
        downloader=downloader,
    )


class StepRecorder:
    """Progress observer collecting every snapshot it receives."""

    def __init__(self) -> None:
        self.updates: list[PipelineStep] = []

    def on_step_update(self, step: PipelineStep) -> None:
        self.updates.append(step)

    def for_step(self, name: str) -> list[PipelineStep]:
        return [step for step in self.updates if step.name == name]


@pytest.fixture
def recorder() -> StepRecorder:
    return StepRecorder()
