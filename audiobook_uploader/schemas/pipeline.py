"""Pydantic schemas for pipeline configuration, step state and results.

This module defines the data model that crosses the process boundary:

- PipelineConfig: Immutable input to one run
- PipelineStep: Mutable record of one named stage (snapshotted for events)
- PipelineResult: Terminal output of a run, returned once
- VideoMetadata / PublishResult: Remote publish contract

All schemas use Pydantic v2 syntax with model_config instead of class Config.
Paths are plain strings so every model serializes to JSON unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from audiobook_uploader.constants import (
    DEFAULT_PUBLISH_CATEGORY_ID,
    DEFAULT_PUBLISH_LANGUAGE,
    DEFAULT_PUBLISH_TAGS,
    DEFAULT_PUBLISH_VISIBILITY,
    DEFAULT_VIDEO_DURATION_SECONDS,
)

Visibility = Literal["public", "unlisted", "private"]


class StepStatus(str, Enum):
    """Lifecycle of a pipeline step.

    Transitions are forward-only: pending → in_progress → completed | failed.
    A step may also go straight from pending to failed (cancelled before it
    started) and from pending to completed (nothing to do).
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


class PipelineConfig(BaseModel):
    """Immutable input to one pipeline run.

    Required fields may be empty at construction time: they are validated
    by the "Validate Input" step so a bad config still yields a full step
    list and a readable error instead of a construction failure.

    Attributes:
        story_text: Narration text
        story_title: Video and thumbnail title
        banner_image_path: Static 1920x1080 background image
        foreground_video_path: Local foreground clip (fallback when
            source_video_url is missing or cannot be fetched)
        background_music_path: Music bed mixed under the narration
        avatar_image_path: Style reference for the thumbnail
        reference_image_path: Optional extra thumbnail reference (story cover)
        output_video_path: Final video; its parent is the run output directory
        output_thumbnail_path: Final thumbnail image
        voice_id: TTS voice code (default from VBEE_VOICE_CODE)
        video_duration: Fallback duration when the narration length is unknown
        upload_to_youtube: Publish after composing
        youtube_access_token: Already-valid OAuth access token
        source_video_url: Short-video page URL to fetch the foreground from
        resume_on_exist: Reuse artifacts already present in the output dir
        reuse_existing_thumbnail: Keep an existing thumbnail file instead of
            generating a new one
        use_previous_thumbnail_reference: Pass the newest earlier run's
            thumbnail to the image service for style consistency
        publish_max_attempts: Publish attempts (1 = no retry)
        publish_retry_wait_seconds: Base backoff between publish attempts
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    story_text: str = ""
    story_title: str = ""
    banner_image_path: str = ""
    foreground_video_path: str = ""
    background_music_path: str = ""
    avatar_image_path: str = ""
    reference_image_path: str | None = None
    output_video_path: str = ""
    output_thumbnail_path: str = ""

    voice_id: str | None = None
    video_duration: float | None = Field(default=DEFAULT_VIDEO_DURATION_SECONDS, gt=0)
    upload_to_youtube: bool = False
    youtube_access_token: str | None = Field(default=None, repr=False)
    source_video_url: str | None = None
    resume_on_exist: bool = False
    reuse_existing_thumbnail: bool = False
    use_previous_thumbnail_reference: bool = False

    publish_description: str | None = None
    publish_tags: list[str] | None = None
    publish_visibility: Visibility = DEFAULT_PUBLISH_VISIBILITY
    publish_max_attempts: int = Field(default=1, ge=1, le=10)
    publish_retry_wait_seconds: float = Field(default=5.0, ge=0)


class PipelineStep(BaseModel):
    """Record of one named pipeline stage.

    The orchestrator owns the live instances; observers and the final
    result receive copies (snapshots).
    """

    name: str
    status: StepStatus = StepStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: str | None = None
    error_kind: str | None = None


class VideoMetadata(BaseModel):
    """Metadata registered with the hosting platform before the file body."""

    title: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    tags: list[str] = Field(default_factory=lambda: list(DEFAULT_PUBLISH_TAGS))
    visibility: Visibility = DEFAULT_PUBLISH_VISIBILITY
    category_id: str = DEFAULT_PUBLISH_CATEGORY_ID
    language: str = DEFAULT_PUBLISH_LANGUAGE


class PublishResult(BaseModel):
    """Remote identifier and canonical URL of a published video."""

    video_id: str
    url: str
    status: str = "uploaded"
    uploaded_at: datetime


class PipelineResult(BaseModel):
    """Terminal output of one run.

    success is False if and only if a fatal step (Validate Input,
    Synthesize Narration, Compose Video) failed or the run was cancelled.
    Non-fatal failures are visible in steps only.
    """

    success: bool
    video_path: str | None = None
    thumbnail_path: str | None = None
    thumbnail_is_placeholder: bool = False
    voiceover_path: str | None = None
    audio_duration: float | None = None
    publish_result: PublishResult | None = None
    error: str | None = None
    error_kind: str | None = None
    steps: list[PipelineStep] = Field(default_factory=list)

    def get_step(self, name: str) -> PipelineStep:
        """Look up a step by name.

        Raises:
            KeyError: If no step has that name.
        """
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)
