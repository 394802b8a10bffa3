"""Pipeline Orchestrator Service for end-to-end audiobook video production.

This module sequences the seven pipeline steps, propagates computed values
(foreground path, narration duration, audio path) between them, tracks step
state by name, reports progress to an observer and returns one terminal
PipelineResult per run.

Key Responsibilities:
- Execute 7 steps in fixed order:
  Validate Input → Acquire Foreground Media → Synthesize Narration →
  Mix Audio → Compose Video → Generate Thumbnail → Publish
- Treat Validate Input, Synthesize Narration and Compose Video as fatal:
  their failure ends the run with success=False and later steps pending
- Contain failures of the other steps (degraded result, run continues)
- Skip narration, mixing and composition when resume is enabled and the
  artifact already exists at its conventional path
- Feed the most recently measured audio duration into composition
- Stream encoder progress during composition
- Support cooperative cancellation between steps and inside adapter calls
- Notify the project history store without ever affecting the result

Architecture Pattern: "Name-keyed step tracker + fatal boundary"
- StepTracker owns the live step records, keyed by step name, and enforces
  forward-only transitions; observers receive snapshots
- Fatal step handlers let exceptions propagate to a single boundary in run()
- Non-fatal step handlers catch their own errors and mark only their step

Usage:
    from audiobook_uploader.services.pipeline_orchestrator import (
        PipelineOrchestrator, PipelineServices,
    )

    async with httpx.AsyncClient(timeout=120.0) as http:
        orchestrator = PipelineOrchestrator(PipelineServices.from_environment(http))
        result = await orchestrator.run(config, observer=print_step)
        print(result.success, result.video_path)
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from audiobook_uploader.clients.douyin import DouyinClient
from audiobook_uploader.clients.gemini import GeminiClient
from audiobook_uploader.clients.vbee import VbeeClient
from audiobook_uploader.clients.youtube import YouTubeClient
from audiobook_uploader.config import (
    get_douyin_api_url,
    get_gemini_api_key,
    get_gemini_api_url,
    get_gemini_image_model,
    get_vbee_api_key,
    get_vbee_api_url,
    get_vbee_app_id,
    get_youtube_upload_url,
)
from audiobook_uploader.constants import (
    DEFAULT_VIDEO_DURATION_SECONDS,
    FATAL_STEPS,
    MIXED_AUDIO_FILENAME,
    PIPELINE_STEP_NAMES,
    STEP_ACQUIRE_FOREGROUND,
    STEP_COMPOSE_VIDEO,
    STEP_GENERATE_THUMBNAIL,
    STEP_MIX_AUDIO,
    STEP_PUBLISH,
    STEP_SYNTHESIZE_NARRATION,
    STEP_VALIDATE_INPUT,
    VOICEOVER_FILENAME,
)
from audiobook_uploader.exceptions import (
    KIND_CANCELLED,
    KIND_CONFIGURATION,
    ConfigurationError,
    InvalidStepTransitionError,
    OperationTimeoutError,
    PipelineCancelledError,
    PipelineError,
    TransientIOError,
    VendorError,
    classify_error,
    format_error_message,
)
from audiobook_uploader.schemas.pipeline import (
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    PublishResult,
    StepStatus,
)
from audiobook_uploader.services.audio_mixer import AudioMixerService
from audiobook_uploader.services.image_generation import (
    ImageGenerationService,
    render_placeholder,
)
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.services.project_history import ProjectHistoryStore
from audiobook_uploader.services.publish import PublishService, build_video_metadata
from audiobook_uploader.services.speech_synthesis import SpeechSynthesisService
from audiobook_uploader.services.video_download import VideoDownloadService
from audiobook_uploader.utils.artifacts import artifact_exists, find_previous_thumbnail
from audiobook_uploader.utils.logging import get_logger

T = TypeVar("T")

INITIAL_STEP_PROGRESS = 10
HISTORY_DRAIN_TIMEOUT_SECONDS = 5.0

# (config field, error message) checked in order by Validate Input
REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("story_text", "Story text is required"),
    ("story_title", "Story title is required"),
    ("banner_image_path", "Banner image path is required"),
    ("foreground_video_path", "Foreground video path is required"),
    ("background_music_path", "Background music path is required"),
    ("avatar_image_path", "Avatar image path is required"),
    ("output_video_path", "Output video path is required"),
    ("output_thumbnail_path", "Output thumbnail path is required"),
)


@runtime_checkable
class ProgressObserver(Protocol):
    """Receives a snapshot of a step after every state change."""

    def on_step_update(self, step: PipelineStep) -> None: ...


class CallbackObserver:
    """Adapt a plain ``callable(step)`` to the ProgressObserver interface."""

    def __init__(self, callback: Callable[[PipelineStep], None]) -> None:
        self.callback = callback

    def on_step_update(self, step: PipelineStep) -> None:
        self.callback(step)


def as_observer(
    observer: ProgressObserver | Callable[[PipelineStep], None] | None,
) -> ProgressObserver | None:
    if observer is None or isinstance(observer, ProgressObserver):
        return observer
    return CallbackObserver(observer)


def validate_config(config: PipelineConfig) -> None:
    """Check required fields are non-blank.

    Raises:
        ConfigurationError: For the first missing field, e.g.
            "Story text is required".
    """
    for field_name, message in REQUIRED_FIELDS:
        value = getattr(config, field_name)
        if not value or not value.strip():
            raise ConfigurationError(message)


def effective_duration(measured: float | None, configured: float | None) -> float:
    """Pick the composition duration.

    The measured audio duration wins whenever it is known and positive;
    otherwise the configured duration, otherwise the 60 second default.
    """
    if measured is not None and measured > 0:
        return measured
    if configured is not None and configured > 0:
        return configured
    return DEFAULT_VIDEO_DURATION_SECONDS


def global_progress(step_name: str, progress: int) -> float:
    """Map a step-local progress to overall progress (0-100).

    Example:
        >>> global_progress("Compose Video", 50)
        64.29
    """
    index = PIPELINE_STEP_NAMES.index(step_name)
    return round((index * 100 + progress) / len(PIPELINE_STEP_NAMES), 2)


@dataclass
class PipelineStatus:
    overall_progress: int
    status: str
    current_step: str | None


def get_pipeline_status(steps: list[PipelineStep]) -> PipelineStatus:
    """Summarize a step list for status displays.

    overall_progress is the share of completed steps. status is "failed" when
    a fatal step failed, "in_progress" while any step runs or the run is
    partially done, "completed" when every step is terminal, else "pending".
    """
    if not steps:
        return PipelineStatus(overall_progress=0, status="pending", current_step=None)

    completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
    current = next((s.name for s in steps if s.status == StepStatus.IN_PROGRESS), None)

    if any(s.status == StepStatus.FAILED and s.name in FATAL_STEPS for s in steps):
        status = "failed"
    elif current is not None:
        status = "in_progress"
    elif all(s.status.is_terminal for s in steps):
        status = "completed"
    elif all(s.status == StepStatus.PENDING for s in steps):
        status = "pending"
    else:
        status = "in_progress"

    return PipelineStatus(
        overall_progress=round(completed / len(steps) * 100),
        status=status,
        current_step=current,
    )


class StepTracker:
    """Owns the step records of one run, keyed by step name.

    Every state change emits a snapshot to the observer. Observer errors
    are logged and swallowed.
    """

    _ALLOWED: dict[StepStatus, frozenset[StepStatus]] = {
        StepStatus.PENDING: frozenset(
            {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED}
        ),
        StepStatus.IN_PROGRESS: frozenset(
            {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED}
        ),
        StepStatus.COMPLETED: frozenset(),
        StepStatus.FAILED: frozenset(),
    }

    def __init__(
        self,
        names: tuple[str, ...] = PIPELINE_STEP_NAMES,
        observer: ProgressObserver | None = None,
    ) -> None:
        self._steps: dict[str, PipelineStep] = {name: PipelineStep(name=name) for name in names}
        self.observer = observer
        self.log = get_logger(__name__)

    def get(self, name: str) -> PipelineStep:
        return self._steps[name]

    def current(self) -> str | None:
        """Name of the step in progress, if any."""
        for step in self._steps.values():
            if step.status == StepStatus.IN_PROGRESS:
                return step.name
        return None

    def snapshot(self) -> list[PipelineStep]:
        """Copies of all steps in declared order."""
        return [step.model_copy() for step in self._steps.values()]

    def _transition(self, name: str, status: StepStatus) -> PipelineStep:
        step = self._steps[name]
        if status not in self._ALLOWED[step.status]:
            raise InvalidStepTransitionError(name, step.status.value, status.value)
        step.status = status
        return step

    def _emit(self, step: PipelineStep) -> None:
        if self.observer is None:
            return
        try:
            self.observer.on_step_update(step.model_copy())
        except Exception as e:
            self.log.warning("observer_error", step=step.name, error=str(e))

    def start(self, name: str, message: str) -> None:
        step = self._transition(name, StepStatus.IN_PROGRESS)
        step.progress = max(step.progress, INITIAL_STEP_PROGRESS)
        step.message = message
        self._emit(step)

    def update(self, name: str, progress: int, message: str | None = None) -> None:
        """Report progress of a running step; progress never decreases."""
        step = self._transition(name, StepStatus.IN_PROGRESS)
        step.progress = max(step.progress, min(100, max(0, int(progress))))
        if message:
            step.message = message
        self._emit(step)

    def complete(self, name: str, message: str) -> None:
        step = self._transition(name, StepStatus.COMPLETED)
        step.progress = 100
        step.message = message
        self._emit(step)

    def fail(self, name: str, error: str, error_kind: str, message: str | None = None) -> None:
        step = self._transition(name, StepStatus.FAILED)
        step.error = error
        step.error_kind = error_kind
        if message:
            step.message = message
        self._emit(step)


@dataclass
class _RunState:
    """Values propagated between steps of one run."""

    output_dir: Path
    foreground_path: Path
    voiceover_path: Path | None = None
    audio_path: Path | None = None
    audio_duration: float | None = None
    video_path: Path | None = None
    thumbnail_path: Path | None = None
    thumbnail_is_placeholder: bool = False
    publish_result: PublishResult | None = None
    active_step: str | None = None


@dataclass
class PipelineServices:
    """Adapters used by the orchestrator, injected for reuse and testing."""

    media: MediaTransformService
    speech: SpeechSynthesisService
    mixer: AudioMixerService
    images: ImageGenerationService
    publisher: PublishService
    downloader: VideoDownloadService | None = None

    @classmethod
    def from_environment(cls, http_client: httpx.AsyncClient) -> "PipelineServices":
        """Build every adapter from environment configuration.

        Missing credentials do not fail here: each adapter raises (or, for
        thumbnails, degrades) when it actually needs them.
        """
        media = MediaTransformService()
        vbee = VbeeClient(
            get_vbee_api_key(), get_vbee_app_id(), http_client, api_url=get_vbee_api_url()
        )
        gemini = GeminiClient(
            get_gemini_api_key(),
            http_client,
            model=get_gemini_image_model(),
            api_url=get_gemini_api_url(),
        )
        youtube = YouTubeClient(http_client, upload_url=get_youtube_upload_url())
        douyin = DouyinClient(http_client, api_url=get_douyin_api_url())
        return cls(
            media=media,
            speech=SpeechSynthesisService(vbee, media),
            mixer=AudioMixerService(media),
            images=ImageGenerationService(gemini),
            publisher=PublishService(youtube),
            downloader=VideoDownloadService(douyin, media),
        )


def _is_publish_retryable(exception: BaseException) -> bool:
    if isinstance(exception, PipelineCancelledError):
        return False
    if isinstance(exception, VendorError):
        return exception.retryable
    return isinstance(
        exception, (TransientIOError, OperationTimeoutError, httpx.TransportError)
    )


class PipelineOrchestrator:
    """Orchestrator for the seven-step audiobook video pipeline.

    One instance may run several pipelines sequentially; per-run state
    lives in run() locals. Runs must not share an output directory
    concurrently, since artifacts are identified by filename.
    """

    def __init__(
        self,
        services: PipelineServices,
        history: ProjectHistoryStore | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            services: Adapters for every step
            history: Optional project history store (fire-and-forget)
        """
        self.services = services
        self.history = history
        self.log = get_logger(__name__)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    async def run(
        self,
        config: PipelineConfig,
        observer: ProgressObserver | Callable[[PipelineStep], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """Execute the pipeline for one config.

        Args:
            config: Immutable run input
            observer: Receives a step snapshot after every state change;
                exceptions it raises are logged and ignored
            cancel_event: Set it to cancel the run. Checked between steps
                and raced against every adapter call (ffmpeg is terminated)

        Returns:
            PipelineResult with the full step list in declared order. Never
            raises for step failures; a fatal failure yields success=False
            with a multi-line error message.
        """
        tracker = StepTracker(observer=as_observer(observer))
        cancel_event = cancel_event or asyncio.Event()
        output_dir = Path(config.output_video_path or ".").parent
        state = _RunState(
            output_dir=output_dir,
            foreground_path=Path(config.foreground_video_path),
        )
        start_time = time.monotonic()
        self.log.info(
            "pipeline_start",
            title=config.story_title,
            output_dir=str(output_dir),
            resume=config.resume_on_exist,
        )
        history_task = self._spawn_background(self._history_started(config))

        handlers: tuple[tuple[str, Callable[..., Awaitable[None]]], ...] = (
            (STEP_VALIDATE_INPUT, self._validate_input),
            (STEP_ACQUIRE_FOREGROUND, self._acquire_foreground),
            (STEP_SYNTHESIZE_NARRATION, self._synthesize_narration),
            (STEP_MIX_AUDIO, self._mix_audio),
            (STEP_COMPOSE_VIDEO, self._compose_video),
            (STEP_GENERATE_THUMBNAIL, self._generate_thumbnail),
            (STEP_PUBLISH, self._publish),
        )

        try:
            for name, handler in handlers:
                state.active_step = name
                if cancel_event.is_set():
                    raise PipelineCancelledError("Pipeline cancelled")
                await handler(config, tracker, state, cancel_event)
        except Exception as e:
            result = self._fail_run(tracker, state, e)
        else:
            result = PipelineResult(
                success=True,
                video_path=str(state.video_path) if state.video_path else None,
                thumbnail_path=str(state.thumbnail_path) if state.thumbnail_path else None,
                thumbnail_is_placeholder=state.thumbnail_is_placeholder,
                voiceover_path=str(state.voiceover_path) if state.voiceover_path else None,
                audio_duration=state.audio_duration,
                publish_result=state.publish_result,
                steps=tracker.snapshot(),
            )

        self.log.info(
            "pipeline_complete",
            success=result.success,
            error_kind=result.error_kind,
            elapsed_seconds=round(time.monotonic() - start_time, 1),
        )
        self._spawn_background(self._history_finished(history_task, result))
        await self._drain_background()
        return result

    def _fail_run(
        self, tracker: StepTracker, state: _RunState, exception: Exception
    ) -> PipelineResult:
        """Record a fatal failure (or cancellation) on the interrupted step."""
        failed_step = tracker.current() or state.active_step or STEP_VALIDATE_INPUT
        kind = classify_error(exception)
        message = format_error_message(failed_step, exception)

        self.log.error(
            "pipeline_failed",
            step=failed_step,
            error_kind=kind,
            error=str(exception),
            exc_info=kind not in (KIND_CANCELLED, KIND_CONFIGURATION),
        )
        step = tracker.get(failed_step)
        if not step.status.is_terminal:
            tracker.fail(failed_step, str(exception) or exception.__class__.__name__, kind)

        return PipelineResult(
            success=False,
            video_path=str(state.video_path) if state.video_path else None,
            voiceover_path=str(state.voiceover_path) if state.voiceover_path else None,
            audio_duration=state.audio_duration,
            error=message,
            error_kind=kind,
            steps=tracker.snapshot(),
        )

    async def _await_cancellable(
        self, awaitable: Awaitable[T], cancel_event: asyncio.Event, step_name: str
    ) -> T:
        """Await an adapter call, abandoning it when cancel_event is set.

        The adapter task is cancelled, which terminates any subprocess it is
        waiting on.

        Raises:
            PipelineCancelledError: If cancel_event fires first.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise PipelineCancelledError(f"{step_name} was cancelled")

    # Step 1 (fatal)
    async def _validate_input(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_VALIDATE_INPUT, "Checking input files...")
        validate_config(config)

        if not state.output_dir.exists():
            try:
                state.output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise TransientIOError(
                    f"Cannot create output directory {state.output_dir}: {e}"
                ) from e
            self.log.info("output_dir_created", output_dir=str(state.output_dir))

        tracker.complete(STEP_VALIDATE_INPUT, "Input validation successful")

    # Step 2 (never fatal)
    async def _acquire_foreground(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_ACQUIRE_FOREGROUND, "Fetching foreground video...")

        if not config.source_video_url or self.services.downloader is None:
            tracker.complete(
                STEP_ACQUIRE_FOREGROUND,
                f"No source URL provided, using local video {state.foreground_path.name}",
            )
            return

        try:
            video = await self._await_cancellable(
                self.services.downloader.download(config.source_video_url, state.output_dir),
                cancel_event,
                STEP_ACQUIRE_FOREGROUND,
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self.log.warning(
                "foreground_download_failed",
                url=config.source_video_url,
                fallback=str(state.foreground_path),
                error=str(e),
            )
            tracker.fail(
                STEP_ACQUIRE_FOREGROUND,
                str(e),
                classify_error(e),
                message=f"Download failed, using local video {state.foreground_path.name}",
            )
            return

        state.foreground_path = video.local_path
        duration = f" ({video.duration:.1f}s)" if video.duration else ""
        tracker.complete(
            STEP_ACQUIRE_FOREGROUND,
            f"Foreground video downloaded: {video.local_path.name}{duration}",
        )

    async def _probe_or_none(self, path: Path) -> float | None:
        try:
            return await self.services.media.probe_duration(path)
        except (PipelineError, FileNotFoundError) as e:
            self.log.warning("duration_probe_failed", path=str(path), error=str(e))
            return None

    # Step 3 (fatal, resumable)
    async def _synthesize_narration(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_SYNTHESIZE_NARRATION, "Converting story text to speech...")
        voiceover_path = state.output_dir / VOICEOVER_FILENAME

        if config.resume_on_exist and artifact_exists(state.output_dir, VOICEOVER_FILENAME):
            state.voiceover_path = voiceover_path
            state.audio_path = voiceover_path
            state.audio_duration = await self._probe_or_none(voiceover_path)
            self.log.info(
                "narration_resumed", path=str(voiceover_path), duration=state.audio_duration
            )
            tracker.complete(
                STEP_SYNTHESIZE_NARRATION,
                "Narration already exists: "
                f"{VOICEOVER_FILENAME}{_fmt_duration(state.audio_duration)}",
            )
            return

        audio = await self._await_cancellable(
            self.services.speech.synthesize(config.story_text, voiceover_path, config.voice_id),
            cancel_event,
            STEP_SYNTHESIZE_NARRATION,
        )
        state.voiceover_path = audio.path
        state.audio_path = audio.path
        state.audio_duration = audio.duration
        tracker.complete(
            STEP_SYNTHESIZE_NARRATION,
            f"Narration generated: {audio.path.name}{_fmt_duration(audio.duration)}",
        )

    # Step 4 (non-fatal, resumable)
    async def _mix_audio(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_MIX_AUDIO, "Mixing narration (100%) with background music (50%)...")
        mixed_path = state.output_dir / MIXED_AUDIO_FILENAME
        music_path = Path(config.background_music_path)

        if config.resume_on_exist and artifact_exists(state.output_dir, MIXED_AUDIO_FILENAME):
            state.audio_path = mixed_path
            state.audio_duration = await self._probe_or_none(mixed_path) or state.audio_duration
            tracker.complete(STEP_MIX_AUDIO, f"Mixed audio already exists: {MIXED_AUDIO_FILENAME}")
            return

        if not music_path.is_file():
            self.log.info("background_music_missing", path=str(music_path))
            tracker.complete(
                STEP_MIX_AUDIO, "No background music found, using narration only"
            )
            return

        try:
            mixed = await self._await_cancellable(
                self.services.mixer.mix(
                    state.audio_path, music_path, mixed_path, state.audio_duration
                ),
                cancel_event,
                STEP_MIX_AUDIO,
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self.log.warning("audio_mix_failed", error=str(e))
            tracker.fail(
                STEP_MIX_AUDIO,
                str(e),
                classify_error(e),
                message="Audio mixing failed, using narration only",
            )
            return

        state.audio_path = mixed.path
        if mixed.duration:
            state.audio_duration = mixed.duration
        tracker.complete(STEP_MIX_AUDIO, "Audio mixed: narration (100%) + music (50%)")

    # Step 5 (fatal, resumable)
    async def _compose_video(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_COMPOSE_VIDEO, "Composing banner + foreground video + audio...")
        video_path = Path(config.output_video_path)

        if config.resume_on_exist and artifact_exists(state.output_dir, video_path.name):
            state.video_path = video_path
            tracker.complete(STEP_COMPOSE_VIDEO, f"Video already exists: {video_path.name}")
            return

        if state.audio_path is None:
            raise ConfigurationError("No audio track available for composition")

        duration = effective_duration(state.audio_duration, config.video_duration)
        await self._warn_if_foreground_loops(state.foreground_path, duration)

        def on_progress(progress: int, message: str) -> None:
            tracker.update(STEP_COMPOSE_VIDEO, progress, message)

        composed = await self._await_cancellable(
            self.services.media.compose_banner_video(
                Path(config.banner_image_path),
                state.foreground_path,
                state.audio_path,
                video_path,
                duration,
                on_progress=on_progress,
                cancel_event=cancel_event,
            ),
            cancel_event,
            STEP_COMPOSE_VIDEO,
        )
        state.video_path = composed.path
        tracker.complete(
            STEP_COMPOSE_VIDEO,
            f"Video composed: {composed.path.name} ({duration:.1f}s, {composed.codec})",
        )

    async def _warn_if_foreground_loops(self, foreground_path: Path, duration: float) -> None:
        try:
            info = await self.services.media.get_video_info(foreground_path)
        except (PipelineError, FileNotFoundError) as e:
            self.log.warning("foreground_probe_failed", path=str(foreground_path), error=str(e))
            return
        if 0 < info.duration < duration:
            self.log.warning(
                "foreground_will_loop",
                foreground_duration=info.duration,
                audio_duration=duration,
                loops=-(-duration // info.duration),
            )

    # Step 6 (never fatal)
    async def _generate_thumbnail(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        tracker.start(STEP_GENERATE_THUMBNAIL, "Generating thumbnail...")
        output_path = Path(config.output_thumbnail_path)

        reusable = artifact_exists(output_path.parent, output_path.name)
        if config.reuse_existing_thumbnail and reusable:
            state.thumbnail_path = output_path
            tracker.complete(
                STEP_GENERATE_THUMBNAIL, f"Using existing thumbnail: {output_path.name}"
            )
            return

        try:
            thumbnail = await self._await_cancellable(
                self.services.images.generate_thumbnail(
                    config.story_title,
                    output_path,
                    reference_images=self._thumbnail_references(config, output_path),
                ),
                cancel_event,
                STEP_GENERATE_THUMBNAIL,
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self.log.warning("thumbnail_generation_failed", error=str(e))
            with contextlib.suppress(OSError, ValueError):
                render_placeholder(output_path, config.story_title)
            state.thumbnail_path = output_path
            state.thumbnail_is_placeholder = True
            tracker.fail(
                STEP_GENERATE_THUMBNAIL,
                str(e),
                classify_error(e),
                message="Thumbnail generation failed, placeholder used",
            )
            return

        state.thumbnail_path = thumbnail.path
        state.thumbnail_is_placeholder = thumbnail.is_placeholder
        if thumbnail.is_placeholder:
            message = f"Placeholder thumbnail used: {thumbnail.reason or 'generation unavailable'}"
        else:
            message = (
                f"Thumbnail generated: {thumbnail.path.name} ({thumbnail.width}x{thumbnail.height})"
            )
        tracker.complete(STEP_GENERATE_THUMBNAIL, message)

    @staticmethod
    def _thumbnail_references(config: PipelineConfig, output_path: Path) -> list[Path]:
        candidates: list[Path | None] = [
            Path(config.avatar_image_path),
            Path(config.reference_image_path) if config.reference_image_path else None,
        ]
        if config.use_previous_thumbnail_reference:
            candidates.append(find_previous_thumbnail(output_path.parent, output_path.name))
        return [path for path in candidates if path is not None and path.is_file()]

    # Step 7 (non-fatal)
    async def _publish(
        self,
        config: PipelineConfig,
        tracker: StepTracker,
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> None:
        if not config.upload_to_youtube:
            tracker.complete(STEP_PUBLISH, "Publish skipped (not requested)")
            return
        if not config.youtube_access_token:
            self.log.warning("publish_skipped_no_token")
            tracker.complete(STEP_PUBLISH, "Publish skipped (no access token)")
            return

        tracker.start(STEP_PUBLISH, "Uploading video...")
        metadata = build_video_metadata(config)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.publish_max_attempts),
            wait=wait_exponential(multiplier=config.publish_retry_wait_seconds, max=300),
            retry=retry_if_exception(_is_publish_retryable),
            before_sleep=self._log_publish_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    publish_result = await self._await_cancellable(
                        self.services.publisher.publish(
                            state.video_path, metadata, config.youtube_access_token
                        ),
                        cancel_event,
                        STEP_PUBLISH,
                    )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self.log.error("publish_failed", error=str(e), error_kind=classify_error(e))
            tracker.fail(STEP_PUBLISH, str(e), classify_error(e), message="Upload failed")
            return

        state.publish_result = publish_result
        tracker.complete(STEP_PUBLISH, f"Video published: {publish_result.url}")

    def _log_publish_retry(self, retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "publish_retry",
            attempt=retry_state.attempt_number,
            error=str(exception),
            error_kind=classify_error(exception) if exception else None,
        )

    # History notifications (fire-and-forget)
    def _spawn_background(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _drain_background(self) -> None:
        pending = [t for t in self._background_tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=HISTORY_DRAIN_TIMEOUT_SECONDS)

    async def _history_started(self, config: PipelineConfig) -> str | None:
        if self.history is None:
            return None
        try:
            return await asyncio.to_thread(self.history.record_started, config)
        except Exception as e:
            self.log.warning("history_start_failed", error=str(e))
            return None

    async def _history_finished(
        self, started: "asyncio.Task[str | None]", result: PipelineResult
    ) -> None:
        record_id = await started
        if self.history is None or record_id is None:
            return
        try:
            await asyncio.to_thread(self.history.record_finished, record_id, result)
        except Exception as e:
            self.log.warning("history_finish_failed", record_id=record_id, error=str(e))


def _fmt_duration(duration: float | None) -> str:
    return f" ({duration:.1f}s)" if duration else ""
