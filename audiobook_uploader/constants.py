"""Project-wide constants.

Step names, artifact filenames and media defaults shared by the orchestrator,
the adapters and the progress channel. Artifact filenames are part of the
resume contract: changing one invalidates every existing output directory.
"""

# Step names in execution order. Steps are looked up by name, never by index.
STEP_VALIDATE_INPUT = "Validate Input"
STEP_ACQUIRE_FOREGROUND = "Acquire Foreground Media"
STEP_SYNTHESIZE_NARRATION = "Synthesize Narration"
STEP_MIX_AUDIO = "Mix Audio"
STEP_COMPOSE_VIDEO = "Compose Video"
STEP_GENERATE_THUMBNAIL = "Generate Thumbnail"
STEP_PUBLISH = "Publish"

PIPELINE_STEP_NAMES: tuple[str, ...] = (
    STEP_VALIDATE_INPUT,
    STEP_ACQUIRE_FOREGROUND,
    STEP_SYNTHESIZE_NARRATION,
    STEP_MIX_AUDIO,
    STEP_COMPOSE_VIDEO,
    STEP_GENERATE_THUMBNAIL,
    STEP_PUBLISH,
)

# A failure in any of these ends the run with success=False
FATAL_STEPS: frozenset[str] = frozenset(
    {STEP_VALIDATE_INPUT, STEP_SYNTHESIZE_NARRATION, STEP_COMPOSE_VIDEO}
)

# Artifact filenames inside a run's output directory
VOICEOVER_FILENAME = "voiceover.mp3"
MIXED_AUDIO_FILENAME = "mixed_audio.m4a"
SOURCE_VIDEO_FILENAME = "source_video.mp4"
THUMBNAIL_FILENAME = "thumbnail.jpg"
RUN_DIR_PREFIX = "video_"

# Composition
DEFAULT_VIDEO_DURATION_SECONDS = 60.0
OUTPUT_FPS = 30
OUTPUT_WIDTH = 1920
OUTPUT_HEIGHT = 1080
FOREGROUND_WIDTH = 540
FOREGROUND_HEIGHT = 960
FOREGROUND_X = 690
FOREGROUND_Y = 60
AUDIO_BITRATE = "192k"

# Mixing volumes (1.0 = 100%)
NARRATION_VOLUME = 1.0
MUSIC_VOLUME = 0.5

# Thumbnails
THUMBNAIL_WIDTH = 1920
THUMBNAIL_HEIGHT = 1080
PLACEHOLDER_WIDTH = 1280
PLACEHOLDER_HEIGHT = 720

# Publishing defaults
DEFAULT_PUBLISH_TAGS: tuple[str, ...] = ("audiobook", "cooking", "story", "vietnam")
DEFAULT_PUBLISH_VISIBILITY = "public"
DEFAULT_PUBLISH_CATEGORY_ID = "24"
DEFAULT_PUBLISH_LANGUAGE = "vi"

# Timeouts in seconds
API_TIMEOUT_SECONDS = 30.0
DOWNLOAD_TIMEOUT_SECONDS = 120.0
PROBE_TIMEOUT_SECONDS = 30.0
AUDIO_TIMEOUT_SECONDS = 300.0
COMPOSE_TIMEOUT_SECONDS = 3600.0
UPLOAD_TIMEOUT_SECONDS = 600.0
