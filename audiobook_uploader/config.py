"""Configuration management for the pipeline.

This module provides centralized configuration loading from environment
variables. A ``.env`` file in the working directory (or the path given by
AUDIOBOOK_ENV_FILE) is loaded once, on first use, with python-dotenv;
variables already present in the process environment win.

Environment Variables:
    VBEE_API_KEY: Vbee text-to-speech bearer token (required for narration)
    VBEE_APP_ID: Vbee application id (required for narration)
    VBEE_API_URL: Vbee TTS endpoint (default: https://vbee.vn/api/v1/tts)
    GEMINI_API_KEY: Google Generative Language API key (optional, thumbnails)
    GEMINI_IMAGE_MODEL: Image model name (default: imagen-3.0-generate-001)
    FFMPEG_PATH / FFPROBE_PATH: Media tool executables (default: on PATH)
    DOUYIN_API_URL: Short-video metadata resolver
    AUDIOBOOK_OUTPUT_ROOT: Root folder for numbered run folders
    AUDIOBOOK_HISTORY_PATH: JSON file holding the project history
    TTS_POLL_INTERVAL_SECONDS: Delay between TTS status polls (default: 1.0)
    TTS_MAX_POLL_ATTEMPTS: Poll budget per chunk (default: 300)
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    from audiobook_uploader.config import get_vbee_api_key, get_ffmpeg_path

    api_key = get_vbee_api_key()  # Returns None if not set
    ffmpeg = get_ffmpeg_path()  # "ffmpeg" unless FFMPEG_PATH is set
"""

import os
from functools import lru_cache
from pathlib import Path

import structlog
from dotenv import load_dotenv

log = structlog.get_logger(__name__)

DEFAULT_VBEE_API_URL = "https://vbee.vn/api/v1/tts"
DEFAULT_VBEE_VOICE_CODE = "n_hanoi_female_nguyetnga2_book_vc"
DEFAULT_GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_GEMINI_IMAGE_MODEL = "imagen-3.0-generate-001"
DEFAULT_DOUYIN_API_URL = "https://douyin.tunnaduong.com/api/hybrid/video_data"
DEFAULT_YOUTUBE_UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"


@lru_cache
def load_environment() -> bool:
    """Load the .env file into the process environment (once).

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_file = os.getenv("AUDIOBOOK_ENV_FILE")
    loaded = load_dotenv(env_file) if env_file else load_dotenv()
    log.debug("environment_loaded", env_file=env_file, loaded=loaded)
    return loaded


def _getenv(name: str, default: str | None = None) -> str | None:
    load_environment()
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_vbee_api_key() -> str | None:
    """Get Vbee API key from environment.

    Environment Variable:
        VBEE_API_KEY: Bearer token issued by Vbee

    Returns:
        API key string, or None if not set.

    Note:
        Returns None rather than raising so thumbnails and resumed runs work
        without TTS credentials. The speech synthesis service raises
        ConfigurationError when it actually needs the key.
    """
    return _getenv("VBEE_API_KEY")


def get_vbee_app_id() -> str | None:
    """Get Vbee application id from environment (VBEE_APP_ID), or None."""
    return _getenv("VBEE_APP_ID")


def get_vbee_api_url() -> str:
    return _getenv("VBEE_API_URL", DEFAULT_VBEE_API_URL)


def get_default_voice_code() -> str:
    """Get the default Vbee voice code.

    Environment Variable:
        VBEE_VOICE_CODE: Voice code used when the run config has no voice_id
        (default: n_hanoi_female_nguyetnga2_book_vc)
    """
    return _getenv("VBEE_VOICE_CODE", DEFAULT_VBEE_VOICE_CODE)


def get_gemini_api_key() -> str | None:
    """Get Gemini API key from environment.

    Environment Variable:
        GEMINI_API_KEY: Google Generative Language API key

    Returns:
        API key string, or None if not set. Thumbnail generation falls back
        to a placeholder image when the key is missing.
    """
    return _getenv("GEMINI_API_KEY")


def get_gemini_api_url() -> str:
    return _getenv("GEMINI_API_URL", DEFAULT_GEMINI_API_URL)


def get_gemini_image_model() -> str:
    return _getenv("GEMINI_IMAGE_MODEL", DEFAULT_GEMINI_IMAGE_MODEL)


def get_douyin_api_url() -> str:
    return _getenv("DOUYIN_API_URL", DEFAULT_DOUYIN_API_URL)


def get_youtube_upload_url() -> str:
    return _getenv("YOUTUBE_UPLOAD_URL", DEFAULT_YOUTUBE_UPLOAD_URL)


def get_ffmpeg_path() -> str:
    """Get ffmpeg executable path.

    Environment Variable:
        FFMPEG_PATH: Absolute path to ffmpeg (default: "ffmpeg" resolved via PATH)
    """
    return _getenv("FFMPEG_PATH", "ffmpeg")


def get_ffprobe_path() -> str:
    """Get ffprobe executable path (FFPROBE_PATH, default "ffprobe")."""
    return _getenv("FFPROBE_PATH", "ffprobe")


def get_app_data_dir() -> Path:
    """Get the per-user application data directory.

    Environment Variable:
        AUDIOBOOK_DATA_DIR: Override (default: ~/.audiobook-uploader)
    """
    return Path(_getenv("AUDIOBOOK_DATA_DIR", str(Path.home() / ".audiobook-uploader")))


def get_output_root() -> Path:
    """Get the root folder that holds numbered ``video_N`` run folders.

    Environment Variable:
        AUDIOBOOK_OUTPUT_ROOT: Directory path (default: ./output)
    """
    return Path(_getenv("AUDIOBOOK_OUTPUT_ROOT", "output"))


def get_history_path() -> Path:
    """Get the project history JSON file path.

    Environment Variable:
        AUDIOBOOK_HISTORY_PATH: File path (default: <app data dir>/history.json)
    """
    override = _getenv("AUDIOBOOK_HISTORY_PATH")
    if override:
        return Path(override)
    return get_app_data_dir() / "history.json"


def _get_bounded_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, default=default)
        return default
    return max(minimum, min(value, maximum))


def get_tts_poll_interval() -> float:
    """Get delay between TTS status polls in seconds.

    Environment Variable:
        TTS_POLL_INTERVAL_SECONDS: Float, clamped to 0.1-10 (default: 1.0)

    Returns:
        Poll interval in seconds. Invalid values fall back to the default
        with a warning.
    """
    return _get_bounded_float("TTS_POLL_INTERVAL_SECONDS", 1.0, 0.1, 10.0)


def get_tts_max_poll_attempts() -> int:
    """Get maximum TTS status polls per chunk.

    Environment Variable:
        TTS_MAX_POLL_ATTEMPTS: Integer, clamped to 1-3600 (default: 300)

    Returns:
        Poll attempt budget. Interval x attempts is the per-chunk timeout.
    """
    return int(_get_bounded_float("TTS_MAX_POLL_ATTEMPTS", 300, 1, 3600))


def get_log_level() -> str:
    """Get logging level name (LOG_LEVEL, default INFO)."""
    return (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
