"""Business logic services for the audiobook pipeline."""

from audiobook_uploader.services.audio_mixer import AudioMixerService
from audiobook_uploader.services.image_generation import ImageGenerationService
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.services.pipeline_orchestrator import (
    PipelineOrchestrator,
    PipelineServices,
    StepTracker,
)
from audiobook_uploader.services.project_history import JsonProjectHistoryStore
from audiobook_uploader.services.publish import PublishService
from audiobook_uploader.services.speech_synthesis import SpeechSynthesisService
from audiobook_uploader.services.video_download import VideoDownloadService

__all__ = [
    "AudioMixerService",
    "ImageGenerationService",
    "JsonProjectHistoryStore",
    "MediaTransformService",
    "PipelineOrchestrator",
    "PipelineServices",
    "PublishService",
    "SpeechSynthesisService",
    "StepTracker",
    "VideoDownloadService",
]
