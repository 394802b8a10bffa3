"""Pydantic schemas for pipeline input, state, results and channel messages."""

from audiobook_uploader.schemas.messages import (
    ChannelMessage,
    ErrorMessage,
    LogMessage,
    ProgressMessage,
    ResultMessage,
    channel_message_adapter,
)
from audiobook_uploader.schemas.pipeline import (
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    PublishResult,
    StepStatus,
    VideoMetadata,
)

__all__ = [
    "ChannelMessage",
    "ErrorMessage",
    "LogMessage",
    "PipelineConfig",
    "PipelineResult",
    "PipelineStep",
    "ProgressMessage",
    "PublishResult",
    "ResultMessage",
    "StepStatus",
    "VideoMetadata",
    "channel_message_adapter",
]
