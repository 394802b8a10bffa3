"""Audiobook Uploader pipeline.

This package turns a story text plus a handful of media assets into a
narrated banner video with a looped cooking clip, an AI-generated thumbnail,
and (optionally) a YouTube upload. The pipeline orchestrator sequences the
vendor adapters in clients/ and services/ and reports step progress across
a process boundary via the worker in workers/.
"""

from audiobook_uploader.schemas.pipeline import (
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    StepStatus,
)
from audiobook_uploader.services.pipeline_orchestrator import PipelineOrchestrator

__all__ = [
    "PipelineConfig",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineStep",
    "StepStatus",
]

__version__ = "0.1.0"
