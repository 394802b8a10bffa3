"""Publish Service for uploading the finished video to YouTube.

Key Responsibilities:
- Build publish metadata from the run config (title, description, tags,
  visibility, category, language)
- Run the resumable upload through YouTubeClient
- Return the remote id and canonical watch URL

The service performs exactly one upload attempt. Retry is a caller policy
(see PipelineOrchestrator) because publishing is a non-fatal step and an
authentication failure usually needs a fresh token, not another attempt.

Usage:
    from audiobook_uploader.services.publish import PublishService

    service = PublishService(youtube_client)
    metadata = build_video_metadata(config)
    result = await service.publish(Path("final.mp4"), metadata, token)
    print(result.url)
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from audiobook_uploader.clients.youtube import YouTubeClient
from audiobook_uploader.constants import DEFAULT_PUBLISH_TAGS
from audiobook_uploader.exceptions import ConfigurationError
from audiobook_uploader.schemas.pipeline import PipelineConfig, PublishResult, VideoMetadata
from audiobook_uploader.utils.logging import get_logger

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
# YouTube rejects titles over 100 characters and descriptions over 5000 bytes
MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 5000


def build_video_metadata(config: PipelineConfig) -> VideoMetadata:
    """Derive publish metadata from a run config."""
    description = config.publish_description
    if description is None:
        description = f"Audiobook with Cooking Video\n\n{config.story_text}"
    return VideoMetadata(
        title=config.story_title.strip()[:MAX_TITLE_LENGTH],
        description=description[:MAX_DESCRIPTION_LENGTH],
        tags=list(config.publish_tags or DEFAULT_PUBLISH_TAGS),
        visibility=config.publish_visibility,
    )


def metadata_to_resource(metadata: VideoMetadata) -> dict[str, Any]:
    """Convert VideoMetadata to the YouTube video resource body."""
    return {
        "snippet": {
            "title": metadata.title,
            "description": metadata.description,
            "tags": metadata.tags,
            "categoryId": metadata.category_id,
            "defaultLanguage": metadata.language,
            "defaultAudioLanguage": metadata.language,
        },
        "status": {
            "privacyStatus": metadata.visibility,
            "selfDeclaredMadeForKids": False,
        },
    }


class PublishService:
    """Upload a video file with metadata and return its remote identity."""

    def __init__(self, client: YouTubeClient) -> None:
        self.client = client
        self.log = get_logger(__name__)

    async def publish(
        self, video_path: Path, metadata: VideoMetadata, access_token: str | None
    ) -> PublishResult:
        """Upload a video.

        Raises:
            ConfigurationError: If the token is missing
            FileNotFoundError: If the video file is missing
            AuthenticationError / QuotaExceededError: Retryable by caller
            VendorError: Any other upload failure
        """
        if not access_token:
            raise ConfigurationError("YouTube access token required")
        if not video_path.is_file():
            raise FileNotFoundError(f"Video file not found: {video_path}")

        file_size = video_path.stat().st_size
        self.log.info(
            "publish_start",
            title=metadata.title,
            visibility=metadata.visibility,
            bytes=file_size,
        )
        session_url = await self.client.start_upload(
            metadata_to_resource(metadata), file_size, access_token
        )
        resource = await self.client.upload_file(session_url, video_path, access_token)

        video_id = str(resource["id"])
        status = (resource.get("status") or {}).get("uploadStatus", "uploaded")
        result = PublishResult(
            video_id=video_id,
            url=WATCH_URL_TEMPLATE.format(video_id=video_id),
            status=status,
            uploaded_at=datetime.now(timezone.utc),
        )
        self.log.info("publish_complete", video_id=video_id, url=result.url)
        return result
