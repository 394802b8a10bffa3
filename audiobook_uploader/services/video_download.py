"""Video Download Service for fetching the foreground cooking clip.

Resolves a short-video share URL (or share text containing one), downloads
the clip into the run output directory as ``source_video.mp4`` and probes
its duration. Callers treat every failure here as non-fatal and keep the
configured local clip.
"""

import time
from dataclasses import dataclass
from pathlib import Path

from audiobook_uploader.clients.douyin import (
    DouyinClient,
    extract_douyin_url_from_text,
    extract_download_url,
    extract_video_id,
    is_valid_douyin_url,
)
from audiobook_uploader.constants import SOURCE_VIDEO_FILENAME
from audiobook_uploader.exceptions import PipelineError, VendorError
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.utils.logging import get_logger


@dataclass
class DownloadedVideo:
    video_id: str
    title: str
    source_url: str
    local_path: Path
    file_size: int
    duration: float | None = None


class VideoDownloadService:
    """Download foreground clips from share URLs."""

    def __init__(self, client: DouyinClient, media: MediaTransformService | None = None) -> None:
        self.client = client
        self.media = media
        self.log = get_logger(__name__)

    @staticmethod
    def resolve_source_url(text: str | None) -> str | None:
        """Return a usable Douyin URL from a bare URL or pasted share text."""
        if not text:
            return None
        candidate = text.strip()
        if candidate.startswith(("http://", "https://")) and " " not in candidate:
            return candidate if is_valid_douyin_url(candidate) else None
        return extract_douyin_url_from_text(candidate)

    async def download(self, source: str, output_dir: Path) -> DownloadedVideo:
        """Download the clip referenced by a share URL or share text.

        Raises:
            VendorError: Invalid URL, resolver failure, no download URL, or
                CDN failure
        """
        video_url = self.resolve_source_url(source)
        if video_url is None:
            raise VendorError(f"Invalid Douyin URL: {source}", vendor="douyin")

        start = time.monotonic()
        self.log.info("douyin_download_start", url=video_url)

        payload = await self.client.fetch_video_data(video_url)
        download_url = extract_download_url(payload)
        if not download_url:
            available = sorted(((payload.get("data") or {}).get("video_data") or {}).keys())
            self.log.error("douyin_no_download_url", available_fields=available)
            raise VendorError("Failed to extract video download URL", vendor="douyin")

        output_path = output_dir / SOURCE_VIDEO_FILENAME
        file_size = await self.client.download(download_url, output_path)
        if file_size == 0:
            output_path.unlink(missing_ok=True)
            raise VendorError("Downloaded video is empty", vendor="douyin")

        duration = None
        if self.media is not None:
            try:
                duration = await self.media.probe_duration(output_path)
            except (PipelineError, FileNotFoundError) as e:
                self.log.warning("douyin_probe_failed", error=str(e))

        data = payload.get("data") or {}
        self.log.info(
            "douyin_download_complete",
            path=str(output_path),
            bytes=file_size,
            duration=duration,
            elapsed_seconds=round(time.monotonic() - start, 1),
        )
        return DownloadedVideo(
            video_id=str(data.get("video_id") or extract_video_id(video_url) or "unknown"),
            title=data.get("desc") or output_path.stem,
            source_url=video_url,
            local_path=output_path,
            file_size=file_size,
            duration=duration,
        )
