"""YouTube Data API resumable upload client.

This module implements the two-request resumable upload protocol:

1. POST the video metadata to the upload endpoint with
   ``uploadType=resumable``; the session URL comes back in ``Location``
2. PUT the file body to the session URL; the response body is the video
   resource, whose ``id`` identifies the published video

Architecture Pattern:
    Thin HTTP client wrapper, NO retry logic. Publishing is non-fatal and
    its retry policy belongs to the caller. Authentication and quota
    failures are raised as distinct error kinds so the caller can decide.

Dependencies:
    - httpx: Async HTTP client library (injected)

Usage:
    from audiobook_uploader.clients.youtube import YouTubeClient

    client = YouTubeClient(http_client=http)
    session_url = await client.start_upload(metadata_body, file_size, token)
    video = await client.upload_file(session_url, Path("final.mp4"), token)
    print(video["id"])

Security:
    - Access token sent as Bearer token only, never logged
"""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx

from audiobook_uploader.config import DEFAULT_YOUTUBE_UPLOAD_URL
from audiobook_uploader.constants import UPLOAD_TIMEOUT_SECONDS
from audiobook_uploader.exceptions import (
    AuthenticationError,
    QuotaExceededError,
    VendorError,
)
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024
VIDEO_CONTENT_TYPE = "video/mp4"
QUOTA_REASONS = frozenset({"quotaExceeded", "rateLimitExceeded", "userRateLimitExceeded"})


def _error_reason(response: httpx.Response) -> tuple[str | None, str]:
    """Pull (reason, message) out of a Google API error body."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None, response.reason_phrase
    if not isinstance(error, dict):
        return None, response.reason_phrase
    reasons = [e.get("reason") for e in error.get("errors", []) if isinstance(e, dict)]
    return (reasons[0] if reasons else None), error.get("message") or response.reason_phrase


def raise_for_publish_status(response: httpx.Response, operation: str) -> None:
    """Translate an HTTP error response into the publish error taxonomy.

    Raises:
        AuthenticationError: 401, or 403 without a quota reason
        QuotaExceededError: 429, or 403 with a quota/rate-limit reason
        VendorError: Any other 4xx/5xx
    """
    if not response.is_error:
        return

    status = response.status_code
    reason, message = _error_reason(response)
    log.error(
        "youtube_api_error",
        operation=operation,
        status_code=status,
        reason=reason,
        body=response.text[:500],
    )
    if status == 429 or (status == 403 and reason in QUOTA_REASONS):
        raise QuotaExceededError(f"YouTube quota exceeded during {operation}: {message}", status)
    if status in (401, 403):
        raise AuthenticationError(
            f"YouTube rejected the access token during {operation}: {message}", status
        )
    raise VendorError(
        f"YouTube {operation} failed (HTTP {status}): {message}",
        vendor="youtube",
        status_code=status,
        retryable=status >= 500,
    )


async def _iter_file(path: Path, chunk_size: int = UPLOAD_CHUNK_SIZE) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:  # noqa: ASYNC230 (reads are offloaded below)
        while True:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk


class YouTubeClient:
    """Client for resumable video uploads.

    Attributes:
        upload_url: Videos upload endpoint
        http_client: Shared httpx.AsyncClient
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        upload_url: str = DEFAULT_YOUTUBE_UPLOAD_URL,
        timeout: float = UPLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self.http_client = http_client
        self.upload_url = upload_url
        self.timeout = timeout

    async def start_upload(
        self, metadata: dict[str, Any], file_size: int, access_token: str
    ) -> str:
        """Register metadata and open a resumable upload session.

        Returns:
            Upload session URL.

        Raises:
            VendorError: If the response carries no Location header
        """
        response = await self.http_client.post(
            self.upload_url,
            params={"uploadType": "resumable", "part": "snippet,status"},
            json=metadata,
            headers={
                "Authorization": f"Bearer {access_token}",
                "X-Upload-Content-Length": str(file_size),
                "X-Upload-Content-Type": VIDEO_CONTENT_TYPE,
            },
            timeout=self.timeout,
        )
        raise_for_publish_status(response, "upload session start")

        session_url = response.headers.get("location")
        if not session_url:
            raise VendorError("YouTube did not return an upload session URL", vendor="youtube")
        log.debug("youtube_upload_session_opened")
        return session_url

    async def upload_file(
        self, session_url: str, video_path: Path, access_token: str
    ) -> dict[str, Any]:
        """Stream the video file to an upload session.

        Returns:
            The created video resource (JSON object with ``id``).
        """
        file_size = video_path.stat().st_size
        response = await self.http_client.put(
            session_url,
            content=_iter_file(video_path),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": VIDEO_CONTENT_TYPE,
                "Content-Length": str(file_size),
            },
            timeout=self.timeout,
        )
        raise_for_publish_status(response, "file upload")

        try:
            resource = response.json()
        except ValueError as e:
            raise VendorError("YouTube upload returned a non-JSON body", vendor="youtube") from e
        if not isinstance(resource, dict) or not resource.get("id"):
            raise VendorError("YouTube upload response has no video id", vendor="youtube")
        return resource
