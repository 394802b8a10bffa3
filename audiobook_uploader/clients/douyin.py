"""Douyin short-video client.

Resolves a Douyin/TikTok share URL to a direct CDN link via a public
metadata resolver, then streams the clip to disk with browser-like headers
(the CDN rejects requests without a Douyin referer).

Architecture Pattern:
    Simple HTTP client wrapper with module-level URL helpers. No retry:
    acquisition is a non-fatal step with a local fallback clip.

Usage:
    from audiobook_uploader.clients.douyin import DouyinClient, is_valid_douyin_url

    if is_valid_douyin_url(url):
        client = DouyinClient(http_client=http)
        data = await client.fetch_video_data(url)
        cdn_url = extract_download_url(data)
        await client.download(cdn_url, Path("out/source_video.mp4"))
"""

import re
from pathlib import Path
from typing import Any

import httpx

from audiobook_uploader.config import DEFAULT_DOUYIN_API_URL
from audiobook_uploader.constants import DOWNLOAD_TIMEOUT_SECONDS
from audiobook_uploader.exceptions import VendorError
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

API_SUCCESS_CODE = 200

_VALID_URL_PATTERN = re.compile(r"douyin\.com|dy\.zzz\.com\.cn|vt\.tiktok\.com|v\.douyin\.com")
_VIDEO_ID_PATTERNS = (
    re.compile(r"douyin\.com/video/(\d+)"),
    re.compile(r"dy\.zzz\.com\.cn/(\w+)"),
    re.compile(r"vt\.tiktok\.com/(\w+)"),
    re.compile(r"v\.douyin\.com/(\w+)"),
)
_URL_IN_TEXT_PATTERN = re.compile(r"https?://\S+")

# Preferred first: no watermark, high quality
DOWNLOAD_URL_FIELDS = ("nwm_video_url_HQ", "nwm_video_url", "wm_video_url_HQ", "wm_video_url")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Referer": "https://www.douyin.com/",
    "Accept": "video/mp4,video/*;q=0.9,*/*;q=0.8",
    "Range": "bytes=0-",
}


def is_valid_douyin_url(url: str | None) -> bool:
    return bool(url) and bool(_VALID_URL_PATTERN.search(url))


def extract_video_id(url: str) -> str | None:
    """Extract the video id from a full or short share URL.

    Example:
        >>> extract_video_id("https://www.douyin.com/video/7301234567890")
        '7301234567890'
    """
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_douyin_url_from_text(text: str | None) -> str | None:
    """Find the first Douyin URL inside pasted share text."""
    if not text or not text.strip():
        return None
    for url in _URL_IN_TEXT_PATTERN.findall(text):
        if is_valid_douyin_url(url):
            return url
    return None


def extract_download_url(payload: dict[str, Any]) -> str | None:
    """Pick the best download URL from resolver data, trying fields in order."""
    video_data = ((payload.get("data") or {}).get("video_data")) or {}
    for field in DOWNLOAD_URL_FIELDS:
        url = video_data.get(field)
        if url:
            log.debug("douyin_download_field_matched", field=field)
            return url
    return None


class DouyinClient:
    """Client for resolving and downloading Douyin clips."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_url: str = DEFAULT_DOUYIN_API_URL,
    ) -> None:
        self.http_client = http_client
        self.api_url = api_url

    async def fetch_video_data(self, video_url: str) -> dict[str, Any]:
        """Resolve a share URL to the resolver's metadata payload.

        Raises:
            VendorError: If the resolver reports a non-200 code or the body
                is not JSON
            httpx.HTTPStatusError: On HTTP errors
        """
        response = await self.http_client.get(
            self.api_url, params={"url": video_url, "minimal": "true"}
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise VendorError("Douyin resolver returned invalid JSON", vendor="douyin") from e

        if not isinstance(payload, dict):
            raise VendorError("Douyin resolver returned a non-object response", vendor="douyin")
        code = payload.get("code")
        if code != API_SUCCESS_CODE:
            message = payload.get("msg") or payload.get("message") or "Unknown error"
            raise VendorError(
                f"Douyin API error {code or 'unknown'}: {message}",
                vendor="douyin",
                status_code=code if isinstance(code, int) else None,
            )
        return payload

    async def download(self, download_url: str, output_path: Path) -> int:
        """Stream a clip to disk.

        Returns:
            Bytes written.

        Raises:
            VendorError: If the CDN answers with anything but 200/206
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        async with self.http_client.stream(
            "GET",
            download_url,
            headers=BROWSER_HEADERS,
            follow_redirects=True,
            timeout=DOWNLOAD_TIMEOUT_SECONDS,
        ) as response:
            if response.status_code not in (200, 206):
                raise VendorError(
                    f"Douyin CDN download failed: HTTP {response.status_code}",
                    vendor="douyin",
                    status_code=response.status_code,
                )
            try:
                with open(output_path, "wb") as f:  # noqa: ASYNC230
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                        written += len(chunk)
            except BaseException:
                # Never leave a partial clip behind
                output_path.unlink(missing_ok=True)
                raise
        return written
