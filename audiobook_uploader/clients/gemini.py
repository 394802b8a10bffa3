"""Google Generative Language (Gemini/Imagen) API client.

Thin async wrapper around the ``models/{model}:generateContent`` endpoint.
The API key travels in the ``x-goog-api-key`` header.

Architecture Pattern:
    Simple HTTP client wrapper. Transient errors are retried with tenacity;
    response interpretation (which field holds the image) belongs to the
    image generation service.

Usage:
    from audiobook_uploader.clients.gemini import GeminiClient

    client = GeminiClient(api_key, http_client=http)
    payload = await client.generate_content(parts=[{"text": "A red circle"}])
"""

import base64
import mimetypes
from pathlib import Path
from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from audiobook_uploader.config import DEFAULT_GEMINI_API_URL, DEFAULT_GEMINI_IMAGE_MODEL
from audiobook_uploader.exceptions import ConfigurationError, VendorError
from audiobook_uploader.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_GENERATION_CONFIG: dict[str, float | int] = {
    "temperature": 0.85,
    "topP": 0.9,
    "topK": 40,
}


def _is_retriable_error(exception: BaseException) -> bool:
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in (429, 500, 502, 503, 504)
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


def inline_image_part(path: Path, mime_type: str | None = None) -> dict[str, Any]:
    """Build an ``inlineData`` request part from an image file.

    The MIME type is guessed from the file suffix when not given, defaulting
    to JPEG for unknown suffixes.
    """
    if mime_type is None:
        guessed, _ = mimetypes.guess_type(Path(path).name)
        mime_type = guessed if guessed and guessed.startswith("image/") else "image/jpeg"
    data = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return {"inlineData": {"mimeType": mime_type, "data": data}}


class GeminiClient:
    """Client for the Generative Language generateContent endpoint.

    Attributes:
        api_url: Models base URL
        model: Image-capable model name
        http_client: Shared httpx.AsyncClient
    """

    def __init__(
        self,
        api_key: str | None,
        http_client: httpx.AsyncClient,
        model: str = DEFAULT_GEMINI_IMAGE_MODEL,
        api_url: str = DEFAULT_GEMINI_API_URL,
    ) -> None:
        self._api_key = api_key
        self.http_client = http_client
        self.model = model
        self.api_url = api_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @retry(
        retry=retry_if_exception(_is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def generate_content(
        self,
        parts: list[dict[str, Any]],
        generation_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call generateContent and return the decoded JSON body.

        Raises:
            ConfigurationError: If GEMINI_API_KEY is not set
            VendorError: If the response body is not a JSON object
            httpx.HTTPStatusError: On non-retriable HTTP errors
        """
        if not self._api_key:
            raise ConfigurationError("GEMINI_API_KEY is not set")

        body = {
            "contents": [{"parts": parts}],
            "generationConfig": generation_config or DEFAULT_GENERATION_CONFIG,
        }
        response = await self.http_client.post(
            f"{self.api_url}/{self.model}:generateContent",
            headers={"x-goog-api-key": self._api_key},
            json=body,
        )
        if response.is_error:
            log.error(
                "gemini_api_error",
                status_code=response.status_code,
                body=response.text[:500],
            )
        response.raise_for_status()

        payload = response.json()
        if not isinstance(payload, dict):
            raise VendorError("Gemini returned a non-object response", vendor="gemini")
        log.debug("gemini_response_received", keys=sorted(payload.keys()))
        return payload
