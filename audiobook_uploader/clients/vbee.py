"""Vbee text-to-speech API client.

This module provides a thin async client for Vbee's asynchronous TTS API.
A job is submitted with the text, then its status is polled until an audio
link is available, and the audio is downloaded from that link.

Architecture Pattern:
    Thin HTTP client wrapper, one method per endpoint. Transient HTTP
    failures (429, 5xx, timeouts, connection errors) are retried with
    tenacity. Job polling lives in the service layer.

Dependencies:
    - httpx: Async HTTP client library (injected for reuse and testing)
    - tenacity: Retry with exponential backoff

Usage:
    from audiobook_uploader.clients.vbee import VbeeClient

    async with httpx.AsyncClient(timeout=120.0) as http:
        client = VbeeClient(api_key, app_id, http_client=http)
        request_id = await client.submit("Xin chào.", voice_code)
        status = await client.get_status(request_id)

Security:
    - API key sent as Bearer token, never logged in full
"""

from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from audiobook_uploader.config import DEFAULT_VBEE_API_URL
from audiobook_uploader.exceptions import ConfigurationError, VendorError
from audiobook_uploader.utils.logging import get_logger, redact

log = get_logger(__name__)

# Vbee envelope status for a successful call
VBEE_STATUS_OK = 1
JOB_SUCCESS = "SUCCESS"
JOB_FAILURE = "FAILURE"

CALLBACK_URL = "https://example.com/callback"


def _is_retriable_error(exception: BaseException) -> bool:
    """Determine if an HTTP error should trigger a retry.

    Retriable: 429, 5xx, timeouts and connection failures.
    Non-retriable: 4xx auth/validation errors.
    """
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in (429, 500, 502, 503, 504)
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


_http_retry = retry(
    retry=retry_if_exception(_is_retriable_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)


class VbeeClient:
    """Client for the Vbee asynchronous TTS API.

    Attributes:
        api_url: TTS endpoint (jobs are POSTed here, polled at /{request_id})
        app_id: Vbee application id sent with every job
        http_client: Shared httpx.AsyncClient
    """

    def __init__(
        self,
        api_key: str | None,
        app_id: str | None,
        http_client: httpx.AsyncClient,
        api_url: str = DEFAULT_VBEE_API_URL,
    ) -> None:
        """Initialize Vbee client.

        Missing credentials are allowed here so a resumed run never needs
        them; every request checks ``is_configured`` first.
        """
        self.api_url = api_url.rstrip("/")
        self.app_id = app_id
        self.http_client = http_client
        self._api_key = api_key
        log.debug("vbee_client_initialized", api_key=redact(api_key), app_id=app_id)

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self.app_id)

    def ensure_configured(self) -> None:
        """Raise ConfigurationError if the API key or app id is missing."""
        if not self.is_configured:
            raise ConfigurationError("VBEE_API_KEY and VBEE_APP_ID are required")

    def _get_headers(self) -> dict[str, str]:
        self.ensure_configured()
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _unwrap(payload: Any, operation: str) -> dict[str, Any]:
        """Check the Vbee envelope and return its ``result`` object.

        Raises:
            VendorError: If the envelope status is not 1 or the body is malformed.
        """
        if not isinstance(payload, dict):
            raise VendorError(f"Vbee {operation}: malformed response", vendor="vbee")
        status = payload.get("status")
        if status != VBEE_STATUS_OK:
            message = payload.get("error_message") or f"Unknown error - Vbee {operation}"
            raise VendorError(
                f"Vbee API error: {message}",
                vendor="vbee",
                status_code=status if isinstance(status, int) else None,
            )
        result = payload.get("result")
        if not isinstance(result, dict):
            raise VendorError(f"Vbee {operation}: response has no result", vendor="vbee")
        return result

    @_http_retry
    async def submit(
        self,
        text: str,
        voice_code: str,
        audio_type: str = "mp3",
        bitrate: int = 128,
        speed_rate: float = 1.0,
    ) -> str:
        """Submit a TTS job.

        Args:
            text: Chunk text (at most the vendor's size limit)
            voice_code: Vbee voice code
            audio_type: "mp3" or "wav"
            bitrate: kbps
            speed_rate: 1.0 = normal speed

        Returns:
            Vbee request id.

        Raises:
            VendorError: If Vbee rejects the job or returns no request id
            httpx.HTTPStatusError: On non-retriable HTTP errors
        """
        body = {
            "app_id": self.app_id,
            "response_type": "indirect",
            "callback_url": CALLBACK_URL,
            "input_text": text,
            "voice_code": voice_code,
            "audio_type": audio_type,
            "bitrate": bitrate,
            "speed_rate": speed_rate,
        }
        response = await self.http_client.post(self.api_url, json=body, headers=self._get_headers())
        response.raise_for_status()

        result = self._unwrap(response.json(), "submit")
        request_id = result.get("request_id")
        if not request_id:
            raise VendorError("No request_id in Vbee response", vendor="vbee")

        log.info("vbee_job_submitted", request_id=request_id, characters=len(text))
        return str(request_id)

    @_http_retry
    async def get_status(self, request_id: str) -> dict[str, Any]:
        """Fetch the job status object.

        Returns:
            The ``result`` dict, with ``status`` ("SUCCESS", "FAILURE" or an
            in-progress value), ``audio_link``, ``progress`` and
            ``error_message`` where present.
        """
        response = await self.http_client.get(
            f"{self.api_url}/{request_id}", headers=self._get_headers()
        )
        response.raise_for_status()
        return self._unwrap(response.json(), "poll")

    @_http_retry
    async def download(self, audio_url: str) -> bytes:
        """Download finished audio bytes from the job's audio link."""
        response = await self.http_client.get(audio_url, follow_redirects=True)
        response.raise_for_status()
        log.debug("vbee_audio_downloaded", bytes=len(response.content))
        return response.content
