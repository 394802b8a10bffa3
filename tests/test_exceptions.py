"""Tests for the error taxonomy and error classification."""

import asyncio

import httpx
import pytest

from audiobook_uploader.exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidStepTransitionError,
    MediaProcessError,
    OperationTimeoutError,
    PipelineCancelledError,
    QuotaExceededError,
    TransientIOError,
    VendorError,
    classify_error,
    format_error_message,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(status, request=request)
    )


class TestClassifyError:
    @pytest.mark.parametrize(
        "exception,kind",
        [
            (ConfigurationError("Story text is required"), "configuration"),
            (VendorError("Vbee API error: quota"), "vendor"),
            (MediaProcessError("ffmpeg", 1, "boom"), "vendor"),
            (AuthenticationError("token expired", 401), "vendor"),
            (OperationTimeoutError("TTS conversion timeout"), "timeout"),
            (TransientIOError("disk full"), "transient_io"),
            (PipelineCancelledError("cancelled"), "cancelled"),
            (asyncio.CancelledError(), "cancelled"),
            (httpx.ReadTimeout("slow"), "timeout"),
            (asyncio.TimeoutError(), "timeout"),
            (httpx.ConnectError("refused"), "transient_io"),
            (PermissionError("denied"), "transient_io"),
            (_status_error(500), "vendor"),
            (KeyError("steps"), "unknown"),
        ],
    )
    def test_kinds(self, exception, kind):
        assert classify_error(exception) == kind


class TestErrorMessages:
    def test_format_error_message_is_multi_line(self):
        message = format_error_message("Compose Video", MediaProcessError("ffmpeg", 1, "a\nb"))

        assert message == "Compose Video failed\nffmpeg failed with exit code 1: b"

    def test_format_error_message_without_text(self):
        assert format_error_message("Publish", KeyError()) == "Publish failed\nKeyError"

    def test_media_process_error_without_stderr(self):
        error = MediaProcessError("ffprobe", 127, "")

        assert str(error) == "ffprobe failed with exit code 127: no output"
        assert error.status_code == 127

    def test_publish_errors_are_retryable(self):
        assert AuthenticationError("expired", 401).retryable is True
        assert QuotaExceededError("quota", 429).retryable is True
        assert VendorError("bad request", status_code=400).retryable is False

    def test_invalid_step_transition_message(self):
        error = InvalidStepTransitionError("Compose Video", "completed", "in_progress")

        assert str(error) == (
            "Invalid transition for Compose Video (from=completed, to=in_progress)"
        )
