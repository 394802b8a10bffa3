"""Shared exceptions for the pipeline.

This module contains the error taxonomy used by every adapter and by the
orchestrator. Each error carries a ``kind`` string that survives the
process boundary (it is copied onto the failed step and the run result),
so the presentation layer can tell a timeout from a vendor rejection
without parsing messages.

Error Kinds:
    configuration: Missing input field or credential. Never retried.
    vendor: External API or tool reported a domain-level failure.
    timeout: A bounded wait exceeded its budget.
    transient_io: Filesystem or network hiccup. Candidate for caller retry.
    cancelled: The run was cooperatively cancelled.
    unknown: Anything else (bugs, unexpected exceptions).
"""

import asyncio

import httpx

KIND_CONFIGURATION = "configuration"
KIND_VENDOR = "vendor"
KIND_TIMEOUT = "timeout"
KIND_TRANSIENT_IO = "transient_io"
KIND_CANCELLED = "cancelled"
KIND_UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: str = KIND_UNKNOWN


class ConfigurationError(PipelineError):
    """Raised when a required input field or credential is missing.

    This error indicates a configuration problem that prevents the pipeline
    from proceeding (e.g., empty story text, or VBEE_API_KEY not set when
    narration has to be synthesized).
    """

    kind = KIND_CONFIGURATION


class VendorError(PipelineError):
    """Raised when an external API or tool reports a domain-level failure.

    Attributes:
        vendor: Short vendor name ("vbee", "gemini", "youtube", "ffmpeg", ...)
        status_code: HTTP status or vendor code where available
        retryable: True when the caller may retry the same request later
    """

    kind = KIND_VENDOR

    def __init__(
        self,
        message: str,
        vendor: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.vendor = vendor
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class AuthenticationError(VendorError):
    """Publishing credential was rejected (expired or revoked token)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, vendor="youtube", status_code=status_code, retryable=True)


class QuotaExceededError(VendorError):
    """Publishing quota or rate limit was hit."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, vendor="youtube", status_code=status_code, retryable=True)


class MediaProcessError(VendorError):
    """Raised when ffmpeg or ffprobe exits with a non-zero code.

    Attributes:
        tool (str): Executable name (e.g., "ffmpeg")
        exit_code (int): Process exit code
        stderr (str): Captured stderr output
    """

    def __init__(self, tool: str, exit_code: int, stderr: str) -> None:
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(
            f"{tool} failed with exit code {exit_code}: {tail}",
            vendor=tool,
            status_code=exit_code,
        )


class OperationTimeoutError(PipelineError, TimeoutError):
    """Raised when a poll loop, network call or subprocess exceeds its budget."""

    kind = KIND_TIMEOUT


class TransientIOError(PipelineError):
    """Raised for filesystem or network hiccups during an otherwise healthy step."""

    kind = KIND_TRANSIENT_IO


class PipelineCancelledError(PipelineError):
    """Raised when the run is cooperatively cancelled."""

    kind = KIND_CANCELLED


class InvalidStepTransitionError(PipelineError):
    """Raised when a step status would move backwards.

    Attributes:
        step_name: Name of the step being updated
        from_status: Current status value
        to_status: Status that was attempted

    Example:
        >>> tracker.complete("Compose Video", "done")
        >>> tracker.start("Compose Video", "again")
        InvalidStepTransitionError: Invalid transition for Compose Video (from=completed, to=in_progress)
    """

    def __init__(self, step_name: str, from_status: str, to_status: str) -> None:
        self.step_name = step_name
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition for {step_name}")

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status}, to={self.to_status})"


def classify_error(exception: BaseException) -> str:
    """Map any exception to an error kind.

    Pipeline errors carry their own kind. Foreign exceptions are mapped by
    type: httpx and asyncio timeouts are timeouts, transport and OS errors
    are transient I/O, HTTP status errors are vendor errors, and task
    cancellation is a cancellation.

    Args:
        exception: Exception raised by an adapter or the orchestrator

    Returns:
        One of the KIND_* constants.

    Example:
        >>> classify_error(httpx.ReadTimeout("slow"))
        'timeout'
        >>> classify_error(ConfigurationError("Story text is required"))
        'configuration'
    """
    if isinstance(exception, PipelineError):
        return exception.kind
    if isinstance(exception, asyncio.CancelledError):
        return KIND_CANCELLED
    if isinstance(exception, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return KIND_TIMEOUT
    if isinstance(exception, httpx.HTTPStatusError):
        return KIND_VENDOR
    if isinstance(exception, (httpx.TransportError, OSError)):
        return KIND_TRANSIENT_IO
    return KIND_UNKNOWN


def format_error_message(step_name: str, exception: BaseException) -> str:
    """Build the single multi-line, user-facing error message for a failed step.

    The first line names the step, the following lines carry the error text
    (which may itself span several lines). Presentation layers split on
    newlines and indent continuation lines.
    """
    detail = str(exception).strip() or exception.__class__.__name__
    return f"{step_name} failed\n{detail}"
