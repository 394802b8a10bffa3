"""Speech Synthesis Service for Vbee-powered audiobook narration.

This module converts story text into one narration track.

Key Responsibilities:
- Split text into sentence-aligned chunks within the vendor's size limit
- Submit one TTS job per chunk and poll it with a fixed delay and a
  bounded attempt budget
- Download chunk audio and concatenate it with ffmpeg's concat demuxer
  (lossless; byte-level MP3 concatenation glitches at the seams)
- Report the total duration as the sum of chunk durations
- Clean up chunk files whether or not synthesis succeeds

Architecture Pattern:
    Service (Smart): Chunking, job polling, concatenation, durations
    Client (Dumb): VbeeClient HTTP calls

Usage:
    from audiobook_uploader.services.speech_synthesis import SpeechSynthesisService

    service = SpeechSynthesisService(vbee_client, media)
    audio = await service.synthesize(story_text, Path("out/voiceover.mp3"))
    print(audio.duration, audio.chunk_durations)
"""

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from audiobook_uploader.clients.vbee import JOB_FAILURE, JOB_SUCCESS, VbeeClient
from audiobook_uploader.config import (
    get_default_voice_code,
    get_tts_max_poll_attempts,
    get_tts_poll_interval,
)
from audiobook_uploader.exceptions import (
    OperationTimeoutError,
    PipelineError,
    VendorError,
)
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.utils.logging import get_logger

MAX_CHUNK_SIZE = 2000
# Bitrate requested from Vbee; used to estimate duration when ffprobe fails
TTS_BITRATE_KBPS = 128

_SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+")


@dataclass
class TextChunk:
    index: int
    text: str


@dataclass
class AudioFile:
    """Synthesized narration track.

    Attributes:
        path: Final narration file
        duration: Seconds, sum of chunk durations
        chunk_durations: Per-chunk seconds, in input order
    """

    path: Path
    duration: float
    file_size: int
    sample_rate: int = 48000
    channels: int = 1
    format: str = "mp3"
    chunk_durations: list[float] = field(default_factory=list)


def split_text_into_chunks(text: str, max_chunk_size: int = MAX_CHUNK_SIZE) -> list[TextChunk]:
    """Split text into chunks at sentence boundaries.

    Sentences (runs ending in ".", "!" or "?") are packed greedily into
    chunks of at most max_chunk_size characters. A single sentence longer
    than the limit becomes its own chunk. Text after the last terminator is
    kept as a final sentence. Order is preserved.

    Args:
        text: Story text
        max_chunk_size: Character budget per chunk

    Returns:
        Non-empty, stripped chunks indexed from 0.

    Example:
        >>> [c.text for c in split_text_into_chunks("One. Two! Three?", 10)]
        ['One. Two!', 'Three?']
    """
    sentences = _SENTENCE_PATTERN.findall(text)
    consumed = sum(len(s) for s in sentences)
    remainder = text[consumed:]
    if remainder.strip():
        sentences.append(remainder)
    if not sentences:
        sentences = [text]

    chunks: list[TextChunk] = []
    current = ""
    for sentence in sentences:
        if len(current + sentence) <= max_chunk_size:
            current += sentence
            continue
        if current.strip():
            chunks.append(TextChunk(index=len(chunks), text=current.strip()))
        current = sentence
    if current.strip():
        chunks.append(TextChunk(index=len(chunks), text=current.strip()))
    return chunks


def estimate_mp3_duration(byte_count: int, bitrate_kbps: int = TTS_BITRATE_KBPS) -> float:
    """Estimate a constant-bitrate MP3 duration from its size in bytes."""
    return round(byte_count * 8 / (bitrate_kbps * 1000), 3)


class SpeechSynthesisService:
    """Service for turning story text into a single narration file."""

    def __init__(
        self,
        client: VbeeClient,
        media: MediaTransformService,
        poll_interval: float | None = None,
        max_poll_attempts: int | None = None,
        max_chunk_size: int = MAX_CHUNK_SIZE,
    ) -> None:
        """Initialize speech synthesis service.

        Args:
            client: Vbee API client
            media: Media service used for concatenation and probing
            poll_interval: Seconds between status polls (default from config)
            max_poll_attempts: Polls per chunk before giving up (default from config)
            max_chunk_size: Characters per TTS job
        """
        self.client = client
        self.media = media
        self.poll_interval = poll_interval if poll_interval is not None else get_tts_poll_interval()
        self.max_poll_attempts = max_poll_attempts or get_tts_max_poll_attempts()
        self.max_chunk_size = max_chunk_size
        self.log = get_logger(__name__)

    async def wait_for_audio_link(self, request_id: str) -> str:
        """Poll a TTS job until it finishes.

        Poll errors (network hiccups, malformed envelopes) are tolerated
        until the attempt budget is spent. A job reported as FAILURE ends
        polling immediately.

        Returns:
            Audio download URL.

        Raises:
            VendorError: If the job reports FAILURE or succeeds without a link
            OperationTimeoutError: If the job is not finished after
                max_poll_attempts polls
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                result = await self.client.get_status(request_id)
            except (VendorError, httpx.HTTPError) as e:
                last_error = e
                self.log.warning(
                    "tts_poll_error",
                    request_id=request_id,
                    attempt=attempt,
                    error=str(e),
                )
            else:
                status = result.get("status")
                if status == JOB_SUCCESS:
                    audio_link = result.get("audio_link")
                    if not audio_link:
                        raise VendorError(
                            f"TTS job {request_id} succeeded without an audio link",
                            vendor="vbee",
                        )
                    self.log.info("tts_job_complete", request_id=request_id, attempts=attempt)
                    return audio_link
                if status == JOB_FAILURE:
                    reason = result.get("error_message") or "Unknown reason"
                    raise VendorError(
                        f"TTS conversion failed for request {request_id}: {reason}",
                        vendor="vbee",
                    )
                self.log.debug(
                    "tts_job_in_progress",
                    request_id=request_id,
                    progress=result.get("progress", 0),
                )
            await asyncio.sleep(self.poll_interval)

        detail = f" (last error: {last_error})" if last_error else ""
        raise OperationTimeoutError(
            f"TTS conversion timeout for request {request_id} after "
            f"{self.max_poll_attempts} status checks{detail}"
        )

    async def _chunk_duration(self, chunk_path: Path, byte_count: int) -> float:
        try:
            return await self.media.probe_duration(chunk_path)
        except PipelineError as e:
            estimate = estimate_mp3_duration(byte_count)
            self.log.warning(
                "tts_chunk_probe_failed", chunk=chunk_path.name, error=str(e), estimate=estimate
            )
            return estimate

    async def synthesize(
        self, text: str, output_path: Path, voice_code: str | None = None
    ) -> AudioFile:
        """Convert text to a narration file.

        Args:
            text: Story text
            output_path: Final narration path (chunk files go next to it)
            voice_code: Vbee voice (default from VBEE_VOICE_CODE)

        Returns:
            AudioFile with total and per-chunk durations.

        Raises:
            ConfigurationError: If Vbee credentials are missing
            VendorError: If any chunk job fails or concatenation fails
            OperationTimeoutError: If any chunk job never finishes
        """
        self.client.ensure_configured()
        voice = voice_code or get_default_voice_code()
        chunks = split_text_into_chunks(text, self.max_chunk_size)
        if not chunks:
            raise VendorError("No text to synthesize", vendor="vbee")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.log.info(
            "tts_start",
            characters=len(text),
            chunks=len(chunks),
            voice=voice,
        )

        chunk_paths: list[Path] = []
        chunk_durations: list[float] = []
        try:
            for chunk in chunks:
                request_id = await self.client.submit(chunk.text, voice)
                audio_link = await self.wait_for_audio_link(request_id)
                audio = await self.client.download(audio_link)

                chunk_path = output_path.parent / f"chunk_{chunk.index}.mp3"
                chunk_path.write_bytes(audio)
                chunk_paths.append(chunk_path)

                duration = await self._chunk_duration(chunk_path, len(audio))
                chunk_durations.append(duration)
                self.log.info(
                    "tts_chunk_converted",
                    chunk=chunk.index + 1,
                    total=len(chunks),
                    bytes=len(audio),
                    duration=duration,
                )

            if len(chunk_paths) == 1:
                chunk_paths[0].replace(output_path)
            else:
                await self.media.concat_audio(chunk_paths, output_path)
        finally:
            for chunk_path in chunk_paths:
                chunk_path.unlink(missing_ok=True)

        total_duration = round(sum(chunk_durations), 3)
        file_size = output_path.stat().st_size
        self.log.info(
            "tts_complete",
            output=str(output_path),
            duration=total_duration,
            bytes=file_size,
        )
        return AudioFile(
            path=output_path,
            duration=total_duration,
            file_size=file_size,
            chunk_durations=chunk_durations,
        )
