"""Audio Mixer Service.

Blends the narration (100%) with a background music bed (50%) into one AAC
track whose length follows the narration, then measures the result so the
composition step can use the mixed track's real duration.
"""

from dataclasses import dataclass
from pathlib import Path

from audiobook_uploader.constants import MUSIC_VOLUME, NARRATION_VOLUME
from audiobook_uploader.exceptions import PipelineError
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.utils.logging import get_logger


@dataclass
class MixedAudio:
    path: Path
    duration: float | None


class AudioMixerService:
    """Mix narration with background music via the media transform service."""

    def __init__(
        self,
        media: MediaTransformService,
        narration_volume: float = NARRATION_VOLUME,
        music_volume: float = MUSIC_VOLUME,
    ) -> None:
        self.media = media
        self.narration_volume = narration_volume
        self.music_volume = music_volume
        self.log = get_logger(__name__)

    async def mix(
        self,
        narration_path: Path,
        music_path: Path,
        output_path: Path,
        narration_duration: float | None = None,
    ) -> MixedAudio:
        """Mix narration and music.

        Args:
            narration_path: Narration track (sets the output length)
            music_path: Music bed
            output_path: Mixed output (.m4a)
            narration_duration: Used when the mixed file cannot be probed

        Returns:
            MixedAudio with the probed duration, or narration_duration if
            probing failed.

        Raises:
            MediaProcessError: If ffmpeg fails to mix
        """
        self.log.info(
            "audio_mix_start",
            narration=str(narration_path),
            music=str(music_path),
            narration_volume=self.narration_volume,
            music_volume=self.music_volume,
        )
        await self.media.mix_audio(
            narration_path,
            music_path,
            output_path,
            primary_volume=self.narration_volume,
            secondary_volume=self.music_volume,
        )

        try:
            duration = await self.media.probe_duration(output_path)
        except (PipelineError, FileNotFoundError) as e:
            self.log.warning("mixed_audio_probe_failed", error=str(e))
            duration = narration_duration

        self.log.info("audio_mix_complete", output=str(output_path), duration=duration)
        return MixedAudio(path=output_path, duration=duration)
