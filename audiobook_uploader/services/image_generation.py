"""Image Generation Service for "Modern Oriental" audiobook thumbnails.

This module produces the video thumbnail with an image-capable Gemini model,
optionally guided by reference images (channel avatar, story cover, the
previous part's thumbnail) for visual consistency.

Key Responsibilities:
- Build the style prompt for a story title
- Attach reference images as inline parts
- Extract base64 image data from the response with an ordered list of
  extraction strategies (vendor response shapes vary between models)
- Validate the payload before decoding and verify it with Pillow
- Fall back to a rendered placeholder on ANY failure: thumbnail generation
  is best-effort and must never abort the pipeline

Usage:
    from audiobook_uploader.services.image_generation import ImageGenerationService

    service = ImageGenerationService(gemini_client)
    thumb = await service.generate_thumbnail(
        "Chuyện Cô Tấm", Path("out/thumbnail.jpg"),
        reference_images=[Path("avatar.png")],
    )
    if thumb.is_placeholder:
        print("placeholder used")
"""

import base64
import binascii
import io
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from PIL import Image, ImageDraw, ImageFont

from audiobook_uploader.clients.gemini import GeminiClient, inline_image_part
from audiobook_uploader.constants import PLACEHOLDER_HEIGHT, PLACEHOLDER_WIDTH
from audiobook_uploader.utils.logging import get_logger

MIN_IMAGE_PAYLOAD_LENGTH = 100
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")

PLACEHOLDER_BACKGROUND = (245, 239, 224)
PLACEHOLDER_TITLE_COLOR = (153, 0, 0)
PLACEHOLDER_ACCENT_COLOR = (93, 123, 147)

THUMBNAIL_PROMPT_TEMPLATE = """Create a YouTube thumbnail in Modern Oriental style with Flat Design aesthetic for an audiobook titled: "{title}"

Design Requirements:
1. Layout & Structure:
   - Center-aligned composition with all main elements centered
   - Decorative frames at 4 corners and top/bottom borders
   - Open space in center for content prominence

2. Color Palette:
   - Background: Cream/Off-white with subtle paper texture
   - Primary: Deep Red (#990000) for main title
   - Secondary: Slate Blue (#5D7B93) for decorative elements
   - Accent: Gold/Yellow highlights

3. Graphic Elements:
   - Traditional cloud patterns (Vietnamese/Chinese aesthetic)
   - Fine flowing lines with gentle shadows
   - Central icon: Open book with ribbons/waves and musical notes
   - Bottom corner: Circular logo with book icon

4. Typography:
   - Title: Brush-style font, thick strokes, Deep Red color
   - Drop shadow for 3D effect
   - Subtitle: Modern Serif, uppercase, wide letter spacing

5. Overall Style:
   - Traditional meets modern aesthetic
   - Refined, elegant, professional appearance
   - 16:9 aspect ratio (1920x1080)
   - High quality, vibrant colors
{reference_note}
Generate the complete thumbnail image."""

REFERENCE_NOTE = """
6. Consistency:
   - Match the palette, framing and typography of the attached reference image(s)
"""

ExtractionStrategy = tuple[str, Callable[[dict[str, Any]], Any]]


@dataclass
class ThumbnailImage:
    """Descriptor of a generated (or placeholder) thumbnail.

    Attributes:
        path: Thumbnail file path (the placeholder uses the same path)
        width: Pixels
        height: Pixels
        is_placeholder: True when generation failed or was not configured
        strategy: Name of the extraction strategy that matched, if any
        reason: Why a placeholder was used
    """

    path: Path
    width: int
    height: int
    format: str = "jpg"
    file_size: int = 0
    is_placeholder: bool = False
    strategy: str | None = None
    reason: str | None = None


def build_thumbnail_prompt(title: str, has_reference: bool = False) -> str:
    return THUMBNAIL_PROMPT_TEMPLATE.format(
        title=title, reference_note=REFERENCE_NOTE if has_reference else ""
    )


def _first_candidate(payload: dict[str, Any]) -> dict[str, Any]:
    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return {}


def _candidate_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts = (_first_candidate(payload).get("content") or {}).get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def _from_inline_data(payload: dict[str, Any]) -> Any:
    for part in _candidate_parts(payload):
        data = (part.get("inlineData") or part.get("inline_data") or {}).get("data")
        if data:
            return data
    return None


def _from_part_text(payload: dict[str, Any]) -> Any:
    for part in _candidate_parts(payload):
        if part.get("text"):
            return part["text"]
    return None


def _from_candidate_image(payload: dict[str, Any]) -> Any:
    return (_first_candidate(payload).get("image") or {}).get("data")


def _from_images_list(payload: dict[str, Any]) -> Any:
    images = payload.get("images")
    if isinstance(images, list) and images:
        return images[0]
    return None


def _from_predictions(payload: dict[str, Any]) -> Any:
    predictions = payload.get("predictions")
    if isinstance(predictions, list) and predictions and isinstance(predictions[0], dict):
        return predictions[0].get("bytesBase64Encoded")
    return None


EXTRACTION_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ("candidate_inline_data", _from_inline_data),
    ("candidate_part_text", _from_part_text),
    ("candidate_image", _from_candidate_image),
    ("images_list", _from_images_list),
    ("predictions", _from_predictions),
)


def extract_image_data(payload: dict[str, Any]) -> tuple[str | None, Any]:
    """Try each extraction strategy in order.

    Returns:
        (strategy name, value) for the first non-empty match, or (None, None).
    """
    for name, strategy in EXTRACTION_STRATEGIES:
        value = strategy(payload)
        if value:
            return name, value
    return None, None


def is_plausible_base64_image(value: Any) -> bool:
    """Check that a payload looks like base64 image data of non-trivial length.

    URLs, short strings and anything outside the base64 alphabet are rejected.
    """
    if not isinstance(value, str) or len(value) < MIN_IMAGE_PAYLOAD_LENGTH:
        return False
    if value.startswith(("http://", "https://")):
        return False
    return bool(_BASE64_PATTERN.match(value))


def describe_generation_error(exc: BaseException) -> str:
    """Summarize a generation failure for the placeholder reason.

    HTTP errors are reduced to the status code and the vendor's own message;
    request URLs are never included.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        summary = f"HTTP {exc.response.status_code}"
        try:
            body = exc.response.json()
        except ValueError:
            return summary
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("message"):
            summary += f": {str(error['message'])[:200]}"
        return summary
    if isinstance(exc, httpx.RequestError):
        return type(exc).__name__
    return str(exc) or type(exc).__name__


def render_placeholder(output_path: Path, title: str) -> int:
    """Render a plain placeholder thumbnail and return its size in bytes."""
    image = Image.new("RGB", (PLACEHOLDER_WIDTH, PLACEHOLDER_HEIGHT), PLACEHOLDER_BACKGROUND)
    draw = ImageDraw.Draw(image)
    margin = 24
    draw.rectangle(
        (margin, margin, PLACEHOLDER_WIDTH - margin, PLACEHOLDER_HEIGHT - margin),
        outline=PLACEHOLDER_ACCENT_COLOR,
        width=6,
    )
    font = ImageFont.load_default()
    text = title.strip() or "Audiobook"
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    position = (
        (PLACEHOLDER_WIDTH - (right - left)) // 2,
        (PLACEHOLDER_HEIGHT - (bottom - top)) // 2,
    )
    draw.text(position, text, fill=PLACEHOLDER_TITLE_COLOR, font=font)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    image.save(output_path, format="JPEG", quality=90)
    return output_path.stat().st_size


class ImageGenerationService:
    """Service for generating thumbnails with a placeholder fallback."""

    def __init__(self, client: GeminiClient) -> None:
        self.client = client
        self.log = get_logger(__name__)

    def create_placeholder(self, output_path: Path, title: str, reason: str) -> ThumbnailImage:
        """Return a placeholder descriptor, rendering the image when possible.

        Never raises: if even the placeholder cannot be written, the
        descriptor still points at output_path.
        """
        self.log.warning("thumbnail_placeholder", reason=reason, output=str(output_path))
        file_size = 0
        try:
            file_size = render_placeholder(output_path, title)
        except (OSError, ValueError) as e:
            self.log.error("placeholder_render_failed", error=str(e))
        return ThumbnailImage(
            path=output_path,
            width=PLACEHOLDER_WIDTH,
            height=PLACEHOLDER_HEIGHT,
            file_size=file_size,
            is_placeholder=True,
            reason=reason,
        )

    def _reference_parts(self, reference_images: list[Path]) -> list[dict[str, Any]]:
        parts = []
        for path in reference_images:
            try:
                parts.append(inline_image_part(path))
                self.log.debug("thumbnail_reference_attached", path=str(path))
            except OSError as e:
                self.log.warning("thumbnail_reference_unreadable", path=str(path), error=str(e))
        return parts

    def _save_image(self, data: str, output_path: Path) -> tuple[int, int, int]:
        raw = base64.b64decode(data, validate=True)
        with Image.open(io.BytesIO(raw)) as probe:
            probe.verify()
        with Image.open(io.BytesIO(raw)) as image:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if output_path.suffix.lower() in (".jpg", ".jpeg"):
                image.convert("RGB").save(output_path, format="JPEG", quality=92)
            else:
                image.save(output_path)
            width, height = image.size
        return width, height, output_path.stat().st_size

    async def generate_thumbnail(
        self,
        title: str,
        output_path: Path,
        reference_images: list[Path] | None = None,
    ) -> ThumbnailImage:
        """Generate a thumbnail for a story title.

        Args:
            title: Story title rendered into the prompt
            output_path: Where to save the image
            reference_images: Optional style references, in priority order

        Returns:
            ThumbnailImage. On any failure (missing key, HTTP error,
            implausible payload, undecodable image) a placeholder descriptor.
        """
        if not self.client.is_configured:
            return self.create_placeholder(output_path, title, "GEMINI_API_KEY not set")

        try:
            parts = self._reference_parts(reference_images or [])
            parts.append({"text": build_thumbnail_prompt(title, has_reference=bool(parts))})
            self.log.info("thumbnail_generation_start", title=title, references=len(parts) - 1)

            payload = await self.client.generate_content(parts)
            strategy, data = extract_image_data(payload)
            if strategy is None:
                return self.create_placeholder(output_path, title, "no image data in response")
            self.log.info("thumbnail_extraction_matched", strategy=strategy)

            if not is_plausible_base64_image(data):
                return self.create_placeholder(
                    output_path, title, f"implausible image payload from {strategy}"
                )

            width, height, file_size = self._save_image(data, output_path)
        except (binascii.Error, ValueError, OSError) as e:
            return self.create_placeholder(output_path, title, f"invalid image data: {e}")
        except Exception as e:  # noqa: BLE001 - thumbnail generation must never raise
            return self.create_placeholder(
                output_path, title, f"generation failed: {describe_generation_error(e)}"
            )

        self.log.info(
            "thumbnail_generated",
            output=str(output_path),
            width=width,
            height=height,
            bytes=file_size,
        )
        return ThumbnailImage(
            path=output_path,
            width=width,
            height=height,
            format=output_path.suffix.lstrip(".").lower() or "jpg",
            file_size=file_size,
            strategy=strategy,
        )
