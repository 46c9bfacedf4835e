"""
Image Processor

Validation and pixel transforms for the pipeline, backed by Pillow:
- validate uploads (type, size, decodability)
- read dimensions/format
- resize to fit the configured maximum (never upscale)
- horizontal flip
- encode to the output format

All methods are synchronous and CPU-bound; the pipeline runs them in a
worker thread.
"""

import io
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from bgflip.core.config import ProcessingConfig
from bgflip.core.exceptions import ValidationError
from bgflip.core.logging import get_logger

logger = get_logger(__name__)

# Lossless container for bytes handed between phases
INTERMEDIATE_FORMAT = "PNG"

OUTPUT_FORMATS = {
    "png": ("PNG", "image/png"),
    "webp": ("WEBP", "image/webp"),
}

# Decoded formats whose bytes are served under another content type
FORMAT_MIME_OVERRIDES = {
    "MPO": "image/jpeg",
}


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    mime_type: Optional[str]
    size: int


def compute_resize_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int
) -> Tuple[int, int]:
    """
    Target size that fits inside max_width x max_height, keeping aspect ratio.

    Returns the input unchanged when it already fits. Otherwise the width is
    fitted first; if the rounded height still exceeds its bound the height is
    fitted instead. Never upscales and never returns a zero dimension.
    """
    if width <= 0 or height <= 0:
        raise ValidationError(f"Invalid image dimensions {width}x{height}")

    if width <= max_width and height <= max_height:
        return width, height

    aspect_ratio = width / height

    new_width = min(max_width, width)
    new_height = round(new_width / aspect_ratio)

    if new_height > max_height:
        new_height = min(max_height, height)
        new_width = round(new_height * aspect_ratio)

    return max(1, min(new_width, width)), max(1, min(new_height, height))


class ImageProcessor:
    """Pillow-backed image transforms configured by ProcessingConfig."""

    def __init__(self, config: Optional[ProcessingConfig] = None):
        self.config = config or ProcessingConfig()
        if self.config.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {self.config.output_format}")

    # =========================================================================
    # Validation & metadata
    # =========================================================================

    def validate_file(self, content_type: Optional[str], size: int):
        """Reject empty, oversized or disallowed uploads."""
        if size <= 0:
            raise ValidationError("Uploaded file is empty")

        if size > self.config.max_file_size:
            limit_mb = self.config.max_file_size / (1024 * 1024)
            raise ValidationError(
                f"File size exceeds maximum allowed size of {limit_mb:g}MB",
                details={"size": size, "max_size": self.config.max_file_size}
            )

        if content_type not in self.config.allowed_formats:
            raise ValidationError(
                f"File type {content_type} is not supported. "
                f"Allowed types: {', '.join(self.config.allowed_formats)}",
                details={"content_type": content_type}
            )

    def get_image_metadata(self, data: bytes) -> ImageMetadata:
        """Read dimensions and format; the bytes must decode as an allowed image type."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
            with Image.open(io.BytesIO(data)) as image:
                width, height = image.size
                image_format = image.format or "unknown"
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(f"File is not a readable image: {e}")

        mime_type = FORMAT_MIME_OVERRIDES.get(image_format) or Image.MIME.get(image_format)
        if mime_type not in self.config.allowed_formats:
            raise ValidationError(
                f"Image content type {mime_type or image_format} is not supported",
                details={"detected_format": image_format}
            )

        return ImageMetadata(
            width=width,
            height=height,
            format=image_format,
            mime_type=mime_type,
            size=len(data)
        )

    # =========================================================================
    # Transforms
    # =========================================================================

    @staticmethod
    def _load(data: bytes) -> Image.Image:
        image = Image.open(io.BytesIO(data))
        image.load()
        # Palette/CMYK/16-bit modes are normalised so flips and encodes are exact
        if image.mode not in ("RGB", "RGBA", "L", "LA"):
            image = image.convert("RGBA")
        return image

    @staticmethod
    def _encode(image: Image.Image, image_format: str = INTERMEDIATE_FORMAT, **params) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format=image_format, **params)
        return buffer.getvalue()

    def resize_if_needed(self, data: bytes) -> Tuple[bytes, int, int]:
        """
        Scale the image down to fit the configured maximum.

        Returns:
            (bytes, width, height); the input bytes are returned untouched
            when no resize is needed
        """
        image = self._load(data)
        width, height = image.size
        new_width, new_height = compute_resize_dimensions(
            width, height, self.config.max_width, self.config.max_height
        )

        if (new_width, new_height) == (width, height):
            logger.debug("resize_skipped", width=width, height=height)
            return data, width, height

        logger.info(
            "resize_applied",
            from_size=f"{width}x{height}",
            to_size=f"{new_width}x{new_height}"
        )
        resized = image.resize((new_width, new_height), Image.Resampling.LANCZOS)
        return self._encode(resized), new_width, new_height

    def flip_horizontally(self, data: bytes) -> bytes:
        """Mirror left-right: output[x, y] = input[width - 1 - x, y]."""
        image = self._load(data)
        return self._encode(image.transpose(Image.Transpose.FLIP_LEFT_RIGHT))

    def convert_to_output_format(self, data: bytes) -> Tuple[bytes, int, int]:
        """
        Encode to the configured output format.

        PNG is lossless whatever the quality setting; WebP uses it as its
        lossy quality parameter.
        """
        image = self._load(data)
        image_format, _ = OUTPUT_FORMATS[self.config.output_format]

        if image_format == "WEBP":
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            encoded = self._encode(image, "WEBP", quality=self.config.output_quality)
        else:
            encoded = self._encode(image, "PNG", optimize=True)

        return encoded, image.width, image.height

    @property
    def output_content_type(self) -> str:
        return OUTPUT_FORMATS[self.config.output_format][1]

    @property
    def output_extension(self) -> str:
        return f".{self.config.output_format}"
