"""Conversion of legacy image formats to JPEG."""

import io
import logging

from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

logger = logging.getLogger(__name__)

register_heif_opener()

# Formats the extraction model cannot read directly
LEGACY_IMAGE_TYPES = frozenset({
    "image/heic",
    "image/heif",
    "image/tiff",
    "image/bmp",
    "image/x-ms-bmp",
})

JPEG_QUALITY = 90


def needs_conversion(mimetype: str) -> bool:
    return mimetype.lower() in LEGACY_IMAGE_TYPES


def convert_to_jpeg(data: bytes) -> bytes:
    """Re-encode an image as JPEG, honouring EXIF orientation.

    Args:
        data: Source image bytes (HEIC, TIFF, BMP, ...)

    Returns:
        bytes: JPEG bytes
    """
    with Image.open(io.BytesIO(data)) as image:
        image = ImageOps.exif_transpose(image)
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        output = io.BytesIO()
        image.save(output, format="JPEG", quality=JPEG_QUALITY)
    converted = output.getvalue()
    logger.debug(f"Converted image to JPEG ({len(data)} -> {len(converted)} bytes)")
    return converted
