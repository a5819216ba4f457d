"""Upload validation: type, content sniffing and tier-specific size limits."""

import io
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from erazor.core.config import settings
from erazor.core.exceptions import ValidationError
from erazor.engines.quota.schemas import TierClass

# Pillow format name -> extensions it may arrive as
PILLOW_FORMATS = {
    "JPEG": {"jpg", "jpeg"},
    "PNG": {"png"},
    "GIF": {"gif"},
    "BMP": {"bmp"},
    "TIFF": {"tiff", "tif"},
    "WEBP": {"webp"},
}


def max_upload_bytes(tier: TierClass) -> int:
    if tier == TierClass.PAID:
        return settings.MAX_UPLOAD_SIZE_BYTES
    return settings.FREE_TIER_MAX_UPLOAD_BYTES


def _declared_type(filename: str, content_type: Optional[str]) -> str:
    if content_type and content_type.startswith("image/"):
        return content_type.split("/", 1)[1].lower()
    return Path(filename or "").suffix.lstrip(".").lower()


def validate_upload(file_data: bytes, filename: str, content_type: Optional[str], tier: TierClass) -> str:
    """
    Reject anything that must never reach the queue.

    Returns:
        The image format detected by Pillow (e.g. "PNG")
    """
    if not file_data:
        raise ValidationError("No image uploaded")

    limit = max_upload_bytes(tier)
    if len(file_data) > limit:
        raise ValidationError(
            f"File too large. Maximum size for your plan is {limit // (1024 * 1024)}MB.",
            details={"size_bytes": len(file_data), "limit_bytes": limit, "tier": tier.value}
        )

    declared = _declared_type(filename, content_type)
    if declared not in settings.allowed_image_types:
        raise ValidationError(
            "Only image files are allowed!",
            details={"allowed": settings.allowed_image_types}
        )

    try:
        with Image.open(io.BytesIO(file_data)) as image:
            image.verify()
            detected = image.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise ValidationError("Uploaded file is not a valid image") from e

    allowed_extensions = PILLOW_FORMATS.get(detected, set())
    if not allowed_extensions & set(settings.allowed_image_types):
        raise ValidationError(f"Unsupported image format: {detected}")

    return detected
