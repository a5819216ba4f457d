import pytest

from erazor.core.config import settings
from erazor.core.exceptions import ValidationError
from erazor.engines.quota.schemas import TierClass
from erazor.modules.imagery.validation import max_upload_bytes, validate_upload


def test_valid_png_passes(png_bytes):
    assert validate_upload(png_bytes, "cat.png", "image/png", TierClass.FREE) == "PNG"


def test_tier_size_limits():
    assert max_upload_bytes(TierClass.ANONYMOUS) == settings.FREE_TIER_MAX_UPLOAD_BYTES
    assert max_upload_bytes(TierClass.FREE) == settings.FREE_TIER_MAX_UPLOAD_BYTES
    assert max_upload_bytes(TierClass.PAID) == settings.MAX_UPLOAD_SIZE_BYTES


@pytest.mark.parametrize("tier", [TierClass.ANONYMOUS, TierClass.FREE])
def test_oversized_upload_rejected_for_unpaid_tiers(tier):
    too_big = b"\x00" * (settings.FREE_TIER_MAX_UPLOAD_BYTES + 1)

    with pytest.raises(ValidationError) as exc_info:
        validate_upload(too_big, "big.png", "image/png", tier)

    assert exc_info.value.code == 400
    assert "2MB" in exc_info.value.message


def test_disallowed_mime_type_rejected(png_bytes):
    with pytest.raises(ValidationError):
        validate_upload(png_bytes, "doc.pdf", "application/pdf", TierClass.PAID)


def test_non_image_content_rejected():
    with pytest.raises(ValidationError):
        validate_upload(b"definitely not an image", "fake.png", "image/png", TierClass.PAID)


def test_empty_upload_rejected():
    with pytest.raises(ValidationError):
        validate_upload(b"", "empty.png", "image/png", TierClass.PAID)
