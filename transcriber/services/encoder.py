"""
Converts raw image bytes into the inline payload sent to the recognition service.

The encoder is pure: it validates, resolves the media type and base64-encodes.
It never touches the network.
"""
import base64
import io
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from transcriber.core.config import settings
from transcriber.core.exceptions import InvalidInput
from transcriber.domain.models import RequestPayload

GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Pillow cannot decode these without a plugin, so only the container is checked
ISOBMFF_MEDIA_TYPES = {"image/heic", "image/heif"}

# Pillow formats that are variants of a format the service accepts
FORMAT_MEDIA_TYPES = {"MPO": "image/jpeg"}


def normalize_media_type(media_type: Optional[str]) -> str:
    """Lowercase a Content-Type value and strip any parameters."""
    if not media_type:
        return ""
    return media_type.split(";", 1)[0].strip().lower()


def sniff_media_type(raw_bytes: bytes) -> str:
    """Identify the image format with Pillow and return its media type.

    Raises:
        InvalidInput: if the bytes cannot be decoded as an image.
    """
    try:
        with Image.open(io.BytesIO(raw_bytes)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise InvalidInput(f"Not a readable image: {e}") from e
    except (OSError, SyntaxError, ValueError) as e:
        raise InvalidInput(f"Corrupt image data: {e}") from e

    mime_type = FORMAT_MEDIA_TYPES.get(image_format) or Image.MIME.get(image_format or "")
    if not mime_type:
        raise InvalidInput(f"Unrecognized image format: {image_format}")
    return mime_type


def encode(
    raw_bytes: bytes,
    media_type: Optional[str],
    *,
    supported_media_types: Optional[Iterable[str]] = None,
    max_bytes: Optional[int] = None,
) -> RequestPayload:
    """
    Validates an image and wraps it as a RequestPayload.

    The declared type only decides whether the input may be an image at all:
    ``image/*`` and generic types are decoded and tagged with the format
    Pillow detects, anything else is rejected outright.

    Raises:
        InvalidInput: when the bytes are empty, too large, unreadable or of an
            unsupported media type.
    """
    supported = set(supported_media_types or settings.SUPPORTED_MEDIA_TYPES)
    limit = max_bytes if max_bytes is not None else settings.MAX_IMAGE_BYTES

    if not raw_bytes:
        raise InvalidInput("Image is empty")
    if len(raw_bytes) > limit:
        raise InvalidInput(f"Image is {len(raw_bytes)} bytes, limit is {limit}")

    declared = normalize_media_type(media_type)
    if declared in ISOBMFF_MEDIA_TYPES:
        if raw_bytes[4:8] != b"ftyp":
            raise InvalidInput(f"Bytes are not a {declared} container")
        resolved = declared
    elif declared.startswith("image/") or declared in GENERIC_MEDIA_TYPES:
        # The decoded format wins over a mislabelled declaration
        resolved = sniff_media_type(raw_bytes)
    else:
        raise InvalidInput(f"Not an image media type: {declared}")

    if resolved not in supported:
        raise InvalidInput(f"Unsupported media type: {resolved}")

    return RequestPayload(
        data=base64.b64encode(raw_bytes).decode("utf-8"),
        mime_type=resolved,
        size_bytes=len(raw_bytes),
    )
