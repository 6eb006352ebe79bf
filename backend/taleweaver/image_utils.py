import base64
import binascii
import logging
import mimetypes

from taleweaver.errors import ImageEncodingFailure, ImageTooLarge
from taleweaver.models import ImagePart

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 2 * 1024 * 1024  # 2MB upload ceiling
ALLOWED_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})


def _resolve_mime_type(mime_type: str | None, filename: str | None) -> str:
    if not mime_type and filename:
        mime_type, _ = mimetypes.guess_type(filename)
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ImageEncodingFailure(
            f"Unsupported image type '{mime_type}'. Use PNG, JPG or WEBP."
        )
    return mime_type


def encode_image(raw: bytes, mime_type: str | None = None, filename: str | None = None) -> ImagePart:
    """Turn an uploaded image into an inline part for the story prompt."""
    if len(raw) > MAX_IMAGE_BYTES:
        raise ImageTooLarge(
            f"Image is {len(raw)} bytes; please select an image under 2MB."
        )
    resolved = _resolve_mime_type(mime_type, filename)
    return ImagePart(mime_type=resolved, data=base64.b64encode(raw).decode())


def image_from_data_url(data_url: str) -> ImagePart:
    """Parse ``data:image/jpeg;base64,...`` as produced by a browser file reader."""
    header, sep, payload = data_url.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ImageEncodingFailure("Could not process the image file: not a base64 data URL.")
    mime_type = header.removeprefix("data:").removesuffix(";base64")

    # base64 inflates by 4/3; reject obviously oversized payloads before decoding
    if len(payload) > (MAX_IMAGE_BYTES * 4) // 3 + 4:
        raise ImageTooLarge("Image is too large; please select an image under 2MB.")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Invalid base64 image payload: {e}")
        raise ImageEncodingFailure("Could not process the image file.") from e
    return encode_image(raw, mime_type=mime_type)
