"""Photo intake helpers: upload validation, downscaling, request ids."""

import io
import uuid
from typing import Tuple

from PIL import Image, ImageOps

from hvac_scanner.core.config import get_settings  # Central settings

ALLOWED_EXT = {"jpg", "jpeg", "png", "webp"}  # Phone camera / gallery formats


def generate_request_id() -> str:
    """Return a short random hex string for correlation in logs/responses."""
    return uuid.uuid4().hex[:12]


def extension_from_filename(filename: str) -> str:
    return filename.rsplit('.', 1)[-1].lower() if '.' in (filename or '') else ''


def validate_source(filename: str, data: bytes) -> Tuple[str, bytes]:
    """Validate raw upload bytes and extension.

    Raises ValueError with concise error code strings that map directly to
    user-facing error.detail in API responses.
    """
    settings = get_settings()
    if not data:
        raise ValueError("empty_file")
    ext = extension_from_filename(filename)
    if ext not in ALLOWED_EXT:
        raise ValueError("unsupported_extension")
    size_mb = len(data) / (1024 * 1024)
    if size_mb > settings.MAX_FILE_MB:
        raise ValueError("file_too_large")
    return ext, data


def prepare_image(data: bytes) -> Tuple[bytes, Tuple[int, int]]:
    """Normalize a photo for the model: upright, RGB, longest edge capped, JPEG.

    Returns (jpeg_bytes, (width, height)) of the re-encoded image. Smaller
    uploads keep the model call cheap; nameplate text stays legible at 800px.
    """
    settings = get_settings()
    try:
        with Image.open(io.BytesIO(data)) as im:
            im = ImageOps.exif_transpose(im).convert("RGB")
            edge = settings.MAX_IMAGE_EDGE
            im.thumbnail((edge, edge))  # keeps aspect ratio, never upscales
            out = io.BytesIO()
            im.save(out, format="JPEG", quality=settings.JPEG_QUALITY)
            return out.getvalue(), im.size
    except (OSError, ValueError) as exc:
        raise ValueError("unreadable_image") from exc
