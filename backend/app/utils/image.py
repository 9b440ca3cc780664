"""Room photo validation and normalisation for uploads.

The image model works on the user's photo directly, so uploads must decode
cleanly and be large enough for the output to hold up at HD size.
"""

from __future__ import annotations

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from app.errors import ValidationError

MIN_SHORTEST_SIDE = 512
MAX_LONGEST_SIDE = 4096
MAX_UPLOAD_BYTES = 15 * 1024 * 1024
JPEG_QUALITY = 90


def validate_room_photo(data: bytes) -> Image.Image:
    """Decode `data` and check it is a usable room photo.

    Returns the decoded image with EXIF orientation applied.
    """
    if not data:
        raise ValidationError("Empty upload")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            "Image too large", detail=f"max {MAX_UPLOAD_BYTES // (1024 * 1024)} MB"
        )
    try:
        img = Image.open(io.BytesIO(data))
        img.load()  # Force full decode to catch truncation
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as exc:
        raise ValidationError("Upload is not a readable image") from exc

    img = ImageOps.exif_transpose(img)
    if min(img.size) < MIN_SHORTEST_SIDE:
        raise ValidationError(
            f"Image too small: shortest side must be at least {MIN_SHORTEST_SIDE}px",
            detail=f"got {img.size[0]}x{img.size[1]}",
        )
    return img


def to_jpeg(img: Image.Image) -> bytes:
    """Re-encode as JPEG, downscaling so the longest side fits MAX_LONGEST_SIDE."""
    if max(img.size) > MAX_LONGEST_SIDE:
        img = img.copy()
        img.thumbnail((MAX_LONGEST_SIDE, MAX_LONGEST_SIDE))
    if img.mode != "RGB":
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()
