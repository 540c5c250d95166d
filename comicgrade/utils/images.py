# comicgrade/utils/images.py
from __future__ import annotations

import base64
import binascii
import io
import re

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..config import IMAGE_MAX_SIDE
from ..pipeline_types import PixelBuffer

_DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")

__all__ = ["decode_base64_image", "decode_image", "ImageDecodeError"]


class ImageDecodeError(ValueError):
    """Bytes or base64 text that do not hold a readable image."""


def decode_base64_image(data: str) -> bytes:
    """Base64 (optionally a data: URL) -> raw bytes."""
    text = _DATA_URL_RE.sub("", (data or "").strip())
    try:
        return base64.b64decode(text, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"invalid base64 image: {e}") from e


def decode_image(data: bytes, max_side: int = IMAGE_MAX_SIDE) -> PixelBuffer:
    """
    Encoded image bytes (JPEG/PNG/...) -> RGBA PixelBuffer.
    Large captures are downscaled, keeping aspect, to ``max_side``.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGBA")
            if max_side and max(img.size) > max_side:
                img.thumbnail((max_side, max_side))
            arr = np.asarray(img, dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError(f"unreadable image: {e}") from e
    return PixelBuffer.from_array(arr)
