"""
Image decoding and encoding.

Uploads are decoded into an RGBA `ImageBuffer`, scaled down on the longest
edge to the working size used for segmentation, and composited results are
encoded back to PNG for download or upload.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import time
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import InvalidImageError


@dataclass
class ImageBuffer:
    """RGBA pixels as a `(height, width, 4)` uint8 array."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(
                f"ImageBuffer needs shape (height, width, 4), got {self.pixels.shape}"
            )
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"ImageBuffer needs uint8 pixels, got {self.pixels.dtype}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def copy(self) -> "ImageBuffer":
        return ImageBuffer(self.pixels.copy())

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def rgb(self) -> Image.Image:
        return self.to_pil().convert("RGB")

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ImageBuffer":
        return cls(np.array(image.convert("RGBA"), dtype=np.uint8))


def compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    return max(1, int(width * scale)), max(1, int(height * scale))


def decode_image(image_bytes: bytes, max_long_edge: int = 0) -> ImageBuffer:
    """
    Decode uploaded bytes into an RGBA buffer.

    Images larger than `max_long_edge` are scaled down; smaller images keep
    their native resolution.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Image.DecompressionBombError as exc:
        raise InvalidImageError("Image is too large to process") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError("Invalid image data") from exc

    image = image.convert("RGBA")
    orig_w, orig_h = image.size
    new_w, new_h = compute_resize_dims(orig_w, orig_h, max_long_edge)
    if (new_w, new_h) != (orig_w, orig_h):
        image = image.resize((new_w, new_h), Image.BILINEAR)
    return ImageBuffer.from_pil(image)


def encode_png(buffer: ImageBuffer) -> bytes:
    out = BytesIO()
    buffer.to_pil().save(out, format="PNG")
    return out.getvalue()


def download_filename(now: Optional[float] = None) -> str:
    """Name used when a composited result is exported for download."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"removed-bg-{millis}.png"
