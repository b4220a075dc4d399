"""Apply a segmentation map to an image buffer."""

from __future__ import annotations

import numpy as np

from .errors import MaskShapeError
from .imaging import ImageBuffer

TRANSPARENT = 0


def apply_mask(buffer: ImageBuffer, segmentation_map) -> ImageBuffer:
    """
    Return a copy of `buffer` whose background pixels are fully transparent.

    `segmentation_map` holds one value per pixel in row-major order; a value
    of 0 marks background. Foreground pixels and the color channels of
    background pixels are left untouched. The input buffer is never
    modified.

    Raises:
        MaskShapeError: when the map does not have exactly one entry per pixel.
    """
    seg = np.asarray(segmentation_map)
    if seg.size != buffer.pixel_count:
        raise MaskShapeError(
            f"Segmentation map has {seg.size} entries for a "
            f"{buffer.width}x{buffer.height} image ({buffer.pixel_count} pixels)"
        )

    background = seg.reshape(buffer.height, buffer.width) == 0
    result = buffer.copy()
    result.pixels[..., 3][background] = TRANSPARENT
    return result
