"""
Segmentation providers.

A provider exposes two steps: `load` returns a handle for a fixed
configuration, and `infer` turns an image buffer into a row-major
segmentation map (1 = person, 0 = background) with one entry per pixel.
The orchestrator and compositor depend only on this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import math
from typing import Any, Tuple

import numpy as np
import torch
import torch.nn.functional as F

from .errors import ProviderError
from .imaging import ImageBuffer
from .model_loader import get_segmentation_model, inference_dtype
from .segmentation_config import SegmentationConfig

logger = logging.getLogger(__name__)

# Index of "person" in the VOC label set the torchvision DeepLabV3 weights use.
PERSON_CLASS = 15
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


class SegmentationProvider(ABC):
    """Abstract interface for pluggable segmentation backends."""

    @abstractmethod
    def load(self, config: SegmentationConfig) -> Any:
        """Prepare the model for `config` and return an opaque handle.

        Raises:
            ProviderError: if the model cannot be loaded.
        """

    @abstractmethod
    def infer(self, handle: Any, buffer: ImageBuffer) -> np.ndarray:
        """Return a flat uint8 map of length `buffer.pixel_count`.

        Raises:
            ProviderError: if no map can be produced.
        """


@dataclass
class TorchSegmenterHandle:
    model: torch.nn.Module
    device: torch.device
    config: SegmentationConfig


def model_input_dims(width: int, height: int, multiplier: float, output_stride: int) -> Tuple[int, int]:
    """Scale by `multiplier` and round each side up to a multiple of the stride."""
    scaled_w = max(1, int(round(width * multiplier)))
    scaled_h = max(1, int(round(height * multiplier)))
    new_w = max(output_stride, math.ceil(scaled_w / output_stride) * output_stride)
    new_h = max(output_stride, math.ceil(scaled_h / output_stride) * output_stride)
    return new_w, new_h


def _to_tensor(buffer: ImageBuffer, size: Tuple[int, int], device: torch.device, dtype: torch.dtype) -> torch.Tensor:
    image = buffer.rgb()
    if image.size != size:
        image = image.resize(size)
    im_np = np.asarray(image).astype("float32") / 255.0
    im_np = (im_np - np.array(IMAGENET_MEAN, dtype="float32")) / np.array(IMAGENET_STD, dtype="float32")
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    return torch.from_numpy(im_np).unsqueeze(0).to(device=device, dtype=dtype)


class TorchvisionPersonSegmenter(SegmentationProvider):
    """Person segmentation with a pretrained torchvision DeepLabV3 model."""

    def load(self, config: SegmentationConfig) -> TorchSegmenterHandle:
        try:
            model, device = get_segmentation_model(config)
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(f"Could not load {config.model_variant}: {exc}") from exc
        return TorchSegmenterHandle(model=model, device=device, config=config)

    def infer(self, handle: TorchSegmenterHandle, buffer: ImageBuffer) -> np.ndarray:
        config = handle.config
        size = model_input_dims(buffer.width, buffer.height, config.multiplier, config.output_stride)
        dtype = inference_dtype(config, handle.device)
        try:
            tensor = _to_tensor(buffer, size, handle.device, dtype)
            with torch.no_grad():
                logits = handle.model(tensor)["out"]  # (B,C,H,W)
            logits = F.interpolate(
                logits.float(),
                size=(buffer.height, buffer.width),
                mode="bilinear",
                align_corners=False,
            )
            person_prob = torch.softmax(logits, dim=1)[0, PERSON_CLASS]
            mask = (person_prob >= config.threshold).cpu().numpy()
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(f"Segmentation failed: {exc}") from exc

        seg = mask.astype(np.uint8).reshape(-1)
        logger.debug(
            "Segmented %dx%d image, %d foreground pixels",
            buffer.width,
            buffer.height,
            int(seg.sum()),
        )
        return seg
