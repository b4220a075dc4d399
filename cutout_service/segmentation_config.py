"""Fixed model configuration handed to segmentation providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import config


@dataclass(frozen=True)
class SegmentationConfig:
    model_variant: str = "deeplabv3_mobilenet_v3_large"
    output_stride: int = 16
    multiplier: float = 0.75
    quant_bytes: int = 2
    threshold: float = 0.7

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "SegmentationConfig":
        settings = settings or config.get_settings()
        return cls(
            model_variant=settings.segmentation_model_variant,
            output_stride=settings.segmentation_output_stride,
            multiplier=settings.segmentation_multiplier,
            quant_bytes=settings.segmentation_quant_bytes,
            threshold=settings.segmentation_threshold,
        )
