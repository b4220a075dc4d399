"""
Model loading utilities for the person-segmentation backend.

The loader:
 - builds the pretrained torchvision DeepLabV3 variant named in the config,
 - keeps one shared instance per configuration on the inference device,
 - exposes `get_segmentation_model()` for inference callers.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, Tuple

import torch
from torchvision.models import get_model

from .segmentation_config import SegmentationConfig

logger = logging.getLogger(__name__)

_MODELS: Dict[SegmentationConfig, torch.nn.Module] = {}
# Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev.
if torch.cuda.is_available():
    _DEVICE = torch.device("cuda")
elif torch.backends.mps.is_available():  # type: ignore[attr-defined]
    _DEVICE = torch.device("mps")
else:
    _DEVICE = torch.device("cpu")
_LOCK = Lock()


def get_device() -> torch.device:
    """Return the inference device (prefers CUDA when available)."""
    return _DEVICE


def inference_dtype(config: SegmentationConfig, device: torch.device) -> torch.dtype:
    """Half precision only where the device executes it natively."""
    if config.quant_bytes == 2 and device.type in {"cuda", "mps"}:
        return torch.float16
    return torch.float32


def _load_model(config: SegmentationConfig) -> torch.nn.Module:
    logger.info("Loading segmentation model %s", config.model_variant)
    model = get_model(config.model_variant, weights="DEFAULT")
    dtype = inference_dtype(config, _DEVICE)
    if config.quant_bytes == 2 and dtype is torch.float32:
        logger.info("Half precision unavailable on %s; using float32", _DEVICE)
    model.to(device=_DEVICE, dtype=dtype)
    model.eval()
    return model


def get_segmentation_model(config: SegmentationConfig) -> Tuple[torch.nn.Module, torch.device]:
    """
    Return a singleton model + device pair for `config`.

    The model is loaded once on first access and kept in device memory to
    avoid re-initialization costs across requests.
    """
    model = _MODELS.get(config)
    if model is not None:
        return model, _DEVICE

    with _LOCK:
        model = _MODELS.get(config)
        if model is None:
            model = _load_model(config)
            _MODELS[config] = model
            logger.info("Segmentation model loaded on device: %s", _DEVICE)
    return model, _DEVICE


def clear_cache() -> None:
    with _LOCK:
        _MODELS.clear()
