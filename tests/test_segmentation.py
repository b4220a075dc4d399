"""Tests for the torchvision segmentation provider."""

from __future__ import annotations

import numpy as np
import pytest
import pytest_mock
import torch

from cutout_service.errors import ProviderError
from cutout_service.segmentation import (
    PERSON_CLASS,
    TorchSegmenterHandle,
    TorchvisionPersonSegmenter,
    model_input_dims,
)
from cutout_service.segmentation_config import SegmentationConfig

from conftest import make_buffer


class LeftHalfPerson(torch.nn.Module):
    """Scores the left half of every input as person."""

    def __init__(self):
        super().__init__()
        self.inputs = []

    def forward(self, x):
        self.inputs.append(x)
        _, _, h, w = x.shape
        logits = torch.zeros(1, 21, h, w)
        logits[:, PERSON_CLASS, :, : w // 2] = 10.0
        return {"out": logits}


def _handle(model, **overrides) -> TorchSegmenterHandle:
    params = dict(multiplier=1.0, output_stride=4, quant_bytes=4, threshold=0.5)
    params.update(overrides)
    return TorchSegmenterHandle(model=model, device=torch.device("cpu"), config=SegmentationConfig(**params))


def test_model_input_dims_rounds_to_stride() -> None:
    assert model_input_dims(512, 384, 0.75, 16) == (384, 288)
    assert model_input_dims(100, 30, 0.75, 16) == (80, 32)
    assert model_input_dims(3, 3, 0.5, 16) == (16, 16)


def test_infer_returns_row_major_binary_map() -> None:
    model = LeftHalfPerson()
    buffer = make_buffer(8, 4)

    seg = TorchvisionPersonSegmenter().infer(_handle(model), buffer)

    assert seg.dtype == np.uint8
    assert seg.shape == (32,)
    expected = np.zeros((4, 8), dtype=np.uint8)
    expected[:, :4] = 1
    np.testing.assert_array_equal(seg, expected.reshape(-1))
    assert tuple(model.inputs[0].shape) == (1, 3, 4, 8)


def test_infer_resizes_back_to_buffer_size() -> None:
    model = LeftHalfPerson()
    buffer = make_buffer(10, 6)

    seg = TorchvisionPersonSegmenter().infer(_handle(model, multiplier=0.5, output_stride=8), buffer)

    assert seg.shape == (60,)
    assert tuple(model.inputs[0].shape) == (1, 3, 8, 8)
    assert set(np.unique(seg)) <= {0, 1}


def test_infer_wraps_model_errors() -> None:
    class Broken(torch.nn.Module):
        def forward(self, x):
            raise RuntimeError("CUDA out of memory")

    with pytest.raises(ProviderError):
        TorchvisionPersonSegmenter().infer(_handle(Broken()), make_buffer(4, 4))


def test_load_wraps_loader_errors(mocker: pytest_mock.MockerFixture) -> None:
    mocker.patch(
        "cutout_service.segmentation.get_segmentation_model",
        side_effect=OSError("no network"),
    )

    with pytest.raises(ProviderError):
        TorchvisionPersonSegmenter().load(SegmentationConfig())


def test_load_returns_handle(mocker: pytest_mock.MockerFixture) -> None:
    model = LeftHalfPerson()
    mocker.patch(
        "cutout_service.segmentation.get_segmentation_model",
        return_value=(model, torch.device("cpu")),
    )
    config = SegmentationConfig()

    handle = TorchvisionPersonSegmenter().load(config)

    assert handle.model is model
    assert handle.config == config
