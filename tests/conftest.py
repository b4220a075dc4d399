"""Shared fixtures and in-memory collaborators."""

from __future__ import annotations

from io import BytesIO
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import numpy as np
import pytest
from PIL import Image

from cutout_service.config import Settings
from cutout_service.errors import LedgerError, MetadataError, ProviderError, StorageError
from cutout_service.imaging import ImageBuffer
from cutout_service.ledger import CreditLedger
from cutout_service.metadata import ImageRecord, MetadataStore
from cutout_service.segmentation import SegmentationProvider
from cutout_service.storage import ObjectStorage


def left_column_background(buffer: ImageBuffer) -> np.ndarray:
    seg = np.ones((buffer.height, buffer.width), dtype=np.uint8)
    seg[:, 0] = 0
    return seg.reshape(-1)


class FakeProvider(SegmentationProvider):
    def __init__(
        self,
        map_fn: Callable[[ImageBuffer], np.ndarray] = left_column_background,
        fail_load: bool = False,
        fail_infer: bool = False,
    ):
        self.map_fn = map_fn
        self.fail_load = fail_load
        self.fail_infer = fail_infer
        self.load_calls = 0
        self.infer_calls = 0

    def load(self, config):
        self.load_calls += 1
        if self.fail_load:
            raise ProviderError("weights unavailable")
        return "handle"

    def infer(self, handle, buffer):
        self.infer_calls += 1
        if self.fail_infer:
            raise ProviderError("inference crashed")
        return self.map_fn(buffer)


class FakeLedger(CreditLedger):
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances = dict(balances or {})
        self.usage: List[Tuple[str, str, int]] = []
        self.fail_balance = False
        self.fail_decrement = False

    def get_balance(self, user_id):
        if self.fail_balance or user_id not in self.balances:
            raise LedgerError(f"no profile for {user_id}")
        return self.balances[user_id]

    def decrement(self, user_id, amount):
        if self.fail_decrement:
            raise LedgerError("rpc failed")
        self.balances[user_id] = max(0, self.balances[user_id] - amount)

    def append_usage(self, user_id, action, amount):
        self.usage.append((user_id, action, amount))


class FakeStorage(ObjectStorage):
    def __init__(self):
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.fail_upload: Set[str] = set()
        self.fail_remove: Set[str] = set()

    def upload(self, bucket, key, data, content_type):
        if bucket in self.fail_upload:
            raise StorageError(f"upload to {bucket} refused")
        self.objects[(bucket, key)] = data
        return key

    def get_public_url(self, bucket, key):
        return f"https://cdn.test/storage/v1/object/public/{quote(bucket)}/{quote(key)}"

    def remove(self, bucket, key):
        if bucket in self.fail_remove:
            raise StorageError(f"remove from {bucket} refused")
        self.objects.pop((bucket, key), None)


class FakeMetadata(MetadataStore):
    def __init__(self):
        self.records: List[ImageRecord] = []
        self.fail_insert = False
        self.fail_delete = False
        self._next_id = 1

    def insert(self, record):
        if self.fail_insert:
            raise MetadataError("insert rejected")
        record.id = str(self._next_id)
        record.created_at = f"2026-01-01T00:00:{self._next_id:02d}"
        self._next_id += 1
        self.records.append(record)
        return record

    def list_by_owner(self, user_id):
        owned = [r for r in self.records if r.user_id == user_id]
        return sorted(owned, key=lambda r: r.created_at, reverse=True)

    def count_by_owner(self, user_id):
        return len(self.list_by_owner(user_id))

    def get(self, image_id):
        return next((r for r in self.records if r.id == image_id), None)

    def delete_by_id(self, image_id):
        if self.fail_delete:
            raise MetadataError("delete rejected")
        self.records = [r for r in self.records if r.id != image_id]


def make_png(width: int = 8, height: int = 6, color=(200, 120, 40)) -> bytes:
    out = BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_buffer(width: int = 4, height: int = 4) -> ImageBuffer:
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    return ImageBuffer(pixels)


@pytest.fixture
def settings() -> Settings:
    return Settings(max_long_edge=512, credit_cost=1)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger({"user-1": 1, "broke": 0, "rich": 10})


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def metadata() -> FakeMetadata:
    return FakeMetadata()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()
