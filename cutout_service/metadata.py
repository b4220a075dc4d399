"""Metadata store for persisted image records (`processed_images` table)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import MetadataError
from .rest import RestClient, eq

logger = logging.getLogger(__name__)

TABLE = "processed_images"


@dataclass
class ImageRecord:
    user_id: str
    title: str
    original_image_url: str
    processed_image_url: str
    file_size: Optional[int] = None
    processing_time: Optional[int] = None  # milliseconds
    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Columns written on insert; the store assigns id and created_at."""
        row = asdict(self)
        row.pop("id")
        row.pop("created_at")
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ImageRecord":
        return cls(
            id=None if row.get("id") is None else str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "",
            original_image_url=row["original_image_url"],
            processed_image_url=row["processed_image_url"],
            file_size=row.get("file_size"),
            processing_time=row.get("processing_time"),
            created_at=row.get("created_at"),
        )


class MetadataStore(ABC):
    @abstractmethod
    def insert(self, record: ImageRecord) -> ImageRecord:
        """Write a record and return it with id and created_at filled in."""

    @abstractmethod
    def list_by_owner(self, user_id: str) -> List[ImageRecord]:
        """Return the user's records, newest first."""

    @abstractmethod
    def count_by_owner(self, user_id: str) -> int:
        pass

    @abstractmethod
    def get(self, image_id: str) -> Optional[ImageRecord]:
        pass

    @abstractmethod
    def delete_by_id(self, image_id: str) -> None:
        """Remove the row, raising `MetadataError` if it was not removed."""


class RestMetadataStore(MetadataStore):
    def __init__(self, client: RestClient):
        self.client = client

    def insert(self, record: ImageRecord) -> ImageRecord:
        try:
            row = self.client.insert(TABLE, record.to_row())
        except (requests.RequestException, ValueError) as exc:
            raise MetadataError(f"Could not insert record for {record.user_id}") from exc
        return ImageRecord.from_row({**record.to_row(), **row})

    def list_by_owner(self, user_id: str) -> List[ImageRecord]:
        try:
            rows = self.client.select(
                TABLE,
                {"select": "*", "user_id": eq(user_id), "order": "created_at.desc"},
            )
        except (requests.RequestException, ValueError) as exc:
            raise MetadataError(f"Could not list images for {user_id}") from exc
        return [ImageRecord.from_row(row) for row in rows]

    def count_by_owner(self, user_id: str) -> int:
        try:
            return self.client.count(TABLE, {"user_id": eq(user_id)})
        except (requests.RequestException, ValueError) as exc:
            raise MetadataError(f"Could not count images for {user_id}") from exc

    def get(self, image_id: str) -> Optional[ImageRecord]:
        try:
            rows = self.client.select(TABLE, {"select": "*", "id": eq(image_id)})
        except (requests.RequestException, ValueError) as exc:
            raise MetadataError(f"Could not read image {image_id}") from exc
        return ImageRecord.from_row(rows[0]) if rows else None

    def delete_by_id(self, image_id: str) -> None:
        try:
            removed = self.client.delete(TABLE, {"id": eq(image_id)})
        except (requests.RequestException, ValueError) as exc:
            raise MetadataError(f"Could not delete image {image_id}") from exc
        if removed == 0:
            raise MetadataError(f"Image {image_id} was not deleted")
