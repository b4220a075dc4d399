"""
Gallery operations over persisted image records.

Deletion removes the original object, the processed object and the
metadata row, in that order. Nothing is rolled back when a later step
fails; the caller gets a `DeletionError` naming what was removed, and the
record stays listed until its row is gone.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional

from . import config
from .errors import DeletionError, LedgerError, MetadataError
from .ledger import CreditLedger
from .metadata import ImageRecord, MetadataStore
from .storage import ObjectStorage, key_from_url

logger = logging.getLogger(__name__)


@dataclass
class ProfileSummary:
    user_id: str
    credits: int
    image_count: int


class Gallery:
    def __init__(
        self,
        storage: ObjectStorage,
        metadata: MetadataStore,
        ledger: Optional[CreditLedger] = None,
        settings: Optional[config.Settings] = None,
    ):
        self.storage = storage
        self.metadata = metadata
        self.ledger = ledger
        self.settings = settings or config.get_settings()

    def list_images(self, user_id: str) -> List[ImageRecord]:
        """Return the user's records, newest first."""
        return self.metadata.list_by_owner(user_id)

    def get_image(self, user_id: str, image_id: str) -> Optional[ImageRecord]:
        record = self.metadata.get(image_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def delete_image(self, record: ImageRecord) -> None:
        """
        Delete both stored objects and the metadata row for `record`.

        Raises:
            DeletionError: when any part could not be removed.
        """
        image_id = record.id or ""
        targets = [
            (self.settings.original_bucket, record.original_image_url),
            (self.settings.processed_bucket, record.processed_image_url),
        ]
        removed: List[str] = []
        for bucket, url in targets:
            key = key_from_url(url, bucket)
            try:
                self.storage.remove(bucket, key)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Could not remove %s/%s for image %s", bucket, key, image_id)
                raise DeletionError(image_id, f"storage object {bucket}/{key}: {exc}", removed) from exc
            removed.append(f"{bucket}/{key}")

        try:
            self.metadata.delete_by_id(image_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not delete metadata row for image %s", image_id)
            raise DeletionError(image_id, f"metadata row: {exc}", removed) from exc
        logger.info("Deleted image %s for user %s", image_id, record.user_id)

    def profile_summary(self, user_id: str) -> ProfileSummary:
        """
        Balance and stored image count for the profile panel.

        Raises:
            LedgerError, MetadataError: when either lookup fails.
        """
        if self.ledger is None:
            raise LedgerError("No credit ledger configured")
        credits = self.ledger.get_balance(user_id)
        try:
            image_count = self.metadata.count_by_owner(user_id)
        except MetadataError:
            logger.exception("Could not count images for %s", user_id)
            raise
        return ProfileSummary(user_id=user_id, credits=credits, image_count=image_count)
