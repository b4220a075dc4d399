"""Exception types raised by the service's collaborators."""

from __future__ import annotations

from typing import Sequence


class CutoutServiceError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(CutoutServiceError):
    pass


class MaskShapeError(CutoutServiceError, ValueError):
    """Segmentation map and image buffer come from different sources."""


class InvalidImageError(CutoutServiceError, ValueError):
    pass


class ProviderError(CutoutServiceError):
    """The segmentation model failed to load or to produce a map."""


class InsufficientCreditsError(CutoutServiceError):
    def __init__(self, user_id: str, balance: int, required: int):
        super().__init__(
            f"User {user_id} has {balance} credit(s); {required} required"
        )
        self.user_id = user_id
        self.balance = balance
        self.required = required


class LedgerError(CutoutServiceError):
    pass


class StorageError(CutoutServiceError):
    pass


class MetadataError(CutoutServiceError):
    pass


class AuthenticationError(CutoutServiceError):
    pass


class PersistenceError(CutoutServiceError):
    """Save-to-cloud aborted before the metadata record was written."""

    def __init__(self, stage: str, message: str, orphaned_keys: Sequence[str] = ()):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.orphaned_keys = list(orphaned_keys)


class DeletionError(CutoutServiceError):
    """A record was not fully deleted. `removed` lists the parts that were."""

    def __init__(self, image_id: str, message: str, removed: Sequence[str] = ()):
        super().__init__(f"Image {image_id} was not fully deleted: {message}")
        self.image_id = image_id
        self.removed = list(removed)


class JobStateError(CutoutServiceError):
    """The requested action is not valid for the job's current state."""
