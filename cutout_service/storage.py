"""
Object storage for original and processed images.

Any S3-compatible endpoint works (the backend platform's storage gateway,
Cloudflare R2, MinIO). Public URLs are built from `STORAGE_PUBLIC_BASE_URL`
as `<base>/<bucket>/<key>`; without it a presigned URL is returned.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Optional
from urllib.parse import quote, unquote, urljoin, urlparse

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)

PRESIGNED_URL_TTL = 3600


class ObjectStorage(ABC):
    @abstractmethod
    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Store `data` and return the object key."""

    @abstractmethod
    def get_public_url(self, bucket: str, key: str) -> str:
        pass

    @abstractmethod
    def remove(self, bucket: str, key: str) -> None:
        pass


def key_from_url(url: str, bucket: str) -> str:
    """
    Recover an object key from a URL produced by `get_public_url`.

    Keys are percent-encoded in those URLs, so characters such as `#`, `?`
    and `%` in an uploaded filename survive the round trip.

    The key is everything after the first `/<bucket>/` path segment. URLs
    that don't name the bucket fall back to the last two path segments,
    which is the `<user_id>/<file>` layout used for uploads.
    """
    path = unquote(urlparse(url).path)
    marker = f"/{bucket}/"
    if marker in path:
        return path.split(marker, 1)[1]
    return "/".join(path.rstrip("/").split("/")[-2:])


class S3ObjectStorage(ObjectStorage):
    def __init__(self, client, public_base_url: Optional[str] = None):
        self.client = client
        self.public_base_url = public_base_url

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "S3ObjectStorage":
        settings = settings or config.get_settings()
        if not settings.storage_configured:
            raise ConfigurationError("Storage configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        client = session.client(
            service_name="s3",
            aws_access_key_id=settings.storage_access_key_id,
            aws_secret_access_key=settings.storage_secret_access_key,
            endpoint_url=settings.storage_endpoint,
            region_name=settings.storage_region,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        return cls(client, public_base_url=settings.storage_public_base_url)

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {bucket}/{key} failed: {exc}") from exc
        logger.info("Uploaded %d bytes to %s/%s", len(data), bucket, key)
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        if self.public_base_url:
            return urljoin(self.public_base_url.rstrip("/") + "/", quote(f"{bucket}/{key}"))
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=PRESIGNED_URL_TTL,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Could not build URL for {bucket}/{key}: {exc}") from exc

    def remove(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Removal of {bucket}/{key} failed: {exc}") from exc
        logger.info("Removed %s/%s", bucket, key)
