"""
Blob storage for pipeline artifacts.

Objects live under `{folder}/{uuid}.{ext}` in an S3-compatible bucket
(R2, Timeweb, MinIO). boto3 calls run in a worker thread so uploads never
stall the event loop.
"""

import asyncio
import logging
from typing import Optional
from uuid import uuid4

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, is_mock
from .errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "application/json": "json",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "video/mp4": "mp4",
}


def extension_for(mime_type: str) -> str:
    """File extension for a MIME type, falling back to its subtype, then `bin`."""
    clean = mime_type.split(";")[0].strip().lower()
    if clean in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[clean]
    subtype = clean.split("/")[1] if "/" in clean else ""
    return subtype.split("+")[0] or "bin"


def object_key(folder: str, mime_type: str) -> str:
    return f"{folder}/{uuid4()}.{extension_for(mime_type)}"


def _validate(data: bytes, mime_type: str) -> None:
    if not data:
        raise ValidationError("File buffer is empty")
    if not mime_type or "/" not in mime_type:
        raise ValidationError("Invalid MIME type format")


class BlobStorage:
    """upload(bytes, mime, folder) -> public URL; delete(url)."""

    async def upload(self, data: bytes, mime_type: str, folder: str = "uploads") -> str:
        raise NotImplementedError

    async def delete(self, url: str) -> None:
        raise NotImplementedError


class S3Storage(BlobStorage):

    def __init__(self, settings: Settings):
        self.bucket = settings.s3_bucket
        self.public_url = (
            settings.s3_public_url or f"{settings.s3_endpoint.rstrip('/')}/{self.bucket}"
        ).rstrip("/")
        self._s3 = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint or None,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            config=BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=10,
                read_timeout=60,
            ),
            region_name=settings.s3_region,
        )

    def _key_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.public_url}/"
        return url[len(prefix):] if url.startswith(prefix) else None

    async def upload(self, data: bytes, mime_type: str, folder: str = "uploads") -> str:
        _validate(data, mime_type)
        key = object_key(folder, mime_type)
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed for key={key}: {e}")
            raise ProviderError(f"Storage upload failed: {e}", "s3") from e

        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to storage: {public_url}")
        return public_url

    async def delete(self, url: str) -> None:
        key = self._key_from_url(url)
        if not key:
            raise ValidationError(f"URL is not inside bucket {self.bucket}: {url}")
        try:
            await asyncio.to_thread(self._s3.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Storage delete failed: {e}", "s3") from e
        logger.info(f"Deleted from storage: {key}")


class MemoryStorage(BlobStorage):
    """Mock-mode storage keeping objects in process memory."""

    BASE_URL = "https://mock-storage.local"

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, data: bytes, mime_type: str, folder: str = "uploads") -> str:
        _validate(data, mime_type)
        key = object_key(folder, mime_type)
        self.objects[key] = (data, mime_type)
        return f"{self.BASE_URL}/{key}"

    async def delete(self, url: str) -> None:
        self.objects.pop(url.replace(f"{self.BASE_URL}/", "", 1), None)

    def get(self, url: str) -> Optional[bytes]:
        entry = self.objects.get(url.replace(f"{self.BASE_URL}/", "", 1))
        return entry[0] if entry else None


def build_storage(settings: Settings) -> BlobStorage:
    if is_mock(settings.s3_access_key):
        logger.warning("S3_ACCESS_KEY is mock — using in-memory blob storage")
        return MemoryStorage()
    return S3Storage(settings)
