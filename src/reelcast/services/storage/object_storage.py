"""Key-addressed object storage for input, overlay and output files.

``S3ObjectStorage`` talks to S3-compatible services (AWS S3, Cloudflare R2,
MinIO) through boto3; ``LocalObjectStorage`` keeps objects on the local
filesystem for development and tests.
"""

import abc
import asyncio
import secrets
import shutil
import string
import time
from pathlib import Path
from typing import Literal

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from reelcast.core.config import Settings
from reelcast.services.exceptions import StorageError, StorageObjectNotFoundError

logger = structlog.get_logger(__name__)

KeyKind = Literal["input", "output", "overlay"]

VIDEO_CACHE_CONTROL = "public, max-age=31536000"
DEFAULT_CACHE_CONTROL = "public, max-age=3600"
_KEY_ALPHABET = string.ascii_lowercase + string.digits


def generate_video_key(job_id: str, kind: KeyKind) -> str:
    """Build a unique key: ``videos/<jobId>/<kind>-<ms>-<random>.<ext>``."""
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(7))
    extension = "png" if kind == "overlay" else "mp4"
    return f"videos/{job_id}/{kind}-{timestamp}-{suffix}.{extension}"


class ObjectStorage(abc.ABC):
    """Blob store used by the pipeline and the upload endpoint."""

    @abc.abstractmethod
    async def download(self, key: str, destination: str) -> None:
        """Copy the object at ``key`` to a local file.

        Raises:
            StorageObjectNotFoundError: If the key does not exist
            StorageError: On any other storage failure
        """

    @abc.abstractmethod
    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Store ``data`` under ``key``, replacing any existing object."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``; deleting a missing key is not an error."""

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abc.abstractmethod
    async def presigned_download_url(self, key: str, expires_in: int = 3600) -> str:
        """Return a time-limited URL that downloads ``key`` without credentials."""


class S3ObjectStorage(ObjectStorage):
    """boto3-backed storage; blocking SDK calls run in worker threads."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        force_path_style: bool = False,
    ):
        """Initialize the S3 client.

        Args:
            bucket: Bucket holding every object
            region: Bucket region (R2 accepts "auto")
            endpoint_url: Custom endpoint for R2/MinIO; forces path-style addressing
            access_key_id: Access key (None = default boto3 credential chain)
            secret_access_key: Secret key
            force_path_style: Use ``endpoint/bucket/key`` URLs
        """
        self.bucket = bucket
        addressing = "path" if force_path_style or endpoint_url else "auto"
        self.client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(s3={"addressing_style": addressing}, signature_version="s3v4"),
        )

    async def download(self, key: str, destination: str) -> None:
        try:
            await asyncio.to_thread(self.client.download_file, self.bucket, key, destination)
        except ClientError as e:
            if _is_not_found(e):
                raise StorageObjectNotFoundError(f"Object not found: {key}") from e
            raise StorageError(f"Failed to download {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to download {key}: {e}") from e

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        cache_control = (
            VIDEO_CACHE_CONTROL if content_type.startswith("video/") else DEFAULT_CACHE_CONTROL
        )
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
                CacheControl=cache_control,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.info("storage.uploaded", key=key, size=len(data), content_type=content_type)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise StorageError(f"Failed to check {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to check {key}: {e}") from e
        return True

    async def presigned_download_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign download URL for {key}: {e}") from e


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in ("404", "NoSuchKey", "NotFound") or status == 404


class LocalObjectStorage(ObjectStorage):
    """Filesystem storage rooted at ``base_dir``; keys map to relative paths."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if not path.is_relative_to(self.base_dir):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    async def download(self, key: str, destination: str) -> None:
        source = self._path(key)
        if not source.is_file():
            raise StorageObjectNotFoundError(f"Object not found: {key}")
        try:
            await asyncio.to_thread(shutil.copyfile, source, destination)
        except OSError as e:
            raise StorageError(f"Failed to download {key}: {e}") from e

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.info("storage.uploaded", key=key, size=len(data), content_type=content_type)

    async def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def presigned_download_url(self, key: str, expires_in: int = 3600) -> str:
        path = self._path(key)
        if not path.is_file():
            raise StorageObjectNotFoundError(f"Object not found: {key}")
        return path.as_uri()


def create_storage(settings: Settings) -> ObjectStorage:
    """Build the storage backend selected by ``STORAGE_BACKEND``."""
    if settings.storage_backend == "s3":
        return S3ObjectStorage(
            bucket=settings.storage_bucket,
            region=settings.storage_region,
            endpoint_url=settings.storage_endpoint,
            access_key_id=settings.storage_access_key_id,
            secret_access_key=settings.storage_secret_access_key,
            force_path_style=settings.storage_force_path_style,
        )
    return LocalObjectStorage(settings.local_storage_path)
