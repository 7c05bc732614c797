"""
Blob storage for page artifacts, merged outputs and layout images.

This module provides two interchangeable back ends:
- S3BlobStore: objects in an S3 bucket, with presigned download URLs
- LocalBlobStore: files under a local directory, for development and tests

Both expose put/get/head/presign. Driver errors surface as StorageFailure so
the workers can mark the owning job failed.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import StorageFailure
from .utils import ensure_directory

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class StoredBlob:
    key: str
    url: str


@dataclass(frozen=True)
class BlobObject:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class BlobHead:
    size: int
    content_type: str


class BlobStore(Protocol):
    def put(self, data: bytes, content_type: str, prefix: str) -> StoredBlob: ...

    def get(self, key: str) -> BlobObject: ...

    def head(self, key: str) -> BlobHead: ...

    def presign(self, key: str, expires_in: int = 60) -> str: ...


def _new_key(prefix: str, content_type: str) -> str:
    extension = mimetypes.guess_extension(content_type) or ""
    return f"{prefix}{uuid4().hex}{extension}"


class S3BlobStore:
    """
    Blob store backed by an S3 bucket.

    The boto3 client is created lazily so that importing the module never
    needs AWS credentials.
    """

    def __init__(self, bucket: str, region: Optional[str] = None, client=None) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def put(self, data: bytes, content_type: str, prefix: str) -> StoredBlob:
        """
        Upload bytes under a fresh key.

        Args:
            data: Object body
            content_type: MIME type stored with the object
            prefix: Key prefix, e.g. "generated/pages/"

        Returns:
            StoredBlob with the key and a plain object URL

        Raises:
            StorageFailure: If the upload fails
        """
        key = _new_key(prefix, content_type)
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"S3 upload of {key} failed: {exc}") from exc
        logger.debug(f"Uploaded s3://{self.bucket}/{key} ({len(data)} bytes)")
        return StoredBlob(key=key, url=self._object_url(key))

    def get(self, key: str) -> BlobObject:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"S3 download of {key} failed: {exc}") from exc
        return BlobObject(data=body, content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE)

    def head(self, key: str) -> BlobHead:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"S3 head of {key} failed: {exc}") from exc
        return BlobHead(
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
        )

    def presign(self, key: str, expires_in: int = 60) -> str:
        """
        Generate a presigned URL for downloading an object.

        Args:
            key: Object key
            expires_in: URL lifetime in seconds

        Returns:
            Presigned URL string
        """
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"Presigning {key} failed: {exc}") from exc
        logger.debug(f"Generated presigned URL for {key} (expires in {expires_in}s)")
        return url

    def _object_url(self, key: str) -> str:
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


class LocalBlobStore:
    """Blob store that keeps objects as files under a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root)).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not str(path).startswith(str(self.root)):
            raise StorageFailure(f"Key escapes storage root: {key}")
        return path

    def put(self, data: bytes, content_type: str, prefix: str) -> StoredBlob:
        key = _new_key(prefix, content_type)
        path = self._path(key)
        try:
            ensure_directory(path.parent)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageFailure(f"Writing {key} failed: {exc}") from exc
        return StoredBlob(key=key, url=path.as_uri())

    def get(self, key: str) -> BlobObject:
        path = self._path(key)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise StorageFailure(f"Reading {key} failed: {exc}") from exc
        content_type, _ = mimetypes.guess_type(path.name)
        return BlobObject(data=data, content_type=content_type or DEFAULT_CONTENT_TYPE)

    def head(self, key: str) -> BlobHead:
        path = self._path(key)
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise StorageFailure(f"Stat of {key} failed: {exc}") from exc
        content_type, _ = mimetypes.guess_type(path.name)
        return BlobHead(size=size, content_type=content_type or DEFAULT_CONTENT_TYPE)

    def presign(self, key: str, expires_in: int = 60) -> str:
        # Local files have no expiry; the URI is only meaningful on this host.
        return self._path(key).as_uri()


def create_blob_store(settings: DictConfig) -> BlobStore:
    storage = settings.storage
    if storage.backend == "s3":
        return S3BlobStore(bucket=storage.bucket, region=storage.region)
    if storage.backend == "local":
        return LocalBlobStore(Path(storage.local_root))
    raise ValueError(f"Unknown storage backend: {storage.backend}")
