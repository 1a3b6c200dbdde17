"""File storage backends used to write output files into volumes.

Supports: local filesystem, S3 and other S3-compatible storage.
"""

import asyncio
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage backend configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    local_path: str = "./storage"
    subfolder: str = ""


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to storage."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a file from storage."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a file exists in storage."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        path = (self.base_path / key.lstrip("/")).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the volume root: {key}")
        return path

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write a file object to local storage, replacing any existing file."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(dest_path, "wb") as f:
                shutil.copyfileobj(fileobj, f)

            return StorageResult(
                success=True,
                key=key,
                file_size=dest_path.stat().st_size,
            )
        except (OSError, ValueError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def delete(self, key: str) -> bool:
        """Delete a file from local storage."""
        try:
            file_path = self._get_full_path(key)
        except ValueError:
            return False
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    def exists(self, key: str) -> bool:
        try:
            return self._get_full_path(key).exists()
        except ValueError:
            return False


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key,
                "aws_secret_access_key": self.config.secret_key,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _object_key(self, key: str) -> str:
        subfolder = self.config.subfolder.strip("/")
        key = key.strip("/")
        return f"{subfolder}/{key}" if subfolder else key

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()

            fileobj.seek(0, 2)
            file_size = fileobj.tell()
            fileobj.seek(0)

            response = client.put_object(
                Bucket=self.config.bucket,
                Key=self._object_key(key),
                Body=fileobj,
                ContentType=content_type,
            )

            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def delete(self, key: str) -> bool:
        """Delete a file from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().delete_object(
                Bucket=self.config.bucket, Key=self._object_key(key)
            )
            return True
        except (BotoCoreError, ClientError):
            return False

    def exists(self, key: str) -> bool:
        """Check if a file exists in S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_object(
                Bucket=self.config.bucket, Key=self._object_key(key)
            )
            return True
        except (BotoCoreError, ClientError):
            return False


def create_backend(config: StorageConfig) -> StorageBackend:
    """Create the storage backend matching ``config.backend``.

    Raises:
        ValueError: If the backend type is not supported
    """
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class StorageService:
    """Async wrapper running blocking backend calls in a worker thread."""

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    async def upload_file(
        self,
        key: str,
        fileobj: BinaryIO,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload content to storage, replacing any existing file at ``key``.

        Args:
            key: Storage key/path
            fileobj: File object to read content from
            content_type: MIME type

        Returns:
            StorageResult: Upload result
        """
        return await asyncio.to_thread(self._backend.upload_fileobj, fileobj, key, content_type)

    async def delete_file(self, key: str) -> bool:
        """Delete a file from storage."""
        return await asyncio.to_thread(self._backend.delete, key)

    async def exists(self, key: str) -> bool:
        """Check if a file exists."""
        return await asyncio.to_thread(self._backend.exists, key)
