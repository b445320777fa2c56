"""Write-once object storage for data files."""

import io
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from lakehouse_cdc.common.config import StorageConfig
from lakehouse_cdc.common.errors import ObjectExistsError, TransientIOError
from lakehouse_cdc.observability.logging_config import get_logger

logger = get_logger(__name__)


class ObjectStore(ABC):
    """Object storage where every path is written at most once."""

    @abstractmethod
    def put(self, path: str, data: bytes) -> str:
        """
        Create an object.

        Args:
            path: Object key relative to the store root
            data: Object content

        Returns:
            URI of the object, as referenced from table metadata

        Raises:
            ObjectExistsError: If the path already exists
            TransientIOError: On a storage failure
        """

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether an object exists."""

    def prepare(self) -> None:
        """Create whatever the store needs before the first put."""


class MinioObjectStore(ObjectStore):
    """S3-compatible object store backed by the MinIO client."""

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = False,
        client: Optional[Minio] = None,
    ) -> None:
        """
        Initialize MinIO object store.

        Args:
            endpoint: MinIO server endpoint (host:port)
            access_key: Access key
            secret_key: Secret key
            bucket: Bucket holding the warehouse
            secure: Whether to use HTTPS
            client: Preconfigured client (built from the arguments if omitted)
        """
        self.bucket = bucket
        self.client = client or Minio(
            endpoint=endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
        )

    def ensure_bucket(self, region: Optional[str] = None) -> None:
        """Create the bucket if it does not exist."""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket, location=region or "us-east-1")
                logger.info(f"Created bucket '{self.bucket}'")
        except (S3Error, HTTPError) as e:
            raise TransientIOError(f"Failed to ensure bucket '{self.bucket}': {e}", stage="storage") from e

    def prepare(self) -> None:
        self.ensure_bucket()

    def exists(self, path: str) -> bool:
        try:
            self.client.stat_object(self.bucket, path)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                return False
            raise TransientIOError(f"Failed to stat s3://{self.bucket}/{path}: {e}", stage="storage") from e
        except HTTPError as e:
            raise TransientIOError(f"Failed to stat s3://{self.bucket}/{path}: {e}", stage="storage") from e

    def put(self, path: str, data: bytes) -> str:
        if self.exists(path):
            raise ObjectExistsError(f"s3://{self.bucket}/{path} already exists", stage="storage")
        try:
            self.client.put_object(
                self.bucket,
                path,
                io.BytesIO(data),
                length=len(data),
                content_type="application/octet-stream",
            )
        except (S3Error, HTTPError) as e:
            raise TransientIOError(f"Failed to upload s3://{self.bucket}/{path}: {e}", stage="storage") from e
        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{path}")
        return f"s3://{self.bucket}/{path}"


class LocalObjectStore(ObjectStore):
    """Filesystem object store, for single-node setups and tests."""

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()

    def _full_path(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root not in full.parents:
            raise ValueError(f"Path escapes store root: {path}")
        return full

    def prepare(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return self._full_path(path).exists()

    def put(self, path: str, data: bytes) -> str:
        full = self._full_path(path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            with open(full, "xb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except FileExistsError as e:
            raise ObjectExistsError(f"{full} already exists", stage="storage") from e
        except OSError as e:
            raise TransientIOError(f"Failed to write {full}: {e}", stage="storage") from e
        return str(full)


def build_object_store(config: StorageConfig, **kwargs: Any) -> ObjectStore:
    """
    Create the object store selected by the storage settings.

    Args:
        config: Storage settings
        **kwargs: Passed to the store constructor

    Returns:
        Configured object store
    """
    if config.backend == "minio":
        return MinioObjectStore(
            endpoint=config.endpoint,
            access_key=config.access_key,
            secret_key=config.secret_key,
            bucket=config.bucket,
            secure=config.secure,
            **kwargs,
        )
    if config.backend == "local":
        return LocalObjectStore(config.local_root)
    raise ValueError(f"Unknown storage backend: {config.backend}")
