"""Storage backends for the physical delete/anonymize call.

The engine never touches bytes directly; it calls a StorageBackend with the
file's opaque storage path. All backends are async so the executor can bound
every call with a timeout.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import Protocol

import anyio
import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from retention_engine.core.config import settings
from retention_engine.core.errors import StorageFailure

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    """Collaborator performing the destructive storage operation."""

    supports_anonymize: bool

    async def delete(self, path: str) -> None: ...

    async def anonymize(self, path: str) -> None: ...


class InMemoryStorageBackend:
    """Dict-backed storage, for local development and tests."""

    def __init__(self, *, supports_anonymize: bool = True):
        self.supports_anonymize = supports_anonymize
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.anonymized: list[str] = []
        self.fail_paths: set[str] = set()
        self.delay_seconds: float = 0.0

    def put(self, path: str, data: bytes = b"") -> None:
        self.objects[path] = data

    async def delete(self, path: str) -> None:
        if self.delay_seconds:
            await anyio.sleep(self.delay_seconds)
        if path in self.fail_paths:
            raise StorageFailure(f"Simulated storage failure for {path}")
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def anonymize(self, path: str) -> None:
        if not self.supports_anonymize:
            raise StorageFailure("Backend does not support anonymization")
        if self.delay_seconds:
            await anyio.sleep(self.delay_seconds)
        if path in self.fail_paths:
            raise StorageFailure(f"Simulated storage failure for {path}")
        if path in self.objects:
            self.objects[path] = b""
        self.anonymized.append(path)


class LocalStorageBackend:
    """Files under a base directory (dev only). Deleting a missing file is a no-op."""

    def __init__(self, base_dir: str, *, supports_anonymize: bool = False):
        self.base_dir = os.path.abspath(base_dir)
        self.supports_anonymize = supports_anonymize

    def _resolve(self, path: str) -> str:
        full_path = os.path.abspath(os.path.join(self.base_dir, path))
        if os.path.commonpath([full_path, self.base_dir]) != self.base_dir:
            raise StorageFailure(f"Path escapes storage root: {path}")
        return full_path

    def _remove(self, full_path: str) -> None:
        if os.path.exists(full_path):
            os.remove(full_path)

    def _truncate(self, full_path: str) -> None:
        if os.path.exists(full_path):
            with open(full_path, "wb"):
                pass

    async def delete(self, path: str) -> None:
        full_path = self._resolve(path)
        try:
            await anyio.to_thread.run_sync(self._remove, full_path, abandon_on_cancel=True)
        except OSError as exc:
            raise StorageFailure(f"Local delete failed for {path}: {exc}") from exc

    async def anonymize(self, path: str) -> None:
        if not self.supports_anonymize:
            raise StorageFailure("Backend does not support anonymization")
        full_path = self._resolve(path)
        try:
            await anyio.to_thread.run_sync(self._truncate, full_path, abandon_on_cancel=True)
        except OSError as exc:
            raise StorageFailure(f"Local anonymize failed for {path}: {exc}") from exc


def get_s3_client(
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
) -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints)."""
    endpoint = (endpoint_url or settings.S3_ENDPOINT_URL or "").rstrip("/") or None
    return boto3.client(
        "s3",
        region_name=region or settings.S3_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=endpoint,
    )


class S3StorageBackend:
    """S3 (or compatible) bucket. delete_object is idempotent on S3."""

    supports_anonymize = False

    def __init__(self, bucket: str, client: BaseClient | None = None):
        if not bucket:
            raise ValueError("S3_BUCKET must be set for S3 storage")
        self.bucket = bucket
        self.client = client or get_s3_client()

    async def delete(self, path: str) -> None:
        call = functools.partial(self.client.delete_object, Bucket=self.bucket, Key=path)
        try:
            await anyio.to_thread.run_sync(call, abandon_on_cancel=True)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"S3 delete failed for {path}: {exc}") from exc

    async def anonymize(self, path: str) -> None:
        raise StorageFailure("S3 backend does not support anonymization")


@functools.lru_cache(maxsize=1)
def get_storage_backend() -> StorageBackend:
    """Build the backend selected by STORAGE_BACKEND."""
    backend = settings.STORAGE_BACKEND.strip().lower()
    if backend == "s3":
        return S3StorageBackend(settings.S3_BUCKET)
    if backend == "memory":
        logger.warning("Using in-memory storage backend; deletions are not persisted")
        return InMemoryStorageBackend()
    if backend == "local":
        return LocalStorageBackend(
            settings.STORAGE_LOCAL_DIR,
            supports_anonymize=settings.STORAGE_LOCAL_ANONYMIZE,
        )
    raise ValueError(f"Unsupported storage backend: {settings.STORAGE_BACKEND}")
