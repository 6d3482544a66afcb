from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from retention_engine.core.config import settings
from retention_engine.core.errors import StorageFailure
from retention_engine.services import storage


class _FakeS3Client:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[dict[str, str]] = []

    def delete_object(self, **kwargs):  # noqa: ANN003
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return {}


# =============================================================================
# Local backend
# =============================================================================

@pytest.mark.asyncio
async def test_local_delete_removes_file(tmp_path):
    target = tmp_path / "document" / "doc-1" / "a.bin"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"payload")
    backend = storage.LocalStorageBackend(str(tmp_path))

    await backend.delete("document/doc-1/a.bin")

    assert not target.exists()


@pytest.mark.asyncio
async def test_local_delete_missing_file_is_noop(tmp_path):
    backend = storage.LocalStorageBackend(str(tmp_path))

    await backend.delete("document/doc-1/missing.bin")


@pytest.mark.asyncio
async def test_local_rejects_paths_outside_root(tmp_path):
    backend = storage.LocalStorageBackend(str(tmp_path / "root"))

    with pytest.raises(StorageFailure):
        await backend.delete("../outside.bin")


@pytest.mark.asyncio
async def test_local_anonymize_truncates_when_enabled(tmp_path):
    target = tmp_path / "a.bin"
    target.write_bytes(b"payload")

    with pytest.raises(StorageFailure):
        await storage.LocalStorageBackend(str(tmp_path)).anonymize("a.bin")

    await storage.LocalStorageBackend(str(tmp_path), supports_anonymize=True).anonymize("a.bin")
    assert target.read_bytes() == b""


# =============================================================================
# In-memory backend
# =============================================================================

@pytest.mark.asyncio
async def test_memory_backend_records_and_fails_on_demand():
    backend = storage.InMemoryStorageBackend()
    backend.put("a.bin", b"x")
    backend.put("b.bin", b"y")
    backend.fail_paths.add("b.bin")

    await backend.delete("a.bin")
    with pytest.raises(StorageFailure):
        await backend.delete("b.bin")

    assert backend.deleted == ["a.bin"]
    assert "b.bin" in backend.objects


# =============================================================================
# S3 backend
# =============================================================================

@pytest.mark.asyncio
async def test_s3_delete_calls_delete_object():
    client = _FakeS3Client()
    backend = storage.S3StorageBackend("retention-bucket", client=client)

    await backend.delete("document/doc-1/a.bin")

    assert client.calls == [{"Bucket": "retention-bucket", "Key": "document/doc-1/a.bin"}]


@pytest.mark.asyncio
async def test_s3_client_error_becomes_storage_failure():
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DeleteObject")
    backend = storage.S3StorageBackend("retention-bucket", client=_FakeS3Client(error))

    with pytest.raises(StorageFailure):
        await backend.delete("document/doc-1/a.bin")


@pytest.mark.asyncio
async def test_s3_does_not_anonymize():
    backend = storage.S3StorageBackend("retention-bucket", client=_FakeS3Client())

    assert backend.supports_anonymize is False
    with pytest.raises(StorageFailure):
        await backend.anonymize("a.bin")


def test_s3_backend_requires_bucket():
    with pytest.raises(ValueError):
        storage.S3StorageBackend("", client=_FakeS3Client())


def test_get_s3_client_passes_endpoint(monkeypatch):
    captured: dict[str, object] = {}

    def _fake_boto3_client(service_name, **kwargs):  # noqa: ANN001
        captured["service_name"] = service_name
        captured["kwargs"] = kwargs
        return object()

    monkeypatch.setattr(storage.boto3, "client", _fake_boto3_client)
    monkeypatch.setattr(settings, "S3_ENDPOINT_URL", "http://minio:9000/", raising=False)
    monkeypatch.setattr(settings, "S3_REGION", "us-east-1", raising=False)

    storage.get_s3_client()

    kwargs = captured["kwargs"]
    assert captured["service_name"] == "s3"
    assert kwargs["endpoint_url"] == "http://minio:9000"
    assert kwargs["region_name"] == "us-east-1"


def test_get_storage_backend_selects_configured_backend(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "local", raising=False)
    monkeypatch.setattr(settings, "STORAGE_LOCAL_DIR", str(tmp_path), raising=False)
    storage.get_storage_backend.cache_clear()
    try:
        backend = storage.get_storage_backend()
        assert isinstance(backend, storage.LocalStorageBackend)
    finally:
        storage.get_storage_backend.cache_clear()


def test_get_storage_backend_rejects_unknown(monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "ftp", raising=False)
    storage.get_storage_backend.cache_clear()
    try:
        with pytest.raises(ValueError):
            storage.get_storage_backend()
    finally:
        storage.get_storage_backend.cache_clear()
