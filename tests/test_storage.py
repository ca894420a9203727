"""Tests for image hosting on object storage."""

import pytest
from botocore.exceptions import ClientError

from scriptflow.errors import UploadError
from scriptflow.services.storage import StorageService

FINGERPRINT = "ab" + "c" * 62


class FakeS3Client:
    def __init__(self, error=None):
        self.error = error
        self.uploads = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.error is not None:
            raise self.error
        self.uploads.append((bucket, key, fileobj.read(), ExtraArgs))

    def head_bucket(self, Bucket):
        return {}


@pytest.fixture
def storage(monkeypatch) -> StorageService:
    service = StorageService()
    monkeypatch.setattr(service, "_client", FakeS3Client())
    monkeypatch.setattr(service, "_bucket", "scripts-test")
    return service


def test_paths_are_sharded_by_fingerprint(storage):
    assert storage._generate_path(FINGERPRINT, "script.png") == f"scripts/ab/{FINGERPRINT}/script.png"


@pytest.mark.asyncio
async def test_upload_returns_public_url(storage):
    url = await storage.upload_image(b"\x89PNG data", FINGERPRINT, timeout=5)

    bucket, key, body, extra = storage._client.uploads[0]
    assert bucket == "scripts-test"
    assert key == f"scripts/ab/{FINGERPRINT}/script.png"
    assert body == b"\x89PNG data"
    assert extra["ContentType"] == "image/png"
    assert url.endswith(f"/scripts/ab/{FINGERPRINT}/script.png")


@pytest.mark.asyncio
async def test_storage_failure_is_a_retryable_upload_error(storage):
    storage._client.error = ClientError(
        {"Error": {"Code": "NoSuchBucket", "Message": "missing"}}, "PutObject"
    )

    with pytest.raises(UploadError) as exc_info:
        await storage.upload_image(b"png", FINGERPRINT, timeout=5)
    assert exc_info.value.retryable


def test_health_check(storage):
    assert storage.health_check() is True
