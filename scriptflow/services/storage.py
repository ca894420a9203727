"""Object storage service for rendered script images."""

import asyncio
import logging
from io import BytesIO
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from scriptflow.config import get_settings
from scriptflow.errors import UploadError

settings = get_settings()
logger = logging.getLogger(__name__)


class StorageService:
    """Service for hosting images on object storage (MinIO/S3)."""

    def __init__(self):
        self._client = None
        self._bucket = settings.storage_bucket

    @property
    def endpoint_url(self) -> str:
        return f"{'https' if settings.storage_use_ssl else 'http'}://{settings.storage_endpoint}"

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=settings.storage_access_key,
                aws_secret_access_key=settings.storage_secret_key,
                config=Config(signature_version="s3v4"),
            )
            self._ensure_bucket()
        return self._client

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist."""
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)

    def _generate_path(self, fingerprint: str, filename: str) -> str:
        return f"scripts/{fingerprint[:2]}/{fingerprint}/{filename}"

    def public_url(self, path: str) -> str:
        base = settings.storage_public_base_url or f"{self.endpoint_url}/{self._bucket}"
        return f"{base.rstrip('/')}/{path}"

    def put_image(self, content: bytes, fingerprint: str, filename: str = "script.png") -> str:
        """Upload PNG bytes. Returns the durable public URL."""
        path = self._generate_path(fingerprint, filename)
        self.client.upload_fileobj(
            BytesIO(content),
            self._bucket,
            path,
            ExtraArgs={"ContentType": "image/png", "CacheControl": "public, max-age=31536000"},
        )
        return self.public_url(path)

    async def upload_image(
        self,
        content: bytes,
        fingerprint: str,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Upload a rendered image without blocking the event loop.

        Raises:
            UploadError: retryable, on timeout or any storage failure.
        """
        timeout = timeout or settings.upload_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.put_image, content, fingerprint), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise UploadError(f"Image upload timed out after {timeout}s") from e
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"Image upload failed: {e}") from e

    def health_check(self) -> bool:
        """Check if storage is accessible."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
            return True
        except Exception:
            return False


# Singleton instance
storage_service = StorageService()
