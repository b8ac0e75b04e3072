"""
Object storage client for marketplace uploads.

Supports Cloudflare R2 (S3-compatible) with mock mode for local development.
The broker never streams brokered uploads through this client; it only asks
it for presigned write URLs. The proxy path and deletions do go through it,
using the process-wide static credential configured here.

Mock mode stores objects in memory, enabling API testing without
provisioning actual object storage.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote, unquote, urlparse

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


@dataclass
class StorageConfig:
    """
    Configuration for R2/S3-compatible storage.

    `public_base_url` is where stored objects are served from (a CDN or
    the bucket's public domain). Without it, URLs point at the endpoint.
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint_url: str
    region: str = "auto"  # R2 uses 'auto' for region
    public_base_url: Optional[str] = None


class StorageClient(Protocol):
    """
    Protocol for object storage operations.

    Using a protocol means tests can provide mocks and we can
    swap storage backends without changing dependent code.
    """

    async def generate_upload_url(
        self,
        pathname: str,
        content_type: str,
        expiry_seconds: int,
        content_length: Optional[int] = None,
    ) -> str:
        """Presigned PUT URL bound to one pathname, content type and (if known) size."""
        ...

    async def put_object(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
    ) -> str:
        """Upload object and return storage path."""
        ...

    async def delete_object(self, locator: str) -> None:
        """Delete object by URL or storage path. Missing objects are not an error."""
        ...

    def public_url(self, pathname: str) -> str:
        """URL the object is served from."""
        ...

    def pathname_for(self, locator: str) -> str:
        """Storage path for a URL or storage path."""
        ...


def _pathname_from_url(locator: str, base_url: Optional[str]) -> str:
    if base_url and locator.startswith(base_url.rstrip("/") + "/"):
        return unquote(locator[len(base_url.rstrip("/")) + 1:])

    parsed = urlparse(locator)
    if parsed.scheme and parsed.netloc:
        return unquote(parsed.path.lstrip("/"))

    return locator.lstrip("/")


class R2StorageClient:
    """
    Cloudflare R2 object storage client.

    Uses boto3 because R2 is S3-compatible. This abstraction means
    we could swap to actual S3, MinIO, or other S3-compatible storage
    with minimal changes.

    All methods are async to match the Protocol even though boto3 is
    synchronous.
    """

    def __init__(self, config: StorageConfig) -> None:
        try:
            import boto3
            from botocore.config import Config
        except ImportError:
            raise ImportError(
                "boto3 is required for R2 storage. Install with: pip install boto3"
            )

        self._config = config

        # R2 requires v4 signatures and has specific endpoint patterns
        boto_config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
        )

        self._s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )

        logger.info(
            "Initialized R2 storage client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url,
            }
        )

    async def generate_upload_url(
        self,
        pathname: str,
        content_type: str,
        expiry_seconds: int,
        content_length: Optional[int] = None,
    ) -> str:
        """
        Generate a presigned PUT URL for a brokered upload.

        The Content-Type is part of the signature, so the client has to
        send exactly the type the token was issued for. A declared size is
        signed as Content-Length the same way.
        """
        params = {
            'Bucket': self._config.bucket_name,
            'Key': pathname,
            'ContentType': content_type,
        }
        if content_length is not None:
            params['ContentLength'] = content_length

        try:
            return self._s3_client.generate_presigned_url(
                'put_object',
                Params=params,
                ExpiresIn=expiry_seconds,
                HttpMethod='PUT',
            )
        except Exception as e:
            logger.error(
                "Failed to generate presigned upload URL",
                extra={"storage_path": pathname, "error": str(e)}
            )
            raise StorageError(f"Presigned URL generation failed: {e}")

    async def put_object(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
    ) -> str:
        """Upload an object with the static credential (proxy path)."""
        try:
            self._s3_client.put_object(
                Bucket=self._config.bucket_name,
                Key=pathname,
                Body=data,
                ContentType=content_type,
            )

            logger.info(
                "Uploaded object",
                extra={"storage_path": pathname, "size_bytes": len(data)}
            )

            return pathname

        except Exception as e:
            logger.error(
                "Failed to upload object",
                extra={"storage_path": pathname, "error": str(e)}
            )
            raise StorageError(f"Upload failed: {e}")

    async def delete_object(self, locator: str) -> None:
        """
        Delete an object.

        S3 DeleteObject succeeds for keys that don't exist, which is what
        makes deletion idempotent.
        """
        pathname = self.pathname_for(locator)

        try:
            self._s3_client.delete_object(
                Bucket=self._config.bucket_name,
                Key=pathname,
            )

            logger.info("Deleted object", extra={"storage_path": pathname})

        except Exception as e:
            logger.error(
                "Failed to delete object",
                extra={"storage_path": pathname, "error": str(e)}
            )
            raise StorageError(f"Delete failed: {e}")

    def public_url(self, pathname: str) -> str:
        base = self._config.public_base_url or (
            f"{self._config.endpoint_url.rstrip('/')}/{self._config.bucket_name}"
        )
        return f"{base.rstrip('/')}/{quote(pathname)}"

    def pathname_for(self, locator: str) -> str:
        base = self._config.public_base_url or (
            f"{self._config.endpoint_url.rstrip('/')}/{self._config.bucket_name}"
        )
        return _pathname_from_url(locator, base)


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

MOCK_BASE_URL = "mock://storage"


class MockStorageClient:
    """
    In-memory storage for local development.

    This mock enables testing the full API flow without provisioning
    real object storage. Objects are stored in a dictionary and "URLs"
    are mock URIs.
    """

    def __init__(self) -> None:
        # {storage_path: (bytes, content_type)}
        self._objects: dict[str, tuple[bytes, str]] = {}
        logger.info("Initialized mock storage client (in-memory)")

    async def generate_upload_url(
        self,
        pathname: str,
        content_type: str,
        expiry_seconds: int,
        content_length: Optional[int] = None,
    ) -> str:
        url = f"{MOCK_BASE_URL}/{quote(pathname)}?expires={expiry_seconds}"
        if content_length is not None:
            url += f"&content_length={content_length}"
        return url

    async def put_object(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
    ) -> str:
        """Store object in memory."""
        self._objects[pathname] = (data, content_type)

        logger.debug(
            "Stored object in mock storage",
            extra={"storage_path": pathname, "size_bytes": len(data)}
        )

        return pathname

    async def delete_object(self, locator: str) -> None:
        """Delete object from memory. Unknown paths are ignored."""
        pathname = self.pathname_for(locator)
        self._objects.pop(pathname, None)

        logger.debug("Deleted object from mock storage", extra={"storage_path": pathname})

    def public_url(self, pathname: str) -> str:
        return f"{MOCK_BASE_URL}/{quote(pathname)}"

    def pathname_for(self, locator: str) -> str:
        return _pathname_from_url(locator, MOCK_BASE_URL)

    # Helper methods for testing
    def _get_object(self, pathname: str) -> Optional[tuple[bytes, str]]:
        return self._objects.get(pathname)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
) -> StorageClient:
    """
    Create storage client based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return mock client for testing

    Returns:
        StorageClient implementation (R2 or Mock)
    """
    if mock_mode:
        return MockStorageClient()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return R2StorageClient(config)
