"""
Proxy uploads: the server receives the bytes and writes them itself.

This path uses the process-wide static storage credential and has no
token, no expiry and no completion handshake. It is deliberately kept
apart from the brokered flow and does not import any token code. It
does run the same policy checks, using what was actually received: the
declared MIME type of the uploaded part and the real byte count.
"""

import logging
from typing import Optional, Protocol
from uuid import uuid4

from .models import ProxyUploadResult, UploadRequest
from .policy import PolicyValidator

logger = logging.getLogger(__name__)


class ObjectWriter(Protocol):
    """The part of the storage client the proxy path needs."""

    async def put_object(self, pathname: str, data: bytes, content_type: str) -> str:
        """Write an object and return its storage path."""
        ...

    def public_url(self, pathname: str) -> str:
        ...


def randomize_filename(pathname: str) -> str:
    """
    Replace the filename with a random one, keeping folder and extension.

    "products/My Photo.PNG" -> "products/<uuid4>.PNG"
    """
    folder, _, filename = pathname.rpartition("/")
    extension = filename.rsplit(".", 1)[-1] if "." in filename else ""
    new_name = f"{uuid4()}.{extension}" if extension else str(uuid4())
    return f"{folder}/{new_name}" if folder else new_name


class ProxyUploader:
    """Validates received bytes and re-uploads them with the static credential."""

    def __init__(self, validator: PolicyValidator, storage: ObjectWriter) -> None:
        self._validator = validator
        self._storage = storage

    async def upload(
        self,
        data: bytes,
        pathname: str,
        content_type: Optional[str],
        add_random_suffix: bool = False,
    ) -> ProxyUploadResult:
        """
        Upload bytes on the caller's behalf.

        Raises PolicyRejection before anything is written if the bytes
        would not have been allowed through the brokered path either.
        """
        target = randomize_filename(pathname) if add_random_suffix and pathname else pathname

        accepted = self._validator.validate(
            UploadRequest(
                pathname=target,
                content_type=content_type,
                size_bytes=len(data),
            )
        )

        storage_path = await self._storage.put_object(
            accepted.pathname,
            data,
            accepted.content_type,
        )
        url = self._storage.public_url(storage_path)

        logger.info(
            "Proxy upload stored",
            extra={
                "object_pathname": storage_path,
                "content_type": accepted.content_type,
                "size_bytes": len(data),
            },
        )

        return ProxyUploadResult(
            url=url,
            pathname=storage_path,
            size_bytes=len(data),
            content_type=accepted.content_type,
        )
