"""
Upload API endpoints.

Two ways to get an object into storage:

Brokered (preferred):
1. Client asks for a token: POST /uploads/token
2. Client PUTs the bytes straight to storage with the presigned URL
3. Storage provider calls POST /uploads/complete with a signed event
4. We record a StoredObjectReference, once per object

Proxy:
- Client posts the bytes to POST /uploads/proxy and we upload them with
  the static storage credential. No token, no callback.

Deletion and reference lookup round out the surface.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Optional, Union

from fastapi import APIRouter, File, Form, Header, HTTPException, Query, Request, UploadFile, status
from pydantic import BaseModel, Field

from ...core.uploads.context import decode_context
from ...core.uploads.errors import (
    AuthenticityFailure,
    DownstreamPersistenceFailure,
    MalformedContext,
    PolicyRejection,
    RejectionReason,
    SigningUnavailable,
)
from ...core.uploads.models import CompletionEvent, StoredObjectReference, UploadRequest
from ...infrastructure.snowflake.client import SnowflakeConnectionError
from ...infrastructure.storage.client import StorageError
from ..dependencies import (
    AuthenticatedUser,
    CompletionReconcilerDep,
    PolicyValidatorDep,
    ProxyUploaderDep,
    ReferenceRepositoryDep,
    SettingsDep,
    StorageClientDep,
    TokenIssuerDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class TokenRequest(BaseModel):
    """Request for a scoped upload token."""
    pathname: str = Field(description="Target object path, e.g. shops/abc/logo.png")
    content_type: Optional[str] = Field(None, description="MIME type of the object")
    size: Optional[int] = Field(None, description="Declared object size in bytes")
    context: Optional[Union[dict[str, Any], str]] = Field(
        None,
        description="Caller metadata returned on completion (JSON object or JSON string)"
    )


class TokenResponse(BaseModel):
    """A scoped token plus everything the client needs to upload."""
    token: str = Field(description="Signed upload token")
    token_id: str = Field(description="Token identifier")
    pathname: str = Field(description="Canonical pathname the token is bound to")
    content_type: str = Field(description="Content type the token allows")
    issued_at: datetime = Field(description="Issue time (UTC)")
    expires_at: datetime = Field(description="Expiry time (UTC)")
    upload_url: str = Field(description="Presigned URL to PUT the bytes to")
    upload_method: str = Field("PUT", description="HTTP method for upload_url")
    upload_headers: dict[str, str] = Field(description="Headers the upload request must send")


class CompletionResponse(BaseModel):
    """Acknowledgement for the storage provider."""
    acknowledged: bool = Field(True, description="Provider should stop redelivering")
    status: str = Field(description="created, duplicate or discarded")
    locator: str | None = Field(None, description="Object locator")
    reference_id: str | None = Field(None, description="Stored reference identifier")
    url: str | None = Field(None, description="Resolved object URL")
    reason: str | None = Field(None, description="Why the event was discarded")


class ProxyUploadResponse(BaseModel):
    """Where a proxied upload was stored."""
    url: str = Field(description="Public URL of the object")
    pathname: str = Field(description="Storage path")
    size: int = Field(description="Object size in bytes")
    content_type: str = Field(description="Stored content type")


class DeleteRequest(BaseModel):
    """Request to delete an uploaded object."""
    url: str = Field(min_length=1, description="Object URL or storage path")


class DeleteResponse(BaseModel):
    success: bool = Field(description="Delete was issued")
    reference_deleted: bool = Field(description="A stored reference existed and was removed")


class ReferenceResponse(BaseModel):
    """A stored object reference."""
    reference_id: str
    locator: str
    url: str
    pathname: str
    content_type: str | None = None
    size: int | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    token_id: str | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def rejection_to_http(error: PolicyRejection) -> HTTPException:
    """Structured 4xx for a policy rejection."""
    status_code = (
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        if error.reason is RejectionReason.OBJECT_TOO_LARGE
        else status.HTTP_400_BAD_REQUEST
    )
    return HTTPException(
        status_code=status_code,
        detail={"reason": error.reason.value, "message": error.message},
    )


def _store_unavailable(error: Exception) -> HTTPException:
    logger.error("Reference store unavailable", extra={"error": str(error)})
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Reference store unavailable, try again later",
    )


def _reference_response(reference: StoredObjectReference) -> ReferenceResponse:
    return ReferenceResponse(
        reference_id=str(reference.reference_id),
        locator=reference.locator,
        url=reference.url,
        pathname=reference.pathname,
        content_type=reference.content_type,
        size=reference.size_bytes,
        context=reference.context,
        token_id=reference.token_id,
        created_at=reference.created_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/token",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="Issue a scoped upload token",
    description="Validate an upload request and return a short-lived credential for a direct upload",
)
async def issue_upload_token(
    request: TokenRequest,
    x_user_id: Annotated[Optional[str], Header()] = None,
    api_key: AuthenticatedUser = None,
    validator: PolicyValidatorDep = None,
    issuer: TokenIssuerDep = None,
    storage: StorageClientDep = None,
) -> TokenResponse:
    """
    Issue a token for one brokered upload.

    The token is bound to the canonical pathname and the single content
    type that passed the policy. The caller context rides along inside
    the token and comes back with the completion event.
    """
    try:
        accepted = validator.validate(
            UploadRequest(
                pathname=request.pathname,
                content_type=request.content_type,
                size_bytes=request.size,
            )
        )
    except PolicyRejection as e:
        raise rejection_to_http(e)

    try:
        context = (
            decode_context(request.context)
            if isinstance(request.context, str)
            else dict(request.context or {})
        )
    except MalformedContext as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": "invalid_context", "message": str(e)},
        )
    context.setdefault("uploaded_by", x_user_id or "anonymous")

    try:
        scoped = issuer.issue(accepted, context)
    except SigningUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Upload signing unavailable: {e}",
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": "invalid_context", "message": str(e)},
        )

    # the presigned URL must not outlive the token
    expiry_seconds = int((scoped.expires_at - scoped.claims.issued_at).total_seconds())

    try:
        upload_url = await storage.generate_upload_url(
            accepted.pathname,
            accepted.content_type,
            expiry_seconds,
            content_length=accepted.size_bytes,
        )
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not prepare upload: {e}",
        )

    return TokenResponse(
        token=scoped.token,
        token_id=scoped.claims.token_id,
        pathname=scoped.claims.pathname,
        content_type=accepted.content_type,
        issued_at=scoped.claims.issued_at,
        expires_at=scoped.expires_at,
        upload_url=upload_url,
        upload_headers={"Content-Type": accepted.content_type},
    )


@router.post(
    "/complete",
    response_model=CompletionResponse,
    status_code=status.HTTP_200_OK,
    summary="Upload completion callback",
    description="Called by the storage provider once a brokered upload has been written",
)
async def complete_upload(
    request: Request,
    x_upload_signature: Annotated[Optional[str], Header()] = None,
    reconciler: CompletionReconcilerDep = None,
) -> CompletionResponse:
    """
    Record a completed upload.

    Responses tell the provider whether to redeliver:
    - 200 created/duplicate: recorded, stop
    - 200 discarded: forged or malformed, redelivery would not help
    - 503: we could not persist, redeliver later
    """
    body = await request.body()
    event = CompletionEvent(body=body, signature=x_upload_signature or "")

    try:
        result = reconciler.reconcile(event)

    except AuthenticityFailure as e:
        logger.warning(
            "Completion event discarded",
            extra={"reason": "authenticity_failure", "error": str(e)}
        )
        return CompletionResponse(status="discarded", reason="authenticity_failure")

    except MalformedContext as e:
        logger.warning(
            "Completion event discarded",
            extra={"reason": "malformed_context", "error": str(e)}
        )
        return CompletionResponse(status="discarded", reason="malformed_context")

    except DownstreamPersistenceFailure as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Reference not stored, retry delivery: {e}",
        )

    except SigningUnavailable as e:
        logger.error("Cannot verify upload tokens", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token verification unavailable, retry delivery",
        )

    return CompletionResponse(
        status="created" if result.created else "duplicate",
        locator=result.reference.locator,
        reference_id=str(result.reference.reference_id),
        url=result.reference.url,
    )


@router.post(
    "/proxy",
    response_model=ProxyUploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload through the server",
    description="Upload a file through the application using the static storage credential",
)
async def proxy_upload(
    file: Annotated[UploadFile, File(description="File to upload")],
    filename: Annotated[Optional[str], Form()] = None,
    add_random_suffix: Annotated[bool, Form()] = False,
    api_key: AuthenticatedUser = None,
    uploader: ProxyUploaderDep = None,
    settings: SettingsDep = None,
) -> ProxyUploadResponse:
    """
    Receive bytes and store them.

    Checks use what actually arrived: the part's declared MIME type and
    the real byte count.
    """
    pathname = filename or file.filename or ""

    logger.info(
        "Proxy upload started",
        extra={
            "object_pathname": pathname,
            "content_type": file.content_type,
        }
    )

    # one byte past the limit is enough to reject
    data = await file.read(settings.upload_max_size_bytes + 1)

    try:
        result = await uploader.upload(
            data,
            pathname=pathname,
            content_type=file.content_type,
            add_random_suffix=add_random_suffix,
        )
    except PolicyRejection as e:
        raise rejection_to_http(e)
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Upload failed: {e}",
        )

    return ProxyUploadResponse(
        url=result.url,
        pathname=result.pathname,
        size=result.size_bytes,
        content_type=result.content_type,
    )


@router.delete(
    "",
    response_model=DeleteResponse,
    status_code=status.HTTP_200_OK,
    summary="Delete an uploaded object",
    description="Delete an object from storage and drop its stored reference. Idempotent.",
)
async def delete_upload(
    request: DeleteRequest,
    api_key: AuthenticatedUser = None,
    storage: StorageClientDep = None,
    repository: ReferenceRepositoryDep = None,
) -> DeleteResponse:
    """Deleting something that doesn't exist is not an error."""
    try:
        await storage.delete_object(request.url)
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Delete failed: {e}",
        )

    # references may be keyed by URL or by storage path
    pathname = storage.pathname_for(request.url)
    reference_deleted = False
    try:
        for locator in dict.fromkeys([request.url, pathname, storage.public_url(pathname)]):
            reference_deleted = repository.delete(locator) or reference_deleted
    except SnowflakeConnectionError as e:
        raise _store_unavailable(e)

    return DeleteResponse(success=True, reference_deleted=reference_deleted)


@router.get(
    "/references",
    response_model=ReferenceResponse,
    status_code=status.HTTP_200_OK,
    summary="Look up a stored object reference",
)
async def get_reference(
    locator: Annotated[str, Query(min_length=1, description="Object locator")],
    api_key: AuthenticatedUser = None,
    repository: ReferenceRepositoryDep = None,
) -> ReferenceResponse:
    try:
        reference = repository.get(locator)
    except SnowflakeConnectionError as e:
        raise _store_unavailable(e)
    if reference is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reference not found",
        )
    return _reference_response(reference)
