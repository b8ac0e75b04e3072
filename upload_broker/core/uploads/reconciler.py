"""
Completion reconciliation for brokered uploads.

The storage provider calls us back once the client's bytes are written.
Delivery is at-least-once: the same callback can arrive twice, late, or
concurrently on two instances. Instead of locking, the write is keyed on
the object's storage locator, so repeating it changes nothing.

Order matters here. The signature is checked against the raw body before
anything in the body is trusted; the body is parsed second; the token
binding is checked third; only then do we touch the store.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol
from urllib.parse import unquote, urlparse

from .context import decode_context, encode_context
from .errors import (
    AuthenticityFailure,
    DownstreamPersistenceFailure,
    InvalidToken,
    MalformedContext,
)
from .models import (
    CompletedUpload,
    CompletionEvent,
    ReconcileResult,
    StoredObjectReference,
    TokenClaims,
)
from .signatures import verify_body_signature
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

COMPLETION_EVENT_TYPE = "upload.completed"


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class ReferenceStore(Protocol):
    """
    Where stored object references live.

    `record` must be an insert-if-absent keyed on the locator: it returns
    the reference that is stored after the call and whether this call
    created it.
    """

    def record(self, reference: StoredObjectReference) -> tuple[StoredObjectReference, bool]:
        ...


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------

def _pathname_from_locator(locator: str) -> str:
    parsed = urlparse(locator)
    if parsed.scheme and parsed.netloc:
        return unquote(parsed.path.lstrip("/"))
    return locator


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedContext(f"Completion field '{field_name}' must be a string")
    return value


def parse_completion_body(body: bytes) -> CompletedUpload:
    """
    Parse a completion callback body.

    Expected shape:
        {
            "type": "upload.completed",
            "payload": {
                "blob": {"locator": ..., "pathname": ..., "content_type": ..., "size": ...},
                "token": "<scoped token>",
                "token_payload": "<JSON object as string>"
            }
        }

    Raises MalformedContext for anything that doesn't fit.
    """
    try:
        envelope = json.loads(body)
    except ValueError as e:
        raise MalformedContext(f"Completion body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict) or envelope.get("type") != COMPLETION_EVENT_TYPE:
        raise MalformedContext("Completion body is not an upload.completed event")

    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        raise MalformedContext("Completion event has no payload")

    blob = payload.get("blob")
    if not isinstance(blob, dict):
        raise MalformedContext("Completion event has no blob description")

    locator = blob.get("locator") or blob.get("url")
    if not isinstance(locator, str) or not locator.strip():
        raise MalformedContext("Completion event has no object locator")
    locator = locator.strip()

    pathname = _optional_str(blob.get("pathname"), "pathname") or _pathname_from_locator(locator)

    size = blob.get("size")
    if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
        raise MalformedContext("Completion field 'size' must be a non-negative integer")

    context_payload = payload.get("token_payload")
    if isinstance(context_payload, dict):
        context_payload = encode_context(context_payload)

    return CompletedUpload(
        locator=locator,
        pathname=pathname,
        content_type=_optional_str(blob.get("content_type"), "content_type"),
        size_bytes=size,
        token=_optional_str(payload.get("token"), "token"),
        context_payload=_optional_str(context_payload, "token_payload"),
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class CompletionReconciler:
    """
    Turns authenticated completion events into stored object references.

    Args:
        store: insert-if-absent reference store
        signing_secret: shared secret the provider signs callbacks with
        token_issuer: verifies the scoped token carried back in the event
        require_token: reject events that are not bound to a token
        locate: maps a storage locator to the URL we hand out
        on_created: runs once per reference, never on redelivery
    """

    def __init__(
        self,
        store: ReferenceStore,
        signing_secret: Optional[str],
        token_issuer: Optional[TokenIssuer] = None,
        require_token: bool = True,
        locate: Optional[Callable[[str], str]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        on_created: Optional[Callable[[StoredObjectReference], None]] = None,
    ) -> None:
        if require_token and token_issuer is None:
            raise ValueError("token_issuer is required when require_token is set")

        self._store = store
        self._secret = signing_secret or ""
        self._token_issuer = token_issuer
        self._require_token = require_token
        self._locate = locate or (lambda locator: locator)
        self._clock = clock
        self._on_created = on_created

    def reconcile(self, event: CompletionEvent) -> ReconcileResult:
        """
        Verify, parse and record one completion event.

        Raises AuthenticityFailure or MalformedContext when the event must
        be discarded, DownstreamPersistenceFailure when it should be
        redelivered.
        """
        if not verify_body_signature(self._secret, event.body, event.signature):
            logger.warning(
                "Discarding completion event with invalid signature",
                extra={"body_size": len(event.body)},
            )
            raise AuthenticityFailure("Completion event signature does not verify")

        upload = parse_completion_body(event.body)
        claims = self._bind_token(upload)
        context = self._resolve_context(upload, claims)

        reference = StoredObjectReference(
            locator=upload.locator,
            url=self._locate(upload.locator),
            pathname=upload.pathname,
            content_type=upload.content_type,
            size_bytes=upload.size_bytes,
            context=context,
            token_id=claims.token_id if claims else None,
            created_at=self._clock(),
        )

        try:
            stored, created = self._store.record(reference)
        except Exception as e:
            logger.error(
                "Failed to persist object reference",
                extra={"locator": upload.locator, "error": str(e)},
            )
            raise DownstreamPersistenceFailure(
                f"Could not persist reference for {upload.locator}",
                locator=upload.locator,
            ) from e

        if created:
            logger.info(
                "Object reference created",
                extra={
                    "locator": stored.locator,
                    "reference_id": str(stored.reference_id),
                    "token_id": stored.token_id,
                },
            )
            if self._on_created is not None:
                self._run_on_created(stored)
        else:
            logger.info(
                "Duplicate completion event acknowledged",
                extra={"locator": stored.locator},
            )

        return ReconcileResult(reference=stored, created=created)

    def _run_on_created(self, reference: StoredObjectReference) -> None:
        """
        Run the creation hook for a freshly stored reference.

        The reference is already committed, and a redelivery would come
        back as a duplicate that never reaches the hook again. Failing the
        callback therefore cannot get the hook retried, so a hook error is
        logged with the reference id for follow-up and the event is still
        acknowledged.
        """
        try:
            self._on_created(reference)
        except Exception as e:
            logger.error(
                "Creation hook failed for stored reference",
                extra={
                    "locator": reference.locator,
                    "reference_id": str(reference.reference_id),
                    "error": str(e),
                },
                exc_info=e,
            )

    def _bind_token(self, upload: CompletedUpload) -> Optional[TokenClaims]:
        if upload.token is None:
            if self._require_token:
                logger.warning(
                    "Discarding completion event without upload token",
                    extra={"locator": upload.locator},
                )
                raise AuthenticityFailure("Completion event is not bound to an upload token")
            return None

        if self._token_issuer is None:
            raise AuthenticityFailure("Completion event carries a token that cannot be verified")

        try:
            # the write may legitimately finish after the token expired
            claims = self._token_issuer.verify(
                upload.token,
                pathname=upload.pathname,
                content_type=upload.content_type,
                check_expiry=False,
            )
        except InvalidToken as e:
            logger.warning(
                "Discarding completion event with invalid token binding",
                extra={"locator": upload.locator, "reason": e.reason},
            )
            raise AuthenticityFailure(f"Completion event token binding failed: {e}") from e

        if (
            claims.maximum_size_bytes is not None
            and upload.size_bytes is not None
            and upload.size_bytes > claims.maximum_size_bytes
        ):
            raise AuthenticityFailure("Completed object is larger than the token allows")

        return claims

    def _resolve_context(
        self,
        upload: CompletedUpload,
        claims: Optional[TokenClaims],
    ) -> dict[str, Any]:
        event_context = (
            decode_context(upload.context_payload)
            if upload.context_payload is not None
            else None
        )

        if claims is None:
            return event_context or {}

        if event_context is not None and event_context != claims.context:
            raise MalformedContext("Completion context does not match the upload token")
        return claims.context
