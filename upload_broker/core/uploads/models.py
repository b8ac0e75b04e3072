"""
Domain models for brokered and proxied uploads.

These models describe what the broker reasons about: the request a caller
makes, the policy it is checked against, the credential we hand back, the
provider's completion notification and the durable reference we keep.
None of them know about HTTP, object storage SDKs or databases.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4


DEFAULT_CONTENT_TYPE = "application/octet-stream"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UploadPolicy:
    """
    Process-wide upload rules.

    Built once at startup and handed to every component that needs it.
    Frozen so nothing can loosen the rules at runtime.
    """
    allowed_content_types: frozenset[str]
    max_size_bytes: int
    token_ttl_seconds: int = 600
    namespace: str = ""
    allow_unknown_content_type: bool = False
    max_pathname_length: int = 1024
    allowed_extensions: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        if self.token_ttl_seconds <= 0:
            raise ValueError("token_ttl_seconds must be positive")
        if self.max_pathname_length <= 0:
            raise ValueError("max_pathname_length must be positive")
        # normalize so lookups are case-insensitive
        object.__setattr__(
            self,
            "allowed_content_types",
            frozenset(t.strip().lower() for t in self.allowed_content_types if t.strip()),
        )
        object.__setattr__(
            self,
            "allowed_extensions",
            frozenset(e.strip().lower().lstrip(".") for e in self.allowed_extensions if e.strip()),
        )

    def allows_content_type(self, content_type: str) -> bool:
        """Exact match, or a `type/*` wildcard entry for the major type."""
        if content_type in self.allowed_content_types:
            return True
        major = content_type.split("/", 1)[0]
        return f"{major}/*" in self.allowed_content_types


@dataclass(frozen=True)
class UploadRequest:
    """What a caller asks to upload. Lives only for the duration of validation."""
    pathname: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class AcceptedUpload:
    """An UploadRequest that passed the policy, in canonical form."""
    pathname: str
    content_type: str
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class TokenClaims:
    """The decoded, verified contents of a scoped token."""
    token_id: str
    pathname: str
    allowed_content_types: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    maximum_size_bytes: Optional[int] = None
    context: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ScopedToken:
    """A signed upload credential and the claims it carries."""
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


@dataclass(frozen=True)
class CompletionEvent:
    """
    A completion notification exactly as the storage provider delivered it.

    The signature covers the raw body bytes, so we keep the bytes rather
    than a parsed structure until the signature has been checked.
    """
    body: bytes
    signature: str


@dataclass(frozen=True)
class CompletedUpload:
    """The parsed content of an authenticated completion event."""
    locator: str
    pathname: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    token: Optional[str] = None
    context_payload: Optional[str] = None


@dataclass(frozen=True)
class StoredObjectReference:
    """
    The durable record of an uploaded object.

    Keyed by locator: one physical object, one reference. Created once
    and never updated; it can only be deleted.
    """
    locator: str
    url: str
    pathname: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    context: dict[str, Any] = field(default_factory=dict)
    token_id: Optional[str] = None
    reference_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconciliation."""
    reference: StoredObjectReference
    created: bool


@dataclass(frozen=True)
class ProxyUploadResult:
    """Where an object uploaded through the proxy path ended up."""
    url: str
    pathname: str
    size_bytes: int
    content_type: str
