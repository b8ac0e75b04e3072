"""
Error taxonomy for the upload broker.

Every failure the broker can report derives from UploadError so the API
layer can translate them in one place. Each error type maps to a single
delivery behavior:

- PolicyRejection: reported to the caller synchronously, never retried
- SigningUnavailable: fails one issuance request with a server error
- AuthenticityFailure / MalformedContext: completion discarded, no retry
- DownstreamPersistenceFailure: completion must be redelivered
"""

from enum import Enum
from typing import Optional


class RejectionReason(Enum):
    """Stable reason codes returned to callers when a request is rejected."""
    EMPTY_PATHNAME = "empty_pathname"
    INVALID_PATHNAME = "invalid_pathname"
    ABSOLUTE_PATHNAME = "absolute_pathname"
    PATH_TRAVERSAL = "path_traversal"
    PATHNAME_TOO_LONG = "pathname_too_long"
    OUTSIDE_NAMESPACE = "outside_namespace"
    EXTENSION_NOT_ALLOWED = "extension_not_allowed"
    UNKNOWN_CONTENT_TYPE = "unknown_content_type"
    CONTENT_TYPE_NOT_ALLOWED = "content_type_not_allowed"
    INVALID_SIZE = "invalid_size"
    OBJECT_TOO_LARGE = "object_too_large"


class UploadError(Exception):
    """Base class for upload broker failures."""
    pass


class PolicyRejection(UploadError):
    """Raised when an upload request violates the upload policy."""

    def __init__(self, reason: RejectionReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class SigningUnavailable(UploadError):
    """Raised when a token cannot be signed (missing or unusable key)."""
    pass


class InvalidToken(UploadError):
    """Raised when a scoped token fails verification."""

    def __init__(self, message: str, reason: str = "invalid_token") -> None:
        super().__init__(message)
        self.reason = reason


class TokenExpired(InvalidToken):
    """Raised when a scoped token is past its expiry."""

    def __init__(self, message: str = "Upload token has expired") -> None:
        super().__init__(message, reason="expired")


class AuthenticityFailure(UploadError):
    """Raised when a completion event cannot be proven to come from the provider."""
    pass


class MalformedContext(UploadError):
    """Raised when a completion event or its context payload cannot be parsed."""
    pass


class DownstreamPersistenceFailure(UploadError):
    """Raised when the stored object reference could not be written."""

    def __init__(self, message: str, locator: Optional[str] = None) -> None:
        super().__init__(message)
        self.locator = locator
