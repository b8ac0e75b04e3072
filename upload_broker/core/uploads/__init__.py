"""
Upload broker logic.

Contains the policy validator, token issuer, completion reconciler and
the proxy upload path, plus the domain models they share.
"""

from .errors import (
    AuthenticityFailure,
    DownstreamPersistenceFailure,
    InvalidToken,
    MalformedContext,
    PolicyRejection,
    RejectionReason,
    SigningUnavailable,
    TokenExpired,
    UploadError,
)
from .models import (
    AcceptedUpload,
    CompletedUpload,
    CompletionEvent,
    ProxyUploadResult,
    ReconcileResult,
    ScopedToken,
    StoredObjectReference,
    TokenClaims,
    UploadPolicy,
    UploadRequest,
)
from .policy import PolicyValidator
from .proxy import ProxyUploader
from .reconciler import CompletionReconciler, ReferenceStore
from .tokens import TokenIssuer

__all__ = [
    "AcceptedUpload",
    "AuthenticityFailure",
    "CompletedUpload",
    "CompletionEvent",
    "CompletionReconciler",
    "DownstreamPersistenceFailure",
    "InvalidToken",
    "MalformedContext",
    "PolicyRejection",
    "PolicyValidator",
    "ProxyUploadResult",
    "ProxyUploader",
    "ReconcileResult",
    "ReferenceStore",
    "RejectionReason",
    "ScopedToken",
    "SigningUnavailable",
    "StoredObjectReference",
    "TokenClaims",
    "TokenExpired",
    "TokenIssuer",
    "UploadError",
    "UploadPolicy",
    "UploadRequest",
]
