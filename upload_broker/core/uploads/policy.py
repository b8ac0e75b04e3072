"""
Upload policy validation.

The validator is the first thing every upload passes through, brokered or
proxied. It is a pure function of (request, policy): no I/O, no clock, no
state. Checks run in a fixed order and the first failure wins, so a
caller always gets the same reason for the same request.
"""

import logging
import re
from typing import Optional
from urllib.parse import unquote

from .errors import PolicyRejection, RejectionReason
from .models import DEFAULT_CONTENT_TYPE, AcceptedUpload, UploadPolicy, UploadRequest

logger = logging.getLogger(__name__)

_URL_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")
_DRIVE_LETTER = re.compile(r"^[A-Za-z]:(/|$)")
_MIME_TYPE = re.compile(r"^[a-z0-9][a-z0-9!#$&^_.+\-]*/[a-z0-9*][a-z0-9!#$&^_.+\-]*$")


class PolicyValidator:
    """
    Checks upload requests against the process-wide UploadPolicy.

    Order of checks:
    1. pathname (empty, traversal, absolute, shape, namespace, extension)
    2. content type (presence, allow-list)
    3. declared size (if any)
    """

    def __init__(self, policy: UploadPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> UploadPolicy:
        return self._policy

    def validate(self, request: UploadRequest) -> AcceptedUpload:
        """
        Validate a request and return its canonical form.

        Raises PolicyRejection with the reason of the first failing check.
        """
        try:
            pathname = self._check_pathname(request.pathname)
            content_type = self._check_content_type(request.content_type)
            self._check_size(request.size_bytes)
        except PolicyRejection as e:
            logger.info(
                "Upload request rejected",
                extra={"reason": e.reason.value, "object_pathname": request.pathname},
            )
            raise

        return AcceptedUpload(
            pathname=pathname,
            content_type=content_type,
            size_bytes=request.size_bytes,
        )

    # -----------------------------------------------------------------------
    # Pathname
    # -----------------------------------------------------------------------

    def _check_pathname(self, raw: Optional[str]) -> str:
        if raw is None or not raw.strip():
            raise PolicyRejection(RejectionReason.EMPTY_PATHNAME, "Pathname is required")

        value = raw.strip()

        if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
            raise PolicyRejection(
                RejectionReason.INVALID_PATHNAME,
                "Pathname contains control characters",
            )

        value = value.replace("\\", "/")
        decoded = unquote(value).replace("\\", "/")

        # percent-encoded dots count as traversal too
        for candidate in (value, decoded):
            if ".." in candidate.split("/"):
                raise PolicyRejection(
                    RejectionReason.PATH_TRAVERSAL,
                    "Pathname must not contain parent-directory segments",
                )

        for candidate in (value, decoded):
            if (
                candidate.startswith("/")
                or _URL_SCHEME.match(candidate)
                or _DRIVE_LETTER.match(candidate)
            ):
                raise PolicyRejection(
                    RejectionReason.ABSOLUTE_PATHNAME,
                    "Pathname must be relative to the upload namespace",
                )

        if value.endswith("/"):
            raise PolicyRejection(
                RejectionReason.INVALID_PATHNAME,
                "Pathname must name a single object, not a folder",
            )

        canonical = "/".join(part for part in value.split("/") if part not in ("", "."))
        if not canonical:
            raise PolicyRejection(RejectionReason.EMPTY_PATHNAME, "Pathname is required")

        if len(canonical.encode("utf-8")) > self._policy.max_pathname_length:
            raise PolicyRejection(
                RejectionReason.PATHNAME_TOO_LONG,
                f"Pathname exceeds {self._policy.max_pathname_length} bytes",
            )

        namespace = self._policy.namespace.strip("/")
        if namespace and not canonical.startswith(namespace + "/"):
            raise PolicyRejection(
                RejectionReason.OUTSIDE_NAMESPACE,
                f"Pathname must be inside '{namespace}/'",
            )

        if self._policy.allowed_extensions:
            filename = canonical.rsplit("/", 1)[-1]
            extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
            if extension not in self._policy.allowed_extensions:
                allowed = ", ".join(sorted(self._policy.allowed_extensions))
                raise PolicyRejection(
                    RejectionReason.EXTENSION_NOT_ALLOWED,
                    f"File extension not allowed. Use one of: {allowed}",
                )

        return canonical

    # -----------------------------------------------------------------------
    # Content type
    # -----------------------------------------------------------------------

    def _check_content_type(self, raw: Optional[str]) -> str:
        value = (raw or "").split(";", 1)[0].strip().lower()

        if not value:
            if self._policy.allow_unknown_content_type:
                return DEFAULT_CONTENT_TYPE
            raise PolicyRejection(
                RejectionReason.UNKNOWN_CONTENT_TYPE,
                "Content type is required",
            )

        if not _MIME_TYPE.match(value) or "*" in value:
            raise PolicyRejection(
                RejectionReason.CONTENT_TYPE_NOT_ALLOWED,
                f"Malformed content type: {raw}",
            )

        if not self._policy.allows_content_type(value):
            raise PolicyRejection(
                RejectionReason.CONTENT_TYPE_NOT_ALLOWED,
                f"Content type not allowed: {value}",
            )

        return value

    # -----------------------------------------------------------------------
    # Size
    # -----------------------------------------------------------------------

    def _check_size(self, size_bytes: Optional[int]) -> None:
        if size_bytes is None:
            return

        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes < 0:
            raise PolicyRejection(
                RejectionReason.INVALID_SIZE,
                "Size must be a non-negative number of bytes",
            )

        if size_bytes > self._policy.max_size_bytes:
            raise PolicyRejection(
                RejectionReason.OBJECT_TOO_LARGE,
                f"Object too large. Maximum size: {self._policy.max_size_bytes} bytes",
            )
