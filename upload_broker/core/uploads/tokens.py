"""
Scoped upload token issuance and verification.

A scoped token is a signed JWT that authorizes one write: one pathname,
one content type, until a short expiry. Tokens are not stored anywhere.
Everything needed to check one is inside it, which is why expiry is the
only way a token stops working.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

import jwt

from .context import normalize_context
from .errors import InvalidToken, SigningUnavailable, TokenExpired
from .models import AcceptedUpload, ScopedToken, TokenClaims, UploadPolicy

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
DEFAULT_ISSUER = "upload-broker"

Clock = Callable[[], datetime]


def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """
    Mints and verifies scoped upload tokens.

    The signing secret is process configuration handed in at construction.
    An empty secret is allowed here so the process can still serve proxy
    uploads, but any attempt to issue a token then fails loudly.
    """

    def __init__(
        self,
        policy: UploadPolicy,
        signing_secret: Optional[str],
        issuer: str = DEFAULT_ISSUER,
        clock: Clock = _system_clock,
    ) -> None:
        self._policy = policy
        self._secret = signing_secret or ""
        self._issuer = issuer
        self._clock = clock

    def issue(
        self,
        accepted: AcceptedUpload,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ScopedToken:
        """
        Mint a token for an upload that already passed the policy.

        Raises SigningUnavailable if there is no usable signing key and
        ValueError if the context is not a JSON object.
        """
        if not self._secret:
            logger.error("Upload token requested but no signing secret is configured")
            raise SigningUnavailable("Upload token signing key is not configured")

        payload_context = normalize_context(context)

        # JWT timestamps have second resolution, so the claims do too
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=self._policy.token_ttl_seconds)

        claims = TokenClaims(
            token_id=uuid4().hex,
            pathname=accepted.pathname,
            allowed_content_types=(accepted.content_type,),
            issued_at=issued_at,
            expires_at=expires_at,
            maximum_size_bytes=self._policy.max_size_bytes,
            context=payload_context,
        )

        payload = {
            "iss": self._issuer,
            "sub": claims.pathname,
            "jti": claims.token_id,
            "pathname": claims.pathname,
            "allowed_content_types": list(claims.allowed_content_types),
            "maximum_size": claims.maximum_size_bytes,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "ctx": claims.context,
        }

        try:
            token = jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)
        except Exception as e:
            logger.error("Failed to sign upload token", extra={"error": str(e)})
            raise SigningUnavailable(f"Upload token signing failed: {e}") from e

        logger.info(
            "Issued upload token",
            extra={
                "token_id": claims.token_id,
                "object_pathname": claims.pathname,
                "content_type": accepted.content_type,
                "expires_at": expires_at.isoformat(),
            },
        )

        return ScopedToken(token=token, claims=claims)

    def verify(
        self,
        token: str,
        pathname: Optional[str] = None,
        content_type: Optional[str] = None,
        check_expiry: bool = True,
    ) -> TokenClaims:
        """
        Verify a token's signature and, optionally, its scope and expiry.

        Raises TokenExpired once the expiry has passed (even when the
        signature is intact) and InvalidToken for everything else.
        """
        if not self._secret:
            raise SigningUnavailable("Upload token signing key is not configured")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=self._issuer,
                options={
                    "require": ["exp", "iat", "jti", "sub"],
                    # expiry is checked against our own clock below
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as e:
            raise InvalidToken(f"Upload token is invalid: {e}") from e

        claims = self._claims_from_payload(payload)

        if check_expiry and claims.is_expired(self._clock()):
            raise TokenExpired()

        if pathname is not None and pathname != claims.pathname:
            raise InvalidToken(
                "Upload token was issued for a different pathname",
                reason="scope_mismatch",
            )

        if content_type is not None:
            normalized = content_type.split(";", 1)[0].strip().lower()
            if normalized not in claims.allowed_content_types:
                raise InvalidToken(
                    "Upload token does not allow this content type",
                    reason="scope_mismatch",
                )

        return claims

    def _claims_from_payload(self, payload: dict[str, Any]) -> TokenClaims:
        try:
            allowed = payload["allowed_content_types"]
            context = payload.get("ctx") or {}
            maximum_size = payload.get("maximum_size")
            if not isinstance(allowed, list) or not all(isinstance(t, str) for t in allowed):
                raise ValueError("allowed_content_types must be a list of strings")
            if not isinstance(context, dict):
                raise ValueError("ctx must be an object")
            return TokenClaims(
                token_id=str(payload["jti"]),
                pathname=str(payload["pathname"]),
                allowed_content_types=tuple(allowed),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                maximum_size_bytes=int(maximum_size) if maximum_size is not None else None,
                context=context,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidToken(f"Upload token claims are malformed: {e}") from e
