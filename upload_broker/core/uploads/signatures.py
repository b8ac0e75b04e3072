"""
Provider signatures on completion callbacks.

The storage provider signs the exact callback body with a shared secret
(HMAC-SHA256, hex encoded). We verify against the raw bytes we received,
before any parsing.
"""

import hashlib
import hmac


def sign_body(secret: str, body: bytes) -> str:
    """Compute the signature the provider attaches to a callback body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_body_signature(secret: str, body: bytes, signature: str) -> bool:
    if not secret or not signature:
        return False
    expected = sign_body(secret, body).encode("ascii")
    # compare bytes: compare_digest rejects non-ASCII str input
    return hmac.compare_digest(expected, signature.encode("utf-8", errors="replace"))
