"""
Encoding of the caller-supplied context payload.

The context travels inside the token as a JSON object and comes back in
the completion event as a JSON string, so both ends agree on one codec.
"""

import json
from typing import Any, Mapping, Optional

from .errors import MalformedContext


def normalize_context(context: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """
    Return the context as a plain JSON-compatible dict.

    Raises ValueError if the context is not a mapping with string keys or
    holds values JSON cannot represent.
    """
    if context is None:
        return {}
    if not isinstance(context, Mapping):
        raise ValueError("Upload context must be a JSON object")
    if not all(isinstance(key, str) for key in context):
        raise ValueError("Upload context keys must be strings")
    try:
        return json.loads(json.dumps(dict(context)))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Upload context is not JSON serializable: {e}") from e


def encode_context(context: Optional[Mapping[str, Any]]) -> str:
    """Compact, key-sorted JSON so equal contexts encode identically."""
    return json.dumps(normalize_context(context), separators=(",", ":"), sort_keys=True)


def decode_context(raw: Optional[str]) -> dict[str, Any]:
    """
    Parse a context payload from a completion event.

    An absent payload is an empty context. Anything that is not a JSON
    object raises MalformedContext.
    """
    if raw is None or raw == "":
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedContext(f"Context payload is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise MalformedContext("Context payload must be a JSON object")
    return value
