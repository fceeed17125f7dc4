"""Stable cache keys for chat requests."""

import hashlib
import json
from typing import Any, Mapping, Optional

from assistant.errors import InvalidRequest
from assistant.types import Fingerprint, SessionContext

_SCALARS = (str, int, float, bool)


def normalize_prompt(text: str) -> str:
    """Strip and collapse every whitespace run to a single space."""
    return " ".join((text or "").split())


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    """
    Canonical JSON for model parameters: sorted keys, compact separators,
    None values dropped. Raises InvalidRequest for non-scalar values.
    """
    if params is None:
        return "{}"
    if not isinstance(params, Mapping):
        raise InvalidRequest("params must be a mapping", {"type": type(params).__name__})
    clean = {}
    for key, value in params.items():
        if not isinstance(key, str):
            raise InvalidRequest("param names must be strings", {"key": repr(key)})
        if value is None:
            continue
        if not isinstance(value, _SCALARS):
            raise InvalidRequest(f"param {key!r} must be a JSON scalar", {"key": key})
        if isinstance(value, float) and value != value:
            raise InvalidRequest(f"param {key!r} is NaN", {"key": key})
        clean[key] = value
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(
    context: SessionContext,
    prompt: str,
    params: Optional[Mapping[str, Any]] = None,
) -> Fingerprint:
    """
    Derive the cache key for (session, prompt, params).

    The session is identified by its id; the turns in the context window
    feed the provider prompt but are not hashed, so an identical follow-up
    in the same session maps to the same key.
    """
    session_id = (context.session_id or "").strip() if context else ""
    if not session_id:
        raise InvalidRequest("session id is required")
    normalized = normalize_prompt(prompt)
    if not normalized:
        raise InvalidRequest("prompt is empty")
    payload = json.dumps(
        [session_id, normalized, canonical_params(params)],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
