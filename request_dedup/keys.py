from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Tuple

import httpx


def _hash_bytes(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return hashlib.sha256(data).hexdigest()


def _sorted_query(url: httpx.URL) -> str:
    if not url.query:
        return ""
    params = httpx.QueryParams(url.query)
    return json.dumps(sorted(params.multi_items()), separators=(",", ":"))


def _base_url(url: httpx.URL) -> str:
    # Relative URLs ("/api/boards") have no scheme or host, so strip the
    # query and fragment from the raw form instead of rebuilding it.
    raw = str(url)
    return raw.split("#", 1)[0].split("?", 1)[0]


def canonical_body(body: Any) -> Optional[bytes]:
    """
    Return the canonical bytes of a request body.

    The bytes are prefixed with how encode_body() sends the body, so a
    raw '{"a":1}' string and a {"a": 1} JSON payload never match.

    - None or empty -> None
    - bytes/bytearray -> b"raw:" + bytes
    - str -> b"raw:" + UTF-8
    - anything else -> b"json:" + JSON with sorted keys and compact separators

    Raises:
        TypeError: If the body is not JSON serializable
    """
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray, str)):
        raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        return b"raw:" + raw if raw else None
    return b"json:" + json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_body(body: Any) -> Tuple[Optional[bytes], Any]:
    """
    Decide how a body is handed to the transport.

    Returns:
        Tuple of (content, json). At most one of them is not None.
    """
    if body is None:
        return None, None
    if isinstance(body, (bytes, bytearray, str)):
        if not body:
            # Same key as no body at all, so send none
            return None, None
        content = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        return content, None
    return None, body


def build_key(method: Optional[str], url: str, body: Any = None) -> str:
    """
    Build the dedup key for a request.

    Two requests share a key only if method, url (with sorted query) and
    canonical body all match.
    """
    method = (method or "GET").upper()
    u = httpx.URL(url)
    parts = [
        f"m:{method}",
        f"u:{_base_url(u)}",
        f"q:{_sorted_query(u)}",
        f"b:{_hash_bytes(canonical_body(body))}",
    ]
    return "|".join(parts)
