from __future__ import annotations

import gzip
import io
import time
from typing import Any, Dict, Optional

import httpx
import msgpack


def _gzip_compress(data: bytes) -> bytes:
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb") as gz:
        gz.write(data)
    return buf.getvalue()


def _gzip_decompress(data: bytes) -> bytes:
    with gzip.GzipFile(fileobj=io.BytesIO(data), mode="rb") as gz:
        return gz.read()


COMPRESSORS = {
    "gzip": (_gzip_compress, _gzip_decompress),
    "none": (lambda x: x, lambda x: x),
}


def _request_of(resp: httpx.Response) -> Optional[httpx.Request]:
    try:
        return resp.request
    except RuntimeError:
        # Responses built by hand may have no request attached
        return None


def snapshot_response(resp: httpx.Response, compression: str = "none") -> bytes:
    """Materialize an already-read httpx.Response into a compact blob.

    The shared network call produces exactly one snapshot; every caller
    attached to it gets its own Response rebuilt with clone_response().
    """
    headers: Dict[str, str] = {
        k.decode() if isinstance(k, bytes) else k: v.decode() if isinstance(v, bytes) else v
        for k, v in resp.headers.items()
    }

    # resp.content is already decoded by httpx
    headers.pop("content-encoding", None)
    headers.pop("content-length", None)

    compress_fn = COMPRESSORS.get(compression, COMPRESSORS["none"])[0]

    request = _request_of(resp)
    payload: Dict[str, Any] = {
        "status": resp.status_code,
        "method": request.method if request is not None else "GET",
        "url": str(request.url) if request is not None else "",
        "http_version": resp.http_version,
        "reason": resp.reason_phrase,
        "headers": headers,
        "encoding": resp.encoding,
        "created_at": time.time(),
        "compression": compression,
        "body_compressed": compress_fn(resp.content),
    }
    return msgpack.packb(payload, use_bin_type=True)


def clone_response(data: bytes) -> httpx.Response:
    """Build a fresh, independently readable httpx.Response from a snapshot."""
    payload: Dict[str, Any] = msgpack.unpackb(data, raw=False)

    compression = payload.get("compression", "none")
    decompress_fn = COMPRESSORS.get(compression, COMPRESSORS["none"])[1]
    body = decompress_fn(payload["body_compressed"])

    request = None
    if payload.get("url"):
        request = httpx.Request(payload.get("method", "GET"), payload["url"])
    # httpx keeps both as ASCII bytes in the response extensions
    extensions: Dict[str, Any] = {}
    if payload.get("http_version"):
        extensions["http_version"] = payload["http_version"].encode("ascii", errors="ignore")
    if payload.get("reason"):
        extensions["reason_phrase"] = payload["reason"].encode("ascii", errors="ignore")

    response = httpx.Response(
        status_code=int(payload["status"]),
        request=request,
        headers=payload.get("headers", {}),
        content=body,
        extensions=extensions,
    )
    if payload.get("encoding"):
        response.encoding = payload["encoding"]
    return response
