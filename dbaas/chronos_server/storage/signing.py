"""
HMAC-SHA256 signed URLs for object stores without a native presigner.

A signed URL carries ``expires`` (Unix seconds) and ``signature`` query
parameters. The signature covers the method, the URL path and the expiry.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from urllib.parse import parse_qs, quote, urlencode, urlsplit


def _signature(secret: str, path: str, expires: int) -> str:
    message = f"GET\n{path}\n{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_url(
    base_url: str,
    bucket: str,
    key: str,
    ttl_seconds: int,
    secret: str,
    now: float | None = None,
) -> str:
    """Build a signed GET URL for ``bucket/key`` under ``base_url``."""
    expires = int(now if now is not None else time.time()) + ttl_seconds
    unsigned = f"{base_url.rstrip('/')}/{quote(bucket)}/{quote(key)}"
    path = urlsplit(unsigned).path
    query = urlencode({"expires": expires, "signature": _signature(secret, path, expires)})
    return f"{unsigned}?{query}"


def verify_signed_url(url: str, secret: str, now: float | None = None) -> bool:
    """Check a URL produced by sign_url(): signature valid and not expired."""
    parts = urlsplit(url)
    params = parse_qs(parts.query)
    try:
        expires = int(params["expires"][0])
        signature = params["signature"][0]
    except (KeyError, IndexError, ValueError):
        return False
    if expires < int(now if now is not None else time.time()):
        return False
    return hmac.compare_digest(signature, _signature(secret, parts.path, expires))
