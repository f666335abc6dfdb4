from __future__ import annotations

import hashlib
import os
import typing

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


# ---------------------------------------------------------------------------
# Rate limiter key: bearer token digest if present, else remote IP
# ---------------------------------------------------------------------------

def _rate_key(request: Request) -> str:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer ") and auth[7:].strip():
        digest = hashlib.sha256(auth[7:].strip().encode("utf-8")).hexdigest()[:16]
        return f"user:{digest}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=_rate_key, enabled=os.environ.get("RATE_LIMIT_ENABLED", "1") != "0")


def _guest_limit() -> str:
    return os.environ.get("RATE_LIMIT_GUEST", "5/minute")


def _auth_limit() -> str:
    return os.environ.get("RATE_LIMIT_AUTH", "30/minute")


def get_limit(key: str) -> str:
    return _auth_limit() if key.startswith("user:") else _guest_limit()


def rate_limited(func):
    """``limiter.limit(get_limit)`` for endpoints written with string annotations.

    FastAPI resolves annotations against the wrapper's ``__globals__``, which
    belong to slowapi, so the hints are evaluated in the endpoint's own module
    before wrapping.
    """
    func.__annotations__ = typing.get_type_hints(func)
    return limiter.limit(get_limit)(func)
