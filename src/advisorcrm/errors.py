from __future__ import annotations


class StoreError(Exception):
    """The Entity Store rejected or failed a request (including timeouts)."""


class IdentityError(Exception):
    """The identity provider failed or refused a token/credential."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class FeedError(Exception):
    """The UDI rate feed is unavailable or returned an unusable value."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class PermissionDenied(Exception):
    """The caller's role does not allow the requested change."""
