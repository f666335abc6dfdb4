"""Thin client for the Supabase Auth (GoTrue) REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import Settings
from .errors import IdentityError

logger = logging.getLogger("advisorcrm.identity")


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None


class SupabaseIdentity:
    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None):
        if not settings.supabase_url:
            raise IdentityError("Identity provider not configured", 500)
        self.base_url = settings.supabase_url.rstrip("/") + "/auth/v1"
        self.anon_key = settings.supabase_anon_key or ""
        self.service_key = settings.supabase_service_role
        self.timeout = httpx.Timeout(connect=5.0, read=settings.identity_timeout, write=5.0, pool=None)
        self.transport = transport

    def _request(self, method: str, path: str, *, key: str, bearer: str | None = None, **kwargs: Any) -> Any:
        headers = {"apikey": key, "Authorization": f"Bearer {bearer or key}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.request(method, self.base_url + path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("identity %s %s failed: %s", method, path, exc.__class__.__name__)
            raise IdentityError("Identity provider unavailable", 502) from exc
        if resp.status_code >= 400:
            raise IdentityError(_error_message(resp), resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def _admin_key(self) -> str:
        if not self.service_key:
            raise IdentityError("SUPABASE_SERVICE_ROLE not configured", 500)
        return self.service_key

    def get_user(self, token: str) -> Identity:
        """Resolve a bearer token to the identity it was issued for."""
        try:
            data = self._request("GET", "/user", key=self.anon_key or self._admin_key(), bearer=token)
        except IdentityError as exc:
            if exc.status_code >= 500:
                raise
            raise IdentityError("Unauthorized", 401) from exc
        if not data.get("id"):
            raise IdentityError("Unauthorized", 401)
        return Identity(id=str(data["id"]), email=data.get("email"))

    def create_user(self, email: str, password: str, name: str | None = None) -> Identity:
        payload: dict[str, Any] = {"email": email, "password": password, "email_confirm": False}
        if name:
            payload["user_metadata"] = {"display_name": name, "name": name}
        try:
            data = self._request("POST", "/admin/users", key=self._admin_key(), json=payload)
        except IdentityError as exc:
            raise IdentityError(str(exc), 500) from exc
        # GoTrue answers with the user object, older versions wrap it in "user"
        user = data.get("user", data) if isinstance(data, dict) else {}
        if not user.get("id"):
            raise IdentityError("No se obtuvo ID de usuario", 500)
        return Identity(id=str(user["id"]), email=user.get("email", email))

    def sign_in_password(self, email: str, password: str) -> dict[str, Any]:
        return self._request(
            "POST",
            "/token",
            key=self.anon_key,
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )

    def send_magic_link(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        self._request("POST", "/otp", key=self.anon_key, params=params, json={"email": email, "create_user": True})


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"Identity provider {resp.status_code}"
    if isinstance(data, dict):
        for key in ("msg", "message", "error_description", "error"):
            if data.get(key):
                return str(data[key])
    return f"Identity provider {resp.status_code}"
