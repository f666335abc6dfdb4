from __future__ import annotations

import dataclasses
import json

import httpx
import pytest

from advisorcrm.errors import IdentityError
from advisorcrm.identity import SupabaseIdentity


def _client(settings, handler):
    return SupabaseIdentity(settings, transport=httpx.MockTransport(handler))


def test_get_user_sends_bearer_and_apikey(settings):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(200, json={"id": "u1", "email": "u1@example.com"})

    who = _client(settings, handler).get_user("jwt-abc")
    assert who.id == "u1" and who.email == "u1@example.com"
    assert seen == {"path": "/auth/v1/user", "auth": "Bearer jwt-abc", "apikey": "anon"}


def test_get_user_rejected_token_is_unauthorized(settings):
    ident = _client(settings, lambda r: httpx.Response(403, json={"msg": "invalid JWT"}))
    with pytest.raises(IdentityError) as exc:
        ident.get_user("bad")
    assert exc.value.status_code == 401
    assert str(exc.value) == "Unauthorized"


def test_provider_outage_is_not_unauthorized(settings):
    ident = _client(settings, lambda r: httpx.Response(503, text="down"))
    with pytest.raises(IdentityError) as exc:
        ident.get_user("jwt")
    assert exc.value.status_code == 503


def test_create_user_uses_service_key(settings):
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"user": {"id": "new-1", "email": "n@x.mx"}})

    who = _client(settings, handler).create_user("n@x.mx", "secret123", name="Nora")
    assert who.id == "new-1"
    assert seen["auth"] == "Bearer service"
    assert seen["body"]["user_metadata"] == {"display_name": "Nora", "name": "Nora"}


def test_create_user_errors_surface_as_500(settings):
    ident = _client(settings, lambda r: httpx.Response(422, json={"msg": "User already registered"}))
    with pytest.raises(IdentityError) as exc:
        ident.create_user("n@x.mx", "secret123")
    assert exc.value.status_code == 500
    assert str(exc.value) == "User already registered"


def test_create_user_requires_service_key(settings):
    ident = _client(dataclasses.replace(settings, supabase_service_role=None), lambda r: httpx.Response(200))
    with pytest.raises(IdentityError, match="SUPABASE_SERVICE_ROLE"):
        ident.create_user("n@x.mx", "secret123")


def test_sign_in_password(settings):
    def handler(request):
        assert request.url.params["grant_type"] == "password"
        return httpx.Response(200, json={"access_token": "jwt", "token_type": "bearer"})

    assert _client(settings, handler).sign_in_password("a@x.mx", "pw")["access_token"] == "jwt"


def test_network_failure(settings):
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(IdentityError) as exc:
        _client(settings, handler).send_magic_link("a@x.mx")
    assert exc.value.status_code == 502


def test_requires_supabase_url(settings):
    with pytest.raises(IdentityError):
        SupabaseIdentity(dataclasses.replace(settings, supabase_url=None))
