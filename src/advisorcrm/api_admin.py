"""Administrative endpoints: admin bootstrap, user creation, profile upkeep, health and sign-in."""

from __future__ import annotations

import dataclasses
import hmac
import re
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from . import mapping, scope
from .api_crud import bearer_token, get_config, get_identity, get_service_store, get_settings
from .config import CrmConfig, Settings
from .dates import now_utc, to_iso
from .errors import PermissionDenied
from .identity import Identity, SupabaseIdentity
from .ratelimit import rate_limited
from .sync import EntityStore
from .types import Profile

router = APIRouter(prefix="/api")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD = 6


class BootstrapBody(BaseModel):
    email: str = ""
    password: str = ""
    name: str | None = None


class CreateUserBody(BaseModel):
    email: str = ""
    password: str = ""
    name: str | None = None
    role: str | None = None
    manager_id: str | None = None
    promoter_id: str | None = None


class ProfileUpdateBody(BaseModel):
    name: str | None = None
    username: str | None = None
    role: str | None = None
    manager_id: str | None = None
    promoter_id: str | None = None


class EnsureProfileBody(BaseModel):
    name: str | None = None
    role: str | None = None


class LoginBody(BaseModel):
    email: str
    password: str


class MagicLinkBody(BaseModel):
    email: str
    redirect_to: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validate_credentials(email: str, password: str) -> None:
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Email inválido")
    if len(password) < MIN_PASSWORD:
        raise HTTPException(status_code=400, detail="La contraseña debe tener al menos 6 caracteres")


def _caller(request: Request, identity: SupabaseIdentity) -> Identity:
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity.get_user(token)


def _caller_profile(store: EntityStore, ident: Identity) -> Profile | None:
    row = store.get(ident.id, "profiles", ident.id)
    return mapping.profile_from_row(row) if row else None


def _role_or_400(raw: str) -> str:
    """Accept current and legacy role slugs; reject anything else."""
    if not mapping.is_known_role(raw):
        raise HTTPException(status_code=400, detail=f"Rol desconocido: {raw}")
    return mapping.normalize_role(raw)


def _check_reference(store: EntityStore, actor: str, ref_id: str, role: str, label: str) -> None:
    row = store.get(actor, "profiles", ref_id)
    if row is None or mapping.normalize_role(row.get("role")) != role:
        raise HTTPException(status_code=400, detail=f"{label} no es un {_LABELS[role]}")


_LABELS = {"manager": "gerente", "promoter": "promotor"}


def _profile_out(row: dict[str, Any]) -> dict[str, Any]:
    return mapping.profile_to_row(mapping.profile_from_row(row))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/admin/bootstrap")
@rate_limited
def bootstrap_admin(
    request: Request,
    body: BootstrapBody,
    settings: Settings = Depends(get_settings),
    store: EntityStore = Depends(get_service_store),
    identity: SupabaseIdentity = Depends(get_identity),
):
    """Create the first admin. Guarded by ADMIN_BOOTSTRAP_TOKEN; no-op once an admin exists."""
    expected = settings.admin_bootstrap_token
    if not expected:
        raise HTTPException(status_code=500, detail="Server not configured")
    token = bearer_token(request)
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="Forbidden")

    if store.select(None, "profiles", {"role": "admin"}, limit=1):
        raise HTTPException(status_code=409, detail="Admin already exists")

    email = body.email.strip()
    name = (body.name or "").strip() or None
    _validate_credentials(email, body.password)

    created = identity.create_user(email, body.password, name)
    row = store.upsert(
        None,
        "profiles",
        {
            "id": created.id,
            "email": email,
            "display_name": name or email,
            "role": "admin",
            "manager_id": None,
            "promoter_id": None,
            "created_at": to_iso(now_utc()),
        },
    )
    return {"ok": True, "id": created.id, "profile": _profile_out(row)}


@router.post("/admin/users/create")
@rate_limited
def create_user(
    request: Request,
    body: CreateUserBody,
    store: EntityStore = Depends(get_service_store),
    identity: SupabaseIdentity = Depends(get_identity),
    config: CrmConfig = Depends(get_config),
):
    """Create a user below the caller in the hierarchy."""
    ident = _caller(request, identity)
    caller = _caller_profile(store, ident)
    if caller is None:
        raise HTTPException(status_code=403, detail="Forbidden")

    role = _role_or_400(body.role) if body.role else "advisor"
    try:
        scope.check_can_create(caller, role, config)
    except PermissionDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    email = body.email.strip()
    name = (body.name or "").strip() or None
    _validate_credentials(email, body.password)

    manager_id = body.manager_id
    promoter_id = body.promoter_id
    # subordinates created by a manager/promoter hang from that caller by default
    if caller.role == "manager" and role == "advisor":
        manager_id = manager_id or caller.id
        promoter_id = promoter_id or caller.promoter_id
    elif caller.role == "promoter" and role in ("advisor", "manager"):
        promoter_id = promoter_id or caller.id

    candidate = Profile(id="new", role=role, email=email, manager_id=manager_id, promoter_id=promoter_id)
    people = [mapping.profile_from_row(r) for r in store.select(None, "profiles")]
    problems = scope.validate_hierarchy(candidate, people)
    if problems:
        raise HTTPException(status_code=400, detail=problems[0])

    created = identity.create_user(email, body.password, name)
    row = store.upsert(
        None,
        "profiles",
        {
            "id": created.id,
            "email": email,
            "display_name": name or email,
            "role": role,
            "manager_id": manager_id,
            "promoter_id": promoter_id,
            "created_at": to_iso(now_utc()),
        },
    )
    return {"ok": True, "id": created.id, "profile": _profile_out(row)}


@router.post("/profile/update")
def update_profile(
    request: Request,
    body: ProfileUpdateBody,
    store: EntityStore = Depends(get_service_store),
    identity: SupabaseIdentity = Depends(get_identity),
    config: CrmConfig = Depends(get_config),
):
    """Update the caller's own profile. Role changes are gated by the caller's current role."""
    ident = _caller(request, identity)
    me = _caller_profile(store, ident)
    sent = body.model_fields_set
    updates: dict[str, Any] = {}

    if "name" in sent:
        updates["display_name"] = body.name
    if "username" in sent:
        updates["username"] = body.username

    if body.role:
        target = _role_or_400(body.role)
        if me is None:
            raise HTTPException(status_code=403, detail="No permitido")
        try:
            scope.check_role_change(me, target, config)
        except PermissionDenied as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        updates["role"] = target

    if "manager_id" in sent:
        if body.manager_id is not None:
            _check_reference(store, ident.id, body.manager_id, "manager", "manager_id")
        updates["manager_id"] = body.manager_id
    if "promoter_id" in sent:
        if body.promoter_id is not None:
            _check_reference(store, ident.id, body.promoter_id, "promoter", "promoter_id")
        updates["promoter_id"] = body.promoter_id

    if not updates:
        return {"ok": True}

    if me is not None:
        merged = dataclasses.replace(
            me,
            name=updates.get("display_name", me.name),
            username=updates.get("username", me.username),
            role=updates.get("role", me.role),
            manager_id=updates.get("manager_id", me.manager_id),
            promoter_id=updates.get("promoter_id", me.promoter_id),
        )
        users = [mapping.profile_from_row(r) for r in store.select(None, "profiles")]
        problems = scope.validate_hierarchy(merged, users)
        if problems:
            raise HTTPException(status_code=400, detail=problems[0])

    row = store.update(ident.id, "profiles", ident.id, updates)
    if row is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"ok": True, "profile": _profile_out(row)}


@router.post("/profiles/ensure")
def ensure_profile(
    request: Request,
    body: EnsureProfileBody | None = None,
    store: EntityStore = Depends(get_service_store),
    identity: SupabaseIdentity = Depends(get_identity),
):
    """Idempotently create or refresh the caller's profile row."""
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    ident = identity.get_user(token)
    body = body or EnsureProfileBody()

    existing = store.get(ident.id, "profiles", ident.id)
    payload: dict[str, Any] = {
        "id": ident.id,
        "email": ident.email,
        "display_name": body.name or ident.email,
        "created_at": (existing or {}).get("created_at") or to_iso(now_utc()),
    }
    if body.role:
        # only the first insert may pick a role; later calls cannot self-promote
        if existing is None:
            payload["role"] = _role_or_400(body.role)
    row = store.upsert(ident.id, "profiles", payload)
    return {"ok": True, "profile": _profile_out(row)}


@router.get("/health")
def health(settings: Settings = Depends(get_settings)):
    """Which integrations are configured. Booleans only, never the values."""
    return {
        "ok": True,
        "env": {
            "SUPABASE_URL": bool(settings.supabase_url),
            "SUPABASE_ANON_KEY": bool(settings.supabase_anon_key),
            "SUPABASE_SERVICE_ROLE": bool(settings.supabase_service_role),
            "ADMIN_BOOTSTRAP_TOKEN": bool(settings.admin_bootstrap_token),
            "BANXICO_TOKEN": bool(settings.banxico_token),
            "BANXICO_SERIE_ID": settings.banxico_serie,
        },
    }


@router.post("/auth/login")
@rate_limited
def login(request: Request, body: LoginBody, identity: SupabaseIdentity = Depends(get_identity)):
    session = identity.sign_in_password(body.email.strip(), body.password)
    return {"ok": True, "session": session}


@router.post("/auth/magic-link")
@rate_limited
def magic_link(request: Request, body: MagicLinkBody, identity: SupabaseIdentity = Depends(get_identity)):
    email = body.email.strip()
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Email inválido")
    identity.send_magic_link(email, body.redirect_to)
    return {"ok": True}
