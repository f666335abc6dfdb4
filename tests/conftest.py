"""Shared fixtures: an in-memory Entity Store and a fake identity provider.

``FakeStore`` applies the same visibility and write rules as the database's
row-level security policies, so repository and API tests exercise the
hierarchy without a running Postgres.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable

import pytest

from advisorcrm.config import CrmConfig, Settings, default_crm_config
from advisorcrm.errors import IdentityError, PermissionDenied, StoreError
from advisorcrm.identity import Identity
from advisorcrm.mapping import normalize_role

OWNED = {"clients", "policies", "activities", "goals", "medical_forms"}
KB = {"kb_sections", "kb_files"}
CLAIMERS = {"manager", "promoter", "admin"}
KB_WRITERS = {"manager", "promoter", "admin"}


class FakeStore:
    def __init__(self, tables: dict[str, dict[str, dict[str, Any]]] | None = None, service: bool = False):
        self.tables: dict[str, dict[str, dict[str, Any]]] = tables if tables is not None else {}
        self.service = service
        self.fail: str | None = None
        self.calls: list[tuple[str, str]] = []

    def as_service(self) -> "FakeStore":
        """Same data, service policy."""
        other = FakeStore(self.tables, service=True)
        other.fail = self.fail
        return other

    # -- policy helpers ----------------------------------------------------

    def _table(self, name: str) -> dict[str, dict[str, Any]]:
        return self.tables.setdefault(name, {})

    def _role(self, actor: str | None) -> str | None:
        row = self._table("profiles").get(actor or "")
        return normalize_role(row.get("role")) if row else None

    def _visible_owners(self, actor: str) -> set[str]:
        role = self._role(actor)
        people = self._table("profiles").values()
        if role == "promoter":
            return {actor} | {p["id"] for p in people if p.get("promoter_id") == actor}
        if role == "manager":
            return {actor} | {p["id"] for p in people if p.get("manager_id") == actor}
        return {actor}

    def _can_read(self, actor: str | None, table: str, row: dict[str, Any]) -> bool:
        if self.service:
            return True
        if not actor:
            return False
        if table == "profiles" or table in KB:
            return True
        owner = row.get("owner_id")
        if owner in self._visible_owners(actor):
            return True
        if table == "activities" and actor in (row.get("shared_with") or []):
            return True
        return table == "clients" and owner is None and self._role(actor) in CLAIMERS

    def _can_write(self, actor: str | None, table: str, new: dict[str, Any], old: dict[str, Any] | None) -> bool:
        if self.service:
            return True
        if not actor:
            return False
        if table == "profiles":
            return new.get("id") == actor
        if table in KB:
            owner_ok = new.get("owner_id") == actor and (old is None or old.get("owner_id") == actor)
            return owner_ok and self._role(actor) in KB_WRITERS
        if old is not None and old.get("owner_id") is None and table == "clients" and self._role(actor) in CLAIMERS:
            return new.get("owner_id") in self._visible_owners(actor)
        return new.get("owner_id") == actor and (old is None or old.get("owner_id") == actor)

    def _check(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if self.fail:
            raise StoreError(self.fail)

    # -- EntityStore -------------------------------------------------------

    def select(self, actor, table, filters=None, order_by=(), limit=None) -> list[dict[str, Any]]:
        self._check("select", table)
        rows = [r for r in self._table(table).values() if self._can_read(actor, table, r)]
        for key, value in (filters or {}).items():
            rows = [r for r in rows if r.get(key) == value]
        for col, desc in reversed(list(order_by)):
            rows.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    def get(self, actor, table, row_id):
        rows = self.select(actor, table, {"id": row_id}, limit=1)
        return rows[0] if rows else None

    def upsert(self, actor, table, row):
        self._check("upsert", table)
        old = self._table(table).get(row["id"])
        if old is not None and not self._can_read(actor, table, old):
            old_visible = None
        else:
            old_visible = old
        if (old is not None and old_visible is None) or not self._can_write(actor, table, row, old_visible):
            raise PermissionDenied(f'new row violates row-level security policy for table "{table}"')
        stored = {**(old or {}), **copy.deepcopy(row)}
        if table == "profiles":
            stored.setdefault("role", "advisor")
        self._table(table)[row["id"]] = stored
        return copy.deepcopy(stored)

    def update(self, actor, table, row_id, values):
        self._check("update", table)
        old = self._table(table).get(row_id)
        if old is None or not self._can_read(actor, table, old):
            return None
        new = {**old, **values}
        if not self._can_write(actor, table, new, old):
            return None
        self._table(table)[row_id] = new
        return copy.deepcopy(new)

    def insert_many(self, actor, table, rows: Iterable[dict[str, Any]]):
        return [self.upsert(actor, table, r) for r in rows]

    def delete(self, actor, table, row_id):
        self._check("delete", table)
        old = self._table(table).get(row_id)
        if old is None or not self._can_read(actor, table, old) or not self._can_write(actor, table, old, old):
            return False
        del self._table(table)[row_id]
        if table == "kb_sections":
            files = self._table("kb_files")
            for fid in [k for k, f in files.items() if f.get("section_id") == row_id]:
                del files[fid]
        return True

    def select_kb_sections(self, actor, section_id=None):
        sections = self.select(actor, "kb_sections", {"id": section_id} if section_id else None, (("created_at", True),))
        files = self.select(actor, "kb_files", order_by=(("created_at", False),))
        for s in sections:
            s["kb_files"] = [f for f in files if f.get("section_id") == s["id"]]
        return sections


class FakeIdentity:
    """Tokens are ``token-<user id>``; created users get ids ``auth-<n>``."""

    def __init__(self):
        self.created: list[dict[str, Any]] = []
        self.emails: dict[str, str] = {}
        self.magic_links: list[str] = []

    def get_user(self, token: str) -> Identity:
        if not token.startswith("token-"):
            raise IdentityError("Unauthorized", 401)
        uid = token[len("token-"):]
        return Identity(id=uid, email=self.emails.get(uid, f"{uid}@example.com"))

    def create_user(self, email: str, password: str, name: str | None = None) -> Identity:
        uid = f"auth-{len(self.created) + 1}"
        self.created.append({"id": uid, "email": email, "name": name})
        self.emails[uid] = email
        return Identity(id=uid, email=email)

    def sign_in_password(self, email: str, password: str) -> dict[str, Any]:
        if password != "secret123":
            raise IdentityError("Invalid login credentials", 400)
        return {"access_token": "token-u-ase-1", "token_type": "bearer"}

    def send_magic_link(self, email: str, redirect_to: str | None = None) -> None:
        self.magic_links.append(email)


def _profile(id: str, role: str, name: str, manager_id=None, promoter_id=None) -> dict[str, Any]:
    return {
        "id": id,
        "email": f"{id}@example.com",
        "display_name": name,
        "username": None,
        "role": role,
        "manager_id": manager_id,
        "promoter_id": promoter_id,
        "created_at": "2025-01-01T00:00:00+00:00",
    }


def hierarchy_rows() -> dict[str, dict[str, Any]]:
    """promoter P <- manager M <- advisors A1, A2; advisor A3 under a second manager M2."""
    rows = [
        _profile("P", "promoter", "Paula Promotora"),
        _profile("M", "manager", "Mario Gerente", promoter_id="P"),
        _profile("M2", "manager", "Marta Gerente", promoter_id="P"),
        _profile("A1", "advisor", "Ana Asesora", manager_id="M", promoter_id="P"),
        _profile("A2", "advisor", "Beto Asesor", manager_id="M", promoter_id="P"),
        _profile("A3", "advisor", "Carla Asesora", manager_id="M2", promoter_id="P"),
        _profile("ADM", "admin", "Admin"),
    ]
    return {r["id"]: r for r in rows}


@pytest.fixture()
def config() -> CrmConfig:
    return default_crm_config()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore({"profiles": hierarchy_rows()})


@pytest.fixture()
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="postgresql://unused",
        supabase_url="https://example.supabase.co",
        supabase_anon_key="anon",
        supabase_service_role="service",
        admin_bootstrap_token="boot-secret",
        banxico_token=None,
        timezone="America/Mexico_City",
        allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture()
def api(store, identity, settings, config):
    """TestClient with the store, identity provider and settings swapped for fakes."""
    from fastapi.testclient import TestClient

    from advisorcrm import api_crud
    from advisorcrm.ratelimit import limiter
    from advisorcrm.server import app

    app.dependency_overrides[api_crud.get_store] = lambda: store
    app.dependency_overrides[api_crud.get_service_store] = lambda: store.as_service()
    app.dependency_overrides[api_crud.get_identity] = lambda: identity
    app.dependency_overrides[api_crud.get_settings] = lambda: settings
    app.dependency_overrides[api_crud.get_config] = lambda: config
    limiter.enabled = False
    yield TestClient(app)
    app.dependency_overrides.clear()
    limiter.enabled = True
