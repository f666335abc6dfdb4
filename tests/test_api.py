"""HTTP-level tests against the FastAPI app with an in-memory store and identity provider."""

from __future__ import annotations

import dataclasses

import httpx
import pytest

from advisorcrm import api_crud
from advisorcrm.server import app


def auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer token-{user_id}"}


def _new_client(api, user_id, **fields):
    body = {"nombre": "Lucía", **fields}
    resp = api.post("/api/clients", json=body, headers=auth(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Authentication and error envelope
# ---------------------------------------------------------------------------


def test_missing_token_is_401(api):
    resp = api.get("/api/clients")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_rejected_token_is_401(api):
    resp = api.get("/api/clients", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401


def test_token_without_profile_is_403(api):
    resp = api.get("/api/clients", headers=auth("ghost"))
    assert resp.status_code == 403
    assert resp.json()["error"] == "Perfil no encontrado"


def test_validation_errors_use_error_envelope(api):
    resp = api.post("/api/clients", json={"nombre": ""}, headers=auth("A1"))
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "Request validation failed"
    assert body["detail"][0]["loc"][-1] == "nombre"


def test_store_failure_is_502(api, store):
    store.fail = "canceling statement due to statement timeout"
    resp = api.get("/api/clients", headers=auth("A1"))
    assert resp.status_code == 502
    assert "statement timeout" in resp.json()["error"]


def test_request_id_is_echoed(api):
    resp = api.get("/healthz", headers={"X-Request-ID": "rid-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "rid-123"


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def test_client_crud_round_trip(api):
    created = _new_client(api, "A1", apellido_paterno="Pérez", dependientes=0)
    assert created["owner_id"] == "A1"
    assert created["dependientes"] == 0
    assert created["created_at"]

    listed = api.get("/api/clients", headers=auth("A1")).json()
    assert [c["id"] for c in listed] == [created["id"]]

    body = {"nombre": "Lucía María", "apellido_paterno": "Pérez"}
    updated = api.put(f"/api/clients/{created['id']}", json=body, headers=auth("A1")).json()
    assert updated["nombre"] == "Lucía María"
    assert updated["owner_id"] == "A1"
    assert updated["created_at"] == created["created_at"]

    assert api.delete(f"/api/clients/{created['id']}", headers=auth("A1")).json() == {"ok": True}
    again = api.delete(f"/api/clients/{created['id']}", headers=auth("A1"))
    assert again.status_code == 404
    assert again.json() == {"error": "Client not found"}


def test_update_missing_client_is_404(api):
    resp = api.put("/api/clients/nope", json={"nombre": "x"}, headers=auth("A1"))
    assert resp.status_code == 404


def test_manager_sees_team_clients_only(api):
    for uid in ("A1", "A2", "A3"):
        _new_client(api, uid, nombre=f"cli-{uid}")
    owners = {c["owner_id"] for c in api.get("/api/clients", headers=auth("M")).json()}
    assert owners == {"A1", "A2"}
    promoter_view = {c["owner_id"] for c in api.get("/api/clients", headers=auth("P")).json()}
    assert promoter_view == {"A1", "A2", "A3"}


def test_manager_cannot_edit_advisor_client(api):
    client = _new_client(api, "A1")
    resp = api.put(f"/api/clients/{client['id']}", json={"nombre": "Otro"}, headers=auth("M"))
    assert resp.status_code == 403
    assert "row-level security" in resp.json()["error"]
    assert [c["nombre"] for c in api.get("/api/clients", headers=auth("A1")).json()] == ["Lucía"]


def test_contacted_toggle(api):
    client = _new_client(api, "A1")
    on = api.post(f"/api/clients/{client['id']}/contacted", json={"value": True}, headers=auth("A1")).json()
    assert on["contactado"] is True and on["contactado_fecha"]
    off = api.post(f"/api/clients/{client['id']}/contacted", json={"value": False}, headers=auth("A1")).json()
    assert off["contactado"] is False and off["contactado_fecha"] is None


def test_only_advisors_toggle_contacted(api):
    client = _new_client(api, "A1")
    resp = api.post(f"/api/clients/{client['id']}/contacted", json={"value": True}, headers=auth("M"))
    assert resp.status_code == 403


def test_manager_created_client_is_not_contacted(api):
    created = _new_client(api, "M", contactado=True)
    assert created["contactado"] is False
    assert created["contactado_fecha"] is None


# ---------------------------------------------------------------------------
# Policies, activities, goals, medical forms
# ---------------------------------------------------------------------------


def test_policy_requires_visible_client(api):
    resp = api.post("/api/policies", json={"cliente_id": "missing", "plan": "Vida"}, headers=auth("A1"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "cliente_id no encontrado"

    other = _new_client(api, "A3")
    resp = api.post("/api/policies", json={"cliente_id": other["id"], "plan": "Vida"}, headers=auth("A1"))
    assert resp.status_code == 400


def test_policy_search_and_sort(api):
    ana = _new_client(api, "A1", nombre="Ana", apellido_paterno="Ruiz")
    zoe = _new_client(api, "A1", nombre="Zoe")
    for cid, plan, prima in [(ana["id"], "Orvi 99", 900), (zoe["id"], "Vida Mujer", 1500)]:
        resp = api.post(
            "/api/policies",
            json={"cliente_id": cid, "plan": plan, "prima_mensual": prima, "participa": {"mdrt": True}},
            headers=auth("A1"),
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["participa_mdrt"] is True

    found = api.get("/api/policies", params={"q": "ruiz"}, headers=auth("A1")).json()
    assert [p["plan"] for p in found] == ["Orvi 99"]
    by_prima = api.get("/api/policies", params={"sort": "prima", "dir": "asc"}, headers=auth("A1")).json()
    assert [p["plan"] for p in by_prima] == ["Orvi 99", "Vida Mujer"]
    by_client = api.get("/api/policies", params={"sort": "cliente", "dir": "desc"}, headers=auth("A1")).json()
    assert [p["plan"] for p in by_client] == ["Vida Mujer", "Orvi 99"]

    bad = api.get("/api/policies", params={"sort": "color"}, headers=auth("A1"))
    assert bad.status_code == 422


def test_policies_carry_next_payment_date(api):
    client = _new_client(api, "A1")
    for plan, extra in [
        ("Futuro", {"fecha_pago": "2099-05-31", "forma_pago": "Mensual"}),
        ("Aniversario", {"fecha_pago": "2000-01-01", "forma_pago": "Anual"}),
        ("Sin forma", {"fecha_pago": "2000-01-01"}),
    ]:
        body = {"cliente_id": client["id"], "plan": plan, **extra}
        assert api.post("/api/policies", json=body, headers=auth("A1")).status_code == 201

    due = {p["plan"]: p["proxima_fecha_pago"] for p in api.get("/api/policies", headers=auth("A1")).json()}
    assert due["Futuro"] == "2099-05-31"
    assert due["Aniversario"].endswith("-01-01") and due["Aniversario"] > "2025"
    assert due["Sin forma"] is None


def test_activity_end_filled_and_type_filter(api):
    client = _new_client(api, "A1")
    body = {"tipo": "Llamada", "cliente_id": client["id"], "fecha_hora": "2025-03-12T16:00:00+00:00"}
    created = api.post("/api/activities", json=body, headers=auth("A1")).json()
    assert created["fecha_hora_fin"] == "2025-03-12T17:00:00+00:00"

    assert len(api.get("/api/activities", params={"tipo": "Llamada"}, headers=auth("A1")).json()) == 1
    assert api.get("/api/activities", params={"tipo": "Entrega"}, headers=auth("A1")).json() == []
    assert api.get("/api/activities", params={"tipo": "Fiesta"}, headers=auth("A1")).status_code == 400

    bad = api.post("/api/activities", json={**body, "fecha_hora": "mañana"}, headers=auth("A1"))
    assert bad.status_code == 400
    assert bad.json()["error"] == "fecha_hora inválida"


def test_calendar_week_view(api):
    client = _new_client(api, "A1")
    for when in ("2025-03-12T16:00:00+00:00", "2025-03-25T16:00:00+00:00"):
        api.post(
            "/api/activities",
            json={"tipo": "Cita Inicial", "cliente_id": client["id"], "fecha_hora": when},
            headers=auth("A1"),
        )
    resp = api.get(
        "/api/calendar", params={"view": "week", "anchor": "2025-03-12T10:00:00-06:00"}, headers=auth("A1")
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["days"][0] == "2025-03-10"
    assert len(data["days"]) == 7
    assert [a["fecha_hora"] for a in data["activities"]] == ["2025-03-12T16:00:00+00:00"]

    month = api.get("/api/calendar", params={"view": "month", "anchor": "2025-03-12"}, headers=auth("A1")).json()
    assert len(month["days"]) == 42
    assert len(month["activities"]) == 2


def test_goal_month_format_validated(api):
    ok = api.post("/api/goals", json={"tipo": "Referidos", "mes": "2025-03", "meta_mensual": 5}, headers=auth("A1"))
    assert ok.status_code == 201
    bad = api.post("/api/goals", json={"tipo": "Referidos", "mes": "2025-3"}, headers=auth("A1"))
    assert bad.status_code == 422

    goal_id = ok.json()["id"]
    updated = api.put(
        f"/api/goals/{goal_id}", json={"tipo": "Referidos", "mes": "2025-04", "meta_mensual": 8}, headers=auth("A1")
    ).json()
    assert updated["mes"] == "2025-04"
    assert updated["created_at"] == ok.json()["created_at"]


def test_goals_report_monthly_progress(api):
    client = _new_client(api, "A1")
    for prima, ingreso in [(1000, "2025-03-05"), (500, "2025-03-20"), (800, "2025-04-02")]:
        body = {"cliente_id": client["id"], "plan": "Vida", "estado": "Vigente", "prima_mensual": prima,
                "fecha_ingreso": ingreso}
        assert api.post("/api/policies", json=body, headers=auth("A1")).status_code == 201
    api.post("/api/goals", json={"tipo": "Ingreso mensual", "mes": "2025-03", "meta_mensual": 1000},
             headers=auth("A1"))

    (goal,) = api.get("/api/goals", headers=auth("A1")).json()
    assert goal["progreso"] == {"ingreso": 450.0, "polizas": 2, "diferencia": 550.0}


def test_pipeline_board_backfills_missing_stages(api, store):
    quoted = _new_client(api, "A1", nombre="Cotizada")
    fresh = _new_client(api, "A1", nombre="Nueva")
    kept = _new_client(api, "A1", nombre="Fija", etapa="follow")
    api.post("/api/policies", json={"cliente_id": quoted["id"], "plan": "Vida"}, headers=auth("A1"))

    columns = api.get("/api/pipeline", headers=auth("A1")).json()
    assert {stage: [c["nombre"] for c in rows] for stage, rows in columns.items()} == {
        "new": ["Nueva"],
        "quote": ["Cotizada"],
        "follow": ["Fija"],
        "issued": [],
    }
    assert store.tables["clients"][quoted["id"]]["etapa"] == "quote"
    assert store.tables["clients"][fresh["id"]]["etapa"] == "new"
    assert store.tables["clients"][kept["id"]]["etapa"] == "follow"


def test_medical_form_lifecycle(api):
    client = _new_client(api, "A1")
    missing = api.post("/api/medical-forms", json={"cliente_id": "nope", "fecha": "2025-03-01"}, headers=auth("A1"))
    assert missing.status_code == 400

    created = api.post(
        "/api/medical-forms",
        json={"cliente_id": client["id"], "fecha": "2025-03-01", "medicamentos": ""},
        headers=auth("A1"),
    ).json()
    assert created["medicamentos"] == ""
    assert [m["id"] for m in api.get("/api/medical-forms", headers=auth("A1")).json()] == [created["id"]]
    assert api.get("/api/medical-forms", headers=auth("A3")).json() == []
    assert api.delete(f"/api/medical-forms/{created['id']}", headers=auth("A1")).json() == {"ok": True}


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


def test_kb_write_roles(api):
    denied = api.post("/api/kb", json={"title": "Mío"}, headers=auth("A1"))
    assert denied.status_code == 403

    section = api.post("/api/kb", json={"title": "Manuales"}, headers=auth("M"))
    assert section.status_code == 201
    sid = section.json()["id"]

    files = api.post(
        f"/api/kb/{sid}/files", json=[{"name": "guia.pdf", "size": 1024, "type": "application/pdf"}], headers=auth("M")
    )
    assert files.status_code == 201
    file_id = files.json()[0]["id"]
    assert api.post(f"/api/kb/{sid}/files", json=[], headers=auth("M")).status_code == 400

    listed = api.get("/api/kb", headers=auth("A1")).json()
    assert [f["name"] for f in listed[0]["files"]] == ["guia.pdf"]

    assert api.delete(f"/api/kb/files/{file_id}", headers=auth("A1")).status_code == 403
    assert api.delete(f"/api/kb/files/{file_id}", headers=auth("M")).json() == {"ok": True}
    assert api.delete(f"/api/kb/{sid}", headers=auth("M")).json() == {"ok": True}


# ---------------------------------------------------------------------------
# Team, profiles and dashboard
# ---------------------------------------------------------------------------


def test_team_counts_and_unassigned(api, store):
    _new_client(api, "A1")
    _new_client(api, "A1")
    _new_client(api, "A3")
    store.tables["clients"]["orphan"] = {"id": "orphan", "nombre": "Sin dueño", "owner_id": None, "created_at": None}

    team = api.get("/api/team", headers=auth("M")).json()
    counts = {m["id"]: m["clients"] for m in team["members"]}
    assert counts == {"M": 0, "A1": 2, "A2": 0}
    assert team["unassigned_clients"] == 1

    solo = api.get("/api/team", headers=auth("A1")).json()
    assert [m["id"] for m in solo["members"]] == ["A1"]
    assert solo["unassigned_clients"] == 0


def test_orphan_client_can_be_claimed(api, store):
    store.tables["clients"] = {"orphan": {"id": "orphan", "nombre": "Sin dueño", "owner_id": None}}
    claimed = api.put("/api/clients/orphan", json={"nombre": "Sin dueño", "owner_id": "A1"}, headers=auth("M"))
    assert claimed.status_code == 200, claimed.text
    assert claimed.json()["owner_id"] == "A1"


def test_profiles_endpoints(api):
    me = api.get("/api/profiles/me", headers=auth("A1")).json()
    assert me["role"] == "advisor" and me["manager_id"] == "M"
    assert api.get("/api/profiles/M", headers=auth("A1")).json()["role"] == "manager"
    assert api.get("/api/profiles/nobody", headers=auth("A1")).status_code == 404
    assert len(api.get("/api/profiles", headers=auth("A1")).json()) == 7


def test_dashboard_counts_current_month(api):
    client = _new_client(api, "A1")
    resp = api.get("/api/dashboard", params={"range": "month"}, headers=auth("A1"))
    assert resp.status_code == 200
    data = resp.json()
    assert data["range"]["key"] == "month"
    assert data["new_prospects"] == 1
    assert data["points_today"] == 0
    assert data["daily_target"] == 25
    assert data["daily_progress"] == 0.0
    assert client["id"]

    assert api.get("/api/dashboard", params={"range": "decade"}, headers=auth("A1")).status_code == 422


# ---------------------------------------------------------------------------
# Tools and feed
# ---------------------------------------------------------------------------

QUOTE = {
    "unit_price_today": 7.0,
    "annual_inflation_pct": 3.0,
    "years": 3,
    "periodicity": "Mensual",
    "units_per_period": 10,
    "discount_rate_pct": 0,
}


def test_udi_quote(api):
    data = api.post("/api/tools/udi-quote", json=QUOTE, headers=auth("A1")).json()
    assert [r["cumulative_units"] for r in data["rows"]] == [120, 240, 360]
    assert data["totals"]["total_units_contributed"] == 360
    assert data["formatted"]["final_value_at_year"] == "2,673.47"

    assert api.post("/api/tools/udi-quote", json={**QUOTE, "years": 0}, headers=auth("A1")).status_code == 422
    assert api.post("/api/tools/udi-quote", json={**QUOTE, "periodicity": "Diario"}, headers=auth("A1")).status_code == 422


def test_udi_quote_csv(api):
    resp = api.post("/api/tools/udi-quote.csv", json=QUOTE, headers=auth("A1"))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.strip().splitlines()
    assert lines[0] == "Year,UnitPrice,AnnualUnits,CumulativeUnits,AnnualValue,ValueAtYear,PresentValue"
    assert len(lines) == 4
    assert lines[3].split(",")[5] == "2673.47"


def test_udi_latest_without_token(api):
    resp = api.get("/api/udi/latest")
    assert resp.status_code == 503
    assert resp.json() == {"error": "BANXICO_TOKEN not configured"}


def test_udi_latest_from_feed(api, settings):
    payload = {"bmx": {"series": [{"datos": [{"fecha": "04/03/2025", "dato": "8.351234"}]}]}}
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    app.dependency_overrides[api_crud.get_settings] = lambda: dataclasses.replace(settings, banxico_token="tok")
    app.dependency_overrides[api_crud.get_feed_transport] = lambda: transport

    data = api.get("/api/udi/latest").json()
    assert data == {"value": 8.351234, "date": "04/03/2025", "source": "banxico"}


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def test_health_reports_booleans(api):
    env = api.get("/api/health").json()["env"]
    assert env["SUPABASE_URL"] is True
    assert env["BANXICO_TOKEN"] is False
    assert env["BANXICO_SERIE_ID"] == "SP68257"


def test_bootstrap_guard(api, store):
    body = {"email": "root@example.com", "password": "secret123", "name": "Root"}
    assert api.post("/api/admin/bootstrap", json=body).status_code == 403
    wrong = api.post("/api/admin/bootstrap", json=body, headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 403
    assert wrong.json() == {"error": "Forbidden"}

    boot = {"Authorization": "Bearer boot-secret"}
    exists = api.post("/api/admin/bootstrap", json=body, headers=boot)
    assert exists.status_code == 409

    del store.tables["profiles"]["ADM"]
    bad = api.post("/api/admin/bootstrap", json={**body, "email": "root"}, headers=boot)
    assert bad.status_code == 400
    assert bad.json()["error"] == "Email inválido"

    ok = api.post("/api/admin/bootstrap", json=body, headers=boot).json()
    assert ok["ok"] is True
    assert ok["profile"]["role"] == "admin"
    assert store.tables["profiles"][ok["id"]]["display_name"] == "Root"


def test_bootstrap_without_server_token(api, settings):
    app.dependency_overrides[api_crud.get_settings] = lambda: dataclasses.replace(settings, admin_bootstrap_token=None)
    resp = api.post("/api/admin/bootstrap", json={}, headers={"Authorization": "Bearer x"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Server not configured"}


def test_manager_creates_advisor_under_itself(api, store, identity):
    resp = api.post(
        "/api/admin/users/create",
        json={"email": "nuevo@example.com", "password": "secret123", "name": "Nuevo"},
        headers=auth("M"),
    )
    assert resp.status_code == 200, resp.text
    profile = resp.json()["profile"]
    assert profile["role"] == "advisor"
    assert profile["manager_id"] == "M"
    assert profile["promoter_id"] == "P"
    assert identity.created[0]["email"] == "nuevo@example.com"


@pytest.mark.parametrize(
    "caller, body, status, error",
    [
        ("A1", {"role": "advisor"}, 403, None),
        ("M", {"role": "promoter"}, 403, None),
        ("M", {"role": "ceo"}, 400, "Rol desconocido: ceo"),
        ("P", {"role": "advisor", "manager_id": "P"}, 400, "manager_id no es un gerente"),
        ("P", {"role": "manager", "password": "123"}, 400, "La contraseña debe tener al menos 6 caracteres"),
    ],
)
def test_user_creation_rules(api, identity, caller, body, status, error):
    payload = {"email": "x@example.com", "password": "secret123", **body}
    resp = api.post("/api/admin/users/create", json=payload, headers=auth(caller))
    assert resp.status_code == status
    if error:
        assert resp.json()["error"] == error
    assert identity.created == []


def test_promoter_creates_manager(api):
    resp = api.post(
        "/api/admin/users/create",
        json={"email": "g@example.com", "password": "secret123", "role": "gerente"},
        headers=auth("P"),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["profile"]["role"] == "manager"
    assert resp.json()["profile"]["promoter_id"] == "P"


def test_profile_update_rules(api, store):
    denied = api.post("/api/profile/update", json={"role": "promoter"}, headers=auth("A1"))
    assert denied.status_code == 403
    assert denied.json()["error"] == "No permitido"

    bad_ref = api.post("/api/profile/update", json={"manager_id": "P"}, headers=auth("A1"))
    assert bad_ref.status_code == 400
    assert bad_ref.json()["error"] == "manager_id no es un gerente"

    headless = api.post("/api/profile/update", json={"role": "manager"}, headers=auth("P"))
    assert headless.status_code == 400
    assert headless.json()["error"] == "Un manager requiere promoter_id"
    assert store.tables["profiles"]["P"]["role"] == "promoter"

    store.tables["profiles"]["P2"] = {"id": "P2", "email": "p2@example.com", "display_name": "Pedro Promotor",
                                      "username": None, "role": "promoter", "manager_id": None,
                                      "promoter_id": None, "created_at": "2025-01-01T00:00:00+00:00"}
    mismatch = api.post("/api/profile/update", json={"promoter_id": "P2"}, headers=auth("A1"))
    assert mismatch.status_code == 400
    assert mismatch.json()["error"] == "promoter_id no coincide con el promotor del manager"
    assert store.tables["profiles"]["A1"]["promoter_id"] == "P"

    renamed = api.post("/api/profile/update", json={"name": "Ana R."}, headers=auth("A1")).json()
    assert renamed["profile"]["display_name"] == "Ana R."

    demoted = api.post("/api/profile/update", json={"role": "advisor"}, headers=auth("M")).json()
    assert demoted["profile"]["role"] == "advisor"

    assert api.post("/api/profile/update", json={}, headers=auth("A1")).json() == {"ok": True}
    assert store.tables["profiles"]["A1"]["manager_id"] == "M"


def test_profiles_ensure_only_sets_role_on_insert(api, store):
    assert api.post("/api/profiles/ensure", json={}).status_code == 401

    first = api.post("/api/profiles/ensure", json={"role": "manager"}, headers=auth("NEW")).json()
    assert first["profile"]["role"] == "manager"
    created_at = first["profile"]["created_at"]

    second = api.post("/api/profiles/ensure", json={"role": "admin", "name": "Nuevo"}, headers=auth("NEW")).json()
    assert second["profile"]["role"] == "manager"
    assert second["profile"]["display_name"] == "Nuevo"
    assert second["profile"]["created_at"] == created_at


def test_login_and_magic_link(api, identity):
    bad = api.post("/api/auth/login", json={"email": "a@example.com", "password": "nope"})
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid login credentials"}
    ok = api.post("/api/auth/login", json={"email": "a@example.com", "password": "secret123"}).json()
    assert ok["session"]["access_token"] == "token-u-ase-1"

    assert api.post("/api/auth/magic-link", json={"email": "no-email"}).status_code == 400
    assert api.post("/api/auth/magic-link", json={"email": "a@example.com"}).json() == {"ok": True}
    assert identity.magic_links == ["a@example.com"]
