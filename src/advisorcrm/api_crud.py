"""FastAPI APIRouter with CRUD endpoints for clients, policies, activities, goals, KB and medical forms."""

from __future__ import annotations

import dataclasses
from datetime import datetime
from functools import lru_cache
from typing import Any, Generator, Literal
from zoneinfo import ZoneInfo

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from . import agenda, dashboard, db, feed, goals, mapping, pipeline, policies, scope, udi
from .config import CrmConfig, Settings, load_crm_config, load_settings
from .dates import now_utc, parse_instant, to_iso
from .errors import PermissionDenied
from .identity import SupabaseIdentity
from .ratelimit import rate_limited
from .sync import (
    ActivityRepository,
    ClientRepository,
    EntityStore,
    KBRepository,
    ProfileRepository,
    Repository,
    goal_repository,
    medical_repository,
    policy_repository,
)
from .types import (
    ACTIVITY_TYPES,
    Activity,
    Client,
    Goal,
    KBFile,
    KBSection,
    MedicalForm,
    Participation,
    Policy,
    Profile,
)

router = APIRouter(prefix="/api")

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_config() -> CrmConfig:
    return load_crm_config()


def get_store(settings: Settings = Depends(get_settings)) -> Generator[EntityStore, None, None]:
    """Row-level-security store; every call is evaluated as the acting user."""
    with db.open_store(settings=settings) as store:
        yield store


def get_service_store(settings: Settings = Depends(get_settings)) -> Generator[EntityStore, None, None]:
    """Service store for the administrative endpoints (bypasses visibility)."""
    with db.open_store(service=True, settings=settings) as store:
        yield store


def get_identity(settings: Settings = Depends(get_settings)) -> SupabaseIdentity:
    return SupabaseIdentity(settings)


def bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization") or ""
    if not auth.lower().startswith("bearer "):
        return None
    return auth[7:].strip() or None


def require_user(
    request: Request,
    store: EntityStore = Depends(get_store),
    identity: SupabaseIdentity = Depends(get_identity),
) -> Profile:
    """Resolve the bearer token to the caller's profile; 401/403 otherwise."""
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    ident = identity.get_user(token)
    row = store.get(ident.id, "profiles", ident.id)
    if row is None:
        raise HTTPException(status_code=403, detail="Perfil no encontrado")
    return mapping.profile_from_row(row)


def _404(item: str):
    raise HTTPException(status_code=404, detail=f"{item} not found")


def _raise_for(repo: Repository[Any], item: str):
    """Turn a repository's failure into the matching HTTP error."""
    if isinstance(repo.failure, PermissionDenied):
        raise HTTPException(status_code=403, detail=repo.error or "No permitido")
    if repo.failure is None:
        _404(item)
    raise HTTPException(status_code=502, detail=repo.error or f"{item} request failed")


def _listed(repo: Repository[Any], user: Profile) -> list[Any]:
    items = repo.list(user)
    if repo.failure is not None:
        _raise_for(repo, repo.resource.label)
    return items


def _existing(repo: Repository[Any], user: Profile, entity_id: str, item: str) -> Any:
    current = repo.get(user, entity_id)
    if current is None:
        if repo.failure is not None:
            _raise_for(repo, item)
        _404(item)
    return current


def _tz(settings: Settings) -> ZoneInfo:
    return ZoneInfo(settings.timezone)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ClientBody(BaseModel):
    nombre: str = Field(min_length=1)
    apellido_paterno: str | None = None
    apellido_materno: str | None = None
    telefono: str | None = None
    email: str | None = None
    fecha_nacimiento: str | None = None
    sexo: Literal["Masculino", "Femenino", "Otro"] | None = None
    estado_civil: str | None = None
    estado_residencia: str | None = None
    ocupacion: str | None = None
    empresa: str | None = None
    ingreso_hogar: float | None = None
    dependientes: int | None = Field(default=None, ge=0)
    fumador: bool | None = None
    fuente: str | None = None
    necesidades: list[str] | None = None
    estatus: Literal["Prospecto", "Interesado", "Cliente", "Inactivo", "Referido", "No interesado"] | None = None
    etapa: Literal["new", "quote", "follow", "issued"] | None = None
    referido_por_id: str | None = None
    asesor: str | None = None
    ultimo_contacto: str | None = None
    notas: str | None = None
    anf_realizado: bool | None = None
    anf_fecha: str | None = None
    contactado: bool = False
    contactado_fecha: str | None = None
    owner_id: str | None = None


class ContactedBody(BaseModel):
    value: bool


class ParticipationBody(BaseModel):
    mdrt: bool | None = None
    convencion: bool | None = None
    reconocimiento: bool | None = None


class PolicyBody(BaseModel):
    cliente_id: str = Field(min_length=1)
    plan: str = Field(min_length=1)
    estado: Literal["Propuesta", "En proceso", "Vigente", "Rechazada"] = "Propuesta"
    numero_poliza: str | None = None
    suma_asegurada: float | None = Field(default=None, ge=0)
    prima_mensual: float | None = Field(default=None, ge=0)
    moneda: Literal["MXN", "USD", "UDIS"] | None = None
    msi: bool | None = None
    forma_pago: Literal["Mensual", "Trimestral", "Semestral", "Anual"] | None = None
    fecha_ingreso: str | None = None
    fecha_examen_medico: str | None = None
    fecha_pago: str | None = None
    fecha_entrega: str | None = None
    comision_estimada: float | None = None
    participa: ParticipationBody = Field(default_factory=ParticipationBody)
    necesidades_futuras: str | None = None
    proximo_seguimiento: str | None = None
    pdf_url: str | None = None


class ActivityBody(BaseModel):
    tipo: Literal["Llamada", "Cita Inicial", "Cita Cierre", "Entrega", "Seguimiento"]
    cliente_id: str = Field(min_length=1)
    fecha_hora: str = Field(min_length=1)
    fecha_hora_fin: str | None = None
    lugar: str | None = None
    notas: str | None = None
    realizada: bool | None = None
    genero_cierre: bool | None = None
    obtuvo_referidos: bool | None = None
    reagendada: bool | None = None
    color: str | None = None
    shared_with: list[str] | None = None


class GoalBody(BaseModel):
    tipo: Literal["Ingreso mensual", "Pólizas mensuales", "Citas semanales", "Referidos"]
    mes: str = Field(pattern=r"^\d{4}-\d{2}$")
    meta_mensual: float | None = None
    meta_anual: float | None = None


class KBSectionBody(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None


class KBFileBody(BaseModel):
    name: str = Field(min_length=1)
    size: int = Field(default=0, ge=0)
    type: str = "application/octet-stream"
    url: str = ""


class MedicalBody(BaseModel):
    cliente_id: str = Field(min_length=1)
    fecha: str = Field(min_length=1)
    enfermedades: str | None = None
    hospitalizacion: str | None = None
    medicamentos: str | None = None
    cirugias: str | None = None
    antecedentes: str | None = None
    otros: str | None = None
    pdf_url: str | None = None


class UdiQuoteBody(BaseModel):
    unit_price_today: float = Field(gt=0)
    annual_inflation_pct: float = 0.0
    years: int = Field(ge=1, le=100)
    periodicity: Literal["Mensual", "Trimestral", "Semestral", "Anual"] = "Mensual"
    units_per_period: float = Field(ge=0)
    discount_rate_pct: float | None = None


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def _clients(store: EntityStore, config: CrmConfig) -> ClientRepository:
    return ClientRepository(store, config)


@router.get("/clients")
def list_clients(
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    return [mapping.client_to_row(c) for c in _listed(_clients(store, config), user)]


@router.post("/clients", status_code=201)
def create_client(
    body: ClientBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = _clients(store, config)
    client = repo.keep_contact_state(user, Client(id="", **body.model_dump()))
    saved = repo.upsert(user, client)
    if saved is None:
        _raise_for(repo, "Client")
    return mapping.client_to_row(saved)


@router.put("/clients/{client_id}")
def update_client(
    client_id: str,
    body: ClientBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = _clients(store, config)
    current = _existing(repo, user, client_id, "Client")
    values = body.model_dump()
    values["owner_id"] = values["owner_id"] or current.owner_id
    client = repo.keep_contact_state(user, Client(id=client_id, created_at=current.created_at, **values))
    saved = repo.upsert(user, client)
    if saved is None:
        _raise_for(repo, "Client")
    return mapping.client_to_row(saved)


@router.post("/clients/{client_id}/contacted")
def set_client_contacted(
    client_id: str,
    body: ContactedBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = _clients(store, config)
    saved = repo.set_contacted(user, client_id, body.value)
    if saved is None:
        _raise_for(repo, "Client")
    return mapping.client_to_row(saved)


@router.delete("/clients/{client_id}")
def delete_client(
    client_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = _clients(store, config)
    if not repo.remove(user, client_id):
        _raise_for(repo, "Client")
    return {"ok": True}


@router.get("/pipeline")
def pipeline_board(
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
    settings: Settings = Depends(get_settings),
):
    """Visible clients by pipeline stage. Clients without a stage get the inferred one saved."""
    repo = _clients(store, config)
    clients = _listed(repo, user)
    staged = pipeline.backfill_stages(
        repo,
        user,
        clients,
        _listed(ActivityRepository(store), user),
        _listed(policy_repository(store), user),
        datetime.now(_tz(settings)),
    )
    return {stage: [mapping.client_to_row(c) for c in column] for stage, column in pipeline.board(staged).items()}


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def _policy_from_body(policy_id: str, body: PolicyBody, **extra: Any) -> Policy:
    values = body.model_dump()
    values["participa"] = Participation(**values["participa"])
    return Policy(id=policy_id, **values, **extra)


def _check_visible_client(user: Profile, store: EntityStore, config: CrmConfig, cliente_id: str) -> None:
    clients = _clients(store, config)
    if clients.get(user, cliente_id) is None:
        if clients.failure is not None:
            _raise_for(clients, "Client")
        raise HTTPException(status_code=400, detail="cliente_id no encontrado")


@router.get("/policies")
def list_policies(
    q: str = "",
    sort: Literal["createdAt", "plan", "cliente", "prima"] = "createdAt",
    direction: Literal["asc", "desc"] = Query("desc", alias="dir"),
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
    settings: Settings = Depends(get_settings),
):
    """Policies matching ``q``, sorted, each with the next premium due date."""
    rows = _listed(policy_repository(store), user)
    clients = _listed(_clients(store, config), user) if (q or sort == "cliente") else []
    ordered = policies.filter_and_sort(rows, clients, q, sort, descending=direction == "desc")
    today = datetime.now(_tz(settings)).date()
    out = []
    for p in ordered:
        due = policies.next_payment_date(p.fecha_pago, p.forma_pago, today)
        out.append({**mapping.policy_to_row(p), "proxima_fecha_pago": due.isoformat() if due else None})
    return out


@router.post("/policies", status_code=201)
def create_policy(
    body: PolicyBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    _check_visible_client(user, store, config, body.cliente_id)
    repo = policy_repository(store)
    saved = repo.upsert(user, _policy_from_body("", body))
    if saved is None:
        _raise_for(repo, "Policy")
    return mapping.policy_to_row(saved)


@router.put("/policies/{policy_id}")
def update_policy(
    policy_id: str,
    body: PolicyBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = policy_repository(store)
    current = _existing(repo, user, policy_id, "Policy")
    if body.cliente_id != current.cliente_id:
        _check_visible_client(user, store, config, body.cliente_id)
    policy = _policy_from_body(policy_id, body, owner_id=current.owner_id, created_at=current.created_at)
    saved = repo.upsert(user, policy)
    if saved is None:
        _raise_for(repo, "Policy")
    return mapping.policy_to_row(saved)


@router.delete("/policies/{policy_id}")
def delete_policy(
    policy_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    repo = policy_repository(store)
    if not repo.remove(user, policy_id):
        _raise_for(repo, "Policy")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


@router.get("/activities")
def list_activities(
    tipo: str | None = None,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    if tipo is not None and tipo not in ACTIVITY_TYPES:
        raise HTTPException(status_code=400, detail=f"Tipo de actividad desconocido: {tipo}")
    rows = _listed(ActivityRepository(store), user)
    if tipo is not None:
        rows = [a for a in rows if a.tipo == tipo]
    return [mapping.activity_to_row(a) for a in rows]


@router.post("/activities", status_code=201)
def create_activity(
    body: ActivityBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    if parse_instant(body.fecha_hora) is None:
        raise HTTPException(status_code=400, detail="fecha_hora inválida")
    repo = ActivityRepository(store)
    saved = repo.upsert(user, Activity(id="", **body.model_dump()))
    if saved is None:
        _raise_for(repo, "Activity")
    return mapping.activity_to_row(saved)


@router.put("/activities/{activity_id}")
def update_activity(
    activity_id: str,
    body: ActivityBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    if parse_instant(body.fecha_hora) is None:
        raise HTTPException(status_code=400, detail="fecha_hora inválida")
    repo = ActivityRepository(store)
    current = _existing(repo, user, activity_id, "Activity")
    activity = Activity(
        id=activity_id, owner_id=current.owner_id, created_at=current.created_at, **body.model_dump()
    )
    saved = repo.upsert(user, activity)
    if saved is None:
        _raise_for(repo, "Activity")
    return mapping.activity_to_row(saved)


@router.delete("/activities/{activity_id}")
def delete_activity(
    activity_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    repo = ActivityRepository(store)
    if not repo.remove(user, activity_id):
        _raise_for(repo, "Activity")
    return {"ok": True}


@router.get("/calendar")
def calendar_view(
    view: Literal["day", "week", "month"] = "week",
    anchor: str | None = None,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    tz = _tz(settings)
    if anchor is None:
        when = datetime.now(tz)
    else:
        parsed = parse_instant(anchor, tz)
        if parsed is None:
            raise HTTPException(status_code=400, detail="anchor inválido")
        when = parsed.astimezone(tz)
    start, end = agenda.range_for(view, when)
    visible = agenda.visible_activities(_listed(ActivityRepository(store), user), start, end)
    if view == "month":
        days = agenda.grid_of_month(when)
    elif view == "week":
        days = agenda.days_of_week(when)
    else:
        days = [when.date()]
    return {
        "view": view,
        "start": to_iso(start),
        "end": to_iso(end),
        "days": [d.isoformat() for d in days],
        "activities": [mapping.activity_to_row(a) for a in visible],
    }


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------


@router.get("/goals")
def list_goals(user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    """Goals with their month's results from the policies entered that month."""
    results = goals.results_by_month(_listed(policy_repository(store), user))
    return [
        {**mapping.goal_to_row(g), "progreso": goals.goal_progress(g, results)}
        for g in _listed(goal_repository(store), user)
    ]


@router.post("/goals", status_code=201)
def create_goal(body: GoalBody, user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    repo = goal_repository(store)
    saved = repo.upsert(user, Goal(id="", **body.model_dump()))
    if saved is None:
        _raise_for(repo, "Goal")
    return mapping.goal_to_row(saved)


@router.put("/goals/{goal_id}")
def update_goal(
    goal_id: str,
    body: GoalBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    repo = goal_repository(store)
    current = _existing(repo, user, goal_id, "Goal")
    goal = Goal(id=goal_id, owner_id=current.owner_id, created_at=current.created_at, **body.model_dump())
    saved = repo.upsert(user, goal)
    if saved is None:
        _raise_for(repo, "Goal")
    return mapping.goal_to_row(saved)


@router.delete("/goals/{goal_id}")
def delete_goal(goal_id: str, user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    repo = goal_repository(store)
    if not repo.remove(user, goal_id):
        _raise_for(repo, "Goal")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


def _section_out(section: KBSection) -> dict[str, Any]:
    out = mapping.kb_section_to_row(section)
    out["files"] = [mapping.kb_file_to_row(f, section.id, f.uploaded_by_id) for f in section.files]
    return out


@router.get("/kb")
def list_kb(
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    return [_section_out(s) for s in _listed(KBRepository(store, config), user)]


@router.post("/kb", status_code=201)
def create_kb_section(
    body: KBSectionBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = KBRepository(store, config)
    saved = repo.upsert(user, KBSection(id="", **body.model_dump()))
    if saved is None:
        _raise_for(repo, "KB section")
    return _section_out(saved)


@router.put("/kb/{section_id}")
def update_kb_section(
    section_id: str,
    body: KBSectionBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = KBRepository(store, config)
    current = _existing(repo, user, section_id, "KB section")
    section = dataclasses.replace(current, title=body.title, description=body.description)
    saved = repo.upsert(user, section)
    if saved is None:
        _raise_for(repo, "KB section")
    return _section_out(saved)


@router.delete("/kb/{section_id}")
def delete_kb_section(
    section_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = KBRepository(store, config)
    if not repo.remove(user, section_id):
        _raise_for(repo, "KB section")
    return {"ok": True}


@router.post("/kb/{section_id}/files", status_code=201)
def add_kb_files(
    section_id: str,
    body: list[KBFileBody],
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    if not body:
        raise HTTPException(status_code=400, detail="No files to add")
    repo = KBRepository(store, config)
    _existing(repo, user, section_id, "KB section")
    now = to_iso(now_utc())
    files = [KBFile(id="", uploaded_at=now, uploaded_by_id=user.id, **f.model_dump()) for f in body]
    added = repo.add_files(user, section_id, files)
    if not added:
        _raise_for(repo, "KB section")
    return [mapping.kb_file_to_row(f, section_id, user.id) for f in added]


@router.delete("/kb/files/{file_id}")
def delete_kb_file(
    file_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    repo = KBRepository(store, config)
    if not repo.remove_file(user, file_id):
        _raise_for(repo, "KB file")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Medical forms
# ---------------------------------------------------------------------------


@router.get("/medical-forms")
def list_medical_forms(user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    return [mapping.medical_to_row(m) for m in _listed(medical_repository(store), user)]


@router.post("/medical-forms", status_code=201)
def create_medical_form(
    body: MedicalBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    _check_visible_client(user, store, config, body.cliente_id)
    repo = medical_repository(store)
    saved = repo.upsert(user, MedicalForm(id="", **body.model_dump()))
    if saved is None:
        _raise_for(repo, "Medical form")
    return mapping.medical_to_row(saved)


@router.put("/medical-forms/{form_id}")
def update_medical_form(
    form_id: str,
    body: MedicalBody,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    repo = medical_repository(store)
    current = _existing(repo, user, form_id, "Medical form")
    form = MedicalForm(id=form_id, owner_id=current.owner_id, created_at=current.created_at, **body.model_dump())
    saved = repo.upsert(user, form)
    if saved is None:
        _raise_for(repo, "Medical form")
    return mapping.medical_to_row(saved)


@router.delete("/medical-forms/{form_id}")
def delete_medical_form(
    form_id: str,
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
):
    repo = medical_repository(store)
    if not repo.remove(user, form_id):
        _raise_for(repo, "Medical form")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Profiles and team
# ---------------------------------------------------------------------------


@router.get("/profiles")
def list_profiles(user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    return [mapping.profile_to_row(p) for p in _listed(ProfileRepository(store), user)]


@router.get("/profiles/me")
def my_profile(user: Profile = Depends(require_user)):
    return mapping.profile_to_row(user)


@router.get("/profiles/{profile_id}")
def get_profile(profile_id: str, user: Profile = Depends(require_user), store: EntityStore = Depends(get_store)):
    repo = ProfileRepository(store)
    return mapping.profile_to_row(_existing(repo, user, profile_id, "Profile"))


@router.get("/team")
def team_summary(
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
):
    """Caller's visible team with client and policy counts per owner.

    Clients without an owner are reported under ``unassigned`` for the roles
    that may claim them.
    """
    people = _listed(ProfileRepository(store), user)
    members = scope.visible_owner_ids(user, people)
    claimers = user.role in ("manager", "promoter", "admin")

    def owner_of(row: Any) -> str | None:
        return row.owner_id

    clients = scope.filter_by_scope(
        _listed(_clients(store, config), user), user, people, owner_of, keep_orphans=claimers
    )
    held = scope.filter_by_scope(_listed(policy_repository(store), user), user, people, owner_of)
    client_groups = scope.group_by_owner(clients, owner_of)
    policy_groups = scope.group_by_owner(held, owner_of)
    return {
        "members": [
            {
                **mapping.profile_to_row(p),
                "clients": len(client_groups.get(p.id, [])),
                "policies": len(policy_groups.get(p.id, [])),
            }
            for p in people
            if p.id in members
        ],
        "unassigned_clients": len(client_groups.get(None, [])) if claimers else 0,
    }


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/dashboard")
def dashboard_summary(
    range_key: Literal["week", "month", "q3", "all"] = Query("week", alias="range"),
    user: Profile = Depends(require_user),
    store: EntityStore = Depends(get_store),
    config: CrmConfig = Depends(get_config),
    settings: Settings = Depends(get_settings),
):
    tz = _tz(settings)
    now = dashboard.localize(None, tz)
    selected = dashboard.range_for_preset(range_key, now, config)
    today = dashboard.today_window(now)
    snapshot = dashboard.compute_snapshot(
        _listed(_clients(store, config), user),
        _listed(policy_repository(store), user),
        _listed(ActivityRepository(store), user),
        selected,
        today,
        config.activity_points,
        tz,
    )
    return {
        "range": {"key": range_key, "from": to_iso(selected.start), "to": to_iso(selected.end)},
        **snapshot.as_dict(),
        "daily_target": config.daily_points_target,
        "daily_progress": dashboard.daily_progress(snapshot.points_today, config.daily_points_target),
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def _quote(body: UdiQuoteBody) -> udi.UdiQuoteResult:
    return udi.compute_udi_quote(udi.UdiQuoteInput(**body.model_dump()))


@router.post("/tools/udi-quote")
def udi_quote(body: UdiQuoteBody, user: Profile = Depends(require_user)):
    result = _quote(body)
    return {
        "rows": [dataclasses.asdict(r) for r in result.rows],
        "totals": dataclasses.asdict(result.totals),
        "formatted": {
            "final_value_at_year": udi.fmt2(result.totals.final_value_at_year),
            "final_present_value": udi.fmt2(result.totals.final_present_value),
        },
    }


@router.post("/tools/udi-quote.csv")
def udi_quote_csv(body: UdiQuoteBody, user: Profile = Depends(require_user)):
    frame = udi.quote_frame(_quote(body)).round(2)
    return Response(
        content=frame.to_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="udi_quote.csv"'},
    )


def get_feed_transport() -> httpx.BaseTransport | None:
    return None


@router.get("/udi/latest")
@rate_limited
def udi_latest(
    request: Request,
    settings: Settings = Depends(get_settings),
    config: CrmConfig = Depends(get_config),
    transport: httpx.BaseTransport | None = Depends(get_feed_transport),
):
    return feed.fetch_latest_udi(settings, _tz(settings), config.future_tolerance_hours, transport=transport)
