"""Seed and clear demo data for development and testing.

Creates the demo hierarchy (two promoters, two managers, three advisors)
and a handful of clients, policies and activities per advisor. Every demo
row carries a fixed id, so seeding twice updates instead of duplicating.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Any

from .config import CrmConfig
from .dates import now_utc, to_iso
from .sync import ActivityRepository, ClientRepository, EntityStore, ProfileRepository, policy_repository
from .types import CALL, CLOSING_MEETING, DELIVERY, FOLLOW_UP, INITIAL_MEETING, Activity, Client, Policy, Profile

DEMO_USERS = [
    Profile(id="u-prom-1", role="promoter", name="Antonio García", username="prom-antonio"),
    Profile(id="u-prom-2", role="promoter", name="Antonio García Jr.", username="prom-antoniojr"),
    Profile(id="u-ger-1", role="manager", name="Pilar García", username="ger-pilar", promoter_id="u-prom-1"),
    Profile(id="u-ger-2", role="manager", name="Jairon Galicia", username="ger-jairon", promoter_id="u-prom-1"),
    Profile(
        id="u-ase-1", role="advisor", name="Asesor Juan", username="ase-juan",
        manager_id="u-ger-1", promoter_id="u-prom-1",
    ),
    Profile(
        id="u-ase-2", role="advisor", name="Asesor Ana", username="ase-ana",
        manager_id="u-ger-1", promoter_id="u-prom-1",
    ),
    Profile(
        id="u-ase-3", role="advisor", name="Asesor Luis", username="ase-luis",
        manager_id="u-ger-2", promoter_id="u-prom-1",
    ),
]

_FIRST_NAMES = ["María", "José", "Lucía", "Carlos", "Fernanda", "Miguel"]
_LAST_NAMES = ["Hernández", "López", "Martínez", "Sánchez", "Ramírez", "Torres"]
_PLANS = ["Vida Mujer", "Imagina Ser", "Orvi 99", "Realiza", "Star Temporal"]
_DAY_TYPES = [CALL, INITIAL_MEETING, CALL, CLOSING_MEETING, DELIVERY, FOLLOW_UP]


def _demo_clients(advisor: Profile, index: int) -> list[Client]:
    out = []
    for j in range(3):
        k = (index * 3 + j) % len(_FIRST_NAMES)
        out.append(
            Client(
                id=f"demo-cli-{advisor.id}-{j}",
                nombre=_FIRST_NAMES[k],
                apellido_paterno=_LAST_NAMES[(k + index) % len(_LAST_NAMES)],
                telefono=f"55{index}{j}000{j}{index}00",
                estatus="Prospecto" if j == 0 else "Cliente",
                etapa=("new", "quote", "issued")[j],
                fuente="Referido" if j == 2 else "Mercado natural",
                owner_id=advisor.id,
            )
        )
    return out


def _demo_activities(advisor: Profile, clients: list[Client], today: datetime) -> list[Activity]:
    out = []
    for j, tipo in enumerate(_DAY_TYPES):
        start = datetime.combine(today.date(), time(9 + j), tzinfo=today.tzinfo) - timedelta(days=j % 3)
        out.append(
            Activity(
                id=f"demo-act-{advisor.id}-{j}",
                tipo=tipo,
                cliente_id=clients[j % len(clients)].id,
                fecha_hora=to_iso(start),
                fecha_hora_fin=to_iso(start + timedelta(hours=1)),
                realizada=j % 2 == 0,
                owner_id=advisor.id,
            )
        )
    return out


def seed_demo(store: EntityStore, config: CrmConfig) -> dict[str, Any]:
    """Insert or refresh the demo dataset through the repositories.

    Expects a service store: rows are written on behalf of each demo advisor.
    """
    profiles = ProfileRepository(store)
    for p in DEMO_USERS:
        if profiles.upsert(p, p) is None:
            raise RuntimeError(f"Failed to seed profile {p.id}: {profiles.error}")

    today = now_utc()
    counts = {"profiles": len(DEMO_USERS), "clients": 0, "policies": 0, "activities": 0}
    advisors = [p for p in DEMO_USERS if p.role == "advisor"]
    for i, advisor in enumerate(advisors):
        clients_repo = ClientRepository(store, config)
        clients = []
        for c in _demo_clients(advisor, i):
            saved = clients_repo.upsert(advisor, c)
            if saved is None:
                raise RuntimeError(f"Failed to seed client {c.id}: {clients_repo.error}")
            clients.append(saved)
        counts["clients"] += len(clients)

        policies = policy_repository(store)
        for j, c in enumerate(clients[1:], start=1):
            policy = Policy(
                id=f"demo-pol-{advisor.id}-{j}",
                cliente_id=c.id,
                plan=_PLANS[(i + j) % len(_PLANS)],
                estado="Vigente" if j == 2 else "En proceso",
                prima_mensual=1500.0 * j + 250 * i,
                moneda="MXN",
                forma_pago="Mensual",
                fecha_ingreso=(today - timedelta(days=10 * j)).date().isoformat(),
                owner_id=advisor.id,
            )
            if policies.upsert(advisor, policy) is None:
                raise RuntimeError(f"Failed to seed policy {policy.id}: {policies.error}")
            counts["policies"] += 1

        activities = ActivityRepository(store)
        for a in _demo_activities(advisor, clients, today):
            if activities.upsert(advisor, a) is None:
                raise RuntimeError(f"Failed to seed activity {a.id}: {activities.error}")
            counts["activities"] += 1
    return counts


def clear_demo(store: EntityStore) -> int:
    """Delete every demo row. Returns the number of rows removed."""
    removed = 0
    for table in ("activities", "policies", "clients"):
        for row in store.select(None, table):
            if str(row["id"]).startswith("demo-") and store.delete(None, table, row["id"]):
                removed += 1
    # managers/advisors reference promoters; delete bottom-up
    for p in reversed(DEMO_USERS):
        if store.delete(None, "profiles", p.id):
            removed += 1
    return removed
