"""Sales pipeline stage of each client, inferred from its policies and agenda.

A client with a stored ``etapa`` keeps it; the inference only fills the gap
for clients that never had one.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Iterable

from .dates import UTC, parse_instant
from .sync import ClientRepository
from .types import PIPELINE_STAGES, Activity, Client, Policy, Profile

logger = logging.getLogger("advisorcrm.pipeline")

ISSUED_STATES = ("Vigente", "En proceso")


def infer_stage(client: Client, activities: Iterable[Activity], policies: Iterable[Policy], now: datetime) -> str:
    """issued > quote > follow > new, first match wins.

    issued: a policy was entered (``fecha_ingreso``) or is Vigente / En proceso
    quote:  a policy is still a Propuesta
    follow: an activity not yet done is scheduled at or after *now*
    """
    own = [p for p in policies if p.cliente_id == client.id]
    if any(p.fecha_ingreso or p.estado in ISSUED_STATES for p in own):
        return "issued"
    if any(p.estado == "Propuesta" for p in own):
        return "quote"
    for a in activities:
        if a.cliente_id != client.id or a.realizada:
            continue
        when = parse_instant(a.fecha_hora, now.tzinfo or UTC)
        if when is not None and when >= now:
            return "follow"
    return "new"


def backfill_stages(
    repo: ClientRepository,
    user: Profile,
    clients: Iterable[Client],
    activities: Iterable[Activity],
    policies: Iterable[Policy],
    now: datetime,
) -> list[Client]:
    """Save the inferred stage of every client without one.

    A client the store refuses to update is still returned with its inferred
    stage; the refusal stays on *repo*.
    """
    activities = list(activities)
    policies = list(policies)
    out: list[Client] = []
    saved_count = 0
    for client in clients:
        if client.etapa:
            out.append(client)
            continue
        staged = dataclasses.replace(client, etapa=infer_stage(client, activities, policies, now))
        saved = repo.upsert(user, staged)
        if saved is not None:
            saved_count += 1
        out.append(saved or staged)
    if saved_count:
        logger.info("pipeline stage backfilled for %d clients", saved_count)
    return out


def board(clients: Iterable[Client]) -> dict[str, list[Client]]:
    columns: dict[str, list[Client]] = {stage: [] for stage in PIPELINE_STAGES}
    for c in clients:
        columns[c.etapa if c.etapa in columns else "new"].append(c)
    return columns
