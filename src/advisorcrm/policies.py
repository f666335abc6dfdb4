from __future__ import annotations

import calendar
from datetime import date
from typing import Iterable

from .dates import parse_instant
from .types import Client, Policy

SORT_KEYS = ("createdAt", "plan", "cliente", "prima")

# months between premium payments for each forma_pago
PAYMENT_MONTHS = {"Mensual": 1, "Trimestral": 3, "Semestral": 6, "Anual": 12}


def client_full_name(client: Client | None) -> str:
    if client is None:
        return ""
    parts = [client.nombre, client.apellido_paterno, client.apellido_materno]
    return " ".join(p for p in parts if p)


def filter_and_sort(
    policies: Iterable[Policy],
    clients: Iterable[Client],
    query: str = "",
    sort_key: str = "createdAt",
    descending: bool = True,
) -> list[Policy]:
    """Case-insensitive substring search over plan, policy number and client name."""
    if sort_key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_key!r}")
    by_id = {c.id: c for c in clients}
    needle = (query or "").strip().lower()

    def haystack(p: Policy) -> str:
        return " ".join(filter(None, [p.plan, p.numero_poliza, client_full_name(by_id.get(p.cliente_id))])).lower()

    rows = [p for p in policies if not needle or needle in haystack(p)]

    if sort_key == "createdAt":
        key = lambda p: p.created_at or ""  # noqa: E731
    elif sort_key == "plan":
        key = lambda p: (p.plan or "").lower()  # noqa: E731
    elif sort_key == "cliente":
        key = lambda p: (by_id[p.cliente_id].nombre if p.cliente_id in by_id else "").lower()  # noqa: E731
    else:
        key = lambda p: p.prima_mensual or 0.0  # noqa: E731
    return sorted(rows, key=key, reverse=descending)


def _add_months(d: date, months: int) -> date:
    index = d.month - 1 + months
    year, month = d.year + index // 12, index % 12 + 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def next_payment_date(fecha_pago: str | date | None, forma_pago: str | None, today: date) -> date | None:
    """First due date on or after *today*, counting whole payment periods from ``fecha_pago``.

    Every step is measured from the original date, so a day the month lacks
    clamps to its last day without drifting: a monthly policy paid on Jan 31
    falls due Feb 28 (29 in leap years), Mar 31 and Apr 30. Returns None when
    the date is unreadable or the payment form is unknown.
    """
    step = PAYMENT_MONTHS.get(forma_pago or "")
    parsed = parse_instant(fecha_pago)
    if step is None or parsed is None:
        return None
    start = parsed.date()
    if start >= today:
        return start
    periods = ((today.year - start.year) * 12 + today.month - start.month) // step
    due = _add_months(start, periods * step)
    while due < today:
        periods += 1
        due = _add_months(start, periods * step)
    return due
