from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .types import Goal, Policy

INCOME_GOAL = "Ingreso mensual"
POLICY_GOAL = "Pólizas mensuales"

# share of the monthly premium counted as the advisor's income
COMMISSION_PROXY = 0.3


@dataclass(frozen=True)
class MonthResult:
    ingreso: float = 0.0
    polizas: int = 0


def results_by_month(policies: Iterable[Policy]) -> dict[str, MonthResult]:
    """Income proxy and policy count per ``YYYY-MM`` of ``fecha_ingreso``.

    Policies that were never entered do not count toward any month.
    """
    totals: dict[str, MonthResult] = {}
    for p in policies:
        if not p.fecha_ingreso:
            continue
        mes = str(p.fecha_ingreso)[:7]
        current = totals.get(mes, MonthResult())
        totals[mes] = MonthResult(
            ingreso=current.ingreso + (p.prima_mensual or 0.0) * COMMISSION_PROXY,
            polizas=current.polizas + 1,
        )
    return totals


def goal_progress(goal: Goal, results: Mapping[str, MonthResult]) -> dict[str, Any]:
    """The goal month's results; ``diferencia`` is what is left to reach ``meta_mensual``.

    Only income and policy-count goals have a measurable result, so the
    difference is None for the other goal types.
    """
    res = results.get(goal.mes, MonthResult())
    if goal.tipo == INCOME_GOAL:
        achieved: float | None = res.ingreso
    elif goal.tipo == POLICY_GOAL:
        achieved = float(res.polizas)
    else:
        achieved = None
    return {
        "ingreso": round(res.ingreso, 2),
        "polizas": res.polizas,
        "diferencia": round((goal.meta_mensual or 0.0) - achieved, 2) if achieved is not None else None,
    }
