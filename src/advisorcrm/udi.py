from __future__ import annotations

import math
from dataclasses import dataclass

import pandas as pd

PERIODS_PER_YEAR = {
    "Mensual": 12,
    "Trimestral": 4,
    "Semestral": 2,
    "Anual": 1,
}


@dataclass(frozen=True)
class UdiQuoteInput:
    unit_price_today: float
    annual_inflation_pct: float
    years: int
    periodicity: str
    units_per_period: float
    discount_rate_pct: float | None = None


@dataclass(frozen=True)
class UdiRow:
    year: int
    unit_price: float
    annual_units: float
    cumulative_units: float
    annual_value: float
    value_at_year: float
    present_value: float


@dataclass(frozen=True)
class UdiTotals:
    total_units_contributed: float
    final_cumulative_units: float
    final_value_at_year: float
    final_present_value: float


@dataclass(frozen=True)
class UdiQuoteResult:
    rows: list[UdiRow]
    totals: UdiTotals


def build_udi_path(unit_price_today: float, annual_inflation_pct: float, years: int) -> list[float]:
    """Unit price per year; year 1 is today's price, then compounded yearly."""
    growth = 1 + annual_inflation_pct / 100
    path: list[float] = []
    price = unit_price_today
    for year in range(1, years + 1):
        if year > 1:
            price = price * growth
        path.append(price)
    return path


def present_value(amount: float, rate_pct: float | None, year_index: int) -> float:
    if not rate_pct or rate_pct <= 0:
        return amount
    return amount / (1 + rate_pct / 100) ** year_index


def compute_udi_quote(quote: UdiQuoteInput) -> UdiQuoteResult:
    try:
        per_year = PERIODS_PER_YEAR[quote.periodicity]
    except KeyError:
        raise ValueError(f"Unknown periodicity: {quote.periodicity!r}") from None
    if quote.years < 0:
        raise ValueError("years must be >= 0")

    path = build_udi_path(quote.unit_price_today, quote.annual_inflation_pct, quote.years)
    rows: list[UdiRow] = []
    cumulative = 0.0
    contributed = 0.0
    for year, price in enumerate(path, start=1):
        annual_units = quote.units_per_period * per_year
        contributed += annual_units
        cumulative += annual_units
        value_at_year = cumulative * price
        rows.append(
            UdiRow(
                year=year,
                unit_price=price,
                annual_units=annual_units,
                cumulative_units=cumulative,
                annual_value=annual_units * price,
                value_at_year=value_at_year,
                present_value=present_value(value_at_year, quote.discount_rate_pct, year),
            )
        )

    last = rows[-1] if rows else None
    totals = UdiTotals(
        total_units_contributed=contributed,
        final_cumulative_units=last.cumulative_units if last else 0.0,
        final_value_at_year=last.value_at_year if last else 0.0,
        final_present_value=last.present_value if last else 0.0,
    )
    return UdiQuoteResult(rows=rows, totals=totals)


def quote_frame(result: UdiQuoteResult) -> pd.DataFrame:
    """Year-indexed table of the projection at full precision."""
    cols = [
        "Year",
        "UnitPrice",
        "AnnualUnits",
        "CumulativeUnits",
        "AnnualValue",
        "ValueAtYear",
        "PresentValue",
    ]
    data = [
        [r.year, r.unit_price, r.annual_units, r.cumulative_units, r.annual_value, r.value_at_year, r.present_value]
        for r in result.rows
    ]
    return pd.DataFrame(data, columns=cols).set_index("Year")


def fmt2(value: float) -> str:
    """Two-decimal display string; non-finite numbers display as 0.00."""
    if value is None or not math.isfinite(value):
        value = 0.0
    return f"{value:,.2f}"
