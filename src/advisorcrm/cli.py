from __future__ import annotations

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

import typer
from rich.console import Console
from rich.table import Table

from .config import load_crm_config, load_settings
from .db import init_db, open_store, schema_sql
from .errors import FeedError, StoreError
from .feed import fetch_latest_udi
from .seed import clear_demo, seed_demo
from .udi import PERIODS_PER_YEAR, UdiQuoteInput, compute_udi_quote, fmt2, quote_frame

app = typer.Typer(add_completion=False, help="Advisor CRM backend: database, demo data, tools and API server.")
console = Console()


@app.command(name="init-db")
def init_db_cmd(
    print_sql: bool = typer.Option(False, "--print-sql", help="Print the schema instead of applying it."),
):
    """Create tables, helper functions and row-level security policies (idempotent)."""
    if print_sql:
        console.print(schema_sql(), markup=False, highlight=False)
        return
    init_db(load_settings())
    console.print("Database initialized")


@app.command()
def seed(
    clear: bool = typer.Option(False, "--clear", help="Remove the demo rows instead of creating them."),
):
    """Load (or remove) the demo hierarchy and sample records."""
    try:
        with open_store(service=True, settings=load_settings()) as store:
            if clear:
                console.print(f"Removed {clear_demo(store)} demo rows")
                return
            counts = seed_demo(store, load_crm_config())
    except StoreError as exc:
        console.print(f"[red]Seeding failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(", ".join(f"{v} {k}" for k, v in counts.items()))


@app.command()
def quote(
    price: float = typer.Option(..., min=0.0, help="UDI price today."),
    inflation: float = typer.Option(4.0, help="Annual inflation, percent."),
    years: int = typer.Option(10, min=1, help="Projection horizon in years."),
    periodicity: str = typer.Option("Mensual", help="Mensual, Trimestral, Semestral or Anual."),
    units: float = typer.Option(..., min=0.0, help="UDIs contributed per period."),
    discount: Optional[float] = typer.Option(None, help="Discount rate for present value, percent."),
    csv: Optional[Path] = typer.Option(None, help="Also write the table to this CSV file."),
):
    """Project a UDI-denominated contribution plan."""
    if periodicity not in PERIODS_PER_YEAR:
        raise typer.BadParameter(f"periodicity must be one of {', '.join(PERIODS_PER_YEAR)}")
    result = compute_udi_quote(UdiQuoteInput(price, inflation, years, periodicity, units, discount))

    table = Table(title="UDI projection")
    for col in ("Year", "UDI price", "Annual UDIs", "Cumulative UDIs", "Annual MXN", "Value at year", "Present value"):
        table.add_column(col, justify="right")
    for r in result.rows:
        table.add_row(
            str(r.year),
            f"{r.unit_price:.4f}",
            f"{r.annual_units:g}",
            f"{r.cumulative_units:g}",
            fmt2(r.annual_value),
            fmt2(r.value_at_year),
            fmt2(r.present_value),
        )
    console.print(table)
    t = result.totals
    console.print(
        f"Total UDIs {t.total_units_contributed:g}; final value {fmt2(t.final_value_at_year)}; "
        f"present value {fmt2(t.final_present_value)}"
    )
    if csv is not None:
        quote_frame(result).round(2).to_csv(csv)
        console.print(f"Wrote {csv}")


@app.command(name="udi-latest")
def udi_latest():
    """Fetch the latest UDI price from Banxico."""
    settings = load_settings()
    config = load_crm_config()
    try:
        latest = fetch_latest_udi(settings, ZoneInfo(settings.timezone), config.future_tolerance_hours)
    except FeedError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(f"UDI {latest['value']} ({latest['date']}, {latest['source']})")


def _find_available_port(host: str, preferred: int) -> int:
    """Return *preferred* if free, otherwise try fallbacks then let the OS pick."""
    import socket

    candidates = [preferred] + [p for p in (8000, 8001, 8080, 8888) if p != preferred]
    for port in candidates:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind (use 0.0.0.0 for LAN)."),
    port: int = typer.Option(8000, help="Port to serve the API on."),
):
    """Start the CRM API server."""
    import uvicorn

    actual_port = _find_available_port(host, port)
    if actual_port != port:
        console.print(f"Port {port} is in use, using port {actual_port} instead.")
    uvicorn.run("advisorcrm.server:app", host=host, port=actual_port, reload=False)


if __name__ == "__main__":
    app()
