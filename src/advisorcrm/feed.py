"""Latest UDI price from the Banxico SIE REST API."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

import httpx

from .config import Settings
from .errors import FeedError

logger = logging.getLogger("advisorcrm.feed")

BANXICO_URL = "https://www.banxico.org.mx/SieAPIRest/service/v1/series/{serie}/datos/oportuno"

_ISO = re.compile(r"^(\d{4})[-/](\d{2})[-/](\d{2})$")
_DMY = re.compile(r"^(\d{2})[/-](\d{2})[/-](\d{4})$")


def _make_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def normalize_banxico_date(raw: str | None, now: datetime, tolerance_hours: float = 36.0) -> date:
    """Read the feed's date, which may arrive as ISO or dd/MM/yyyy.

    A date further in the future than the tolerance is taken as a day/month
    mix-up and swapped. Anything unreadable becomes today.
    """
    today = now.date()
    limit = now + timedelta(hours=tolerance_hours)

    def is_future(d: date) -> bool:
        return datetime.combine(d, time.min, tzinfo=now.tzinfo) > limit

    raw = (raw or "").strip()
    m = _ISO.match(raw)
    if m:
        y, mo, d = m.groups()
        parsed = _make_date(y, mo, d)
        if parsed is not None:
            if is_future(parsed):
                swapped = _make_date(y, d, mo)
                if swapped is not None and not is_future(swapped):
                    return swapped
                return today
            return parsed
    m = _DMY.match(raw)
    if m:
        d, mo, y = m.groups()
        parsed = _make_date(y, mo, d)
        if parsed is not None:
            if is_future(parsed):
                swapped = _make_date(y, d, mo)
                if swapped is not None:
                    return swapped
            return parsed
    return today


def parse_banxico_payload(data: Any) -> tuple[float, str]:
    try:
        node = data["bmx"]["series"][0]["datos"][0]
    except (KeyError, IndexError, TypeError):
        raise FeedError("Invalid value", 502) from None
    if not isinstance(node, dict):
        raise FeedError("Invalid value", 502)
    raw = str(node.get("dato") or "").replace(",", ".")
    try:
        value = float(raw)
    except ValueError:
        raise FeedError("Invalid value", 502) from None
    if value != value or value in (float("inf"), float("-inf")) or value <= 0:
        raise FeedError("Invalid value", 502)
    return value, str(node.get("fecha") or "")


def fetch_latest_udi(
    settings: Settings,
    tz: tzinfo,
    tolerance_hours: float = 36.0,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """Return ``{"value", "date" (dd/MM/yyyy), "source"}`` or raise FeedError."""
    if not settings.banxico_token:
        raise FeedError("BANXICO_TOKEN not configured", 503)

    url = BANXICO_URL.format(serie=settings.banxico_serie)
    timeout = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=None)
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.get(url, params={"token": settings.banxico_token})
    except httpx.RequestError as exc:
        logger.warning("Banxico fetch failed: %s", exc.__class__.__name__)
        raise FeedError("Fetch failed", 500) from exc

    if resp.status_code >= 400:
        raise FeedError(f"Banxico {resp.status_code}", resp.status_code)
    try:
        data = resp.json()
    except ValueError:
        raise FeedError("Invalid value", 502) from None

    value, raw_date = parse_banxico_payload(data)
    when = normalize_banxico_date(raw_date, datetime.now(tz), tolerance_hours)
    return {"value": value, "date": when.strftime("%d/%m/%Y"), "source": "banxico"}
