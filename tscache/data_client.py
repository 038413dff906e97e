"""
Upstream market data client: the fetcher that sits behind the cache.

Returns validated bars, oldest first:
  [ {time, open, high, low, close, volume}, ... ]

Notes / Pitfalls:
- Alpha Vantage answers HTTP 200 even when throttled; the body carries a
  "Note"/"Information" message instead of a series. We surface that as a
  rate-limit error rather than an empty result.
- Intraday timestamps are wall-clock in the exchange zone ("6. Time Zone").
  Naive start/end are compared in that zone; aware ones are converted first.
- No retries here; a failure is raised to the caller (the cache never stores it).
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from tscache.errors import UpstreamFetchError, UpstreamRateLimitError
from tscache.schemas import PERIOD_MINUTES, SeriesQuery
from tscache.validator import validate_bar

logger = logging.getLogger("tscache.data_client")

# --------------------------------------------------------------------------------------
# Config
# --------------------------------------------------------------------------------------
ALPHAVANTAGE_URL = "https://www.alphavantage.co/query"
PROVIDERS = ("ALPHAVANTAGE", "SYNTHETIC")
HTTP_TIMEOUT_SEC = 10.0
MAX_SYNTHETIC_BARS = 5000

_AV_FIELDS = {"open": "1. open", "high": "2. high", "low": "3. low", "close": "4. close"}
_AV_VOLUME = "5. volume"
_AV_STAMP_FMT = "%Y-%m-%d %H:%M:%S"
_AV_DEFAULT_TZ = "US/Eastern"


def _zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        logger.warning("unknown upstream time zone %r; assuming UTC", name)
        return timezone.utc


def _as_wall_clock(dt: datetime, tz: tzinfo) -> datetime:
    """Express a query bound as naive wall-clock time in the provider's zone."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(tz).replace(tzinfo=None)


# --------------------------------------------------------------------------------------
# Alpha Vantage parsing
# --------------------------------------------------------------------------------------
def normalize_alphavantage(resp: Any, query: SeriesQuery) -> list[dict[str, Any]]:
    """
    Convert a TIME_SERIES_INTRADAY response into validated bars within [start, end].
    We expect:
      resp["Meta Data"]["6. Time Zone"] -> e.g. "US/Eastern"
      resp["Time Series (5min)"] -> {"2024-01-02 09:35:00": {"1. open": "...", ...}, ...}
    """
    if not isinstance(resp, dict):
        raise UpstreamFetchError("Unexpected API response: body is not an object")
    for throttle_key in ("Note", "Information"):
        if throttle_key in resp:
            raise UpstreamRateLimitError(str(resp[throttle_key]))
    if "Error Message" in resp:
        raise UpstreamFetchError(str(resp["Error Message"]))

    series_key = f"Time Series ({query.period})"
    series = resp.get(series_key)
    if not isinstance(series, dict):
        raise UpstreamFetchError(f"Unexpected API response: missing {series_key!r}")

    meta = resp.get("Meta Data") or {}
    if not isinstance(meta, dict):
        raise UpstreamFetchError("Unexpected API response: 'Meta Data' is not an object")
    tz_name = meta.get("6. Time Zone") or _AV_DEFAULT_TZ
    if not isinstance(tz_name, str):
        raise UpstreamFetchError(f"Unexpected API response: time zone {tz_name!r}")
    tz = _zone(tz_name)
    lo = _as_wall_clock(query.start, tz)
    hi = _as_wall_clock(query.end, tz)
    aware = query.start.tzinfo is not None

    rows: list[tuple[datetime, dict[str, Any]]] = []
    for stamp, values in series.items():
        try:
            t = datetime.strptime(stamp, _AV_STAMP_FMT)
        except (TypeError, ValueError):
            continue
        if not (lo <= t <= hi) or not isinstance(values, dict):
            continue

        candidate = {k: values.get(av_key) for k, av_key in _AV_FIELDS.items()}
        candidate["volume"] = values.get(_AV_VOLUME)
        candidate["time"] = (t.replace(tzinfo=tz) if aware else t).isoformat()
        good = validate_bar(candidate)
        if good:
            rows.append((t, good))

    rows.sort(key=lambda row: row[0])
    return [bar for _, bar in rows]


async def _get_json(client: httpx.AsyncClient, params: dict[str, str]) -> Any:
    try:
        r = await client.get(ALPHAVANTAGE_URL, params=params)
        r.raise_for_status()
        return r.json()
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 429:
            raise UpstreamRateLimitError("upstream rate limit (HTTP 429)") from e
        raise UpstreamFetchError(f"upstream HTTP {e.response.status_code}") from e
    except httpx.RequestError as e:
        raise UpstreamFetchError(f"upstream request failed: {e!r}") from e
    except ValueError as e:
        raise UpstreamFetchError("upstream returned a non-JSON body") from e


async def _fetch_alphavantage(
    query: SeriesQuery, api_key: str, client: httpx.AsyncClient | None
) -> list[dict[str, Any]]:
    params = {
        "function": "TIME_SERIES_INTRADAY",
        "symbol": query.symbol,
        "interval": query.period,
        "outputsize": "full",
        "apikey": api_key,
    }
    if client is not None:
        resp = await _get_json(client, params)
    else:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC) as own_client:
            resp = await _get_json(own_client, params)
    return normalize_alphavantage(resp, query)


# --------------------------------------------------------------------------------------
# Synthetic provider (offline development)
# --------------------------------------------------------------------------------------
def synthetic_series(query: SeriesQuery) -> list[dict[str, Any]]:
    """
    Random-walk bars spaced by the query period across [start, end].
    Only the most recent MAX_SYNTHETIC_BARS are produced for long ranges.
    """
    step = timedelta(minutes=PERIOD_MINUTES[query.period])
    n = int((query.end - query.start) / step) + 1
    n = min(n, MAX_SYNTHETIC_BARS)
    first = query.end - step * (n - 1) if n == MAX_SYNTHETIC_BARS else query.start

    price = 100.0
    bars: list[dict[str, Any]] = []
    for i in range(n):
        new_close = max(1.0, price + random.gauss(0.0, 0.5))
        open_ = price
        candidate = {
            "time": (first + step * i).isoformat(),
            "open": open_,
            "high": max(open_, new_close) + random.random() * 0.3,
            "low": min(open_, new_close) - random.random() * 0.3,
            "close": new_close,
            "volume": random.randint(1000, 5000),
        }
        good = validate_bar(candidate)
        if good:
            bars.append(good)
        price = new_close
    return bars


# --------------------------------------------------------------------------------------
# Public API
# --------------------------------------------------------------------------------------
async def fetch_series(
    query: SeriesQuery,
    *,
    provider: str = "ALPHAVANTAGE",
    api_key: str = "demo",
    client: httpx.AsyncClient | None = None,
) -> list[dict[str, Any]]:
    """
    Fetch bars for `query` from the configured provider.
    Raises UpstreamFetchError (or a subclass) on any upstream failure.
    """
    provider = provider.upper()
    if provider == "SYNTHETIC":
        return synthetic_series(query)
    if provider == "ALPHAVANTAGE":
        logger.debug("fetching %s %s from Alpha Vantage", query.symbol, query.period)
        return await _fetch_alphavantage(query, api_key, client)
    raise ValueError(f"Unsupported provider: {provider}")
