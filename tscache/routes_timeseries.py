# tscache/routes_timeseries.py
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError

from tscache.cache import ExpiringCache
from tscache.errors import (
    InvalidKeyParameters,
    UpstreamFetchError,
    http_error,
)
from tscache.keys import cache_key
from tscache.schemas import ErrorCode, ErrorResponse, SeriesQuery, TimeSeriesResponse
from tscache.utils import utc_now_iso

router = APIRouter(tags=["timeseries"])
logger = logging.getLogger("tscache.routes")

Fetcher = Callable[[SeriesQuery], Awaitable[list[dict[str, Any]]]]


# --------- dependencies (overridable in tests) ---------


def get_cache(request: Request) -> ExpiringCache:
    return request.app.state.cache


def get_fetcher(request: Request) -> Fetcher:
    return request.app.state.fetcher


def parse_query(
    symbol: str | None, period: str | None, start: str | None, end: str | None
) -> SeriesQuery:
    """Build a SeriesQuery from raw query-string values or raise InvalidKeyParameters."""
    raw = {"symbol": symbol, "period": period, "start": start, "end": end}
    missing = [name for name, val in raw.items() if not (val or "").strip()]
    if missing:
        raise InvalidKeyParameters(f"Missing required query parameters: {', '.join(missing)}")
    try:
        return SeriesQuery(**raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'query'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidKeyParameters(problems) from e


@router.get(
    "/timeseries",
    response_model=TimeSeriesResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def timeseries(
    symbol: str | None = None,
    period: str | None = None,
    start: str | None = None,
    end: str | None = None,
    cache: ExpiringCache = Depends(get_cache),
    fetcher: Fetcher = Depends(get_fetcher),
):
    """Intraday OHLC bars for symbol/period in [start, end], served through the cache."""
    try:
        query = parse_query(symbol, period, start, end)
    except InvalidKeyParameters as e:
        raise http_error(
            ErrorCode.INVALID_PARAMETERS,
            str(e),
            hint="symbol=AAPL&period=5min&start=2024-01-02T09:30:00&end=2024-01-02T16:00:00",
        )

    key = cache_key(query)
    try:
        data = await cache.fetch_or_load(key, partial(fetcher, query))
    except UpstreamFetchError as e:
        logger.warning("upstream fetch failed for %s: %s", key, e, extra={"cache_key": key})
        raise http_error(
            e.code,
            "Failed to fetch timeseries data",
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            hint=str(e),
        )

    return TimeSeriesResponse(
        symbol=query.symbol,
        period=query.period,
        start=query.start,
        end=query.end,
        as_of=utc_now_iso(),
        data=data,
    )
