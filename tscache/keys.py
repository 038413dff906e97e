import json

from tscache.schemas import SeriesQuery

KEY_PREFIX = "timeseries:"


def cache_key(query: SeriesQuery) -> str:
    """
    Deterministic cache key for a validated query.

    Fields are JSON-encoded so a separator inside a value can't make two
    different queries collide (e.g. symbol "A-B" vs period "B-...").
    """
    parts = [query.symbol, query.period, query.start.isoformat(), query.end.isoformat()]
    return KEY_PREFIX + json.dumps(parts, separators=(",", ":"))
