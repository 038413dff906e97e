from __future__ import annotations

import math
from typing import Any


def _to_float(v: Any) -> float | None:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def validate_bar(bar: dict[str, Any]) -> dict[str, Any] | None:
    """Check a single OHLC bar and return a normalized dict, or None if it's unusable."""
    if not bar.get("time"):
        return None

    o, h, low, c = (_to_float(bar.get(k)) for k in ("open", "high", "low", "close"))
    if o is None or h is None or low is None or c is None:
        return None
    if not (low <= o <= h and low <= c <= h):
        return None

    # unparseable or non-finite volume counts as 0 rather than dropping the bar
    volume = int(_to_float(bar.get("volume") or 0) or 0)

    return {
        "time": str(bar["time"]),
        "open": o,
        "high": h,
        "low": low,
        "close": c,
        "volume": max(volume, 0),
    }
