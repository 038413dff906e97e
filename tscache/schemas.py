import re
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# Alpha Vantage intraday intervals, plus the spellings we accept for them
PERIODS = ("1min", "5min", "15min", "30min", "60min")
_PERIOD_ALIASES = {
    "1": "1min",
    "1m": "1min",
    "5": "5min",
    "5m": "5min",
    "15": "15min",
    "15m": "15min",
    "30": "30min",
    "30m": "30min",
    "60": "60min",
    "60m": "60min",
    "1h": "60min",
}
PERIOD_MINUTES = {"1min": 1, "5min": 5, "15min": 15, "30min": 30, "60min": 60}

_SYMBOL_RE = re.compile(r"^[A-Z0-9.\-^=]{1,15}$")


def normalize_period(period: str) -> str:
    p = (period or "").lower().strip()
    p = _PERIOD_ALIASES.get(p, p)
    if p not in PERIODS:
        raise ValueError(f"unsupported period: {period!r} (expected one of {', '.join(PERIODS)})")
    return p


# --- Query parameters for /timeseries ---
class SeriesQuery(BaseModel):
    """Logical parameters of one time-series request. Frozen so it can back a loader."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    period: str
    start: datetime
    end: datetime

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str) -> str:
        sym = (v or "").strip().upper()
        if not _SYMBOL_RE.match(sym):
            raise ValueError(f"invalid symbol: {v!r}")
        return sym

    @field_validator("period")
    @classmethod
    def _period(cls, v: str) -> str:
        return normalize_period(v)

    @model_validator(mode="after")
    def _range(self) -> "SeriesQuery":
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValueError("start and end must both be naive or both carry a UTC offset")
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self


# --- Time-series payload ---
class Candle(BaseModel):
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


class TimeSeriesResponse(BaseModel):
    symbol: str
    period: str
    start: datetime
    end: datetime
    as_of: str
    data: list[Candle]


# --- Health payload ---
class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    as_of: str
    service: str = "tscache"
    cache_entries: int
    refresh_running: bool


# --- Version payload ---
class VersionResponse(BaseModel):
    service: str  # "tscache-api:0.1.0"
    service_version: str
    provider: str


# --- Error taxonomy ---
class ErrorCode(str, Enum):
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    RATE_LIMIT = "RATE_LIMIT"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    code: ErrorCode
    message: str
    hint: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
