# tscache/config.py
# Purpose: Runtime knobs for the cache and the upstream provider, read from env.
# Pitfalls: Read once at startup (lifespan); changing env later has no effect.

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field


class CacheSettings(BaseModel):
    ttl_s: float = Field(default=600.0, gt=0)
    refresh_interval_s: float = Field(default=60.0, gt=0)
    fetch_timeout_s: float = Field(default=10.0, gt=0)
    refresh_jitter_s: float = Field(default=0.0, ge=0)
    provider: Literal["ALPHAVANTAGE", "SYNTHETIC"] = "ALPHAVANTAGE"
    api_key: str = "demo"
    host: str = "0.0.0.0"
    port: int = Field(default=8010, ge=1, le=65535)


def load_settings() -> CacheSettings:
    """Build settings from TSC_* env vars; raises pydantic.ValidationError on bad values."""
    return CacheSettings(
        ttl_s=os.getenv("TSC_CACHE_TTL_SEC", "600"),
        refresh_interval_s=os.getenv("TSC_REFRESH_INTERVAL_SEC", "60"),
        fetch_timeout_s=os.getenv("TSC_FETCH_TIMEOUT_SEC", "10"),
        refresh_jitter_s=os.getenv("TSC_REFRESH_JITTER_SEC", "0"),
        provider=os.getenv("TSC_PROVIDER", "ALPHAVANTAGE").upper(),
        api_key=os.getenv("ALPHAVANTAGE_API_KEY", "demo"),
        host=os.getenv("TSC_HOST", "0.0.0.0"),
        port=os.getenv("TSC_PORT", "8010"),
    )
