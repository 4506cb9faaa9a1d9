# Engine settings: load from .env at project root, then read the environment.

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_project_root = Path(__file__).resolve().parents[2]


def _load_dotenv() -> None:
    """Load .env from project root or cwd without overriding real env vars."""
    for path in (_project_root / ".env", Path.cwd() / ".env"):
        if path.is_file():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        k, _, v = line.partition("=")
                        v = v.strip().strip('"').strip("'")
                        os.environ.setdefault(k.strip(), v)
            break


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer. Got: {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number. Got: {raw!r}") from exc


@dataclass(frozen=True)
class EngineConfig:
    pool_target_size: int = 10
    poi_radius_m: int = 3000
    poi_timeout_s: float = 25.0
    min_distance_m: float = 100.0
    replacement_min_distance_m: float = 200.0
    topup_distance_band_m: tuple[float, float] = (200.0, 1200.0)
    static_distance_band_m: tuple[float, float] = (100.0, 1600.0)
    cache_ttl_s: float = 3600.0
    cache_cell_deg: float = 0.01
    completion_window_days: int = 7
    nearby_radius_km: float = 10.0
    persist_retries: int = 2
    enrichment_concurrency: int = 4
    active_viewer_limit: int = 10000
    creator_id: str = "system"
    max_participants: int = 1
    challenge_store_url: str = ""
    redis_url: str = ""
    gemini_api_key: str = field(default="", repr=False)
    description_model: str = "gemini-2.5-flash"
    description_timeout_s: float = 20.0

    @classmethod
    def from_env(cls) -> "EngineConfig":
        _load_dotenv()
        return cls(
            pool_target_size=_env_int("POOL_TARGET_SIZE", cls.pool_target_size),
            poi_radius_m=_env_int("POI_RADIUS_M", cls.poi_radius_m),
            poi_timeout_s=_env_float("POI_TIMEOUT_S", cls.poi_timeout_s),
            min_distance_m=_env_float("MIN_DISTANCE_M", cls.min_distance_m),
            replacement_min_distance_m=_env_float(
                "REPLACEMENT_MIN_DISTANCE_M", cls.replacement_min_distance_m
            ),
            cache_ttl_s=_env_float("CACHE_TTL_S", cls.cache_ttl_s),
            cache_cell_deg=_env_float("CACHE_CELL_DEG", cls.cache_cell_deg),
            completion_window_days=_env_int("COMPLETION_WINDOW_DAYS", cls.completion_window_days),
            nearby_radius_km=_env_float("NEARBY_RADIUS_KM", cls.nearby_radius_km),
            persist_retries=_env_int("PERSIST_RETRIES", cls.persist_retries),
            enrichment_concurrency=_env_int("ENRICHMENT_CONCURRENCY", cls.enrichment_concurrency),
            active_viewer_limit=_env_int("ACTIVE_VIEWER_LIMIT", cls.active_viewer_limit),
            creator_id=_env_str("CREATOR_ID", cls.creator_id),
            challenge_store_url=_env_str("CHALLENGE_STORE_URL", ""),
            redis_url=_env_str("REDIS_URL", ""),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            description_model=_env_str("DESCRIPTION_MODEL", cls.description_model),
            description_timeout_s=_env_float("DESCRIPTION_TIMEOUT_S", cls.description_timeout_s),
        )
