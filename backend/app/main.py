from __future__ import annotations

import logging
import os
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .challenge_store import ChallengeStore, GraphQLChallengeStore, InMemoryChallengeStore
from .config import EngineConfig
from .description_service import GeminiDescriptionService
from .logging_config import setup_logging
from .poi_service import OverpassPoiService
from .pool_cache import InMemoryPoolCache, PoolCache, RedisPoolCache
from .pool_generator import MissingLocationError, PoolGenerator
from .pool_maintainer import PoolMaintainer
from .replacement import ReplacementGenerator
from .schemas import (
    ChallengeCompletedEvent,
    CompletionRefreshResponse,
    DescribeRequest,
    DescriptionResult,
    GeneratePoolRequest,
    Location,
    PoolView,
)
from .synthesizer import Synthesizer

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Challenge Pool API", version="0.1.0")

raw_origins = os.getenv("CORS_ORIGINS", "*")
allow_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
if not allow_origins:
    allow_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    return EngineConfig.from_env()


def _build_store(config: EngineConfig) -> ChallengeStore:
    if config.challenge_store_url:
        return GraphQLChallengeStore(config.challenge_store_url, retries=config.persist_retries)
    logger.warning("CHALLENGE_STORE_URL not set, challenges are kept in memory")
    return InMemoryChallengeStore()


def _build_cache(config: EngineConfig) -> PoolCache:
    if config.redis_url:
        return RedisPoolCache(config.redis_url)
    return InMemoryPoolCache()


@lru_cache(maxsize=1)
def get_synthesizer() -> Synthesizer:
    config = get_config()
    if not config.gemini_api_key:
        logger.warning("GEMINI_API_KEY not set, challenge descriptions use templates")
        return Synthesizer()
    return Synthesizer(
        GeminiDescriptionService(
            config.gemini_api_key,
            model_name=config.description_model,
            timeout_seconds=config.description_timeout_s,
        )
    )


@lru_cache(maxsize=1)
def get_maintainer() -> PoolMaintainer:
    config = get_config()
    store = _build_store(config)
    generator = PoolGenerator(
        OverpassPoiService(timeout_s=config.poi_timeout_s),
        store,
        get_synthesizer(),
        config,
    )
    return PoolMaintainer(
        generator,
        ReplacementGenerator(generator, config),
        _build_cache(config),
        store,
        config,
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/challenges/pool", response_model=PoolView)
async def challenge_pool(
    user_id: str = Query(..., min_length=1, max_length=200),
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    maintainer: PoolMaintainer = Depends(get_maintainer),
) -> PoolView:
    """Visible pool for a user on map load: cached bucket pool minus completions, topped up."""
    return await maintainer.refresh(user_id, Location(latitude=lat, longitude=lon))


@app.post("/api/challenges/generate", response_model=PoolView)
async def generate_challenges(
    payload: GeneratePoolRequest,
    maintainer: PoolMaintainer = Depends(get_maintainer),
) -> PoolView:
    try:
        return await maintainer.generate(payload.user_id, payload.location)
    except MissingLocationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/challenges/events/completed", response_model=CompletionRefreshResponse)
async def challenge_completed(
    event: ChallengeCompletedEvent,
    maintainer: PoolMaintainer = Depends(get_maintainer),
) -> CompletionRefreshResponse:
    pool = await maintainer.on_challenge_completed(event)
    return CompletionRefreshResponse(refreshed=pool is not None, pool=pool)


@app.post("/api/challenges/describe", response_model=DescriptionResult)
async def describe_challenge(
    payload: DescribeRequest,
    synthesizer: Synthesizer = Depends(get_synthesizer),
) -> DescriptionResult:
    return await synthesizer.describe(payload.category, payload.poi_name, payload.distance_m)
