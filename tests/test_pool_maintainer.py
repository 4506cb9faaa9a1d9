from __future__ import annotations

import asyncio
import random

import httpx
import pytest

from backend.app.challenge_store import GraphQLChallengeStore, InMemoryChallengeStore, StoreError
from backend.app.config import EngineConfig
from backend.app.geo import bucket_key, distance_m
from backend.app.pool_cache import InMemoryPoolCache, PoolCacheError
from backend.app.pool_generator import MissingLocationError, PoolGenerator
from backend.app.pool_maintainer import PoolMaintainer, TopUpState, apply_replacement, top_up
from backend.app.replacement import ReplacementGenerator
from backend.app.schemas import CacheEntry, ChallengeCompletedEvent
from backend.app.synthesizer import Synthesizer

from challenge_fakes import PRAGUE, FakePoiService, grid_pois, make_poi, ring, stored_challenge

T0 = 1_760_000_000.0
BUCKET = bucket_key(PRAGUE)


class Clock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _ring_pool(count: int = 10, radius_m: float = 400.0, prefix: str = "c"):
    return [stored_challenge(f"{prefix}{i}", loc) for i, loc in enumerate(ring(PRAGUE, count, radius_m))]


def _outer_pois(count: int = 24, radius_m: float = 1200.0):
    return [
        make_poi(f"outer-{i}", loc, amenity="cafe", name=f"Outer {i}")
        for i, loc in enumerate(ring(PRAGUE, count, radius_m))
    ]


def _maintainer(
    poi_service, *, store=None, cache=None, clock=None, config=None, generator_cls=PoolGenerator
):
    config = config or EngineConfig()
    store = store if store is not None else InMemoryChallengeStore()
    generator = generator_cls(poi_service, store, Synthesizer(), config, rng=random.Random(11))
    replacer = ReplacementGenerator(generator, config, rng=random.Random(5))
    maintainer = PoolMaintainer(
        generator,
        replacer,
        cache if cache is not None else InMemoryPoolCache(),
        store,
        config,
        clock=clock or Clock(),
    )
    return maintainer, store


def _seed_cache(cache: InMemoryPoolCache, pool, timestamp: float = T0) -> None:
    asyncio.run(cache.set(BUCKET, CacheEntry(pool=pool, timestamp=timestamp, location=PRAGUE)))


def test_apply_replacement_is_a_pure_fold():
    start = TopUpState(occupied=(PRAGUE,))
    challenge = stored_challenge("r1", ring(PRAGUE, 1, 500)[0])

    assert apply_replacement(start, None) is start
    after = apply_replacement(start, challenge)
    assert after.accepted == (challenge,)
    assert after.occupied == (PRAGUE, challenge.location)
    assert start.accepted == ()


def test_top_up_threads_occupied_positions_between_attempts():
    seen = []
    candidates = iter([stored_challenge("a", ring(PRAGUE, 1, 300)[0]), None,
                       stored_challenge("b", ring(PRAGUE, 1, 900)[0])])

    async def attempt(occupied):
        seen.append(len(occupied))
        return next(candidates)

    visible = _ring_pool(2)
    state = asyncio.run(top_up(attempt, visible, 3))

    assert seen == [2, 3, 3]
    assert [c.id for c in state.accepted] == ["a", "b"]


def test_completed_challenges_are_replaced_until_target():
    cache = InMemoryPoolCache()
    pool = _ring_pool()
    _seed_cache(cache, pool)
    maintainer, store = _maintainer(FakePoiService(_outer_pois()), cache=cache)
    for challenge in pool[:4]:
        store.record_completion("u1", challenge.id)

    view = asyncio.run(maintainer.refresh("u1", PRAGUE))

    assert view.source == "cache"
    assert len(view.challenges) == 10
    assert view.replacements_added == 4
    shown_ids = {c.id for c in view.challenges}
    assert not shown_ids & {"c0", "c1", "c2", "c3"}
    original_ids = {c.id for c in pool}
    replacements = [c for c in view.challenges if c.id not in original_ids]
    assert len(replacements) == 4
    for new in replacements:
        for other in view.challenges:
            if other is not new:
                assert distance_m(new.location, other.location) >= 200


def test_replacements_are_written_back_with_original_timestamp():
    cache = InMemoryPoolCache()
    pool = _ring_pool()
    _seed_cache(cache, pool)
    clock = Clock(T0 + 600)
    maintainer, store = _maintainer(FakePoiService(_outer_pois()), cache=cache, clock=clock)
    store.record_completion("u1", "c0")

    asyncio.run(maintainer.refresh("u1", PRAGUE))

    entry = asyncio.run(cache.get(BUCKET))
    assert len(entry.pool) == 11
    assert entry.timestamp == T0


def test_view_is_capped_at_target_and_sorted_by_distance():
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool(6, 400) + _ring_pool(8, 1500, prefix="far"))
    maintainer, _ = _maintainer(FakePoiService([]), cache=cache)

    view = asyncio.run(maintainer.refresh("u2", PRAGUE))

    assert len(view.challenges) == 10
    distances = [distance_m(PRAGUE, c.location) for c in view.challenges]
    assert distances == sorted(distances)


def test_cache_used_at_59_minutes_and_regenerated_at_61():
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    clock = Clock(T0 + 59 * 60)
    maintainer, _ = _maintainer(FakePoiService(grid_pois(PRAGUE)), cache=cache, clock=clock)

    assert asyncio.run(maintainer.refresh("u1", PRAGUE)).source == "cache"

    clock.now = T0 + 61 * 60
    view = asyncio.run(maintainer.refresh("u1", PRAGUE))
    assert view.source == "generated"
    assert asyncio.run(cache.get(BUCKET)).timestamp == T0 + 61 * 60


def test_generate_ignores_fresh_cache():
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    maintainer, _ = _maintainer(FakePoiService(grid_pois(PRAGUE)), cache=cache)

    view = asyncio.run(maintainer.generate("u1", PRAGUE))

    assert view.source == "generated"
    assert not {c.id for c in view.challenges} & {f"c{i}" for i in range(10)}


def test_generate_requires_location():
    maintainer, _ = _maintainer(FakePoiService())
    with pytest.raises(MissingLocationError):
        asyncio.run(maintainer.generate("u1", None))


def test_completion_event_for_inactive_user_is_ignored():
    maintainer, _ = _maintainer(FakePoiService())
    event = ChallengeCompletedEvent(user_id="ghost", challenge_id="c1")
    assert asyncio.run(maintainer.on_challenge_completed(event)) is None


def test_completion_event_hides_challenge_before_store_catches_up():
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    maintainer, _ = _maintainer(FakePoiService(_outer_pois()), cache=cache)
    asyncio.run(maintainer.refresh("u1", PRAGUE))
    assert maintainer.active_location("u1") == PRAGUE

    view = asyncio.run(
        maintainer.on_challenge_completed(ChallengeCompletedEvent(user_id="u1", challenge_id="c3"))
    )

    assert view is not None
    assert "c3" not in {c.id for c in view.challenges}
    assert len(view.challenges) == 10
    assert view.replacements_added == 1


class BrokenGenerator(PoolGenerator):
    async def generate_pool(self, user_location, target_count=None):
        raise RuntimeError("generator crashed")


class DownCache:
    def __init__(self):
        self.reads = 0
        self.writes = 0

    async def get(self, key):
        self.reads += 1
        raise PoolCacheError("redis down")

    async def set(self, key, entry):
        self.writes += 1
        raise ConnectionError("redis down")


def test_generation_failure_falls_back_to_store():
    cache = InMemoryPoolCache()
    maintainer, store = _maintainer(FakePoiService([]), cache=cache, generator_cls=BrokenGenerator)
    for location in ring(PRAGUE, 2, 700):
        asyncio.run(store.create_challenge("system", "Stored", "d", 80, location, 1))

    view = asyncio.run(maintainer.refresh("u1", PRAGUE))

    assert view.source == "store"
    assert len(view.challenges) == 2
    assert all(c.category == "street" for c in view.challenges)
    assert len(cache) == 0


def test_completion_lookup_failure_shows_full_pool():
    class BrokenCompletions(InMemoryChallengeStore):
        async def get_user_completed_challenge_ids(self, user_id, challenge_type, start, end):
            raise StoreError("completions", "HTTP 503")

    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    maintainer, _ = _maintainer(FakePoiService([]), store=BrokenCompletions(), cache=cache)

    view = asyncio.run(maintainer.refresh("u1", PRAGUE))
    assert len(view.challenges) == 10
    assert view.replacements_added == 0


def test_cache_outage_regenerates_and_still_returns_view():
    cache = DownCache()
    maintainer, _ = _maintainer(FakePoiService(grid_pois(PRAGUE)), cache=cache)

    view = asyncio.run(maintainer.refresh("u1", PRAGUE))

    assert view.source == "generated"
    assert len(view.challenges) == 10
    assert cache.reads == 1
    assert cache.writes == 1


def test_malformed_completions_payload_shows_full_pool():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"queryChallengeCompletion": {"publicChallenge": {"id": "c1"}}}})

    async def no_sleep(_seconds):
        return None

    store = GraphQLChallengeStore(
        "https://store.test/graphql", transport=httpx.MockTransport(handler), sleep=no_sleep
    )
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    maintainer, _ = _maintainer(FakePoiService([]), store=store, cache=cache)

    view = asyncio.run(maintainer.refresh("u1", PRAGUE))

    assert view.source == "cache"
    assert len(view.challenges) == 10
    assert "c1" in {c.id for c in view.challenges}


def test_active_viewers_are_bounded():
    cache = InMemoryPoolCache()
    _seed_cache(cache, _ring_pool())
    maintainer, _ = _maintainer(
        FakePoiService([]), cache=cache, config=EngineConfig(active_viewer_limit=2)
    )

    for user in ("u1", "u2", "u1", "u3"):
        asyncio.run(maintainer.refresh(user, PRAGUE))

    assert maintainer.active_location("u2") is None
    assert maintainer.active_location("u1") == PRAGUE
    assert maintainer.active_location("u3") == PRAGUE
    event = ChallengeCompletedEvent(user_id="u2", challenge_id="c0")
    assert asyncio.run(maintainer.on_challenge_completed(event)) is None
