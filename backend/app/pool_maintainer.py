"""Per-user view of a location's challenge pool.

A refresh loads the bucket's pool (cache or fresh generation), hides the
challenges the user already completed and tops the view back up to the
target size with replacements. Map load, the explicit "generate" action and
a completion event all go through ``refresh`` and converge on the same
steady state.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

import httpx

from .challenge_store import ChallengeStore, StoreError
from .config import EngineConfig
from .geo import bucket_key, distance_m
from .pool_cache import PoolCache, PoolCacheError
from .pool_generator import MissingLocationError, PoolGenerator, require_location
from .replacement import ReplacementGenerator
from .schemas import CacheEntry, Challenge, ChallengeCompletedEvent, Location, PoolView

logger = logging.getLogger(__name__)

COMPLETED_CHALLENGE_TYPE = "public"

ReplacementAttempt = Callable[[Tuple[Location, ...]], Awaitable[Optional[Challenge]]]


@dataclass(frozen=True)
class TopUpState:
    accepted: Tuple[Challenge, ...] = ()
    occupied: Tuple[Location, ...] = ()


def apply_replacement(state: TopUpState, result: Optional[Challenge]) -> TopUpState:
    """Fold one replacement attempt into the state; failed attempts change nothing."""
    if result is None:
        return state
    return TopUpState(
        accepted=state.accepted + (result,),
        occupied=state.occupied + (result.location,),
    )


async def top_up(attempt: ReplacementAttempt, visible: Iterable[Challenge], deficit: int) -> TopUpState:
    # Attempts run one at a time; each sees the positions accepted before it.
    state = TopUpState(occupied=tuple(c.location for c in visible))
    for _ in range(max(0, deficit)):
        state = apply_replacement(state, await attempt(state.occupied))
    return state


class PoolMaintainer:
    def __init__(
        self,
        generator: PoolGenerator,
        replacer: ReplacementGenerator,
        cache: PoolCache,
        store: ChallengeStore,
        config: EngineConfig = EngineConfig(),
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._generator = generator
        self._replacer = replacer
        self._cache = cache
        self._store = store
        self._config = config
        self._clock = clock
        # Last location per user, least recently active first.
        self._active_viewers: OrderedDict[str, Location] = OrderedDict()

    def active_location(self, user_id: str) -> Optional[Location]:
        return self._active_viewers.get(user_id)

    async def generate(self, user_id: str, location: Optional[Location]) -> PoolView:
        """User-initiated regeneration: ignore any cached pool for the bucket."""
        return await self.refresh(user_id, location, force=True)

    async def on_challenge_completed(self, event: ChallengeCompletedEvent) -> Optional[PoolView]:
        location = self._active_viewers.get(event.user_id)
        if location is None:
            logger.info("Ignoring completion for %s: not an active viewer", event.user_id)
            return None
        return await self.refresh(event.user_id, location, just_completed={event.challenge_id})

    async def refresh(
        self,
        user_id: str,
        location: Optional[Location],
        *,
        force: bool = False,
        just_completed: Iterable[str] = (),
    ) -> PoolView:
        location = require_location(location)
        self._remember_viewer(user_id, location)
        key = bucket_key(location, self._config.cache_cell_deg)
        target = self._config.pool_target_size

        entry, source = await self._load_pool(key, location, force)

        completed = await self._completed_ids(user_id)
        completed.update(just_completed)
        visible = [c for c in entry.pool if c.id not in completed]

        replacements: Tuple[Challenge, ...] = ()
        if len(visible) < target:
            deficit = target - len(visible)
            logger.info(
                "User %s sees %d/%d challenges, requesting %d replacements",
                user_id,
                len(visible),
                target,
                deficit,
            )
            state = await top_up(
                lambda occupied: self._replacer.generate_replacement(location, occupied),
                visible,
                deficit,
            )
            replacements = state.accepted
            if len(replacements) < deficit:
                logger.warning("Only %d of %d replacements found for %s", len(replacements), deficit, key)

        if source != "store" and (source == "generated" or replacements):
            await self._write_cache(
                key,
                CacheEntry(
                    pool=list(entry.pool) + list(replacements),
                    timestamp=entry.timestamp,
                    location=entry.location,
                ),
            )

        shown = sorted([*visible, *replacements], key=lambda c: distance_m(location, c.location))
        return PoolView(
            bucket=key,
            target=target,
            source=source,
            replacements_added=len(replacements),
            challenges=shown[:target],
        )

    async def _load_pool(self, key: str, location: Location, force: bool) -> Tuple[CacheEntry, str]:
        now = self._clock()
        if not force:
            cached = await self._read_cache(key)
            if cached is not None and cached.is_fresh(now, self._config.cache_ttl_s):
                return cached, "cache"

        try:
            pool = await self._generator.generate_pool(location, self._config.pool_target_size)
        except MissingLocationError:
            raise
        except Exception:
            logger.exception("Pool generation failed for %s, reading nearby challenges from the store", key)
            pool = await self._nearby_from_store(location)
            return CacheEntry(pool=pool, timestamp=now, location=location), "store"
        return CacheEntry(pool=pool, timestamp=now, location=location), "generated"

    def _remember_viewer(self, user_id: str, location: Location) -> None:
        self._active_viewers[user_id] = location
        self._active_viewers.move_to_end(user_id)
        while len(self._active_viewers) > max(1, self._config.active_viewer_limit):
            self._active_viewers.popitem(last=False)

    async def _read_cache(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self._cache.get(key)
        except (PoolCacheError, OSError) as exc:
            logger.warning("Pool cache read failed for %s, regenerating: %s", key, exc)
            return None

    async def _write_cache(self, key: str, entry: CacheEntry) -> None:
        try:
            await self._cache.set(key, entry)
        except (PoolCacheError, OSError) as exc:
            logger.warning("Pool cache write failed for %s: %s", key, exc)

    async def _nearby_from_store(self, location: Location) -> List[Challenge]:
        try:
            return await self._store.list_nearby_challenges(location, self._config.nearby_radius_km)
        except (StoreError, httpx.HTTPError) as exc:
            logger.error("Nearby challenge read failed: %s", exc)
            return []

    async def _completed_ids(self, user_id: str) -> set[str]:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=self._config.completion_window_days)
        try:
            return set(
                await self._store.get_user_completed_challenge_ids(
                    user_id, COMPLETED_CHALLENGE_TYPE, start, end
                )
            )
        except (StoreError, httpx.HTTPError) as exc:
            logger.warning("Could not load completions for %s, showing the full pool: %s", user_id, exc)
            return set()
