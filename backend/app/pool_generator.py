"""Full-batch challenge generation for a location.

Fallback chain, in priority order:

1. live POIs, each challenge described and persisted;
2. live POIs plus synthetic top-up when too few POIs survive allocation;
3. a fully synthetic pool when the POI query fails or returns nothing.

Every tier returns exactly ``target_count`` challenges of the same shape.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from typing import List, Optional, Sequence, Tuple

from .allocator import Allocation, AllocationRules, allocate, too_close
from .challenge_store import ChallengeStore, persist_challenge
from .config import EngineConfig
from .geo import distance_m, synthetic_offset
from .poi_service import PoiService, PoiServiceError
from .schemas import (
    SYNTHETIC_POI_NAME,
    Category,
    Challenge,
    ChallengeDraft,
    Ephemeral,
    Location,
    PersistResult,
    Poi,
)
from .synthesizer import STATIC_CHALLENGES, Synthesizer

logger = logging.getLogger(__name__)

MAX_PLACEMENT_ATTEMPTS = 25
SYNTHETIC_CATEGORY: Category = "random"


class MissingLocationError(ValueError):
    """Raised when an operation that needs the user's location gets none."""


def require_location(location: Optional[Location]) -> Location:
    if location is None:
        raise MissingLocationError("User location is required to generate challenges.")
    return location


def make_challenge(
    draft: ChallengeDraft,
    *,
    location: Location,
    category: Category,
    distance: float,
    poi_name: str,
    persistence: PersistResult,
    max_participants: int,
) -> Challenge:
    challenge_id = persistence.id if persistence.kind == "persisted" else persistence.local_id
    return Challenge(
        id=challenge_id,
        title=draft.title,
        description=draft.description,
        location=location,
        reward=draft.reward,
        category=category,
        distance_meters=round(distance, 1),
        poi_name=poi_name,
        max_participants=max_participants,
        persistence=persistence,
    )


async def query_pois(
    poi_service: PoiService, center: Location, radius_m: int, timeout_s: float
) -> Optional[List[Poi]]:
    """Return POIs, or None when the service failed or timed out."""
    try:
        return await asyncio.wait_for(poi_service.nearby(center, radius_m), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("POI query timed out after %.0fs", timeout_s)
    except PoiServiceError as exc:
        logger.warning("POI query failed: %s", exc)
    except Exception:
        logger.exception("POI query raised unexpectedly")
    return None


class PoolGenerator:
    def __init__(
        self,
        poi_service: PoiService,
        store: ChallengeStore,
        synthesizer: Synthesizer,
        config: EngineConfig = EngineConfig(),
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._poi_service = poi_service
        self._store = store
        self._synthesizer = synthesizer
        self._config = config
        self._rng = rng or random.Random()
        self._rules = AllocationRules(min_distance_m=config.min_distance_m)

    @property
    def rules(self) -> AllocationRules:
        return self._rules

    @property
    def poi_service(self) -> PoiService:
        return self._poi_service

    async def generate_pool(
        self, user_location: Optional[Location], target_count: Optional[int] = None
    ) -> List[Challenge]:
        user_location = require_location(user_location)
        target = target_count if target_count is not None else self._config.pool_target_size
        if target <= 0:
            return []

        pois = await query_pois(
            self._poi_service, user_location, self._config.poi_radius_m, self._config.poi_timeout_s
        )
        if not pois:
            logger.warning("No POIs available, using static fallback generation")
            challenges = self._synthetic_fill(
                user_location, [], target, self._config.static_distance_band_m
            )
            return self._finalize(challenges, target)

        shuffled = list(pois)
        self._rng.shuffle(shuffled)
        selections = allocate(shuffled, target, self._rules)
        logger.info("Allocated %d of %d POIs for a target of %d", len(selections), len(pois), target)

        challenges = await self._enrich_all(user_location, selections)
        if len(challenges) < target:
            logger.info("Topping up %d synthetic challenges", target - len(challenges))
            challenges = self._synthetic_fill(
                user_location, challenges, target, self._config.topup_distance_band_m
            )
        return self._finalize(challenges, target)

    async def _enrich_all(
        self, user_location: Location, selections: Sequence[Allocation]
    ) -> List[Challenge]:
        semaphore = asyncio.Semaphore(max(1, self._config.enrichment_concurrency))

        async def enrich(selection: Allocation) -> Challenge:
            async with semaphore:
                return await self.enrich(user_location, selection)

        return list(await asyncio.gather(*(enrich(s) for s in selections)))

    async def enrich(self, user_location: Location, selection: Allocation) -> Challenge:
        """Describe and persist one selected POI."""
        poi = selection.poi
        dist = distance_m(user_location, poi.location)
        draft = await self._synthesizer.synthesize(selection.category, poi.name, dist)
        persistence = await persist_challenge(
            self._store,
            draft,
            poi.location,
            creator_id=self._config.creator_id,
            max_participants=self._config.max_participants,
            retries=self._config.persist_retries,
            local_id_prefix=f"fallback-{poi.id}",
        )
        return make_challenge(
            draft,
            location=poi.location,
            category=selection.category,
            distance=dist,
            poi_name=poi.name,
            persistence=persistence,
            max_participants=self._config.max_participants,
        )

    def _synthetic_fill(
        self,
        user_location: Location,
        challenges: List[Challenge],
        target: int,
        band: Tuple[float, float],
    ) -> List[Challenge]:
        filled = list(challenges)
        positions = [c.location for c in filled]
        offset = self._rng.randrange(len(STATIC_CHALLENGES))
        while len(filled) < target:
            candidate = self._place(user_location, positions, band)
            draft = Synthesizer.static_draft(offset + len(filled))
            filled.append(
                make_challenge(
                    draft,
                    location=candidate,
                    category=SYNTHETIC_CATEGORY,
                    distance=distance_m(user_location, candidate),
                    poi_name=SYNTHETIC_POI_NAME,
                    persistence=Ephemeral(
                        local_id=f"synthetic-{uuid.uuid4().hex[:12]}",
                        reason="synthetic",
                    ),
                    max_participants=self._config.max_participants,
                )
            )
            positions.append(candidate)
        return filled

    def _place(
        self, user_location: Location, positions: Sequence[Location], band: Tuple[float, float]
    ) -> Location:
        low, high = band
        candidate = user_location
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            bearing = self._rng.uniform(0, 2 * math.pi)
            distance = self._rng.uniform(low, high)
            candidate = synthetic_offset(user_location, bearing, distance)
            if not too_close(candidate, positions, self._config.min_distance_m):
                return candidate
        logger.warning(
            "Could not place a synthetic challenge %.0fm from the others after %d attempts",
            self._config.min_distance_m,
            MAX_PLACEMENT_ATTEMPTS,
        )
        return candidate

    @staticmethod
    def _finalize(challenges: List[Challenge], target: int) -> List[Challenge]:
        ordered = sorted(challenges, key=lambda c: c.distance_meters)
        return ordered[:target]
