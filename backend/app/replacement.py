from __future__ import annotations

import logging
import random
from typing import Optional, Sequence

from .allocator import allocate, replacement_rules
from .config import EngineConfig
from .pool_generator import PoolGenerator, query_pois, require_location
from .schemas import Challenge, Location

logger = logging.getLogger(__name__)


class ReplacementGenerator:
    """Produce one extra challenge that keeps clear of already occupied positions.

    There is no synthetic fallback here: when the POI query fails or nothing
    is far enough away, the caller gets ``None`` and the pool stays smaller
    until the next refresh.
    """

    def __init__(
        self,
        generator: PoolGenerator,
        config: EngineConfig = EngineConfig(),
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._generator = generator
        self._config = config
        self._rng = rng or random.Random()
        self._rules = replacement_rules(config.replacement_min_distance_m)

    async def generate_replacement(
        self, user_location: Optional[Location], occupied: Sequence[Location]
    ) -> Optional[Challenge]:
        user_location = require_location(user_location)
        pois = await query_pois(
            self._generator.poi_service,
            user_location,
            self._config.poi_radius_m,
            self._config.poi_timeout_s,
        )
        if not pois:
            logger.warning("No POIs found for replacement")
            return None

        shuffled = list(pois)
        self._rng.shuffle(shuffled)
        picked = allocate(shuffled, 1, self._rules, occupied=occupied)
        if not picked:
            logger.warning(
                "No replacement location at least %.0fm from %d occupied positions",
                self._rules.min_distance_m,
                len(occupied),
            )
            return None

        challenge = await self._generator.enrich(user_location, picked[0])
        logger.info("Generated replacement challenge %s: %s", challenge.id, challenge.title)
        return challenge
