"""Fakes and builders shared by the challenge engine tests."""
from __future__ import annotations

import asyncio
import math
from typing import Iterable, List, Optional

from backend.app.description_service import scale_reward
from backend.app.geo import distance_m, synthetic_offset
from backend.app.pool_generator import make_challenge
from backend.app.schemas import (
    Category,
    Challenge,
    ChallengeDraft,
    DescriptionResult,
    Location,
    Persisted,
    Poi,
)

PRAGUE = Location(latitude=50.0755, longitude=14.4378)

# Ten categories whose quota is 2, so a varied POI set can fill a pool of 10.
VARIED_TAGS = [
    {"amenity": "cafe"},
    {"leisure": "park"},
    {"tourism": "artwork"},
    {"historic": "monument"},
    {"amenity": "fountain"},
    {"tourism": "viewpoint"},
    {"amenity": "library"},
    {"leisure": "playground"},
    {"amenity": "bench"},
    {"railway": "tram_stop"},
]


class FakePoiService:
    def __init__(
        self,
        pois: Iterable[Poi] = (),
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.pois = list(pois)
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def nearby(self, center: Location, radius_m: int) -> List[Poi]:
        self.calls.append((center, radius_m))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.pois)


class FakeDescriptionService:
    def __init__(self, *, error: Optional[Exception] = None, fallback: bool = False) -> None:
        self.error = error
        self.fallback = fallback
        self.calls: List[tuple] = []

    async def describe(self, category: Category, poi_name: str, distance_m: float) -> DescriptionResult:
        self.calls.append((category, poi_name, distance_m))
        if self.error is not None:
            raise self.error
        return DescriptionResult(
            title=f"{category.upper()} DARE",
            description=f"Do something bold at {poi_name}",
            reward=scale_reward(7, distance_m),
            fallback=self.fallback,
        )


def make_poi(poi_id: str, location: Location, **tags: str) -> Poi:
    return Poi(id=poi_id, location=location, tags=tags)


def poi_at(origin: Location, poi_id: str, bearing_deg: float, distance: float, **tags: str) -> Poi:
    return make_poi(poi_id, synthetic_offset(origin, math.radians(bearing_deg), distance), **tags)


def ring(origin: Location, count: int, radius_m: float) -> List[Location]:
    return [
        synthetic_offset(origin, math.radians(i * 360.0 / count), radius_m) for i in range(count)
    ]


def grid_pois(origin: Location, side: int = 6, spacing_m: float = 150.0) -> List[Poi]:
    """side x side POIs around ``origin`` cycling through VARIED_TAGS."""
    pois = []
    half = (side - 1) / 2
    for row in range(side):
        for col in range(side):
            north = (row - half) * spacing_m
            east = (col - half) * spacing_m
            bearing = math.atan2(east, north)
            location = synthetic_offset(origin, bearing, math.hypot(north, east))
            index = row * side + col
            tags = dict(VARIED_TAGS[index % len(VARIED_TAGS)], name=f"Spot {index}")
            pois.append(Poi(id=f"node-{index}", location=location, tags=tags))
    return pois


def stored_challenge(challenge_id: str, location: Location, origin: Location = PRAGUE) -> Challenge:
    return make_challenge(
        ChallengeDraft(title=f"Challenge {challenge_id}", description="Do it", reward=80),
        location=location,
        category="park",
        distance=distance_m(origin, location),
        poi_name=f"Spot {challenge_id}",
        persistence=Persisted(id=challenge_id),
        max_participants=1,
    )
