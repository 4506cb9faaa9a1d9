"""Greedy spatial/category selection of POIs.

Single pass over an already shuffled sequence: a POI is accepted when its
category still has quota left and it is at least ``min_distance_m`` from
every accepted (or pre-occupied) position. Selection is decided here,
synchronously, before any description or persistence work is started.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from .classifier import classify
from .geo import min_separation_m
from .schemas import Category, Location, Poi


@dataclass(frozen=True)
class AllocationRules:
    min_distance_m: float = 100.0
    quotas: Optional[Mapping[str, int]] = field(default_factory=lambda: {"restaurant": 1})
    default_cap: Optional[int] = 2
    # Synthetic challenges share this category and are placed outside the quota system.
    uncapped: FrozenSet[str] = frozenset({"random"})

    def cap_for(self, category: str) -> Optional[int]:
        if category in self.uncapped:
            return None
        if self.quotas is not None and category in self.quotas:
            return self.quotas[category]
        return self.default_cap


def replacement_rules(min_distance_m: float = 200.0) -> AllocationRules:
    """Distance-only rules used when picking a single replacement."""
    return AllocationRules(min_distance_m=min_distance_m, quotas=None, default_cap=None)


@dataclass(frozen=True)
class Allocation:
    poi: Poi
    category: Category


def too_close(candidate: Location, positions: Iterable[Location], min_distance: float) -> bool:
    return min_separation_m(candidate, positions) < min_distance


def allocate(
    pois: Sequence[Poi],
    target: int,
    rules: AllocationRules = AllocationRules(),
    occupied: Sequence[Location] = (),
) -> List[Allocation]:
    """Select up to ``target`` POIs honoring quotas and minimum separation."""
    accepted: List[Allocation] = []
    positions: List[Location] = list(occupied)
    category_count: Dict[str, int] = {}

    for poi in pois:
        if len(accepted) >= target:
            break

        category = classify(poi.tags)
        cap = rules.cap_for(category)
        current = category_count.get(category, 0)
        if cap is not None and current >= cap:
            continue

        if too_close(poi.location, positions, rules.min_distance_m):
            continue

        accepted.append(Allocation(poi=poi, category=category))
        positions.append(poi.location)
        category_count[category] = current + 1

    return accepted
