"""Map raw OpenStreetMap tags to challenge categories.

The rule list is ordered and the first match wins. ``street`` is the
universal default, so every tag set (including an empty one) classifies.
"""

from __future__ import annotations

from typing import Callable, List, Mapping, Tuple

from .schemas import Category

TagRule = Tuple[Callable[[Mapping[str, str]], bool], Category]

DEFAULT_CATEGORY: Category = "street"


def _eq(key: str, *values: str) -> Callable[[Mapping[str, str]], bool]:
    allowed = set(values)
    return lambda tags: tags.get(key) in allowed


def _present(key: str) -> Callable[[Mapping[str, str]], bool]:
    return lambda tags: bool(tags.get(key))


def _any(*checks: Callable[[Mapping[str, str]], bool]) -> Callable[[Mapping[str, str]], bool]:
    return lambda tags: any(check(tags) for check in checks)


_RULES: List[TagRule] = [
    (_eq("amenity", "cafe"), "cafe"),
    (_eq("amenity", "restaurant"), "restaurant"),
    (_eq("leisure", "park", "garden"), "park"),
    (_eq("tourism", "artwork"), "artwork"),
    (_eq("historic", "monument", "memorial"), "monument"),
    (_eq("amenity", "fountain"), "fountain"),
    (_eq("tourism", "viewpoint"), "viewpoint"),
    (_eq("amenity", "library"), "library"),
    (_eq("leisure", "playground"), "playground"),
    (_any(_eq("man_made", "bridge"), _present("bridge")), "bridge"),
    (_any(_eq("amenity", "marketplace"), _present("shop")), "market"),
    (_any(_eq("historic", "statue"), _eq("artwork_type", "statue")), "statue"),
    (_eq("amenity", "bench"), "bench"),
    (_any(_eq("highway", "bus_stop"), _eq("railway", "tram_stop")), "tram_stop"),
]

# Overpass filters for the categories above: (osm_key, value_or_alternatives, match_type).
# match_type: "eq" for an exact value, "re" for ^(a|b|c)$.
POI_TAG_FILTERS: List[Tuple[str, str, str]] = [
    ("amenity", "cafe|restaurant|fountain|library|bench|marketplace", "re"),
    ("leisure", "park|garden|playground", "re"),
    ("tourism", "artwork|viewpoint", "re"),
    ("historic", "monument|memorial|statue", "re"),
    ("man_made", "bridge", "eq"),
    ("highway", "bus_stop", "eq"),
    ("railway", "tram_stop", "eq"),
]


def classify(tags: Mapping[str, str] | None) -> Category:
    """Return the challenge category for a POI's tags."""
    if not tags:
        return DEFAULT_CATEGORY
    for matches, category in _RULES:
        if matches(tags):
            return category
    return DEFAULT_CATEGORY

