from __future__ import annotations

from backend.app.allocator import AllocationRules, allocate, replacement_rules, too_close
from backend.app.geo import distance_m

from challenge_fakes import PRAGUE, grid_pois, poi_at


def _pairwise_min(locations):
    return min(
        distance_m(a, b) for i, a in enumerate(locations) for b in locations[i + 1 :]
    )


def test_restaurant_quota_is_one():
    pois = [poi_at(PRAGUE, f"r{i}", i * 30, 500, amenity="restaurant") for i in range(5)]
    picked = allocate(pois, 10)
    assert [a.category for a in picked] == ["restaurant"]


def test_other_categories_capped_at_two():
    pois = [poi_at(PRAGUE, f"c{i}", i * 30, 500, amenity="cafe") for i in range(6)]
    pois += [poi_at(PRAGUE, f"p{i}", i * 30 + 15, 900, leisure="park") for i in range(6)]
    picked = allocate(pois, 10)
    categories = [a.category for a in picked]
    assert categories.count("cafe") == 2
    assert categories.count("park") == 2


def test_untagged_pois_share_the_street_quota():
    pois = [poi_at(PRAGUE, f"s{i}", i * 40, 700) for i in range(5)]
    assert [a.category for a in allocate(pois, 10)] == ["street", "street"]


def test_rejects_pois_closer_than_min_distance():
    a = poi_at(PRAGUE, "a", 0, 300, amenity="cafe")
    b = poi_at(PRAGUE, "b", 0, 350, leisure="park")
    c = poi_at(PRAGUE, "c", 0, 420, tourism="artwork")
    picked = allocate([a, b, c], 10)
    assert [s.poi.id for s in picked] == ["a", "c"]


def test_selection_respects_target_and_separation():
    picked = allocate(grid_pois(PRAGUE), 10)
    assert len(picked) == 10
    assert _pairwise_min([s.poi.location for s in picked]) >= 100


def test_zero_target_selects_nothing():
    assert allocate(grid_pois(PRAGUE), 0) == []


def test_occupied_positions_are_avoided():
    occupied = [poi_at(PRAGUE, "x", 90, 500).location]
    near = poi_at(PRAGUE, "near", 90, 550, amenity="cafe")
    far = poi_at(PRAGUE, "far", 270, 500, amenity="cafe")
    picked = allocate([near, far], 1, replacement_rules(), occupied=occupied)
    assert [s.poi.id for s in picked] == ["far"]


def test_replacement_rules_ignore_quotas():
    pois = [poi_at(PRAGUE, f"r{i}", i * 60, 800, amenity="restaurant") for i in range(4)]
    picked = allocate(pois, 4, replacement_rules())
    assert len(picked) == 4


def test_replacement_rules_use_wider_separation():
    rules = replacement_rules()
    assert rules.min_distance_m == 200
    a = poi_at(PRAGUE, "a", 0, 300, amenity="cafe")
    b = poi_at(PRAGUE, "b", 0, 450, leisure="park")
    assert len(allocate([a, b], 2, rules)) == 1
    assert len(allocate([a, b], 2)) == 2


def test_random_category_is_uncapped():
    rules = AllocationRules()
    assert rules.cap_for("random") is None
    assert rules.cap_for("restaurant") == 1
    assert rules.cap_for("bench") == 2


def test_too_close_uses_strict_threshold():
    here = poi_at(PRAGUE, "h", 0, 0).location
    assert too_close(here, [PRAGUE], 1)
    assert not too_close(here, [], 100)
