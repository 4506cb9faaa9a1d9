from __future__ import annotations

import math
from typing import Iterable

from .schemas import Location

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0


def distance_m(a: Location, b: Location) -> float:
    """Great-circle distance between two coordinates (Haversine)."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = phi2 - phi1
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def synthetic_offset(origin: Location, bearing: float, distance: float) -> Location:
    """Displace ``origin`` by ``distance`` meters along ``bearing`` (radians).

    Equirectangular approximation; good enough for offsets of a few km.
    """
    dlat = (distance / METERS_PER_DEGREE) * math.cos(bearing)
    dlng = (distance / (METERS_PER_DEGREE * math.cos(math.radians(origin.latitude)))) * math.sin(
        bearing
    )
    latitude = max(-90.0, min(90.0, origin.latitude + dlat))
    longitude = ((origin.longitude + dlng + 180.0) % 360.0) - 180.0
    return Location(latitude=latitude, longitude=longitude)


def min_separation_m(point: Location, others: Iterable[Location]) -> float:
    return min((distance_m(point, other) for other in others), default=math.inf)


def bucket_key(location: Location, cell_deg: float = 0.01) -> str:
    """Coarse grid cell used as the pool cache key (~1.1 km at 0.01 deg)."""
    places = max(0, math.ceil(-math.log10(cell_deg)))
    lat_cell = math.floor(round(location.latitude / cell_deg, 9)) * cell_deg
    lng_cell = math.floor(round(location.longitude / cell_deg, 9)) * cell_deg
    return f"{lat_cell:.{places}f}:{lng_cell:.{places}f}"
