"""Overpass POI Service for challenge generation.

Fetches OpenStreetMap nodes around a location with a single category-scoped
query. An empty list is a successful "nothing nearby" answer; every network,
HTTP or payload problem is raised as ``PoiServiceError`` so callers can take
their fallback path.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from .classifier import POI_TAG_FILTERS
from .schemas import Location, Poi

logger = logging.getLogger(__name__)

OVERPASS_ENDPOINTS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.nchc.org.tw/api/interpreter",
]


class PoiServiceError(RuntimeError):
    """Raised when the POI Service cannot produce an answer (error or timeout)."""


class PoiService(Protocol):
    async def nearby(self, center: Location, radius_m: int) -> List[Poi]: ...


def build_overpass_query(
    lat: float,
    lng: float,
    radius_m: int,
    filters: Sequence[Tuple[str, str, str]] = POI_TAG_FILTERS,
    timeout_s: int = 25,
) -> str:
    lines = [f"[out:json][timeout:{timeout_s}];", "("]
    for key, value, match_type in filters:
        if match_type == "eq":
            clause = f'["{key}"="{value}"]'
        else:
            clause = f'["{key}"~"^({value})$"]'
        lines.append(f"  node{clause}(around:{radius_m},{lat},{lng});")
    lines.extend([");", "out body;"])
    return "\n".join(lines)


def _extract_coords(el: dict) -> Optional[Tuple[float, float]]:
    try:
        return float(el["lat"]), float(el["lon"])
    except (KeyError, TypeError, ValueError):
        return None


def parse_elements(payload: Any) -> List[Poi]:
    if not isinstance(payload, dict):
        raise PoiServiceError("Unexpected Overpass response type.")
    elements = payload.get("elements", [])
    if not isinstance(elements, list):
        raise PoiServiceError("Overpass response has no element list.")

    pois: List[Poi] = []
    seen = set()  # dedup by id
    for el in elements:
        if not isinstance(el, dict) or el.get("type", "node") != "node":
            continue
        eid = el.get("id")
        if eid is None or eid in seen:
            continue

        coords = _extract_coords(el)
        if not coords:
            continue
        lat, lon = coords
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            continue

        tags = el.get("tags") or {}
        if not isinstance(tags, dict):
            tags = {}
        seen.add(eid)
        pois.append(
            Poi(
                id=str(eid),
                location=Location(latitude=lat, longitude=lon),
                tags={str(k): str(v) for k, v in tags.items()},
            )
        )
    return pois


class OverpassPoiService:
    def __init__(
        self,
        *,
        endpoints: Sequence[str] = OVERPASS_ENDPOINTS,
        timeout_s: float = 25.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoints = list(endpoints)
        self._timeout = httpx.Timeout(timeout_s, connect=10.0)
        self._query_timeout_s = max(1, int(timeout_s))
        self._transport = transport

    async def _fetch(self, query: str) -> Dict[str, Any]:
        """Try Overpass endpoints sequentially until one succeeds."""
        last_err: Exception | None = None
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for endpoint in self._endpoints:
                try:
                    resp = await client.post(
                        endpoint,
                        data={"data": query},
                        headers={"Content-Type": "application/x-www-form-urlencoded; charset=UTF-8"},
                    )
                    resp.raise_for_status()
                    payload = resp.json()
                    if not isinstance(payload, dict):
                        raise PoiServiceError("Unexpected Overpass response type.")
                    return payload
                except (httpx.HTTPError, ValueError, PoiServiceError) as exc:
                    logger.warning("Overpass endpoint %s failed: %s", endpoint, exc)
                    last_err = exc
                    continue
        raise PoiServiceError(f"Overpass failed on all endpoints: {last_err}")

    async def nearby(self, center: Location, radius_m: int) -> List[Poi]:
        query = build_overpass_query(
            center.latitude, center.longitude, radius_m, timeout_s=self._query_timeout_s
        )
        payload = await self._fetch(query)
        pois = parse_elements(payload)
        logger.info(
            "Overpass returned %d POIs within %dm of (%.4f, %.4f)",
            len(pois),
            radius_m,
            center.latitude,
            center.longitude,
        )
        return pois
