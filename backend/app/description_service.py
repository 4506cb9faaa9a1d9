from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from .schemas import Category, DescriptionResult

logger = logging.getLogger(__name__)

DESCRIPTION_MODEL = "gemini-2.5-flash"
DEFAULT_TIMEOUT_SECONDS = 20.0

CATEGORY_PROMPTS: dict[str, str] = {
    "cafe": (
        "a CAFE/COFFEE SHOP. Think ridiculous ordering methods, blind taste tests, "
        "inventing drink names. Avoid a generic 'order and describe'."
    ),
    "restaurant": (
        "a RESTAURANT. Think texture hunts, asking for the weirdest dish, dramatic food reviews. "
        "Avoid a generic 'try the food'."
    ),
    "park": (
        "a PARK/GARDEN. Think slow-motion sprints, interviewing squirrels, park ranger roleplay. "
        "Avoid a generic 'find leaves'."
    ),
    "monument": (
        "a MONUMENT/HISTORIC SITE. Think time-travel interviews, conspiracy theories about the "
        "monument, its inner thoughts. Avoid a generic 'explain history'."
    ),
    "fountain": (
        "a FOUNTAIN. Think useless-superpower wishes, dance battles with the water, fake "
        "fountain physics. Avoid a generic 'make a wish'."
    ),
    "artwork": (
        "PUBLIC ART/SCULPTURE. Think asking the art for life advice, its dating profile, pose "
        "battles with emotions. Avoid a generic 'mimic the pose'."
    ),
    "viewpoint": (
        "a VIEWPOINT/SCENIC SPOT. Think action-hero entrances, the worst tour guide ever, rating "
        "the view on dragon-friendliness. Avoid a generic 'film the view'."
    ),
    "playground": (
        "a PLAYGROUND. Think serious business meetings on swings, inventing an Olympic sport, "
        "age roleplay. Avoid a generic 'use the equipment'."
    ),
    "library": (
        "a LIBRARY. Think silent-film acting, book-title mashups, fake trailers. "
        "Avoid a generic 'read dramatically'."
    ),
    "statue": (
        "a STATUE. Think therapy sessions, the statue's hot takes on modern apps, statue gossip. "
        "Avoid a generic 'interview the statue'."
    ),
    "bench": (
        "a BENCH. Think fake sponsored ads, breaking up with the bench, bench confessions. "
        "Avoid a generic 'monologue'."
    ),
    "street": (
        "a STREET/PUBLIC AREA. Think walking an invisible dog, lost time traveler, sports "
        "commentary on pigeons. Avoid a generic 'performance'."
    ),
    "random": (
        "ANY PUBLIC LOCATION. Think invisible scenarios, made-up rules, slow-motion physical "
        "comedy. Avoid anything generic."
    ),
}

DESCRIPTION_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "minLength": 1, "maxLength": 40},
        "description": {"type": "string", "minLength": 1, "maxLength": 140},
        "boldness": {"type": "integer", "minimum": 1, "maximum": 10},
    },
    "required": ["title", "description", "boldness"],
    "additionalProperties": False,
}


class DescriptionServiceError(RuntimeError):
    """Raised when the description provider fails or returns unusable output."""


class DescriptionService(Protocol):
    async def describe(
        self, category: Category, poi_name: str, distance_m: float
    ) -> DescriptionResult: ...


def scale_reward(boldness: int, distance_m: float) -> int:
    """Map a 1-10 boldness score to 60-120, then boost far-away challenges."""
    boldness = min(10, max(1, boldness))
    scaled = round(60 + (boldness - 1) * (60 / 9))
    if distance_m > 1000:
        multiplier = 1.5
    elif distance_m > 500:
        multiplier = 1.2
    else:
        multiplier = 1.0
    return round(scaled * multiplier)


def _build_prompt(category: Category, poi_name: str, distance_m: float) -> str:
    focus = CATEGORY_PROMPTS.get(category, CATEGORY_PROMPTS["random"])
    return (
        "You create memorable 30-second video challenges for a location-based adventure app.\n"
        f"Write one challenge for {focus}\n\n"
        f'POI name: "{poi_name}"\n'
        f"Distance from player: {round(distance_m)}m\n\n"
        "Rules:\n"
        "- Be specific, slightly absurd, and doable in 30 seconds.\n"
        "- Title: 2-4 punchy words.\n"
        "- Description: at most 140 characters.\n"
        "- Ban the words perform, engage, capture, document, express.\n"
        "- boldness: 1-10, how much social courage and absurdity it takes.\n"
        "Return JSON that matches the provided schema exactly."
    )


def _extract_text_from_response(response: Any) -> str | None:
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text

    parsed = getattr(response, "parsed", None)
    if isinstance(parsed, dict):
        return json.dumps(parsed)
    if isinstance(parsed, str) and parsed.strip():
        return parsed
    return None


def parse_description_payload(raw: Any, distance_m: float) -> DescriptionResult:
    if not isinstance(raw, dict):
        raise DescriptionServiceError("Description JSON must be an object.")

    title = raw.get("title")
    description = raw.get("description")
    if not isinstance(title, str) or not title.strip():
        raise DescriptionServiceError("Description payload is missing a title.")
    if not isinstance(description, str) or not description.strip():
        raise DescriptionServiceError("Description payload is missing a description.")

    boldness = raw.get("boldness")
    if isinstance(boldness, bool) or not isinstance(boldness, (int, float)):
        boldness = 8
    return DescriptionResult(
        title=title.strip()[:120],
        description=description.strip()[:400],
        reward=scale_reward(int(boldness), distance_m),
        fallback=False,
    )


class GeminiDescriptionService:
    def __init__(
        self,
        api_key: str,
        *,
        model_name: str = DESCRIPTION_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._model_name = model_name
        self._timeout_seconds = timeout_seconds

    def _call_gemini_structured(self, prompt: str) -> dict[str, Any]:
        from google import genai
        from google.genai import types

        client = genai.Client(api_key=self._api_key)
        try:
            response = client.models.generate_content(
                model=self._model_name,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=1.2,
                    response_mime_type="application/json",
                    response_json_schema=DESCRIPTION_JSON_SCHEMA,
                ),
            )
        except Exception as exc:
            raise DescriptionServiceError(f"Gemini request failed: {exc}") from exc

        response_text = _extract_text_from_response(response)
        if not response_text:
            raise DescriptionServiceError("Gemini returned an empty response body.")
        try:
            payload = json.loads(response_text)
        except json.JSONDecodeError as exc:
            raise DescriptionServiceError("Gemini returned non-JSON structured output.") from exc
        if not isinstance(payload, dict):
            raise DescriptionServiceError("Gemini response JSON must be an object.")
        return payload

    async def describe(
        self, category: Category, poi_name: str, distance_m: float
    ) -> DescriptionResult:
        prompt = _build_prompt(category, poi_name, distance_m)
        try:
            raw_payload = await asyncio.wait_for(
                asyncio.to_thread(self._call_gemini_structured, prompt),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise DescriptionServiceError(
                f"Gemini description request timed out after {self._timeout_seconds:.0f}s."
            ) from exc

        result = parse_description_payload(raw_payload, distance_m)
        logger.info("Generated %s challenge for %s: %s", category, poi_name, result.title)
        return result
