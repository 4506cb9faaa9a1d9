"""Turn (category, POI name, distance) into a concrete challenge draft.

The Description Service is consulted first. Any failure, or a result it
flags as ``fallback``, is replaced by a canned per-category template so that
callers always get a draft of the same shape.
"""

from __future__ import annotations

import logging

from .description_service import DescriptionService, DescriptionServiceError
from .schemas import Category, ChallengeDraft, DescriptionResult

logger = logging.getLogger(__name__)

EXPLORER_TEMPLATE = ChallengeDraft(
    title="MISSION EXPLORER",
    description="Document something interesting about this location in 30 seconds. Make it engaging",
    reward=80,
)

FALLBACK_TEMPLATES: dict[str, ChallengeDraft] = {
    "cafe": ChallengeDraft(
        title="OPERATION MENU MYSTERY",
        description="Order something you've never tried. Film your honest reaction in 20 seconds",
        reward=75,
    ),
    "restaurant": ChallengeDraft(
        title="MENU MYSTERY",
        description="Ask the waiter for the weirdest thing they serve. Film your face when they tell you",
        reward=85,
    ),
    "park": ChallengeDraft(
        title="MISSION NATURE SCOUT",
        description="Find and film 3 different types of leaves in 30 seconds. Show your discoveries",
        reward=70,
    ),
    "artwork": ChallengeDraft(
        title="ART INTERVIEW",
        description='Have a full conversation with this artwork. Ask questions, wait for "answers"',
        reward=95,
    ),
    "monument": ChallengeDraft(
        title="PROTOCOL TIME TRAVEL",
        description="Explain modern smartphones to this monument. Be dramatic and educational",
        reward=90,
    ),
    "fountain": ChallengeDraft(
        title="FOUNTAIN COMMENTARY",
        description="Commentate the fountain like a sports event. And the water goes UP!",
        reward=80,
    ),
    "viewpoint": ChallengeDraft(
        title="DRAMATIC REVEAL",
        description="Walk up with your back to the view, then spin around dramatically",
        reward=120,
    ),
    "library": ChallengeDraft(
        title="SILENT FILM STAR",
        description="Act out a book title using only gestures. No sound allowed",
        reward=95,
    ),
    "playground": ChallengeDraft(
        title="PLAYGROUND OLYMPICS",
        description="Create your own sport using the equipment. Demonstrate it",
        reward=100,
    ),
    "bridge": ChallengeDraft(
        title="SLOW MOTION HERO",
        description="Walk across in dramatic slow motion like an action movie",
        reward=90,
    ),
    "market": ChallengeDraft(
        title="MYSTERY PURCHASE",
        description="Buy the strangest item under $3. Show what you got and why",
        reward=100,
    ),
    "statue": ChallengeDraft(
        title="STATUE SWAP",
        description="Stand next to the statue and copy its pose for 20 seconds",
        reward=85,
    ),
    "bench": ChallengeDraft(
        title="BENCH THEATER",
        description="Deliver a 15-second dramatic monologue while sitting on this bench",
        reward=80,
    ),
    "street": ChallengeDraft(
        title="OPERATION SIDEWALK STAR",
        description="Perform 15 seconds of interpretive dance at this location. Own the space",
        reward=85,
    ),
    "tram_stop": ChallengeDraft(
        title="TRAM STOP RUNWAY",
        description="Strut down the platform like it's a runway",
        reward=90,
    ),
}

# Used for synthetic challenges placed around the user when real POIs run out.
STATIC_CHALLENGES: list[ChallengeDraft] = [
    ChallengeDraft(
        title="OPERATION EXPLORER",
        description="Find something unusual at this spot. Document it in 30 seconds",
        reward=75,
    ),
    ChallengeDraft(
        title="MISSION VELOCITY",
        description="Sprint to this location from 50 meters away as fast as possible",
        reward=80,
    ),
    ChallengeDraft(
        title="PROTOCOL BALANCE",
        description="Balance on one foot for 30 seconds. Film your stability",
        reward=70,
    ),
    ChallengeDraft(
        title="TASK OBSERVATION",
        description="Count how many different colors you can spot in 30 seconds",
        reward=65,
    ),
    ChallengeDraft(
        title="OPERATION KINDNESS",
        description="Give a genuine compliment to someone nearby. Film their smile",
        reward=90,
    ),
    ChallengeDraft(
        title="MISSION STRENGTH",
        description="Do as many pushups as possible in 30 seconds. Show your power",
        reward=85,
    ),
    ChallengeDraft(
        title="CODE SHADOW",
        description="Create shadow art or shapes for 20 seconds. Be creative",
        reward=75,
    ),
    ChallengeDraft(
        title="PROTOCOL SPEED",
        description="Find and touch 5 different textures in 30 seconds",
        reward=70,
    ),
    ChallengeDraft(
        title="TASK PERFORMANCE",
        description="Perform a 15-second dramatic monologue at this location",
        reward=80,
    ),
    ChallengeDraft(
        title="MISSION DISCOVERY",
        description="Discover something about this area you never knew. Share it",
        reward=75,
    ),
]


def fallback_draft(category: str) -> ChallengeDraft:
    return FALLBACK_TEMPLATES.get(category, EXPLORER_TEMPLATE)


def _fallback_result(category: str) -> DescriptionResult:
    draft = fallback_draft(category)
    return DescriptionResult(
        title=draft.title, description=draft.description, reward=draft.reward, fallback=True
    )


class Synthesizer:
    def __init__(self, description_service: DescriptionService | None = None) -> None:
        self._description_service = description_service

    async def describe(self, category: Category, poi_name: str, distance_m: float) -> DescriptionResult:
        """Service result when usable, otherwise the category template flagged as fallback."""
        if self._description_service is None:
            return _fallback_result(category)

        try:
            result = await self._description_service.describe(category, poi_name, distance_m)
        except (DescriptionServiceError, ValueError) as exc:
            logger.warning("Description failed for %s at %s, using template: %s", category, poi_name, exc)
            return _fallback_result(category)
        except Exception:
            logger.exception("Unexpected description failure for %s at %s", category, poi_name)
            return _fallback_result(category)

        if result.fallback:
            logger.warning("Description service returned a fallback for %s at %s", category, poi_name)
            return _fallback_result(category)
        return result

    async def synthesize(self, category: Category, poi_name: str, distance_m: float) -> ChallengeDraft:
        result = await self.describe(category, poi_name, distance_m)
        return ChallengeDraft(title=result.title, description=result.description, reward=result.reward)

    @staticmethod
    def static_draft(index: int) -> ChallengeDraft:
        return STATIC_CHALLENGES[index % len(STATIC_CHALLENGES)]
