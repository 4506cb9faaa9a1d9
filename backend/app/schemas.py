from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Category = Literal[
    "cafe",
    "restaurant",
    "park",
    "artwork",
    "monument",
    "fountain",
    "viewpoint",
    "library",
    "playground",
    "bridge",
    "market",
    "statue",
    "bench",
    "street",
    "tram_stop",
    "random",
]

DEFAULT_POI_NAME = "Mystery Location"
SYNTHETIC_POI_NAME = "Adventure Spot"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Poi(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    location: Location
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        name = self.tags.get("name", "").strip()
        return name or DEFAULT_POI_NAME


class ChallengeDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field(..., min_length=1, max_length=400)
    reward: int = Field(..., ge=1)


class DescriptionResult(ChallengeDraft):
    fallback: bool = False


class Persisted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["persisted"] = "persisted"
    id: str


class Ephemeral(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ephemeral"] = "ephemeral"
    local_id: str
    reason: str


PersistResult = Annotated[Union[Persisted, Ephemeral], Field(discriminator="kind")]


class RecentCompletion(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    completed_at: str


class Challenge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    location: Location
    reward: int
    category: Category
    distance_meters: float = Field(..., ge=0)
    poi_name: str
    completion_count: int = 0
    participant_count: int = 0
    max_participants: int = 1
    recent_completions: list[RecentCompletion] = Field(default_factory=list)
    persistence: PersistResult

    @property
    def durable(self) -> bool:
        return isinstance(self.persistence, Persisted)


class CacheEntry(BaseModel):
    pool: list[Challenge]
    timestamp: float
    location: Location

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.timestamp < ttl_seconds


class ChallengeCompletedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, max_length=200)
    challenge_id: str = Field(..., min_length=1, max_length=200)


class PoolView(BaseModel):
    bucket: str
    target: int
    source: Literal["cache", "generated", "store"]
    replacements_added: int = 0
    challenges: list[Challenge]


class GeneratePoolRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, max_length=200)
    location: Location | None = None


class DescribeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: Category
    poi_name: str = Field(..., min_length=1, max_length=200)
    distance_m: float = Field(..., ge=0)


class CompletionRefreshResponse(BaseModel):
    refreshed: bool
    pool: PoolView | None = None

