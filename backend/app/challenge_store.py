from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import httpx

from .geo import distance_m
from .schemas import (
    Challenge,
    ChallengeDraft,
    Ephemeral,
    Location,
    Persisted,
    PersistResult,
    RecentCompletion,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
STORED_CHALLENGE_CATEGORY = "street"


class StoreError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class ChallengeStore(Protocol):
    async def create_challenge(
        self,
        creator_id: str,
        title: str,
        description: str,
        reward: int,
        location: Location,
        max_participants: int,
    ) -> str: ...

    async def get_user_completed_challenge_ids(
        self,
        user_id: str,
        challenge_type: str,
        start: datetime,
        end: datetime,
    ) -> set[str]: ...

    async def list_nearby_challenges(self, location: Location, radius_km: float) -> list[Challenge]: ...


def _backoff_seconds(attempt: int) -> float:
    return min(8.0, 0.5 * (2**attempt))


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


def _as_dict(value: Any, stage: str, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise StoreError(stage, f"Expected an object for {what}, got {type(value).__name__}.")
    return value


def _as_list(value: Any, stage: str, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise StoreError(stage, f"Expected a list for {what}, got {type(value).__name__}.")
    return value


async def persist_challenge(
    store: ChallengeStore,
    draft: ChallengeDraft,
    location: Location,
    *,
    creator_id: str,
    max_participants: int,
    retries: int = 2,
    local_id_prefix: str = "ephemeral",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PersistResult:
    """Best-effort persistence: bounded retries, then an ephemeral local id.

    Ephemeral challenges are never reconciled later; they live only as long
    as the cache entry that holds them.
    """
    last_error: Exception | None = None
    for attempt in range(retries + 1):
        try:
            challenge_id = await store.create_challenge(
                creator_id,
                draft.title,
                draft.description,
                draft.reward,
                location,
                max_participants,
            )
            return Persisted(id=challenge_id)
        except (StoreError, httpx.HTTPError) as exc:
            last_error = exc
            if attempt < retries:
                await sleep(_backoff_seconds(attempt))

    local_id = f"{local_id_prefix}-{uuid.uuid4().hex[:12]}"
    logger.warning(
        "Challenge %r not persisted after %d attempt(s), keeping ephemeral id %s: %s",
        draft.title,
        retries + 1,
        local_id,
        last_error,
    )
    return Ephemeral(local_id=local_id, reason=f"persistence failed: {last_error}")


@dataclass
class _StoredChallenge:
    id: str
    creator_id: str
    title: str
    description: str
    reward: int
    location: Location
    max_participants: int
    created_at: datetime


@dataclass
class _Completion:
    user_id: str
    challenge_id: str
    challenge_type: str
    completed_at: datetime


@dataclass
class InMemoryChallengeStore:
    """Dict-backed store for local development and tests."""

    fail_creates: bool = False
    challenges: dict[str, _StoredChallenge] = field(default_factory=dict)
    completions: list[_Completion] = field(default_factory=list)
    create_calls: int = 0

    async def create_challenge(
        self,
        creator_id: str,
        title: str,
        description: str,
        reward: int,
        location: Location,
        max_participants: int,
    ) -> str:
        self.create_calls += 1
        if self.fail_creates:
            raise StoreError("create_challenge", "store rejected the challenge")
        challenge_id = str(uuid.uuid4())
        self.challenges[challenge_id] = _StoredChallenge(
            id=challenge_id,
            creator_id=creator_id,
            title=title,
            description=description,
            reward=reward,
            location=location,
            max_participants=max_participants,
            created_at=datetime.now(timezone.utc),
        )
        return challenge_id

    def record_completion(
        self,
        user_id: str,
        challenge_id: str,
        *,
        challenge_type: str = "public",
        completed_at: datetime | None = None,
    ) -> None:
        self.completions.append(
            _Completion(
                user_id=user_id,
                challenge_id=challenge_id,
                challenge_type=challenge_type,
                completed_at=completed_at or datetime.now(timezone.utc),
            )
        )

    async def get_user_completed_challenge_ids(
        self,
        user_id: str,
        challenge_type: str,
        start: datetime,
        end: datetime,
    ) -> set[str]:
        return {
            c.challenge_id
            for c in self.completions
            if c.user_id == user_id
            and c.challenge_type == challenge_type
            and start <= c.completed_at <= end
        }

    async def list_nearby_challenges(self, location: Location, radius_km: float) -> list[Challenge]:
        nearby: list[Challenge] = []
        for stored in self.challenges.values():
            dist = distance_m(location, stored.location)
            if dist > radius_km * 1000:
                continue
            completions = [c for c in self.completions if c.challenge_id == stored.id]
            nearby.append(
                Challenge(
                    id=stored.id,
                    title=stored.title,
                    description=stored.description,
                    location=stored.location,
                    reward=stored.reward,
                    category=STORED_CHALLENGE_CATEGORY,
                    distance_meters=round(dist),
                    poi_name=stored.title,
                    completion_count=len(completions),
                    max_participants=stored.max_participants,
                    persistence=Persisted(id=stored.id),
                )
            )
        nearby.sort(key=lambda c: c.distance_meters)
        return nearby


CREATE_PUBLIC_CHALLENGE = """
mutation AddPublicChallenge($input: [AddPublicChallengeInput!]!) {
  addPublicChallenge(input: $input) {
    publicChallenge { id }
  }
}
"""

USER_COMPLETED_CHALLENGES = """
query UserCompletedChallenges($userId: String!, $type: String!, $start: DateTime!, $end: DateTime!) {
  queryChallengeCompletion(
    filter: {
      userLensAccountId: { eq: $userId }
      challengeType: { eq: $type }
      completionDate: { between: { min: $start, max: $end } }
    }
  ) {
    publicChallenge { id }
  }
}
"""

ACTIVE_PUBLIC_CHALLENGES = """
query ActivePublicChallenges {
  queryPublicChallenge(filter: { isActive: true }) {
    id
    title
    description
    reward
    location { latitude longitude }
    participantCount
    maxParticipants
    completions { completionDate user { id } }
  }
}
"""


class GraphQLChallengeStore:
    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 20.0,
        retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._retries = retries
        self._transport = transport
        self._sleep = sleep

    async def _request(self, query: str, variables: dict[str, Any], *, stage: str) -> dict[str, Any]:
        last_error: Exception | None = None
        headers = {"User-Agent": "challenge-pool/0.1", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(self._retries + 1):
                try:
                    response = await client.post(
                        self._endpoint,
                        json={"query": query, "variables": variables},
                        headers=headers,
                    )
                except (httpx.TimeoutException, httpx.TransportError) as exc:
                    last_error = exc
                    if attempt < self._retries:
                        await self._sleep(_backoff_seconds(attempt))
                        continue
                    raise StoreError(stage, f"Network error after retries: {exc!s}") from exc

                status = response.status_code
                if status in RETRYABLE_STATUS_CODES:
                    last_error = StoreError(stage, f"HTTP {status}: {_short_error_text(response.text)}")
                    if attempt < self._retries:
                        await self._sleep(_backoff_seconds(attempt))
                        continue
                    raise last_error

                if status >= 400:
                    raise StoreError(stage, f"HTTP {status}: {_short_error_text(response.text)}")

                try:
                    payload = response.json()
                except ValueError as exc:
                    raise StoreError(stage, f"Invalid JSON in store response (HTTP {status})") from exc

                if not isinstance(payload, dict):
                    raise StoreError(stage, "Store response must be a JSON object.")
                errors = payload.get("errors")
                if errors:
                    raise StoreError(stage, f"GraphQL errors: {_short_error_text(str(errors))}")
                data = payload.get("data")
                return data if isinstance(data, dict) else {}

        raise StoreError(stage, f"Failed request after retries: {last_error!s}")

    async def create_challenge(
        self,
        creator_id: str,
        title: str,
        description: str,
        reward: int,
        location: Location,
        max_participants: int,
    ) -> str:
        challenge_id = str(uuid.uuid4())
        variables = {
            "input": [
                {
                    "id": challenge_id,
                    "title": title,
                    "description": description,
                    "reward": reward,
                    "createdAt": datetime.now(timezone.utc).isoformat(),
                    "isActive": True,
                    "creatorLensAccountId": creator_id,
                    "location": {"latitude": location.latitude, "longitude": location.longitude},
                    "maxParticipants": max_participants,
                    "participantCount": 0,
                }
            ]
        }
        data = await self._request(CREATE_PUBLIC_CHALLENGE, variables, stage="create_challenge")
        payload = _as_dict(data.get("addPublicChallenge"), "create_challenge", "addPublicChallenge")
        created = _as_list(payload.get("publicChallenge"), "create_challenge", "publicChallenge")
        if not created or not isinstance(created[0], dict) or not created[0].get("id"):
            raise StoreError("create_challenge", "Challenge creation returned no id.")
        return str(created[0]["id"])

    async def get_user_completed_challenge_ids(
        self,
        user_id: str,
        challenge_type: str,
        start: datetime,
        end: datetime,
    ) -> set[str]:
        variables = {
            "userId": user_id,
            "type": challenge_type,
            "start": start.isoformat(),
            "end": end.isoformat(),
        }
        data = await self._request(USER_COMPLETED_CHALLENGES, variables, stage="completions")
        ids: set[str] = set()
        rows = _as_list(data.get("queryChallengeCompletion"), "completions", "queryChallengeCompletion")
        for completion in rows:
            completion = _as_dict(completion, "completions", "completion")
            challenge = _as_dict(completion.get("publicChallenge"), "completions", "publicChallenge")
            if challenge.get("id"):
                ids.add(str(challenge["id"]))
        return ids

    async def list_nearby_challenges(self, location: Location, radius_km: float) -> list[Challenge]:
        data = await self._request(ACTIVE_PUBLIC_CHALLENGES, {}, stage="nearby")
        nearby: list[Challenge] = []
        for raw in _as_list(data.get("queryPublicChallenge"), "nearby", "queryPublicChallenge"):
            try:
                challenge = _stored_from_row(raw, location)
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                logger.warning("Skipping malformed stored challenge: %s", exc)
                continue
            if challenge.distance_meters <= radius_km * 1000:
                nearby.append(challenge)
        nearby.sort(key=lambda c: c.distance_meters)
        return nearby


def _stored_from_row(raw: dict, origin: Location) -> Challenge:
    """Map one queryPublicChallenge row; malformed rows raise KeyError/TypeError/ValueError."""
    challenge_id = str(raw["id"])
    loc = Location(latitude=raw["location"]["latitude"], longitude=raw["location"]["longitude"])
    completions = sorted(
        raw.get("completions") or [],
        key=lambda c: c.get("completionDate") or "",
        reverse=True,
    )
    return Challenge(
        id=challenge_id,
        title=raw.get("title") or "",
        description=raw.get("description") or "",
        location=loc,
        reward=int(raw.get("reward") or 0),
        category=STORED_CHALLENGE_CATEGORY,
        distance_meters=round(distance_m(origin, loc)),
        poi_name=raw.get("title") or "",
        completion_count=len(completions),
        participant_count=int(raw.get("participantCount") or 0),
        max_participants=int(raw.get("maxParticipants") or 1),
        recent_completions=[
            RecentCompletion(
                user_id=str((c.get("user") or {}).get("id", "")),
                completed_at=str(c.get("completionDate") or ""),
            )
            for c in completions[:5]
        ],
        persistence=Persisted(id=challenge_id),
    )
