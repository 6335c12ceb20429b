"""Interfaces of the collaborators the betting core consumes.

Rating computation, race ingestion events and notification delivery live
outside this package; only their shapes are defined here.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RatingValue:
    """Glicko-style rating triple."""
    value: float
    deviation: float
    volatility: float


@dataclass
class RatingInput:
    """One competitor's pre-race rating and finishing rank."""
    id: int
    rating: RatingValue
    rank: int


@dataclass
class RatingChange:
    """Rating before and after a race for one competitor."""
    id: int
    old_rating: RatingValue
    new_rating: RatingValue


class RatingUpdater(Protocol):
    """Pure function: rate race results into updated ratings."""

    def update_ratings(self, results: list[RatingInput]) -> list[RatingChange]: ...


@dataclass(frozen=True)
class RaceCreatedEvent:
    """Published by race ingestion after a race is stored."""
    race_id: int
    betting_week_id: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RaceCreatedEvent":
        week_id = payload.get("betting_week_id")
        return cls(
            race_id=int(payload["race_id"]),
            betting_week_id=int(week_id) if week_id is not None else None,
        )


class Notifier(Protocol):
    """Receives settlement output (achievements, push, websocket fan-out)."""

    async def bet_settled(self, payload: dict[str, Any]) -> None: ...

    async def ranks_recalculated(
        self, month: int, year: int, changes: list[dict[str, Any]]
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: records what would be delivered."""

    async def bet_settled(self, payload: dict[str, Any]) -> None:
        logger.info(
            "bet_settled",
            bet_id=payload.get("bet_id"),
            user_id=payload.get("user_id"),
            status=payload.get("status"),
            points=payload.get("points_earned"),
            perfect_podium=payload.get("is_perfect_podium"),
        )

    async def ranks_recalculated(
        self, month: int, year: int, changes: list[dict[str, Any]]
    ) -> None:
        logger.info(
            "ranks_recalculated",
            month=month,
            year=year,
            changed=len(changes),
        )
