"""Weekly podium selection."""

from collections.abc import Iterable
from datetime import datetime

import structlog

from raceweek.config.betting import PodiumConfig, PodiumScoringMethod, TieBreaker
from raceweek.models.domain import Competitor
from raceweek.services.betting.eligibility import EligibilityFilter
from raceweek.services.errors import InsufficientData

logger = structlog.get_logger(__name__)

PODIUM_SIZE = 3


class PodiumSelector:
    """
    Rank eligible, active competitors and take the top three.

    Sorting is fully deterministic: score desc, then the configured
    tie-breakers, then competitor id ascending.
    """

    def __init__(self, eligibility: EligibilityFilter, config: PodiumConfig | None = None):
        self.eligibility = eligibility
        self.config = config or PodiumConfig()

    def score(self, competitor: Competitor) -> float:
        method = self.config.scoring_method
        if method == PodiumScoringMethod.RATING:
            return competitor.rating
        if method == PodiumScoringMethod.RACE_COUNT:
            return float(competitor.current_month_race_count or 0)
        return competitor.rating - 2 * competitor.rd

    def sort_key(self, competitor: Competitor) -> tuple:
        key = [-self.score(competitor)]
        for breaker in self.config.tie_breakers:
            if breaker == TieBreaker.RATING:
                key.append(-competitor.rating)
            elif breaker == TieBreaker.RD:
                key.append(competitor.rd)
            elif breaker == TieBreaker.RACE_COUNT:
                key.append(-(competitor.race_count or 0))
        key.append(competitor.id)
        return tuple(key)

    def rank(self, candidates: Iterable[Competitor]) -> list[Competitor]:
        return sorted(candidates, key=self.sort_key)

    async def candidates(
        self, competitors: Iterable[Competitor], as_of: datetime
    ) -> list[Competitor]:
        active = [c for c in competitors if c.is_active_this_week]
        return await self.eligibility.filter_eligible(active, as_of)

    async def select(
        self, competitors: Iterable[Competitor], as_of: datetime
    ) -> list[Competitor]:
        """
        Pick first, second and third.

        Raises:
            InsufficientData: fewer than three eligible active competitors
        """
        candidates = await self.candidates(competitors, as_of)
        if len(candidates) < PODIUM_SIZE:
            raise InsufficientData(
                "Not enough eligible active competitors for a podium",
                eligible=len(candidates),
                required=PODIUM_SIZE,
            )

        podium = self.rank(candidates)[:PODIUM_SIZE]
        logger.info(
            "podium_selected",
            method=self.config.scoring_method.value,
            candidates=len(candidates),
            podium=[c.id for c in podium],
            scores=[round(self.score(c), 2) for c in podium],
        )
        return podium
