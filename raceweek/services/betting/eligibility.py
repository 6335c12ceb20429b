"""Competitor eligibility for odds and the podium.

A competitor is eligible once calibrated (enough lifetime races) and still
active (enough races inside the trailing window). Bad counts mean
ineligible, never an error.
"""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from raceweek.config.betting import EligibilityRules
from raceweek.models.domain import Competitor

logger = structlog.get_logger(__name__)

# (competitor_id, since, until) -> races in [since, until]
RaceCounter = Callable[[int, datetime, datetime], Awaitable[int]]

REASON_CALIBRATING = "calibrating"
REASON_INACTIVE = "inactive"


@dataclass
class EligibilityResult:
    """Eligibility verdict with the numbers behind it."""

    competitor_id: int
    is_eligible: bool
    reason: str | None
    lifetime_races: int
    recent_races: int
    calibration_progress: float

    def to_dict(self) -> dict:
        return {
            "is_eligible": self.is_eligible,
            "reason": self.reason,
            "lifetime_races": self.lifetime_races,
            "recent_races": self.recent_races,
            "calibration_progress": self.calibration_progress,
        }


class EligibilityFilter:
    """Decide which competitors qualify for odds and the podium."""

    def __init__(self, rules: EligibilityRules, race_counter: RaceCounter):
        self.rules = rules
        self.race_counter = race_counter

    def window_start(self, as_of: datetime) -> datetime:
        return as_of - timedelta(days=self.rules.recent_window_days)

    async def evaluate(self, competitor: Competitor, as_of: datetime) -> EligibilityResult:
        """Check calibration first, then recent activity."""
        lifetime = competitor.total_lifetime_races
        if lifetime is None or lifetime < 0:
            lifetime = -1

        required = max(self.rules.min_lifetime_races, 1)
        progress = round(min(max(lifetime, 0) / required, 1.0), 2)

        if lifetime < self.rules.min_lifetime_races:
            return EligibilityResult(
                competitor_id=competitor.id,
                is_eligible=False,
                reason=REASON_CALIBRATING,
                lifetime_races=lifetime,
                recent_races=0,
                calibration_progress=progress,
            )

        recent = await self.race_counter(competitor.id, self.window_start(as_of), as_of)
        if recent is None or recent < 0:
            recent = -1

        eligible = recent >= self.rules.min_recent_races
        return EligibilityResult(
            competitor_id=competitor.id,
            is_eligible=eligible,
            reason=None if eligible else REASON_INACTIVE,
            lifetime_races=lifetime,
            recent_races=recent,
            calibration_progress=progress,
        )

    async def is_eligible(self, competitor: Competitor, as_of: datetime) -> bool:
        result = await self.evaluate(competitor, as_of)
        return result.is_eligible

    async def filter_eligible(
        self, competitors: Iterable[Competitor], as_of: datetime
    ) -> list[Competitor]:
        """Eligible competitors, in input order."""
        eligible = []
        counts = {REASON_CALIBRATING: 0, REASON_INACTIVE: 0}
        for competitor in competitors:
            result = await self.evaluate(competitor, as_of)
            if result.is_eligible:
                eligible.append(competitor)
            else:
                counts[result.reason] += 1

        logger.debug(
            "eligibility_filtered",
            eligible=len(eligible),
            calibrating=counts[REASON_CALIBRATING],
            inactive=counts[REASON_INACTIVE],
            as_of=as_of.isoformat(),
        )
        return eligible
