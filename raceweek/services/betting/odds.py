"""Position odds calculator.

Turns competitor skill and recent form into three payout odds per betting
week (first, second, third).

Calculation flow:
1. Filter eligible competitors at the week's reference time
2. Conservative score = rating - 2 * rd
3. Form factor from recent ranks and win streak
4. Podium share = softmax(conservative / temperature) x form, normalised
5. Podium probability = min(1, 3 x share), split across positions by tier
6. Odd = 1 / probability, clamped to [odd_floor, odd_ceiling]
7. Replace the week's odds rows

Odds per position are independent; nothing forces first < second < third.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from raceweek.config.betting import OddsParams
from raceweek.models.domain import (
    BettingWeek,
    Competitor,
    CompetitorOdds,
    PickPosition,
    WeekStatus,
)
from raceweek.services.betting.eligibility import EligibilityFilter
from raceweek.services.collaborators import RaceCreatedEvent
from raceweek.services.errors import InsufficientData, InvalidTransition, NotFound
from raceweek.services.storage import BettingStore

logger = structlog.get_logger(__name__)

MIN_PRICED_COMPETITORS = 3
PODIUM_SIZE = 3
ODDS_WRITABLE_STATUSES = (WeekStatus.OPEN, WeekStatus.CALIBRATION)

TIER_TOP = "top"
TIER_MID = "mid"
TIER_BOTTOM = "bottom"


@dataclass
class CompetitorForm:
    """Input for one priced competitor."""

    competitor_id: int
    rating: float
    rd: float
    win_streak: int = 0
    recent_ranks: list[int] = field(default_factory=list)

    @property
    def conservative_score(self) -> float:
        return self.rating - 2 * self.rd


@dataclass
class OddsCalculationStep:
    """Intermediate values for one competitor, kept for auditing."""

    competitor_id: int
    conservative_score: float
    avg_recent_rank: float | None
    form_factor: float
    share: float
    podium_probability: float
    tier: str
    odd_first: float
    odd_second: float
    odd_third: float

    def metadata(self) -> dict[str, Any]:
        return {
            "conservative_score": round(self.conservative_score, 2),
            "avg_recent_rank": self.avg_recent_rank,
            "form_factor": self.form_factor,
            "share": round(self.share, 6),
            "podium_probability": round(self.podium_probability, 6),
            "tier": self.tier,
        }


class OddsCalculator:
    """Calculate and publish position odds for a betting week."""

    def __init__(
        self,
        store: BettingStore,
        eligibility: EligibilityFilter,
        params: OddsParams | None = None,
    ):
        self.store = store
        self.eligibility = eligibility
        self.params = params or OddsParams()

    @staticmethod
    def clamp(value: float, min_val: float, max_val: float) -> float:
        """Clamp value between min and max."""
        return max(min_val, min(value, max_val))

    def form_factor(self, recent_ranks: list[int], win_streak: int) -> float:
        """
        Multiplier for recent form.

        Average recent rank picks a base factor from the rank thresholds,
        each consecutive win adds win_streak_bonus. No recent races = 1.0.
        """
        if not recent_ranks:
            return 1.0

        avg_rank = sum(recent_ranks) / len(recent_ranks)
        base = self.params.form_floor_factor
        for max_rank, factor in self.params.form_rank_thresholds:
            if avg_rank <= max_rank:
                base = factor
                break

        factor = base + max(win_streak, 0) * self.params.win_streak_bonus
        return round(
            self.clamp(factor, self.params.form_factor_min, self.params.form_factor_max), 4
        )

    def podium_shares(self, forms: list[CompetitorForm]) -> list[float]:
        """Softmax over conservative scores, weighted by form, summing to 1."""
        temperature = self.params.softmax_temperature or 1.0
        top = max(f.conservative_score for f in forms)
        weights = [
            math.exp((f.conservative_score - top) / temperature)
            * self.form_factor(f.recent_ranks, f.win_streak)
            for f in forms
        ]
        total = sum(weights)
        return [w / total for w in weights]

    def tiers(self, forms: list[CompetitorForm]) -> list[str]:
        """Percentile tier of each competitor by conservative score."""
        order = sorted(
            range(len(forms)),
            key=lambda i: (forms[i].conservative_score, -forms[i].competitor_id),
        )
        denominator = max(len(forms) - 1, 1)
        tiers = [TIER_MID] * len(forms)
        for position, index in enumerate(order):
            percentile = position / denominator
            if percentile >= self.params.top_tier_percentile:
                tiers[index] = TIER_TOP
            elif percentile <= self.params.bottom_tier_percentile:
                tiers[index] = TIER_BOTTOM
        return tiers

    def odd_from_probability(self, probability: float) -> float:
        if probability <= 0:
            return self.params.odd_ceiling
        return round(
            self.clamp(1 / probability, self.params.odd_floor, self.params.odd_ceiling), 2
        )

    def calculate(self, forms: list[CompetitorForm]) -> list[OddsCalculationStep]:
        """
        Pure odds calculation for a set of eligible competitors.

        Raises:
            InsufficientData: fewer than three competitors to price
        """
        if len(forms) < MIN_PRICED_COMPETITORS:
            raise InsufficientData(
                "Not enough eligible competitors to price a podium",
                eligible=len(forms),
                required=MIN_PRICED_COMPETITORS,
            )

        shares = self.podium_shares(forms)
        tiers = self.tiers(forms)

        steps = []
        for form, share, tier in zip(forms, shares, tiers):
            podium_probability = min(1.0, PODIUM_SIZE * share)
            factors = self.params.position_factors[tier]
            odds = {
                position.value: self.odd_from_probability(
                    podium_probability * factors[position.value]
                )
                for position in PickPosition
            }
            steps.append(
                OddsCalculationStep(
                    competitor_id=form.competitor_id,
                    conservative_score=form.conservative_score,
                    avg_recent_rank=(
                        round(sum(form.recent_ranks) / len(form.recent_ranks), 2)
                        if form.recent_ranks
                        else None
                    ),
                    form_factor=self.form_factor(form.recent_ranks, form.win_streak),
                    share=share,
                    podium_probability=podium_probability,
                    tier=tier,
                    odd_first=odds[PickPosition.FIRST.value],
                    odd_second=odds[PickPosition.SECOND.value],
                    odd_third=odds[PickPosition.THIRD.value],
                )
            )
        return steps

    @staticmethod
    def reference_time(week: BettingWeek, now: datetime) -> datetime:
        """Eligibility is judged at the week's end once the week is over."""
        return min(now, week.end_date)

    async def _load_forms(
        self, competitors: list[Competitor]
    ) -> list[CompetitorForm]:
        forms = []
        for competitor in competitors:
            ranks = await self.store.recent_ranks(
                competitor.id, self.params.recent_races_count
            )
            forms.append(
                CompetitorForm(
                    competitor_id=competitor.id,
                    rating=competitor.rating,
                    rd=competitor.rd,
                    win_streak=competitor.win_streak or 0,
                    recent_ranks=ranks,
                )
            )
        return forms

    async def calculate_odds_for_week(
        self, week_id: int, now: datetime | None = None
    ) -> list[CompetitorOdds]:
        """
        Calculate and persist odds for every eligible competitor.

        Safe to repeat while the week is open: each run replaces the
        previous rows for the same (competitor, week).

        Raises:
            NotFound: unknown week
            InvalidTransition: week already closed or terminal
            InsufficientData: fewer than three eligible competitors
        """
        now = now or datetime.now(timezone.utc)

        week = await self.store.get_week(week_id)
        if week is None:
            raise NotFound(f"Betting week {week_id} not found", week_id=week_id)
        if week.status not in ODDS_WRITABLE_STATUSES:
            raise InvalidTransition(
                f"Odds are frozen for week {week.label} ({week.status})",
                week_id=week_id,
                status=str(week.status),
            )

        as_of = self.reference_time(week, now)
        competitors = await self.store.list_competitors()
        eligible = await self.eligibility.filter_eligible(competitors, as_of)

        forms = await self._load_forms(eligible)
        steps = self.calculate(forms)

        rows = [
            CompetitorOdds(
                competitor_id=step.competitor_id,
                betting_week_id=week_id,
                odd_first=step.odd_first,
                odd_second=step.odd_second,
                odd_third=step.odd_third,
                probability=round(step.podium_probability, 6),
                form_factor=step.form_factor,
                calculated_at=now,
                odds_metadata=step.metadata(),
            )
            for step in steps
        ]
        saved = await self.store.replace_odds(week_id, rows)
        await self.store.commit()

        logger.info(
            "odds_calculated",
            week_id=week_id,
            week=week.label,
            eligible=len(eligible),
            total=len(competitors),
            avg_odd_first=round(sum(s.odd_first for s in steps) / len(steps), 2),
        )
        return saved

    async def handle_race_created(
        self, event: RaceCreatedEvent, now: datetime | None = None
    ) -> list[CompetitorOdds] | None:
        """
        Recalculate odds after a race lands in a betting week.

        Never raises: odds are a side effect of race ingestion and must not
        fail it.
        """
        if event.betting_week_id is None:
            logger.info("race_not_in_betting_week", race_id=event.race_id)
            return None

        try:
            week = await self.store.get_week(event.betting_week_id)
            if week is None:
                logger.warning(
                    "race_week_not_found",
                    race_id=event.race_id,
                    week_id=event.betting_week_id,
                )
                return None

            if week.status not in ODDS_WRITABLE_STATUSES:
                logger.info(
                    "odds_recalculation_skipped",
                    race_id=event.race_id,
                    week_id=week.id,
                    status=str(week.status),
                )
                return None

            odds = await self.calculate_odds_for_week(week.id, now=now)
            logger.info(
                "dynamic_odds_recalculated",
                race_id=event.race_id,
                week_id=week.id,
                competitors=len(odds),
            )
            return odds

        except Exception as e:
            logger.error(
                "odds_recalculation_failed",
                race_id=event.race_id,
                week_id=event.betting_week_id,
                error=str(e),
                exc_info=True,
            )
            try:
                await self.store.rollback()
            except Exception as rollback_error:
                logger.error("odds_rollback_failed", error=str(rollback_error))
            return None
