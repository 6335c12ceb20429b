"""Bet settlement and bettor rankings.

Scoring per bet:
1. A pick is correct when its competitor finished at the picked position
2. Correct pick: max(odd, min_points_per_correct_pick), incorrect: incorrect_pick_points
3. Boosted pick: points x boost_multiplier
4. Sum picks; all three correct -> sum x perfect_podium_bonus
5. Round to 2 decimals

Example: podium [A, B, D], picks A@2.5, B@3.0 (boosted), C@4.0
    2.5 + 6.0 + 0 = 8.5
With podium [A, B, C]: (2.5 + 6.0 + 4.0) x 2 = 25.0

A week is settled exactly once; settled_at marks it.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from raceweek.config.betting import ScoringParams
from raceweek.models.domain import (
    Bet,
    BetPick,
    BetStatus,
    BettingWeek,
    BettorRanking,
    UserStreak,
    WeekStatus,
)
from raceweek.services.collaborators import LoggingNotifier, Notifier
from raceweek.services.errors import InvalidTransition, NotFound
from raceweek.services.storage import BettingStore

logger = structlog.get_logger(__name__)

PODIUM_SIZE = 3


@dataclass
class PickScore:
    """Scoring of one pick."""

    competitor_id: int
    position: str
    is_correct: bool
    odd_at_bet: float
    final_odd: float | None
    used_best_odds: bool
    has_boost: bool
    points: float


@dataclass
class BetScore:
    """Scoring of one bet with all intermediate values."""

    picks: list[PickScore]
    total_before_bonus: float
    is_perfect_podium: bool
    perfect_podium_bonus: float
    points: float

    @property
    def correct_picks(self) -> int:
        return sum(1 for p in self.picks if p.is_correct)

    @property
    def has_boost(self) -> bool:
        return any(p.has_boost for p in self.picks)


@dataclass
class SettlementResult:
    """Outcome of settling one week."""

    week_id: int
    processed_bets: int = 0
    total_points_distributed: float = 0.0
    won: int = 0
    lost: int = 0
    voided: int = 0
    perfect_podiums: int = 0
    notifications: list[dict[str, Any]] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_id": self.week_id,
            "processed_bets": self.processed_bets,
            "total_points_distributed": self.total_points_distributed,
            "won": self.won,
            "lost": self.lost,
            "voided": self.voided,
            "perfect_podiums": self.perfect_podiums,
        }


def calculate_bet_points(
    picks: Sequence[BetPick],
    podium: Mapping[str, int | None],
    params: ScoringParams | None = None,
    final_odds: Mapping[int, Mapping[str, float]] | None = None,
) -> BetScore:
    """
    Score a bet's picks against the podium.

    Args:
        picks: the bet's picks (position, competitor_id, odd_at_bet, has_boost)
        podium: competitor id per position ("first", "second", "third")
        params: scoring parameters
        final_odds: competitor id -> position -> final odd; only read when
            best_odds_guaranteed is on

    Returns:
        BetScore with per-pick points and the bet total
    """
    params = params or ScoringParams()
    scores = []

    for pick in picks:
        position = str(getattr(pick.position, "value", pick.position))
        is_correct = (
            podium.get(position) is not None and pick.competitor_id == podium.get(position)
        )

        final_odd = None
        if final_odds is not None:
            final_odd = final_odds.get(pick.competitor_id, {}).get(position)

        odd = pick.odd_at_bet
        used_best_odds = False
        if (
            params.best_odds_guaranteed
            and is_correct
            and final_odd is not None
            and final_odd > pick.odd_at_bet
        ):
            odd = final_odd
            used_best_odds = True

        if is_correct:
            points = max(odd, params.min_points_per_correct_pick)
        else:
            points = params.incorrect_pick_points
        if pick.has_boost:
            points *= params.boost_multiplier

        scores.append(
            PickScore(
                competitor_id=pick.competitor_id,
                position=position,
                is_correct=is_correct,
                odd_at_bet=pick.odd_at_bet,
                final_odd=final_odd,
                used_best_odds=used_best_odds,
                has_boost=bool(pick.has_boost),
                points=round(points, 2),
            )
        )

    total = round(sum(s.points for s in scores), 2)
    is_perfect = len(scores) == PODIUM_SIZE and all(s.is_correct for s in scores)

    points = total
    bonus = 0.0
    if is_perfect:
        points = round(total * params.perfect_podium_bonus, 2)
        bonus = round(points - total, 2)

    return BetScore(
        picks=scores,
        total_before_bonus=total,
        is_perfect_podium=is_perfect,
        perfect_podium_bonus=bonus,
        points=points,
    )


class SettlementEngine:
    """Score bets of finalized weeks and maintain monthly rankings."""

    def __init__(
        self,
        store: BettingStore,
        params: ScoringParams | None = None,
        notifier: Notifier | None = None,
    ):
        self.store = store
        self.params = params or ScoringParams()
        self.notifier = notifier or LoggingNotifier()

    async def _get_unsettled(self, week_id: int) -> BettingWeek:
        week = await self.store.get_week(week_id)
        if week is None:
            raise NotFound(f"Betting week {week_id} not found", week_id=week_id)
        if week.settled_at is not None:
            raise InvalidTransition(
                f"Week {week.label} was already settled",
                week_id=week_id,
                settled_at=week.settled_at.isoformat(),
            )
        return week

    @staticmethod
    def is_void_week(week: BettingWeek) -> bool:
        """Cancelled weeks and calibration weeks finalized without a podium."""
        if week.status == WeekStatus.CANCELLED:
            return True
        return (
            week.status == WeekStatus.FINALIZED
            and week.is_calibration_week
            and not week.has_podium
        )

    async def _final_odds(self, week_id: int) -> dict[int, dict[str, float]] | None:
        if not self.params.best_odds_guaranteed:
            return None
        return {
            row.competitor_id: {
                "first": row.odd_first,
                "second": row.odd_second,
                "third": row.odd_third,
            }
            for row in await self.store.list_odds(week_id)
        }

    async def finalize_week(
        self, week_id: int, now: datetime | None = None
    ) -> SettlementResult:
        """
        Settle every unfinalized bet of a week.

        Cancelled and calibration weeks go through void_week. All writes
        commit together; notifications go out after the commit.

        Raises:
            NotFound: unknown week
            InvalidTransition: already settled, or not finalized with a podium
        """
        now = now or datetime.now(timezone.utc)
        week = await self._get_unsettled(week_id)

        if self.is_void_week(week):
            return await self.void_week(week_id, now=now)

        if week.status != WeekStatus.FINALIZED or not week.has_podium:
            raise InvalidTransition(
                f"Week {week.label} is not finalized with a podium",
                week_id=week_id,
                status=week.status,
            )

        podium = week.podium
        final_odds = await self._final_odds(week_id)
        bets = await self.store.list_bets(week_id, unsettled_only=True)
        result = SettlementResult(week_id=week_id)

        for bet in bets:
            score = calculate_bet_points(bet.picks, podium, self.params, final_odds)
            self._apply_score(bet, score)

            month, year = week.ranking_period
            await self._update_ranking(bet.user_id, month, year, score)
            await self._update_streak(bet.user_id, week_id, won=score.points > 0)

            result.processed_bets += 1
            result.total_points_distributed += score.points
            if score.points > 0:
                result.won += 1
            else:
                result.lost += 1
            if score.is_perfect_podium:
                result.perfect_podiums += 1
            result.notifications.append(self._payload(bet, week, score))

            logger.debug(
                "bet_scored",
                bet_id=bet.id,
                user_id=bet.user_id,
                points=score.points,
                correct_picks=score.correct_picks,
                perfect_podium=score.is_perfect_podium,
            )

        result.total_points_distributed = round(result.total_points_distributed, 2)
        week.settled_at = now
        await self.store.commit()

        logger.info("week_settled", **result.to_dict())
        await self._notify_bets(result.notifications)
        return result

    def _apply_score(self, bet: Bet, score: BetScore) -> None:
        by_position = {s.position: s for s in score.picks}
        for pick in bet.picks:
            pick_score = by_position[str(getattr(pick.position, "value", pick.position))]
            pick.is_correct = pick_score.is_correct
            pick.points_earned = pick_score.points
            pick.final_odd = pick_score.final_odd
            pick.used_best_odds = pick_score.used_best_odds

        bet.points_earned = score.points
        bet.status = (BetStatus.WON if score.points > 0 else BetStatus.LOST).value
        bet.is_finalized = True

    async def _update_ranking(
        self, user_id: int, month: int, year: int, score: BetScore
    ) -> BettorRanking:
        ranking = await self.store.get_ranking(user_id, month, year)
        if ranking is None:
            ranking = await self.store.add_ranking(
                BettorRanking(
                    user_id=user_id,
                    month=month,
                    year=year,
                    total_points=0.0,
                    bets_placed=0,
                    bets_won=0,
                    perfect_bets=0,
                    boosts_used=0,
                    rank=None,
                    previous_rank=None,
                    previous_week_rank=None,
                )
            )

        ranking.total_points = round((ranking.total_points or 0.0) + score.points, 2)
        ranking.bets_placed = (ranking.bets_placed or 0) + 1
        if score.points > 0:
            ranking.bets_won = (ranking.bets_won or 0) + 1
        if score.is_perfect_podium:
            ranking.perfect_bets = (ranking.perfect_bets or 0) + 1
        if score.has_boost:
            ranking.boosts_used = (ranking.boosts_used or 0) + 1
        return ranking

    async def _update_streak(self, user_id: int, week_id: int, won: bool) -> UserStreak:
        streak = await self.store.get_streak(user_id)
        if streak is None:
            streak = await self.store.add_streak(
                UserStreak(
                    user_id=user_id,
                    current_monthly_streak=0,
                    best_monthly_streak=0,
                    current_win_streak=0,
                    best_win_streak=0,
                    last_settled_week_id=None,
                )
            )

        if streak.last_settled_week_id == week_id:
            return streak

        streak.current_monthly_streak += 1
        streak.best_monthly_streak = max(
            streak.best_monthly_streak, streak.current_monthly_streak
        )
        streak.current_win_streak = streak.current_win_streak + 1 if won else 0
        streak.best_win_streak = max(streak.best_win_streak, streak.current_win_streak)
        streak.last_settled_week_id = week_id
        return streak

    @staticmethod
    def _payload(bet: Bet, week: BettingWeek, score: BetScore) -> dict[str, Any]:
        return {
            "bet_id": bet.id,
            "user_id": bet.user_id,
            "week_id": week.id,
            "status": bet.status,
            "points_earned": score.points,
            "is_perfect_podium": score.is_perfect_podium,
            "perfect_podium_bonus": score.perfect_podium_bonus,
            "correct_picks": score.correct_picks,
            "total_picks": len(score.picks),
            "has_boost": score.has_boost,
            "highest_odd": max((p.odd_at_bet for p in score.picks), default=None),
            "picks": [
                {
                    "competitor_id": p.competitor_id,
                    "position": p.position,
                    "is_correct": p.is_correct,
                    "odd_at_bet": p.odd_at_bet,
                    "has_boost": p.has_boost,
                    "points_earned": p.points,
                    "used_best_odds": p.used_best_odds,
                }
                for p in score.picks
            ],
        }

    async def _notify_bets(self, payloads: list[dict[str, Any]]) -> None:
        for payload in payloads:
            try:
                await self.notifier.bet_settled(payload)
            except Exception as e:
                logger.error(
                    "bet_notification_failed",
                    bet_id=payload.get("bet_id"),
                    error=str(e),
                )

    async def void_week(self, week_id: int, now: datetime | None = None) -> SettlementResult:
        """
        Void every unfinalized bet of a cancelled or calibration week.

        Rankings are untouched.

        Raises:
            NotFound: unknown week
            InvalidTransition: already settled, or the week is not voidable
        """
        now = now or datetime.now(timezone.utc)
        week = await self._get_unsettled(week_id)
        if not self.is_void_week(week):
            raise InvalidTransition(
                f"Week {week.label} cannot be voided in status {week.status}",
                week_id=week_id,
                status=week.status,
            )

        result = SettlementResult(week_id=week_id)
        for bet in await self.store.list_bets(week_id, unsettled_only=True):
            for pick in bet.picks:
                pick.is_correct = None
                pick.points_earned = 0.0
            bet.status = BetStatus.VOID.value
            bet.points_earned = 0.0
            bet.is_finalized = True
            result.processed_bets += 1
            result.voided += 1

        week.settled_at = now
        await self.store.commit()

        logger.info(
            "week_voided",
            week_id=week_id,
            week=week.label,
            status=week.status,
            voided=result.voided,
        )
        return result

    async def recalculate_ranks(self, month: int, year: int) -> list[BettorRanking]:
        """
        Assign ranks 1..N by total points desc, user id asc.

        The rank held before this run moves to previous_rank.
        """
        rankings = await self.store.list_rankings(month, year)
        ordered = sorted(rankings, key=lambda r: (-(r.total_points or 0.0), r.user_id))

        changes = []
        for position, ranking in enumerate(ordered, start=1):
            ranking.previous_rank = ranking.rank
            ranking.rank = position
            if ranking.previous_rank != position:
                changes.append(
                    {
                        "user_id": ranking.user_id,
                        "rank": position,
                        "previous_rank": ranking.previous_rank,
                        "total_points": ranking.total_points,
                    }
                )

        await self.store.commit()
        logger.info(
            "ranks_recalculated",
            month=month,
            year=year,
            rankings=len(ordered),
            changed=len(changes),
        )

        try:
            await self.notifier.ranks_recalculated(month, year, changes)
        except Exception as e:
            logger.error("rank_notification_failed", month=month, year=year, error=str(e))
        return ordered

    async def snapshot_weekly_ranks(self, month: int, year: int) -> int:
        """Copy each rank into previous_week_rank for trend display."""
        rankings = await self.store.list_rankings(month, year)
        for ranking in rankings:
            ranking.previous_week_rank = ranking.rank
        await self.store.commit()
        logger.info("weekly_ranks_snapshotted", month=month, year=year, rankings=len(rankings))
        return len(rankings)
