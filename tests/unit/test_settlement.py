"""Unit tests for bet settlement and bettor rankings.

CRITICAL TESTS:
- Podium [A, B, D] with A@2.5, B@3.0 boosted, C@4.0 MUST score 8.5
- A perfect podium with the same picks MUST score 25.0
- A week MUST NOT be settled twice
"""

from datetime import datetime, timedelta

import pytest

from raceweek.config.betting import ScoringParams
from raceweek.models.domain import BetPick, BetStatus, CompetitorOdds, WeekStatus
from raceweek.services.betting import SettlementEngine, calculate_bet_points
from raceweek.services.errors import InvalidTransition, NotFound
from tests.conftest import UTC, WEEK_END, WEEK_START
from tests.fakes import RecordingNotifier

A, B, C, D = 101, 102, 103, 104


def pick(position, competitor_id, odd, boost=False) -> BetPick:
    return BetPick(position=position, competitor_id=competitor_id, odd_at_bet=odd, has_boost=boost)


def podium_of(first, second, third) -> dict[str, int]:
    return {"first": first, "second": second, "third": third}


REFERENCE_PICKS = [
    ("first", A, 2.5, False),
    ("second", B, 3.0, True),
    ("third", C, 4.0, False),
]


class TestCalculateBetPoints:
    """Pure scoring."""

    def setup_method(self):
        self.picks = [pick(*p) for p in REFERENCE_PICKS]

    def test_partial_podium_with_boost(self):
        score = calculate_bet_points(self.picks, podium_of(A, B, D))

        assert score.points == 8.5
        assert [p.points for p in score.picks] == [2.5, 6.0, 0.0]
        assert score.correct_picks == 2
        assert not score.is_perfect_podium
        assert score.perfect_podium_bonus == 0.0

    def test_perfect_podium_doubles_total(self):
        score = calculate_bet_points(self.picks, podium_of(A, B, C))

        assert score.total_before_bonus == 12.5
        assert score.points == 25.0
        assert score.is_perfect_podium
        assert score.perfect_podium_bonus == 12.5

    def test_all_wrong_scores_zero(self):
        score = calculate_bet_points(self.picks, podium_of(D, C, B))
        assert score.points == 0.0
        assert score.correct_picks == 0

    def test_two_picks_cannot_be_perfect(self):
        score = calculate_bet_points(self.picks[:2], podium_of(A, B, C))
        assert score.points == 8.5
        assert not score.is_perfect_podium

    def test_minimum_points_per_correct_pick(self):
        params = ScoringParams(min_points_per_correct_pick=2.0)
        score = calculate_bet_points([pick("first", A, 1.1)], podium_of(A, B, C), params)
        assert score.points == 2.0

    def test_points_are_rounded(self):
        score = calculate_bet_points([pick("third", C, 3.333, True)], podium_of(A, B, C))
        assert score.points == 6.67

    def test_best_odds_guaranteed_uses_higher_final_odd(self):
        params = ScoringParams(best_odds_guaranteed=True)
        final_odds = {A: {"first": 3.1}, B: {"second": 2.0}, C: {"third": 9.0}}

        score = calculate_bet_points(self.picks, podium_of(A, B, D), params, final_odds)

        by_position = {p.position: p for p in score.picks}
        assert by_position["first"].points == 3.1
        assert by_position["first"].used_best_odds
        # final odd lower than at bet: keep the bet odd
        assert by_position["second"].points == 6.0
        assert not by_position["second"].used_best_odds
        # wrong picks never benefit
        assert by_position["third"].points == 0.0
        assert not by_position["third"].used_best_odds
        assert score.points == 9.1

    def test_final_odds_ignored_without_guarantee(self):
        final_odds = {A: {"first": 3.1}}
        score = calculate_bet_points(self.picks, podium_of(A, B, D), final_odds=final_odds)
        assert score.points == 8.5
        assert score.picks[0].final_odd == 3.1


class TestSettlementEngine:
    """Week settlement against the store."""

    def seed_finalized_week(self, store):
        return store.seed_week(
            WEEK_START,
            WEEK_END,
            2026,
            42,
            status=WeekStatus.FINALIZED,
            podium=(A, B, D),
        )

    def seed_bets(self, store, week):
        partial_user, perfect_user, losing_user = (store.add_user() for _ in range(3))
        bets = {
            "partial": store.add_bet(partial_user.id, week.id, REFERENCE_PICKS),
            "perfect": store.add_bet(
                perfect_user.id,
                week.id,
                [("first", A, 2.0, False), ("second", B, 3.0, False), ("third", D, 5.0, False)],
            ),
            "lost": store.add_bet(
                losing_user.id,
                week.id,
                [("first", C, 4.0, True), ("second", A, 2.2, False)],
            ),
        }
        return bets

    @pytest.mark.asyncio
    async def test_settles_bets_and_rankings(self, store, notifier, now):
        week = self.seed_finalized_week(store)
        bets = self.seed_bets(store, week)
        engine = SettlementEngine(store, notifier=notifier)

        result = await engine.finalize_week(week.id, now=now)

        assert result.processed_bets == 3
        assert result.won == 2
        assert result.lost == 1
        assert result.perfect_podiums == 1
        assert result.total_points_distributed == 8.5 + 20.0

        partial = bets["partial"]
        assert partial.status == BetStatus.WON
        assert partial.points_earned == 8.5
        assert partial.is_finalized
        assert [p.is_correct for p in partial.picks] == [True, True, False]

        assert bets["perfect"].points_earned == 20.0
        assert bets["lost"].status == BetStatus.LOST
        assert bets["lost"].points_earned == 0.0

        ranking = store.rankings[(partial.user_id, 10, 2026)]
        assert ranking.total_points == 8.5
        assert ranking.bets_placed == 1
        assert ranking.bets_won == 1
        assert ranking.boosts_used == 1
        assert store.rankings[(bets["perfect"].user_id, 10, 2026)].perfect_bets == 1
        assert store.rankings[(bets["lost"].user_id, 10, 2026)].bets_won == 0

        assert week.settled_at == now
        assert store.commits == 1
        assert len(notifier.settled) == 3
        assert notifier.settled[0]["points_earned"] == 8.5

    @pytest.mark.asyncio
    async def test_points_accumulate_on_existing_ranking(self, store, now):
        week = self.seed_finalized_week(store)
        bets = self.seed_bets(store, week)
        user_id = bets["partial"].user_id
        store.seed_ranking(user_id, 10, 2026, points=11.25, rank=4)

        await SettlementEngine(store).finalize_week(week.id, now=now)

        ranking = store.rankings[(user_id, 10, 2026)]
        assert ranking.total_points == 19.75
        assert ranking.bets_placed == 2
        assert ranking.rank == 4

    @pytest.mark.asyncio
    async def test_iso_week_one_in_december_ranks_in_december(self, store, now):
        """2024-12-30 starts ISO 2025-W01; its points belong to December 2024."""
        week = store.seed_week(
            datetime(2024, 12, 30, tzinfo=UTC),
            datetime(2025, 1, 5, 23, 59, 59, 999999, tzinfo=UTC),
            2025,
            1,
            status=WeekStatus.FINALIZED,
            podium=(A, B, D),
        )
        user = store.add_user()
        store.add_bet(user.id, week.id, [("first", A, 2.5, False)])

        await SettlementEngine(store).finalize_week(week.id, now=now)

        assert list(store.rankings) == [(user.id, 12, 2024)]
        assert store.rankings[(user.id, 12, 2024)].total_points == 2.5

    @pytest.mark.asyncio
    async def test_second_settlement_is_rejected(self, store, now):
        week = self.seed_finalized_week(store)
        bets = self.seed_bets(store, week)
        engine = SettlementEngine(store)
        await engine.finalize_week(week.id, now=now)

        with pytest.raises(InvalidTransition):
            await engine.finalize_week(week.id, now=now + timedelta(minutes=5))

        assert store.rankings[(bets["partial"].user_id, 10, 2026)].total_points == 8.5
        assert week.settled_at == now

    @pytest.mark.asyncio
    async def test_open_week_cannot_be_settled(self, store, now, open_week):
        with pytest.raises(InvalidTransition):
            await SettlementEngine(store).finalize_week(open_week.id, now=now)
        assert open_week.settled_at is None

    @pytest.mark.asyncio
    async def test_unknown_week(self, store, now):
        with pytest.raises(NotFound):
            await SettlementEngine(store).finalize_week(999, now=now)

    @pytest.mark.asyncio
    async def test_best_odds_guaranteed_reads_final_odds(self, store, now):
        week = self.seed_finalized_week(store)
        user = store.add_user()
        bet = store.add_bet(user.id, week.id, [("first", A, 2.5, False)])
        await store.replace_odds(
            week.id,
            [
                CompetitorOdds(
                    competitor_id=A,
                    betting_week_id=week.id,
                    odd_first=4.0,
                    odd_second=3.0,
                    odd_third=2.5,
                    probability=0.5,
                    form_factor=1.0,
                    calculated_at=now,
                    odds_metadata=None,
                )
            ],
        )
        engine = SettlementEngine(store, ScoringParams(best_odds_guaranteed=True))

        await engine.finalize_week(week.id, now=now)

        assert bet.points_earned == 4.0
        assert bet.picks[0].used_best_odds
        assert bet.picks[0].final_odd == 4.0

    @pytest.mark.asyncio
    async def test_notification_failures_do_not_undo_settlement(self, store, now):
        week = self.seed_finalized_week(store)
        self.seed_bets(store, week)
        engine = SettlementEngine(store, notifier=RecordingNotifier(fail=True))

        result = await engine.finalize_week(week.id, now=now)

        assert result.processed_bets == 3
        assert week.settled_at == now


class TestVoidSettlement:
    """Cancelled and calibration weeks."""

    @pytest.mark.asyncio
    async def test_cancelled_week_voids_bets(self, store, now, open_week):
        open_week.status = WeekStatus.CANCELLED.value
        user = store.add_user()
        bet = store.add_bet(user.id, open_week.id, REFERENCE_PICKS)

        result = await SettlementEngine(store).finalize_week(open_week.id, now=now)

        assert result.voided == 1
        assert result.won == 0
        assert bet.status == BetStatus.VOID
        assert bet.points_earned == 0.0
        assert bet.is_finalized
        assert all(p.is_correct is None and p.points_earned == 0.0 for p in bet.picks)
        assert store.rankings == {}
        assert store.streaks == {}
        assert open_week.settled_at == now

    @pytest.mark.asyncio
    async def test_calibration_week_without_podium_is_void(self, store, now):
        week = store.seed_week(
            WEEK_START, WEEK_END, 2026, 42, status=WeekStatus.FINALIZED, is_calibration=True
        )
        user = store.add_user()
        bet = store.add_bet(user.id, week.id, REFERENCE_PICKS)

        assert SettlementEngine.is_void_week(week)
        await SettlementEngine(store).finalize_week(week.id, now=now)

        assert bet.status == BetStatus.VOID

    @pytest.mark.asyncio
    async def test_regular_finalized_week_cannot_be_voided(self, store, now):
        week = store.seed_week(
            WEEK_START, WEEK_END, 2026, 42, status=WeekStatus.FINALIZED, podium=(A, B, C)
        )
        with pytest.raises(InvalidTransition):
            await SettlementEngine(store).void_week(week.id, now=now)

    @pytest.mark.asyncio
    async def test_voided_week_is_not_voided_twice(self, store, now, open_week):
        open_week.status = WeekStatus.CANCELLED.value
        engine = SettlementEngine(store)
        await engine.void_week(open_week.id, now=now)

        with pytest.raises(InvalidTransition):
            await engine.void_week(open_week.id, now=now)


class TestStreaks:
    """Participation and win streaks updated by settlement."""

    @pytest.mark.asyncio
    async def test_win_streak_grows_then_resets(self, store, now):
        user = store.add_user()
        engine = SettlementEngine(store)

        # win, win, loss
        for offset, first_pick in enumerate([A, A, C]):
            start = WEEK_START + timedelta(weeks=offset)
            week = store.seed_week(
                start,
                start + timedelta(days=7) - timedelta(microseconds=1),
                2026,
                42 + offset,
                status=WeekStatus.FINALIZED,
                podium=(A, B, D),
            )
            store.add_bet(user.id, week.id, [("first", first_pick, 2.0, False)])
            await engine.finalize_week(week.id, now=now)

        streak = store.streaks[user.id]
        assert streak.current_monthly_streak == 3
        assert streak.best_monthly_streak == 3
        assert streak.current_win_streak == 0
        assert streak.best_win_streak == 2


class TestRankings:
    """Monthly rank recalculation and weekly snapshots."""

    def seed_rankings(self, store):
        first, second, third = (store.add_user() for _ in range(3))
        store.seed_ranking(first.id, 10, 2026, points=30.0)
        store.seed_ranking(second.id, 10, 2026, points=50.0)
        store.seed_ranking(third.id, 10, 2026, points=30.0)
        store.seed_ranking(first.id, 9, 2026, points=99.0, rank=1)
        return first, second, third

    @pytest.mark.asyncio
    async def test_ranks_by_points_then_user_id(self, store, notifier):
        first, second, third = self.seed_rankings(store)

        ordered = await SettlementEngine(store, notifier=notifier).recalculate_ranks(10, 2026)

        assert [r.user_id for r in ordered] == [second.id, first.id, third.id]
        assert [r.rank for r in ordered] == [1, 2, 3]
        assert all(r.previous_rank is None for r in ordered)
        assert store.rankings[(first.id, 9, 2026)].rank == 1
        assert len(notifier.rank_updates[0][2]) == 3

    @pytest.mark.asyncio
    async def test_rerun_keeps_ranks_and_records_previous(self, store, notifier):
        self.seed_rankings(store)
        engine = SettlementEngine(store, notifier=notifier)
        first_run = [(r.user_id, r.rank) for r in await engine.recalculate_ranks(10, 2026)]

        second = await engine.recalculate_ranks(10, 2026)

        assert [(r.user_id, r.rank) for r in second] == first_run
        assert all(r.previous_rank == r.rank for r in second)
        assert notifier.rank_updates[1][2] == []

    @pytest.mark.asyncio
    async def test_rank_moves_after_settlement(self, store):
        first, second, _ = self.seed_rankings(store)
        engine = SettlementEngine(store)
        await engine.recalculate_ranks(10, 2026)

        store.rankings[(first.id, 10, 2026)].total_points += 25.0
        await engine.recalculate_ranks(10, 2026)

        moved = store.rankings[(first.id, 10, 2026)]
        assert (moved.rank, moved.previous_rank) == (1, 2)
        assert store.rankings[(second.id, 10, 2026)].rank == 2

    @pytest.mark.asyncio
    async def test_snapshot_copies_rank(self, store):
        self.seed_rankings(store)
        engine = SettlementEngine(store)
        await engine.recalculate_ranks(10, 2026)

        count = await engine.snapshot_weekly_ranks(10, 2026)

        assert count == 3
        for (_, month, _), ranking in store.rankings.items():
            if month == 10:
                assert ranking.previous_week_rank == ranking.rank
