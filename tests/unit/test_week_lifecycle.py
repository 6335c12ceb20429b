"""Unit tests for the betting week state machine and podium selection."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from raceweek.config.betting import (
    CalibrationConfig,
    CalibrationMode,
    PodiumConfig,
    PodiumScoringMethod,
)
from raceweek.models.domain import WeekStatus
from raceweek.services.betting import (
    EligibilityFilter,
    OddsCalculator,
    PodiumSelector,
    WeekLifecycle,
)
from raceweek.services.betting.weeks import iso_week_bounds, iso_week_key
from raceweek.services.errors import (
    InsufficientData,
    InvalidPodium,
    InvalidTransition,
    NotFound,
)
from tests.conftest import UTC, WEEK_END, WEEK_START

W41_START = datetime(2026, 10, 5, tzinfo=UTC)
W41_END = datetime(2026, 10, 11, 23, 59, 59, 999999, tzinfo=UTC)


def make_lifecycle(store, config, calibration=None) -> WeekLifecycle:
    eligibility = EligibilityFilter(config.eligibility, store.count_races)
    return WeekLifecycle(
        store,
        calibration or config.calibration,
        odds=OddsCalculator(store, eligibility, config.odds),
        podium=PodiumSelector(eligibility, config.podium),
    )


def seed_settled_w41(store):
    return store.seed_week(
        W41_START,
        W41_END,
        2026,
        41,
        status=WeekStatus.FINALIZED,
        is_calibration=True,
        settled_at=W41_END,
    )


class TestIsoWeek:
    """ISO week helpers."""

    def test_bounds_cover_monday_to_sunday(self, now):
        start, end = iso_week_bounds(now)
        assert start == WEEK_START
        assert end == WEEK_END

    def test_sunday_night_belongs_to_same_week(self):
        start, _ = iso_week_bounds(datetime(2026, 10, 18, 23, 59, tzinfo=UTC))
        assert start == WEEK_START

    def test_iso_year_differs_from_calendar_year(self):
        # 1 January 2027 is a Friday in ISO week 2026-W53
        assert iso_week_key(datetime(2027, 1, 1, tzinfo=UTC)) == (2026, 53)

    def test_non_utc_input_is_normalised(self):
        plus_two = timezone(timedelta(hours=2))
        start, _ = iso_week_bounds(datetime(2026, 10, 19, 1, 0, tzinfo=plus_two))
        assert start == WEEK_START


class TestWeekCreation:
    """create()"""

    @pytest.mark.asyncio
    async def test_mid_month_week_opens(self, store, config, now):
        seed_settled_w41(store)

        week = await make_lifecycle(store, config).create(now)

        assert week.status == WeekStatus.OPEN
        assert not week.is_calibration_week
        assert week.label == "2026-W42"
        assert (week.start_date, week.end_date) == (WEEK_START, WEEK_END)
        assert week.month == 10
        assert week.season_week_number == 1
        assert week.settled_at is None

    @pytest.mark.asyncio
    async def test_first_week_ever_is_forced_calibration(self, store, config, now):
        week = await make_lifecycle(store, config).create(now)

        assert week.status == WeekStatus.CALIBRATION
        assert week.is_calibration_week
        assert week.season_week_number == 0

    @pytest.mark.asyncio
    async def test_forcing_can_be_disabled(self, store, config, now):
        calibration = CalibrationConfig(force_first_week=False)
        week = await make_lifecycle(store, config, calibration).create(now)
        assert week.status == WeekStatus.OPEN

    @pytest.mark.asyncio
    async def test_first_week_of_month_is_calibration(self, store, config):
        store.seed_week(
            datetime(2026, 9, 28, tzinfo=UTC),
            datetime(2026, 10, 4, 23, 59, 59, tzinfo=UTC),
            2026,
            40,
            status=WeekStatus.FINALIZED,
            settled_at=datetime(2026, 10, 4, 23, 59, 59, tzinfo=UTC),
        )

        week = await make_lifecycle(store, config).create(datetime(2026, 10, 7, 9, tzinfo=UTC))

        assert week.label == "2026-W41"
        assert week.status == WeekStatus.CALIBRATION
        assert week.season_week_number == 0

    @pytest.mark.asyncio
    async def test_explicit_calibration_weeks(self, store, config, now):
        seed_settled_w41(store)
        calibration = CalibrationConfig(mode=CalibrationMode.EXPLICIT, weeks=["2026-W42"])

        week = await make_lifecycle(store, config, calibration).create(now)
        assert week.is_calibration_week

    @pytest.mark.asyncio
    async def test_refuses_second_active_week(self, store, config, now, open_week):
        with pytest.raises(InvalidTransition) as exc:
            await make_lifecycle(store, config).create(now + timedelta(days=7))
        assert exc.value.context["active_week_ids"] == [open_week.id]

    @pytest.mark.asyncio
    async def test_refuses_existing_iso_week(self, store, config, now, open_week):
        open_week.status = WeekStatus.CANCELLED.value

        with pytest.raises(InvalidTransition):
            await make_lifecycle(store, config).create(now)
        assert len(store.weeks) == 1

    @pytest.mark.asyncio
    async def test_expired_calibration_week_is_finalized_first(self, store, config, now):
        calibration_week = store.seed_week(
            W41_START, W41_END, 2026, 41, status=WeekStatus.CALIBRATION, is_calibration=True
        )

        week = await make_lifecycle(store, config).create(now)

        assert calibration_week.status == WeekStatus.FINALIZED
        assert calibration_week.finalized_at == now
        assert not calibration_week.has_podium
        assert week.status == WeekStatus.OPEN

    @pytest.mark.asyncio
    async def test_season_week_number_skips_calibration_weeks(self, store, config, now):
        seed_settled_w41(store)
        store.seed_week(
            datetime(2026, 9, 21, tzinfo=UTC),
            datetime(2026, 9, 27, 23, 59, 59, tzinfo=UTC),
            2026,
            39,
            status=WeekStatus.FINALIZED,
            settled_at=now,
        )

        week = await make_lifecycle(store, config).create(now)
        assert week.season_week_number == 2

    @pytest.mark.asyncio
    async def test_initial_odds_are_priced(self, store, config, now, seed_field):
        seed_settled_w41(store)
        seed_field(now, [(1700, 50), (1600, 50), (1500, 50)])

        week = await make_lifecycle(store, config).create(now)

        assert len(await store.list_odds(week.id)) == 3

    @pytest.mark.asyncio
    async def test_unpriceable_week_is_still_created(self, store, config, now):
        seed_settled_w41(store)

        week = await make_lifecycle(store, config).create(now)

        assert week.status == WeekStatus.OPEN
        assert store.odds == {}
        assert store.rollbacks == 0

    @pytest.mark.asyncio
    async def test_unexpected_odds_failure_rolls_back_but_keeps_week(self, store, config, now):
        class ExplodingOdds:
            async def calculate_odds_for_week(self, week_id, now=None):
                raise RuntimeError("connection reset")

        seed_settled_w41(store)
        lifecycle = WeekLifecycle(store, config.calibration, odds=ExplodingOdds())

        week = await lifecycle.create(now)

        assert store.rollbacks == 1
        assert week is store.weeks[week.id]
        assert week.status == WeekStatus.OPEN


class TestWeekTransitions:
    """close, finalize, complete_calibration and cancel."""

    @pytest.mark.asyncio
    async def test_close_open_week(self, store, config, open_week):
        week = await make_lifecycle(store, config).close(open_week.id)
        assert week.status == WeekStatus.CLOSED
        assert store.commits == 1

    @pytest.mark.asyncio
    async def test_close_twice_fails(self, store, config, open_week):
        lifecycle = make_lifecycle(store, config)
        await lifecycle.close(open_week.id)

        with pytest.raises(InvalidTransition) as exc:
            await lifecycle.close(open_week.id)
        assert exc.value.context["action"] == "close"

    @pytest.mark.asyncio
    async def test_unknown_week(self, store, config):
        with pytest.raises(NotFound):
            await make_lifecycle(store, config).close(12345)

    @pytest.mark.asyncio
    async def test_finalize_closed_week(self, store, config, now, open_week):
        lifecycle = make_lifecycle(store, config)
        await lifecycle.close(open_week.id)

        week = await lifecycle.finalize(open_week.id, [3, 1, 2], now=now)

        assert week.status == WeekStatus.FINALIZED
        assert week.podium == {"first": 3, "second": 1, "third": 2}
        assert week.finalized_at == now

    @pytest.mark.asyncio
    async def test_finalize_requires_closed_week(self, store, config, open_week):
        with pytest.raises(InvalidTransition):
            await make_lifecycle(store, config).finalize(open_week.id, [1, 2, 3])
        assert open_week.status == WeekStatus.OPEN

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "podium",
        [[1, 2], [1, 2, 3, 4], [1, 1, 2], [1, None, 2], []],
    )
    async def test_malformed_podium_is_rejected_first(self, store, config, open_week, podium):
        """Podium validation runs before the status check."""
        with pytest.raises(InvalidPodium):
            await make_lifecycle(store, config).finalize(open_week.id, podium)
        assert open_week.status == WeekStatus.OPEN
        assert store.commits == 0

    @pytest.mark.asyncio
    async def test_complete_calibration(self, store, config, now):
        week = store.seed_week(
            WEEK_START, WEEK_END, 2026, 42, status=WeekStatus.CLOSED, is_calibration=True
        )

        await make_lifecycle(store, config).complete_calibration(week.id, now=now)

        assert week.status == WeekStatus.FINALIZED
        assert not week.has_podium

    @pytest.mark.asyncio
    async def test_complete_calibration_rejects_regular_week(self, store, config, open_week):
        with pytest.raises(InvalidTransition):
            await make_lifecycle(store, config).complete_calibration(open_week.id)

    @pytest.mark.asyncio
    async def test_cancel_open_week(self, store, config, now, open_week):
        week = await make_lifecycle(store, config).cancel(open_week.id, "no racers", now=now)

        assert week.status == WeekStatus.CANCELLED
        assert week.finalized_at == now

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [WeekStatus.FINALIZED, WeekStatus.CANCELLED])
    async def test_terminal_weeks_cannot_be_cancelled(self, store, config, open_week, status):
        open_week.status = status.value

        with pytest.raises(InvalidTransition):
            await make_lifecycle(store, config).cancel(open_week.id, "too late")
        assert open_week.status == status


class TestCurrentWeek:
    """get_current_week()"""

    @pytest.mark.asyncio
    async def test_week_covering_now(self, store, config, now, open_week):
        assert await make_lifecycle(store, config).get_current_week(now) is open_week

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_active_week(self, store, config, now, open_week):
        current = await make_lifecycle(store, config).get_current_week(now + timedelta(days=9))
        assert current is open_week

    @pytest.mark.asyncio
    async def test_no_active_week(self, store, config, now, open_week):
        open_week.status = WeekStatus.FINALIZED.value
        assert await make_lifecycle(store, config).get_current_week(now) is None


class TestPodiumSelector:
    """Deterministic podium ordering."""

    def make_selector(self, store, config, podium_config=None) -> PodiumSelector:
        eligibility = EligibilityFilter(config.eligibility, store.count_races)
        return PodiumSelector(eligibility, podium_config or config.podium)

    @pytest.mark.asyncio
    async def test_orders_by_conservative_score(self, store, config, now, seed_field):
        steady, volatile, strong, weak = seed_field(
            now, [(1700, 50), (1900, 200), (1800, 50), (1400, 50)]
        )

        podium = await self.make_selector(store, config).select(
            await store.list_competitors(), now
        )

        assert [c.id for c in podium] == [strong.id, steady.id, volatile.id]

    @pytest.mark.asyncio
    async def test_score_tie_broken_by_rating_then_id(self, store, config, now, seed_field):
        # conservative score 1500 for the first four
        a, b, c, twin, _ = seed_field(
            now, [(1600, 50), (1700, 100), (1500, 0), (1600, 50), (1300, 50)]
        )

        podium = await self.make_selector(store, config).select(
            await store.list_competitors(), now
        )

        assert [p.id for p in podium] == [b.id, a.id, twin.id]

    @pytest.mark.asyncio
    async def test_rating_method_breaks_ties_on_rd(self, store, config, now, seed_field):
        sure, unsure, third = seed_field(now, [(1600, 40), (1600, 80), (1550, 10)])
        selector = self.make_selector(
            store, config, PodiumConfig(scoring_method=PodiumScoringMethod.RATING)
        )

        podium = await selector.select([unsure, third, sure], now)

        assert [p.id for p in podium] == [sure.id, unsure.id, third.id]

    @pytest.mark.asyncio
    async def test_third_tie_break_is_total_race_count(self, store, config, now, seed_field):
        fewer, more, last = seed_field(now, [(1600, 50), (1600, 50), (1500, 50)])
        fewer.race_count, more.race_count = 3, 9
        # equal this month, so only the overall count can separate them
        fewer.current_month_race_count = more.current_month_race_count = 5

        podium = await self.make_selector(store, config).select(
            await store.list_competitors(), now
        )

        assert [p.id for p in podium] == [more.id, fewer.id, last.id]

    @pytest.mark.asyncio
    async def test_race_count_method(self, store, config, now, seed_field):
        busy, idle, mid = seed_field(now, [(1400, 50), (1900, 50), (1600, 50)])
        busy.current_month_race_count = 12
        idle.current_month_race_count = 2
        mid.current_month_race_count = 6
        selector = self.make_selector(
            store, config, PodiumConfig(scoring_method=PodiumScoringMethod.RACE_COUNT)
        )

        podium = await selector.select(await store.list_competitors(), now)

        assert [p.id for p in podium] == [busy.id, mid.id, idle.id]

    @pytest.mark.asyncio
    async def test_inactive_and_ineligible_are_excluded(self, store, config, now, seed_field):
        first, benched, rookie, second, third = seed_field(
            now, [(1800, 50), (1900, 50), (2000, 50), (1700, 50), (1600, 50)]
        )
        benched.is_active_this_week = False
        rookie.total_lifetime_races = 1

        podium = await self.make_selector(store, config).select(
            await store.list_competitors(), now
        )

        assert [p.id for p in podium] == [first.id, second.id, third.id]

    @pytest.mark.asyncio
    async def test_fewer_than_three_candidates(self, store, config, now, seed_field):
        seed_field(now, [(1800, 50), (1700, 50)])

        with pytest.raises(InsufficientData):
            await self.make_selector(store, config).select(await store.list_competitors(), now)

    @pytest.mark.asyncio
    async def test_input_order_does_not_matter(self, store, config, now, seed_field):
        racers = seed_field(now, [(1600, 50)] * 4 + [(1650, 75)] * 2 + [(1500, 10)])
        selector = self.make_selector(store, config)
        expected = [c.id for c in await selector.select(racers, now)]

        shuffled = list(racers)
        random.Random(42).shuffle(shuffled)

        assert [c.id for c in await selector.select(shuffled, now)] == expected

    @pytest.mark.asyncio
    async def test_lifecycle_determines_podium_at_week_end(
        self, store, config, open_week, seed_field
    ):
        after_week = WEEK_END + timedelta(days=5)
        seed_field(after_week, [(1800, 50), (1700, 50), (1600, 50)])

        with pytest.raises(InsufficientData):
            await make_lifecycle(store, config).determine_podium(open_week, now=after_week)

        seed_field(WEEK_END, [(1500, 50), (1450, 50), (1400, 50)])
        podium = await make_lifecycle(store, config).determine_podium(open_week, now=after_week)
        assert len(podium) == 3
