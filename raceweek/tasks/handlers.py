"""What each scheduled job does.

Handlers take a JobContext (one storage session, one clock reading) and
return a small dict of counts for the audit log. They raise on failure; the
orchestrator decides about retries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from raceweek.config.betting import BettingConfig
from raceweek.models.domain import BettingWeek, WeekStatus
from raceweek.services.betting import (
    EligibilityFilter,
    OddsCalculator,
    PodiumSelector,
    SettlementEngine,
    WeekLifecycle,
)
from raceweek.services.collaborators import LoggingNotifier, Notifier
from raceweek.services.errors import BettingError, InsufficientData
from raceweek.services.maintenance import BettorMaintenance, CompetitorMaintenance, previous_period
from raceweek.services.storage import BettingStore

logger = structlog.get_logger(__name__)


@dataclass
class JobContext:
    """Services wired to one store for one job attempt."""

    store: BettingStore
    config: BettingConfig
    now: datetime
    notifier: Notifier = field(default_factory=LoggingNotifier)

    def __post_init__(self):
        self.eligibility = EligibilityFilter(self.config.eligibility, self.store.count_races)
        self.odds = OddsCalculator(self.store, self.eligibility, self.config.odds)
        self.podium = PodiumSelector(self.eligibility, self.config.podium)
        self.weeks = WeekLifecycle(
            self.store, self.config.calibration, odds=self.odds, podium=self.podium
        )
        self.settlement = SettlementEngine(self.store, self.config.scoring, self.notifier)
        self.competitors = CompetitorMaintenance(self.store)
        self.bettors = BettorMaintenance(self.store)


async def create_week(ctx: JobContext) -> dict[str, Any]:
    week = await ctx.weeks.create(ctx.now)
    return {"records": 1, "week_id": week.id, "week": week.label, "status": week.status}


async def reset_weekly_activity(ctx: JobContext) -> dict[str, Any]:
    return {"records": await ctx.competitors.reset_weekly_activity()}


async def recalculate_odds(ctx: JobContext) -> dict[str, Any]:
    week = await ctx.weeks.get_current_week(ctx.now)
    if week is None or week.status not in (WeekStatus.OPEN, WeekStatus.CALIBRATION):
        logger.info("no_open_week_for_odds", week_id=week.id if week else None)
        return {"records": 0}
    odds = await ctx.odds.calculate_odds_for_week(week.id, now=ctx.now)
    return {"records": len(odds), "week_id": week.id}


async def close_week(ctx: JobContext) -> dict[str, Any]:
    """Price the week one last time, then close it."""
    week = await ctx.weeks.get_current_week(ctx.now)
    if week is None:
        logger.warning("no_current_week_to_close")
        return {"records": 0}

    priced = 0
    if week.status in (WeekStatus.OPEN, WeekStatus.CALIBRATION):
        try:
            priced = len(await ctx.odds.calculate_odds_for_week(week.id, now=ctx.now))
        except BettingError as e:
            logger.warning(
                "final_odds_failed", week_id=week.id, error=e.message, error_kind=e.kind.value
            )

    await ctx.weeks.close(week.id)
    return {"records": 1, "week_id": week.id, "odds_priced": priced}


async def _settle(ctx: JobContext, week: BettingWeek) -> dict[str, Any]:
    result = await ctx.settlement.finalize_week(week.id, now=ctx.now)
    return result.to_dict()


async def finalize_week(ctx: JobContext) -> dict[str, Any]:
    """
    Podium, then finalize and settle, or cancel and void.

    Terminal weeks left unsettled by an earlier failed run are settled first.
    Every read that decides the outcome happens before the first commit.
    """
    leftovers = await ctx.store.list_unsettled_weeks()
    closed = [w for w in await ctx.store.list_active_weeks() if w.status == WeekStatus.CLOSED]
    week = max(closed, key=lambda w: w.start_date) if closed else None

    podium, cancel_reason = None, None
    if week is not None and not week.is_calibration_week:
        try:
            podium = await ctx.weeks.determine_podium(week, now=ctx.now)
        except InsufficientData as e:
            cancel_reason = e.message

    settled = []
    for leftover in leftovers:
        logger.info("settling_leftover_week", week_id=leftover.id, status=leftover.status)
        settled.append(await _settle(ctx, leftover))

    if week is None:
        logger.warning("no_closed_week_to_finalize")
        return {"records": sum(s["processed_bets"] for s in settled), "settled": settled}

    if week.is_calibration_week:
        await ctx.weeks.complete_calibration(week.id, now=ctx.now)
    elif podium is None:
        await ctx.weeks.cancel(week.id, reason=cancel_reason, now=ctx.now)
    else:
        await ctx.weeks.finalize(week.id, podium, now=ctx.now)

    settled.append(await _settle(ctx, week))
    return {
        "records": sum(s["processed_bets"] for s in settled),
        "week_id": week.id,
        "status": week.status,
        "settled": settled,
    }


async def _ranking_periods(ctx: JobContext) -> list[tuple[int, int]]:
    """The current month plus the month of the latest week, if different."""
    periods = [(ctx.now.month, ctx.now.year)]
    latest = await ctx.store.get_latest_week()
    if latest is not None and latest.ranking_period not in periods:
        periods.insert(0, latest.ranking_period)
    return periods


async def recalculate_rankings(ctx: JobContext) -> dict[str, Any]:
    records = 0
    for month, year in await _ranking_periods(ctx):
        records += len(await ctx.settlement.recalculate_ranks(month, year))
    return {"records": records}


async def snapshot_ranks(ctx: JobContext) -> dict[str, Any]:
    records = 0
    for month, year in await _ranking_periods(ctx):
        records += await ctx.settlement.snapshot_weekly_ranks(month, year)
    return {"records": records}


async def elo_snapshot(ctx: JobContext) -> dict[str, Any]:
    return {"records": await ctx.competitors.snapshot_elo(ctx.now.date())}


async def archive_season(ctx: JobContext) -> dict[str, Any]:
    month, year = previous_period(ctx.now)
    archive = await ctx.bettors.archive_season(month, year, now=ctx.now)
    return {"records": len(archive.rankings), "month": month, "year": year}


async def archive_monthly_stats(ctx: JobContext) -> dict[str, Any]:
    month, year = previous_period(ctx.now)
    return {
        "records": await ctx.competitors.archive_monthly_stats(month, year),
        "month": month,
        "year": year,
    }


async def reset_boost_availability(ctx: JobContext) -> dict[str, Any]:
    return {"records": await ctx.bettors.reset_boost_availability()}


async def reset_monthly_streaks(ctx: JobContext) -> dict[str, Any]:
    return {"records": await ctx.bettors.reset_monthly_streaks()}


async def reset_monthly_stats(ctx: JobContext) -> dict[str, Any]:
    return {"records": await ctx.competitors.reset_monthly_stats()}
