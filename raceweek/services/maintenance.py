"""Calendar maintenance for competitors and bettors.

Weekly: clear activity flags. Daily: rating history snapshot. Monthly, in
order: archive the season leaderboard, archive competitor stats, reset
boosts, reset monthly streaks, then soft-reset competitor ratings.
"""

from datetime import date, datetime, timezone

import structlog

from raceweek.models.domain import (
    Competitor,
    CompetitorEloSnapshot,
    CompetitorMonthlyStats,
    SeasonArchive,
)
from raceweek.services.collaborators import RatingChange, RatingInput, RatingUpdater, RatingValue
from raceweek.services.storage import BettingStore

logger = structlog.get_logger(__name__)

# Monthly soft reset: rating = 0.75 * rating + 0.25 * 1500, rd = min(rd + 50, 350)
SOFT_RESET_KEEP = 0.75
BASELINE_RATING = 1500.0
RD_INFLATION = 50.0
MAX_RD = 350.0
DEFAULT_VOLATILITY = 0.06


def previous_period(now: datetime) -> tuple[int, int]:
    """(month, year) of the month before now."""
    if now.month == 1:
        return 12, now.year - 1
    return now.month - 1, now.year


class CompetitorMaintenance:
    """Competitor-side resets, archives and rating application."""

    def __init__(self, store: BettingStore):
        self.store = store

    async def reset_weekly_activity(self) -> int:
        competitors = await self.store.list_competitors()
        for competitor in competitors:
            competitor.is_active_this_week = False
        await self.store.commit()
        logger.info("weekly_activity_reset", competitors=len(competitors))
        return len(competitors)

    async def reset_monthly_stats(self) -> int:
        """
        Soft reset every competitor for the new month.

        total_lifetime_races is never reset.
        """
        competitors = await self.store.list_competitors()
        for c in competitors:
            c.rating = round(SOFT_RESET_KEEP * c.rating + (1 - SOFT_RESET_KEEP) * BASELINE_RATING, 4)
            c.rd = min(c.rd + RD_INFLATION, MAX_RD)
            c.vol = DEFAULT_VOLATILITY
            c.race_count = 0
            c.current_month_race_count = 0
            c.win_streak = 0
        await self.store.commit()
        logger.info("monthly_stats_reset", competitors=len(competitors))
        return len(competitors)

    async def archive_monthly_stats(self, month: int, year: int) -> int:
        """Snapshot each competitor's end-of-month figures; rerunning overwrites."""
        rows = [
            CompetitorMonthlyStats(
                competitor_id=c.id,
                month=month,
                year=year,
                final_rating=c.rating,
                final_rd=c.rd,
                final_vol=c.vol,
                race_count=c.race_count,
                win_streak=c.win_streak,
            )
            for c in await self.store.list_competitors()
        ]
        count = await self.store.upsert_monthly_stats(rows)
        await self.store.commit()
        logger.info("monthly_stats_archived", month=month, year=year, competitors=count)
        return count

    async def snapshot_elo(self, snapshot_date: date | None = None) -> int:
        """One rating history point per competitor per day."""
        snapshot_date = snapshot_date or datetime.now(timezone.utc).date()
        rows = [
            CompetitorEloSnapshot(
                competitor_id=c.id,
                snapshot_date=snapshot_date,
                rating=c.rating,
                rd=c.rd,
                vol=c.vol,
                race_count=c.race_count,
            )
            for c in await self.store.list_competitors()
        ]
        count = await self.store.upsert_elo_snapshots(rows)
        await self.store.commit()
        logger.info("elo_snapshot_taken", snapshot_date=snapshot_date.isoformat(), competitors=count)
        return count

    async def apply_race_results(
        self, results: list[tuple[int, int]], updater: RatingUpdater
    ) -> list[RatingChange]:
        """
        Rate one race and write the new ratings.

        Args:
            results: (competitor_id, finishing rank) per participant
            updater: rating collaborator

        Participants get their race counters incremented, the weekly
        activity flag set and their win streak extended or cleared.
        """
        competitors: dict[int, Competitor] = {
            c.id: c for c in await self.store.list_competitors()
        }
        ranks = {cid: rank for cid, rank in results if cid in competitors}
        missing = [cid for cid, _ in results if cid not in competitors]
        if missing:
            logger.warning("race_results_unknown_competitors", competitor_ids=missing)

        inputs = [
            RatingInput(
                id=cid,
                rating=RatingValue(
                    value=competitors[cid].rating,
                    deviation=competitors[cid].rd,
                    volatility=competitors[cid].vol,
                ),
                rank=rank,
            )
            for cid, rank in ranks.items()
        ]
        changes = updater.update_ratings(inputs)

        for change in changes:
            c = competitors.get(change.id)
            if c is None:
                continue
            c.rating = change.new_rating.value
            c.rd = change.new_rating.deviation
            c.vol = change.new_rating.volatility

        for cid, rank in ranks.items():
            c = competitors[cid]
            c.race_count = (c.race_count or 0) + 1
            c.current_month_race_count = (c.current_month_race_count or 0) + 1
            c.total_lifetime_races = (c.total_lifetime_races or 0) + 1
            c.is_active_this_week = True
            c.win_streak = (c.win_streak or 0) + 1 if rank == 1 else 0

        await self.store.commit()
        logger.info("race_results_applied", participants=len(ranks), rated=len(changes))
        return changes


class BettorMaintenance:
    """Bettor-side monthly resets and the season archive."""

    def __init__(self, store: BettingStore):
        self.store = store

    async def reset_boost_availability(self) -> int:
        users = await self.store.list_users()
        reset = 0
        for user in users:
            if user.last_boost_used_month is not None or user.last_boost_used_year is not None:
                user.last_boost_used_month = None
                user.last_boost_used_year = None
                reset += 1
        await self.store.commit()
        logger.info("boost_availability_reset", users=len(users), reset=reset)
        return reset

    async def reset_monthly_streaks(self) -> int:
        """Zero the monthly participation streak; win streaks carry over."""
        streaks = await self.store.list_streaks()
        for streak in streaks:
            streak.current_monthly_streak = 0
        await self.store.commit()
        logger.info("monthly_streaks_reset", users=len(streaks))
        return len(streaks)

    async def archive_season(self, month: int, year: int, now: datetime | None = None) -> SeasonArchive:
        """Freeze a month's leaderboard. Archiving the same month twice returns the first archive."""
        existing = await self.store.get_season_archive(month, year)
        if existing is not None:
            logger.info("season_already_archived", month=month, year=year)
            return existing

        rankings = await self.store.list_rankings(month, year)
        ordered = sorted(
            rankings,
            key=lambda r: (r.rank is None, r.rank or 0, -(r.total_points or 0.0), r.user_id),
        )
        snapshot = [
            {
                "user_id": r.user_id,
                "rank": r.rank,
                "total_points": r.total_points,
                "bets_placed": r.bets_placed,
                "bets_won": r.bets_won,
                "perfect_bets": r.perfect_bets,
            }
            for r in ordered
        ]

        archive = await self.store.add_season_archive(
            SeasonArchive(
                month=month,
                year=year,
                champion_user_id=ordered[0].user_id if ordered else None,
                rankings=snapshot,
                archived_at=now or datetime.now(timezone.utc),
            )
        )
        await self.store.commit()
        logger.info(
            "season_archived",
            month=month,
            year=year,
            bettors=len(snapshot),
            champion_user_id=archive.champion_user_id,
        )
        return archive
