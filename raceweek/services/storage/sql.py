"""PostgreSQL implementation of the betting store."""

from datetime import datetime

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from raceweek.models.domain import (
    ACTIVE_WEEK_STATUSES,
    TERMINAL_WEEK_STATUSES,
    Bet,
    BettingWeek,
    BettorRanking,
    Competitor,
    CompetitorEloSnapshot,
    CompetitorMonthlyStats,
    CompetitorOdds,
    JobRun,
    Race,
    RaceResult,
    SeasonArchive,
    User,
    UserStreak,
)

logger = structlog.get_logger(__name__)


class SqlBettingStore:
    """BettingStore backed by an AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Weeks
    # ------------------------------------------------------------------

    async def get_week(self, week_id: int) -> BettingWeek | None:
        return await self.session.get(BettingWeek, week_id)

    async def find_week(self, year: int, week_number: int) -> BettingWeek | None:
        result = await self.session.execute(
            select(BettingWeek).where(
                BettingWeek.year == year,
                BettingWeek.week_number == week_number,
            )
        )
        return result.scalar_one_or_none()

    async def list_active_weeks(self) -> list[BettingWeek]:
        result = await self.session.execute(
            select(BettingWeek)
            .where(BettingWeek.status.in_([s.value for s in ACTIVE_WEEK_STATUSES]))
            .order_by(BettingWeek.start_date.desc())
        )
        return list(result.scalars().all())

    async def count_weeks(self, calibration: bool | None = None) -> int:
        query = select(func.count(BettingWeek.id))
        if calibration is not None:
            query = query.where(BettingWeek.is_calibration_week == calibration)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def get_latest_week(self) -> BettingWeek | None:
        result = await self.session.execute(
            select(BettingWeek).order_by(BettingWeek.start_date.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_unsettled_weeks(self) -> list[BettingWeek]:
        """Terminal weeks whose bets were never settled."""
        result = await self.session.execute(
            select(BettingWeek)
            .where(
                BettingWeek.status.in_([s.value for s in TERMINAL_WEEK_STATUSES]),
                BettingWeek.settled_at.is_(None),
            )
            .order_by(BettingWeek.start_date)
        )
        return list(result.scalars().all())

    async def add_week(self, week: BettingWeek) -> BettingWeek:
        self.session.add(week)
        await self.session.flush()
        return week

    # ------------------------------------------------------------------
    # Competitors and race history
    # ------------------------------------------------------------------

    async def list_competitors(self) -> list[Competitor]:
        result = await self.session.execute(select(Competitor).order_by(Competitor.id))
        return list(result.scalars().all())

    async def count_races(self, competitor_id: int, since: datetime, until: datetime) -> int:
        result = await self.session.execute(
            select(func.count(RaceResult.id))
            .join(Race, Race.id == RaceResult.race_id)
            .where(
                RaceResult.competitor_id == competitor_id,
                Race.raced_at >= since,
                Race.raced_at <= until,
            )
        )
        return result.scalar_one()

    async def recent_ranks(self, competitor_id: int, limit: int) -> list[int]:
        result = await self.session.execute(
            select(RaceResult.rank)
            .join(Race, Race.id == RaceResult.race_id)
            .where(RaceResult.competitor_id == competitor_id)
            .order_by(Race.raced_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Odds
    # ------------------------------------------------------------------

    async def replace_odds(self, week_id: int, rows: list[CompetitorOdds]) -> list[CompetitorOdds]:
        """Upsert one row per competitor and drop rows for competitors no longer priced."""
        competitor_ids = [row.competitor_id for row in rows]

        await self.session.execute(
            delete(CompetitorOdds).where(
                CompetitorOdds.betting_week_id == week_id,
                CompetitorOdds.competitor_id.not_in(competitor_ids),
            )
        )

        for row in rows:
            values = {
                "odd_first": row.odd_first,
                "odd_second": row.odd_second,
                "odd_third": row.odd_third,
                "probability": row.probability,
                "form_factor": row.form_factor,
                "calculated_at": row.calculated_at,
                "metadata": row.odds_metadata,
            }
            stmt = insert(CompetitorOdds.__table__).values(
                competitor_id=row.competitor_id,
                betting_week_id=week_id,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_competitor_week_odds",
                set_=values,
            )
            await self.session.execute(stmt)

        result = await self.session.execute(
            select(CompetitorOdds)
            .where(CompetitorOdds.betting_week_id == week_id)
            .order_by(CompetitorOdds.competitor_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_odds(self, week_id: int) -> list[CompetitorOdds]:
        result = await self.session.execute(
            select(CompetitorOdds)
            .where(CompetitorOdds.betting_week_id == week_id)
            .order_by(CompetitorOdds.competitor_id)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Bets, rankings, users
    # ------------------------------------------------------------------

    async def list_bets(self, week_id: int, unsettled_only: bool = True) -> list[Bet]:
        query = (
            select(Bet)
            .options(selectinload(Bet.picks))
            .where(Bet.betting_week_id == week_id)
            .order_by(Bet.id)
        )
        if unsettled_only:
            query = query.where(Bet.is_finalized == False)  # noqa: E712
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_ranking(self, user_id: int, month: int, year: int) -> BettorRanking | None:
        result = await self.session.execute(
            select(BettorRanking).where(
                BettorRanking.user_id == user_id,
                BettorRanking.month == month,
                BettorRanking.year == year,
            )
        )
        return result.scalar_one_or_none()

    async def add_ranking(self, ranking: BettorRanking) -> BettorRanking:
        self.session.add(ranking)
        await self.session.flush()
        return ranking

    async def list_rankings(self, month: int, year: int) -> list[BettorRanking]:
        result = await self.session.execute(
            select(BettorRanking)
            .where(BettorRanking.month == month, BettorRanking.year == year)
            .order_by(BettorRanking.rank.asc().nulls_last(), BettorRanking.user_id)
        )
        return list(result.scalars().all())

    async def list_users(self) -> list[User]:
        result = await self.session.execute(select(User).order_by(User.id))
        return list(result.scalars().all())

    async def get_streak(self, user_id: int) -> UserStreak | None:
        result = await self.session.execute(
            select(UserStreak).where(UserStreak.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def add_streak(self, streak: UserStreak) -> UserStreak:
        self.session.add(streak)
        await self.session.flush()
        return streak

    async def list_streaks(self) -> list[UserStreak]:
        result = await self.session.execute(select(UserStreak).order_by(UserStreak.user_id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Archives and snapshots
    # ------------------------------------------------------------------

    async def upsert_monthly_stats(self, rows: list[CompetitorMonthlyStats]) -> int:
        for row in rows:
            values = {
                "final_rating": row.final_rating,
                "final_rd": row.final_rd,
                "final_vol": row.final_vol,
                "race_count": row.race_count,
                "win_streak": row.win_streak,
            }
            stmt = insert(CompetitorMonthlyStats).values(
                competitor_id=row.competitor_id,
                month=row.month,
                year=row.year,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_competitor_month",
                set_=values,
            )
            await self.session.execute(stmt)
        return len(rows)

    async def upsert_elo_snapshots(self, rows: list[CompetitorEloSnapshot]) -> int:
        for row in rows:
            values = {
                "rating": row.rating,
                "rd": row.rd,
                "vol": row.vol,
                "race_count": row.race_count,
            }
            stmt = insert(CompetitorEloSnapshot).values(
                competitor_id=row.competitor_id,
                snapshot_date=row.snapshot_date,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_elo_snapshot_day",
                set_=values,
            )
            await self.session.execute(stmt)
        return len(rows)

    async def get_season_archive(self, month: int, year: int) -> SeasonArchive | None:
        result = await self.session.execute(
            select(SeasonArchive).where(
                SeasonArchive.month == month,
                SeasonArchive.year == year,
            )
        )
        return result.scalar_one_or_none()

    async def add_season_archive(self, archive: SeasonArchive) -> SeasonArchive:
        self.session.add(archive)
        await self.session.flush()
        return archive

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def add_job_run(self, run: JobRun) -> JobRun:
        self.session.add(run)
        await self.session.flush()
        return run

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
