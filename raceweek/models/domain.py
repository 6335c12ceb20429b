"""Domain models for raceweek.

Competitors race, ratings update, each ISO week is a betting week whose
podium is bet on, and bettors are ranked per month. Statuses are stored as
strings; the str enums below are the allowed values.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from raceweek.models.base import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class WeekStatus(str, Enum):
    """BettingWeek lifecycle states."""
    CALIBRATION = "calibration"
    OPEN = "open"
    CLOSED = "closed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


ACTIVE_WEEK_STATUSES = (WeekStatus.CALIBRATION, WeekStatus.OPEN, WeekStatus.CLOSED)
TERMINAL_WEEK_STATUSES = (WeekStatus.FINALIZED, WeekStatus.CANCELLED)


class BetStatus(str, Enum):
    """Bet settlement states."""
    PENDING = "pending"
    WON = "won"      # at least one point earned
    LOST = "lost"
    VOID = "void"    # week cancelled or calibration; excluded from rankings


class PickPosition(str, Enum):
    """Podium positions a pick can target."""
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"


class Competitor(Base, TimestampMixin):
    """
    A racer whose weekly results feed odds and the podium.

    Ratings are written by the rating collaborator and by the monthly soft
    reset; total_lifetime_races is never reset.
    """

    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    rating: Mapped[float] = mapped_column(Float, default=1500.0, nullable=False)
    rd: Mapped[float] = mapped_column(Float, default=350.0, nullable=False)
    vol: Mapped[float] = mapped_column(Float, default=0.06, nullable=False)
    race_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_month_race_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    total_lifetime_races: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    is_active_this_week: Mapped[bool] = mapped_column(Boolean, default=False)
    win_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def conservative_score(self) -> float:
        """Lower-confidence-bound skill estimate."""
        return self.rating - 2 * self.rd

    def __repr__(self) -> str:
        return f"<Competitor {self.name} ({self.rating:.0f}±{self.rd:.0f})>"


class Race(Base, TimestampMixin):
    """A single race, optionally assigned to a betting week."""

    __tablename__ = "races"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    raced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    betting_week_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("betting_weeks.id"), nullable=True
    )

    results: Mapped[list["RaceResult"]] = relationship(
        "RaceResult", back_populates="race"
    )

    __table_args__ = (Index("idx_races_raced_at", "raced_at"),)


class RaceResult(Base):
    """One competitor's finishing position in a race."""

    __tablename__ = "race_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    race_id: Mapped[int] = mapped_column(Integer, ForeignKey("races.id"), nullable=False)
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    rating_delta: Mapped[float | None] = mapped_column(Float, nullable=True)

    race: Mapped["Race"] = relationship("Race", back_populates="results")

    __table_args__ = (
        UniqueConstraint("race_id", "competitor_id", name="uq_race_result"),
        Index("idx_race_results_competitor", "competitor_id"),
    )


class BettingWeek(Base, TimestampMixin):
    """
    One ISO week of betting.

    Only WeekLifecycle changes status. At most one week is in a non-terminal
    state (calibration, open, closed); finalized and cancelled weeks are
    immutable. settled_at is written by settlement once bets are scored.
    """

    __tablename__ = "betting_weeks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    season_week_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WeekStatus.OPEN, nullable=False)
    is_calibration_week: Mapped[bool] = mapped_column(Boolean, default=False)
    podium_first_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=True
    )
    podium_second_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=True
    )
    podium_third_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=True
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("year", "week_number", name="uq_betting_week"),
        Index("idx_betting_weeks_status", "status"),
    )

    @property
    def podium(self) -> dict[str, int | None]:
        """Podium competitor ids keyed by pick position."""
        return {
            PickPosition.FIRST.value: self.podium_first_id,
            PickPosition.SECOND.value: self.podium_second_id,
            PickPosition.THIRD.value: self.podium_third_id,
        }

    @property
    def has_podium(self) -> bool:
        return all(v is not None for v in self.podium.values())

    @property
    def ranking_period(self) -> tuple[int, int]:
        """(month, year) of the Monday; year is the ISO year, which differs late in December."""
        return self.start_date.month, self.start_date.year

    @property
    def label(self) -> str:
        return f"{self.year}-W{self.week_number:02d}"

    def __repr__(self) -> str:
        return f"<BettingWeek {self.label} status={self.status}>"


class CompetitorOdds(Base):
    """
    Position odds for one competitor in one week.

    A recalculation replaces the row for (competitor, week).
    """

    __tablename__ = "competitor_odds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    betting_week_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("betting_weeks.id"), nullable=False
    )
    odd_first: Mapped[float] = mapped_column(Float, nullable=False)
    odd_second: Mapped[float] = mapped_column(Float, nullable=False)
    odd_third: Mapped[float] = mapped_column(Float, nullable=False)
    probability: Mapped[float] = mapped_column(Float, nullable=False)
    form_factor: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    odds_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    __table_args__ = (
        UniqueConstraint("competitor_id", "betting_week_id", name="uq_competitor_week_odds"),
        Index("idx_competitor_odds_week", "betting_week_id"),
    )

    def odd_for(self, position: str) -> float:
        return {
            PickPosition.FIRST.value: self.odd_first,
            PickPosition.SECOND.value: self.odd_second,
            PickPosition.THIRD.value: self.odd_third,
        }[position]

    def __repr__(self) -> str:
        return (
            f"<CompetitorOdds c={self.competitor_id} w={self.betting_week_id} "
            f"{self.odd_first}/{self.odd_second}/{self.odd_third}>"
        )


class User(Base, TimestampMixin):
    """A bettor. Boost usage is tracked per month."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    last_boost_used_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_boost_used_year: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Bet(Base, TimestampMixin):
    """A user's podium bet for one week (at most one per user per week)."""

    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    betting_week_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("betting_weeks.id"), nullable=False
    )
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=BetStatus.PENDING, nullable=False)
    is_finalized: Mapped[bool] = mapped_column(Boolean, default=False)
    points_earned: Mapped[float | None] = mapped_column(Float, nullable=True)

    picks: Mapped[list["BetPick"]] = relationship(
        "BetPick", back_populates="bet", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "betting_week_id", name="uq_user_week_bet"),
        Index("idx_bets_week", "betting_week_id"),
    )

    def __repr__(self) -> str:
        return f"<Bet {self.id} user={self.user_id} week={self.betting_week_id}>"


class BetPick(Base):
    """One position pick within a bet; at most one pick per bet is boosted."""

    __tablename__ = "bet_picks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("bets.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    position: Mapped[str] = mapped_column(String(10), nullable=False)
    odd_at_bet: Mapped[float] = mapped_column(Float, nullable=False)
    has_boost: Mapped[bool] = mapped_column(Boolean, default=False)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    points_earned: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_odd: Mapped[float | None] = mapped_column(Float, nullable=True)
    used_best_odds: Mapped[bool] = mapped_column(Boolean, default=False)

    bet: Mapped["Bet"] = relationship("Bet", back_populates="picks")

    __table_args__ = (
        UniqueConstraint("bet_id", "competitor_id", name="uq_bet_pick_competitor"),
        UniqueConstraint("bet_id", "position", name="uq_bet_pick_position"),
    )


class BettorRanking(Base, TimestampMixin):
    """Monthly leaderboard row for a bettor."""

    __tablename__ = "bettor_rankings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_points: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    bets_placed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bets_won: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    perfect_bets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    boosts_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_rank: Mapped[int | None] = mapped_column(
        Integer, nullable=True, doc="Rank before the latest recalculation"
    )
    previous_week_rank: Mapped[int | None] = mapped_column(
        Integer, nullable=True, doc="Rank at the last weekly snapshot (trend display)"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "month", "year", name="uq_bettor_ranking_period"),
        Index("idx_bettor_rankings_period", "year", "month"),
    )

    def __repr__(self) -> str:
        return f"<BettorRanking user={self.user_id} {self.month}/{self.year} rank={self.rank}>"


class UserStreak(Base, TimestampMixin):
    """Participation and win streaks; the monthly streak resets each month."""

    __tablename__ = "user_streaks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), unique=True, nullable=False
    )
    current_monthly_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    best_monthly_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_win_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    best_win_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_settled_week_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class CompetitorMonthlyStats(Base, TimestampMixin):
    """End-of-month competitor snapshot, archived before the monthly reset."""

    __tablename__ = "competitor_monthly_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    final_rating: Mapped[float] = mapped_column(Float, nullable=False)
    final_rd: Mapped[float] = mapped_column(Float, nullable=False)
    final_vol: Mapped[float] = mapped_column(Float, nullable=False)
    race_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    win_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("competitor_id", "month", "year", name="uq_competitor_month"),
    )


class CompetitorEloSnapshot(Base):
    """Daily rating history point for a competitor."""

    __tablename__ = "competitor_elo_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    rating: Mapped[float] = mapped_column(Float, nullable=False)
    rd: Mapped[float] = mapped_column(Float, nullable=False)
    vol: Mapped[float] = mapped_column(Float, nullable=False)
    race_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("competitor_id", "snapshot_date", name="uq_elo_snapshot_day"),
    )


class SeasonArchive(Base):
    """Frozen monthly leaderboard, written once per month."""

    __tablename__ = "season_archives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    champion_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rankings: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("month", "year", name="uq_season_archive"),)


class JobRun(Base):
    """
    Task execution audit log.

    Every orchestrated job run is logged here for:
    1. Monitoring and alerting
    2. Manual replay after terminal failures
    3. Performance tracking
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'success', 'failed', 'skipped', 'disabled'"
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    __table_args__ = (Index("idx_job_runs_name_started", "job_name", "started_at"),)

    def __repr__(self) -> str:
        return f"<JobRun {self.job_name} status={self.status}>"
