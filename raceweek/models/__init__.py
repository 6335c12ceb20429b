"""Database models for raceweek."""

from raceweek.models.base import Base, get_task_session
from raceweek.models.domain import (
    ACTIVE_WEEK_STATUSES,
    TERMINAL_WEEK_STATUSES,
    Bet,
    BetPick,
    BetStatus,
    BettingWeek,
    BettorRanking,
    Competitor,
    CompetitorEloSnapshot,
    CompetitorMonthlyStats,
    CompetitorOdds,
    JobRun,
    PickPosition,
    Race,
    RaceResult,
    SeasonArchive,
    User,
    UserStreak,
    WeekStatus,
)

__all__ = [
    # Base
    "Base",
    "get_task_session",
    # Enums
    "WeekStatus",
    "BetStatus",
    "PickPosition",
    "ACTIVE_WEEK_STATUSES",
    "TERMINAL_WEEK_STATUSES",
    # Domain models
    "Competitor",
    "Race",
    "RaceResult",
    "BettingWeek",
    "CompetitorOdds",
    "User",
    "Bet",
    "BetPick",
    "BettorRanking",
    "UserStreak",
    "CompetitorMonthlyStats",
    "CompetitorEloSnapshot",
    "SeasonArchive",
    "JobRun",
]
