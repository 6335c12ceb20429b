"""Storage collaborator for the betting core.

Services never touch a session directly; they talk to a ``BettingStore``.
``SqlBettingStore`` is the PostgreSQL implementation.
"""

from datetime import datetime
from typing import Protocol

from raceweek.models.domain import (
    Bet,
    BettingWeek,
    BettorRanking,
    Competitor,
    CompetitorEloSnapshot,
    CompetitorMonthlyStats,
    CompetitorOdds,
    JobRun,
    SeasonArchive,
    User,
    UserStreak,
)


class BettingStore(Protocol):
    """CRUD and filtered queries over the betting entities."""

    # Weeks
    async def get_week(self, week_id: int) -> BettingWeek | None: ...

    async def find_week(self, year: int, week_number: int) -> BettingWeek | None: ...

    async def list_active_weeks(self) -> list[BettingWeek]: ...

    async def count_weeks(self, calibration: bool | None = None) -> int: ...

    async def get_latest_week(self) -> BettingWeek | None: ...

    async def list_unsettled_weeks(self) -> list[BettingWeek]: ...

    async def add_week(self, week: BettingWeek) -> BettingWeek: ...

    # Competitors and race history
    async def list_competitors(self) -> list[Competitor]: ...

    async def count_races(self, competitor_id: int, since: datetime, until: datetime) -> int: ...

    async def recent_ranks(self, competitor_id: int, limit: int) -> list[int]: ...

    # Odds
    async def replace_odds(self, week_id: int, rows: list[CompetitorOdds]) -> list[CompetitorOdds]: ...

    async def list_odds(self, week_id: int) -> list[CompetitorOdds]: ...

    # Bets, rankings, users
    async def list_bets(self, week_id: int, unsettled_only: bool = True) -> list[Bet]: ...

    async def get_ranking(self, user_id: int, month: int, year: int) -> BettorRanking | None: ...

    async def add_ranking(self, ranking: BettorRanking) -> BettorRanking: ...

    async def list_rankings(self, month: int, year: int) -> list[BettorRanking]: ...

    async def list_users(self) -> list[User]: ...

    async def get_streak(self, user_id: int) -> UserStreak | None: ...

    async def add_streak(self, streak: UserStreak) -> UserStreak: ...

    async def list_streaks(self) -> list[UserStreak]: ...

    # Archives and snapshots
    async def upsert_monthly_stats(self, rows: list[CompetitorMonthlyStats]) -> int: ...

    async def upsert_elo_snapshots(self, rows: list[CompetitorEloSnapshot]) -> int: ...

    async def get_season_archive(self, month: int, year: int) -> SeasonArchive | None: ...

    async def add_season_archive(self, archive: SeasonArchive) -> SeasonArchive: ...

    # Audit
    async def add_job_run(self, run: JobRun) -> JobRun: ...

    # Transaction control
    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


from raceweek.services.storage.sql import SqlBettingStore  # noqa: E402

__all__ = ["BettingStore", "SqlBettingStore"]
