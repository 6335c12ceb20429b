"""Job table.

One row per scheduled job: when it runs, what it runs, whether it takes a
lock and how it retries. The Celery beat schedule is generated from it.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from celery.schedules import crontab

from raceweek.config.betting import BettingConfig, RetryConfig
from raceweek.tasks import handlers
from raceweek.tasks.handlers import JobContext

Handler = Callable[[JobContext], Awaitable[dict[str, Any]]]

SCHEDULED_TASK_NAME = "raceweek.tasks.scheduled.run_scheduled_job"

# Order matters: it is the calendar order within a cycle
JOB_DEFINITIONS: list[tuple[str, Handler, bool, bool, str]] = [
    # (name, handler, locked, retried, description)
    ("create-week", handlers.create_week, False, True,
     "Create the betting week (Monday 00:00)"),
    ("reset-weekly-activity", handlers.reset_weekly_activity, False, True,
     "Reset weekly activity flags (Monday 00:05)"),
    ("recalculate-odds", handlers.recalculate_odds, False, False,
     "Recalculate odds for the open week (daily 12:00)"),
    ("close-week", handlers.close_week, False, True,
     "Final odds recalculation, then close the week (Sunday 23:50)"),
    ("finalize-week", handlers.finalize_week, True, True,
     "Determine podium, finalize or cancel, settle bets (Sunday 23:55)"),
    ("recalculate-rankings", handlers.recalculate_rankings, True, True,
     "Recalculate monthly rankings (Sunday 23:58)"),
    ("snapshot-ranks", handlers.snapshot_ranks, False, True,
     "Snapshot weekly rank history (Sunday 23:59)"),
    ("elo-snapshot", handlers.elo_snapshot, True, True,
     "Daily rating snapshot (00:00)"),
    ("archive-season", handlers.archive_season, False, True,
     "Archive previous month's leaderboard (1st 00:01)"),
    ("archive-monthly-stats", handlers.archive_monthly_stats, False, True,
     "Archive competitor stats before reset (1st 00:02)"),
    ("reset-boost-availability", handlers.reset_boost_availability, False, True,
     "Reset boost availability (1st 00:03)"),
    ("reset-monthly-streaks", handlers.reset_monthly_streaks, False, True,
     "Reset monthly streaks (1st 00:04)"),
    ("reset-monthly-stats", handlers.reset_monthly_stats, True, True,
     "Soft reset competitor ratings and race counts (1st 00:05)"),
]


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: the n-th retry waits base_delay_seconds * n."""

    max_attempts: int = 3
    base_delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(max_attempts=config.max_attempts, base_delay_seconds=config.base_delay_seconds)

    def delay(self, attempt: int) -> float:
        return self.base_delay_seconds * attempt


@dataclass(frozen=True)
class Job:
    """One row of the job table."""

    name: str
    handler: Handler
    schedule: dict[str, Any]
    lock: str | None = None
    retry: RetryPolicy | None = None
    enabled: bool = True
    description: str = ""

    @property
    def crontab(self) -> crontab:
        return crontab(**self.schedule)


def build_job_table(config: BettingConfig) -> dict[str, Job]:
    """Jobs keyed by name, in calendar order."""
    retry = RetryPolicy.from_config(config.tasks.retry)
    disabled = set(config.tasks.disabled)

    jobs = {}
    for name, handler, locked, retried, description in JOB_DEFINITIONS:
        schedule = config.tasks.schedules.get(name)
        if schedule is None:
            raise ValueError(f"No schedule configured for job '{name}'")
        jobs[name] = Job(
            name=name,
            handler=handler,
            schedule=dict(schedule),
            lock=name if locked else None,
            retry=retry if retried else None,
            enabled=name not in disabled,
            description=description,
        )
    return jobs


def build_beat_schedule(jobs: dict[str, Job]) -> dict[str, dict[str, Any]]:
    """Celery beat entries for every enabled job."""
    return {
        name: {
            "task": SCHEDULED_TASK_NAME,
            "schedule": job.crontab,
            "args": (name,),
            "options": {"expires": 3540},
        }
        for name, job in jobs.items()
        if job.enabled
    }
