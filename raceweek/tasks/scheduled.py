"""Worker entry points for scheduled jobs.

Beat sends the job name; the orchestrator does the rest.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache

import structlog

from raceweek.config import load_betting_config
from raceweek.config.betting import BettingConfig
from raceweek.models.base import get_task_session
from raceweek.services.storage import SqlBettingStore
from raceweek.tasks import celery_app
from raceweek.tasks.handlers import JobContext
from raceweek.tasks.jobs import build_job_table
from raceweek.tasks.orchestrator import TaskOrchestrator

logger = structlog.get_logger(__name__)


@lru_cache
def get_betting_config() -> BettingConfig:
    return load_betting_config()


@asynccontextmanager
async def open_job_context(now: datetime) -> AsyncIterator[JobContext]:
    """One repeatable-read session per attempt; rolled back if the attempt fails."""
    async with get_task_session(snapshot=True) as session:
        try:
            yield JobContext(store=SqlBettingStore(session), config=get_betting_config(), now=now)
        except Exception:
            await session.rollback()
            raise


@lru_cache
def get_orchestrator() -> TaskOrchestrator:
    """Process-wide orchestrator; all worker threads share its lock registry."""
    return TaskOrchestrator(build_job_table(get_betting_config()), open_job_context)


def _run(coro):
    import asyncio

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(bind=True, soft_time_limit=540, time_limit=600)
def run_scheduled_job(self, name: str):
    """
    Scheduled: per job table
    Timeout: 10 minutes

    Runs one job through the orchestrator (lock, retry, audit).
    """
    outcome = _run(get_orchestrator().run(name))
    return outcome.to_dict()


@celery_app.task(bind=True, soft_time_limit=540, time_limit=600)
def run_job_chain(self, names: list[str]):
    """
    Manual replay: run jobs in order, stopping at the first failure.

    Example: ["close-week", "finalize-week", "recalculate-rankings"]
    """
    outcomes = _run(get_orchestrator().run_chain(names))
    logger.info("job_chain_completed", jobs=[o.job for o in outcomes])
    return [o.to_dict() for o in outcomes]
