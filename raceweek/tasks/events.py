"""Race ingestion event handling.

Race ingestion publishes ``handle_race_created`` after storing a race. Odds
for the race's week are recalculated; this path takes no lock and never
fails the publisher.
"""

from datetime import datetime, timezone
from typing import Any

import structlog

from raceweek.models.base import get_task_session
from raceweek.services.collaborators import RaceCreatedEvent
from raceweek.services.storage import SqlBettingStore
from raceweek.tasks import celery_app
from raceweek.tasks.handlers import JobContext
from raceweek.tasks.scheduled import get_betting_config

logger = structlog.get_logger(__name__)


async def _handle_race_created_async(payload: dict[str, Any]) -> dict[str, Any]:
    event = RaceCreatedEvent.from_payload(payload)
    async with get_task_session() as session:
        ctx = JobContext(
            store=SqlBettingStore(session),
            config=get_betting_config(),
            now=datetime.now(timezone.utc),
        )
        odds = await ctx.odds.handle_race_created(event, now=ctx.now)

    return {
        "race_id": event.race_id,
        "betting_week_id": event.betting_week_id,
        "recalculated": odds is not None,
        "competitors": len(odds) if odds else 0,
    }


@celery_app.task(bind=True, soft_time_limit=150, time_limit=180)
def handle_race_created(self, payload: dict[str, Any]):
    """
    Triggered: by race ingestion
    Timeout: 3 minutes

    Payload: {"race_id": int, "betting_week_id": int | None}
    """
    import asyncio

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_handle_race_created_async(payload))
    except Exception as e:
        logger.error("race_created_handling_failed", payload=payload, error=str(e), exc_info=True)
        return {"race_id": payload.get("race_id"), "recalculated": False, "error": str(e)}
    finally:
        loop.close()
