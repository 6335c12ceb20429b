"""Celery tasks for raceweek.

This module configures Celery and builds the beat schedule from the job
table. Beat only dispatches; every job runs through the orchestrator inside
a worker.
"""

from celery import Celery
from celery.signals import worker_process_init, worker_init

from raceweek.config import get_settings, load_betting_config
from raceweek.logging import configure_logging

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "raceweek",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "raceweek.tasks.scheduled",
        "raceweek.tasks.events",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings: threads share the in-process lock registry
    worker_pool="threads",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
)


@worker_init.connect
@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    configure_logging()


from raceweek.tasks.jobs import build_beat_schedule, build_job_table  # noqa: E402

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = build_beat_schedule(build_job_table(load_betting_config()))
