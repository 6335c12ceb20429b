"""Task orchestrator.

Runs a job from the job table with:
1. Disabled check
2. Named lock (critical jobs): held -> skipped with a warning, never queued
3. A fresh context (session + snapshot) per attempt
4. Linear backoff retries for retryable failures
5. A JobRun audit row per run
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from raceweek.models.domain import JobRun
from raceweek.services.errors import BettingError
from raceweek.tasks.handlers import JobContext
from raceweek.tasks.jobs import Job
from raceweek.tasks.locks import LockRegistry, registry

logger = structlog.get_logger(__name__)

ContextFactory = Callable[[datetime], AbstractAsyncContextManager[JobContext]]
Sleep = Callable[[float], Awaitable[Any]]


class JobStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"    # lock held by another run
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class JobOutcome:
    """Result of one orchestrated run."""

    job: str
    status: JobStatus
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind,
        }


def is_retryable(error: Exception) -> bool:
    """Domain errors retry only when transient; anything else is infrastructure."""
    if isinstance(error, BettingError):
        return error.is_retryable
    return True


class TaskOrchestrator:
    """Run jobs from the job table."""

    def __init__(
        self,
        jobs: dict[str, Job],
        context_factory: ContextFactory,
        locks: LockRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.jobs = jobs
        self.context_factory = context_factory
        self.locks = locks or registry
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, name: str) -> JobOutcome:
        """
        Run one job by name.

        Raises:
            KeyError: unknown job name
        """
        job = self.jobs[name]
        started_at = self.clock()

        if not job.enabled:
            logger.warning("job_disabled", job=name)
            outcome = JobOutcome(
                job=name,
                status=JobStatus.DISABLED,
                started_at=started_at,
                completed_at=started_at,
            )
        elif job.lock is None:
            outcome = await self._run_with_retry(job, started_at)
        else:
            with self.locks.hold(job.lock) as acquired:
                if not acquired:
                    logger.warning("job_skipped_lock_held", job=name, lock=job.lock)
                    outcome = JobOutcome(
                        job=name,
                        status=JobStatus.SKIPPED,
                        started_at=started_at,
                        completed_at=self.clock(),
                    )
                else:
                    outcome = await self._run_with_retry(job, started_at)

        await self._record(outcome)
        return outcome

    async def _run_with_retry(self, job: Job, started_at: datetime) -> JobOutcome:
        attempt = 0
        log = logger.bind(job=job.name)
        log.info("job_started", description=job.description)

        while True:
            attempt += 1
            try:
                async with self.context_factory(self.clock()) as ctx:
                    result = await job.handler(ctx)
            except Exception as e:
                retryable = is_retryable(e)
                retries_left = job.retry is not None and attempt <= job.retry.max_attempts

                if retryable and retries_left:
                    delay = job.retry.delay(attempt)
                    log.warning(
                        "job_attempt_failed",
                        attempt=attempt,
                        retry_in_seconds=delay,
                        error=str(e),
                    )
                    await self.sleep(delay)
                    continue

                context = e.to_dict() if isinstance(e, BettingError) else {"error": str(e)}
                event = "job_failed_terminal" if job.retry is not None else "job_failed"
                log.error(
                    event,
                    attempts=attempt,
                    retryable=retryable,
                    exc_info=not isinstance(e, BettingError),
                    **context,
                )
                return JobOutcome(
                    job=job.name,
                    status=JobStatus.FAILED,
                    attempts=attempt,
                    started_at=started_at,
                    completed_at=self.clock(),
                    error=str(e),
                    error_kind=(
                        e.kind.value if isinstance(e, BettingError) else type(e).__name__
                    ),
                )

            log.info("job_completed", attempts=attempt, **_loggable(result))
            return JobOutcome(
                job=job.name,
                status=JobStatus.SUCCESS,
                attempts=attempt,
                started_at=started_at,
                completed_at=self.clock(),
                result=result or {},
            )

    async def _record(self, outcome: JobOutcome) -> None:
        """Write the JobRun audit row. Audit failures never fail the job."""
        try:
            async with self.context_factory(self.clock()) as ctx:
                await ctx.store.add_job_run(
                    JobRun(
                        job_name=outcome.job,
                        started_at=outcome.started_at,
                        completed_at=outcome.completed_at,
                        status=outcome.status.value,
                        attempts=outcome.attempts,
                        records_processed=int(outcome.result.get("records", 0) or 0),
                        error_message=outcome.error,
                        job_metadata={"result": outcome.result, "error_kind": outcome.error_kind},
                    )
                )
                await ctx.store.commit()
        except Exception as e:
            logger.error("job_run_audit_failed", job=outcome.job, error=str(e))

    async def run_chain(self, names: Sequence[str]) -> list[JobOutcome]:
        """Run jobs in order, stopping at the first one that does not succeed."""
        outcomes = []
        for name in names:
            outcome = await self.run(name)
            outcomes.append(outcome)
            if not outcome.succeeded:
                logger.warning(
                    "job_chain_stopped",
                    failed_job=name,
                    status=outcome.status.value,
                    remaining=list(names[len(outcomes):]),
                )
                break
        return outcomes


def _loggable(result: dict[str, Any] | None) -> dict[str, Any]:
    """Scalar entries of a handler result, for the completion log line."""
    if not result:
        return {}
    return {
        k: v for k, v in result.items()
        if isinstance(v, (int, float, str, bool)) and k not in ("job", "attempts")
    }
