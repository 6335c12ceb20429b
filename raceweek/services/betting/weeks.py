"""Betting week lifecycle.

State machine:

    CALIBRATION --close--> CLOSED --complete_calibration--> FINALIZED
    OPEN --close--> CLOSED --finalize(podium)--> FINALIZED
    any non-terminal --cancel--> CANCELLED

FINALIZED and CANCELLED are terminal. At most one week is non-terminal at a
time; create() refuses to open a second one.
"""

from collections.abc import Sequence
from datetime import datetime, time, timedelta, timezone

import structlog

from raceweek.config.betting import CalibrationConfig
from raceweek.models.domain import (
    TERMINAL_WEEK_STATUSES,
    BettingWeek,
    WeekStatus,
)
from raceweek.services.betting.odds import OddsCalculator
from raceweek.services.betting.podium import PODIUM_SIZE, PodiumSelector
from raceweek.services.errors import (
    BettingError,
    InvalidPodium,
    InvalidTransition,
    NotFound,
)
from raceweek.services.storage import BettingStore

logger = structlog.get_logger(__name__)

CLOSABLE_STATUSES = (WeekStatus.OPEN, WeekStatus.CALIBRATION)


def iso_week_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Monday 00:00 and Sunday 23:59:59.999999 UTC of the ISO week holding moment."""
    moment = moment.astimezone(timezone.utc)
    monday = moment.date() - timedelta(days=moment.isoweekday() - 1)
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=7) - timedelta(microseconds=1)
    return start, end


def iso_week_key(moment: datetime) -> tuple[int, int]:
    """(ISO year, ISO week number)."""
    iso = moment.astimezone(timezone.utc).isocalendar()
    return iso[0], iso[1]


def week_reference_time(week: BettingWeek, now: datetime) -> datetime:
    return min(now, week.end_date)


class WeekLifecycle:
    """Owns BettingWeek status. Every transition commits."""

    def __init__(
        self,
        store: BettingStore,
        calibration: CalibrationConfig | None = None,
        odds: OddsCalculator | None = None,
        podium: PodiumSelector | None = None,
    ):
        self.store = store
        self.calibration = calibration or CalibrationConfig()
        self.odds = odds
        self.podium = podium

    async def _get(self, week_id: int) -> BettingWeek:
        week = await self.store.get_week(week_id)
        if week is None:
            raise NotFound(f"Betting week {week_id} not found", week_id=week_id)
        return week

    @staticmethod
    def _invalid(week: BettingWeek, action: str) -> InvalidTransition:
        return InvalidTransition(
            f"Cannot {action} week {week.label} in status {week.status}",
            week_id=week.id,
            status=week.status,
            action=action,
        )

    async def finalize_expired_calibration_weeks(
        self, now: datetime | None = None
    ) -> list[BettingWeek]:
        """Finalize, without podium, calibration weeks whose window has ended."""
        now = now or datetime.now(timezone.utc)
        expired = [
            week
            for week in await self.store.list_active_weeks()
            if week.is_calibration_week and week.end_date < now
        ]
        for week in expired:
            week.status = WeekStatus.FINALIZED.value
            week.finalized_at = now
            logger.info("calibration_week_completed", week_id=week.id, week=week.label)

        if expired:
            await self.store.commit()
        return expired

    async def create(self, now: datetime | None = None) -> BettingWeek:
        """
        Create the betting week for the ISO week containing now.

        Expired calibration weeks are finalized first. Initial odds are
        attempted afterwards; failing to price the week does not undo it.

        Raises:
            InvalidTransition: a non-terminal week remains, or this ISO week exists
        """
        now = now or datetime.now(timezone.utc)
        await self.finalize_expired_calibration_weeks(now)

        active = await self.store.list_active_weeks()
        if active:
            raise InvalidTransition(
                "A non-terminal betting week already exists",
                active_week_ids=[w.id for w in active],
                statuses=[w.status for w in active],
            )

        year, week_number = iso_week_key(now)
        if await self.store.find_week(year, week_number) is not None:
            raise InvalidTransition(
                f"Betting week {year}-W{week_number:02d} already exists",
                year=year,
                week_number=week_number,
            )

        start, end = iso_week_bounds(now)
        is_calibration = self.calibration.is_designated(year, week_number, start.day)
        if not is_calibration and self.calibration.force_first_week:
            if await self.store.count_weeks() == 0:
                logger.info("first_week_forced_calibration", year=year, week_number=week_number)
                is_calibration = True

        season_week_number = (
            0 if is_calibration else await self.store.count_weeks(calibration=False) + 1
        )

        week = BettingWeek(
            year=year,
            week_number=week_number,
            season_week_number=season_week_number,
            month=start.month,
            start_date=start,
            end_date=end,
            status=(WeekStatus.CALIBRATION if is_calibration else WeekStatus.OPEN).value,
            is_calibration_week=is_calibration,
            podium_first_id=None,
            podium_second_id=None,
            podium_third_id=None,
            finalized_at=None,
            settled_at=None,
        )
        week = await self.store.add_week(week)
        await self.store.commit()

        logger.info(
            "betting_week_created",
            week_id=week.id,
            week=week.label,
            status=week.status,
            season_week_number=season_week_number,
            start=start.isoformat(),
            end=end.isoformat(),
        )

        week_id = week.id
        if not await self._calculate_initial_odds(week_id, now):
            # rollback expired the instance; reload it
            week = await self._get(week_id)
        return week

    async def _calculate_initial_odds(self, week_id: int, now: datetime) -> bool:
        """Price a new week. False when the session had to be rolled back."""
        if self.odds is None:
            return True
        try:
            await self.odds.calculate_odds_for_week(week_id, now=now)
        except BettingError as e:
            logger.warning(
                "initial_odds_failed",
                week_id=week_id,
                error=e.message,
                error_kind=e.kind.value,
            )
        except Exception as e:
            logger.error("initial_odds_failed", week_id=week_id, error=str(e), exc_info=True)
            await self.store.rollback()
            return False
        return True

    async def close(self, week_id: int) -> BettingWeek:
        """OPEN or CALIBRATION -> CLOSED."""
        week = await self._get(week_id)
        if week.status not in CLOSABLE_STATUSES:
            raise self._invalid(week, "close")

        week.status = WeekStatus.CLOSED.value
        await self.store.commit()
        logger.info("betting_week_closed", week_id=week.id, week=week.label)
        return week

    async def finalize(
        self,
        week_id: int,
        podium: Sequence[int | None],
        now: datetime | None = None,
    ) -> BettingWeek:
        """
        CLOSED -> FINALIZED with the given podium.

        The podium is validated before anything else so a malformed podium
        never touches the week.

        Raises:
            InvalidPodium: not exactly three distinct competitor ids
            NotFound: unknown week
            InvalidTransition: week is not CLOSED
        """
        podium = list(podium)
        if len(podium) != PODIUM_SIZE or any(p is None for p in podium):
            raise InvalidPodium(
                "Podium needs exactly three competitors", week_id=week_id, podium=podium
            )
        if len(set(podium)) != PODIUM_SIZE:
            raise InvalidPodium(
                "Podium competitors must be distinct", week_id=week_id, podium=podium
            )

        week = await self._get(week_id)
        if week.status != WeekStatus.CLOSED:
            raise self._invalid(week, "finalize")

        now = now or datetime.now(timezone.utc)
        week.podium_first_id, week.podium_second_id, week.podium_third_id = podium
        week.status = WeekStatus.FINALIZED.value
        week.finalized_at = now
        await self.store.commit()

        logger.info("betting_week_finalized", week_id=week.id, week=week.label, podium=podium)
        return week

    async def complete_calibration(
        self, week_id: int, now: datetime | None = None
    ) -> BettingWeek:
        """Calibration week (CALIBRATION or CLOSED) -> FINALIZED, no podium."""
        week = await self._get(week_id)
        if not week.is_calibration_week or week.status not in (
            WeekStatus.CALIBRATION,
            WeekStatus.CLOSED,
        ):
            raise self._invalid(week, "complete calibration of")

        week.status = WeekStatus.FINALIZED.value
        week.finalized_at = now or datetime.now(timezone.utc)
        await self.store.commit()
        logger.info("calibration_week_completed", week_id=week.id, week=week.label)
        return week

    async def cancel(
        self, week_id: int, reason: str, now: datetime | None = None
    ) -> BettingWeek:
        """Any non-terminal state -> CANCELLED."""
        week = await self._get(week_id)
        if week.status in TERMINAL_WEEK_STATUSES:
            raise self._invalid(week, "cancel")

        week.status = WeekStatus.CANCELLED.value
        week.finalized_at = now or datetime.now(timezone.utc)
        await self.store.commit()
        logger.warning("betting_week_cancelled", week_id=week.id, week=week.label, reason=reason)
        return week

    async def get_current_week(self, now: datetime | None = None) -> BettingWeek | None:
        """The non-terminal week covering now, else the latest non-terminal week."""
        now = now or datetime.now(timezone.utc)
        active = await self.store.list_active_weeks()
        for week in active:
            if week.start_date <= now <= week.end_date:
                return week
        if not active:
            return None
        return max(active, key=lambda w: w.start_date)

    async def determine_podium(
        self, week: BettingWeek, now: datetime | None = None
    ) -> list[int]:
        """
        Podium competitor ids for a week, judged at the week's reference time.

        Raises:
            InsufficientData: fewer than three eligible active competitors
        """
        if self.podium is None:
            raise RuntimeError("WeekLifecycle has no PodiumSelector")
        now = now or datetime.now(timezone.utc)
        competitors = await self.store.list_competitors()
        podium = await self.podium.select(competitors, week_reference_time(week, now))
        return [c.id for c in podium]


