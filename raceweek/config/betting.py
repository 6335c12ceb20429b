"""Betting cycle configuration.

Eligibility thresholds, odds bounds, scoring weights, podium rules,
calibration designation and task retry/schedule settings. Values come from
defaults.yaml; anything missing falls back to the dataclass defaults below.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from raceweek.config.settings import get_settings

logger = structlog.get_logger(__name__)


class PodiumScoringMethod(str, Enum):
    """How competitors are scored when determining the weekly podium."""
    CONSERVATIVE = "conservative"  # rating - 2 * rd
    RATING = "rating"              # raw rating
    RACE_COUNT = "race_count"      # most races this month


class TieBreaker(str, Enum):
    """Podium tie-breakers, applied in configured order."""
    RATING = "rating"          # higher first
    RD = "rd"                  # lower first
    RACE_COUNT = "race_count"  # higher first


class CalibrationMode(str, Enum):
    """How calibration weeks are designated."""
    FIRST_WEEK_OF_MONTH = "first_week_of_month"
    NEVER = "never"
    EXPLICIT = "explicit"


@dataclass
class EligibilityRules:
    """Thresholds a competitor must meet to get odds or reach the podium."""
    min_lifetime_races: int = 5
    min_recent_races: int = 2
    recent_window_days: int = 14


@dataclass
class OddsParams:
    """Odds calculation parameters."""
    odd_floor: float = 1.1
    odd_ceiling: float = 50.0
    softmax_temperature: float = 200.0
    form_factor_min: float = 0.7
    form_factor_max: float = 1.3
    win_streak_bonus: float = 0.05
    recent_races_count: int = 5
    # (max average rank, factor) pairs, best first
    form_rank_thresholds: list[tuple[float, float]] = field(
        default_factory=lambda: [(3, 1.2), (6, 1.1), (9, 1.0)]
    )
    form_floor_factor: float = 0.9
    position_factors: dict[str, dict[str, float]] = field(
        default_factory=lambda: {
            "top": {"first": 0.45, "second": 0.32, "third": 0.23},
            "mid": {"first": 0.33, "second": 0.35, "third": 0.32},
            "bottom": {"first": 0.22, "second": 0.33, "third": 0.45},
        }
    )
    top_tier_percentile: float = 0.75
    bottom_tier_percentile: float = 0.25


@dataclass
class ScoringParams:
    """Points calculation rules for settled bets."""
    perfect_podium_bonus: float = 2.0
    boost_multiplier: float = 2.0
    min_points_per_correct_pick: float = 0.1
    incorrect_pick_points: float = 0.0
    best_odds_guaranteed: bool = False


@dataclass
class PodiumConfig:
    """Podium determination strategy."""
    scoring_method: PodiumScoringMethod = PodiumScoringMethod.CONSERVATIVE
    tie_breakers: list[TieBreaker] = field(
        default_factory=lambda: [TieBreaker.RATING, TieBreaker.RD, TieBreaker.RACE_COUNT]
    )


@dataclass
class CalibrationConfig:
    """Which weeks run as calibration weeks."""
    mode: CalibrationMode = CalibrationMode.FIRST_WEEK_OF_MONTH
    weeks: list[str] = field(default_factory=list)
    force_first_week: bool = True

    def is_designated(self, year: int, week_number: int, monday_day: int) -> bool:
        """Check whether an ISO week is designated as calibration."""
        if self.mode == CalibrationMode.NEVER:
            return False
        if self.mode == CalibrationMode.EXPLICIT:
            return f"{year}-W{week_number:02d}" in self.weeks
        return monday_day <= 7


# UTC cron calendar; crontab keyword arguments per job
DEFAULT_SCHEDULES: dict[str, dict[str, Any]] = {
    "create-week": {"minute": 0, "hour": 0, "day_of_week": 1},
    "reset-weekly-activity": {"minute": 5, "hour": 0, "day_of_week": 1},
    "recalculate-odds": {"minute": 0, "hour": 12},
    "close-week": {"minute": 50, "hour": 23, "day_of_week": 0},
    "finalize-week": {"minute": 55, "hour": 23, "day_of_week": 0},
    "recalculate-rankings": {"minute": 58, "hour": 23, "day_of_week": 0},
    "snapshot-ranks": {"minute": 59, "hour": 23, "day_of_week": 0},
    "elo-snapshot": {"minute": 0, "hour": 0},
    "archive-season": {"minute": 1, "hour": 0, "day_of_month": 1},
    "archive-monthly-stats": {"minute": 2, "hour": 0, "day_of_month": 1},
    "reset-boost-availability": {"minute": 3, "hour": 0, "day_of_month": 1},
    "reset-monthly-streaks": {"minute": 4, "hour": 0, "day_of_month": 1},
    "reset-monthly-stats": {"minute": 5, "hour": 0, "day_of_month": 1},
}


@dataclass
class RetryConfig:
    """Linear backoff for critical jobs: delay = base_delay_seconds * attempt."""
    max_attempts: int = 3
    base_delay_seconds: float = 5.0


@dataclass
class TaskConfig:
    """Scheduled task settings."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    disabled: list[str] = field(default_factory=list)
    schedules: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {name: dict(s) for name, s in DEFAULT_SCHEDULES.items()}
    )


@dataclass
class BettingConfig:
    """All betting cycle configuration."""
    eligibility: EligibilityRules = field(default_factory=EligibilityRules)
    odds: OddsParams = field(default_factory=OddsParams)
    scoring: ScoringParams = field(default_factory=ScoringParams)
    podium: PodiumConfig = field(default_factory=PodiumConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


def parse_betting_config(raw: dict[str, Any]) -> BettingConfig:
    """Build a BettingConfig from a parsed defaults.yaml mapping."""
    odds = dict(_section(raw, "odds"))
    if "form_rank_thresholds" in odds:
        odds["form_rank_thresholds"] = [
            (float(t["max_rank"]), float(t["factor"]))
            for t in odds["form_rank_thresholds"]
        ]

    podium = dict(_section(raw, "podium"))
    if "scoring_method" in podium:
        podium["scoring_method"] = PodiumScoringMethod(podium["scoring_method"])
    if "tie_breakers" in podium:
        podium["tie_breakers"] = [TieBreaker(t) for t in podium["tie_breakers"]]

    calibration = dict(_section(raw, "calibration"))
    if "mode" in calibration:
        calibration["mode"] = CalibrationMode(calibration["mode"])

    tasks = dict(_section(raw, "tasks"))
    if "retry" in tasks:
        tasks["retry"] = RetryConfig(**tasks["retry"])
    if "schedules" in tasks:
        # Overrides replace single jobs; the rest keep the built-in calendar
        tasks["schedules"] = {**TaskConfig().schedules, **_section(tasks, "schedules")}

    return BettingConfig(
        eligibility=EligibilityRules(**_section(raw, "eligibility")),
        odds=OddsParams(**odds),
        scoring=ScoringParams(**_section(raw, "scoring")),
        podium=PodiumConfig(**podium),
        calibration=CalibrationConfig(**calibration),
        tasks=TaskConfig(**tasks),
    )


def load_betting_config() -> BettingConfig:
    """Load betting configuration from defaults.yaml, or fall back to defaults."""
    raw = get_settings().load_defaults_config()
    if not raw:
        logger.warning("betting_config_defaults_missing")
        return BettingConfig()
    return parse_betting_config(raw)
