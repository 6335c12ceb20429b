"""Betting cycle services: eligibility, odds, podium, week lifecycle, settlement."""

from raceweek.services.betting.eligibility import EligibilityFilter, EligibilityResult
from raceweek.services.betting.odds import OddsCalculator
from raceweek.services.betting.podium import PodiumSelector
from raceweek.services.betting.settlement import (
    SettlementEngine,
    SettlementResult,
    calculate_bet_points,
)
from raceweek.services.betting.weeks import WeekLifecycle

__all__ = [
    "EligibilityFilter",
    "EligibilityResult",
    "OddsCalculator",
    "PodiumSelector",
    "WeekLifecycle",
    "SettlementEngine",
    "SettlementResult",
    "calculate_bet_points",
]
