"""Configuration for raceweek."""

from raceweek.config.betting import BettingConfig, load_betting_config
from raceweek.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "BettingConfig", "load_betting_config"]
