"""raceweek: weekly podium betting cycle."""

__version__ = "0.1.0"
