"""Business logic services for raceweek."""
