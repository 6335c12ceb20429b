"""Domain errors.

One exception type carrying a closed set of kinds. Callers match on
``error.kind`` instead of walking a class hierarchy; the subclasses exist
only so raise sites read naturally.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Every failure the betting core reports."""
    INSUFFICIENT_DATA = "insufficient_data"    # too few eligible competitors
    INVALID_TRANSITION = "invalid_transition"  # state machine called out of order
    INVALID_PODIUM = "invalid_podium"          # malformed podium input
    TRANSIENT_FAILURE = "transient_failure"    # storage/network, worth retrying
    NOT_FOUND = "not_found"


class BettingError(Exception):
    """Domain error with a kind and structured context for logs and replay."""

    kind: ErrorKind = ErrorKind.TRANSIENT_FAILURE

    def __init__(self, message: str, kind: ErrorKind | None = None, **context: Any):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.context = context

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT_FAILURE

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, **self.context}

    def __repr__(self) -> str:
        return f"<BettingError {self.kind.value}: {self.message}>"


class InsufficientData(BettingError):
    kind = ErrorKind.INSUFFICIENT_DATA


class InvalidTransition(BettingError):
    kind = ErrorKind.INVALID_TRANSITION


class InvalidPodium(BettingError):
    kind = ErrorKind.INVALID_PODIUM


class TransientFailure(BettingError):
    kind = ErrorKind.TRANSIENT_FAILURE


class NotFound(BettingError):
    kind = ErrorKind.NOT_FOUND
