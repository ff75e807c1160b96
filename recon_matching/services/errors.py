"""Error taxonomy for the matching core."""

from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds reported to callers and in batch item outcomes."""

    VALIDATION = "validation"
    PRECONDITION = "precondition"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    # Warning only - attached to results, never raised
    DEGENERATE_COMPUTATION = "degenerate_computation"


class MatchingError(Exception):
    """Base exception for matching errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MatchingError):
    """Malformed input: fix the request and retry."""

    kind = ErrorKind.VALIDATION


class PreconditionError(MatchingError):
    """Operation not allowed in the current state."""

    kind = ErrorKind.PRECONDITION


class ConflictError(MatchingError):
    """Lost a race for a transaction; retry against fresh state."""

    kind = ErrorKind.CONFLICT


class NotFoundError(MatchingError):
    """Referenced transaction, rule or match does not exist."""

    kind = ErrorKind.NOT_FOUND
