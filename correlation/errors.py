"""
Exceptions raised by the correlation engine.

"No candidate" and "ambiguous candidates" are ordinary outcomes (an
unresolved record, a deterministic tie-break) and have no exception.
"""


class CorrelationError(Exception):
    """Base class for correlation engine errors."""


class InputUnavailable(CorrelationError):
    """A matcher's required input is missing from the subject or candidate."""

    def __init__(self, field_name: str):
        super().__init__(f"Required input unavailable: {field_name}")
        self.field_name = field_name


class InvalidCoordinate(CorrelationError, ValueError):
    """Latitude/longitude outside the valid range."""

    def __init__(self, latitude, longitude):
        super().__init__(f"Invalid coordinate: ({latitude}, {longitude})")
        self.latitude = latitude
        self.longitude = longitude


class PersistenceConflict(CorrelationError):
    """Keyed upsert could not be applied after all retries."""

    def __init__(self, kind: str, match_key: str, attempts: int):
        super().__init__(
            f"Upsert conflict on {kind}:{match_key} after {attempts} attempts"
        )
        self.kind = kind
        self.match_key = match_key
        self.attempts = attempts


class VerificationError(CorrelationError):
    """Manual verification request could not be applied."""


class RunFailure(CorrelationError):
    """An analysis run could not proceed (invalid scope, store unreachable)."""
