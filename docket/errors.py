from __future__ import annotations

from typing import Any


class DocketError(Exception):
    """Base class for errors raised by the calendar engine."""


class ValidationError(DocketError, ValueError):
    """Input rejected before any persistence happened."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        detail = "; ".join(f"{field}: {message}" for field, message in self.errors.items())
        super().__init__(detail or "invalid event data")

    def to_dict(self) -> dict[str, Any]:
        return {"errors": dict(self.errors)}


class LocalPersistenceError(DocketError, RuntimeError):
    """The durable local store could not be written."""


class RemoteUnavailable(DocketError, RuntimeError):
    """A remote query or write failed or timed out."""


class MalformedRecord(DocketError, ValueError):
    """A single source record could not be normalized into an event."""


class EventNotFound(DocketError, LookupError):
    """No event with the given id exists for the organization."""
