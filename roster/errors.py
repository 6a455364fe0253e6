"""Error taxonomy for the participation-consistency engine.

Only identity errors (``NotAuthenticated``, ``ProfileNotFound``) are meant to
reach callers. Store failures are retried or converted to permissive defaults,
and data-integrity problems exclude the offending record.
"""
from __future__ import annotations


class RosterError(Exception):
    """Base class for all roster errors."""


class NotAuthenticated(RosterError):
    """No resolvable contact identity was supplied."""


class ProfileNotFound(RosterError):
    """The supplied identity matches no contact record."""


class TeamNotFound(RosterError):
    """A referenced team id has no record."""

    def __init__(self, team_id: str):
        super().__init__(f"Team {team_id} not found")
        self.team_id = team_id


class StoreError(RosterError):
    """Record-store request failed."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class StoreTimeout(StoreError):
    """Record-store request exceeded its timeout."""

    def __init__(self, message: str):
        super().__init__(message, status_code=None, retryable=True)


class RateLimited(StoreError):
    """Record store kept answering 429 after the retry budget was spent."""

    def __init__(self, message: str = "Rate limit exceeded", attempts: int = 0):
        super().__init__(message, status_code=429, retryable=True)
        self.attempts = attempts


class RecordSchemaMismatch(RosterError):
    """A relationship field holds a value in none of the expected shapes."""

    def __init__(self, field: str, value: object):
        super().__init__(f"Field {field!r} has unexpected shape: {type(value).__name__}")
        self.field = field
        self.value = value


class PartialCascadeFailure(RosterError):
    """Some writes of a leave sweep failed while others succeeded."""

    def __init__(self, failed: list[str], succeeded: int):
        super().__init__(f"{len(failed)} record write(s) failed, {succeeded} succeeded")
        self.failed = failed
        self.succeeded = succeeded
