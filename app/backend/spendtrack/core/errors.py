"""Typed domain errors for the spending engine and its services.

Every error carries a machine-readable ``code`` so the HTTP layer and other
callers can branch on type or code instead of parsing messages.

    SpendTrackError
    +-- InvalidDateError        INVALID_DATE
    +-- InvalidRateError        INVALID_RATE
    +-- LookupFailedError
        +-- UserNotFoundError     USER_NOT_FOUND
        +-- ProjectNotFoundError  PROJECT_NOT_FOUND
"""

from __future__ import annotations

from typing import Any


class SpendTrackError(Exception):
    """Base class for all domain errors."""

    code: str = "SPENDTRACK_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidDateError(SpendTrackError):
    """A date was missing, unparseable or not a calendar value."""

    code = "INVALID_DATE"

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid date: {value!r}")
        self.value = value


class InvalidRateError(SpendTrackError):
    """A rate change carried a negative or non-numeric value."""

    code = "INVALID_RATE"

    def __init__(self, value: object) -> None:
        super().__init__(f"Rate must be a non-negative number, got {value!r}")
        self.value = value


class LookupFailedError(SpendTrackError):
    """An entity required by the computation does not exist."""


class UserNotFoundError(LookupFailedError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: object) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "user_id": str(self.user_id)}


class ProjectNotFoundError(LookupFailedError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: object) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "project_id": str(self.project_id)}
