"""ORM model package."""

from spendtrack.models.entities import Project, RateHistory, TimeEntry, User

__all__ = [
    "Project",
    "RateHistory",
    "TimeEntry",
    "User",
]
