"""Data collaborator abstractions and implementations."""

from .base import (
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    DataCollaborator,
    RowFilter,
    Subscription,
)

__all__ = [
    "ChangeEvent",
    "ChangeHandler",
    "ChangeType",
    "DataCollaborator",
    "RowFilter",
    "Subscription",
]
