"""Abstract base class for data collaborators.

Defines the contract the core needs from the hosted store: identity,
row queries, atomic single-row writes, RPCs, and change notification.
Any backend (hosted REST service, in-memory store, etc.) implements
this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class RowFilter:
    """Column filters combined with AND.

    ``eq`` matches columns equal to a value (``None`` matches NULL);
    ``gt`` matches columns strictly greater than a value.
    """

    eq: dict[str, Any] = field(default_factory=dict)
    gt: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChangeEvent:
    """One row change delivered by a subscription."""

    type: ChangeType
    old: Optional[dict[str, Any]] = None
    new: Optional[dict[str, Any]] = None


ChangeHandler = Callable[[ChangeEvent], None]


class Subscription(ABC):
    """Handle returned by ``subscribe_to_changes``."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering events. Safe to call more than once."""


class DataCollaborator(ABC):
    """Abstract hosted store + pub/sub notifier + identity service.

    Subclasses must wrap their own failures in ``TransportError`` so the
    core only ever sees the error taxonomy in ``tripchat.errors``.
    """

    @abstractmethod
    async def get_current_identity(self) -> Optional[str]:
        """Return the signed-in party id, or None when signed out."""

    @abstractmethod
    async def query_rows(
        self,
        table: str,
        filter: Optional[RowFilter] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        """Return rows of ``table`` matching ``filter``.

        Args:
            table: Table name.
            filter: Column filters; None returns every row.
            order_by: Columns to sort ascending by, in priority order.

        Returns:
            List of row dicts.
        """

    @abstractmethod
    async def insert_row(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it with store-assigned columns filled in."""

    @abstractmethod
    async def update_row(
        self,
        table: str,
        row_id: Any,
        fields: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Atomically update one row.

        Args:
            table: Table name.
            row_id: Primary key of the row.
            fields: Columns to set.
            expected: Optional column values the row must still hold for
                the update to apply (compare-and-swap).

        Returns:
            The updated row, or None when the row is missing or any
            ``expected`` column no longer matches.
        """

    @abstractmethod
    async def delete_row(self, table: str, row_id: Any) -> bool:
        """Delete one row. Returns True if a row was removed."""

    @abstractmethod
    async def delete_rows(self, table: str, filter: RowFilter) -> int:
        """Delete all rows matching ``filter``. Returns the number removed."""

    @abstractmethod
    async def call_rpc(self, name: str, params: dict[str, Any]) -> Any:
        """Invoke a server-side function and return its result."""

    @abstractmethod
    async def subscribe_to_changes(
        self,
        table: str,
        filter: RowFilter,
        on_event: ChangeHandler,
    ) -> Subscription:
        """Deliver row changes of ``table`` matching ``filter`` to ``on_event``.

        Delivery is at-most-once: events missed while disconnected are
        not replayed.
        """


def pair_filters(party_a: str, party_b: str) -> list[RowFilter]:
    """Filters matching a booking between two parties in either slot order."""
    return [
        RowFilter(eq={"user_a": party_a, "user_b": party_b}),
        RowFilter(eq={"user_a": party_b, "user_b": party_a}),
    ]
