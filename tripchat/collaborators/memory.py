"""In-process data collaborator.

Holds tables as dicts and fans changes out to subscribers synchronously.
Each row operation runs to completion without awaiting, so it is atomic
with respect to other coroutines on the same loop, matching the
single-row atomicity the hosted store provides.

Several ``InMemoryCollaborator`` views can share one ``InMemoryStore``,
one per signed-in party, which is how tests model two devices acting on
the same booking.
"""

from __future__ import annotations

import copy
import itertools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tripchat.errors import TransportError

from .base import (
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    DataCollaborator,
    RowFilter,
    Subscription,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RpcHandler = Callable[[dict[str, Any]], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _matches(row: dict[str, Any], filter: Optional[RowFilter]) -> bool:
    if filter is None:
        return True
    for column, value in filter.eq.items():
        if row.get(column) != value:
            return False
    for column, value in filter.gt.items():
        current = row.get(column)
        if current is None or not current > value:
            return False
    return True


class _Listener:
    def __init__(self, table: str, filter: RowFilter, handler: ChangeHandler) -> None:
        self.table = table
        self.filter = filter
        self.handler = handler


class InMemoryStore:
    """Shared state behind one or more ``InMemoryCollaborator`` views."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        uuid_tables: tuple[str, ...] = ("bookings",),
    ) -> None:
        self.clock: Clock = clock or _utcnow
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {}
        self._counters: dict[str, itertools.count] = {}
        self._uuid_tables = set(uuid_tables)
        self._listeners: list[_Listener] = []
        self._matches: set[frozenset[str]] = set()
        self._failures: dict[str, list[Exception]] = {}
        self.rpc_handlers: dict[str, RpcHandler] = {
            "check_match": self._check_match,
        }

    # ── Test helpers ──────────────────────────────────────────

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of every row in ``table``, in insertion order."""
        return copy.deepcopy(list(self._tables.get(table, {}).values()))

    def add_match(self, party_a: str, party_b: str) -> None:
        self._matches.add(frozenset((party_a, party_b)))

    def fail_next(self, operation: str, exc: Exception | None = None) -> None:
        """Make the next call to ``operation`` raise (TransportError by default)."""
        self._failures.setdefault(operation, []).append(
            exc or TransportError(detail=f"injected failure in {operation}")
        )

    def seed(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a row verbatim without notifying subscribers."""
        self._tables.setdefault(table, {})[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    # ── Internals ─────────────────────────────────────────────

    def _check_match(self, params: dict[str, Any]) -> bool:
        pair = frozenset((params["current_user_id"], params["target_user_id"]))
        return pair in self._matches

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _next_id(self, table: str) -> Any:
        if table in self._uuid_tables:
            return str(uuid.uuid4())
        counter = self._counters.setdefault(table, itertools.count(1))
        return next(counter)

    def _notify(self, table: str, event: ChangeEvent) -> None:
        row = event.new if event.new is not None else event.old
        for listener in list(self._listeners):
            if listener.table != table or not _matches(row, listener.filter):
                continue
            delivered = ChangeEvent(
                type=event.type,
                old=copy.deepcopy(event.old),
                new=copy.deepcopy(event.new),
            )
            listener.handler(delivered)


class _MemorySubscription(Subscription):
    def __init__(self, store: InMemoryStore, listener: _Listener) -> None:
        self._store = store
        self._listener = listener

    async def unsubscribe(self) -> None:
        try:
            self._store._listeners.remove(self._listener)
        except ValueError:
            pass


class InMemoryCollaborator(DataCollaborator):
    """DataCollaborator backed by an ``InMemoryStore``."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        identity: Optional[str] = None,
    ) -> None:
        self.store = store or InMemoryStore()
        self._identity = identity

    def for_identity(self, party_id: Optional[str]) -> "InMemoryCollaborator":
        """Another view on the same store, signed in as ``party_id``."""
        return InMemoryCollaborator(store=self.store, identity=party_id)

    async def get_current_identity(self) -> Optional[str]:
        self.store._maybe_fail("get_current_identity")
        return self._identity

    async def query_rows(
        self,
        table: str,
        filter: Optional[RowFilter] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        self.store._maybe_fail("query_rows")
        rows = [
            r for r in self.store._tables.get(table, {}).values() if _matches(r, filter)
        ]
        if order_by:
            rows.sort(key=lambda r: tuple(r.get(c) for c in order_by))
        return copy.deepcopy(rows)

    async def insert_row(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        self.store._maybe_fail("insert_row")
        row = copy.deepcopy(fields)
        row.setdefault("id", self.store._next_id(table))
        row.setdefault("created_at", self.store.clock())
        self.store._tables.setdefault(table, {})[row["id"]] = row
        logger.debug("insert %s id=%s", table, row["id"])
        self.store._notify(table, ChangeEvent(type=ChangeType.INSERT, new=row))
        return copy.deepcopy(row)

    async def update_row(
        self,
        table: str,
        row_id: Any,
        fields: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        self.store._maybe_fail("update_row")
        row = self.store._tables.get(table, {}).get(row_id)
        if row is None:
            return None
        if expected and not _matches(row, RowFilter(eq=expected)):
            return None
        old = copy.deepcopy(row)
        row.update(copy.deepcopy(fields))
        self.store._notify(table, ChangeEvent(type=ChangeType.UPDATE, old=old, new=row))
        return copy.deepcopy(row)

    async def delete_row(self, table: str, row_id: Any) -> bool:
        self.store._maybe_fail("delete_row")
        row = self.store._tables.get(table, {}).pop(row_id, None)
        if row is None:
            return False
        self.store._notify(table, ChangeEvent(type=ChangeType.DELETE, old=row))
        return True

    async def delete_rows(self, table: str, filter: RowFilter) -> int:
        self.store._maybe_fail("delete_rows")
        rows = self.store._tables.get(table, {})
        doomed = [rid for rid, r in rows.items() if _matches(r, filter)]
        for rid in doomed:
            row = rows.pop(rid)
            self.store._notify(table, ChangeEvent(type=ChangeType.DELETE, old=row))
        return len(doomed)

    async def call_rpc(self, name: str, params: dict[str, Any]) -> Any:
        self.store._maybe_fail("call_rpc")
        handler = self.store.rpc_handlers.get(name)
        if handler is None:
            raise TransportError(detail=f"unknown rpc {name!r}", status_code=404)
        return handler(params)

    async def subscribe_to_changes(
        self,
        table: str,
        filter: RowFilter,
        on_event: ChangeHandler,
    ) -> Subscription:
        self.store._maybe_fail("subscribe_to_changes")
        listener = _Listener(table, filter, on_event)
        self.store._listeners.append(listener)
        return _MemorySubscription(self.store, listener)
