"""Realtime change dispatcher for a booking's message stream.

``reconcile`` is the merge rule, kept pure so it can be tested without
a subscription::

    INSERT  append unless a message with that id is already present
    DELETE  drop the message with the old row's id
    UPDATE  drop the message if the viewer is now in hidden_by

Inserts are appended, never re-sorted, so the list keeps the order of
the initial fetch followed by arrival order.

``MessageFeed`` owns the viewer's current list: it subscribes to
changes, loads the list, and re-fetches on ``refresh()``.  Events seen
during a fetch are replayed onto its result.  Missed events are not
replayed after a disconnect; ``refresh()`` on re-entry is the recovery
path.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from tripchat.collaborators.base import (
    ChangeEvent,
    ChangeType,
    DataCollaborator,
    RowFilter,
    Subscription,
)
from tripchat.errors import TransportError
from tripchat.messages import MessageStore
from tripchat.models.message import MESSAGES_TABLE, Message

log = logging.getLogger("tripchat.realtime")

FeedListener = Callable[[ChangeType, list[Message]], None]


def reconcile(messages: list[Message], event: ChangeEvent, viewer_id: str) -> list[Message]:
    """Return the message list after applying one change event."""
    if event.type is ChangeType.INSERT:
        if not event.new:
            return messages
        incoming = Message.from_row(event.new)
        if any(m.id == incoming.id for m in messages):
            return messages
        if incoming.is_hidden_for(viewer_id):
            return messages
        return [*messages, incoming]

    if event.type is ChangeType.DELETE:
        old_id = (event.old or {}).get("id")
        if old_id is None:
            return messages
        if not any(m.id == old_id for m in messages):
            return messages
        return [m for m in messages if m.id != old_id]

    if event.type is ChangeType.UPDATE:
        if not event.new:
            return messages
        if viewer_id not in (event.new.get("hidden_by") or []):
            return messages
        hidden_id = event.new.get("id")
        if not any(m.id == hidden_id for m in messages):
            return messages
        return [m for m in messages if m.id != hidden_id]
        return messages

    return messages


class MessageFeed:
    """The viewer's live, ordered view of one booking's messages."""

    def __init__(
        self,
        store: MessageStore,
        collaborator: DataCollaborator,
        booking_id: str,
        viewer_id: str,
    ) -> None:
        self._store = store
        self._collab = collaborator
        self._booking_id = booking_id
        self._viewer_id = viewer_id
        self._messages: list[Message] = []
        self._subscription: Optional[Subscription] = None
        self._listeners: list[FeedListener] = []
        self._buffers: list[list[ChangeEvent]] = []

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: FeedListener) -> None:
        """Called with ``(change_type, messages)`` after each applied change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: FeedListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def open(self) -> list[Message]:
        """Start listening for changes, then load visible messages.

        Changes that arrive while the load is in flight are replayed onto
        the fetched list, so nothing committed in between is lost.
        """
        created = False
        if self._subscription is None:
            self._subscription = await self._collab.subscribe_to_changes(
                MESSAGES_TABLE,
                RowFilter(eq={"booking_id": self._booking_id}),
                self.apply,
            )
            created = True
            log.info("Subscribed to messages of booking %s", self._booking_id)
        try:
            return await self.refresh()
        except BaseException:
            if created:
                await self.close()
            raise

    async def refresh(self) -> list[Message]:
        """Replace the local list with a full re-fetch."""
        buffer: list[ChangeEvent] = []
        self._buffers.append(buffer)
        try:
            fetched = await self._store.list_visible_messages(
                self._booking_id, self._viewer_id
            )
        finally:
            self._buffers.remove(buffer)
        for event in buffer:
            try:
                fetched = reconcile(fetched, event, self._viewer_id)
            except TransportError:
                continue
        self._messages = fetched
        return self.messages

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.unsubscribe()
        except TransportError:
            log.warning("Unsubscribe failed for booking %s", self._booking_id, exc_info=True)
        log.info("Unsubscribed from messages of booking %s", self._booking_id)

    def apply(self, event: ChangeEvent) -> None:
        """Merge one change event into the local list."""
        for buffer in self._buffers:
            buffer.append(event)
        before = self._messages
        try:
            self._messages = reconcile(before, event, self._viewer_id)
        except TransportError:
            log.warning("Dropped malformed %s event for booking %s", event.type.value, self._booking_id)
            return
        if self._messages is not before:
            self._notify(event.type)

    # ── Optimistic local edits ────────────────────────────────

    def add_local(self, message: Message) -> None:
        """Append a message we just sent; its stream echo is then ignored."""
        self.apply(ChangeEvent(type=ChangeType.INSERT, new=message.model_dump()))

    def remove_local(self, message_id: int) -> tuple[int, Message] | None:
        """Remove a message locally and return ``(index, message)`` for rollback."""
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                self._messages = self._messages[:index] + self._messages[index + 1:]
                self._notify(ChangeType.DELETE)
                return index, message
        return None

    def restore_local(self, index: int, message: Message) -> None:
        if any(m.id == message.id for m in self._messages):
            return
        self._messages = self._messages[:index] + [message] + self._messages[index:]
        self._notify(ChangeType.INSERT)

    def clear_local(self) -> None:
        self._messages = []
        self._notify(ChangeType.DELETE)

    def _notify(self, change: ChangeType) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(change, snapshot)
