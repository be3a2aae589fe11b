"""Per-room broadcaster that fans a viewer's feed out to live connections.

Each (booking, viewer) pair served over WebSocket gets one
``RoomBroadcaster`` wrapping a single ``MessageFeed``.  Whenever the
feed applies a change, the resulting snapshot is pushed to every
connected subscriber's asyncio.Queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, TypedDict

from tripchat.auth import close_collaborator
from tripchat.collaborators.base import ChangeType, DataCollaborator
from tripchat.models.message import Message
from tripchat.realtime import MessageFeed

log = logging.getLogger("tripchat.events")


class FeedEvent(TypedDict):
    type: str          # snapshot | INSERT | UPDATE | DELETE
    timestamp: float
    booking_id: str
    messages: list[dict[str, Any]]


class RoomBroadcaster:
    """Per-room event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, booking_id: str, viewer_id: str) -> None:
        self._booking_id = booking_id
        self._viewer_id = viewer_id
        self._subscribers: list[asyncio.Queue[FeedEvent]] = []
        self.feed: Optional[MessageFeed] = None
        self._owner: Optional[DataCollaborator] = None
        self._lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return room_key(self._booking_id, self._viewer_id)

    def attach_feed(self, feed: MessageFeed, owner: Optional[DataCollaborator] = None) -> None:
        """Start forwarding ``feed`` changes to subscribers.

        ``owner`` is the collaborator the feed runs on; it is closed along
        with the feed.
        """
        self.feed = feed
        self._owner = owner
        feed.add_listener(self._on_change)

    async def open_feed(self, feed: MessageFeed, owner: Optional[DataCollaborator] = None) -> bool:
        """Open and attach ``feed`` unless this room already has one.

        Returns True when ``feed`` was adopted.  Otherwise the existing
        feed is refreshed and the caller keeps ownership of ``owner``.
        """
        async with self._lock:
            if self.feed is not None:
                # Re-entry: no replay of missed events, so re-fetch
                await self.feed.refresh()
                return False
            await feed.open()
            self.attach_feed(feed, owner=owner)
            return True

    async def detach_feed(self) -> None:
        async with self._lock:
            feed, self.feed = self.feed, None
            if feed is not None:
                feed.remove_listener(self._on_change)
                await feed.close()
            owner, self._owner = self._owner, None
            if owner is not None:
                await close_collaborator(owner)

    def subscribe(self) -> asyncio.Queue[FeedEvent]:
        """Create a new subscriber queue and return it."""
        q: asyncio.Queue[FeedEvent] = asyncio.Queue(maxsize=100)
        self._subscribers.append(q)
        log.info("Feed subscriber added for booking %s (total: %d)",
                 self._booking_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[FeedEvent]) -> None:
        """Remove a subscriber queue."""
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass
        log.info("Feed subscriber removed for booking %s (total: %d)",
                 self._booking_id, len(self._subscribers))

    def snapshot(self) -> FeedEvent:
        messages = self.feed.messages if self.feed is not None else []
        return self._event("snapshot", messages)

    def emit(self, event_type: str, messages: list[Message]) -> None:
        """Broadcast a snapshot to all subscribers."""
        event = self._event(event_type, messages)
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room; every event is a full snapshot
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _on_change(self, change: ChangeType, messages: list[Message]) -> None:
        self.emit(change.value, messages)

    def _event(self, event_type: str, messages: list[Message]) -> FeedEvent:
        return {
            "type": event_type,
            "timestamp": time.time(),
            "booking_id": self._booking_id,
            "messages": [m.model_dump(mode="json") for m in messages],
        }


# ── Global broadcaster registry ──────────────────────────────────────

_broadcasters: dict[str, RoomBroadcaster] = {}


def room_key(booking_id: str, viewer_id: str) -> str:
    return f"{booking_id}:{viewer_id}"


def get_broadcaster(booking_id: str, viewer_id: str) -> RoomBroadcaster:
    """Get or create the broadcaster for a viewer's room."""
    key = room_key(booking_id, viewer_id)
    if key not in _broadcasters:
        _broadcasters[key] = RoomBroadcaster(booking_id, viewer_id)
        log.info("RoomBroadcaster created for booking %s", booking_id)
    return _broadcasters[key]


def remove_broadcaster(
    booking_id: str,
    viewer_id: str,
    broadcaster: Optional[RoomBroadcaster] = None,
) -> None:
    """Remove a broadcaster once its last connection closes.

    With ``broadcaster`` given, the entry is only removed if it is still
    that instance.
    """
    key = room_key(booking_id, viewer_id)
    current = _broadcasters.get(key)
    if current is None or (broadcaster is not None and current is not broadcaster):
        return
    del _broadcasters[key]
    log.info("RoomBroadcaster removed for booking %s", booking_id)
