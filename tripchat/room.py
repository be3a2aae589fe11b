"""Per-viewer chat room: the state a chat screen holds while open.

Binds one active booking to the viewer's ``MessageFeed``, the countdown
``ExpiryTimer``, and a draft.  Local edits are applied optimistically
and rolled back if the write fails; the one exception is ``clear()``,
which keeps the emptied list even when the watermark write fails.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from tripchat.chat import ExpiryTimer, RemainingTime, remaining_time
from tripchat.collaborators.base import DataCollaborator
from tripchat.errors import NotFoundError, TripChatError, ValidationError
from tripchat.messages import MessageStore
from tripchat.models.booking import Booking
from tripchat.models.message import Message
from tripchat.realtime import MessageFeed

log = logging.getLogger("tripchat.room")


class ChatRoom:
    """One viewer's open chat on an active booking.

    Typical lifecycle::

        async with ChatRoom(store, collaborator, booking, me) as room:
            room.draft = "see you at the airport"
            await room.send()
            print(room.time_left.label)
    """

    def __init__(
        self,
        store: MessageStore,
        collaborator: DataCollaborator,
        booking: Booking,
        viewer_id: str,
        on_tick: Optional[Callable[[RemainingTime], None]] = None,
        countdown_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not booking.involves(viewer_id):
            raise ValueError(f"viewer is not part of booking {booking.id}")
        self._store = store
        self._booking = booking
        self._viewer_id = viewer_id
        self.feed = MessageFeed(store, collaborator, booking.id, viewer_id)
        self.time_left: RemainingTime | None = None
        self._on_tick = on_tick
        self._clock = clock
        self._timer = ExpiryTimer(booking, self._tick, interval=countdown_interval, clock=clock)
        self.draft = ""
        # True while a load or refresh waits on the collaborator
        self.loading = False

    @property
    def booking(self) -> Booking:
        return self._booking

    @property
    def messages(self) -> list[Message]:
        return self.feed.messages

    # ── Lifecycle ─────────────────────────────────────────────

    async def open(self) -> list[Message]:
        self.time_left = remaining_time(self._booking, self._clock() if self._clock else None)
        self.loading = True
        try:
            messages = await self.feed.open()
        finally:
            self.loading = False
        self._timer.start()
        return messages

    async def refresh(self) -> list[Message]:
        """Full re-fetch, used when the chat screen regains focus."""
        self.loading = True
        try:
            self._booking = await self._store.bookings.get_booking(self._booking.id)
            return await self.feed.refresh()
        finally:
            self.loading = False

    async def close(self) -> None:
        await self._timer.stop()
        await self.feed.close()

    async def __aenter__(self) -> "ChatRoom":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Actions ───────────────────────────────────────────────

    async def send(self, content: Optional[str] = None) -> Message:
        """Send ``content`` (or the draft), restoring the draft on failure."""
        text = (self.draft if content is None else content).strip()
        if not text:
            raise ValidationError("Message can't be empty", detail="blank content")

        self.draft = ""
        try:
            message = await self._store.send_message(self._booking.id, self._viewer_id, text)
        except TripChatError:
            self.draft = text
            raise
        self.feed.add_local(message)
        return message

    async def delete_for_me(self, message_id: int) -> None:
        removed = self.feed.remove_local(message_id)
        try:
            await self._store.delete_for_me(message_id, self._viewer_id)
        except NotFoundError:
            raise
        except TripChatError:
            if removed is not None:
                self.feed.restore_local(*removed)
            raise

    async def delete_for_everyone(self, message_id: int) -> None:
        removed = self.feed.remove_local(message_id)
        try:
            await self._store.delete_for_everyone(message_id, self._viewer_id)
        except NotFoundError:
            raise
        except TripChatError:
            if removed is not None:
                self.feed.restore_local(*removed)
            raise

    async def clear(self) -> None:
        """Hide the current history for this viewer only."""
        self.feed.clear_local()
        try:
            await self._store.clear_chat_for_viewer(self._booking.id, self._viewer_id)
        except TripChatError:
            log.warning("Clearing chat for booking %s failed", self._booking.id, exc_info=True)
            raise

    def _tick(self, value: RemainingTime) -> None:
        self.time_left = value
        if self._on_tick is not None:
            self._on_tick(value)
