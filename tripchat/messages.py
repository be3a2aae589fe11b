"""Message store and per-viewer visibility rules.

A message is visible to viewer V iff it was created after V's clear
watermark on the booking and V is not in its ``hidden_by`` set.

Deletion comes in two flavours:

  * for everyone: the sender removes the row; irreversible.
  * for me: the viewer is appended to ``hidden_by``.  The append is a
    compare-and-swap on the array the store last returned, retried on
    contention, so two viewers hiding the same message concurrently
    both end up in the set.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from tripchat.bookings import BookingService, redact_id
from tripchat.chat import is_expired
from tripchat.collaborators.base import DataCollaborator, RowFilter
from tripchat.config import settings
from tripchat.errors import ConflictError, NotFoundError, ValidationError
from tripchat.models.booking import BOOKINGS_TABLE, Booking
from tripchat.models.message import MESSAGES_TABLE, Message

log = logging.getLogger("tripchat.messages")


class MessageStore:
    """Send, list, hide and delete chat messages for a booking."""

    def __init__(
        self,
        collaborator: DataCollaborator,
        bookings: Optional[BookingService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        hide_retry_limit: Optional[int] = None,
        enforce_expiry: Optional[bool] = None,
    ) -> None:
        self._collab = collaborator
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._bookings = bookings or BookingService(collaborator, clock=self._clock)
        limit = settings.hide_retry_limit if hide_retry_limit is None else hide_retry_limit
        self._hide_attempts = max(1, limit)
        self._enforce_expiry = (
            settings.enforce_chat_expiry if enforce_expiry is None else enforce_expiry
        )

    @property
    def bookings(self) -> BookingService:
        return self._bookings

    async def get_message(self, message_id: int) -> Message:
        rows = await self._collab.query_rows(
            MESSAGES_TABLE, RowFilter(eq={"id": message_id})
        )
        if not rows:
            raise NotFoundError(
                "This message no longer exists",
                detail=f"message {message_id} not found",
            )
        return Message.from_row(rows[0])

    async def send_message(self, booking_id: str, sender_id: str, content: str) -> Message:
        """Append a message to the booking's chat.

        Past the chat window the send still goes through unless expiry
        enforcement is configured.
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message can't be empty", detail="blank content")

        if self._enforce_expiry:
            booking = await self._bookings.get_booking(booking_id)
            if not booking.is_active:
                raise ConflictError(
                    "This chat hasn't started yet",
                    detail=f"booking {booking_id} is {booking.status.value}",
                )
            if is_expired(booking, self._clock()):
                raise ConflictError(
                    "This chat has expired",
                    detail=f"booking {booking_id} past its chat window",
                )

        row = await self._collab.insert_row(
            MESSAGES_TABLE,
            {"booking_id": booking_id, "sender_id": sender_id, "content": text},
        )
        message = Message.from_row(row)
        log.debug(
            "Message %s sent in booking %s by %s",
            message.id,
            booking_id,
            redact_id(sender_id),
        )
        return message

    async def list_visible_messages(
        self,
        booking_id: str,
        viewer_id: str,
        booking: Optional[Booking] = None,
    ) -> list[Message]:
        """Messages the viewer can see, oldest first.

        The watermark cut runs in the store; the hidden-by filter runs
        here.  Equal timestamps fall back to id order.
        """
        if booking is None:
            booking = await self._bookings.get_booking(booking_id)
        if not booking.involves(viewer_id):
            raise NotFoundError(detail=f"booking {booking_id} not visible to viewer")

        watermark = booking.cleared_at_for(viewer_id)
        filter = RowFilter(eq={"booking_id": booking_id})
        if watermark is not None:
            filter.gt["created_at"] = watermark

        rows = await self._collab.query_rows(
            MESSAGES_TABLE, filter, order_by=["created_at", "id"]
        )
        messages = [Message.from_row(r) for r in rows]
        return [m for m in messages if m.visible_to(viewer_id, watermark)]

    async def delete_for_everyone(self, message_id: int, requester_id: str) -> None:
        """Physically remove a message. Only its sender may do this."""
        message = await self.get_message(message_id)
        if message.sender_id != requester_id:
            raise ConflictError(
                "You can only unsend your own messages",
                detail=f"message {message_id} belongs to another party",
            )
        removed = await self._collab.delete_row(MESSAGES_TABLE, message_id)
        if not removed:
            raise NotFoundError(
                "This message no longer exists",
                detail=f"message {message_id} already deleted",
            )
        log.info("Message %s unsent in booking %s", message_id, message.booking_id)

    async def delete_for_me(self, message_id: int, viewer_id: str) -> Message:
        """Add ``viewer_id`` to the message's ``hidden_by`` set."""
        for attempt in range(1, self._hide_attempts + 1):
            rows = await self._collab.query_rows(
                MESSAGES_TABLE, RowFilter(eq={"id": message_id})
            )
            if not rows:
                raise NotFoundError(
                    "This message no longer exists",
                    detail=f"message {message_id} not found",
                )
            current = rows[0].get("hidden_by")
            hidden = list(current or [])
            if viewer_id in hidden:
                return Message.from_row(rows[0])

            updated = await self._collab.update_row(
                MESSAGES_TABLE,
                message_id,
                {"hidden_by": hidden + [viewer_id]},
                expected={"hidden_by": current},
            )
            if updated is not None:
                return Message.from_row(updated)
            log.debug(
                "hidden_by of message %s changed underneath us (attempt %d/%d)",
                message_id,
                attempt,
                self._hide_attempts,
            )

        log.warning("Gave up hiding message %s after %d attempts", message_id, self._hide_attempts)
        raise ConflictError(
            "Couldn't delete the message. Please try again",
            detail=f"hidden_by contention on message {message_id}",
        )

    async def clear_chat_for_viewer(
        self,
        booking_id: str,
        viewer_id: str,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Move the viewer's watermark to ``now``. The other party is unaffected."""
        booking = await self._bookings.get_booking(booking_id)
        if not booking.involves(viewer_id):
            raise NotFoundError(detail=f"booking {booking_id} not visible to viewer")

        watermark = now or self._clock()
        row = await self._collab.update_row(
            BOOKINGS_TABLE,
            booking_id,
            {booking.cleared_at_column_for(viewer_id): watermark},
        )
        if row is None:
            raise NotFoundError(detail=f"booking {booking_id} withdrawn")
        log.info("Chat cleared in booking %s for %s", booking_id, redact_id(viewer_id))
        return watermark
