"""Booking state machine — trip invitations between two parties.

States for an unordered pair of parties::

    NONE ──propose──▶ PENDING ──accept──▶ ACTIVE
      ▲                  │
      └──decline/cancel──┘

There is no persisted declined/cancelled/expired state: decline and
cancel delete the row, and chat expiry is derived from
``chat_started_at`` at read time (see ``tripchat.chat``).

At most one booking may exist per pair.  Two mechanisms keep it that way
without locks:

  1. ``propose_trip`` deletes any rows for the pair right before it
     inserts the new one.
  2. ``get_booking_for_pair`` repairs duplicates left by racing
     proposals, keeping the most recently created row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from tripchat.collaborators.base import DataCollaborator, RowFilter, pair_filters
from tripchat.config import settings
from tripchat.errors import (
    ConflictError,
    NotFoundError,
    NotMatchedError,
    TransportError,
    ValidationError,
)
from tripchat.models.booking import BOOKINGS_TABLE, Booking, BookingStatus, get_tier

log = logging.getLogger("tripchat.bookings")

Clock = Callable[[], datetime]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def redact_id(value: str) -> str:
    """Mask party ids for logging, showing the first 4 chars only."""
    if not value or len(value) <= 6:
        return "***"
    return value[:4] + "***"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first(bookings: list[Booking]) -> list[Booking]:
    return sorted(
        bookings,
        key=lambda b: (b.created_at or _EPOCH, b.id),
        reverse=True,
    )


async def resolve_party(collaborator: DataCollaborator, party_id: Optional[str]) -> str:
    """Return ``party_id`` or fall back to the collaborator's signed-in identity."""
    if party_id:
        return party_id
    identity = await collaborator.get_current_identity()
    if not identity:
        raise TransportError(
            "Your session has expired. Please sign in again",
            detail="no current identity",
            status_code=401,
        )
    return identity


class BookingService:
    """Propose, accept, decline and cancel trip invitations.

    Typical lifecycle::

        service = BookingService(collaborator)
        booking = await service.propose_trip(me, them, "local")
        # ... on the other device
        booking = await service.accept_invitation(booking.id)
    """

    def __init__(
        self,
        collaborator: DataCollaborator,
        clock: Optional[Clock] = None,
        require_match: Optional[bool] = None,
    ) -> None:
        self._collab = collaborator
        self._clock = clock or _utcnow
        self._require_match = (
            settings.require_match if require_match is None else require_match
        )

    # ── Lookups ───────────────────────────────────────────────

    async def get_booking(self, booking_id: str) -> Booking:
        """Fetch one booking, raising NotFoundError when it is gone."""
        rows = await self._collab.query_rows(
            BOOKINGS_TABLE, RowFilter(eq={"id": booking_id})
        )
        if not rows:
            raise NotFoundError(detail=f"booking {booking_id} not found")
        return Booking.from_row(rows[0])

    async def get_booking_for_pair(self, self_id: str, other_id: str) -> Optional[Booking]:
        """Return the pair's booking, deleting duplicates left by races.

        Keeps the most recently created row.  Running this repeatedly on
        the same data converges on a single row regardless of call order.
        """
        bookings = await self._fetch_pair(self_id, other_id)
        if not bookings:
            return None

        survivor, *stale = _newest_first(bookings)
        for duplicate in stale:
            removed = await self._collab.delete_row(BOOKINGS_TABLE, duplicate.id)
            if removed:
                log.warning(
                    "Removed duplicate booking %s for pair %s/%s (kept %s)",
                    duplicate.id,
                    redact_id(self_id),
                    redact_id(other_id),
                    survivor.id,
                )
        return survivor

    @staticmethod
    def role_for(booking: Booking, party_id: str) -> str:
        """``"sent"`` if ``party_id`` invited, ``"received"`` if invited."""
        if not booking.involves(party_id):
            raise ValueError(f"party is not part of booking {booking.id}")
        return "sent" if booking.invited_by == party_id else "received"

    # ── Transitions ───────────────────────────────────────────

    async def propose_trip(
        self,
        self_id: str,
        other_id: str,
        tier: str,
        *,
        known_booking: Optional[Booking] = None,
    ) -> Booking:
        """Create a pending invitation from ``self_id`` to ``other_id``.

        ``known_booking`` is the caller's current view of the pair; if it
        shows an existing booking the proposal is refused up front.  The
        delete-then-insert below is the authoritative race mitigation.
        """
        if not self_id or not other_id:
            raise ValidationError("Please choose who to invite", detail="missing party id")
        if self_id == other_id:
            raise ValidationError("You can't invite yourself", detail="self proposal")
        get_tier(tier)

        if (
            known_booking is not None
            and known_booking.involves(self_id)
            and known_booking.involves(other_id)
        ):
            raise ConflictError(detail=f"booking {known_booking.id} already exists")

        if self._require_match:
            matched = await self._collab.call_rpc(
                "check_match",
                {"current_user_id": self_id, "target_user_id": other_id},
            )
            if not matched:
                raise NotMatchedError()

        for pair in pair_filters(self_id, other_id):
            removed = await self._collab.delete_rows(BOOKINGS_TABLE, pair)
            if removed:
                log.info(
                    "Cleared %d stale booking(s) before proposal %s -> %s",
                    removed,
                    redact_id(self_id),
                    redact_id(other_id),
                )

        row = await self._collab.insert_row(
            BOOKINGS_TABLE,
            {
                "user_a": self_id,
                "user_b": other_id,
                "invited_by": self_id,
                "tier": tier,
                "status": BookingStatus.PENDING.value,
            },
        )
        booking = Booking.from_row(row)
        log.info(
            "Trip proposed: booking=%s tier=%s from=%s to=%s",
            booking.id,
            tier,
            redact_id(self_id),
            redact_id(other_id),
        )
        return booking

    async def accept_invitation(
        self, booking_id: str, party_id: Optional[str] = None
    ) -> Booking:
        """Move a pending booking to active and start its chat window."""
        party = await resolve_party(self._collab, party_id)
        booking = await self.get_booking(booking_id)

        if not booking.involves(party):
            raise NotFoundError(detail=f"booking {booking_id} not visible to party")
        if booking.is_active:
            raise ConflictError(
                "This trip has already been accepted",
                detail=f"booking {booking_id} is active",
            )
        if not booking.is_invited(party):
            raise ConflictError(
                "Only the invited party can accept",
                detail=f"booking {booking_id} was sent by this party",
            )

        row = await self._collab.update_row(
            BOOKINGS_TABLE,
            booking_id,
            {
                "status": BookingStatus.ACTIVE.value,
                "chat_started_at": self._clock(),
            },
            expected={"status": BookingStatus.PENDING.value},
        )
        if row is None:
            # Lost a race: the row was deleted or accepted since we read it
            rows = await self._collab.query_rows(
                BOOKINGS_TABLE, RowFilter(eq={"id": booking_id})
            )
            if not rows:
                raise NotFoundError(detail=f"booking {booking_id} withdrawn")
            raise ConflictError(
                "This trip has already been accepted",
                detail=f"booking {booking_id} no longer pending",
            )

        accepted = Booking.from_row(row)
        log.info("Invitation accepted: booking=%s by=%s", booking_id, redact_id(party))
        return accepted

    async def decline_invitation(
        self, booking_id: str, party_id: Optional[str] = None
    ) -> None:
        """Invited party rejects the trip. The row is deleted."""
        await self._withdraw(booking_id, party_id, "declined")

    async def cancel_invitation(
        self, booking_id: str, party_id: Optional[str] = None
    ) -> None:
        """Inviting party withdraws the trip. The row is deleted."""
        await self._withdraw(booking_id, party_id, "cancelled")

    # ── Helpers ───────────────────────────────────────────────

    async def _withdraw(self, booking_id: str, party_id: Optional[str], verb: str) -> None:
        party = await resolve_party(self._collab, party_id)
        booking = await self.get_booking(booking_id)
        if not booking.involves(party):
            raise NotFoundError(detail=f"booking {booking_id} not visible to party")

        removed = await self._collab.delete_row(BOOKINGS_TABLE, booking_id)
        if not removed:
            raise NotFoundError(detail=f"booking {booking_id} already withdrawn")
        log.info("Invitation %s: booking=%s by=%s", verb, booking_id, redact_id(party))

    async def _fetch_pair(self, self_id: str, other_id: str) -> list[Booking]:
        seen: dict[str, Booking] = {}
        for pair in pair_filters(self_id, other_id):
            for row in await self._collab.query_rows(BOOKINGS_TABLE, pair):
                booking = Booking.from_row(row)
                seen[booking.id] = booking
        return list(seen.values())
