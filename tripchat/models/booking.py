"""Pydantic models for bookings and the trip tier catalog."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from tripchat.errors import TransportError, ValidationError

BOOKINGS_TABLE = "bookings"


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class Booking(BaseModel):
    """A proposed or active trip between exactly two parties.

    Field names follow the core's vocabulary; aliases are the column
    names used by the data collaborator, so ``Booking.from_row(row)``
    accepts a raw row and ``to_row()`` produces one.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    party_a: str = Field(alias="user_a")
    party_b: str = Field(alias="user_b")
    invited_by: str
    tier: str
    status: BookingStatus = BookingStatus.PENDING
    created_at: Optional[datetime] = None
    chat_started_at: Optional[datetime] = None
    party_a_cleared_at: Optional[datetime] = Field(default=None, alias="user_a_cleared_at")
    party_b_cleared_at: Optional[datetime] = Field(default=None, alias="user_b_cleared_at")

    @model_validator(mode="after")
    def _check_parties(self) -> "Booking":
        if self.party_a == self.party_b:
            raise ValueError("a booking needs two distinct parties")
        if self.invited_by not in (self.party_a, self.party_b):
            raise ValueError("invited_by must be one of the booking's parties")
        return self

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Booking":
        row = dict(row)
        if row.get("id") is not None:
            row["id"] = str(row["id"])
        try:
            return cls.model_validate(row)
        except PydanticValidationError as exc:
            raise TransportError(
                "Received an unexpected booking from the server",
                detail=str(exc),
            ) from exc

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    # ── Party helpers ─────────────────────────────────────────

    def involves(self, party_id: str) -> bool:
        return party_id in (self.party_a, self.party_b)

    def other_party(self, party_id: str) -> str:
        if party_id == self.party_a:
            return self.party_b
        if party_id == self.party_b:
            return self.party_a
        raise ValueError(f"{party_id!r} is not a party of booking {self.id}")

    def is_invited(self, party_id: str) -> bool:
        """True when ``party_id`` is the receiving side of the invitation."""
        return self.involves(party_id) and party_id != self.invited_by

    def cleared_at_for(self, party_id: str) -> Optional[datetime]:
        if party_id == self.party_a:
            return self.party_a_cleared_at
        if party_id == self.party_b:
            return self.party_b_cleared_at
        raise ValueError(f"{party_id!r} is not a party of booking {self.id}")

    def cleared_at_column_for(self, party_id: str) -> str:
        if party_id == self.party_a:
            return "user_a_cleared_at"
        if party_id == self.party_b:
            return "user_b_cleared_at"
        raise ValueError(f"{party_id!r} is not a party of booking {self.id}")

    @property
    def is_active(self) -> bool:
        return self.status is BookingStatus.ACTIVE


class Tier(BaseModel):
    """One selectable trip category."""

    id: str
    name: str
    price: str
    tag: str
    duration: str
    description: str = ""


TIERS: dict[str, Tier] = {
    t.id: t
    for t in (
        Tier(
            id="local",
            name="Local Explorer",
            price="£50 - £150",
            tag="First Date Vibes",
            duration="4-8 hours",
            description="Curated local experiences perfect for getting to know each other.",
        ),
        Tier(
            id="national",
            name="Weekend Escape",
            price="£200 - £800",
            tag="Mini Adventure",
            duration="2-3 days",
            description="Trips exploring your country with boutique stays.",
        ),
        Tier(
            id="international",
            name="International Journey",
            price="£800 - £2,000",
            tag="Passport Required",
            duration="4-7 days",
            description="A new country together, flights and accommodation included.",
        ),
        Tier(
            id="exotic",
            name="Exotic Adventure",
            price="£2,000+",
            tag="Bucket List Dream",
            duration="7-14 days",
            description="Premium everything for once-in-a-lifetime memories.",
        ),
    )
}


def get_tier(tier_id: str) -> Tier:
    """Look up a tier by key, raising ValidationError for unknown keys."""
    try:
        return TIERS[tier_id]
    except KeyError:
        raise ValidationError(
            "Please choose a trip tier",
            detail=f"unknown tier {tier_id!r}",
        ) from None
