"""Data models for the booking and chat core."""

from .booking import BOOKINGS_TABLE, TIERS, Booking, BookingStatus, Tier, get_tier
from .message import MESSAGES_TABLE, Message

__all__ = [
    "BOOKINGS_TABLE",
    "MESSAGES_TABLE",
    "TIERS",
    "Booking",
    "BookingStatus",
    "Message",
    "Tier",
    "get_tier",
]
