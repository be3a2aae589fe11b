"""Ephemeral chat window derived from an active booking.

A chat is not stored on its own: it opens when a booking is accepted
(``chat_started_at``) and runs for ``settings.chat_window_hours``.
Expiry is computed on read and shown as a countdown; it is a soft limit
unless ``settings.enforce_chat_expiry`` is switched on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tripchat.config import settings
from tripchat.errors import ConflictError
from tripchat.models.booking import Booking

log = logging.getLogger("tripchat.chat")

EXPIRED_LABEL = "Expired"


def chat_window() -> timedelta:
    return timedelta(hours=settings.chat_window_hours)


@dataclass(frozen=True)
class RemainingTime:
    """Time left in a chat window, truncated to whole minutes."""

    hours: int
    minutes: int
    expired: bool = False

    @property
    def label(self) -> str:
        if self.expired:
            return EXPIRED_LABEL
        return f"{self.hours}h {self.minutes}m"

    def __str__(self) -> str:
        return self.label


def expires_at(booking: Booking) -> datetime:
    if booking.chat_started_at is None:
        raise ConflictError(
            "This chat hasn't started yet",
            detail=f"booking {booking.id} is {booking.status.value}",
        )
    return booking.chat_started_at + chat_window()


def remaining_time(booking: Booking, now: Optional[datetime] = None) -> RemainingTime:
    """Return ``chat_started_at + window - now`` as hours and minutes.

    A non-positive remainder is reported as expired.
    """
    now = now or datetime.now(timezone.utc)
    left = expires_at(booking) - now
    if left <= timedelta(0):
        return RemainingTime(0, 0, expired=True)
    total_minutes = int(left.total_seconds() // 60)
    return RemainingTime(total_minutes // 60, total_minutes % 60)


def is_expired(booking: Booking, now: Optional[datetime] = None) -> bool:
    return remaining_time(booking, now).expired


class ExpiryTimer:
    """Recompute a booking's remaining time on a fixed interval.

    Runs as a single asyncio task that calls ``on_tick`` immediately and
    then every ``interval`` seconds.  It stops on its own after reporting
    an expired window, and must be stopped explicitly when the chat view
    goes away::

        async with ExpiryTimer(booking, lambda r: print(r.label)):
            ...
    """

    def __init__(
        self,
        booking: Booking,
        on_tick: Callable[[RemainingTime], None],
        interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._booking = booking
        self._on_tick = on_tick
        self._interval = settings.countdown_interval_seconds if interval is None else interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: asyncio.Task | None = None
        self.last: RemainingTime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        expires_at(self._booking)  # raises for pending bookings
        self._task = asyncio.create_task(self._run(), name=f"expiry-{self._booking.id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            self.last = remaining_time(self._booking, self._clock())
            self._on_tick(self.last)
            if self.last.expired:
                log.info("Chat window expired for booking %s", self._booking.id)
                return
            await asyncio.sleep(self._interval)

    async def __aenter__(self) -> "ExpiryTimer":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
