"""Shared fixtures: a controllable clock and an in-memory store seen from two devices."""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tripchat.bookings import BookingService
from tripchat.collaborators.memory import InMemoryCollaborator, InMemoryStore
from tripchat.messages import MessageStore

ALICE = "alice-0001"
BOB = "bob-0002"
CAROL = "carol-0003"

T0 = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class SlowCollaborator(InMemoryCollaborator):
    """Reads messages, then yields to the loop before returning them.

    ``during_read`` runs once, after the rows were read and before they
    are returned, so it can commit changes the caller has not seen.
    """

    def __init__(self, store=None, identity=None, delay=0.0, during_read=None):
        super().__init__(store=store, identity=identity)
        self.delay = delay
        self.during_read = during_read

    async def query_rows(self, table, filter=None, order_by=None):
        rows = await super().query_rows(table, filter, order_by)
        if table == "messages":
            await asyncio.sleep(self.delay)
            hook, self.during_read = self.during_read, None
            if hook is not None:
                await hook()
        return rows


class FakeClock:
    """Returns ``now`` and then moves it forward by ``step`` on every call."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def alice_collab(store):
    return InMemoryCollaborator(store=store, identity=ALICE)


@pytest.fixture
def bob_collab(store):
    return InMemoryCollaborator(store=store, identity=BOB)


@pytest.fixture
def alice_bookings(alice_collab, clock):
    return BookingService(alice_collab, clock=clock, require_match=False)


@pytest.fixture
def bob_bookings(bob_collab, clock):
    return BookingService(bob_collab, clock=clock, require_match=False)


@pytest.fixture
def alice_messages(alice_collab, alice_bookings, clock):
    return MessageStore(alice_collab, bookings=alice_bookings, clock=clock, enforce_expiry=False)


@pytest.fixture
def bob_messages(bob_collab, bob_bookings, clock):
    return MessageStore(bob_collab, bookings=bob_bookings, clock=clock, enforce_expiry=False)


@pytest.fixture
async def active_booking(alice_bookings, bob_bookings):
    """A booking Alice proposed and Bob accepted."""
    booking = await alice_bookings.propose_trip(ALICE, BOB, "local")
    return await bob_bookings.accept_invitation(booking.id)
