"""Tests for the realtime merge rule and the live MessageFeed."""

import pytest

from conftest import ALICE, BOB, T0, SlowCollaborator
from tripchat.collaborators.base import ChangeEvent, ChangeType
from tripchat.errors import TransportError
from tripchat.messages import MessageStore
from tripchat.models.message import Message
from tripchat.realtime import MessageFeed, reconcile


def _row(id, sender=ALICE, hidden_by=None, content="hi"):
    return {
        "id": id,
        "booking_id": "b-1",
        "sender_id": sender,
        "content": content,
        "created_at": T0.isoformat(),
        "hidden_by": hidden_by,
    }


def _msgs(*ids):
    return [Message.from_row(_row(i)) for i in ids]


class TestReconcile:
    def test_insert_appends(self):
        result = reconcile(_msgs(1), ChangeEvent(ChangeType.INSERT, new=_row(2)), BOB)
        assert [m.id for m in result] == [1, 2]

    def test_insert_appends_without_resorting(self):
        result = reconcile(_msgs(5), ChangeEvent(ChangeType.INSERT, new=_row(3)), BOB)
        assert [m.id for m in result] == [5, 3]

    def test_duplicate_insert_ignored(self):
        messages = _msgs(1, 2)
        assert reconcile(messages, ChangeEvent(ChangeType.INSERT, new=_row(2)), BOB) is messages

    def test_insert_hidden_for_viewer_ignored(self):
        messages = _msgs(1)
        event = ChangeEvent(ChangeType.INSERT, new=_row(2, hidden_by=[BOB]))
        assert reconcile(messages, event, BOB) is messages

    def test_delete_removes(self):
        result = reconcile(_msgs(1, 2, 3), ChangeEvent(ChangeType.DELETE, old={"id": 2}), BOB)
        assert [m.id for m in result] == [1, 3]

    def test_delete_without_id_ignored(self):
        messages = _msgs(1)
        assert reconcile(messages, ChangeEvent(ChangeType.DELETE, old={}), BOB) is messages

    def test_update_hiding_viewer_removes(self):
        event = ChangeEvent(ChangeType.UPDATE, new=_row(2, hidden_by=[BOB]))
        assert [m.id for m in reconcile(_msgs(1, 2), event, BOB)] == [1]

    def test_update_hiding_other_viewer_kept(self):
        messages = _msgs(1, 2)
        event = ChangeEvent(ChangeType.UPDATE, new=_row(2, hidden_by=[ALICE]))
        assert reconcile(messages, event, BOB) is messages

    def test_delete_of_unknown_id_keeps_list(self):
        messages = _msgs(1, 2)
        assert reconcile(messages, ChangeEvent(ChangeType.DELETE, old={"id": 7}), BOB) is messages

    def test_update_hiding_unknown_id_keeps_list(self):
        messages = _msgs(1, 2)
        event = ChangeEvent(ChangeType.UPDATE, new=_row(7, hidden_by=[BOB]))
        assert reconcile(messages, event, BOB) is messages

    def test_input_not_mutated(self):
        messages = _msgs(1)
        reconcile(messages, ChangeEvent(ChangeType.INSERT, new=_row(2)), BOB)
        assert [m.id for m in messages] == [1]


@pytest.fixture
async def bob_feed(active_booking, bob_messages, bob_collab):
    feed = MessageFeed(bob_messages, bob_collab, active_booking.id, BOB)
    await feed.open()
    yield feed
    await feed.close()


class TestMessageFeed:
    @pytest.mark.asyncio
    async def test_open_loads_existing(self, active_booking, alice_messages, bob_messages, bob_collab):
        await alice_messages.send_message(active_booking.id, ALICE, "already here")
        feed = MessageFeed(bob_messages, bob_collab, active_booking.id, BOB)
        messages = await feed.open()
        assert [m.content for m in messages] == ["already here"]
        assert feed.is_subscribed
        await feed.close()

    @pytest.mark.asyncio
    async def test_receives_other_party_insert(self, bob_feed, alice_messages, active_booking):
        seen = []
        bob_feed.add_listener(lambda change, messages: seen.append((change, [m.content for m in messages])))

        await alice_messages.send_message(active_booking.id, ALICE, "ping")
        assert [m.content for m in bob_feed.messages] == ["ping"]
        assert seen == [(ChangeType.INSERT, ["ping"])]

    @pytest.mark.asyncio
    async def test_scenario_unsend_reaches_other_device(self, bob_feed, alice_messages, active_booking):
        oops = await alice_messages.send_message(active_booking.id, ALICE, "oops")
        assert [m.id for m in bob_feed.messages] == [oops.id]

        await alice_messages.delete_for_everyone(oops.id, ALICE)
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_other_viewers_hide_does_not_affect_feed(self, bob_feed, alice_messages, active_booking):
        msg = await alice_messages.send_message(active_booking.id, ALICE, "mine")
        seen = []
        bob_feed.add_listener(lambda change, messages: seen.append(change))

        await alice_messages.delete_for_me(msg.id, ALICE)
        assert [m.id for m in bob_feed.messages] == [msg.id]
        assert seen == []

    @pytest.mark.asyncio
    async def test_own_hide_from_another_device(self, bob_feed, bob_messages, alice_messages, active_booking):
        msg = await alice_messages.send_message(active_booking.id, ALICE, "bye")
        await bob_messages.delete_for_me(msg.id, BOB)
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_other_booking_ignored(self, bob_feed, store, alice_collab):
        await alice_collab.insert_row(
            "messages", {"booking_id": "another", "sender_id": ALICE, "content": "elsewhere"}
        )
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_malformed_event_dropped(self, bob_feed):
        bob_feed.apply(ChangeEvent(ChangeType.INSERT, new={"id": 99, "content": "broken"}))
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_closed_feed_stops_listening(self, bob_feed, alice_messages, active_booking):
        await bob_feed.close()
        assert not bob_feed.is_subscribed
        await alice_messages.send_message(active_booking.id, ALICE, "unheard")
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_refresh_recovers_missed_events(self, bob_feed, alice_messages, active_booking):
        await bob_feed.close()
        await alice_messages.send_message(active_booking.id, ALICE, "while away")

        messages = await bob_feed.refresh()
        assert [m.content for m in messages] == ["while away"]

    @pytest.mark.asyncio
    async def test_local_edits(self, bob_feed, bob_messages, active_booking):
        sent = await bob_messages.send_message(active_booking.id, BOB, "local")
        bob_feed.add_local(sent)
        assert [m.id for m in bob_feed.messages] == [sent.id]

        removed = bob_feed.remove_local(sent.id)
        assert removed == (0, sent)
        assert bob_feed.remove_local(sent.id) is None

        bob_feed.restore_local(*removed)
        bob_feed.restore_local(*removed)
        assert [m.id for m in bob_feed.messages] == [sent.id]

        bob_feed.clear_local()
        assert bob_feed.messages == []

    @pytest.mark.asyncio
    async def test_delete_of_unseen_message_does_not_notify(self, bob_feed):
        seen = []
        bob_feed.add_listener(lambda change, messages: seen.append(change))
        bob_feed.apply(ChangeEvent(ChangeType.DELETE, old={"id": 404}))
        assert seen == []


def _slow_feed(store, bookings, clock, booking_id, during_read=None):
    slow = SlowCollaborator(store=store, identity=BOB, during_read=during_read)
    messages = MessageStore(slow, bookings=bookings, clock=clock)
    return MessageFeed(messages, slow, booking_id, BOB), slow


class TestChangesDuringLoad:
    @pytest.mark.asyncio
    async def test_insert_during_open_is_kept(self, active_booking, alice_messages, bob_bookings, store, clock):
        async def alice_sends():
            await alice_messages.send_message(active_booking.id, ALICE, "just in time")

        feed, _ = _slow_feed(store, bob_bookings, clock, active_booking.id, alice_sends)
        messages = await feed.open()
        assert [m.content for m in messages] == ["just in time"]
        assert [m.content for m in feed.messages] == ["just in time"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_delete_during_open_is_applied(self, active_booking, alice_messages, bob_bookings, store, clock):
        doomed = await alice_messages.send_message(active_booking.id, ALICE, "doomed")
        kept = await alice_messages.send_message(active_booking.id, ALICE, "kept")

        async def alice_unsends():
            await alice_messages.delete_for_everyone(doomed.id, ALICE)

        feed, _ = _slow_feed(store, bob_bookings, clock, active_booking.id, alice_unsends)
        await feed.open()
        assert [m.id for m in feed.messages] == [kept.id]
        await feed.close()

    @pytest.mark.asyncio
    async def test_insert_during_refresh_is_kept(self, active_booking, alice_messages, bob_bookings, store, clock):
        feed, slow = _slow_feed(store, bob_bookings, clock, active_booking.id)
        await feed.open()

        async def alice_sends():
            await alice_messages.send_message(active_booking.id, ALICE, "mid refresh")

        slow.during_read = alice_sends
        messages = await feed.refresh()
        assert [m.content for m in messages] == ["mid refresh"]
        await feed.close()

    @pytest.mark.asyncio
    async def test_failed_open_leaves_no_subscription(self, active_booking, bob_messages, bob_collab, store):
        feed = MessageFeed(bob_messages, bob_collab, active_booking.id, BOB)
        store.fail_next("query_rows")
        with pytest.raises(TransportError):
            await feed.open()
        assert not feed.is_subscribed
        assert store._listeners == []
