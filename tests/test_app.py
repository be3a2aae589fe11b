"""HTTP and WebSocket surface tests, backed by a shared in-memory store.

In memory mode the bearer token is the party id.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ALICE, BOB, CAROL
from tripchat.app import create_app
from tripchat.collaborators.memory import InMemoryCollaborator
from tripchat.errors import INVITATION_EXISTS, INVITATION_UNAVAILABLE


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def shared():
    return InMemoryCollaborator()


@pytest.fixture
def client(shared):
    app = create_app(lambda token: shared.for_identity(token))
    with TestClient(app) as c:
        yield c


def _propose(client, me=ALICE, other=BOB, tier="local"):
    return client.post("/bookings", json={"other_id": other, "tier": tier}, headers=_auth(me))


def _active_booking(client):
    booking = _propose(client).json()
    resp = client.post(f"/bookings/{booking['id']}/accept", headers=_auth(BOB))
    assert resp.status_code == 200
    return resp.json()


# ── Basics ─────────────────────────────────────────────────────────


class TestBasics:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_tiers(self, client):
        tiers = client.get("/tiers").json()["tiers"]
        assert [t["id"] for t in tiers] == ["local", "national", "international", "exotic"]

    def test_missing_token(self, client):
        assert client.post("/bookings", json={"other_id": BOB, "tier": "local"}).status_code == 401


# ── Booking lifecycle ──────────────────────────────────────────────


class TestBookings:
    def test_propose_and_accept(self, client):
        resp = _propose(client)
        assert resp.status_code == 201
        booking = resp.json()
        assert booking["status"] == "pending"
        assert booking["role"] == "sent"

        seen_by_bob = client.get(f"/bookings/with/{ALICE}", headers=_auth(BOB)).json()["booking"]
        assert seen_by_bob["id"] == booking["id"]
        assert seen_by_bob["role"] == "received"

        accepted = client.post(f"/bookings/{booking['id']}/accept", headers=_auth(BOB)).json()
        assert accepted["status"] == "active"
        assert accepted["chat_started_at"] is not None

    def test_no_booking_for_pair(self, client):
        resp = client.get(f"/bookings/with/{BOB}", headers=_auth(ALICE))
        assert resp.json() == {"booking": None}

    def test_second_proposal_conflicts(self, client):
        _propose(client)
        resp = _propose(client, me=BOB, other=ALICE)
        assert resp.status_code == 409
        body = resp.json()
        assert body["detail"] == INVITATION_EXISTS
        assert body["retryable"] is False

    def test_unknown_tier(self, client):
        resp = _propose(client, tier="lunar")
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation"

    def test_inviter_cannot_accept(self, client):
        booking = _propose(client).json()
        resp = client.post(f"/bookings/{booking['id']}/accept", headers=_auth(ALICE))
        assert resp.status_code == 409

    def test_decline_then_gone(self, client):
        booking = _propose(client).json()
        assert client.post(f"/bookings/{booking['id']}/decline", headers=_auth(BOB)).status_code == 204

        resp = client.post(f"/bookings/{booking['id']}/accept", headers=_auth(BOB))
        assert resp.status_code == 404
        assert resp.json()["detail"] == INVITATION_UNAVAILABLE

    def test_cancel_then_repropose(self, client):
        booking = _propose(client).json()
        assert client.post(f"/bookings/{booking['id']}/cancel", headers=_auth(ALICE)).status_code == 204
        assert _propose(client, tier="exotic").status_code == 201

    def test_outsider_sees_not_found(self, client):
        booking = _propose(client).json()
        resp = client.post(f"/bookings/{booking['id']}/accept", headers=_auth(CAROL))
        assert resp.status_code == 404

    def test_remaining_time(self, client):
        booking = _active_booking(client)
        left = client.get(f"/bookings/{booking['id']}/remaining", headers=_auth(ALICE)).json()
        assert left["expired"] is False
        assert left["hours"] in (23, 24)
        assert left["label"].endswith("m")

    def test_remaining_time_pending_conflicts(self, client):
        booking = _propose(client).json()
        resp = client.get(f"/bookings/{booking['id']}/remaining", headers=_auth(ALICE))
        assert resp.status_code == 409


# ── Messages ───────────────────────────────────────────────────────


class TestMessages:
    def _send(self, client, booking_id, who, content):
        resp = client.post(f"/bookings/{booking_id}/messages", json={"content": content}, headers=_auth(who))
        assert resp.status_code == 201
        return resp.json()

    def _contents(self, client, booking_id, who):
        resp = client.get(f"/bookings/{booking_id}/messages", headers=_auth(who))
        return [m["content"] for m in resp.json()["messages"]]

    def test_send_and_list(self, client):
        booking = _active_booking(client)
        self._send(client, booking["id"], ALICE, "hello")
        self._send(client, booking["id"], BOB, "hi!")
        assert self._contents(client, booking["id"], BOB) == ["hello", "hi!"]

    def test_blank_message(self, client):
        booking = _active_booking(client)
        resp = client.post(f"/bookings/{booking['id']}/messages", json={"content": "  "}, headers=_auth(ALICE))
        assert resp.status_code == 422

    def test_delete_scopes(self, client):
        booking = _active_booking(client)
        hello = self._send(client, booking["id"], ALICE, "hello")
        oops = self._send(client, booking["id"], ALICE, "oops")

        assert client.delete(f"/messages/{hello['id']}?scope=me", headers=_auth(ALICE)).status_code == 204
        assert client.delete(f"/messages/{oops['id']}?scope=everyone", headers=_auth(ALICE)).status_code == 204

        assert self._contents(client, booking["id"], ALICE) == []
        assert self._contents(client, booking["id"], BOB) == ["hello"]

    def test_unsend_others_message(self, client):
        booking = _active_booking(client)
        msg = self._send(client, booking["id"], ALICE, "mine")
        resp = client.delete(f"/messages/{msg['id']}?scope=everyone", headers=_auth(BOB))
        assert resp.status_code == 409
        assert resp.json()["detail"] == "You can only unsend your own messages"

    def test_clear(self, client):
        booking = _active_booking(client)
        self._send(client, booking["id"], BOB, "before")
        resp = client.post(f"/bookings/{booking['id']}/clear", headers=_auth(ALICE))
        assert resp.status_code == 200
        assert "cleared_at" in resp.json()

        assert self._contents(client, booking["id"], ALICE) == []
        assert self._contents(client, booking["id"], BOB) == ["before"]

    def test_outsider_cannot_read(self, client):
        booking = _active_booking(client)
        resp = client.get(f"/bookings/{booking['id']}/messages", headers=_auth(CAROL))
        assert resp.status_code == 404


# ── WebSocket stream ───────────────────────────────────────────────


class TestMessageStream:
    def test_snapshot_then_live_insert(self, client):
        booking = _active_booking(client)
        client.post(f"/bookings/{booking['id']}/messages", json={"content": "earlier"}, headers=_auth(ALICE))

        with client.websocket_connect(f"/bookings/{booking['id']}/ws?token={BOB}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert [m["content"] for m in snapshot["messages"]] == ["earlier"]

            client.post(f"/bookings/{booking['id']}/messages", json={"content": "live"}, headers=_auth(ALICE))
            event = ws.receive_json()
            assert event["type"] == "INSERT"
            assert [m["content"] for m in event["messages"]] == ["earlier", "live"]

    def test_refresh_command(self, client):
        booking = _active_booking(client)
        with client.websocket_connect(f"/bookings/{booking['id']}/ws?token={ALICE}") as ws:
            ws.receive_json()
            ws.send_text("refresh")
            event = ws.receive_json()
            assert event["type"] == "snapshot"
            assert event["messages"] == []

    def test_missing_token_rejected(self, client):
        booking = _active_booking(client)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/bookings/{booking['id']}/ws") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_outsider_rejected(self, client):
        booking = _active_booking(client)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/bookings/{booking['id']}/ws?token={CAROL}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4004

    def test_two_connections_share_a_room(self, client, shared):
        booking = _active_booking(client)
        url = f"/bookings/{booking['id']}/ws?token={BOB}"
        with client.websocket_connect(url) as first, client.websocket_connect(url) as second:
            first.receive_json()
            second.receive_json()
            assert len(shared.store._listeners) == 1

            client.post(f"/bookings/{booking['id']}/messages", json={"content": "both"}, headers=_auth(ALICE))
            assert [m["content"] for m in first.receive_json()["messages"]] == ["both"]
            assert [m["content"] for m in second.receive_json()["messages"]] == ["both"]
