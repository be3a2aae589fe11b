"""FastAPI application — HTTP + WebSocket surface over the booking/chat core.

Endpoints:

  GET    /health                        Health check
  GET    /tiers                         Trip tier catalog
  POST   /bookings                      Propose a trip
  GET    /bookings/with/{other_id}      Current booking for a pair (repairs duplicates)
  POST   /bookings/{id}/accept          Accept an invitation
  POST   /bookings/{id}/decline         Decline an invitation
  POST   /bookings/{id}/cancel          Cancel a sent invitation
  GET    /bookings/{id}/remaining       Time left in the chat window
  GET    /bookings/{id}/messages        Messages visible to the caller
  POST   /bookings/{id}/messages        Send a message
  POST   /bookings/{id}/clear           Clear the chat for the caller
  DELETE /messages/{id}?scope=me        Hide a message for the caller
  DELETE /messages/{id}?scope=everyone  Unsend a message
  WS     /bookings/{id}/ws?token=       Live message list for the caller

Every request carries the caller's data-service access token; the
collaborator built for that token decides who the caller is.
"""

from __future__ import annotations

# Load .env into os.environ before settings-dependent objects are built.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tripchat.auth import (
    Caller,
    CollaboratorFactory,
    close_collaborator,
    require_identity,
    resolve_ws_caller,
)
from tripchat.bookings import BookingService
from tripchat.chat import remaining_time
from tripchat.collaborators.memory import InMemoryCollaborator
from tripchat.config import settings
from tripchat.errors import (
    ConflictError,
    NotFoundError,
    TransportError,
    TripChatError,
    ValidationError,
)
from tripchat.events import get_broadcaster, remove_broadcaster
from tripchat.messages import MessageStore
from tripchat.models.booking import TIERS, Booking
from tripchat.realtime import MessageFeed

log = logging.getLogger("tripchat.app")

_START_TIME = time.time()

_STATUS_BY_ERROR: dict[type[TripChatError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    TransportError: 502,
}


class ProposeRequest(BaseModel):
    other_id: str
    tier: str


class SendRequest(BaseModel):
    content: str


def status_for(exc: TripChatError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


def booking_view(booking: Booking, party_id: str) -> dict:
    data = booking.model_dump(mode="json")
    data["role"] = BookingService.role_for(booking, party_id)
    return data


def default_collaborator_factory() -> CollaboratorFactory:
    """Build the per-token collaborator factory selected by settings.

    With ``DATA_BACKEND=memory`` every token is taken to be a party id and
    all callers share one in-process store (local development only).
    """
    if settings.data_backend == "memory":
        shared = InMemoryCollaborator()
        return lambda token: shared.for_identity(token)

    from tripchat.collaborators.hosted import HostedCollaborator

    return lambda token: HostedCollaborator(access_token=token)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TripChatError)
    async def trip_chat_error_handler(request: Request, exc: TripChatError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            log.warning("%s %s -> %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"code": exc.code, "detail": exc.user_message, "retryable": exc.retryable},
            status_code=code,
        )


def create_app(collaborator_factory: Optional[CollaboratorFactory] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Without an explicit ``collaborator_factory`` the backend is chosen by
    settings, which are validated when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if collaborator_factory is None:
            for warning in settings.validate_startup():
                log.warning(warning)
        yield

    app = FastAPI(
        title="Trip Chat",
        description="Trip invitations and ephemeral chat between matched travellers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.collaborator_factory = collaborator_factory or default_collaborator_factory()
    register_error_handlers(app)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    @app.get("/tiers")
    async def list_tiers() -> JSONResponse:
        return JSONResponse({"tiers": [t.model_dump() for t in TIERS.values()]})

    # ── Bookings ───────────────────────────────────────────────

    @app.post("/bookings", status_code=201)
    async def propose(body: ProposeRequest, caller: Caller = Depends(require_identity)):
        service = BookingService(caller.collaborator)
        current = await service.get_booking_for_pair(caller.party_id, body.other_id)
        booking = await service.propose_trip(
            caller.party_id, body.other_id, body.tier, known_booking=current
        )
        return booking_view(booking, caller.party_id)

    @app.get("/bookings/with/{other_id}")
    async def booking_for_pair(other_id: str, caller: Caller = Depends(require_identity)):
        service = BookingService(caller.collaborator)
        booking = await service.get_booking_for_pair(caller.party_id, other_id)
        return {"booking": booking_view(booking, caller.party_id) if booking else None}

    @app.post("/bookings/{booking_id}/accept")
    async def accept(booking_id: str, caller: Caller = Depends(require_identity)):
        service = BookingService(caller.collaborator)
        booking = await service.accept_invitation(booking_id, caller.party_id)
        return booking_view(booking, caller.party_id)

    @app.post("/bookings/{booking_id}/decline", status_code=204)
    async def decline(booking_id: str, caller: Caller = Depends(require_identity)) -> None:
        await BookingService(caller.collaborator).decline_invitation(booking_id, caller.party_id)

    @app.post("/bookings/{booking_id}/cancel", status_code=204)
    async def cancel(booking_id: str, caller: Caller = Depends(require_identity)) -> None:
        await BookingService(caller.collaborator).cancel_invitation(booking_id, caller.party_id)

    @app.get("/bookings/{booking_id}/remaining")
    async def remaining(booking_id: str, caller: Caller = Depends(require_identity)):
        booking = await BookingService(caller.collaborator).get_booking(booking_id)
        if not booking.involves(caller.party_id):
            raise NotFoundError(detail=f"booking {booking_id} not visible to caller")
        left = remaining_time(booking)
        return {
            "hours": left.hours,
            "minutes": left.minutes,
            "expired": left.expired,
            "label": left.label,
        }

    # ── Messages ───────────────────────────────────────────────

    @app.get("/bookings/{booking_id}/messages")
    async def list_messages(booking_id: str, caller: Caller = Depends(require_identity)):
        store = MessageStore(caller.collaborator)
        messages = await store.list_visible_messages(booking_id, caller.party_id)
        return {"messages": [m.model_dump(mode="json") for m in messages]}

    @app.post("/bookings/{booking_id}/messages", status_code=201)
    async def send(booking_id: str, body: SendRequest, caller: Caller = Depends(require_identity)):
        store = MessageStore(caller.collaborator)
        message = await store.send_message(booking_id, caller.party_id, body.content)
        return message.model_dump(mode="json")

    @app.post("/bookings/{booking_id}/clear")
    async def clear(booking_id: str, caller: Caller = Depends(require_identity)):
        store = MessageStore(caller.collaborator)
        watermark = await store.clear_chat_for_viewer(booking_id, caller.party_id)
        return {"cleared_at": watermark.isoformat()}

    @app.delete("/messages/{message_id}", status_code=204)
    async def delete_message(
        message_id: int,
        scope: Literal["me", "everyone"] = Query(default="me"),
        caller: Caller = Depends(require_identity),
    ) -> None:
        store = MessageStore(caller.collaborator)
        if scope == "everyone":
            await store.delete_for_everyone(message_id, caller.party_id)
        else:
            await store.delete_for_me(message_id, caller.party_id)

    # ── Live message stream ────────────────────────────────────

    @app.websocket("/bookings/{booking_id}/ws")
    async def message_stream(
        websocket: WebSocket,
        booking_id: str,
        token: str = Query(default=""),
    ) -> None:
        """Stream the caller's message list, one snapshot per applied change."""
        caller = await resolve_ws_caller(websocket, token)
        if caller is None:
            return

        try:
            booking = await BookingService(caller.collaborator).get_booking(booking_id)
        except TripChatError:
            booking = None
        if booking is None or not booking.involves(caller.party_id):
            await close_collaborator(caller.collaborator)
            await websocket.close(code=4004, reason="Booking not found")
            return

        await websocket.accept()
        broadcaster = get_broadcaster(booking_id, caller.party_id)
        # Subscribe before any await so the room cannot be torn down under us
        queue = broadcaster.subscribe()
        adopted = False
        pump: Optional[asyncio.Task] = None

        async def _pump() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event)

        try:
            feed = MessageFeed(
                MessageStore(caller.collaborator),
                caller.collaborator,
                booking_id,
                caller.party_id,
            )
            try:
                adopted = await broadcaster.open_feed(feed, owner=caller.collaborator)
            except TripChatError as exc:
                log.warning("Could not open feed for booking %s: %s", booking_id, exc)
                await websocket.close(code=4002, reason=exc.user_message)
                return

            # Anything queued while the feed opened is older than this snapshot
            while not queue.empty():
                queue.get_nowait()
            await websocket.send_json(broadcaster.snapshot())
            pump = asyncio.create_task(_pump())
            # Inbound frames are commands; "refresh" forces a full re-fetch
            while True:
                command = await websocket.receive_text()
                if command.strip() == "refresh" and broadcaster.feed is not None:
                    messages = await broadcaster.feed.refresh()
                    broadcaster.emit("snapshot", messages)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning("Message stream error for %s: %s", booking_id, e)
        finally:
            if pump is not None:
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    log.debug("Message pump for %s ended with %s", booking_id, e)
            broadcaster.unsubscribe(queue)
            if not adopted:
                await close_collaborator(caller.collaborator)
            if broadcaster.subscriber_count == 0:
                remove_broadcaster(booking_id, caller.party_id, broadcaster)
                await broadcaster.detach_feed()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tripchat.app:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
    )
