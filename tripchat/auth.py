"""Identity dependencies for the HTTP and WebSocket surface.

Callers present their data-service access token; the collaborator built
for that token resolves it to a party id.  Two guards:

  - require_identity()  — HTTP endpoints (Bearer token in Authorization header)
  - resolve_ws_caller() — WebSocket endpoints (?token= query param)

Behavior matrix:
  token resolves to a party      → allow, caller bound to that party
  token missing / not resolvable → 401 Unauthorized (4001 on WebSockets)
  data service unreachable       → 502 Bad Gateway (4002 on WebSockets)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tripchat.collaborators.base import DataCollaborator
from tripchat.errors import TransportError

log = logging.getLogger("tripchat.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

CollaboratorFactory = Callable[[str], DataCollaborator]


@dataclass
class Caller:
    """The signed-in party and the collaborator acting on their behalf."""

    party_id: str
    collaborator: DataCollaborator


class UnauthenticatedError(Exception):
    pass


async def close_collaborator(collaborator: DataCollaborator) -> None:
    """Release a collaborator's connections if it holds any."""
    aclose = getattr(collaborator, "aclose", None)
    if aclose is None:
        return
    result = aclose()
    if inspect.isawaitable(result):
        await result


async def resolve_caller(factory: CollaboratorFactory, token: str | None) -> Caller:
    """Build a collaborator for ``token`` and resolve its identity.

    Raises UnauthenticatedError for a missing or rejected token and lets
    TransportError through when the data service cannot be reached.
    """
    if not token:
        raise UnauthenticatedError("missing token")
    collaborator = factory(token)
    try:
        party_id = await collaborator.get_current_identity()
    except TransportError:
        await close_collaborator(collaborator)
        raise
    if not party_id:
        await close_collaborator(collaborator)
        raise UnauthenticatedError("token did not resolve to a party")
    return Caller(party_id=party_id, collaborator=collaborator)


async def require_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AsyncIterator[Caller]:
    """FastAPI dependency — resolve the bearer token to a Caller."""
    factory: CollaboratorFactory = request.app.state.collaborator_factory
    token = credentials.credentials if credentials is not None else None
    try:
        caller = await resolve_caller(factory, token)
    except UnauthenticatedError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing access token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except TransportError as exc:
        log.warning("Identity lookup failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=exc.user_message,
        )
    try:
        yield caller
    finally:
        await close_collaborator(caller.collaborator)


async def resolve_ws_caller(websocket: WebSocket, token: str) -> Caller | None:
    """WebSocket auth — browsers can't send headers, so use ?token= query param.

    Closes the socket and returns None when the caller can't be resolved.
    """
    factory: CollaboratorFactory = websocket.app.state.collaborator_factory
    try:
        return await resolve_caller(factory, token)
    except UnauthenticatedError:
        await websocket.close(code=4001, reason="Unauthorized")
    except TransportError:
        await websocket.close(code=4002, reason="Data service unavailable")
    return None
