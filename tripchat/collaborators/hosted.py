"""Hosted backend-as-a-service collaborator.

Rows go through the service's PostgREST-style REST API with ``httpx``;
identity comes from its auth endpoint; change notifications arrive over
its realtime WebSocket (Phoenix channel protocol) via ``aiohttp``.

The project URL and anon key are read from settings (``DATA_URL`` and
``DATA_ANON_KEY``).  Pass the signed-in user's access token so row-level
policies apply to that user.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from datetime import datetime
from typing import Any, Optional

import aiohttp
import httpx

from tripchat.config import settings
from tripchat.errors import TransportError

from .base import (
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    DataCollaborator,
    RowFilter,
    Subscription,
)

logger = logging.getLogger(__name__)

REALTIME_VSN = "1.0.0"


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_encode_value(v) for v in value]
    if isinstance(value, list):
        return [_encode_value(v) for v in value]
    return value


def _literal(value: Any) -> str:
    """Render a filter operand in PostgREST syntax."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        items = ",".join(json.dumps(str(_encode_value(v))) for v in value)
        return "{" + items + "}"
    return str(_encode_value(value))


def filter_params(filter: Optional[RowFilter]) -> list[tuple[str, str]]:
    """Translate a RowFilter into PostgREST query parameters."""
    params: list[tuple[str, str]] = []
    if filter is None:
        return params
    for column, value in filter.eq.items():
        if value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_literal(value)}"))
    for column, value in filter.gt.items():
        params.append((column, f"gt.{_literal(value)}"))
    return params


class HostedCollaborator(DataCollaborator):
    """DataCollaborator backed by the hosted REST + realtime service."""

    def __init__(
        self,
        url: str | None = None,
        anon_key: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = (url or settings.data_url).rstrip("/")
        key = anon_key or settings.data_anon_key
        if not base_url or not key:
            raise ValueError(
                "Data service URL and anon key must be provided via "
                "constructor arguments or DATA_URL / DATA_ANON_KEY env vars."
            )
        self._url = base_url
        self._anon_key = key
        self._access_token = access_token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.http_timeout_seconds if timeout is None else timeout,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {access_token or key}",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=headers,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s %s failed with status %d", method, path, exc.response.status_code
            )
            raise TransportError(
                detail=exc.response.text[:200],
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError(detail=str(exc)) from exc
        return resp

    @staticmethod
    def _rows(resp: httpx.Response) -> list[dict[str, Any]]:
        if not resp.content:
            return []
        data = resp.json()
        if isinstance(data, dict):
            return [data]
        return list(data)

    @staticmethod
    def _table_path(table: str) -> str:
        return f"/rest/v1/{table}"

    def realtime_url(self) -> str:
        ws_base = self._url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/realtime/v1/websocket?apikey={self._anon_key}&vsn={REALTIME_VSN}"

    # ------------------------------------------------------------------
    # DataCollaborator interface
    # ------------------------------------------------------------------

    async def get_current_identity(self) -> Optional[str]:
        """Resolve the access token to a user id via the auth endpoint."""
        if not self._access_token:
            return None
        try:
            resp = await self._request("GET", "/auth/v1/user")
        except TransportError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        return resp.json().get("id")

    async def query_rows(
        self,
        table: str,
        filter: Optional[RowFilter] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        params = [("select", "*"), *filter_params(filter)]
        if order_by:
            params.append(("order", ",".join(f"{c}.asc" for c in order_by)))
        resp = await self._request("GET", self._table_path(table), params=params)
        return self._rows(resp)

    async def insert_row(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request(
            "POST",
            self._table_path(table),
            json_body={k: _encode_value(v) for k, v in fields.items()},
            prefer="return=representation",
        )
        rows = self._rows(resp)
        if not rows:
            raise TransportError(detail=f"insert into {table} returned no row")
        logger.info("Inserted row %s into %s", rows[0].get("id"), table)
        return rows[0]

    async def update_row(
        self,
        table: str,
        row_id: Any,
        fields: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        conditions = RowFilter(eq={"id": row_id, **(expected or {})})
        resp = await self._request(
            "PATCH",
            self._table_path(table),
            params=filter_params(conditions),
            json_body={k: _encode_value(v) for k, v in fields.items()},
            prefer="return=representation",
        )
        rows = self._rows(resp)
        return rows[0] if rows else None

    async def delete_row(self, table: str, row_id: Any) -> bool:
        return await self.delete_rows(table, RowFilter(eq={"id": row_id})) > 0

    async def delete_rows(self, table: str, filter: RowFilter) -> int:
        if not filter.eq and not filter.gt:
            raise ValueError("refusing to delete without a filter")
        resp = await self._request(
            "DELETE",
            self._table_path(table),
            params=filter_params(filter),
            prefer="return=representation",
        )
        return len(self._rows(resp))

    async def call_rpc(self, name: str, params: dict[str, Any]) -> Any:
        resp = await self._request(
            "POST",
            f"/rest/v1/rpc/{name}",
            json_body={k: _encode_value(v) for k, v in params.items()},
        )
        return resp.json() if resp.content else None

    async def subscribe_to_changes(
        self,
        table: str,
        filter: RowFilter,
        on_event: ChangeHandler,
    ) -> Subscription:
        subscription = RealtimeSubscription(
            url=self.realtime_url(),
            table=table,
            filter=filter,
            on_event=on_event,
            access_token=self._access_token or self._anon_key,
        )
        await subscription.connect()
        return subscription


class RealtimeSubscription(Subscription):
    """One ``postgres_changes`` channel on the realtime WebSocket.

    Missed events are not replayed; after the socket drops, callers
    recover with a full re-fetch.
    """

    def __init__(
        self,
        url: str,
        table: str,
        filter: RowFilter,
        on_event: ChangeHandler,
        access_token: str,
        heartbeat_seconds: float | None = None,
        schema: str = "public",
    ) -> None:
        if len(filter.eq) > 1 or filter.gt:
            raise ValueError("realtime channels support a single equality filter")
        self._url = url
        self._table = table
        self._filter = filter
        self._on_event = on_event
        self._access_token = access_token
        self._schema = schema
        self._heartbeat = (
            settings.realtime_heartbeat_seconds
            if heartbeat_seconds is None
            else heartbeat_seconds
        )
        self._refs = itertools.count(1)
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._tasks: list[asyncio.Task] = []

        column_filter = "".join(f"{c}=eq.{v}" for c, v in filter.eq.items())
        self.topic = f"realtime:{table}:{column_filter or '*'}"
        self._change_config: dict[str, Any] = {
            "event": "*",
            "schema": schema,
            "table": table,
        }
        if column_filter:
            self._change_config["filter"] = column_filter

    def join_message(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {"postgres_changes": [self._change_config]},
                "access_token": self._access_token,
            },
            "ref": str(next(self._refs)),
        }

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self._url)
            await self._ws.send_json(self.join_message())
        except aiohttp.ClientError as exc:
            await self._session.close()
            self._session = None
            raise TransportError(detail=f"realtime connect failed: {exc}") from exc

        self._tasks = [
            asyncio.create_task(self._read_loop(), name=f"realtime-read-{self.topic}"),
            asyncio.create_task(self._heartbeat_loop(), name=f"realtime-hb-{self.topic}"),
        ]
        logger.info("Joined realtime channel %s", self.topic)

    async def unsubscribe(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        tasks, self._tasks = self._tasks, []

        try:
            if ws is not None and not ws.closed:
                try:
                    await ws.send_json({
                        "topic": self.topic,
                        "event": "phx_leave",
                        "payload": {},
                        "ref": str(next(self._refs)),
                    })
                except (aiohttp.ClientError, ConnectionResetError):
                    logger.debug("phx_leave not delivered for %s", self.topic)
                await ws.close()
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug("Realtime task for %s had failed", self.topic, exc_info=True)
        finally:
            if session is not None:
                await session.close()
        logger.info("Left realtime channel %s", self.topic)

    def handle_frame(self, frame: dict[str, Any]) -> None:
        """Dispatch one decoded server frame."""
        if not isinstance(frame, dict):
            logger.debug("Ignoring non-object realtime frame on %s", self.topic)
            return
        event = frame.get("event")
        if event == "postgres_changes":
            data = frame.get("payload", {}).get("data", {})
            try:
                change = ChangeType(data.get("type"))
            except ValueError:
                logger.debug("Ignoring change type %r on %s", data.get("type"), self.topic)
                return
            self._on_event(ChangeEvent(
                type=change,
                old=data.get("old_record") or None,
                new=data.get("record") or None,
            ))
        elif event == "phx_reply":
            status = frame.get("payload", {}).get("status")
            if status != "ok":
                logger.warning("Realtime reply on %s: %s", self.topic, frame.get("payload"))
        elif event in ("phx_error", "phx_close"):
            logger.warning("Realtime channel %s closed by server (%s)", self.topic, event)

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Undecodable realtime frame on %s", self.topic)
                    continue
                self.handle_frame(frame)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        logger.warning(
            "Realtime stream for %s disconnected; changes until the next refresh are missed",
            self.topic,
        )

    async def _heartbeat_loop(self) -> None:
        while self._ws is not None and not self._ws.closed:
            await asyncio.sleep(self._heartbeat)
            if self._ws is None or self._ws.closed:
                return
            try:
                await self._ws.send_json({
                    "topic": "phoenix",
                    "event": "heartbeat",
                    "payload": {},
                    "ref": str(next(self._refs)),
                })
            except (aiohttp.ClientError, ConnectionResetError):
                logger.warning("Realtime heartbeat failed for %s", self.topic)
                return
