"""WebSocket change channel for the hosted backend.

Speaks the Phoenix channel framing used by the hosted realtime service:
``phx_join`` with a ``postgres_changes`` configuration, periodic heartbeats on
the ``phoenix`` topic, and ``postgres_changes`` pushes carrying
``record``/``old_record`` row images.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from itertools import count
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from parley.core.settings import Settings, settings
from parley.services.errors import SubscriptionFault
from parley.services.store import ChangeEvent, ChangeFilter, ChangeKind, EventHandler

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 10.0


def build_postgres_changes(filters: Sequence[ChangeFilter]) -> list[dict[str, Any]]:
    """Translate filters into ``postgres_changes`` bindings.

    The service accepts a single ``column=eq.value`` predicate per binding, so a
    participant filter becomes one binding on ``sender_id`` and one on
    ``recipient_id``. Delete images cannot be filtered server-side.
    """
    bindings: list[dict[str, Any]] = []
    for change_filter in filters:
        for kind in sorted(change_filter.kinds, key=lambda k: k.value):
            base = {"event": kind.value, "schema": "public", "table": change_filter.table}
            if change_filter.participant is None or kind is ChangeKind.DELETE:
                bindings.append(base)
                continue
            for column in ("sender_id", "recipient_id"):
                bindings.append({**base, "filter": f"{column}=eq.{change_filter.participant}"})
    return bindings


def build_join_message(
    topic: str,
    filters: Sequence[ChangeFilter],
    access_token: str | None,
    ref: str,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"self": False},
            "presence": {"key": ""},
            "postgres_changes": build_postgres_changes(filters),
        }
    }
    if access_token:
        payload["access_token"] = access_token
    return {"topic": topic, "event": "phx_join", "payload": payload, "ref": ref, "join_ref": ref}


def parse_change(message: Mapping[str, Any]) -> ChangeEvent | None:
    """Extract a change event from a ``postgres_changes`` push, if it is one."""
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    try:
        kind = ChangeKind(str(data.get("type", "")).upper())
    except ValueError:
        return None
    return ChangeEvent(
        table=str(data.get("table", "")),
        kind=kind,
        new=data.get("record") or {},
        old=data.get("old_record") or {},
    )


class RealtimeSubscription:
    """One joined channel on a dedicated WebSocket connection."""

    def __init__(
        self,
        url: str,
        topic: str,
        filters: Sequence[ChangeFilter],
        handler: EventHandler,
        token_provider: Callable[[], str | None],
        heartbeat_seconds: float,
    ) -> None:
        self.url = url
        self.topic = topic
        self.filters = tuple(filters)
        self._handler = handler
        self._token_provider = token_provider
        self._heartbeat_seconds = heartbeat_seconds
        self._refs = count(1)
        self._websocket: Any = None
        self._listen_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._fault: SubscriptionFault | None = None
        self._closing = False

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, message: Mapping[str, Any]) -> None:
        await self._websocket.send(json.dumps(message))

    async def join(self) -> None:
        """Connect and join the channel; raise ``SubscriptionFault`` on refusal."""
        try:
            self._websocket = await websockets.connect(self.url, ping_interval=None)
        except (OSError, WebSocketException) as exc:
            raise SubscriptionFault(f"Realtime connection failed: {exc}") from exc

        ref = self._next_ref()
        try:
            await self._send(build_join_message(self.topic, self.filters, self._token_provider(), ref))
            await asyncio.wait_for(self._await_join_reply(ref), timeout=JOIN_TIMEOUT_SECONDS)
        except TimeoutError as exc:
            await self._websocket.close()
            raise SubscriptionFault(f"Joining {self.topic} timed out") from exc
        except WebSocketException as exc:
            await self._websocket.close()
            raise SubscriptionFault(f"Connection lost while joining {self.topic}: {exc}") from exc
        except SubscriptionFault:
            await self._websocket.close()
            raise

        self._listen_task = asyncio.create_task(self._listen(), name=f"realtime:{self.topic}")
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def _await_join_reply(self, ref: str) -> None:
        while True:
            try:
                raw = await self._websocket.recv()
            except ConnectionClosed as exc:
                raise SubscriptionFault(f"Connection closed while joining {self.topic}") from exc
            try:
                message = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise SubscriptionFault(f"Undecodable frame while joining {self.topic}") from exc
            if message.get("event") == "phx_reply" and message.get("ref") == ref:
                payload = message.get("payload") or {}
                if payload.get("status") != "ok":
                    raise SubscriptionFault(
                        f"Join of {self.topic} refused: {payload.get('response')}"
                    )
                return

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                await self._send(
                    {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
                )
            except ConnectionClosed:
                return

    async def _listen(self) -> None:
        try:
            async for raw in self._websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping undecodable frame on %s", self.topic)
                    continue
                if message.get("topic") not in (self.topic, "phoenix"):
                    continue
                event = message.get("event")
                if event == "phx_error":
                    self._fault = SubscriptionFault(f"Channel {self.topic} errored")
                    return
                if event == "phx_close":
                    return
                change = parse_change(message)
                if change is None:
                    continue
                try:
                    await self._handler(change)
                except Exception:
                    logger.error("Handler failed on %s event", change.kind.value, exc_info=True)
        except ConnectionClosed as exc:
            if not self._closing:
                self._fault = SubscriptionFault(f"Realtime connection lost: {exc}")
        finally:
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
            if not self._closing:
                await self._websocket.close()

    async def wait_closed(self) -> None:
        if self._listen_task is not None:
            await self._listen_task
        if self._fault is not None:
            raise self._fault

    async def close(self) -> None:
        self._closing = True
        if self._websocket is not None:
            with contextlib.suppress(ConnectionClosed):
                await self._send(
                    {"topic": self.topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}
                )
            await self._websocket.close()
        if self._listen_task is not None:
            await self._listen_task
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task


class RealtimeFeed:
    """Change feed backed by the hosted realtime WebSocket endpoint."""

    def __init__(
        self,
        token_provider: Callable[[], str | None],
        config: Settings | None = None,
    ) -> None:
        self.config = config or settings
        self._token_provider = token_provider

    def socket_url(self) -> str:
        if not self.config.realtime_url:
            raise SubscriptionFault("Realtime endpoint is not configured")
        query = {"vsn": "1.0.0"}
        if self.config.rest_api_key:
            query["apikey"] = self.config.rest_api_key
        return f"{self.config.realtime_url.rstrip('/')}/websocket?{urlencode(query)}"

    async def subscribe(
        self,
        name: str,
        filters: Sequence[ChangeFilter],
        handler: EventHandler,
    ) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            self.socket_url(),
            f"realtime:{name}",
            filters,
            handler,
            self._token_provider,
            self.config.realtime_heartbeat_seconds,
        )
        await subscription.join()
        logger.info("Joined %s", subscription.topic)
        return subscription
