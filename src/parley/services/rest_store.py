"""Backing store over a PostgREST-style HTTP API.

Tables are reached under ``/rest/v1/<table>`` and server-side functions under
``/rest/v1/rpc/<function>``. Requests carry the project API key and the
session's bearer credential.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from parley.core.settings import Settings, settings
from parley.db.time import utcnow
from parley.schemas import ConversationSummary, Message, PeerProfile, Reaction
from parley.services.errors import TransientNetworkError
from parley.services.identity import IdentityProvider

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_CONFLICT = 409
HTTP_BAD_REQUEST = 400

PROFILE_COLUMNS = "id,full_name,avatar_url,handle"

# Column names returned by older deployments of get_user_conversations.
_LEGACY_SUMMARY_KEYS = {
    "other_user_id": "peer_id",
    "other_user_name": "peer_name",
    "other_user_avatar": "peer_avatar",
    "last_message_content": "preview",
    "last_message_created_at": "last_at",
}

_FILTER_UNSAFE = re.compile(r"[,()*\\]")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _normalize_summary(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for legacy, current in _LEGACY_SUMMARY_KEYS.items():
        if legacy in data and current not in data:
            data[current] = data.pop(legacy)
    # Conversation ids are peer ids; legacy rows carry an opaque id instead.
    data["conversation_id"] = data.get("peer_id")
    return data


def _parse_total(content_range: str | None) -> int:
    """Return N from a ``Content-Range: 0-0/N`` (or ``*/N``) header."""
    if not content_range or "/" not in content_range:
        return 0
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class RestBackingStore:
    """HTTP client wrapper implementing the backing store protocol."""

    def __init__(
        self,
        identity: IdentityProvider,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings
        self._identity = identity
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def messages_path(self) -> str:
        return f"/{self.config.messages_table}"

    @property
    def reactions_path(self) -> str:
        return f"/{self.config.reactions_table}"

    @property
    def profiles_path(self) -> str:
        return f"/{self.config.profiles_table}"

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.config.rest_base_url:
            raise TransientNetworkError("REST backing store is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.rest_base_url.rstrip("/") + "/rest/v1",
                    timeout=httpx.Timeout(self.config.http_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.rest_api_key:
            headers["apikey"] = self.config.rest_api_key
        token = self._identity.bearer_token() or self.config.rest_api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        params: Mapping[str, Any] | None = None
        prefer: str | None = None
        allowed_statuses: tuple[int, ...] = ()

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                params=params.params,
                headers=self._build_headers(params.prefer),
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", params.method, params.path, exc)
            raise TransientNetworkError(f"Store request failed: {exc}") from exc

        if (
            response.status_code >= HTTP_BAD_REQUEST
            and response.status_code not in params.allowed_statuses
        ):
            detail = self._error_detail(response)
            logger.warning(
                "%s %s responded with %s: %s",
                params.method,
                params.path,
                response.status_code,
                detail,
            )
            raise TransientNetworkError(
                f"Store responded with {response.status_code}: {detail}"
            )
        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or "Unknown error"
        if isinstance(body, Mapping):
            return str(body.get("message") or body.get("detail") or body)
        return str(body)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        """Return the decoded JSON body; an undecodable success body is transient."""
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "%s %s returned a non-JSON body: %.80s",
                response.request.method,
                response.request.url.path,
                response.text,
            )
            raise TransientNetworkError("Store returned an undecodable response") from exc

    @staticmethod
    def _validate(model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("Store returned a malformed %s: %s", model.__name__, exc)
            raise TransientNetworkError(f"Store returned a malformed {model.__name__}") from exc

    @staticmethod
    def _as_rows(body: Any) -> list[Mapping[str, Any]]:
        if body is None:
            return []
        rows = body if isinstance(body, list) else [body]
        if not all(isinstance(row, Mapping) for row in rows):
            raise TransientNetworkError("Store returned rows of an unexpected shape")
        return rows

    async def _rows(self, params: RequestParams) -> list[Mapping[str, Any]]:
        response = await self._request(params)
        return self._as_rows(self._decode(response))

    async def _rpc(self, function: str, payload: Mapping[str, Any]) -> Any:
        response = await self._request(
            self.RequestParams(method="POST", path=f"/rpc/{function}", json_data=dict(payload))
        )
        return self._decode(response)

    def _message(self, row: Mapping[str, Any]) -> Message:
        data = dict(row)
        data["reactions"] = data.pop(self.config.reactions_table, data.get("reactions")) or []
        return self._validate(Message, data)

    # --- messages -------------------------------------------------------------------
    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        media_url: str | None = None,
    ) -> Message:
        rows = await self._rows(
            self.RequestParams(
                method="POST",
                path=self.messages_path,
                json_data={
                    "sender_id": sender_id,
                    "recipient_id": recipient_id,
                    "content": content,
                    "media_url": media_url,
                },
                prefer="return=representation",
            )
        )
        if not rows:
            raise TransientNetworkError("Store did not return the inserted message")
        return self._message(rows[0])

    async def get_message(self, message_id: str) -> Message | None:
        rows = await self._rows(
            self.RequestParams(
                method="GET",
                path=self.messages_path,
                params={"select": f"*,{self.config.reactions_table}(*)", "id": f"eq.{message_id}"},
            )
        )
        return self._message(rows[0]) if rows else None

    async def fetch_conversation(self, user_id: str, peer_id: str) -> list[Message]:
        pair = (
            f"(and(sender_id.eq.{user_id},recipient_id.eq.{peer_id}),"
            f"and(sender_id.eq.{peer_id},recipient_id.eq.{user_id}))"
        )
        rows = await self._rows(
            self.RequestParams(
                method="GET",
                path=self.messages_path,
                params={
                    "select": f"*,{self.config.reactions_table}(*)",
                    "or": pair,
                    "order": "created_at.asc,id.asc",
                },
            )
        )
        return [self._message(row) for row in rows]

    async def mark_message_read(self, message_id: str, recipient_id: str) -> Message | None:
        rows = await self._rows(
            self.RequestParams(
                method="PATCH",
                path=self.messages_path,
                params={
                    "id": f"eq.{message_id}",
                    "recipient_id": f"eq.{recipient_id}",
                    "is_read": "eq.false",
                },
                json_data={"is_read": True, "read_at": utcnow().isoformat()},
                prefer="return=representation",
            )
        )
        if rows:
            return self._message(rows[0])
        # Already read, or not addressed to the caller.
        current = await self.get_message(message_id)
        if current is None or current.recipient_id != recipient_id:
            return None
        return current

    async def delete_message(self, message_id: str, sender_id: str) -> bool:
        # Dependent reactions are removed by the foreign key cascade.
        rows = await self._rows(
            self.RequestParams(
                method="DELETE",
                path=self.messages_path,
                params={"id": f"eq.{message_id}", "sender_id": f"eq.{sender_id}"},
                prefer="return=representation",
            )
        )
        return bool(rows)

    async def delete_conversation(self, user_id: str, peer_id: str) -> int:
        pair = (
            f"(and(sender_id.eq.{user_id},recipient_id.eq.{peer_id}),"
            f"and(sender_id.eq.{peer_id},recipient_id.eq.{user_id}))"
        )
        rows = await self._rows(
            self.RequestParams(
                method="DELETE",
                path=self.messages_path,
                params={"or": pair},
                prefer="return=representation",
            )
        )
        return len(rows)

    # --- server-side functions ------------------------------------------------------
    async def get_user_conversations(self, user_id: str) -> list[ConversationSummary]:
        body = await self._rpc("get_user_conversations", {"p_user_id": user_id})
        return [
            self._validate(ConversationSummary, _normalize_summary(row)) for row in self._as_rows(body)
        ]

    async def mark_messages_as_read(self, user_id: str, peer_id: str) -> int:
        body = await self._rpc(
            "mark_messages_as_read",
            {"p_user_id": user_id, "p_other_user_id": peer_id},
        )
        return body if isinstance(body, int) else 0

    async def count_unread(self, user_id: str, peer_id: str) -> int:
        response = await self._request(
            self.RequestParams(
                method="GET",
                path=self.messages_path,
                params={
                    "select": "id",
                    "recipient_id": f"eq.{user_id}",
                    "sender_id": f"eq.{peer_id}",
                    "is_read": "eq.false",
                    "limit": 1,
                },
                prefer="count=exact",
            )
        )
        return _parse_total(response.headers.get("Content-Range"))

    async def check_rate_limit(
        self,
        user_id: str,
        action_type: str,
        max_attempts: int,
        window_minutes: int,
    ) -> bool:
        body = await self._rpc(
            "check_rate_limit",
            {
                "p_user_id": user_id,
                "p_action_type": action_type,
                "p_max_attempts": max_attempts,
                "p_window_minutes": window_minutes,
            },
        )
        return bool(body)

    # --- reactions ------------------------------------------------------------------
    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Reaction | None:
        response = await self._request(
            self.RequestParams(
                method="POST",
                path=self.reactions_path,
                json_data={"message_id": message_id, "user_id": user_id, "emoji": emoji},
                prefer="return=representation",
                allowed_statuses=(HTTP_CONFLICT,),
            )
        )
        if response.status_code == HTTP_CONFLICT:
            return None
        rows = self._as_rows(self._decode(response))
        return self._validate(Reaction, rows[0]) if rows else None

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        rows = await self._rows(
            self.RequestParams(
                method="DELETE",
                path=self.reactions_path,
                params={
                    "message_id": f"eq.{message_id}",
                    "user_id": f"eq.{user_id}",
                    "emoji": f"eq.{emoji}",
                },
                prefer="return=representation",
            )
        )
        return bool(rows)

    # --- profiles -------------------------------------------------------------------
    async def get_profile(self, user_id: str) -> PeerProfile | None:
        rows = await self._rows(
            self.RequestParams(
                method="GET",
                path=self.profiles_path,
                params={"select": PROFILE_COLUMNS, "id": f"eq.{user_id}"},
            )
        )
        return self._validate(PeerProfile, rows[0]) if rows else None

    async def search_profiles(
        self, query: str, exclude_user_id: str, limit: int
    ) -> list[PeerProfile]:
        term = _FILTER_UNSAFE.sub(" ", query).strip()
        if not term:
            return []
        rows = await self._rows(
            self.RequestParams(
                method="GET",
                path=self.profiles_path,
                params={
                    "select": PROFILE_COLUMNS,
                    "id": f"neq.{exclude_user_id}",
                    "or": f"(full_name.ilike.*{term}*,handle.ilike.*{term}*)",
                    "limit": limit,
                },
            )
        )
        return [self._validate(PeerProfile, row) for row in rows]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
