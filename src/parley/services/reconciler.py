"""Applies pushed row changes to the local message store and directory.

The reconciler owns the session's single change-channel subscription. A
supervisor task keeps it joined, reconnecting with exponential backoff after
faults, and every event is applied as an idempotent merge keyed by message
id or peer id.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from parley.core.settings import Settings, settings
from parley.schemas import ConversationSummary, Message
from parley.services.directory import ConversationDirectory
from parley.services.errors import SubscriptionFault
from parley.services.identity import IdentityProvider
from parley.services.message_store import MessageStore
from parley.services.store import ALL_KINDS, ChangeEvent, ChangeFeed, ChangeFilter, ChangeKind, Subscription

logger = logging.getLogger(__name__)

IncomingCallback = Callable[[Message, ConversationSummary], None]


class SubscriptionState(Enum):
    """Lifecycle of the change-channel subscription."""

    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential reconnection delays with proportional jitter."""

    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_attempts: int = 8

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> BackoffPolicy:
        config = config or settings
        return cls(
            initial_delay=config.reconnect_initial_delay_seconds,
            max_delay=config.reconnect_max_delay_seconds,
            multiplier=config.reconnect_multiplier,
            jitter=config.reconnect_jitter,
            max_attempts=config.reconnect_max_attempts,
        )

    def delay(self, attempt: int) -> float:
        """Return the wait before reconnect ``attempt`` (1-based)."""
        base = min(self.initial_delay * self.multiplier ** max(0, attempt - 1), self.max_delay)
        if self.jitter <= 0:
            return base
        return base * (1 + random.uniform(0, self.jitter))


class RealtimeReconciler:
    """Session-scoped owner of the message change subscription."""

    def __init__(
        self,
        identity: IdentityProvider,
        feed: ChangeFeed,
        messages: MessageStore,
        directory: ConversationDirectory,
        *,
        table: str = "messages",
        backoff: BackoffPolicy | None = None,
        on_incoming: IncomingCallback | None = None,
    ) -> None:
        self._identity = identity
        self._feed = feed
        self._messages = messages
        self._directory = directory
        self.table = table
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.on_incoming = on_incoming

        self._state = SubscriptionState.UNSUBSCRIBED
        self._user_id: str | None = None
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._active = asyncio.Event()
        self.failed_attempts = 0
        self.last_fault: Exception | None = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def _set_state(self, state: SubscriptionState) -> None:
        if state is not self._state:
            logger.debug("Subscription %s -> %s", self._state.value, state.value)
        self._state = state
        if state is SubscriptionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()

    # --- lifecycle ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the supervised subscription; no-op without a signed-in user."""
        user_id = self._identity.current_user_id()
        if not user_id:
            return
        if self._task is not None and not self._task.done():
            return

        self._user_id = user_id
        self._stopping.clear()
        self.failed_attempts = 0
        self._task = asyncio.create_task(self._run(), name=f"reconciler:{user_id}")

    async def stop(self) -> None:
        """Tear down the subscription and the supervisor task."""
        self._stopping.set()
        subscription = self._subscription
        if subscription is not None:
            await subscription.close()
        if self._task is not None:
            await self._task
            self._task = None
        self._subscription = None
        self._user_id = None
        self._set_state(SubscriptionState.UNSUBSCRIBED)

    async def resubscribe(self) -> None:
        """Force a fresh subscription, e.g. after retries were exhausted."""
        await self.stop()
        await self.start()

    async def wait_active(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._active.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def filters(self, user_id: str) -> list[ChangeFilter]:
        return [ChangeFilter(table=self.table, kinds=ALL_KINDS, participant=user_id)]

    async def _run(self) -> None:
        assert self._user_id is not None
        user_id = self._user_id
        channel_name = f"messaging_{user_id}"

        while not self._stopping.is_set():
            self._set_state(SubscriptionState.SUBSCRIBING)
            try:
                self._subscription = await self._feed.subscribe(
                    channel_name, self.filters(user_id), self.handle_event
                )
                if self._stopping.is_set():
                    await self._subscription.close()
                    return
                self._set_state(SubscriptionState.ACTIVE)
                self.failed_attempts = 0
                await self._subscription.wait_closed()
                self._set_state(SubscriptionState.CLOSED)
                if not self._stopping.is_set():
                    logger.warning("Subscription %s closed by the channel", channel_name)
            except SubscriptionFault as exc:
                self.last_fault = exc
                self._set_state(SubscriptionState.ERROR)
                logger.warning("Subscription %s fault: %s", channel_name, exc)
            except (OSError, ConnectionError, TimeoutError) as exc:
                self.last_fault = exc
                self._set_state(SubscriptionState.ERROR)
                logger.warning("Subscription %s network error: %s", channel_name, exc)
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                self.last_fault = exc
                self._set_state(SubscriptionState.ERROR)
                logger.error(
                    "Subscription %s failed on malformed channel data: %s",
                    channel_name,
                    exc,
                    exc_info=True,
                )
            finally:
                self._subscription = None

            if self._stopping.is_set():
                return

            self.failed_attempts += 1
            if self.failed_attempts > self.backoff.max_attempts:
                logger.error(
                    "Giving up on subscription %s after %d attempt(s); resubscribe to retry",
                    channel_name,
                    self.failed_attempts - 1,
                )
                self._set_state(SubscriptionState.UNSUBSCRIBED)
                return

            delay = self.backoff.delay(self.failed_attempts)
            logger.info("Reconnecting %s in %.2fs (attempt %d)", channel_name, delay, self.failed_attempts)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                return
            except TimeoutError:
                continue

    # --- event application ----------------------------------------------------------
    async def handle_event(self, event: ChangeEvent) -> None:
        """Apply one change event for the subscribed user."""
        user_id = self._user_id
        if not user_id or event.table != self.table:
            return

        if event.kind is ChangeKind.INSERT:
            self.apply_insert(user_id, event.new)
        elif event.kind is ChangeKind.UPDATE:
            self.apply_update(user_id, event.new)
        elif event.kind is ChangeKind.DELETE:
            self.apply_delete(user_id, event.old)

    def apply_insert(self, user_id: str, row: Mapping[str, Any]) -> bool:
        """Apply an inserted row; return False when it was dropped."""
        message = self._parse(row)
        if message is None or not message.involves(user_id):
            return False
        if message.id in self._messages:
            logger.debug("Dropping duplicate insert %s", message.id)
            return False

        peer_id = message.peer_of(user_id)
        if self._messages.belongs_to_open_conversation(message, user_id):
            self._messages.append(message)

        summary = self._directory.upsert(
            peer_id, preview=message.preview, last_at=message.created_at
        )
        if message.is_unread_for(user_id):
            self._directory.count_unread(peer_id, message.id, message.created_at)
            summary = self._directory.get(peer_id) or summary
            logger.info("New message from %s", summary.peer_name or peer_id)
            if self.on_incoming is not None:
                self.on_incoming(message, summary)
        return True

    def apply_update(self, user_id: str, row: Mapping[str, Any]) -> bool:
        """Patch the local copy of an updated row; unread counts are untouched."""
        message = self._parse(row)
        if message is None or not message.involves(user_id):
            return False
        fields = {key: value for key, value in row.items() if key in Message.model_fields}
        fields.pop("reactions", None)
        return self._messages.patch(message.id, **fields) is not None

    def apply_delete(self, user_id: str, row: Mapping[str, Any]) -> bool:
        """Remove a deleted row; the directory preview stays until the next reload."""
        message_id = row.get("id")
        if message_id is None:
            return False
        participants = (row.get("sender_id"), row.get("recipient_id"))
        if participants != (None, None) and user_id not in participants:
            return False
        return self._messages.remove(str(message_id))

    @staticmethod
    def _parse(row: Mapping[str, Any]) -> Message | None:
        try:
            return Message.model_validate(dict(row))
        except ValidationError as exc:
            logger.warning("Dropping malformed message row: %s", exc)
            return None
