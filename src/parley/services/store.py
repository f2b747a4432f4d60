"""Interfaces of the backing store and its change-notification channel.

The messaging subsystem talks to the data layer only through these
protocols; ``parley.services.sql_store`` and ``parley.services.rest_store``
provide concrete implementations.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from parley.schemas import ConversationSummary, Message, PeerProfile, Reaction


class ChangeKind(str, Enum):
    """Row change kinds delivered by the change channel."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_KINDS = frozenset(ChangeKind)


@dataclass(frozen=True)
class ChangeFilter:
    """Subscription filter keyed by table, event kinds and participant.

    ``participant`` restricts delivery to rows where that user is the sender
    or the recipient. Channels that cannot express the predicate may deliver
    more events; consumers re-check participation.
    """

    table: str
    kinds: frozenset[ChangeKind] = ALL_KINDS
    participant: str | None = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind not in self.kinds:
            return False
        if self.participant is None:
            return True
        row = event.row
        participants = (row.get("sender_id"), row.get("recipient_id"))
        # Delete images may carry only the primary key.
        if event.kind is ChangeKind.DELETE and participants == (None, None):
            return True
        return self.participant in participants


@dataclass(frozen=True)
class ChangeEvent:
    """Row change with old/new images."""

    table: str
    kind: ChangeKind
    new: Mapping[str, Any] = field(default_factory=dict)
    old: Mapping[str, Any] = field(default_factory=dict)

    @property
    def row(self) -> Mapping[str, Any]:
        """Return the image describing the row: ``old`` for deletes."""
        return self.old if self.kind is ChangeKind.DELETE else self.new


EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription(Protocol):
    """Handle of an open channel subscription."""

    async def wait_closed(self) -> None:
        """Return on orderly close; raise ``SubscriptionFault`` on failure."""
        ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    """Push-based change-notification channel."""

    async def subscribe(
        self,
        name: str,
        filters: Sequence[ChangeFilter],
        handler: EventHandler,
    ) -> Subscription:
        """Open a subscription; raise ``SubscriptionFault`` if joining fails."""
        ...


class BackingStore(Protocol):
    """Query, mutation and RPC verbs over messages, reactions and profiles.

    Every method raises ``TransientNetworkError`` when the call fails.
    """

    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        media_url: str | None = None,
    ) -> Message: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def fetch_conversation(self, user_id: str, peer_id: str) -> list[Message]:
        """Return the pair's messages ascending by creation time, with reactions."""
        ...

    async def mark_message_read(self, message_id: str, recipient_id: str) -> Message | None:
        """Mark one message addressed to ``recipient_id`` as read."""
        ...

    async def delete_message(self, message_id: str, sender_id: str) -> bool:
        """Delete a message (and its reactions) if ``sender_id`` sent it."""
        ...

    async def delete_conversation(self, user_id: str, peer_id: str) -> int: ...

    async def get_user_conversations(self, user_id: str) -> list[ConversationSummary]: ...

    async def mark_messages_as_read(self, user_id: str, peer_id: str) -> int:
        """Flip ``is_read`` on every unread message from ``peer_id`` to ``user_id``."""
        ...

    async def count_unread(self, user_id: str, peer_id: str) -> int: ...

    async def check_rate_limit(
        self,
        user_id: str,
        action_type: str,
        max_attempts: int,
        window_minutes: int,
    ) -> bool:
        """Count one attempt and return False when the window quota is exceeded."""
        ...

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Reaction | None:
        """Add a reaction; return None when the (message, user, emoji) row exists."""
        ...

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool: ...

    async def get_profile(self, user_id: str) -> PeerProfile | None: ...

    async def search_profiles(
        self, query: str, exclude_user_id: str, limit: int
    ) -> list[PeerProfile]: ...
