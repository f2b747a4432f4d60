"""Ordered, id-unique message list for the open conversation."""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any

from parley.schemas import Message, Reaction

logger = logging.getLogger(__name__)


def _sort_key(message: Message) -> tuple[datetime, str]:
    return (message.created_at, message.id)


class MessageStore:
    """Messages of the currently open conversation.

    Entries are kept ascending by creation time (ties broken by id) and never
    contain two messages with the same id. Every mutation is an idempotent
    merge keyed by message id; only ``replace_all`` overwrites the collection.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._by_id: dict[str, Message] = {}
        self.peer_id: str | None = None

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def belongs_to_open_conversation(self, message: Message, user_id: str) -> bool:
        """Return True if ``message`` is part of the open conversation."""
        return self.peer_id is not None and message.peer_of(user_id) == self.peer_id

    def append(self, message: Message) -> bool:
        """Insert ``message`` in order; return False if its id is present."""
        if message.id in self._by_id:
            return False
        bisect.insort(self._messages, message, key=_sort_key)
        self._by_id[message.id] = message
        return True

    def patch(self, message_id: str, **fields: Any) -> Message | None:
        """Merge ``fields`` into an existing entry; no-op if the id is absent."""
        current = self._by_id.get(message_id)
        if current is None:
            return None
        fields.pop("id", None)
        updated = current.model_validate({**current.model_dump(), **fields})
        index = self._index_of(current)
        if updated.created_at != current.created_at:
            del self._messages[index]
            bisect.insort(self._messages, updated, key=_sort_key)
        else:
            self._messages[index] = updated
        self._by_id[message_id] = updated
        return updated

    def remove(self, message_id: str) -> bool:
        current = self._by_id.pop(message_id, None)
        if current is None:
            return False
        del self._messages[self._index_of(current)]
        return True

    def replace_all(self, messages: Iterable[Message], peer_id: str | None = None) -> None:
        """Reset to a freshly loaded history, dropping duplicate ids."""
        by_id: dict[str, Message] = {}
        for message in messages:
            by_id.setdefault(message.id, message)
        self._by_id = by_id
        self._messages = sorted(by_id.values(), key=_sort_key)
        self.peer_id = peer_id

    def clear(self) -> None:
        self.replace_all([], peer_id=None)

    def mark_read_from(self, sender_id: str, recipient_id: str, read_at: datetime) -> list[str]:
        """Mark unread messages from ``sender_id`` to ``recipient_id`` as read."""
        patched = []
        for message in list(self._messages):
            if (
                message.sender_id == sender_id
                and message.recipient_id == recipient_id
                and not message.is_read
            ):
                self.patch(message.id, is_read=True, read_at=read_at)
                patched.append(message.id)
        return patched

    def add_reaction(self, reaction: Reaction) -> bool:
        message = self._by_id.get(reaction.message_id)
        if message is None:
            return False
        if any(
            existing.user_id == reaction.user_id and existing.emoji == reaction.emoji
            for existing in message.reactions
        ):
            return False
        self.patch(message.id, reactions=[*message.reactions, reaction])
        return True

    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        message = self._by_id.get(message_id)
        if message is None:
            return False
        remaining = [
            reaction
            for reaction in message.reactions
            if not (reaction.user_id == user_id and reaction.emoji == emoji)
        ]
        if len(remaining) == len(message.reactions):
            return False
        self.patch(message_id, reactions=remaining)
        return True

    def _index_of(self, message: Message) -> int:
        index = bisect.bisect_left(self._messages, _sort_key(message), key=_sort_key)
        while self._messages[index].id != message.id:
            index += 1
        return index
