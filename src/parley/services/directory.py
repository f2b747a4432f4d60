"""Conversation directory: one summary per peer, ordered by recency."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime

from parley.core.settings import settings
from parley.db.time import utcnow
from parley.schemas import ConversationSummary

logger = logging.getLogger(__name__)


def _order_key(summary: ConversationSummary) -> tuple[float, str]:
    timestamp = summary.last_at.timestamp() if summary.last_at else float("-inf")
    return (-timestamp, summary.peer_id)


class ConversationDirectory:
    """Summaries of the current user's conversations, keyed by peer id.

    Unread counts only go up through ``count_unread`` (once per message id)
    and only go down through ``reset_unread`` or a full ``reconcile``; they
    are never negative.
    A reconcile records each peer's server ``last_at`` as a watermark: the
    server count already covers messages at or before it, so a late push of
    one of them is not counted again.
    """

    def __init__(self, placeholder_prefix: str | None = None) -> None:
        self._entries: dict[str, ConversationSummary] = {}
        self._counted: dict[str, set[str]] = {}
        self._watermarks: dict[str, datetime] = {}
        self._placeholder_prefix = placeholder_prefix or settings.placeholder_prefix

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, peer_id: str) -> ConversationSummary | None:
        return self._entries.get(peer_id)

    def ordered(self) -> list[ConversationSummary]:
        """Return summaries newest first; equal timestamps order by peer id."""
        return sorted(self._entries.values(), key=_order_key)

    def unread_total(self) -> int:
        return sum(entry.unread_count for entry in self._entries.values())

    def upsert(
        self,
        peer_id: str,
        *,
        preview: str | None = None,
        last_at: datetime | None = None,
        peer_name: str | None = None,
        peer_avatar: str | None = None,
    ) -> ConversationSummary:
        """Merge a summary patch for ``peer_id``, creating the entry if absent.

        Preview and timestamp only move forward in time, so applying the same
        or an older message again leaves the entry unchanged.
        """
        current = self._entries.get(peer_id)
        if current is None:
            current = ConversationSummary(conversation_id=peer_id, peer_id=peer_id)

        changes: dict[str, object] = {}
        if last_at is not None and (current.last_at is None or last_at >= current.last_at):
            changes["last_at"] = last_at
            if preview is not None:
                changes["preview"] = preview
        elif last_at is None and preview is not None and current.preview is None:
            changes["preview"] = preview
        if peer_name is not None:
            changes["peer_name"] = peer_name
        if peer_avatar is not None:
            changes["peer_avatar"] = peer_avatar
        if current.is_placeholder and last_at is not None:
            changes["conversation_id"] = peer_id
            changes["is_placeholder"] = False

        updated = current.model_copy(update=changes)
        self._entries[peer_id] = updated
        return updated

    def count_unread(
        self, peer_id: str, message_id: str, created_at: datetime | None = None
    ) -> bool:
        """Count ``message_id`` as unread for ``peer_id`` unless already counted.

        A message created at or before the peer's reconcile watermark is part
        of the server count and is only recorded, not counted.
        """
        counted = self._counted.setdefault(peer_id, set())
        if message_id in counted:
            return False
        counted.add(message_id)
        watermark = self._watermarks.get(peer_id)
        if created_at is not None and watermark is not None and created_at <= watermark:
            logger.debug("Message %s already counted by the server for %s", message_id, peer_id)
            return False
        current = self._entries.get(peer_id) or self.upsert(peer_id)
        self._entries[peer_id] = current.model_copy(
            update={"unread_count": current.unread_count + 1}
        )
        return True

    def reset_unread(self, peer_id: str) -> None:
        """Zero the unread count after a confirmed bulk read for ``peer_id``."""
        self._counted.pop(peer_id, None)
        current = self._entries.get(peer_id)
        if current is not None and current.unread_count:
            self._entries[peer_id] = current.model_copy(update={"unread_count": 0})

    def add_placeholder(
        self,
        peer_id: str,
        *,
        peer_name: str | None = None,
        peer_avatar: str | None = None,
    ) -> ConversationSummary:
        """Create an empty conversation with a temporary id, or return the existing one."""
        existing = self._entries.get(peer_id)
        if existing is not None:
            return existing
        placeholder = ConversationSummary(
            conversation_id=f"{self._placeholder_prefix}{uuid.uuid4().hex}",
            peer_id=peer_id,
            peer_name=peer_name,
            peer_avatar=peer_avatar,
            last_at=utcnow(),
            unread_count=0,
            is_placeholder=True,
        )
        self._entries[peer_id] = placeholder
        return placeholder

    def remove(self, peer_id: str) -> bool:
        self._counted.pop(peer_id, None)
        self._watermarks.pop(peer_id, None)
        return self._entries.pop(peer_id, None) is not None

    def reconcile(self, summaries: Iterable[ConversationSummary]) -> None:
        """Replace entries with server-computed summaries.

        Placeholders without server history are kept so a conversation started
        locally does not vanish on reload.
        """
        fresh = {summary.peer_id: summary for summary in summaries}
        for peer_id, entry in self._entries.items():
            if entry.is_placeholder and peer_id not in fresh:
                fresh[peer_id] = entry
        self._entries = fresh
        self._counted = {peer_id: ids for peer_id, ids in self._counted.items() if peer_id in fresh}
        self._watermarks = {
            summary.peer_id: summary.last_at for summary in fresh.values() if summary.last_at is not None
        }
        logger.debug(
            "Directory reconciled: %d conversation(s), %d unread",
            len(fresh),
            self.unread_total(),
        )

    def clear(self) -> None:
        self._entries = {}
        self._counted = {}
        self._watermarks = {}
