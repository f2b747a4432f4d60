"""Read-state tracking for conversations with the current user."""

from __future__ import annotations

import asyncio
import logging

from parley.core.settings import Settings, settings
from parley.db.time import utcnow
from parley.schemas import Message
from parley.services.directory import ConversationDirectory
from parley.services.errors import TransientNetworkError
from parley.services.identity import IdentityProvider
from parley.services.message_store import MessageStore
from parley.services.store import BackingStore

logger = logging.getLogger(__name__)


class ReadStateTracker:
    """Marks messages addressed to the current user as read.

    After a bulk read-mark the tracker confirms with the server that no unread
    rows remain for the peer before reloading the directory. If confirmation
    does not arrive within ``read_confirm_attempts`` round trips the local
    zero is kept and the directory may lag until its next reload.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        store: BackingStore,
        messages: MessageStore,
        directory: ConversationDirectory,
        config: Settings | None = None,
    ) -> None:
        self._identity = identity
        self._store = store
        self._messages = messages
        self._directory = directory
        self._config = config or settings

    async def mark_conversation_read(self, peer_id: str) -> int:
        """Mark every unread message from ``peer_id`` as read.

        Returns the number of rows the server reported as updated. Raises
        ``TransientNetworkError`` if the bulk mutation fails, in which case
        local state (including unread badges) is left untouched.
        """
        user_id = self._identity.current_user_id()
        if not user_id:
            return 0

        updated = await self._store.mark_messages_as_read(user_id, peer_id)

        self._messages.mark_read_from(peer_id, user_id, utcnow())
        self._directory.reset_unread(peer_id)

        if await self._confirm_read(user_id, peer_id):
            await self._refresh_directory(user_id)
        return updated

    async def mark_message_read(self, message_id: str) -> Message | None:
        """Mark a single message addressed to the current user as read.

        The directory's unread count is not decremented here; it only drops on
        a bulk read-mark or a full reload.
        """
        user_id = self._identity.current_user_id()
        if not user_id:
            return None

        message = await self._store.mark_message_read(message_id, user_id)
        if message is None:
            return None
        self._messages.patch(message.id, is_read=message.is_read, read_at=message.read_at)
        return message

    async def _confirm_read(self, user_id: str, peer_id: str) -> bool:
        attempts = max(1, self._config.read_confirm_attempts)
        for attempt in range(1, attempts + 1):
            try:
                remaining = await self._store.count_unread(user_id, peer_id)
            except TransientNetworkError as exc:
                logger.warning("Read confirmation for %s failed: %s", peer_id, exc)
                return False
            if remaining == 0:
                return True
            if attempt < attempts:
                await asyncio.sleep(self._config.read_confirm_delay_seconds * attempt)

        logger.warning(
            "Server still reports unread messages from %s after %d check(s); "
            "keeping local read state until the next directory reload",
            peer_id,
            attempts,
        )
        return False

    async def _refresh_directory(self, user_id: str) -> None:
        try:
            summaries = await self._store.get_user_conversations(user_id)
        except TransientNetworkError as exc:
            logger.warning("Directory refresh after read-mark failed: %s", exc)
            return
        if self._identity.current_user_id() != user_id:
            return
        self._directory.reconcile(summaries)
