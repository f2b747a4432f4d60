"""Send pipeline: quota check, persist, then merge into local state."""

from __future__ import annotations

import logging

from parley.schemas import Message
from parley.services.directory import ConversationDirectory
from parley.services.errors import PolicyDeniedError
from parley.services.identity import IdentityProvider
from parley.services.message_store import MessageStore
from parley.services.rate_limit import RateLimiterClient
from parley.services.store import BackingStore

logger = logging.getLogger(__name__)


class SendPipeline:
    """Orchestrates sending one message to a peer."""

    def __init__(
        self,
        identity: IdentityProvider,
        store: BackingStore,
        limiter: RateLimiterClient,
        messages: MessageStore,
        directory: ConversationDirectory,
    ) -> None:
        self._identity = identity
        self._store = store
        self._limiter = limiter
        self._messages = messages
        self._directory = directory

    async def send(
        self,
        peer_id: str,
        content: str,
        media_url: str | None = None,
    ) -> Message | None:
        """Send ``content`` to ``peer_id``.

        Returns the persisted message, or None when no user is signed in.
        Raises ``PolicyDeniedError`` when the quota is exhausted and
        ``TransientNetworkError`` when persisting fails; local state is not
        touched in either case.

        Sending leaves the peer's unread count alone. Messages received
        from the peer stay unread until the conversation is marked read,
        rather than being zeroed because the user replied.
        """
        user_id = self._identity.current_user_id()
        if not user_id:
            return None
        if not content.strip() and not media_url:
            raise ValueError("Message must have content or media")

        if not await self._limiter.allow(user_id):
            raise PolicyDeniedError(user_id, self._limiter.policy.action_type)

        message = await self._store.insert_message(user_id, peer_id, content, media_url)

        # The insert event for this message is dropped on arrival because the
        # id is already present; the open view is checked now, not at call time.
        if self._messages.peer_id == peer_id:
            self._messages.append(message)
        self._directory.upsert(peer_id, preview=message.preview, last_at=message.created_at)
        logger.debug("Sent message %s to %s", message.id, peer_id)
        return message
