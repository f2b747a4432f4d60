"""Session-scoped messaging state for one authenticated user."""

from __future__ import annotations

import logging
from types import TracebackType

from parley.core.settings import Settings, settings
from parley.schemas import ConversationSummary, Message, PeerProfile, Reaction
from parley.services.directory import ConversationDirectory
from parley.services.errors import MessagingError, TransientNetworkError
from parley.services.identity import IdentityProvider
from parley.services.message_store import MessageStore
from parley.services.rate_limit import RateLimiterClient, RateLimitPolicy
from parley.services.read_state import ReadStateTracker
from parley.services.reconciler import (
    BackoffPolicy,
    IncomingCallback,
    RealtimeReconciler,
    SubscriptionState,
)
from parley.services.send_pipeline import SendPipeline
from parley.services.store import BackingStore, ChangeFeed

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
SELF_TEST_CONTENT = "Self-test message"


class MessagingSession:
    """Conversation list, open history and live sync for the signed-in user.

    All operations return quietly (``None``, ``False``, ``0`` or ``[]``) when
    the identity provider has no user. Failures of non-blocking operations
    are stored in ``error`` for display and do not disable the session.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        store: BackingStore,
        feed: ChangeFeed,
        *,
        config: Settings | None = None,
        on_incoming: IncomingCallback | None = None,
    ) -> None:
        self._config = config or settings
        self._store = store
        self._feed = feed
        self._on_incoming = on_incoming
        self.error: str | None = None
        self._build(identity)

    def _build(self, identity: IdentityProvider) -> None:
        self._identity = identity
        self._messages = MessageStore()
        self._directory = ConversationDirectory(self._config.placeholder_prefix)
        self._limiter = RateLimiterClient(self._store, RateLimitPolicy.from_settings(self._config))
        self._sender = SendPipeline(
            identity, self._store, self._limiter, self._messages, self._directory
        )
        self._read_state = ReadStateTracker(
            identity, self._store, self._messages, self._directory, self._config
        )
        self._reconciler = RealtimeReconciler(
            identity,
            self._feed,
            self._messages,
            self._directory,
            table=self._config.messages_table,
            backoff=BackoffPolicy.from_settings(self._config),
            on_incoming=self._on_incoming,
        )

    # --- lifecycle ------------------------------------------------------------------
    async def open(self) -> None:
        """Start the change subscription and load the conversation list."""
        if not self.user_id:
            return
        await self._reconciler.start()
        await self.load_conversations()

    async def close(self) -> None:
        await self._reconciler.stop()
        self._messages.clear()
        self._directory.clear()

    async def reauthenticate(self, identity: IdentityProvider) -> None:
        """Switch to another identity, discarding all state of the previous one."""
        await self.close()
        self.error = None
        self._build(identity)
        await self.open()

    async def resubscribe(self) -> None:
        await self._reconciler.resubscribe()

    async def __aenter__(self) -> MessagingSession:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # --- read-only views ------------------------------------------------------------
    @property
    def user_id(self) -> str | None:
        return self._identity.current_user_id()

    @property
    def conversations(self) -> list[ConversationSummary]:
        return self._directory.ordered()

    @property
    def unread_total(self) -> int:
        return self._directory.unread_total()

    @property
    def messages(self) -> list[Message]:
        return self._messages.messages

    @property
    def active_peer(self) -> str | None:
        return self._messages.peer_id

    @property
    def state(self) -> SubscriptionState:
        return self._reconciler.state

    @property
    def reconciler(self) -> RealtimeReconciler:
        return self._reconciler

    @property
    def directory(self) -> ConversationDirectory:
        return self._directory

    @property
    def message_store(self) -> MessageStore:
        return self._messages

    def _record(self, action: str, exc: MessagingError) -> None:
        self.error = str(exc)
        logger.warning("Failed to %s: %s", action, exc)

    # --- conversations --------------------------------------------------------------
    async def load_conversations(self) -> list[ConversationSummary]:
        """Reload the directory from the server-computed summaries."""
        user_id = self.user_id
        if not user_id:
            return []
        try:
            summaries = await self._store.get_user_conversations(user_id)
        except TransientNetworkError as exc:
            self._record("load conversations", exc)
            return self.conversations
        if self.user_id != user_id:
            return []
        self._directory.reconcile(summaries)
        self.error = None
        return self.conversations

    async def select_conversation(self, peer_id: str) -> list[Message]:
        """Open the conversation with ``peer_id``, load its history and mark it read."""
        user_id = self.user_id
        if not user_id:
            return []

        # Inserts for the new peer append from here on; the old view is dropped.
        self._messages.replace_all([], peer_id=peer_id)
        try:
            history = await self._store.fetch_conversation(user_id, peer_id)
        except TransientNetworkError as exc:
            self._record("load messages", exc)
            return self.messages

        if self._messages.peer_id != peer_id:
            logger.debug("Discarding history for %s; conversation changed", peer_id)
            return self.messages

        # Events that arrived during the load are kept alongside the snapshot.
        self._messages.replace_all([*history, *self._messages], peer_id=peer_id)
        await self.mark_conversation_read(peer_id)
        return self.messages

    async def start_conversation(self, peer_id: str) -> ConversationSummary | None:
        """Select the conversation with ``peer_id``, creating a placeholder if new."""
        if not self.user_id:
            return None

        if peer_id not in self._directory:
            peer_name, peer_avatar = UNKNOWN_USER, None
            try:
                profile = await self._store.get_profile(peer_id)
            except TransientNetworkError as exc:
                self._record("load profile", exc)
                profile = None
            if profile is not None:
                peer_name = profile.full_name or profile.handle or UNKNOWN_USER
                peer_avatar = profile.avatar_url
            self._directory.add_placeholder(peer_id, peer_name=peer_name, peer_avatar=peer_avatar)

        await self.select_conversation(peer_id)
        return self._directory.get(peer_id)

    def close_conversation(self) -> None:
        self._messages.clear()

    async def delete_conversation(self, peer_id: str) -> int:
        """Delete every message between the user and ``peer_id``."""
        user_id = self.user_id
        if not user_id:
            return 0
        try:
            deleted = await self._store.delete_conversation(user_id, peer_id)
        except TransientNetworkError as exc:
            self._record("delete conversation", exc)
            return 0

        self._directory.remove(peer_id)
        if self._messages.peer_id == peer_id:
            self._messages.clear()
        return deleted

    # --- messages -------------------------------------------------------------------
    async def send_message(
        self, peer_id: str, content: str, media_url: str | None = None
    ) -> Message | None:
        """Send a message; failures are recorded in ``error`` and re-raised."""
        try:
            message = await self._sender.send(peer_id, content, media_url)
        except MessagingError as exc:
            self._record("send message", exc)
            raise
        self.error = None
        return message

    async def send_self_test(self) -> Message | None:
        """Send a diagnostic message from the user to themselves."""
        user_id = self.user_id
        if not user_id:
            return None
        return await self.send_message(user_id, SELF_TEST_CONTENT)

    async def mark_conversation_read(self, peer_id: str) -> int:
        try:
            return await self._read_state.mark_conversation_read(peer_id)
        except TransientNetworkError as exc:
            self._record("mark messages as read", exc)
            return 0

    async def mark_message_read(self, message_id: str) -> Message | None:
        try:
            return await self._read_state.mark_message_read(message_id)
        except TransientNetworkError as exc:
            self._record("mark message as read", exc)
            return None

    async def delete_message(self, message_id: str) -> bool:
        """Delete a message the user sent; unknown ids are a no-op."""
        user_id = self.user_id
        if not user_id:
            return False
        try:
            deleted = await self._store.delete_message(message_id, user_id)
        except TransientNetworkError as exc:
            self._record("delete message", exc)
            return False
        if deleted:
            self._messages.remove(message_id)
        return deleted

    # --- reactions ------------------------------------------------------------------
    async def add_reaction(self, message_id: str, emoji: str) -> Reaction | None:
        user_id = self.user_id
        if not user_id:
            return None
        try:
            reaction = await self._store.add_reaction(message_id, user_id, emoji)
        except TransientNetworkError as exc:
            self._record("add reaction", exc)
            return None
        if reaction is not None:
            self._messages.add_reaction(reaction)
        return reaction

    async def remove_reaction(self, message_id: str, emoji: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        try:
            removed = await self._store.remove_reaction(message_id, user_id, emoji)
        except TransientNetworkError as exc:
            self._record("remove reaction", exc)
            return False
        self._messages.remove_reaction(message_id, user_id, emoji)
        return removed

    # --- directory lookups ----------------------------------------------------------
    async def search_users(self, query: str) -> list[PeerProfile]:
        user_id = self.user_id
        term = query.strip()
        if not user_id or not term:
            return []
        try:
            return await self._store.search_profiles(
                term, user_id, self._config.user_search_limit
            )
        except TransientNetworkError as exc:
            self._record("search users", exc)
            return []
