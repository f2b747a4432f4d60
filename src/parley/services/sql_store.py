"""SQLAlchemy implementation of the backing store.

Server-side functions of the hosted backend (conversation aggregation, bulk
read-marking, rate counting) are implemented here as queries. Every committed
mutation is published to the attached ``LocalChangeFeed`` the way the hosted
backend publishes row changes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from parley.db.session import SessionLocal
from parley.db.time import utcnow
from parley.models import DirectMessage, MessageReaction, Profile, RateLimitAttempt
from parley.schemas import ConversationSummary, Message, PeerProfile, Reaction
from parley.services.errors import TransientNetworkError
from parley.services.local_feed import LocalChangeFeed
from parley.services.store import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGES_TABLE = DirectMessage.__tablename__


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_image(message: DirectMessage) -> dict[str, Any]:
    """Serialize a message row the way the change channel transmits it."""
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "recipient_id": message.recipient_id,
        "content": message.content,
        "media_url": message.media_url,
        "is_read": message.is_read,
        "read_at": _iso(message.read_at),
        "created_at": _iso(message.created_at),
        "updated_at": _iso(message.updated_at),
    }


def _pair_clause(user_id: str, peer_id: str) -> Any:
    return or_(
        and_(DirectMessage.sender_id == user_id, DirectMessage.recipient_id == peer_id),
        and_(DirectMessage.sender_id == peer_id, DirectMessage.recipient_id == user_id),
    )


class SqlBackingStore:
    """Backing store over a SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        feed: LocalChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.feed = feed or LocalChangeFeed()
        # SQLite connections are not safe for concurrent use across threads.
        self._lock = asyncio.Lock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._in_session, fn, *args)
            except SQLAlchemyError as exc:
                logger.warning("Store call %s failed: %s", fn.__name__, exc)
                raise TransientNetworkError(f"Store call failed: {exc}") from exc

    def _in_session(self, fn: Callable[..., T], *args: Any) -> T:
        with self._session_factory() as db:
            try:
                return fn(db, *args)
            except SQLAlchemyError:
                db.rollback()
                raise

    async def _mutate(self, fn: Callable[..., tuple[T, list[ChangeEvent]]], *args: Any) -> T:
        result, events = await self._run(fn, *args)
        self.feed.publish_all(events)
        return result

    # --- messages -------------------------------------------------------------------
    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        media_url: str | None = None,
    ) -> Message:
        return await self._mutate(self._insert_message, sender_id, recipient_id, content, media_url)

    @staticmethod
    def _insert_message(
        db: Session,
        sender_id: str,
        recipient_id: str,
        content: str,
        media_url: str | None,
    ) -> tuple[Message, list[ChangeEvent]]:
        message = DirectMessage(
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            media_url=media_url,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        event = ChangeEvent(MESSAGES_TABLE, ChangeKind.INSERT, new=_row_image(message))
        return Message.model_validate(message), [event]

    async def get_message(self, message_id: str) -> Message | None:
        return await self._run(self._get_message, message_id)

    @staticmethod
    def _get_message(db: Session, message_id: str) -> Message | None:
        message = db.get(DirectMessage, message_id)
        return Message.model_validate(message) if message else None

    async def fetch_conversation(self, user_id: str, peer_id: str) -> list[Message]:
        return await self._run(self._fetch_conversation, user_id, peer_id)

    @staticmethod
    def _fetch_conversation(db: Session, user_id: str, peer_id: str) -> list[Message]:
        rows = db.scalars(
            select(DirectMessage)
            .options(selectinload(DirectMessage.reactions))
            .where(_pair_clause(user_id, peer_id))
            .order_by(DirectMessage.created_at, DirectMessage.id)
        ).all()
        return [Message.model_validate(row) for row in rows]

    async def mark_message_read(self, message_id: str, recipient_id: str) -> Message | None:
        return await self._mutate(self._mark_message_read, message_id, recipient_id)

    @staticmethod
    def _mark_message_read(
        db: Session, message_id: str, recipient_id: str
    ) -> tuple[Message | None, list[ChangeEvent]]:
        message = db.scalars(
            select(DirectMessage).where(
                DirectMessage.id == message_id,
                DirectMessage.recipient_id == recipient_id,
            )
        ).first()
        if message is None:
            return None, []
        if message.is_read:
            return Message.model_validate(message), []

        old = _row_image(message)
        message.is_read = True
        message.read_at = utcnow()
        db.commit()
        db.refresh(message)
        event = ChangeEvent(MESSAGES_TABLE, ChangeKind.UPDATE, new=_row_image(message), old=old)
        return Message.model_validate(message), [event]

    async def delete_message(self, message_id: str, sender_id: str) -> bool:
        return await self._mutate(self._delete_message, message_id, sender_id)

    @staticmethod
    def _delete_message(
        db: Session, message_id: str, sender_id: str
    ) -> tuple[bool, list[ChangeEvent]]:
        message = db.scalars(
            select(DirectMessage).where(
                DirectMessage.id == message_id,
                DirectMessage.sender_id == sender_id,
            )
        ).first()
        if message is None:
            return False, []

        old = _row_image(message)
        db.execute(delete(MessageReaction).where(MessageReaction.message_id == message_id))
        db.delete(message)
        db.commit()
        return True, [ChangeEvent(MESSAGES_TABLE, ChangeKind.DELETE, old=old)]

    async def delete_conversation(self, user_id: str, peer_id: str) -> int:
        return await self._mutate(self._delete_conversation, user_id, peer_id)

    @staticmethod
    def _delete_conversation(
        db: Session, user_id: str, peer_id: str
    ) -> tuple[int, list[ChangeEvent]]:
        messages = db.scalars(select(DirectMessage).where(_pair_clause(user_id, peer_id))).all()
        if not messages:
            return 0, []

        ids = [message.id for message in messages]
        events = [
            ChangeEvent(MESSAGES_TABLE, ChangeKind.DELETE, old=_row_image(message))
            for message in messages
        ]
        db.execute(delete(MessageReaction).where(MessageReaction.message_id.in_(ids)))
        for message in messages:
            db.delete(message)
        db.commit()
        return len(ids), events

    # --- aggregates -----------------------------------------------------------------
    async def get_user_conversations(self, user_id: str) -> list[ConversationSummary]:
        return await self._run(self._get_user_conversations, user_id)

    @staticmethod
    def _get_user_conversations(db: Session, user_id: str) -> list[ConversationSummary]:
        rows = db.scalars(
            select(DirectMessage)
            .where(or_(DirectMessage.sender_id == user_id, DirectMessage.recipient_id == user_id))
            .order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc())
        ).all()

        summaries: dict[str, dict[str, Any]] = {}
        for row in rows:
            peer_id = row.peer_of(user_id)
            summary = summaries.get(peer_id)
            if summary is None:
                record = Message.model_validate(row)
                summary = {
                    "peer_id": peer_id,
                    "preview": record.preview,
                    "last_at": record.created_at,
                    "unread_count": 0,
                }
                summaries[peer_id] = summary
            if row.recipient_id == user_id and row.sender_id != user_id and not row.is_read:
                summary["unread_count"] += 1

        if summaries:
            profiles = db.scalars(select(Profile).where(Profile.id.in_(list(summaries)))).all()
            for profile in profiles:
                summaries[profile.id]["peer_name"] = profile.full_name or profile.handle
                summaries[profile.id]["peer_avatar"] = profile.avatar_url

        return [ConversationSummary.model_validate(summary) for summary in summaries.values()]

    async def mark_messages_as_read(self, user_id: str, peer_id: str) -> int:
        return await self._mutate(self._mark_messages_as_read, user_id, peer_id)

    @staticmethod
    def _mark_messages_as_read(
        db: Session, user_id: str, peer_id: str
    ) -> tuple[int, list[ChangeEvent]]:
        unread = db.scalars(
            select(DirectMessage).where(
                DirectMessage.recipient_id == user_id,
                DirectMessage.sender_id == peer_id,
                DirectMessage.is_read.is_(False),
            )
        ).all()
        if not unread:
            return 0, []

        now = utcnow()
        old_images = {message.id: _row_image(message) for message in unread}
        for message in unread:
            message.is_read = True
            message.read_at = now
        db.commit()

        events = []
        for message in unread:
            db.refresh(message)
            events.append(
                ChangeEvent(
                    MESSAGES_TABLE,
                    ChangeKind.UPDATE,
                    new=_row_image(message),
                    old=old_images[message.id],
                )
            )
        return len(unread), events

    async def count_unread(self, user_id: str, peer_id: str) -> int:
        return await self._run(self._count_unread, user_id, peer_id)

    @staticmethod
    def _count_unread(db: Session, user_id: str, peer_id: str) -> int:
        count = db.scalar(
            select(func.count())
            .select_from(DirectMessage)
            .where(
                DirectMessage.recipient_id == user_id,
                DirectMessage.sender_id == peer_id,
                DirectMessage.is_read.is_(False),
            )
        )
        return int(count or 0)

    async def check_rate_limit(
        self,
        user_id: str,
        action_type: str,
        max_attempts: int,
        window_minutes: int,
    ) -> bool:
        return await self._run(
            self._check_rate_limit, user_id, action_type, max_attempts, window_minutes
        )

    @staticmethod
    def _check_rate_limit(
        db: Session,
        user_id: str,
        action_type: str,
        max_attempts: int,
        window_minutes: int,
    ) -> bool:
        window_start = utcnow() - timedelta(minutes=window_minutes)
        db.execute(
            delete(RateLimitAttempt).where(
                RateLimitAttempt.user_id == user_id,
                RateLimitAttempt.action_type == action_type,
                RateLimitAttempt.attempted_at < window_start,
            )
        )
        attempts = db.scalar(
            select(func.count())
            .select_from(RateLimitAttempt)
            .where(
                RateLimitAttempt.user_id == user_id,
                RateLimitAttempt.action_type == action_type,
            )
        )
        if int(attempts or 0) >= max_attempts:
            db.commit()
            return False

        db.add(RateLimitAttempt(user_id=user_id, action_type=action_type))
        db.commit()
        return True

    # --- reactions ------------------------------------------------------------------
    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Reaction | None:
        return await self._run(self._add_reaction, message_id, user_id, emoji)

    @staticmethod
    def _add_reaction(db: Session, message_id: str, user_id: str, emoji: str) -> Reaction | None:
        if db.get(DirectMessage, message_id) is None:
            logger.debug("Reaction target %s does not exist", message_id)
            return None
        reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
        db.add(reaction)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        db.refresh(reaction)
        return Reaction.model_validate(reaction)

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        return await self._run(self._remove_reaction, message_id, user_id, emoji)

    @staticmethod
    def _remove_reaction(db: Session, message_id: str, user_id: str, emoji: str) -> bool:
        result = db.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        db.commit()
        return bool(result.rowcount)

    # --- profiles -------------------------------------------------------------------
    async def get_profile(self, user_id: str) -> PeerProfile | None:
        return await self._run(self._get_profile, user_id)

    @staticmethod
    def _get_profile(db: Session, user_id: str) -> PeerProfile | None:
        profile = db.get(Profile, user_id)
        return PeerProfile.model_validate(profile) if profile else None

    async def search_profiles(
        self, query: str, exclude_user_id: str, limit: int
    ) -> list[PeerProfile]:
        return await self._run(self._search_profiles, query, exclude_user_id, limit)

    @staticmethod
    def _search_profiles(
        db: Session, query: str, exclude_user_id: str, limit: int
    ) -> list[PeerProfile]:
        pattern = f"%{query}%"
        rows = db.scalars(
            select(Profile)
            .where(
                Profile.id != exclude_user_id,
                or_(Profile.full_name.ilike(pattern), Profile.handle.ilike(pattern)),
            )
            .order_by(Profile.full_name)
            .limit(limit)
        ).all()
        return [PeerProfile.model_validate(row) for row in rows]
