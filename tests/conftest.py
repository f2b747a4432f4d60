# tests/conftest.py
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Generator, Iterator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from parley.core.settings import Settings
from parley.db.session import Base, create_tables, drop_tables
from parley.db.time import utcnow
from parley.models import Profile
from parley.schemas import Message
from parley.services.directory import ConversationDirectory
from parley.services.identity import StaticIdentity
from parley.services.local_feed import LocalChangeFeed
from parley.services.message_store import MessageStore
from parley.services.sql_store import SqlBackingStore

TEST_DB_URL = "sqlite://"

USER_A = "1"
USER_B = "2"
USER_C = "3"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    try:
        yield engine
    finally:
        drop_tables(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        # Stores commit through their own sessions, so wipe every table.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture()
def sql_store(session_factory: sessionmaker[Session], feed: LocalChangeFeed) -> SqlBackingStore:
    return SqlBackingStore(session_factory, feed)


@pytest.fixture()
def profiles(session_factory: sessionmaker[Session]) -> dict[str, Profile]:
    """Persist display identities for the three test users."""
    rows = {
        USER_A: Profile(id=USER_A, full_name="Ada Lovelace", handle="ada"),
        USER_B: Profile(id=USER_B, full_name="Bob Byte", handle="bob", avatar_url="https://img/bob.png"),
        USER_C: Profile(id=USER_C, full_name=None, handle="carol"),
    }
    with session_factory() as db:
        db.add_all(rows.values())
        db.commit()
    return rows


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Settings with short timings so reconnect and read confirmation stay fast."""
    return Settings(
        reconnect_initial_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
        reconnect_jitter=0.0,
        reconnect_max_attempts=3,
        read_confirm_attempts=2,
        read_confirm_delay_seconds=0.0,
    )


@pytest.fixture()
def identity_a() -> StaticIdentity:
    return StaticIdentity(USER_A)


@pytest.fixture()
def identity_b() -> StaticIdentity:
    return StaticIdentity(USER_B)


@pytest.fixture()
def message_store() -> MessageStore:
    return MessageStore()


@pytest.fixture()
def directory() -> ConversationDirectory:
    return ConversationDirectory()


@pytest.fixture()
def make_message() -> Callable[..., Message]:
    """Build ``Message`` records with increasing timestamps."""
    base = utcnow()
    counter = iter(range(1, 10_000))

    def _make(
        sender_id: str = USER_B,
        recipient_id: str = USER_A,
        content: str = "hello",
        **fields: object,
    ) -> Message:
        n = next(counter)
        data: dict[str, object] = {
            "id": f"m{n}",
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "content": content,
            "created_at": base + timedelta(seconds=n),
        }
        data.update(fields)
        return Message.model_validate(data)

    return _make


@pytest.fixture()
def settle() -> Callable[..., Awaitable[None]]:
    """Let queued change events reach their handlers."""

    async def _settle(rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
