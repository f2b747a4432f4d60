"""Tests for the SQLAlchemy backing store against in-memory SQLite."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from parley.services.errors import TransientNetworkError
from parley.services.sql_store import SqlBackingStore
from parley.services.store import ChangeFilter, ChangeKind

from conftest import USER_A, USER_B, USER_C


async def collect(feed, participant=None):
    events = []

    async def _handler(event):
        events.append(event)

    await feed.subscribe("test", [ChangeFilter("messages", participant=participant)], _handler)
    return events


@pytest.mark.asyncio
async def test_insert_and_fetch_conversation(sql_store):
    first = await sql_store.insert_message(USER_A, USER_B, "hi")
    second = await sql_store.insert_message(USER_B, USER_A, "hey")
    await sql_store.insert_message(USER_A, USER_C, "elsewhere")

    history = await sql_store.fetch_conversation(USER_A, USER_B)

    assert [m.id for m in history] == [first.id, second.id]
    assert first.created_at.tzinfo is not None
    assert await sql_store.get_message(first.id) == first


@pytest.mark.asyncio
async def test_insert_publishes_row_image(sql_store, feed, settle):
    events = await collect(feed, participant=USER_B)

    message = await sql_store.insert_message(USER_A, USER_B, "hi", "https://cdn/a.png")
    await settle()

    (event,) = events
    assert event.kind is ChangeKind.INSERT
    assert event.new["id"] == message.id
    assert event.new["media_url"] == "https://cdn/a.png"
    assert isinstance(event.new["created_at"], str)


@pytest.mark.asyncio
async def test_get_user_conversations_aggregates_per_peer(sql_store, profiles):
    await sql_store.insert_message(USER_B, USER_A, "one")
    await sql_store.insert_message(USER_B, USER_A, "two")
    await sql_store.insert_message(USER_C, USER_A, "from carol")
    await sql_store.insert_message(USER_A, USER_C, "reply")
    await sql_store.insert_message(USER_A, USER_A, "note to self")

    summaries = {s.peer_id: s for s in await sql_store.get_user_conversations(USER_A)}

    assert summaries[USER_B].unread_count == 2
    assert summaries[USER_B].preview == "two"
    assert summaries[USER_B].peer_name == "Bob Byte"
    assert summaries[USER_B].peer_avatar == "https://img/bob.png"
    assert summaries[USER_C].preview == "reply"
    assert summaries[USER_C].peer_name == "carol"
    assert summaries[USER_C].unread_count == 1
    assert summaries[USER_A].unread_count == 0


@pytest.mark.asyncio
async def test_mark_messages_as_read_emits_update_per_row(sql_store, feed, settle):
    await sql_store.insert_message(USER_B, USER_A, "one")
    await sql_store.insert_message(USER_B, USER_A, "two")
    await sql_store.insert_message(USER_A, USER_B, "mine")
    events = await collect(feed)

    updated = await sql_store.mark_messages_as_read(USER_A, USER_B)
    await settle()

    assert updated == 2
    assert [e.kind for e in events] == [ChangeKind.UPDATE, ChangeKind.UPDATE]
    assert all(e.new["is_read"] and not e.old["is_read"] for e in events)
    assert await sql_store.count_unread(USER_A, USER_B) == 0
    assert await sql_store.mark_messages_as_read(USER_A, USER_B) == 0


@pytest.mark.asyncio
async def test_mark_message_read_only_for_recipient(sql_store):
    message = await sql_store.insert_message(USER_B, USER_A, "hi")

    assert await sql_store.mark_message_read(message.id, USER_B) is None

    read = await sql_store.mark_message_read(message.id, USER_A)
    assert read.is_read is True
    assert read.read_at is not None

    again = await sql_store.mark_message_read(message.id, USER_A)
    assert again.read_at == read.read_at


@pytest.mark.asyncio
async def test_delete_message_sender_only(sql_store, feed, settle):
    message = await sql_store.insert_message(USER_A, USER_B, "hi")
    await sql_store.add_reaction(message.id, USER_B, "👍")
    events = await collect(feed)

    assert await sql_store.delete_message(message.id, USER_B) is False
    assert await sql_store.delete_message(message.id, USER_A) is True
    assert await sql_store.delete_message(message.id, USER_A) is False
    await settle()

    assert await sql_store.get_message(message.id) is None
    (event,) = events
    assert event.kind is ChangeKind.DELETE
    assert event.old["id"] == message.id


@pytest.mark.asyncio
async def test_delete_conversation_removes_pair_only(sql_store):
    await sql_store.insert_message(USER_A, USER_B, "one")
    await sql_store.insert_message(USER_B, USER_A, "two")
    kept = await sql_store.insert_message(USER_A, USER_C, "three")

    assert await sql_store.delete_conversation(USER_A, USER_B) == 2

    assert await sql_store.fetch_conversation(USER_A, USER_B) == []
    assert [m.id for m in await sql_store.fetch_conversation(USER_A, USER_C)] == [kept.id]


@pytest.mark.asyncio
async def test_check_rate_limit_counts_within_window(sql_store):
    results = [await sql_store.check_rate_limit(USER_A, "messaging", 3, 60) for _ in range(4)]

    assert results == [True, True, True, False]
    assert await sql_store.check_rate_limit(USER_B, "messaging", 3, 60) is True
    assert await sql_store.check_rate_limit(USER_A, "reactions", 3, 60) is True


@pytest.mark.asyncio
async def test_reactions_are_unique_per_user_and_emoji(sql_store):
    message = await sql_store.insert_message(USER_A, USER_B, "hi")

    reaction = await sql_store.add_reaction(message.id, USER_B, "🎉")
    assert reaction is not None
    assert await sql_store.add_reaction(message.id, USER_B, "🎉") is None
    assert await sql_store.add_reaction("missing", USER_B, "🎉") is None

    (loaded,) = await sql_store.fetch_conversation(USER_A, USER_B)
    assert [(r.user_id, r.emoji) for r in loaded.reactions] == [(USER_B, "🎉")]

    assert await sql_store.remove_reaction(message.id, USER_B, "🎉") is True
    assert await sql_store.remove_reaction(message.id, USER_B, "🎉") is False


@pytest.mark.asyncio
async def test_profiles(sql_store, profiles):
    profile = await sql_store.get_profile(USER_B)
    assert profile.full_name == "Bob Byte"
    assert await sql_store.get_profile("nobody") is None

    found = await sql_store.search_profiles("b", USER_A, 10)
    assert [p.id for p in found] == [USER_B]

    assert await sql_store.search_profiles("ada", USER_A, 10) == []
    assert [p.id for p in await sql_store.search_profiles("CAR", USER_A, 10)] == [USER_C]


@pytest.mark.asyncio
async def test_database_errors_become_transient():
    # No tables have been created on this engine.
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    store = SqlBackingStore(sessionmaker(bind=engine))

    with pytest.raises(TransientNetworkError):
        await store.fetch_conversation(USER_A, USER_B)
    engine.dispose()
