"""Two users exchanging messages over the bundled SQL store and change feed."""

import pytest

from parley import MessagingSession
from parley.services.errors import PolicyDeniedError
from parley.services.local_feed import LocalChangeFeed
from parley.services.store import ChangeEvent, ChangeKind

from conftest import USER_A, USER_B


@pytest.fixture
def sessions(sql_store, feed, identity_a, identity_b, test_settings, profiles):
    alice = MessagingSession(identity_a, sql_store, feed, config=test_settings)
    bob = MessagingSession(identity_b, sql_store, feed, config=test_settings)
    return alice, bob


async def open_all(*sessions):
    for session in sessions:
        await session.open()
        assert await session.reconciler.wait_active(1.0)


async def close_all(*sessions):
    for session in sessions:
        await session.close()


@pytest.mark.asyncio
async def test_message_delivery_and_read_flow(sessions, settle):
    alice, bob = sessions
    await open_all(alice, bob)

    await alice.send_message(USER_B, "hi")
    await settle()

    (to_bob,) = alice.conversations
    assert (to_bob.peer_id, to_bob.preview, to_bob.unread_count) == (USER_B, "hi", 0)

    (from_alice,) = bob.conversations
    assert (from_alice.peer_id, from_alice.preview, from_alice.unread_count) == (USER_A, "hi", 1)
    assert bob.unread_total == 1

    await bob.select_conversation(USER_A)
    await settle()

    assert bob.directory.get(USER_A).unread_count == 0
    assert bob.unread_total == 0
    assert [m.content for m in bob.messages] == ["hi"]
    assert all(m.is_read for m in bob.messages if m.sender_id == USER_A)
    assert bob.directory.get(USER_A).peer_name == "Ada Lovelace"
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_sent_message_appears_once_in_open_conversation(sessions, settle):
    alice, bob = sessions
    await open_all(alice, bob)
    await alice.select_conversation(USER_B)

    sent = await alice.send_message(USER_B, "only once")
    await settle()

    assert [m.id for m in alice.messages] == [sent.id]
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_live_messages_append_to_open_conversation(sessions, settle):
    alice, bob = sessions
    await open_all(alice, bob)
    await bob.select_conversation(USER_A)

    await alice.send_message(USER_B, "one")
    await alice.send_message(USER_B, "two")
    await settle()

    assert [m.content for m in bob.messages] == ["one", "two"]
    assert bob.conversations[0].preview == "two"
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_directory_orders_by_latest_message(sessions, settle, sql_store):
    alice, bob = sessions
    await open_all(alice, bob)

    await bob.send_message(USER_A, "first")
    await sql_store.insert_message("3", USER_A, "second")
    await settle()

    timestamps = [c.last_at for c in alice.conversations]
    assert timestamps == sorted(timestamps, reverse=True)
    assert alice.conversations[0].peer_id == "3"
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_51st_send_within_window_is_denied(sessions, sql_store, mocker):
    alice, _ = sessions
    for n in range(50):
        await alice.send_message(USER_B, f"msg {n}")

    insert = mocker.spy(sql_store, "insert_message")
    with pytest.raises(PolicyDeniedError):
        await alice.send_message(USER_B, "one too many")

    insert.assert_not_called()
    assert len(await sql_store.fetch_conversation(USER_A, USER_B)) == 50


@pytest.mark.asyncio
async def test_delete_event_for_unknown_message_is_noop(sessions, feed, settle):
    alice, bob = sessions
    await open_all(alice, bob)

    feed.publish(ChangeEvent("messages", ChangeKind.DELETE, old={"id": "never-seen"}))
    await settle()

    assert alice.messages == []
    assert alice.state.value == "active"
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_delete_propagates_to_peer_view(sessions, settle):
    alice, bob = sessions
    await open_all(alice, bob)
    await bob.select_conversation(USER_A)
    message = await alice.send_message(USER_B, "regret")
    await settle()
    assert [m.id for m in bob.messages] == [message.id]

    assert await bob.delete_message(message.id) is False
    assert await alice.delete_message(message.id) is True
    await settle()

    assert bob.messages == []
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_second_identical_reaction_is_noop(sessions):
    alice, bob = sessions
    message = await alice.send_message(USER_B, "react to me")
    await bob.select_conversation(USER_A)

    first = await bob.add_reaction(message.id, "❤️")
    second = await bob.add_reaction(message.id, "❤️")

    assert first is not None
    assert second is None
    assert bob.error is None
    assert len(bob.messages[0].reactions) == 1


@pytest.mark.asyncio
async def test_self_test_message_is_never_unread(sessions, settle):
    alice, _ = sessions
    await open_all(alice)

    await alice.send_self_test()
    await settle()

    assert alice.directory.get(USER_A).unread_count == 0
    assert alice.unread_total == 0
    await close_all(alice)


@pytest.mark.asyncio
async def test_incoming_hook_fires_for_peer_messages(sql_store, feed, identity_a, identity_b, test_settings, settle):
    notified = []
    alice = MessagingSession(identity_a, sql_store, feed, config=test_settings)
    bob = MessagingSession(
        identity_b,
        sql_store,
        feed,
        config=test_settings,
        on_incoming=lambda message, summary: notified.append((message.content, summary.unread_count)),
    )
    await open_all(alice, bob)

    await alice.send_message(USER_B, "ping")
    await bob.send_message(USER_A, "pong")
    await settle()

    assert notified == [("ping", 1)]
    await close_all(alice, bob)


@pytest.mark.asyncio
async def test_insert_delivered_after_reload_is_not_double_counted(sessions, feed, mocker, settle):
    alice, bob = sessions
    held = []
    mocker.patch.object(feed, "publish_all", side_effect=held.extend)

    await alice.send_message(USER_B, "late")
    await open_all(bob)
    assert bob.directory.get(USER_A).unread_count == 1

    LocalChangeFeed.publish_all(feed, held)
    await settle()

    assert bob.directory.get(USER_A).unread_count == 1
    assert bob.unread_total == 1
    await close_all(bob)
