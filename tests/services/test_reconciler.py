"""Tests for the realtime event reconciler."""

import asyncio
from unittest.mock import MagicMock

import pytest

from parley.services.identity import StaticIdentity
from parley.services.reconciler import BackoffPolicy, RealtimeReconciler, SubscriptionState
from parley.services.store import ChangeEvent, ChangeKind

from conftest import USER_A, USER_B, USER_C


def row(message) -> dict:
    return message.model_dump(mode="json", exclude={"reactions"})


def insert(message) -> ChangeEvent:
    return ChangeEvent("messages", ChangeKind.INSERT, new=row(message))


async def wait_until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def backoff(test_settings):
    return BackoffPolicy.from_settings(test_settings)


@pytest.fixture
def on_incoming():
    return MagicMock()


@pytest.fixture
def reconciler(identity_a, feed, message_store, directory, backoff, on_incoming):
    return RealtimeReconciler(
        identity_a, feed, message_store, directory, backoff=backoff, on_incoming=on_incoming
    )


def test_backoff_grows_exponentially_and_caps():
    policy = BackoffPolicy(initial_delay=0.5, max_delay=30.0, multiplier=2.0, jitter=0.0)

    assert [policy.delay(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 4.0]
    assert policy.delay(10) == 30.0


def test_backoff_jitter_is_bounded():
    policy = BackoffPolicy(initial_delay=1.0, max_delay=30.0, multiplier=2.0, jitter=0.1)

    for _ in range(20):
        assert 2.0 <= policy.delay(2) <= 2.2


@pytest.mark.asyncio
async def test_start_without_user_stays_unsubscribed(feed, message_store, directory):
    reconciler = RealtimeReconciler(StaticIdentity(None), feed, message_store, directory)

    await reconciler.start()

    assert reconciler.state is SubscriptionState.UNSUBSCRIBED
    assert feed.subscriptions == ()


@pytest.mark.asyncio
async def test_start_subscribes_with_participant_filter(reconciler, feed):
    await reconciler.start()
    assert await reconciler.wait_active(1.0)

    (subscription,) = feed.subscriptions
    assert subscription.name == f"messaging_{USER_A}"
    assert subscription.filters[0].participant == USER_A
    assert subscription.filters[0].table == "messages"

    await reconciler.stop()
    assert reconciler.state is SubscriptionState.UNSUBSCRIBED
    assert feed.subscriptions == ()


@pytest.mark.asyncio
async def test_insert_for_open_conversation(
    reconciler, feed, message_store, directory, make_message, on_incoming, settle
):
    message_store.replace_all([], peer_id=USER_B)
    await reconciler.start()
    await reconciler.wait_active(1.0)
    message = make_message(sender_id=USER_B, recipient_id=USER_A, content="hi")

    feed.publish(insert(message))
    await settle()

    assert [m.id for m in message_store] == [message.id]
    summary = directory.get(USER_B)
    assert summary.preview == "hi"
    assert summary.unread_count == 1
    on_incoming.assert_called_once()
    assert on_incoming.call_args[0][0].id == message.id
    assert on_incoming.call_args[0][1].peer_id == USER_B
    await reconciler.stop()


@pytest.mark.asyncio
async def test_duplicate_insert_is_dropped(
    reconciler, feed, message_store, directory, make_message, settle
):
    message_store.replace_all([], peer_id=USER_B)
    await reconciler.start()
    await reconciler.wait_active(1.0)
    message = make_message(sender_id=USER_B, recipient_id=USER_A)

    feed.publish(insert(message))
    feed.publish(insert(message))
    await settle()

    assert len(message_store) == 1
    assert directory.get(USER_B).unread_count == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_insert_for_other_peer_updates_directory_only(
    reconciler, message_store, directory, make_message
):
    message_store.replace_all([], peer_id=USER_C)
    await reconciler.start()
    message = make_message(sender_id=USER_B, recipient_id=USER_A, content="psst")

    await reconciler.handle_event(insert(message))

    assert message_store.messages == []
    assert directory.get(USER_B).preview == "psst"
    assert directory.get(USER_B).unread_count == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_self_sent_insert_never_counts_unread(
    reconciler, directory, make_message, on_incoming
):
    await reconciler.start()

    await reconciler.handle_event(insert(make_message(sender_id=USER_A, recipient_id=USER_B)))
    await reconciler.handle_event(insert(make_message(sender_id=USER_A, recipient_id=USER_A)))

    assert directory.get(USER_B).unread_count == 0
    assert directory.get(USER_A).unread_count == 0
    on_incoming.assert_not_called()
    await reconciler.stop()


@pytest.mark.asyncio
async def test_event_not_involving_user_is_dropped(reconciler, directory, make_message):
    await reconciler.start()

    applied = reconciler.apply_insert(USER_A, row(make_message(sender_id=USER_B, recipient_id=USER_C)))

    assert applied is False
    assert len(directory) == 0
    await reconciler.stop()


@pytest.mark.asyncio
async def test_malformed_row_is_dropped(reconciler, directory, caplog):
    await reconciler.start()

    with caplog.at_level("WARNING"):
        await reconciler.handle_event(
            ChangeEvent("messages", ChangeKind.INSERT, new={"id": "x", "sender_id": USER_B})
        )

    assert len(directory) == 0
    assert "malformed" in caplog.text
    await reconciler.stop()


@pytest.mark.asyncio
async def test_update_patches_without_touching_unread(
    reconciler, message_store, directory, make_message
):
    message = make_message(sender_id=USER_B, recipient_id=USER_A)
    message_store.replace_all([message], peer_id=USER_B)
    directory.count_unread(USER_B, message.id)
    await reconciler.start()

    read = message.model_copy(update={"is_read": True, "read_at": message.created_at})
    await reconciler.handle_event(ChangeEvent("messages", ChangeKind.UPDATE, new=row(read)))

    assert message_store.get(message.id).is_read is True
    assert directory.get(USER_B).unread_count == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_update_for_unknown_message_is_noop(reconciler, message_store, make_message):
    await reconciler.start()

    applied = reconciler.apply_update(USER_A, row(make_message()))

    assert applied is False
    assert len(message_store) == 0
    await reconciler.stop()


@pytest.mark.asyncio
async def test_delete_removes_by_id(reconciler, message_store, directory, make_message):
    message = make_message(sender_id=USER_B, recipient_id=USER_A, content="oops")
    message_store.replace_all([message], peer_id=USER_B)
    directory.upsert(USER_B, preview="oops", last_at=message.created_at)
    await reconciler.start()

    await reconciler.handle_event(ChangeEvent("messages", ChangeKind.DELETE, old={"id": message.id}))

    assert message.id not in message_store
    # Preview stays until the next reload.
    assert directory.get(USER_B).preview == "oops"
    await reconciler.stop()


@pytest.mark.asyncio
async def test_delete_for_foreign_pair_is_ignored(reconciler, message_store, make_message):
    message = make_message(sender_id=USER_B, recipient_id=USER_A)
    message_store.replace_all([message], peer_id=USER_B)
    await reconciler.start()

    applied = reconciler.apply_delete(
        USER_A, {"id": message.id, "sender_id": USER_B, "recipient_id": USER_C}
    )

    assert applied is False
    assert message.id in message_store
    await reconciler.stop()


@pytest.mark.asyncio
async def test_reconnects_after_fault(reconciler, feed):
    await reconciler.start()
    await reconciler.wait_active(1.0)

    feed.fault_all()
    await wait_until(
        lambda: reconciler.last_fault is not None
        and reconciler.state is SubscriptionState.ACTIVE
    )

    assert reconciler.last_fault is not None
    assert reconciler.failed_attempts == 0
    assert len(feed.subscriptions) == 1
    await reconciler.stop()


@pytest.mark.asyncio
async def test_reconnects_after_unsolicited_close(reconciler, feed):
    await reconciler.start()
    await reconciler.wait_active(1.0)

    (subscription,) = feed.subscriptions
    await subscription.close()
    await wait_until(
        lambda: reconciler.state is SubscriptionState.ACTIVE
        and subscription not in feed.subscriptions
        and len(feed.subscriptions) == 1
    )

    assert len(feed.subscriptions) == 1
    assert feed.subscriptions[0] is not subscription
    await reconciler.stop()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_then_resubscribes(reconciler, feed, backoff):
    feed.available = False
    await reconciler.start()

    await wait_until(
        lambda: reconciler.failed_attempts > backoff.max_attempts
        and reconciler.state is SubscriptionState.UNSUBSCRIBED,
        timeout=2.0,
    )
    assert feed.subscriptions == ()

    feed.available = True
    await reconciler.resubscribe()

    assert await reconciler.wait_active(1.0)
    await reconciler.stop()
