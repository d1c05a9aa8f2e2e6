"""
Tests for the in-process conversation store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from healio_chat.memory import MemoryConversationStore


class TickingClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def timed_store(clock):
    return MemoryConversationStore(clock=clock)


def test_create_twice_merges(store):
    """Second upsert merges into the first record instead of replacing it."""
    store.create_conversation_if_missing("c1", {"participants": ["u1", "u2"]})
    store.create_conversation_if_missing("c1", {"title": "Check-in"})

    record = store.get_conversation("c1")
    assert record["participants"] == ["u1", "u2"]
    assert record["title"] == "Check-in"
    assert len(store.list_conversations("u1")) == 1


def test_create_without_meta_keeps_fields(store):
    store.create_conversation_if_missing("c1", {"participants": ["u1", "u2"]})
    store.create_conversation_if_missing("c1")
    assert store.get_conversation("c1")["participants"] == ["u1", "u2"]


def test_create_refreshes_updated_at(timed_store):
    timed_store.create_conversation_if_missing("c1")
    first = timed_store.get_conversation("c1")["updatedAt"]
    timed_store.create_conversation_if_missing("c1")
    assert timed_store.get_conversation("c1")["updatedAt"] > first


def test_append_assigns_id_and_time(timed_store, clock):
    message_id = timed_store.append_message("c1", {"body": "hi", "id": "mine", "createdAt": "client"})

    docs = timed_store.fetch_messages("c1")
    assert len(docs) == 1
    assert docs[0]["id"] == message_id
    assert message_id != "mine"
    assert docs[0]["createdAt"] == clock.now
    assert docs[0]["conversationId"] == "c1"


def test_fetch_newest_first(timed_store):
    timed_store.append_message("c1", {"body": "one"})
    timed_store.append_message("c1", {"body": "two"})
    timed_store.append_message("c1", {"body": "three"})

    bodies = [d["body"] for d in timed_store.fetch_messages("c1")]
    assert bodies == ["three", "two", "one"]


def test_equal_timestamps_keep_insertion_order():
    fixed = datetime(2025, 1, 1, tzinfo=timezone.utc)
    frozen = MemoryConversationStore(clock=lambda: fixed)
    frozen.append_message("c1", {"body": "first"})
    frozen.append_message("c1", {"body": "second"})
    assert [d["body"] for d in frozen.fetch_messages("c1")] == ["second", "first"]


def test_subscribe_pushes_full_snapshots(store):
    snapshots = []
    store.append_message("c1", {"body": "before"})
    store.subscribe_messages("c1", snapshots.append)
    store.append_message("c1", {"body": "after"})

    assert len(snapshots) == 2
    assert [d["body"] for d in snapshots[0]] == ["before"]
    assert len(snapshots[1]) == 2


def test_subscriptions_are_per_conversation(store):
    snapshots = []
    store.subscribe_messages("c1", snapshots.append)
    store.append_message("c2", {"body": "elsewhere"})
    assert snapshots == [[]]


def test_unsubscribe_stops_updates(store):
    snapshots = []
    sub = store.subscribe_messages("c1", snapshots.append)
    assert sub.active
    sub.unsubscribe()
    sub.unsubscribe()
    store.append_message("c1", {"body": "late"})

    assert not sub.active
    assert snapshots == [[]]


def test_subscriber_may_write_back(store):
    """A subscriber appending from inside its callback must not deadlock."""
    seen = []

    def reply(docs):
        seen.append(len(docs))
        if len(docs) == 1:
            store.append_message("c1", {"body": "auto-reply"})

    store.subscribe_messages("c1", reply)
    store.append_message("c1", {"body": "ping"})
    assert seen == [0, 1, 2]


def test_list_conversations_most_recent_first(timed_store):
    timed_store.create_conversation_if_missing("old", {"participants": ["u1", "u2"]})
    timed_store.create_conversation_if_missing("new", {"participants": ["u1", "u3"]})
    timed_store.create_conversation_if_missing("other", {"participants": ["u4", "u5"]})

    ids = [c["id"] for c in timed_store.list_conversations("u1")]
    assert ids == ["new", "old"]
    assert timed_store.list_conversations("u1", limit=1)[0]["id"] == "new"


def test_get_missing_conversation(store):
    assert store.get_conversation("nope") is None
