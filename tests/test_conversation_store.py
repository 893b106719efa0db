"""Unit tests for ConversationStore."""
import sys
sys.path.insert(0, 'backend')

import asyncio
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from services.conversation_store import ConversationStore, StorageIOError


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning aware datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def history_file(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir / "chat_history.json"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(history_file, clock):
    """Create a ConversationStore that never saves on its own during a test."""
    return ConversationStore(
        file_path=str(history_file),
        max_history=20,
        save_delay=60,
        max_save_retries=2,
        save_retry_delay=0,
        clock=clock
    )


def _new_store(history_file, **kwargs):
    options = {"save_delay": 60, "save_retry_delay": 0}
    options.update(kwargs)
    return ConversationStore(file_path=str(history_file), **options)


class TestAppendAndRead:
    """Tests for the append/read path."""

    def test_append_returns_turn_id(self, store):
        """Test that append returns a unique id per turn."""
        first = store.append("alice", "user", "hello")
        second = store.append("alice", "assistant", "hi!")

        assert first
        assert second
        assert first != second

    def test_read_recent_preserves_insertion_order(self, store):
        """Test that turns come back in the order they were appended."""
        store.append("alice", "user", "one")
        store.append("alice", "assistant", "two")
        store.append("alice", "user", "three")

        turns = store.read_recent("alice")

        assert [t.content for t in turns] == ["one", "two", "three"]
        assert [t.role for t in turns] == ["user", "assistant", "user"]

    def test_read_recent_unknown_sender_returns_empty(self, store):
        """Test that an unknown sender yields an empty list instead of failing."""
        assert store.read_recent("nobody") == []

    def test_read_recent_respects_limit(self, store):
        """Test that limit returns only the most recent turns."""
        for i in range(5):
            store.append("alice", "user", f"message {i}")

        turns = store.read_recent("alice", limit=2)

        assert [t.content for t in turns] == ["message 3", "message 4"]

    def test_read_recent_zero_limit(self, store):
        """Test that a zero limit returns nothing."""
        store.append("alice", "user", "hello")
        assert store.read_recent("alice", limit=0) == []

    def test_read_recent_capped_by_context_limit(self, history_file):
        """Test that reads never exceed the hard context cap."""
        store = _new_store(history_file, max_history=100, max_context=50)
        for i in range(80):
            store.append("alice", "user", f"message {i}")

        turns = store.read_recent("alice")

        assert len(turns) == 50
        assert turns[0].content == "message 30"
        assert turns[-1].content == "message 79"

    def test_invalid_role_raises_error(self, store):
        """Test that only user and assistant roles are accepted."""
        with pytest.raises(ValueError, match="Invalid role"):
            store.append("alice", "system", "nope")

    def test_append_updates_metadata(self, store, clock):
        """Test that first/last turn times and count are maintained."""
        store.append("alice", "user", "hello")
        clock.now = NOW + timedelta(minutes=5)
        store.append("alice", "assistant", "hi")

        metadata = store.get_conversation("alice").metadata

        assert metadata.first_turn_time == NOW
        assert metadata.last_turn_time == NOW + timedelta(minutes=5)
        assert metadata.turn_count == 2

    def test_turn_metadata_is_copied(self, store):
        """Test that caller metadata is stored with the turn."""
        store.append("alice", "user", "hello", {"sender_name": "Alice"})

        turn = store.read_recent("alice")[0]

        assert turn.metadata == {"sender_name": "Alice"}


class TestBoundedHistory:
    """Tests for FIFO trimming of long conversations."""

    def test_trims_oldest_turns(self, store):
        """Test that max_history + 5 appends leave max_history turns, oldest 5 removed."""
        for i in range(store.max_history + 5):
            store.append("alice", "user", f"message {i}")

        conversation = store.get_conversation("alice")
        contents = [t.content for t in conversation.turns]

        assert len(contents) == store.max_history
        assert contents[0] == "message 5"
        assert contents == [f"message {i}" for i in range(5, store.max_history + 5)]
        assert conversation.metadata.turn_count == store.max_history

    def test_trimming_is_per_conversation(self, store):
        """Test that trimming one conversation leaves others untouched."""
        for i in range(store.max_history + 3):
            store.append("alice", "user", f"message {i}")
        store.append("bob", "user", "hello")

        assert len(store.read_recent("bob")) == 1


class TestPersistence:
    """Tests for flushing and loading snapshots."""

    def test_flush_and_reload(self, store, history_file):
        """Test that a flushed snapshot loads back identically."""
        store.append("alice", "user", "hello", {"message_id": "m1"})
        store.append("alice", "assistant", "hi there")
        store.record_emotion("alice", {"mood": "happy"})

        assert asyncio.run(store.flush()) is True

        reloaded = _new_store(history_file)
        asyncio.run(reloaded.initialize(start_cleanup=False))

        turns = reloaded.read_recent("alice")
        assert [t.content for t in turns] == ["hello", "hi there"]
        assert turns[0].metadata == {"message_id": "m1"}
        assert turns[0].timestamp == NOW
        assert reloaded.get_conversation("alice").metadata.emotional_profile[0]["mood"] == "happy"

    def test_flush_without_changes_does_nothing(self, store, history_file):
        """Test that a clean store does not write."""
        assert asyncio.run(store.flush()) is False
        assert not history_file.exists()

    def test_snapshot_shape(self, store, history_file):
        """Test the on-disk layout: sender -> {turns, metadata}."""
        store.append("alice", "user", "hello")
        asyncio.run(store.flush())

        data = json.loads(history_file.read_text(encoding="utf-8"))

        assert set(data["alice"].keys()) == {"turns", "metadata"}
        assert data["alice"]["turns"][0]["content"] == "hello"
        assert data["alice"]["metadata"]["turn_count"] == 1

    def test_initialize_without_file_starts_empty(self, store):
        """Test that a missing snapshot is not an error."""
        asyncio.run(store.initialize(start_cleanup=False))

        assert store.is_initialized
        assert len(store) == 0

    def test_initialize_with_corrupt_file_raises(self, history_file):
        """Test that an unreadable snapshot raises StorageIOError."""
        history_file.write_text("{not json", encoding="utf-8")
        store = _new_store(history_file)

        with pytest.raises(StorageIOError):
            asyncio.run(store.initialize(start_cleanup=False))

    def test_interrupted_flush_keeps_previous_snapshot(self, store, history_file):
        """Test that a failure before the atomic rename leaves the prior snapshot intact."""
        store.append("alice", "user", "first")
        asyncio.run(store.flush())
        before = history_file.read_text(encoding="utf-8")

        store.append("alice", "user", "second")
        with patch("services.conversation_store.os.replace", side_effect=OSError("power loss")):
            with pytest.raises(StorageIOError):
                asyncio.run(store.flush())

        assert history_file.read_text(encoding="utf-8") == before
        assert store.is_dirty

        reloaded = _new_store(history_file)
        asyncio.run(reloaded.initialize(start_cleanup=False))
        assert [t.content for t in reloaded.read_recent("alice")] == ["first"]

    def test_flush_retries_then_succeeds(self, store):
        """Test that a transient write failure is retried."""
        store.append("alice", "user", "hello")

        with patch.object(store, "_write_atomic", side_effect=[OSError("disk busy"), None]) as write:
            assert asyncio.run(store.flush()) is True

        assert write.call_count == 2
        assert not store.is_dirty

    def test_flush_gives_up_after_retries(self, store):
        """Test that flush raises once the retry budget is spent."""
        store.append("alice", "user", "hello")

        with patch.object(store, "_write_atomic", side_effect=OSError("disk full")) as write:
            with pytest.raises(StorageIOError, match="disk full"):
                asyncio.run(store.flush())

        assert write.call_count == store.max_save_retries + 1

    def test_debounced_save_coalesces_burst(self, history_file):
        """Test that a burst of appends results in a single write."""
        store = _new_store(history_file, save_delay=0.1)

        async def scenario():
            with patch.object(store, "_write_atomic", wraps=store._write_atomic) as write:
                for i in range(5):
                    store.append("alice", "user", f"message {i}")
                    await asyncio.sleep(0.01)
                await asyncio.sleep(0.3)
                return write.call_count

        assert asyncio.run(scenario()) == 1
        data = json.loads(history_file.read_text(encoding="utf-8"))
        assert len(data["alice"]["turns"]) == 5

    def test_background_save_failure_does_not_raise(self, history_file):
        """Test that a failed background save is logged and left for the next cycle."""
        store = _new_store(history_file, save_delay=0.01, max_save_retries=0)

        async def scenario():
            with patch.object(store, "_write_atomic", side_effect=OSError("read-only")) as write:
                store.append("alice", "user", "hello")
                await asyncio.sleep(0.05)
                store._closed = True
                if store._save_handle is not None:
                    store._save_handle.cancel()
                await asyncio.sleep(0.02)
                assert write.call_count >= 1

        asyncio.run(scenario())

        assert store.is_dirty

    def test_close_surfaces_failure(self, store):
        """Test that the shutdown flush reports failure to its caller."""
        store.append("alice", "user", "hello")

        with patch.object(store, "_write_atomic", side_effect=OSError("read-only")):
            with pytest.raises(StorageIOError):
                asyncio.run(store.close())

    def test_close_writes_pending_changes(self, store, history_file):
        """Test that close persists unsaved turns."""
        store.append("alice", "user", "hello")

        asyncio.run(store.close())

        assert "alice" in json.loads(history_file.read_text(encoding="utf-8"))


class TestClear:
    """Tests for clearing a conversation."""

    def test_clear_removes_and_persists(self, store, history_file):
        """Test that clear deletes the conversation and writes immediately."""
        store.append("alice", "user", "hello")
        store.append("bob", "user", "hey")

        assert asyncio.run(store.clear("alice")) is True

        assert store.read_recent("alice") == []
        data = json.loads(history_file.read_text(encoding="utf-8"))
        assert "alice" not in data
        assert "bob" in data

    def test_clear_unknown_sender(self, store):
        """Test that clearing an unknown sender reports False."""
        assert asyncio.run(store.clear("nobody")) is False


class TestRetentionCleanup:
    """Tests for age-based cleanup."""

    def _fill(self, store, clock, sender, count, when):
        clock.now = when
        for i in range(count):
            store.append(sender, "user", f"{sender} {i}")

    def test_deletes_old_small_conversations_only(self, store, clock):
        """Test that a 31-day-old 3-turn conversation is deleted but a 15-turn one is kept."""
        old = NOW - timedelta(days=31)
        self._fill(store, clock, "small", 3, old)
        self._fill(store, clock, "large", 15, old)
        self._fill(store, clock, "recent", 2, NOW)

        removed = asyncio.run(store.perform_cleanup(now=NOW))

        assert removed == 1
        assert store.get_conversation("small") is None
        assert store.get_conversation("large") is not None
        assert store.get_conversation("recent") is not None

    def test_prunes_old_turns_in_kept_conversations(self, store, clock, history_file):
        """Test that turns past the horizon are dropped from retained conversations."""
        self._fill(store, clock, "large", 12, NOW - timedelta(days=40))
        self._fill(store, clock, "large", 3, NOW - timedelta(days=1))

        removed = asyncio.run(store.perform_cleanup(now=NOW))

        assert removed == 0
        conversation = store.get_conversation("large")
        assert [t.timestamp for t in conversation.turns] == [NOW - timedelta(days=1)] * 3
        assert conversation.metadata.turn_count == 3
        assert conversation.metadata.last_turn_time == NOW - timedelta(days=1)
        assert store.read_recent("large")[0].content == "large 0"

        data = json.loads(history_file.read_text(encoding="utf-8"))
        assert len(data["large"]["turns"]) == 3
        assert data["large"]["metadata"]["turn_count"] == 3
        assert not store.is_dirty

    def test_cleanup_without_changes_does_not_flush(self, store, clock):
        """Test that cleanup writes only when it deleted something."""
        self._fill(store, clock, "recent", 2, NOW)

        with patch.object(store, "flush", new_callable=AsyncMock) as flush:
            removed = asyncio.run(store.perform_cleanup(now=NOW))

        assert removed == 0
        flush.assert_not_awaited()

    def test_cleanup_persists_deletions(self, store, clock, history_file):
        """Test that deletions are written to disk."""
        self._fill(store, clock, "small", 3, NOW - timedelta(days=40))
        self._fill(store, clock, "recent", 1, NOW)

        asyncio.run(store.perform_cleanup(now=NOW))

        data = json.loads(history_file.read_text(encoding="utf-8"))
        assert list(data.keys()) == ["recent"]

    def test_periodic_cleanup_runs(self, history_file):
        """Test that the background task calls perform_cleanup on its interval."""
        store = _new_store(history_file, cleanup_interval=0.01)

        async def scenario():
            with patch.object(store, "perform_cleanup", new_callable=AsyncMock) as cleanup:
                store.start_periodic_cleanup()
                await asyncio.sleep(0.05)
                store.stop_periodic_cleanup()
                return cleanup.await_count

        assert asyncio.run(scenario()) >= 1


class TestEmotionsAndStats:
    """Tests for the emotional profile and statistics."""

    def test_emotional_profile_is_bounded(self, history_file):
        """Test that only the most recent entries are kept."""
        store = _new_store(history_file, max_emotional_entries=3)
        for mood in ["happy", "sad", "angry", "neutral", "excited"]:
            store.record_emotion("alice", {"mood": mood})

        profile = store.get_conversation("alice").metadata.emotional_profile

        assert [entry["mood"] for entry in profile] == ["angry", "neutral", "excited"]
        assert all("timestamp" in entry for entry in profile)

    def test_conversation_stats(self, store, clock):
        """Test per-conversation counts and average response time."""
        store.append("alice", "user", "q1")
        clock.now = NOW + timedelta(seconds=4)
        store.append("alice", "assistant", "a1")
        clock.now = NOW + timedelta(seconds=60)
        store.append("alice", "user", "q2")
        clock.now = NOW + timedelta(seconds=66)
        store.append("alice", "assistant", "a2")

        stats = store.get_conversation_stats("alice")

        assert stats["total_turns"] == 4
        assert stats["user_turns"] == 2
        assert stats["assistant_turns"] == 2
        assert stats["average_response_seconds"] == 5

    def test_conversation_stats_unknown_sender(self, store):
        assert store.get_conversation_stats("nobody") is None

    def test_store_stats(self, store):
        """Test aggregate statistics."""
        store.append("alice", "user", "hello")
        store.append("bob", "user", "hey")
        store.append("bob", "assistant", "hi")

        stats = store.get_stats()

        assert stats["total_conversations"] == 2
        assert stats["total_turns"] == 3
        assert stats["unsaved_changes"] is True
