"""Unit tests for the append-only transcript store."""

import asyncio

import pytest

from codewhisper.models.transcript import EntryKind, TranscriptEntry
from codewhisper.services.transcript_store import TranscriptStore


@pytest.fixture
def store():
    return TranscriptStore()


class TestTranscriptStore:

    def test_entries_in_insertion_order(self, store):
        first = TranscriptEntry.user("first")
        second = TranscriptEntry.assistant("second")
        store.append(first)
        store.append(second)

        assert store.entries == (first, second)
        assert len(store) == 2

    def test_entries_snapshot_is_detached(self, store):
        store.append(TranscriptEntry.user("one"))
        snapshot = store.entries
        store.append(TranscriptEntry.user("two"))

        assert len(snapshot) == 1

    def test_clear_returns_history(self, store):
        entry = TranscriptEntry.user("hello")
        store.append(entry)

        assert store.clear() == (entry,)
        assert store.entries == ()

    @pytest.mark.asyncio
    async def test_subscription_receives_later_entries_only(self, store):
        store.append(TranscriptEntry.user("before"))
        subscription = store.observe()
        store.append(TranscriptEntry.user("after"))

        assert [entry.content for entry in subscription.pending()] == ["after"]

    @pytest.mark.asyncio
    async def test_async_iteration(self, store):
        subscription = store.observe()

        async def collect():
            return [entry.content async for entry in subscription]

        collector = asyncio.create_task(collect())
        store.append(TranscriptEntry.user("a"))
        store.append(TranscriptEntry.tool_event(EntryKind.TOOL_START, "Running take_screenshot"))
        subscription.close()

        assert await asyncio.wait_for(collector, timeout=1) == ["a", "Running take_screenshot"]

    @pytest.mark.asyncio
    async def test_subscription_survives_clear(self, store):
        subscription = store.observe()
        store.append(TranscriptEntry.user("session one"))
        store.clear()
        store.append(TranscriptEntry.user("session two"))

        assert [entry.content for entry in subscription.pending()] == ["session one", "session two"]

    @pytest.mark.asyncio
    async def test_closed_subscription_stops_receiving(self, store):
        async with store.observe() as subscription:
            store.append(TranscriptEntry.user("kept"))
        store.append(TranscriptEntry.user("dropped"))

        assert [entry.content for entry in subscription.pending()] == ["kept"]
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    @pytest.mark.asyncio
    async def test_independent_subscribers(self, store):
        first = store.observe()
        second = store.observe()
        store.append(TranscriptEntry.user("hello"))

        first.pending()
        assert [entry.content for entry in second.pending()] == ["hello"]
