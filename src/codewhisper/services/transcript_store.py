"""Append-only transcript store with live subscriptions."""

import asyncio
import logging
from typing import List, Optional, Tuple

from codewhisper.models.transcript import TranscriptEntry


logger = logging.getLogger(__name__)


class TranscriptSubscription:
    """
    Async iterator over entries appended after the subscription was made.

    The iterator is single-pass: once closed it stays exhausted and a new
    subscription must be taken from the store.
    """

    def __init__(self, store: "TranscriptStore"):
        self._store = store
        self._queue: "asyncio.Queue[Optional[TranscriptEntry]]" = asyncio.Queue()
        self._closed = False

    def _deliver(self, entry: TranscriptEntry) -> None:
        if not self._closed:
            self._queue.put_nowait(entry)

    def __aiter__(self) -> "TranscriptSubscription":
        return self

    async def __anext__(self) -> TranscriptEntry:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        entry = await self._queue.get()
        if entry is None:
            raise StopAsyncIteration
        return entry

    def pending(self) -> List[TranscriptEntry]:
        """Drain entries that were delivered but not consumed yet."""
        entries = []
        while not self._queue.empty():
            entry = self._queue.get_nowait()
            if entry is not None:
                entries.append(entry)
        return entries

    def close(self) -> None:
        """Stop receiving entries and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(None)

    async def __aenter__(self) -> "TranscriptSubscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class TranscriptStore:
    """
    Ordered log of conversation activity.

    Entries are kept in insertion order and never mutated or removed
    individually; clear() drops the whole history when a session ends.
    Subscriptions outlive clear() and keep receiving later entries.
    """

    def __init__(self):
        self._entries: List[TranscriptEntry] = []
        self._subscribers: List[TranscriptSubscription] = []

    def append(self, entry: TranscriptEntry) -> None:
        """Append an entry and deliver it to every live subscription."""
        self._entries.append(entry)
        for subscriber in list(self._subscribers):
            subscriber._deliver(entry)
        logger.debug(f"Transcript entry appended: {entry.role.value}/{entry.kind.value}")

    def observe(self) -> TranscriptSubscription:
        """Subscribe to entries appended from now on."""
        subscription = TranscriptSubscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: TranscriptSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def entries(self) -> Tuple[TranscriptEntry, ...]:
        """Snapshot of the current history."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> Tuple[TranscriptEntry, ...]:
        """Drop the history, returning what was removed."""
        removed = tuple(self._entries)
        self._entries = []
        return removed
