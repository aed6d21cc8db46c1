"""Abstract interface for audio capture and playback.

The orchestrator only drives the pipeline; device handling, codecs and
level metering stay behind this boundary.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional


LevelObserver = Callable[[float], None]


class AudioPipeline(ABC):
    """Interface for microphone capture and speaker playback."""

    @abstractmethod
    async def start(self, streaming: bool, level_observer: Optional[LevelObserver] = None) -> None:
        """Acquire the audio device and begin capturing.

        Args:
            streaming: True for realtime sessions, where captured audio is read
                through chunks(); False to buffer a recording for stop()
            level_observer: Optional callback receiving input levels in [0, 1]
        """
        pass

    @abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:
        """Iterate over captured pcm16 chunks while streaming."""
        pass

    @abstractmethod
    async def stop(self) -> bytes:
        """Stop capturing and return the buffered recording (WAV bytes).

        Returns an empty bytes object when nothing was captured.
        """
        pass

    @abstractmethod
    def set_muted(self, muted: bool) -> None:
        """Suppress or restore microphone input."""
        pass

    @abstractmethod
    def play(self, audio: bytes) -> None:
        """Queue a chunk of assistant audio for playback without blocking."""
        pass

    @abstractmethod
    def interrupt_playback(self) -> None:
        """Drop any queued assistant audio, used when the user starts talking."""
        pass

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Synthesize and play text, returning once playback finished."""
        pass

    @abstractmethod
    async def release(self) -> None:
        """Release the audio device. Must be safe to call more than once."""
        pass
