"""Abstract interfaces for the bidirectional realtime backend."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict

from codewhisper.models.realtime_config import RealtimeSessionConfiguration


class RealtimeConnection(ABC):
    """An open realtime connection. Events are plain JSON dictionaries."""

    @abstractmethod
    async def send(self, event: Dict[str, Any]) -> None:
        """Send one client event."""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Iterate over server events until the connection closes.

        Raises:
            BackendConnectionError: The connection dropped unexpectedly
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Must be safe to call more than once."""
        pass


class RealtimeBackend(ABC):
    """Factory for realtime connections."""

    @abstractmethod
    async def connect(self, configuration: RealtimeSessionConfiguration) -> RealtimeConnection:
        """Open a connection and send the session configuration.

        Raises:
            AuthError: Credentials were rejected
            BackendConnectionError: The backend could not be reached
        """
        pass
