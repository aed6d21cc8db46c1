"""Realtime backend over the OpenAI realtime websocket API."""

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidStatus, WebSocketException

from codewhisper.lib.config import get_api_key
from codewhisper.lib.errors import AuthError, BackendConnectionError
from codewhisper.models.realtime_config import RealtimeSessionConfiguration
from codewhisper.services.interfaces.realtime_backend import RealtimeBackend, RealtimeConnection


logger = logging.getLogger(__name__)


class OpenAIRealtimeConnection(RealtimeConnection):
    """JSON event stream over an open websocket."""

    def __init__(self, websocket: Any):
        self._websocket = websocket
        self._closed = False

    async def send(self, event: Dict[str, Any]) -> None:
        if self._closed:
            raise BackendConnectionError("Realtime connection is closed", code="connection_closed")
        try:
            await self._websocket.send(json.dumps(event))
        except ConnectionClosed as e:
            raise BackendConnectionError(f"Realtime connection closed while sending: {e}", code="connection_closed") from e

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for message in self._websocket:
                try:
                    event = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Ignoring non-JSON realtime message")
                    continue
                if isinstance(event, dict):
                    logger.debug(f"Realtime event: {event.get('type')}")
                    yield event
        except ConnectionClosedOK:
            return
        except ConnectionClosed as e:
            if self._closed:
                return
            raise BackendConnectionError(f"Realtime connection dropped: {e}", code="connection_lost") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._websocket.close()


class OpenAIRealtimeBackend(RealtimeBackend):
    """Opens realtime sessions against wss://api.openai.com/v1/realtime."""

    def __init__(
        self,
        url: str = "wss://api.openai.com/v1/realtime",
        model: str = "gpt-realtime",
        api_key: Optional[str] = None
    ):
        self.url = url
        self.model = model
        self.api_key = api_key

    async def connect(self, configuration: RealtimeSessionConfiguration) -> RealtimeConnection:
        url = f"{self.url}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {self.api_key or get_api_key()}",
            "OpenAI-Beta": "realtime=v1",
        }

        logger.info(f"Connecting to realtime backend {url}")
        try:
            websocket = await websockets.connect(
                url,
                additional_headers=headers,
                max_size=None,
                ping_interval=30,
                ping_timeout=10,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthError(f"Realtime backend rejected the API key (HTTP {status})", code="authentication_error") from e
            raise BackendConnectionError(f"Realtime backend refused the connection (HTTP {status})", code=f"http_{status}") from e
        except (OSError, WebSocketException) as e:
            raise BackendConnectionError(f"Could not reach realtime backend: {e}", code="connect_failed") from e

        connection = OpenAIRealtimeConnection(websocket)
        try:
            await connection.send(configuration.to_event())
        except BaseException:
            await websocket.close()
            raise
        logger.debug(f"Sent session configuration: {json.dumps(configuration.masked())}")
        return connection
